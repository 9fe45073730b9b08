"""
Tenant schema provisioning hooks.

Some applications need tables in the tenant's schema before they can be
used. The license registry triggers provisioning on a tenant's first
license for such an application. Hooks are keyed by application slug and
must be idempotent: `is_provisioned` is always probed before `provision`.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from hub.models.application import Application
from hub.models.tenant import Tenant

logger = logging.getLogger(__name__)


class SchemaProvisioner(ABC):
    """Collaborator that creates per-tenant schema objects for an application."""

    @abstractmethod
    def is_provisioned(self, tenant: Tenant, application: Application) -> bool:
        """Existence probe for the application's schema objects."""

    @abstractmethod
    def provision(self, tenant: Tenant, application: Application) -> None:
        """Create the application's schema objects for the tenant."""

    def ensure_provisioned(self, tenant: Tenant, application: Application) -> bool:
        """
        Provision unless the probe reports it is already done.

        Returns:
            True if provisioning ran, False if it was already in place
        """
        if self.is_provisioned(tenant, application):
            logger.debug(
                "Schema already provisioned",
                extra={"tenant_id": tenant.id, "application_slug": application.slug},
            )
            return False

        logger.info(
            "Provisioning tenant schema",
            extra={
                "tenant_id": tenant.id,
                "schema_name": tenant.schema_name,
                "application_slug": application.slug,
            },
        )
        self.provision(tenant, application)
        return True


class NullSchemaProvisioner(SchemaProvisioner):
    """Used when no provisioning is configured; everything counts as provisioned."""

    def is_provisioned(self, tenant: Tenant, application: Application) -> bool:
        return True

    def provision(self, tenant: Tenant, application: Application) -> None:
        return None


@dataclass(frozen=True)
class ProvisioningHook:
    probe: Callable[[Tenant, Application], bool]
    provision: Callable[[Tenant, Application], None]


class HookSchemaProvisioner(SchemaProvisioner):
    """
    Dispatches to slug-keyed hooks.

    Applications without a registered hook are treated as provisioned.
    """

    def __init__(self, hooks: Optional[Dict[str, ProvisioningHook]] = None):
        self._hooks: Dict[str, ProvisioningHook] = dict(hooks or {})

    def register(self, application_slug: str, hook: ProvisioningHook) -> None:
        self._hooks[application_slug] = hook

    def is_provisioned(self, tenant: Tenant, application: Application) -> bool:
        hook = self._hooks.get(application.slug)
        if hook is None:
            return True
        return bool(hook.probe(tenant, application))

    def provision(self, tenant: Tenant, application: Application) -> None:
        hook = self._hooks.get(application.slug)
        if hook is None:
            logger.warning(
                "No provisioning hook registered",
                extra={"application_slug": application.slug},
            )
            return
        hook.provision(tenant, application)
