"""
License Expiry Job.

Flips every license whose expires_at has passed to status "expired" so that
listings and summaries match what the authorization gate already enforces.
Revoked licenses are left untouched.

Run as an hourly cron job:
    python -m hub.jobs.expire_licenses
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.orm import Session

from hub.database.session import get_db_session_sync
from hub.services.license_registry import LicenseRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LicenseExpiry:
    """Runs the license expiry sweep and collects run statistics."""

    def __init__(self, db_session: Session, now: Optional[datetime] = None):
        self.db = db_session
        self.now = now
        self.stats = {
            "licenses_expired": 0,
            "tenants_affected": 0,
            "errors": 0,
        }

    def run(self) -> Dict:
        start_time = datetime.now(timezone.utc)
        logger.info("Starting license expiry sweep")

        try:
            pairs = LicenseRegistry(self.db).expire_licenses(self.now)
            self.stats["licenses_expired"] = len(pairs)
            self.stats["tenants_affected"] = len({tenant_id for tenant_id, _ in pairs})
        except Exception as e:
            self.stats["errors"] += 1
            self.db.rollback()
            logger.error(
                "Error expiring licenses",
                extra={"error": str(e)},
                exc_info=True,
            )

        self.stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info("License expiry sweep completed", extra=self.stats)
        return self.stats


def main():
    """Main entry point for the license expiry job."""
    logger.info("License expiry starting")

    session = get_db_session_sync()
    try:
        stats = LicenseExpiry(session).run()
    except Exception as e:
        logger.error("License expiry failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        session.close()

    if stats["errors"]:
        sys.exit(1)
    logger.info("License expiry finished")


if __name__ == "__main__":
    main()
