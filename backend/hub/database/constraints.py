"""
PostgreSQL-only constraints that SQLAlchemy metadata cannot express portably.

The pricing exclusion constraint rejects two active rows of the same
business key whose [valid_from, valid_to) ranges overlap. It backs the
application-level overlap check in PricingLedger.
"""

import logging

from sqlalchemy import text

logger = logging.getLogger(__name__)

PRICING_OVERLAP_CONSTRAINT = "excl_application_pricing_no_overlap"

POSTGRES_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS btree_gist",
    f"""
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM pg_constraint WHERE conname = '{PRICING_OVERLAP_CONSTRAINT}'
        ) THEN
            ALTER TABLE application_pricing
                ADD CONSTRAINT {PRICING_OVERLAP_CONSTRAINT}
                EXCLUDE USING gist (
                    application_id WITH =,
                    user_type_id WITH =,
                    billing_cycle WITH =,
                    currency WITH =,
                    tstzrange(valid_from, COALESCE(valid_to, 'infinity'::timestamptz), '[)') WITH &&
                )
                WHERE (active);
        END IF;
    END
    $$;
    """,
]

DROP_STATEMENTS = [
    f"ALTER TABLE application_pricing DROP CONSTRAINT IF EXISTS {PRICING_OVERLAP_CONSTRAINT}",
]


def install_postgres_constraints(bind) -> bool:
    """
    Install the PostgreSQL constraints. No-op on other dialects.

    Returns:
        True if statements were executed
    """
    if bind.dialect.name != "postgresql":
        logger.info(
            "Skipping PostgreSQL constraints",
            extra={"dialect": bind.dialect.name},
        )
        return False

    for statement in POSTGRES_STATEMENTS:
        bind.execute(text(statement))
    logger.info("Installed pricing overlap exclusion constraint")
    return True


def drop_postgres_constraints(bind) -> None:
    if bind.dialect.name != "postgresql":
        return
    for statement in DROP_STATEMENTS:
        bind.execute(text(statement))


def is_pricing_overlap_violation(error: Exception) -> bool:
    """Whether an IntegrityError was raised by the pricing exclusion constraint."""
    orig = getattr(error, "orig", None)
    return PRICING_OVERLAP_CONSTRAINT in str(orig if orig is not None else error)
