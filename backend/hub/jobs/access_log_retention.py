"""
Access Log Retention Job.

Deletes application access log rows older than the retention period. This
is the only path that removes rows from the access log.

Run as a daily cron job:
    python -m hub.jobs.access_log_retention

Configuration:
- HUB_ACCESS_LOG_RETENTION_DAYS / audit.retention_days (default: 365)
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.orm import Session

from hub.config.settings import get_settings
from hub.database.session import get_db_session_sync
from hub.services.access_log_service import AccessLogService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class AccessLogRetention:
    """
    Enforces the access log retention policy.

    The default period comes from settings so that the job and the admin
    surface agree on what "old" means.
    """

    def __init__(self, db_session: Session, retention_days: Optional[int] = None):
        """
        Initialize retention cleanup.

        Args:
            db_session: Database session
            retention_days: Days of access log to keep
        """
        self.db = db_session
        self.retention_days = retention_days or get_settings().access_log_retention_days
        self.cutoff_date = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        self.stats = {
            "access_logs_deleted": 0,
            "errors": 0,
        }

    def run(self) -> Dict:
        start_time = datetime.now(timezone.utc)
        logger.info(
            "Starting access log retention",
            extra={
                "retention_days": self.retention_days,
                "cutoff_date": self.cutoff_date.isoformat(),
            },
        )

        try:
            self.stats["access_logs_deleted"] = AccessLogService(self.db).clean_old_logs(self.retention_days)
        except Exception as e:
            self.stats["errors"] += 1
            self.db.rollback()
            logger.error(
                "Error cleaning up application_access_logs",
                extra={"error": str(e)},
                exc_info=True,
            )

        self.stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.stats["cutoff_date"] = self.cutoff_date.isoformat()
        self.stats["retention_days"] = self.retention_days

        logger.info("Access log retention completed", extra=self.stats)
        return self.stats


def main():
    """Main entry point for the access log retention job."""
    logger.info("Access log retention starting")

    session = get_db_session_sync()
    try:
        stats = AccessLogRetention(session).run()
    except Exception as e:
        logger.error("Access log retention failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        session.close()

    if stats["errors"]:
        sys.exit(1)
    logger.info("Access log retention finished")


if __name__ == "__main__":
    main()
