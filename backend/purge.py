"""CLI entry: purge old reports. Usage: python purge.py [--hours N] [--dry-run] (from backend dir)."""
import argparse
import logging
import sys
from datetime import timedelta

from config import get_settings
from database import build_engine, build_session_factory, init_schema
from errors import PersistenceError
from logging_setup import setup_logging
from modules.lifecycle import ReportLifecycleManager
from modules.report_store import ReportStore
from modules.retention import purge_expired

logger = logging.getLogger("purge")


def main(argv=None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Delete reports older than the retention period.")
    parser.add_argument("--hours", type=int, default=settings.retention_hours, help="Retention period in hours")
    parser.add_argument("--dry-run", action="store_true", help="Only count what would be deleted")
    args = parser.parse_args(argv)

    setup_logging(settings)
    engine = build_engine(settings.database_url)
    init_schema(engine)
    manager = ReportLifecycleManager.from_settings(ReportStore(build_session_factory(engine)), settings)

    try:
        count = purge_expired(manager, timedelta(hours=args.hours), dry_run=args.dry_run)
    except PersistenceError as exc:
        logger.error("Purge failed: %s", exc)
        return 1
    finally:
        engine.dispose()

    print(f"{'Would purge' if args.dry_run else 'Purged'} {count} reports")
    return 0


if __name__ == "__main__":
    sys.exit(main())
