#!/usr/bin/env python3
"""
Fail auto-correction runs left in an active status by a stopped server.

Run this after a crash when the API is not going to be restarted soon; the
API performs the same cleanup on startup.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from autocorrector.core import config
from autocorrector.core.db import init_db
from autocorrector.core.run_manager import cleanup_stale_runs
from autocorrector.core.run_store import RunStore
from autocorrector.util.logging import get_logger


def main():
    parser = argparse.ArgumentParser(
        description="Mark orphaned auto-correction runs as failed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                     # Fail active runs older than the grace period
  %(prog)s --grace-sec 0       # Fail every active run
  %(prog)s --dry-run --json    # List candidates as JSON without changing them

Environment variables:
- DB_PATH=./data/autocorrect.db (database location)
- STALE_RUN_GRACE_SEC=60 (default grace period)
        """
    )
    parser.add_argument(
        "--db-path",
        default=config.DB_PATH,
        help="SQLite database file (default: DB_PATH)"
    )
    parser.add_argument(
        "--grace-sec",
        type=int,
        default=config.STALE_RUN_GRACE_SEC,
        help="Leave runs younger than this many seconds alone"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the active runs, change nothing"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON"
    )

    args = parser.parse_args()

    try:
        init_db(args.db_path)
        store = RunStore(args.db_path, get_logger("autocorrector.cleanup"), log_limit=config.PROGRESS_LOG_LIMIT)

        if args.dry_run:
            active = store.list_active()
            if args.json:
                print(json.dumps({
                    "dry_run": True,
                    "active_runs": [{"id": r.id, "documentId": r.document_id, "status": r.status,
                                     "createdAt": r.created_at} for r in active]
                }, indent=2, default=str))
            else:
                print(f"{len(active)} active runs")
                for run in active:
                    print(f"  run {run.id}: document {run.document_id}, {run.status}, created {run.created_at}")
            return 0

        cleaned = cleanup_stale_runs(store, args.grace_sec)

        if args.json:
            print(json.dumps({"failed_runs": cleaned, "grace_sec": args.grace_sec}, indent=2))
        else:
            print(f"Marked {len(cleaned)} runs as failed" + (f": {cleaned}" if cleaned else ""))
        return 0

    except Exception as e:
        print(f"ERROR: Cleanup failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
