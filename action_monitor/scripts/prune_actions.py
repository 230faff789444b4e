"""
Remove delivered and failed actions older than the retention window.

PENDING and IN_FLIGHT actions are never removed.

Usage:
    python -m action_monitor.scripts.prune_actions             # Preview only (dry run)
    python -m action_monitor.scripts.prune_actions --execute   # Actually delete
    python -m action_monitor.scripts.prune_actions --days 7 --execute
"""

import argparse
from datetime import timedelta

from action_monitor.logging_config import get_logger
from action_monitor.models import db
from action_monitor.registry import get_monitor

logger = get_logger(__name__)


def prune_actions(days=None, execute=False):
    """
    Prune terminal actions older than `days` (default: ACTION_RETENTION_DAYS).

    Args:
        days: Retention window in days
        execute: If True, actually delete (default: False for safety)

    Returns:
        dict with pruning results
    """
    monitor = get_monitor()
    days = monitor.settings.action_retention_days if days is None else days
    cutoff = monitor.clock() - timedelta(days=days)

    mode = "LIVE MODE - WILL DELETE" if execute else "DRY RUN (Preview Only)"
    print(f"[INFO] Mode: {mode}")
    print(f"[INFO] Cutoff: {cutoff.isoformat()} ({days} days)")

    try:
        count = monitor.store.prune(cutoff, dry_run=not execute)
        expired = monitor.correlator.expire_stale() if execute else 0
    except Exception as e:
        error_msg = f"Pruning failed: {str(e)}"
        logger.error(error_msg, exc_info=True)
        db.session.rollback()
        print(f"\n[ERROR] {error_msg}")
        return {"error": error_msg, "error_type": type(e).__name__, "executed": execute}

    verb = "Deleted" if execute else "Would delete"
    print(f"[INFO] {verb}: {count} actions")
    if execute:
        print(f"[INFO] Expired poll tokens: {expired}")
    return {"actions": count, "expired_tokens": expired, "cutoff": cutoff.isoformat(), "executed": execute}


if __name__ == "__main__":
    from action_monitor import create_app

    parser = argparse.ArgumentParser(description="Prune old delivered/failed actions")
    parser.add_argument("--days", type=int, default=None, help="Retention window in days")
    parser.add_argument("--execute", action="store_true",
                        help="Actually delete (default: dry run only)")

    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        prune_actions(days=args.days, execute=args.execute)
