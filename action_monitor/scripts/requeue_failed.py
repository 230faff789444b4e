"""
Requeue FAILED actions so the dispatcher picks them up again.

Usage:
    python -m action_monitor.scripts.requeue_failed --sequence 42
    python -m action_monitor.scripts.requeue_failed --all
"""

import argparse

from action_monitor.errors import ConcurrencyLost
from action_monitor.logging_config import get_logger
from action_monitor.registry import get_monitor

logger = get_logger(__name__)


def requeue_failed(sequences=None, requeue_all=False, limit=500):
    """
    Requeue specific FAILED actions, or every FAILED action with requeue_all.

    Returns:
        dict: {"requeued": [...], "skipped": {sequence: reason}}
    """
    store = get_monitor().store
    if requeue_all:
        sequences = [a.sequence for a in store.list_failed(limit)]

    requeued, skipped = [], {}
    for sequence in sequences or []:
        try:
            if store.requeue(sequence):
                requeued.append(sequence)
            else:
                skipped[sequence] = "not failed"
        except ConcurrencyLost as e:
            skipped[sequence] = str(e)

    print(f"[INFO] Requeued: {len(requeued)}")
    for sequence, reason in skipped.items():
        print(f"  [SKIP] {sequence}: {reason}")
    return {"requeued": requeued, "skipped": skipped}


if __name__ == "__main__":
    from action_monitor import create_app

    parser = argparse.ArgumentParser(description="Requeue FAILED actions")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--sequence", type=int, action="append", help="Action sequence (repeatable)")
    group.add_argument("--all", action="store_true", help="Requeue every FAILED action")

    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        requeue_failed(sequences=args.sequence, requeue_all=args.all)
