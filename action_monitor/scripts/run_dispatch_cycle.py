"""
Run one dispatch cycle by hand.

Useful when the scheduler is disabled, or to flush pending actions after a
webhook URL has been fixed.

Usage:
    python -m action_monitor.scripts.run_dispatch_cycle
    python -m action_monitor.scripts.run_dispatch_cycle --stream PREVIEW
"""

import argparse
import json

from action_monitor.logging_config import get_logger
from action_monitor.models import StreamType
from action_monitor.registry import get_monitor

logger = get_logger(__name__)


def run_dispatch_cycle(streams=None):
    """
    Run a dispatch cycle for the given streams (all streams by default).

    Args:
        streams: list of stream type names, e.g. ["CONTENT"]

    Returns:
        dict: the DispatchReport as a dict
    """
    stream_types = [StreamType(s.upper()) for s in streams] if streams else None
    report = get_monitor().dispatcher.run_cycle(stream_types)

    print("=" * 80)
    print(f"DISPATCH CYCLE {report.cycle_id}")
    print("=" * 80)
    for stream in report.streams:
        print(f"\n[{stream.stream_type.value}] pending={stream.pending} deferred={stream.deferred} "
              f"claimed={len(stream.claimed)} lost={len(stream.lost)}")
        if stream.error:
            print(f"  [ERROR] {stream.error}")
        if stream.delivery:
            print(f"  delivery {stream.delivery.delivery_id}: {stream.delivery.outcome} "
                  f"(HTTP {stream.delivery.http_status}, {stream.delivery.latency_ms} ms)")
    print("\n" + "=" * 80)

    return report.to_dict()


if __name__ == "__main__":
    from action_monitor import create_app

    parser = argparse.ArgumentParser(description="Run one action monitor dispatch cycle")
    parser.add_argument("--stream", action="append", choices=[s.value for s in StreamType],
                        help="Stream to dispatch (repeatable; default: all)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        result = run_dispatch_cycle(args.stream)
        if args.json:
            print(json.dumps(result, indent=2))
