"""
Dispatcher: turns eligible PENDING actions into one webhook call per stream.

Each cycle, per stream type:
1. read up to dispatch_batch_size PENDING actions in sequence order
2. keep the leading run of actions that are past the debounce window and
   past their backoff time (stopping at the first one that is not, so a
   stream is never delivered out of order)
3. claim each with a PENDING -> IN_FLIGHT compare-and-swap; lost claims are
   left to whoever won them
4. send the claimed actions as a single payload to the stream's target
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from action_monitor.config import is_valid_webhook_url
from action_monitor.datetime_utils import utcnow, to_iso_utc
from action_monitor.errors import ConfigurationError
from action_monitor.logging_config import DispatchContext, get_logger
from action_monitor.models import Action, ActionStatus, StreamType

logger = get_logger(__name__)


def compute_delivery_id(stream_type: StreamType, actions: Iterable[Action]) -> str:
    """
    Stable identifier for a delivery, derived from the action sequences.

    The action_type is folded in so a coalesced change to an action that is
    being retried is not mistaken for a resend by the receiver.
    """
    parts = sorted(f"{a.sequence}:{a.action_type.value}" for a in actions)
    digest = hashlib.sha256(f"{stream_type.value}|{','.join(parts)}".encode("utf-8")).hexdigest()
    return f"dlv_{digest[:32]}"


def build_payload(stream_type: StreamType, actions: List[Action], dispatched_at: datetime) -> dict:
    """Webhook body for one group of actions."""
    include_preview = stream_type == StreamType.PREVIEW
    return {
        "delivery_id": compute_delivery_id(stream_type, actions),
        "stream_type": stream_type.value,
        "actions": [a.to_payload_entry(include_preview=include_preview) for a in actions],
        "dispatched_at": to_iso_utc(dispatched_at),
    }


@dataclass
class StreamReport:
    stream_type: StreamType
    target_url: Optional[str] = None
    pending: int = 0
    deferred: int = 0
    claimed: List[int] = field(default_factory=list)
    lost: List[int] = field(default_factory=list)
    delivery: Optional[object] = None  # DeliveryResult
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "stream_type": self.stream_type.value,
            "target_url": self.target_url,
            "pending": self.pending,
            "deferred": self.deferred,
            "claimed": self.claimed,
            "lost": self.lost,
            "delivery": self.delivery.to_dict() if self.delivery else None,
            "error": self.error,
        }


@dataclass
class DispatchReport:
    cycle_id: str
    started_at: datetime
    streams: List[StreamReport] = field(default_factory=list)

    @property
    def deliveries(self) -> int:
        return sum(1 for s in self.streams if s.delivery is not None)

    @property
    def errors(self) -> List[str]:
        return [s.error for s in self.streams if s.error]

    def stream(self, stream_type: StreamType) -> Optional[StreamReport]:
        return next((s for s in self.streams if s.stream_type == stream_type), None)

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "started_at": to_iso_utc(self.started_at),
            "deliveries": self.deliveries,
            "errors": self.errors,
            "streams": [s.to_dict() for s in self.streams],
        }


class Dispatcher:

    def __init__(self, store, webhook_client, settings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.webhook_client = webhook_client
        self.settings = settings
        self.clock = clock

    def run_cycle(self, stream_types: Optional[Iterable[StreamType]] = None) -> DispatchReport:
        """
        Run one dispatch pass over the given streams (all streams by default).

        Returns:
            DispatchReport with per-stream claims, deferrals and delivery outcome
        """
        with DispatchContext("dispatch_cycle") as ctx:
            report = DispatchReport(cycle_id=ctx.operation_id, started_at=self.clock())
            for stream_type in stream_types or list(StreamType):
                report.streams.append(self._dispatch_stream(stream_type))

        if report.deliveries or report.errors:
            logger.info(
                "dispatch_cycle_finished",
                cycle_id=report.cycle_id,
                deliveries=report.deliveries,
                errors=report.errors,
            )
        return report

    def _dispatch_stream(self, stream_type: StreamType) -> StreamReport:
        target_url = self.settings.webhook_url_for(stream_type)
        stream_report = StreamReport(stream_type=stream_type, target_url=target_url)

        pending = self.store.get_pending(self.settings.dispatch_batch_size, stream_type)
        stream_report.pending = len(pending)
        if not pending:
            return stream_report

        if not is_valid_webhook_url(target_url):
            # Actions stay PENDING until the target is configured
            error = ConfigurationError(
                f"No valid webhook URL configured for {stream_type.value} stream"
            )
            stream_report.error = str(error)
            logger.warning("dispatch_skipped", stream_type=stream_type.value, reason=str(error), pending=len(pending))
            return stream_report

        now = self.clock()
        eligible = self._eligible_prefix(pending, now)
        stream_report.deferred = len(pending) - len(eligible)

        claimed = []
        for action in eligible:
            if self.store.transition(action.sequence, ActionStatus.PENDING, ActionStatus.IN_FLIGHT):
                claimed.append(action)
                stream_report.claimed.append(action.sequence)
            else:
                stream_report.lost.append(action.sequence)

        if not claimed:
            return stream_report

        payload = build_payload(stream_type, claimed, now)
        stream_report.delivery = self.webhook_client.deliver(
            target_url, payload, [a.sequence for a in claimed]
        )
        return stream_report

    def next_run_at(self, stream_type: StreamType) -> Optional[datetime]:
        """
        When the oldest PENDING action of the stream becomes eligible, or None
        if nothing is pending. Later actions wait behind it.
        """
        head = self.store.get_pending(1, stream_type)
        if not head:
            return None
        action = head[0]
        eligible_at = action.created_at + timedelta(seconds=self.settings.debounce_seconds)
        if action.not_before is not None and action.not_before > eligible_at:
            eligible_at = action.not_before
        return eligible_at

    def _eligible_prefix(self, pending: List[Action], now: datetime) -> List[Action]:
        debounce_cutoff = now - timedelta(seconds=self.settings.debounce_seconds)
        eligible = []
        for action in pending:
            if action.created_at > debounce_cutoff:
                break
            if action.not_before is not None and action.not_before > now:
                break
            eligible.append(action)
        return eligible
