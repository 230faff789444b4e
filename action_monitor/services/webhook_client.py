"""
Webhook Client: one outbound POST per dispatch group, plus the retry state
machine that moves each action in the group out of IN_FLIGHT.

    2xx                          -> DELIVERED
    4xx except 408/429           -> FAILED (permanent, no retry)
    408, 429, 5xx, network error -> PENDING with backoff, or FAILED once
                                    attempt_count reaches max_attempts
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import requests

from action_monitor import __version__
from action_monitor.datetime_utils import utcnow
from action_monitor.errors import PermanentDeliveryError, TransientDeliveryError
from action_monitor.logging_config import get_logger
from action_monitor.models import ActionStatus, StreamType

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = (408, 429)
MAX_BACKOFF_SECONDS = 3600
# Stored error text is truncated to keep rows small
MAX_ERROR_LENGTH = 500


@dataclass
class DeliveryResult:
    delivery_id: str
    stream_type: StreamType
    target_url: str
    outcome: str  # 'delivered', 'retry', 'failed'
    attempt: int
    action_ids: List[int]
    http_status: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    delivered: List[int] = field(default_factory=list)
    requeued: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == "delivered"

    def to_dict(self) -> dict:
        """Serialize for JSON response"""
        return {
            "delivery_id": self.delivery_id,
            "stream_type": self.stream_type.value,
            "target_url": self.target_url,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "http_status": self.http_status,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "delivered": self.delivered,
            "requeued": self.requeued,
            "failed": self.failed,
        }


def classify_status(status_code: int):
    """
    Raise the delivery error matching a non-2xx HTTP status.

    Raises:
        PermanentDeliveryError: 4xx other than 408/429
        TransientDeliveryError: 408, 429, 5xx and anything else unexpected
    """
    if 200 <= status_code < 300:
        return
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        raise TransientDeliveryError(f"Webhook target returned {status_code}", status_code)
    if 400 <= status_code < 500:
        raise PermanentDeliveryError(f"Webhook target rejected payload with {status_code}", status_code)
    raise TransientDeliveryError(f"Unexpected webhook response {status_code}", status_code)


def backoff_seconds(attempt_count: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at an hour."""
    return min(base_seconds * (2 ** max(attempt_count - 1, 0)), MAX_BACKOFF_SECONDS)


class WebhookClient:

    def __init__(self, store, settings, correlator=None, delivery_log=None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.correlator = correlator
        self.delivery_log = delivery_log
        self.clock = clock

    def deliver(self, target_url: str, payload: dict, action_ids: List[int]) -> DeliveryResult:
        """
        POST payload to target_url and settle every action in action_ids.

        The actions must already be IN_FLIGHT (claimed by the caller).

        Returns:
            DeliveryResult describing the outcome and where each action ended up
        """
        stream_type = StreamType(payload["stream_type"])
        delivery_id = payload["delivery_id"]
        actions = [a for a in (self.store.get(i) for i in action_ids) if a is not None]
        attempt_counts = {a.sequence: a.attempt_count for a in actions}
        attempt = max(attempt_counts.values(), default=0) + 1

        result = DeliveryResult(
            delivery_id=delivery_id,
            stream_type=stream_type,
            target_url=target_url,
            outcome="delivered",
            attempt=attempt,
            action_ids=list(action_ids),
        )

        started = time.monotonic()
        try:
            response = requests.post(
                target_url,
                json=payload,
                headers=self._headers(delivery_id, stream_type),
                timeout=self.settings.delivery_timeout_seconds,
            )
            result.http_status = response.status_code
            classify_status(response.status_code)
        except PermanentDeliveryError as e:
            result.outcome = "failed"
            result.error = str(e)
        except TransientDeliveryError as e:
            result.outcome = "retry"
            result.error = str(e)
        except requests.exceptions.Timeout as e:
            result.outcome = "retry"
            result.error = f"Timed out after {self.settings.delivery_timeout_seconds}s: {e}"
        except requests.exceptions.RequestException as e:
            result.outcome = "retry"
            result.error = f"{type(e).__name__}: {e}"
        finally:
            result.latency_ms = round((time.monotonic() - started) * 1000, 2)

        if result.outcome == "delivered":
            self._settle_delivered(result, attempt_counts)
        elif result.outcome == "failed":
            self._settle_failed(result, attempt_counts, result.error)
        else:
            self._settle_transient(result, attempt_counts)

        # Some actions may have run out of attempts while others are retried
        if result.outcome == "retry" and not result.requeued:
            result.outcome = "failed"

        if self.delivery_log is not None:
            self.delivery_log.record(result)
        return result

    def _headers(self, delivery_id, stream_type):
        return {
            "Content-Type": "application/json",
            "User-Agent": f"action-monitor/{__version__}",
            "X-Delivery-Id": delivery_id,
            "Idempotency-Key": delivery_id,
            "X-Stream-Type": stream_type.value,
        }

    def _settle_delivered(self, result, attempt_counts):
        for sequence, count in attempt_counts.items():
            moved = self.store.transition(
                sequence,
                ActionStatus.IN_FLIGHT,
                ActionStatus.DELIVERED,
                {"attempt_count": count + 1, "last_error": None, "not_before": None},
            )
            if moved:
                result.delivered.append(sequence)
                self._resolve_preview(result.stream_type, sequence, delivered=True)

    def _settle_failed(self, result, attempt_counts, error):
        for sequence, count in attempt_counts.items():
            self._fail(result, sequence, count + 1, error)

    def _settle_transient(self, result, attempt_counts):
        now = self.clock()
        for sequence, count in attempt_counts.items():
            attempts = count + 1
            if attempts >= self.settings.max_attempts:
                self._fail(result, sequence, attempts, f"Gave up after {attempts} attempts: {result.error}")
                continue

            not_before = now + timedelta(seconds=backoff_seconds(attempts, self.settings.backoff_base_seconds))
            moved = self.store.transition(
                sequence,
                ActionStatus.IN_FLIGHT,
                ActionStatus.PENDING,
                {"attempt_count": attempts, "last_error": _truncate(result.error), "not_before": not_before},
            )
            if moved:
                result.requeued.append(sequence)
                continue

            # A newer pending action for the same node now carries its latest state
            superseding = self.store.find_pending(self.store.get(sequence).dedup_key)
            detail = f"superseded by pending action {superseding.sequence}" if superseding else "requeue rejected"
            self._fail(result, sequence, attempts, f"{detail}: {result.error}")

    def _fail(self, result, sequence, attempts, error):
        moved = self.store.transition(
            sequence,
            ActionStatus.IN_FLIGHT,
            ActionStatus.FAILED,
            {"attempt_count": attempts, "last_error": _truncate(error)},
        )
        if moved:
            result.failed.append(sequence)
            self._resolve_preview(result.stream_type, sequence, delivered=False)
            logger.warning("action_failed", sequence=sequence, attempts=attempts, error=error)

    def _resolve_preview(self, stream_type, sequence, delivered):
        if stream_type != StreamType.PREVIEW or self.correlator is None:
            return
        try:
            self.correlator.on_action_resolved(sequence, delivered)
        except Exception as e:
            logger.error("poll_token_update_failed", sequence=sequence, error=str(e), exc_info=True)


def _truncate(text):
    if text is None:
        return None
    return text if len(text) <= MAX_ERROR_LENGTH else text[:MAX_ERROR_LENGTH - 3] + "..."
