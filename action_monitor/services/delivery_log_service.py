from datetime import datetime
from typing import Callable, List

from action_monitor.datetime_utils import utcnow
from action_monitor.logging_config import get_logger
from action_monitor.models import DeliveryLog, db

logger = get_logger(__name__)


class DeliveryLogService:
    """Persists delivery-outcome events for the administrative view"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def record(self, result) -> DeliveryLog:
        """Log a DeliveryResult to the structured log and the delivery_logs table."""
        log = logger.info if result.outcome == "delivered" else logger.warning
        log(
            "webhook_delivery",
            delivery_id=result.delivery_id,
            stream_type=result.stream_type.value,
            target=result.target_url,
            outcome=result.outcome,
            http_status=result.http_status,
            attempt=result.attempt,
            latency_ms=result.latency_ms,
            actions=len(result.action_ids),
            error=result.error,
        )

        entry = DeliveryLog(
            delivery_id=result.delivery_id,
            stream_type=result.stream_type,
            target_url=result.target_url,
            outcome=result.outcome,
            http_status=result.http_status,
            attempt=result.attempt,
            latency_ms=result.latency_ms,
            action_sequences=list(result.action_ids),
            error_message=result.error,
            logged_at=self.clock(),
        )
        try:
            db.session.add(entry)
            db.session.commit()  # Separate transaction
        except Exception as e:
            # Losing an audit row must not undo a delivery
            db.session.rollback()
            logger.error("delivery_log_write_failed", delivery_id=result.delivery_id, error=str(e), exc_info=True)
        return entry

    def recent(self, limit: int = 50) -> List[DeliveryLog]:
        return DeliveryLog.query.order_by(DeliveryLog.logged_at.desc(), DeliveryLog.id.desc()).limit(limit).all()
