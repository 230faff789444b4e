"""
Action Store: the durable, append-only log of content mutations.

Every write goes through a single conditional UPDATE or INSERT so concurrent
request threads and dispatcher workers can share the table without any
in-process locking. The database is the only synchronization point.
"""
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError

from action_monitor.errors import ConcurrencyLost
from action_monitor.logging_config import get_logger
from action_monitor.models import (
    Action,
    ActionStatus,
    ActionType,
    DeliveryLog,
    PreviewToken,
    StreamType,
    TERMINAL_STATUSES,
    db,
)
from action_monitor.datetime_utils import utcnow

logger = get_logger(__name__)

# expected_status -> statuses it may move to through transition()
ALLOWED_TRANSITIONS = {
    ActionStatus.PENDING: (ActionStatus.IN_FLIGHT,),
    ActionStatus.IN_FLIGHT: (ActionStatus.DELIVERED, ActionStatus.FAILED, ActionStatus.PENDING),
}

ATTEMPT_FIELDS = ("attempt_count", "last_error", "not_before")


class ActionStore:
    """Persistence and compare-and-swap transitions for Action rows."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def append(self, action: Action, before_commit: Optional[Callable[[Action], None]] = None) -> int:
        """
        Insert a new PENDING action and return its sequence.

        Args:
            action: Unsaved Action; status, attempt_count and timestamps are set here.
            before_commit: Optional hook run after the row is flushed (sequence
                assigned) and before commit, inside the same transaction.

        Returns:
            int: the database-assigned sequence

        Raises:
            ConcurrencyLost: another PENDING action with the same dedup_key
                was committed first; the caller should coalesce instead.
        """
        now = self.clock()
        action.status = ActionStatus.PENDING
        action.attempt_count = 0
        action.created_at = action.created_at or now
        action.updated_at = now

        try:
            db.session.add(action)
            db.session.flush()
            if before_commit is not None:
                before_commit(action)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise ConcurrencyLost(f"Pending action already exists for {action.dedup_key}") from e

        logger.debug("action_appended", sequence=action.sequence, dedup_key=action.dedup_key)
        return action.sequence

    def get(self, sequence: int) -> Optional[Action]:
        return db.session.get(Action, sequence)

    def find_pending(self, dedup_key: str) -> Optional[Action]:
        return Action.query.filter_by(dedup_key=dedup_key, status=ActionStatus.PENDING).first()

    def latest_for_key(self, dedup_key: str) -> Optional[Action]:
        return Action.query.filter_by(dedup_key=dedup_key).order_by(Action.sequence.desc()).first()

    def get_pending(self, limit: int, stream_type: Optional[StreamType] = None) -> List[Action]:
        """PENDING actions ordered by sequence ascending."""
        query = Action.query.filter(Action.status == ActionStatus.PENDING)
        if stream_type is not None:
            query = query.filter(Action.stream_type == stream_type)
        return query.order_by(Action.sequence.asc()).limit(limit).all()

    def count_pending(self, stream_type: Optional[StreamType] = None) -> int:
        query = Action.query.filter(Action.status == ActionStatus.PENDING)
        if stream_type is not None:
            query = query.filter(Action.stream_type == stream_type)
        return query.count()

    def list_since(self, since: int = 0, limit: int = 100,
                   stream_type: Optional[StreamType] = None) -> List[Action]:
        """Actions with sequence > since, oldest first, regardless of status."""
        query = Action.query.filter(Action.sequence > since)
        if stream_type is not None:
            query = query.filter(Action.stream_type == stream_type)
        return query.order_by(Action.sequence.asc()).limit(limit).all()

    def transition(self, action_id: int, expected_status: ActionStatus, new_status: ActionStatus,
                   attempt_metadata: Optional[dict] = None) -> bool:
        """
        Compare-and-swap the status of one action.

        Args:
            action_id: Action sequence
            expected_status: Status the row must currently have
            new_status: Status to set
            attempt_metadata: Optional values for attempt_count, last_error, not_before

        Returns:
            bool: True if this caller performed the transition, False if the
                row was not in expected_status (lost race) or moving it back to
                PENDING would collide with a newer pending action for the node.
        """
        if new_status not in ALLOWED_TRANSITIONS.get(expected_status, ()):
            raise ValueError(f"Illegal transition {expected_status.value} -> {new_status.value}")

        values = {"status": new_status, "updated_at": self.clock()}
        for key, value in (attempt_metadata or {}).items():
            if key not in ATTEMPT_FIELDS:
                raise ValueError(f"Unsupported attempt metadata field: {key}")
            values[key] = value

        try:
            updated = (
                Action.query
                .filter(Action.sequence == action_id, Action.status == expected_status)
                .update(values, synchronize_session=False)
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(
                "transition_conflict",
                sequence=action_id,
                from_status=expected_status.value,
                to_status=new_status.value,
            )
            return False

        if updated != 1:
            logger.debug("transition_lost", sequence=action_id, expected=expected_status.value)
            return False
        return True

    def coalesce_update(self, dedup_key: str, action_type: ActionType, updated_at: datetime,
                        preview_data: Optional[dict] = None) -> bool:
        """
        Fold a new mutation into the PENDING action for dedup_key.

        The latest action_type wins; created_at and sequence are left alone.

        Returns:
            bool: False when no PENDING row exists (caller must append).
        """
        values = {"action_type": action_type, "updated_at": updated_at}
        if preview_data is not None:
            values["preview_data"] = preview_data

        updated = (
            Action.query
            .filter(Action.dedup_key == dedup_key, Action.status == ActionStatus.PENDING)
            .update(values, synchronize_session=False)
        )
        db.session.commit()
        return updated == 1

    def requeue(self, sequence: int) -> bool:
        """
        Administrative requeue of a FAILED action back to PENDING.

        Returns:
            bool: False if the action does not exist or is not FAILED.

        Raises:
            ConcurrencyLost: a PENDING action for the same node already exists.
        """
        try:
            updated = (
                Action.query
                .filter(Action.sequence == sequence, Action.status == ActionStatus.FAILED)
                .update(
                    {
                        "status": ActionStatus.PENDING,
                        "attempt_count": 0,
                        "last_error": None,
                        "not_before": None,
                        "updated_at": self.clock(),
                    },
                    synchronize_session=False,
                )
            )
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise ConcurrencyLost(f"A pending action already covers the node of action {sequence}") from e

        if updated == 1:
            logger.info("action_requeued", sequence=sequence)
        return updated == 1

    def list_failed(self, limit: int = 100) -> List[Action]:
        return (
            Action.query.filter(Action.status == ActionStatus.FAILED)
            .order_by(Action.sequence.asc())
            .limit(limit)
            .all()
        )

    def prune(self, older_than: datetime, dry_run: bool = False) -> int:
        """
        Delete DELIVERED/FAILED actions last touched before older_than, with
        their poll tokens and delivery logs of the same age.

        Returns:
            int: number of actions removed (or that would be removed on dry_run)
        """
        stale = Action.query.filter(
            Action.status.in_(TERMINAL_STATUSES),
            Action.updated_at < older_than,
        )
        sequences = [row.sequence for row in stale.with_entities(Action.sequence).all()]
        if dry_run or not sequences:
            return len(sequences)

        PreviewToken.query.filter(PreviewToken.action_sequence.in_(sequences)).delete(
            synchronize_session=False
        )
        Action.query.filter(Action.sequence.in_(sequences)).delete(synchronize_session=False)
        DeliveryLog.query.filter(DeliveryLog.logged_at < older_than).delete(synchronize_session=False)
        db.session.commit()

        logger.info("actions_pruned", count=len(sequences), older_than=older_than.isoformat())
        return len(sequences)
