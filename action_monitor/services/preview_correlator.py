"""
Preview Correlator: poll tokens for PREVIEW actions.

A token is issued in the same transaction that appends the preview action.
The external preview UI polls resolve() until it sees DONE, FAILED or
EXPIRED. Once a token's TTL has passed it reports EXPIRED, whatever happens
to the underlying action afterwards.
"""
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from action_monitor.datetime_utils import utcnow
from action_monitor.logging_config import get_logger
from action_monitor.models import Action, PollStatus, PreviewToken, db

logger = get_logger(__name__)


class PreviewCorrelator:

    def __init__(self, ttl_seconds: float, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def correlate(self, action: Action) -> str:
        """
        Issue the poll token for a freshly flushed PREVIEW action.

        Only flushes; the caller owns the commit so the action and its token
        become visible together.
        """
        now = self.clock()
        token = PreviewToken(
            token=secrets.token_urlsafe(32),
            action_sequence=action.sequence,
            status=PollStatus.PENDING,
            created_at=now,
            expires_at=now + self.ttl,
        )
        db.session.add(token)
        db.session.flush()
        logger.debug("poll_token_issued", sequence=action.sequence, expires_at=token.expires_at.isoformat())
        return token.token

    def refresh(self, action: Action) -> Optional[str]:
        """
        Restart the TTL of a still-PENDING token when another preview request
        coalesces into the same action. Expired or resolved tokens keep their state.
        """
        now = self.clock()
        (
            PreviewToken.query
            .filter(
                PreviewToken.action_sequence == action.sequence,
                PreviewToken.status == PollStatus.PENDING,
                PreviewToken.expires_at > now,
            )
            .update({"expires_at": now + self.ttl}, synchronize_session=False)
        )
        db.session.commit()
        token = PreviewToken.query.filter_by(action_sequence=action.sequence).first()
        return token.token if token else None

    def get(self, poll_token: str) -> Optional[PreviewToken]:
        return db.session.get(PreviewToken, poll_token)

    def resolve(self, poll_token: str) -> Optional[PollStatus]:
        """
        Current state of a poll token, or None if the token is unknown.

        A PENDING token past its expiry is moved to EXPIRED here.
        """
        token = self.get(poll_token)
        if token is None:
            return None

        if token.status == PollStatus.PENDING and token.expires_at <= self.clock():
            self._expire(token.token)
            return PollStatus.EXPIRED
        return token.status

    def on_action_resolved(self, action_sequence: int, delivered: bool) -> Optional[PollStatus]:
        """
        Record the terminal outcome of a preview action on its token.

        Only a PENDING, unexpired token is updated; an expired one is marked
        EXPIRED instead.
        """
        now = self.clock()
        resolution = PollStatus.DONE if delivered else PollStatus.FAILED
        updated = (
            PreviewToken.query
            .filter(
                PreviewToken.action_sequence == action_sequence,
                PreviewToken.status == PollStatus.PENDING,
                PreviewToken.expires_at > now,
            )
            .update({"status": resolution, "resolved_at": now}, synchronize_session=False)
        )
        db.session.commit()

        if updated:
            logger.info("poll_token_resolved", sequence=action_sequence, status=resolution.value)
            return resolution

        token = PreviewToken.query.filter_by(action_sequence=action_sequence).first()
        if token is None:
            logger.warning("poll_token_missing", sequence=action_sequence)
            return None
        if token.status == PollStatus.PENDING:
            self._expire(token.token)
            return PollStatus.EXPIRED
        return token.status

    def expire_stale(self) -> int:
        """Mark every PENDING token past its expiry as EXPIRED."""
        now = self.clock()
        expired = (
            PreviewToken.query
            .filter(PreviewToken.status == PollStatus.PENDING, PreviewToken.expires_at <= now)
            .update({"status": PollStatus.EXPIRED, "resolved_at": now}, synchronize_session=False)
        )
        db.session.commit()
        if expired:
            logger.info("poll_tokens_expired", count=expired)
        return expired

    def _expire(self, poll_token: str):
        now = self.clock()
        (
            PreviewToken.query
            .filter(PreviewToken.token == poll_token, PreviewToken.status == PollStatus.PENDING)
            .update({"status": PollStatus.EXPIRED, "resolved_at": now}, synchronize_session=False)
        )
        db.session.commit()
