"""
Change Tracker: turns raw host mutation notifications into Action rows.

record() is called from the host's request path and therefore never raises.
Bad payloads are dropped and logged.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from flask import has_request_context, request

from action_monitor.datetime_utils import utcnow
from action_monitor.errors import ConcurrencyLost, MalformedMutation
from action_monitor.logging_config import get_logger
from action_monitor.models import (
    Action,
    ActionType,
    NodeType,
    StreamType,
    build_dedup_key,
    db,
)

logger = get_logger(__name__)

# Host statuses that never represent a logical save
NOISE_STATUSES = ("auto-draft",)
# Revisions carry 'inherit'; only previews are interested in them
CONTENT_ONLY_NOISE_STATUSES = ("inherit",)

# coalesce/append attempts before giving up under contention
MAX_RECORD_ATTEMPTS = 3


@dataclass
class PreviewContext:
    revision_id: Optional[str] = None
    session_token: Optional[str] = None
    screenshot_requested: bool = False

    def to_dict(self) -> dict:
        return {
            "revision_id": self.revision_id,
            "session_token": self.session_token,
            "screenshot_requested": self.screenshot_requested,
        }


@dataclass
class MutationEvent:
    """Normalized mutation notification from the host CMS."""
    node_type: NodeType
    node_id: str
    action_type: ActionType
    is_preview: bool = False
    preview_context: Optional[PreviewContext] = None
    is_autosave: bool = False
    host_status: Optional[str] = None

    @property
    def stream_type(self) -> StreamType:
        return StreamType.PREVIEW if self.is_preview else StreamType.CONTENT

    @property
    def dedup_key(self) -> str:
        return build_dedup_key(self.stream_type, self.node_type, self.node_id)

    @classmethod
    def from_payload(cls, data: Any) -> "MutationEvent":
        """
        Parse a JSON mutation event.

        Raises:
            MalformedMutation: missing node_id, unknown node_type/action_type,
                or a body that is not an object.
        """
        if not isinstance(data, Mapping):
            raise MalformedMutation("Mutation event must be an object")

        node_id = data.get("node_id")
        if node_id is None or str(node_id).strip() == "":
            raise MalformedMutation("Mutation event is missing node_id")

        try:
            node_type = NodeType(str(data.get("node_type", "")).strip().lower())
        except ValueError:
            raise MalformedMutation(f"Unknown node_type: {data.get('node_type')!r}")

        try:
            action_type = ActionType(str(data.get("action_type", "")).strip().upper())
        except ValueError:
            raise MalformedMutation(f"Unknown action_type: {data.get('action_type')!r}")

        is_preview = bool(data.get("is_preview", False))
        preview_context = None
        if is_preview:
            context = data.get("preview_context") or {}
            if not isinstance(context, Mapping):
                raise MalformedMutation("preview_context must be an object")
            preview_context = PreviewContext(
                revision_id=_optional_str(context.get("revision_id")),
                session_token=_optional_str(context.get("session_token")),
                screenshot_requested=bool(context.get("screenshot_requested", False)),
            )

        return cls(
            node_type=node_type,
            node_id=str(node_id).strip(),
            action_type=action_type,
            is_preview=is_preview,
            preview_context=preview_context,
            is_autosave=bool(data.get("is_autosave", False)),
            host_status=_optional_str(data.get("host_status")),
        )


def _optional_str(value):
    return None if value is None else str(value)


@dataclass
class NoOp:
    """record() outcome when no action was written."""
    reason: str
    detail: dict = field(default_factory=dict)


class ChangeTracker:

    def __init__(self, store, correlator, debug: bool = False,
                 clock: Callable[[], datetime] = utcnow,
                 on_recorded: Optional[Callable[[Action], None]] = None):
        self.store = store
        self.correlator = correlator
        self.debug = debug
        self.clock = clock
        self.on_recorded = on_recorded

    def record(self, mutation_event: Union[MutationEvent, Mapping]) -> Union[Action, NoOp]:
        """
        Capture one mutation as an Action, coalescing into the node's pending action.

        Args:
            mutation_event: MutationEvent or its JSON-object form

        Returns:
            The appended or coalesced Action, or NoOp describing why nothing was written
        """
        try:
            event = mutation_event
            if not isinstance(event, MutationEvent):
                event = MutationEvent.from_payload(event)

            noise = self._noise_reason(event)
            if noise:
                self._log_dropped(noise, event)
                return NoOp(noise)

            if self._seen_in_request(event):
                self._log_dropped("duplicate_in_request", event)
                return NoOp("duplicate_in_request")

            action = self._write(event)
        except MalformedMutation as e:
            logger.warning("mutation_dropped", reason="malformed", error=str(e))
            return NoOp("malformed", {"error": str(e)})
        except Exception as e:
            # The host's save must not fail because capture failed
            db.session.rollback()
            logger.error("mutation_capture_failed", error=str(e), exc_info=True)
            return NoOp("error", {"error": str(e)})

        if action is None:
            logger.error("mutation_capture_contended", dedup_key=event.dedup_key)
            return NoOp("contention")

        if self.on_recorded is not None:
            try:
                self.on_recorded(action)
            except Exception as e:
                logger.error("dispatch_trigger_failed", sequence=action.sequence, error=str(e), exc_info=True)
        return action

    def _write(self, event: MutationEvent) -> Optional[Action]:
        preview_data = event.preview_context.to_dict() if event.is_preview and event.preview_context else None
        if event.is_preview and preview_data is None:
            preview_data = PreviewContext().to_dict()

        for _ in range(MAX_RECORD_ATTEMPTS):
            now = self.clock()
            if self.store.coalesce_update(event.dedup_key, event.action_type, now, preview_data):
                action = self.store.find_pending(event.dedup_key)
                if action is None:
                    # Claimed by a dispatcher right after the update; it carries this change
                    action = self.store.latest_for_key(event.dedup_key)
                elif event.is_preview:
                    self.correlator.refresh(action)
                logger.info(
                    "mutation_coalesced",
                    sequence=action.sequence,
                    dedup_key=event.dedup_key,
                    action_type=event.action_type.value,
                )
                return action

            action = Action(
                action_type=event.action_type,
                node_type=event.node_type,
                node_id=event.node_id,
                stream_type=event.stream_type,
                dedup_key=event.dedup_key,
                preview_data=preview_data,
                created_at=now,
            )
            try:
                self.store.append(
                    action,
                    before_commit=self.correlator.correlate if event.is_preview else None,
                )
            except ConcurrencyLost:
                # Another request appended the same node first; fold into it
                continue

            logger.info(
                "mutation_recorded",
                sequence=action.sequence,
                dedup_key=event.dedup_key,
                action_type=event.action_type.value,
                stream_type=event.stream_type.value,
            )
            return action
        return None

    def _noise_reason(self, event: MutationEvent) -> Optional[str]:
        if event.is_autosave:
            return "autosave"
        status = (event.host_status or "").lower()
        if status in NOISE_STATUSES:
            return f"status_{status}"
        if not event.is_preview and status in CONTENT_ONLY_NOISE_STATUSES:
            return f"status_{status}"
        return None

    def _seen_in_request(self, event: MutationEvent) -> bool:
        """The host can fire the same hook several times for one save within a request."""
        if not has_request_context():
            return False
        seen = request.environ.setdefault("action_monitor.seen_mutations", set())
        key = (event.dedup_key, event.action_type)
        if key in seen:
            return True
        seen.add(key)
        return False

    def _log_dropped(self, reason, event):
        log = logger.info if self.debug else logger.debug
        log(
            "mutation_dropped",
            reason=reason,
            node_type=event.node_type.value,
            node_id=event.node_id,
            action_type=event.action_type.value,
        )
