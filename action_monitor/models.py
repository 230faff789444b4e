from flask_sqlalchemy import SQLAlchemy
from enum import Enum

from action_monitor.datetime_utils import utcnow, to_iso_utc, format_datetime_utc

db = SQLAlchemy()


class ActionType(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"


class NodeType(Enum):
    POST = "post"
    TERM = "term"
    USER = "user"
    MENU = "menu"
    SETTING = "setting"
    PREVIEW = "preview"


class StreamType(Enum):
    CONTENT = "CONTENT"
    PREVIEW = "PREVIEW"


class ActionStatus(Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (ActionStatus.DELIVERED, ActionStatus.FAILED)


class PollStatus(Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


def build_dedup_key(stream_type, node_type, node_id):
    """Coalescing key for a node within a stream: 'CONTENT:post:42'."""
    return f"{stream_type.value}:{node_type.value}:{node_id}"


class Action(db.Model):
    """One recorded content mutation awaiting or having completed delivery."""
    __tablename__ = "actions"

    # Allocated by the database; AUTOINCREMENT keeps SQLite from reusing ids
    sequence = db.Column(db.Integer, primary_key=True, autoincrement=True)
    action_type = db.Column(db.Enum(ActionType), nullable=False)
    node_type = db.Column(db.Enum(NodeType), nullable=False)
    node_id = db.Column(db.String(191), nullable=False)
    stream_type = db.Column(db.Enum(StreamType), nullable=False, default=StreamType.CONTENT)
    status = db.Column(db.Enum(ActionStatus), nullable=False, default=ActionStatus.PENDING)
    dedup_key = db.Column(db.String(255), nullable=False)

    # Delivery bookkeeping
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    not_before = db.Column(db.DateTime, nullable=True)  # backoff: not eligible before this time

    # {revision_id, session_token, screenshot_requested}; PREVIEW stream only
    preview_data = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("idx_actions_dedup_status", "dedup_key", "status"),
        db.Index("idx_actions_stream_status_seq", "stream_type", "status", "sequence"),
        # At most one PENDING row per node, even with concurrent appenders
        db.Index(
            "uq_actions_pending_dedup",
            "dedup_key",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        {"sqlite_autoincrement": True},
    )

    preview_token = db.relationship(
        "PreviewToken",
        back_populates="action",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return (
            f"<Action #{self.sequence} {self.action_type.value} "
            f"{self.node_type.value}:{self.node_id} {self.status.value}>"
        )

    def to_payload_entry(self, include_preview=False):
        """Entry for the outbound webhook body."""
        entry = {
            "node_type": self.node_type.value,
            "node_id": self.node_id,
            "action_type": self.action_type.value,
            "sequence": self.sequence,
        }
        if include_preview and self.preview_data is not None:
            preview = dict(self.preview_data)
            preview["poll_token"] = self.preview_token.token if self.preview_token else None
            entry["preview"] = preview
        return entry

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "action_type": self.action_type.value,
            "node_type": self.node_type.value,
            "node_id": self.node_id,
            "stream_type": self.stream_type.value,
            "status": self.status.value,
            "dedup_key": self.dedup_key,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "not_before": to_iso_utc(self.not_before),
            "created_at": to_iso_utc(self.created_at),
            "updated_at": to_iso_utc(self.updated_at),
            "poll_token": self.preview_token.token if self.preview_token else None,
        }


class PreviewToken(db.Model):
    """Short-lived poll handle for a PREVIEW action."""
    __tablename__ = "preview_tokens"

    token = db.Column(db.String(64), primary_key=True)
    action_sequence = db.Column(
        db.Integer, db.ForeignKey("actions.sequence"), nullable=False, unique=True, index=True
    )
    status = db.Column(db.Enum(PollStatus), nullable=False, default=PollStatus.PENDING)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    action = db.relationship("Action", back_populates="preview_token")

    def __repr__(self):
        return f"<PreviewToken {self.token[:8]}... action #{self.action_sequence} {self.status.value}>"

    def to_dict(self):
        return {
            "poll_token": self.token,
            "action_sequence": self.action_sequence,
            "status": self.status.value,
            "created_at": to_iso_utc(self.created_at),
            "expires_at": to_iso_utc(self.expires_at),
            "resolved_at": to_iso_utc(self.resolved_at),
        }


class DeliveryLog(db.Model):
    """One row per outbound webhook attempt, for the administrative view."""
    __tablename__ = "delivery_logs"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.String(64), nullable=False, index=True)
    stream_type = db.Column(db.Enum(StreamType), nullable=False)
    target_url = db.Column(db.String(2048), nullable=False)
    outcome = db.Column(db.String(20), nullable=False)  # 'delivered', 'retry', 'failed'
    http_status = db.Column(db.Integer, nullable=True)
    attempt = db.Column(db.Integer, nullable=False)
    latency_ms = db.Column(db.Float, nullable=True)
    action_sequences = db.Column(db.JSON, nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    logged_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<DeliveryLog {self.delivery_id[:12]} {self.outcome} attempt {self.attempt}>"

    def to_dict(self):
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "stream_type": self.stream_type.value,
            "target_url": self.target_url,
            "outcome": self.outcome,
            "http_status": self.http_status,
            "attempt": self.attempt,
            "latency_ms": self.latency_ms,
            "action_sequences": self.action_sequences,
            "error_message": self.error_message,
            "logged_at": to_iso_utc(self.logged_at),
            "logged_at_display": format_datetime_utc(self.logged_at),
        }
