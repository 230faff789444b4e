from action_monitor.services.action_store import ActionStore
from action_monitor.services.auth_gate import (
    AuthTokenGate,
    CallableTokenGate,
    StaticTokenGate,
    TokenVerification,
)
from action_monitor.services.change_tracker import ChangeTracker, MutationEvent, NoOp, PreviewContext
from action_monitor.services.delivery_log_service import DeliveryLogService
from action_monitor.services.dispatcher import DispatchReport, Dispatcher, StreamReport
from action_monitor.services.preview_correlator import PreviewCorrelator
from action_monitor.services.webhook_client import DeliveryResult, WebhookClient

__all__ = [
    "ActionStore",
    "AuthTokenGate",
    "CallableTokenGate",
    "StaticTokenGate",
    "TokenVerification",
    "ChangeTracker",
    "MutationEvent",
    "NoOp",
    "PreviewContext",
    "DeliveryLogService",
    "DispatchReport",
    "Dispatcher",
    "StreamReport",
    "PreviewCorrelator",
    "DeliveryResult",
    "WebhookClient",
]
