"""Request helpers shared by the API routes."""
from functools import wraps

from flask import g, jsonify, request

from action_monitor.logging_config import get_logger
from action_monitor.models import StreamType
from action_monitor.registry import get_monitor
from action_monitor.services.auth_gate import bearer_token_from_header

logger = get_logger(__name__)


def verify_request_token():
    """Run the Authorization header through the monitor's token gate."""
    token = bearer_token_from_header(request.headers.get("Authorization"))
    return get_monitor().token_gate.verify(token)


def require_bearer_token(f):
    """Decorator rejecting requests without a valid bearer token."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verification = verify_request_token()
        if not verification.valid:
            logger.info("unauthorized_request", path=request.path)
            return jsonify({"error": "Valid bearer token required"}), 401
        g.auth_user_id = verification.user_id
        return f(*args, **kwargs)
    return decorated_function


def int_arg(name, default, minimum=None, maximum=None):
    """
    Read an integer query argument.

    Raises:
        ValueError: if the value is not an integer
    """
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    value = int(raw)
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


def stream_type_arg(name="stream_type"):
    """
    Read an optional StreamType query argument.

    Raises:
        ValueError: for an unknown stream type
    """
    raw = request.args.get(name)
    if not raw:
        return None
    return StreamType(raw.strip().upper())
