"""
HTTP surface of the action monitor: the inbound mutation channel, action
reads for the build, preview polling, and a few administrative routes.
"""
from flask import jsonify, request

from action_monitor.api import api_bp
from action_monitor.api.helpers import int_arg, require_bearer_token, stream_type_arg, verify_request_token
from action_monitor.errors import ConcurrencyLost
from action_monitor.logging_config import get_logger
from action_monitor.models import StreamType, db
from action_monitor.registry import get_monitor
from action_monitor.services.change_tracker import NoOp

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


@api_bp.route("/mutations", methods=["POST"])
def record_mutations():
    """
    Inbound event channel from the host CMS.

    Accepts one event object or {"events": [...]}. Never fails the caller
    because of a bad event; those are counted as dropped.
    """
    data = request.get_json(silent=True)
    if isinstance(data, dict) and "events" in data:
        events = data.get("events")
    else:
        events = [data]
    if not isinstance(events, list):
        events = [events]

    monitor = get_monitor()
    tracker = monitor.tracker
    recorded = []
    dropped = []
    for event in events:
        outcome = tracker.record(event)
        if isinstance(outcome, NoOp):
            dropped.append({"reason": outcome.reason, **outcome.detail})
            continue
        poll_token = outcome.preview_token.token if outcome.preview_token else None
        # A preview folded into an older action shares its token, which may already be EXPIRED
        poll_status = monitor.correlator.resolve(poll_token) if poll_token else None
        recorded.append({
            "sequence": outcome.sequence,
            "dedup_key": outcome.dedup_key,
            "action_type": outcome.action_type.value,
            "stream_type": outcome.stream_type.value,
            "poll_token": poll_token,
            "poll_status": poll_status.value if poll_status else None,
        })

    return jsonify({
        "recorded": recorded,
        "dropped": len(dropped),
        "dropped_reasons": dropped,
    }), 202


@api_bp.route("/actions", methods=["GET"])
def list_actions():
    """Actions with sequence greater than ?since=, oldest first."""
    try:
        since = int_arg("since", 0, minimum=0)
        limit = int_arg("limit", 100, minimum=1, maximum=MAX_PAGE_SIZE)
        stream_type = stream_type_arg()
    except ValueError as e:
        return jsonify({"error": f"Invalid query parameter: {e}"}), 400

    # Preview actions are only readable with a valid token
    if stream_type != StreamType.CONTENT:
        verification = verify_request_token()
        if not verification.valid:
            if stream_type == StreamType.PREVIEW:
                return jsonify({"error": "Valid bearer token required"}), 401
            stream_type = StreamType.CONTENT

    actions = get_monitor().store.list_since(since, limit, stream_type)
    last_sequence = actions[-1].sequence if actions else since
    return jsonify({
        "actions": [a.to_dict() for a in actions],
        "last_sequence": last_sequence,
        "count": len(actions),
    }), 200


@api_bp.route("/preview/<poll_token>", methods=["GET"])
def poll_preview(poll_token):
    """Preview UI polling endpoint."""
    correlator = get_monitor().correlator
    status = correlator.resolve(poll_token)
    if status is None:
        return jsonify({"error": "Unknown poll token"}), 404

    token = correlator.get(poll_token)
    return jsonify({
        "poll_token": poll_token,
        "status": status.value,
        "action_sequence": token.action_sequence,
        "expires_at": token.to_dict()["expires_at"],
    }), 200


@api_bp.route("/actions/<int:sequence>/requeue", methods=["POST"])
@require_bearer_token
def requeue_action(sequence):
    """Administrative requeue of a FAILED action."""
    store = get_monitor().store
    try:
        requeued = store.requeue(sequence)
    except ConcurrencyLost as e:
        return jsonify({"error": str(e)}), 409

    if not requeued:
        action = store.get(sequence)
        if action is None:
            return jsonify({"error": f"Action {sequence} not found"}), 404
        return jsonify({"error": f"Action {sequence} is {action.status.value}, not FAILED"}), 409

    return jsonify({"action": store.get(sequence).to_dict()}), 200


@api_bp.route("/dispatch", methods=["POST"])
@require_bearer_token
def run_dispatch():
    """Run one dispatch cycle now and return its report."""
    try:
        report = get_monitor().dispatcher.run_cycle()
    except Exception as e:
        db.session.rollback()
        logger.error("Error in /api/dispatch", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500
    return jsonify(report.to_dict()), 200


@api_bp.route("/deliveries", methods=["GET"])
@require_bearer_token
def list_deliveries():
    """Recent delivery attempts for the administrative view."""
    try:
        limit = int_arg("limit", 50, minimum=1, maximum=MAX_PAGE_SIZE)
    except ValueError as e:
        return jsonify({"error": f"Invalid query parameter: {e}"}), 400

    entries = get_monitor().delivery_log.recent(limit)
    return jsonify({"deliveries": [e.to_dict() for e in entries]}), 200


@api_bp.route("/health", methods=["GET"])
def health():
    monitor = get_monitor()
    return jsonify({
        "status": "ok",
        "dispatch_mode": monitor.settings.dispatch_mode,
        "pending": {
            stream.value: monitor.store.count_pending(stream) for stream in StreamType
        },
    }), 200
