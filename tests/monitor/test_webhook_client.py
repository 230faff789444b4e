"""
Tests for the Webhook Client.
These tests verify outcome classification, the retry/backoff state machine,
terminal FAILED behavior, delivery headers and logs, and idempotent delivery
when a timeout hides a successful receipt.
"""
import pytest
import requests
from datetime import timedelta
from unittest.mock import Mock

from conftest import BUILD_URL, posted_payload
from action_monitor.errors import PermanentDeliveryError, TransientDeliveryError
from action_monitor.models import ActionStatus, DeliveryLog, PollStatus, StreamType
from action_monitor.services.webhook_client import backoff_seconds, classify_status


def record(monitor, node_id, **extra):
    event = {"node_type": "post", "node_id": node_id, "action_type": "UPDATE"}
    event.update(extra)
    return monitor.tracker.record(event)


def response(status_code):
    return Mock(status_code=status_code)


# ==============================================================================
# CLASSIFICATION
# ==============================================================================

class TestClassifyStatus:
    """Tests for classify_status and backoff_seconds."""

    @pytest.mark.parametrize("status", [200, 201, 204])
    def test_success_codes_pass(self, status):
        assert classify_status(status) is None

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422])
    def test_client_errors_are_permanent(self, status):
        with pytest.raises(PermanentDeliveryError) as exc_info:
            classify_status(status)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_timeouts_throttling_and_server_errors_are_transient(self, status):
        with pytest.raises(TransientDeliveryError):
            classify_status(status)

    def test_backoff_doubles_per_attempt(self):
        assert [backoff_seconds(n, 2) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]

    def test_backoff_is_capped(self):
        assert backoff_seconds(40, 2) == 3600


# ==============================================================================
# OUTCOMES
# ==============================================================================

class TestDeliveryOutcomes:
    """Tests for how each HTTP outcome settles the actions in a batch."""

    def test_success_marks_every_action_delivered(self, monitor, mock_post):
        a = record(monitor, 1).sequence
        b = record(monitor, 2).sequence

        report = monitor.dispatcher.run_cycle()

        delivery = report.stream(StreamType.CONTENT).delivery
        assert delivery.ok
        assert delivery.delivered == [a, b]
        for sequence in (a, b):
            action = monitor.store.get(sequence)
            assert action.status == ActionStatus.DELIVERED
            assert action.attempt_count == 1

    def test_client_error_fails_without_retry(self, monitor, clock, mock_post):
        mock_post.return_value = response(422)
        sequence = record(monitor, 1).sequence

        monitor.dispatcher.run_cycle()
        clock.advance(3600)
        monitor.dispatcher.run_cycle()

        assert mock_post.call_count == 1
        action = monitor.store.get(sequence)
        assert action.status == ActionStatus.FAILED
        assert "422" in action.last_error

    @pytest.mark.parametrize("status", [408, 429, 503])
    def test_transient_status_requeues_with_backoff(self, monitor, clock, mock_post, status):
        mock_post.return_value = response(status)
        sequence = record(monitor, 1).sequence

        report = monitor.dispatcher.run_cycle()

        assert report.stream(StreamType.CONTENT).delivery.requeued == [sequence]
        action = monitor.store.get(sequence)
        assert action.status == ActionStatus.PENDING
        assert action.attempt_count == 1
        assert action.not_before == clock.now + timedelta(seconds=2)

    def test_connection_error_is_transient(self, monitor, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        sequence = record(monitor, 1).sequence

        report = monitor.dispatcher.run_cycle()

        assert report.stream(StreamType.CONTENT).delivery.outcome == "retry"
        assert monitor.store.get(sequence).status == ActionStatus.PENDING

    def test_backoff_defers_next_attempt(self, monitor, clock, mock_post):
        mock_post.return_value = response(503)
        record(monitor, 1)
        monitor.dispatcher.run_cycle()

        clock.advance(1)
        monitor.dispatcher.run_cycle()
        assert mock_post.call_count == 1

        clock.advance(1)
        mock_post.return_value = response(200)
        monitor.dispatcher.run_cycle()
        assert mock_post.call_count == 2

    def test_exhausted_attempts_end_failed_and_stay_failed(self, monitor, clock, mock_post):
        """MAX_ATTEMPTS=3: three transient failures leave the action FAILED for good."""
        mock_post.return_value = response(500)
        sequence = record(monitor, 1).sequence

        for _ in range(3):
            monitor.dispatcher.run_cycle()
            clock.advance(60)

        action = monitor.store.get(sequence)
        assert action.status == ActionStatus.FAILED
        assert action.attempt_count == 3
        assert "Gave up after 3 attempts" in action.last_error

        mock_post.return_value = response(200)
        clock.advance(3600)
        monitor.dispatcher.run_cycle()
        assert mock_post.call_count == 3
        assert monitor.store.get(sequence).status == ActionStatus.FAILED

    def test_retry_superseded_by_newer_pending_action(self, monitor, clock, mock_post):
        """A node edited while its delivery is in flight keeps only the newer pending action."""
        old = record(monitor, 1).sequence
        newer = {}

        def post(url, **kwargs):
            newer["sequence"] = record(monitor, 1, action_type="DELETE").sequence
            return response(503)

        mock_post.side_effect = post
        monitor.dispatcher.run_cycle()

        assert monitor.store.get(old).status == ActionStatus.FAILED
        assert "superseded" in monitor.store.get(old).last_error
        assert monitor.store.get(newer["sequence"]).status == ActionStatus.PENDING


# ==============================================================================
# REQUEST DETAILS AND LOGGING
# ==============================================================================

class TestRequest:
    """Tests for the outbound request and delivery log."""

    def test_request_carries_delivery_id_and_timeout(self, monitor, mock_post):
        record(monitor, 1)
        monitor.dispatcher.run_cycle()

        call = mock_post.call_args
        payload = posted_payload(mock_post)
        assert call.args[0] == BUILD_URL
        assert call.kwargs["timeout"] == 5
        assert call.kwargs["headers"]["X-Delivery-Id"] == payload["delivery_id"]
        assert call.kwargs["headers"]["Idempotency-Key"] == payload["delivery_id"]

    def test_each_attempt_is_logged(self, monitor, clock, mock_post):
        mock_post.return_value = response(503)
        record(monitor, 1)
        monitor.dispatcher.run_cycle()
        clock.advance(10)
        mock_post.return_value = response(200)
        monitor.dispatcher.run_cycle()

        logs = DeliveryLog.query.order_by(DeliveryLog.id).all()
        assert [(log.outcome, log.attempt, log.http_status) for log in logs] == [("retry", 1, 503), ("delivered", 2, 200)]
        assert logs[0].target_url == BUILD_URL


# ==============================================================================
# IDEMPOTENT DELIVERY
# ==============================================================================

class TestIdempotentDelivery:
    """A timeout after the receiver accepted the payload must not double-process."""

    def test_false_negative_timeout_is_deduplicated_by_receiver(self, monitor, clock, mock_post):
        processed = []
        seen = set()
        calls = []

        def receiver(url, json=None, headers=None, timeout=None):
            calls.append(json["delivery_id"])
            if json["delivery_id"] not in seen:
                seen.add(json["delivery_id"])
                processed.append(json)
            if len(calls) == 1:
                raise requests.exceptions.ReadTimeout("read timed out")
            return response(200)

        mock_post.side_effect = receiver
        sequence = record(monitor, 42).sequence

        monitor.dispatcher.run_cycle()
        assert monitor.store.get(sequence).status == ActionStatus.PENDING

        clock.advance(10)
        monitor.dispatcher.run_cycle()

        assert calls[0] == calls[1]
        assert len(processed) == 1
        action = monitor.store.get(sequence)
        assert action.status == ActionStatus.DELIVERED
        assert action.attempt_count == 2


# ==============================================================================
# PREVIEW RESOLUTION
# ==============================================================================

class TestPreviewResolution:
    """Delivery outcomes are reflected on poll tokens."""

    def test_delivered_preview_resolves_done(self, monitor, mock_post):
        action = record(monitor, 1, is_preview=True)
        token = action.preview_token.token
        monitor.dispatcher.run_cycle()
        assert monitor.correlator.resolve(token) == PollStatus.DONE

    def test_rejected_preview_resolves_failed(self, monitor, mock_post):
        mock_post.return_value = response(400)
        action = record(monitor, 1, is_preview=True)
        token = action.preview_token.token
        monitor.dispatcher.run_cycle()
        assert monitor.correlator.resolve(token) == PollStatus.FAILED

    def test_retrying_preview_stays_pending(self, monitor, mock_post):
        mock_post.return_value = response(503)
        action = record(monitor, 1, is_preview=True)
        token = action.preview_token.token
        monitor.dispatcher.run_cycle()
        assert monitor.correlator.resolve(token) == PollStatus.PENDING
