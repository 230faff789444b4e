"""
Shared fixtures for the action monitor tests.

Every test gets a fresh in-memory SQLite database and a controllable clock,
so debounce, backoff and TTL behavior is exercised without sleeping.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from action_monitor import create_app
from action_monitor.models import db
from action_monitor.registry import get_monitor
from action_monitor.services.auth_gate import StaticTokenGate

BUILD_URL = "https://builds.example.test/__refresh"
PREVIEW_URL = "https://preview.example.test/__preview"
ADMIN_TOKEN = "admin-secret"


class FakeClock:
    """Callable returning a naive UTC datetime that only moves when told to."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeJob:
    def __init__(self, job_id, func, args, next_run_time):
        self.id = job_id
        self.func = func
        self.args = args
        self.next_run_time = next_run_time


class FakeScheduler:
    """
    Stand-in for BackgroundScheduler date jobs, driven by the fake clock.

    Jobs only run when a test calls run_due().
    """

    def __init__(self, clock):
        self.clock = clock
        self.jobs = {}
        self.added = []
        self.running = False

    def add_job(self, func, trigger=None, run_date=None, args=None, id=None, **kwargs):
        job = FakeJob(id, func, list(args or []), run_date)
        self.jobs[id] = job
        self.added.append((id, run_date))
        return job

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def run_due(self):
        """Run every job whose run time has come, including follow-ups that are already due."""
        ran = 0
        while True:
            due = [job for job in self.jobs.values() if job.next_run_time <= self.clock.now]
            if not due:
                return ran
            for job in sorted(due, key=lambda j: j.next_run_time):
                if self.jobs.get(job.id) is job:
                    del self.jobs[job.id]
                    job.func(*job.args)
                    ran += 1

    def shutdown(self, wait=True):
        pass


def base_config(**overrides):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "BUILD_WEBHOOK_URL": BUILD_URL,
        "PREVIEW_WEBHOOK_URL": PREVIEW_URL,
        "DISPATCH_MODE": "scheduled",
        "DEBOUNCE_SECONDS": 0,
        "MAX_ATTEMPTS": 3,
        "BACKOFF_BASE_SECONDS": 2,
        "DELIVERY_TIMEOUT_SECONDS": 5,
        "PREVIEW_TTL_SECONDS": 60,
        "LOG_FILE": None,
    }
    config.update(overrides)
    return config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_overrides():
    """Override in a test module to change settings for the app fixture."""
    return {}


@pytest.fixture
def app(clock, config_overrides):
    """Create Flask application for testing."""
    app = create_app(
        config_overrides=base_config(**config_overrides),
        token_gate=StaticTokenGate({ADMIN_TOKEN: "1"}),
        scheduler=FakeScheduler(clock),
        clock=clock,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def monitor(app):
    return get_monitor(app)


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def mock_post():
    """Patch the outbound HTTP call; returns 200 unless a test says otherwise."""
    with patch("action_monitor.services.webhook_client.requests.post") as post:
        post.return_value = Mock(status_code=200)
        yield post


def posted_payload(mock_post, call_index=-1):
    """JSON body of a recorded requests.post call."""
    return mock_post.call_args_list[call_index].kwargs["json"]
