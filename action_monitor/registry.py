"""
Process-wide component registry.

One ActionMonitor is built per Flask app by create_app() and lives in
app.extensions["action_monitor"]; everything else reaches the components
through get_monitor().
"""
import atexit
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from flask import current_app

from action_monitor.datetime_utils import to_naive_utc, utcnow
from action_monitor.logging_config import get_logger
from action_monitor.models import StreamType, db
from action_monitor.services.action_store import ActionStore
from action_monitor.services.auth_gate import AuthTokenGate, StaticTokenGate
from action_monitor.services.change_tracker import ChangeTracker
from action_monitor.services.delivery_log_service import DeliveryLogService
from action_monitor.services.dispatcher import Dispatcher
from action_monitor.services.preview_correlator import PreviewCorrelator
from action_monitor.services.webhook_client import WebhookClient

logger = get_logger(__name__)

EXTENSION_KEY = "action_monitor"
DISPATCH_JOB_PREFIX = "dispatch_"


def dispatch_job_id(stream_type: StreamType) -> str:
    return f"{DISPATCH_JOB_PREFIX}{stream_type.value}"


class ActionMonitor:
    """Owns the store, tracker, dispatcher, webhook client, correlator and token gate."""

    def __init__(self, settings, token_gate: Optional[AuthTokenGate] = None,
                 clock: Callable[[], datetime] = utcnow, scheduler=None):
        self.settings = settings
        self.clock = clock
        self.store = ActionStore(clock)
        self.correlator = PreviewCorrelator(settings.preview_ttl_seconds, clock)
        self.delivery_log = DeliveryLogService(clock)
        self.webhook_client = WebhookClient(
            self.store, settings, correlator=self.correlator, delivery_log=self.delivery_log, clock=clock
        )
        self.dispatcher = Dispatcher(self.store, self.webhook_client, settings, clock)
        self.tracker = ChangeTracker(
            self.store, self.correlator, debug=settings.debug, clock=clock, on_recorded=self.notify_recorded
        )
        self.token_gate = token_gate or StaticTokenGate({})
        self.scheduler = scheduler
        self.app = None
        self._schedule_lock = threading.Lock()

    def init_app(self, app):
        self.app = app
        app.extensions[EXTENSION_KEY] = self
        if self.scheduler is None and self.settings.dispatch_mode == "sync":
            self.scheduler = self._start_sync_scheduler()

    def _start_sync_scheduler(self):
        """Per-process scheduler for sync mode: on-demand dispatch jobs plus daily maintenance."""
        scheduler = BackgroundScheduler(timezone="UTC", executors={"default": ThreadPoolExecutor(2)})
        scheduler.add_job(
            func=self.maintenance_job,
            trigger="interval",
            hours=24,
            id="maintenance",
            replace_existing=True,
        )
        scheduler.start()
        atexit.register(self.shutdown)
        logger.info("Sync dispatch scheduler started")
        return scheduler

    def notify_recorded(self, action):
        """Change Tracker hook: in sync mode, make sure the action's stream is dispatched after the debounce window."""
        if self.settings.dispatch_mode != "sync":
            return
        run_at = self.clock() + timedelta(seconds=self.settings.debounce_seconds)
        self.schedule_dispatch(action.stream_type, run_at)

    def schedule_dispatch(self, stream_type: StreamType, run_at: datetime) -> Optional[datetime]:
        """
        Make sure a dispatch cycle for stream_type runs no later than run_at.

        At most one dispatch job is outstanding per stream. An existing job
        that is already due at or before run_at is kept, so a burst of
        mutations adds no work.

        Returns:
            The run time of the outstanding job, or None without a scheduler
        """
        if self.scheduler is None or self.app is None:
            logger.warning("dispatch_not_scheduled", stream_type=stream_type.value, reason="no scheduler")
            return None

        job_id = dispatch_job_id(stream_type)
        with self._schedule_lock:
            existing = self.scheduler.get_job(job_id)
            if existing is not None and existing.next_run_time is not None:
                due = to_naive_utc(existing.next_run_time)
                if due <= run_at:
                    return due

            self.scheduler.add_job(
                func=self.dispatch_job,
                trigger="date",
                run_date=run_at,
                args=[stream_type],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=None,
                coalesce=True,
            )

        logger.debug("dispatch_scheduled", stream_type=stream_type.value, run_at=run_at.isoformat())
        return run_at

    def dispatch_job(self, stream_type: StreamType):
        """Run one cycle for stream_type, then schedule the next one if actions are still waiting."""
        with self.app.app_context():
            try:
                report = self.dispatcher.run_cycle([stream_type])
                self._schedule_follow_up(stream_type, report.stream(stream_type))
                return report
            except Exception as e:
                logger.error("background_dispatch_failed", stream_type=stream_type.value, error=str(e), exc_info=True)
                db.session.rollback()
                return None
            finally:
                db.session.remove()

    def _schedule_follow_up(self, stream_type, stream_report):
        # A stream without a valid target keeps its actions until the config is fixed
        if stream_report is None or stream_report.error:
            return
        run_at = self.dispatcher.next_run_at(stream_type)
        if run_at is not None:
            self.schedule_dispatch(stream_type, max(run_at, self.clock()))

    def maintenance_job(self):
        with self.app.app_context():
            try:
                result = self.run_maintenance()
                logger.info("maintenance_completed", **result)
            except Exception as e:
                logger.error("maintenance_failed", error=str(e), exc_info=True)
                db.session.rollback()
            finally:
                db.session.remove()

    def run_maintenance(self) -> dict:
        """Expire stale poll tokens and prune old terminal actions."""
        expired = self.correlator.expire_stale()
        cutoff = self.clock() - timedelta(days=self.settings.action_retention_days)
        pruned = self.store.prune(cutoff)
        return {"expired_tokens": expired, "pruned_actions": pruned}

    def shutdown(self):
        if self.scheduler is not None and getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)


def get_monitor(app=None) -> ActionMonitor:
    """The ActionMonitor registered on app (defaults to current_app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
