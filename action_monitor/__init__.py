__version__ = "0.1.0"

import os
import atexit

from flask import Flask, jsonify
from flask_cors import CORS
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

from action_monitor.logging_config import configure_logging, get_logger
from action_monitor.models import db

logger = get_logger(__name__)


def init_scheduler(app, monitor):
    """Start the periodic dispatch and maintenance jobs (scheduled mode)."""

    # --- Prevent scheduler duplication in multi-worker environments ---
    # Only run the scheduler on one instance
    if os.environ.get("WERKZEUG_RUN_MAIN") != "true" and not os.environ.get("IS_SCHEDULER_WORKER"):
        logger.info("Skipping scheduler startup on this worker")
        return None

    def dispatch_job():
        with app.app_context():
            try:
                monitor.dispatcher.run_cycle()
            except Exception as e:
                logger.error("scheduled_dispatch_failed", error=str(e), exc_info=True)
                db.session.rollback()

    executors = {"default": ThreadPoolExecutor(3)}
    scheduler = BackgroundScheduler(executors=executors)

    scheduler.add_job(
        func=dispatch_job,
        trigger="interval",
        seconds=monitor.settings.dispatch_interval_seconds,
        id="dispatch_cycle",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        func=monitor.maintenance_job,
        trigger="interval",
        hours=24,
        id="maintenance",
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", interval_seconds=monitor.settings.dispatch_interval_seconds)
    return scheduler


def create_app(config_overrides=None, token_gate=None, scheduler=None, clock=None):
    """
    Build the Flask app and its ActionMonitor registry.

    Args:
        config_overrides: dict applied on top of the environment config class
        token_gate: AuthTokenGate; defaults to StaticTokenGate from PREVIEW_AUTH_TOKENS
        scheduler: APScheduler-style scheduler for sync-mode dispatch jobs;
            sync mode starts its own BackgroundScheduler when omitted
        clock: callable returning naive UTC now, shared by all components
    """
    from action_monitor.config import get_config, MonitorSettings
    from action_monitor.db_config import configure_database
    from action_monitor.registry import ActionMonitor
    from action_monitor.services.auth_gate import StaticTokenGate
    from action_monitor.api import api_bp
    from action_monitor.datetime_utils import utcnow

    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    log_level = "DEBUG" if app.config.get("ACTION_MONITOR_DEBUG") else app.config.get("LOG_LEVEL", "INFO")
    configure_logging(log_level=log_level, log_file=app.config.get("LOG_FILE"))

    configure_database(app)
    settings = MonitorSettings.from_config(app.config)

    logger.info(
        "Starting action monitor",
        environment=getattr(config_class, "ENV", "local"),
        dispatch_mode=settings.dispatch_mode,
        build_webhook_configured=bool(settings.build_webhook_url),
        preview_webhook_configured=bool(settings.preview_webhook_url),
    )

    # The external preview UI polls from the browser
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]
    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "OPTIONS"])

    # Tables are created by migrations/create_action_monitor_tables.py
    db.init_app(app)

    monitor = ActionMonitor(
        settings,
        token_gate=token_gate or StaticTokenGate.from_string(app.config.get("PREVIEW_AUTH_TOKENS")),
        clock=clock or utcnow,
        scheduler=scheduler,
    )
    monitor.init_app(app)

    app.register_blueprint(api_bp, url_prefix="/api")

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found"}), 404

    if settings.dispatch_mode == "scheduled" and not app.config.get("TESTING"):
        init_scheduler(app, monitor)

    return app
