# Package
from flask import Blueprint

from action_monitor.logging_config import get_logger

logger = get_logger(__name__)

api_bp = Blueprint("api", __name__)

from action_monitor.api import routes  # noqa: E402,F401
