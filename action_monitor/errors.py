class ActionMonitorError(Exception):
    """Base error for the action monitor."""


class MalformedMutation(ActionMonitorError):
    """Mutation payload is missing required fields or has unknown values."""


class ConfigurationError(ActionMonitorError):
    """Missing or invalid configuration (e.g. webhook URL)."""


class ConcurrencyLost(ActionMonitorError):
    """Compare-and-swap lost; another worker owns the action."""


class DeliveryError(ActionMonitorError):
    """Outbound webhook delivery failure."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network error, timeout, 408, 429 or 5xx. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Target rejected the payload (4xx other than 408/429). Not retried."""
