"""Exception classes raised by the autoscaler."""


class AutoscalerError(Exception):
    """Base exception for all autoscaler errors."""
    pass


class ConfigurationError(AutoscalerError):
    """Raised when a pool or adapter configuration is invalid. Never retried."""
    pass


class LockError(AutoscalerError):
    """Raised when the lock backend itself fails (not when a lock is simply held)."""
    pass


class MetricsError(AutoscalerError):
    """Raised when a queue metrics snapshot cannot be collected."""
    pass


class PlatformAPIError(AutoscalerError):
    """Raised when a platform control API call fails."""

    def __init__(self, message: str, status_code: int = None, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # No status means timeout or connection failure
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class TransientPlatformAPIError(PlatformAPIError):
    """A platform failure that is worth retrying (timeout, 429, 5xx)."""
    pass


class CooldownActiveError(AutoscalerError):
    """Raised when a scaling action is attempted inside its cooldown window."""

    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = remaining_seconds
        super().__init__(f"Cooldown active, {round(remaining_seconds)}s remaining")
