"""
AIRC Bridge Errors

Only startup faults are raised. Steady-state registry failures are
returned as structured results and host channel faults are logged.
"""


class AIRCError(Exception):
    """Base exception for AIRC bridge errors."""
    pass


class NotRegisteredError(AIRCError):
    """Operation requires a registry session token."""
    pass


class RegistrationError(AIRCError):
    """Registry rejected the registration or could not be reached."""
    def __init__(self, reason: str | None):
        self.reason = reason
        super().__init__(f"AIRC registration failed: {reason}")


class GatewayConnectionError(AIRCError):
    """Host channel could not be opened."""
    def __init__(self, url: str, cause: Exception):
        self.url = url
        self.cause = cause
        super().__init__(f"Could not connect to gateway at {url}: {cause}")


class FrameDecodeError(AIRCError):
    """Host channel frame could not be decoded."""
    pass


class ConfigError(AIRCError):
    """Invalid bridge configuration."""
    pass
