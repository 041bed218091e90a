"""
Error taxonomy shared by the session manager, the controllers and the
HTTP layer. Every error carries the HTTP status the API should answer with.
"""

from enum import Enum
from typing import Optional


class ConnectionFailure(str, Enum):
    REFUSED = "refused"
    AUTH_FAILED = "auth_failed"
    TRANSPORT = "transport"


class XenServerError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(XenServerError):
    """Required connection configuration is missing."""


class XenConnectionError(XenServerError):
    """Establishing a XenAPI session failed."""

    def __init__(self, message: str, cause: ConnectionFailure = ConnectionFailure.TRANSPORT) -> None:
        super().__init__(message)
        self.cause = cause


class SessionPoolExhausted(XenServerError):
    status_code = 503


class UpstreamError(XenServerError):
    """A remote XenAPI call failed while performing ``operation``."""

    def __init__(
        self,
        message: str,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class NotFound(UpstreamError):
    status_code = 404


class AmbiguousMatch(UpstreamError):
    status_code = 409
