"""
Error taxonomy for the stream gateway.

Validation problems are raised before any network call. Everything that
talks to the network raises one of the other kinds, which the HTTP layer
turns into sanitized JSON responses.
"""

from typing import Tuple


class StreamGatewayError(Exception):
    """Base class for all gateway errors"""


class ValidationError(StreamGatewayError, ValueError):
    """Bad or unsafe input (malformed URL, disallowed scheme, exploit pattern)"""


class AuthError(StreamGatewayError):
    """A control plane session could not be established"""


class ControlPlaneError(StreamGatewayError):
    """The control plane answered with an error status"""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.message = message
        super().__init__(f"control plane: {status_code} {message}".rstrip())


class GatewayError(StreamGatewayError):
    """No usable response from the control plane or an upstream stream source"""

    def __init__(self, message: str = "service unavailable", status_code: int = 502):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class UpstreamStatusError(GatewayError):
    """A proxied upstream answered outside the 200-399 range"""

    def __init__(self, upstream_status: int):
        self.upstream_status = upstream_status
        super().__init__(f"upstream returned {upstream_status}", status_code=502)


def map_control_plane_error(exc: Exception) -> Tuple[int, str]:
    """Convert a control plane failure to an HTTP status and a client-safe message."""
    if isinstance(exc, ControlPlaneError):
        if exc.status_code == 404:
            return 404, "stream not found"
        if exc.status_code == 409:
            return 409, "stream already exists"
        if exc.status_code == 502:
            return 502, "control plane unavailable"
        if exc.status_code in (401, 403):
            return 503, "unable to authenticate with control plane"
        return exc.status_code, exc.message or "control plane error"
    if isinstance(exc, AuthError):
        return 503, "unable to authenticate with control plane"
    if isinstance(exc, GatewayError):
        return exc.status_code, "control plane unavailable"
    # Anything else is unexpected; report it without detail
    return 502, "control plane unavailable"
