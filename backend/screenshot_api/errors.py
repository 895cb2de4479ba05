"""
Capture error taxonomy

Every error carries a stable machine-checkable ``reason`` and a free-text
``details`` string. Only navigation and render errors are retried.
"""

from typing import Optional


class CaptureError(Exception):
    """Base class for every failure the capture pipeline reports"""

    reason = "capture_failed"
    retryable = False

    def __init__(self, details: str, cause: Optional[BaseException] = None):
        super().__init__(details)
        self.details = details
        self.cause = cause


class InputError(CaptureError):
    """Missing or invalid URL, or an option out of range"""

    reason = "invalid_input"


class NavigationError(CaptureError):
    """Timeout, DNS failure or the target refusing the navigation"""

    reason = "navigation_failed"
    retryable = True


class RenderError(CaptureError):
    """Selector never appeared or the capture call failed"""

    reason = "render_failed"
    retryable = True


class SessionError(CaptureError):
    """Browser could not be launched or configured"""

    reason = "session_error"


class StorageError(CaptureError):
    """Object store rejected or could not receive the upload"""

    reason = "storage_error"


class TeardownError(CaptureError):
    """Closing a session failed; logged, never surfaced"""

    reason = "teardown_error"
