"""
Error taxonomy for callbridge.

Every failure that crosses a component boundary is one of these classes so the
routing layer can tell "bad input" apart from "upstream down" without string
matching on messages.
"""

from typing import List, Optional


class CallBridgeError(Exception):
    """Base class for all callbridge errors."""


class ConfigurationError(CallBridgeError):
    """Required configuration is absent or invalid. Fatal at startup."""

    def __init__(self, missing: List[str], message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(message or f"Missing required configuration: {', '.join(self.missing)}")


class InputValidationError(CallBridgeError):
    """Caller supplied a malformed or missing value. Never retried."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        self.fields = list(fields or [])
        super().__init__(message)


class RemoteTransportError(CallBridgeError):
    """A remote service could not be reached or answered with a bad HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class RemoteLogicalError(CallBridgeError):
    """A remote service was reachable but reported a non-success code."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class TranscodeError(CallBridgeError):
    """The transcoder could not be started or exited non-zero."""

    def __init__(self, message: str, diagnostic: str = ""):
        self.diagnostic = diagnostic
        super().__init__(message)


class CacheError(CallBridgeError):
    """Local media storage failed (disk full, permissions, missing output)."""
