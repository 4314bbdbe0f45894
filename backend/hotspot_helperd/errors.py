from typing import Optional


class HotspotError(Exception):
    """Base class for failures reported by a hotspot backend."""


class ValidationError(HotspotError):
    """Profile is not usable for the active backend; nothing was executed."""


class ExternalToolError(HotspotError):
    def __init__(self, message: str, *, output: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class TetheringTimeoutError(HotspotError):
    def __init__(self, message: str, *, state: Optional[int] = None):
        super().__init__(message)
        self.state = state
