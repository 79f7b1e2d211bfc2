"""Exception types shared across the pipeline."""

from typing import List, Optional


class CueCardError(Exception):
    """Base class for pipeline errors."""


class NotReadyError(CueCardError):
    """A session or generation was requested without the required configuration."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__("Not ready: missing " + ", ".join(self.missing))


class TransientIOError(CueCardError):
    """Connection-level failure that is retried or surfaced as a status change."""


class TranscriptionError(TransientIOError):
    pass


class GenerationError(TransientIOError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayloadError(CueCardError, ValueError):
    """Upstream sent something that could not be parsed."""


class GenerationCancelled(CueCardError):
    """Raised at a yield point when the generation's token has been cancelled."""
