"""Error kinds raised while relaying audio through the upstream services."""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for failures of the audio relay pipeline."""

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class ValidationError(RelayError):
    """Raised when the request body lacks usable audio data."""


class UpstreamConnectError(RelayError):
    """Raised when an upstream service cannot be reached."""


class UpstreamError(RelayError):
    """Raised when an upstream service answers with a failure."""


class EmptyTranscriptError(RelayError):
    """Raised when transcription succeeds without producing any text."""
