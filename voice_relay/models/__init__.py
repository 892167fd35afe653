"""Pydantic schemas exposed by the voice relay."""
from .relay import ErrorResponse, ProcessAudioRequest, ProcessAudioResponse

__all__ = [
    "ErrorResponse",
    "ProcessAudioRequest",
    "ProcessAudioResponse",
]
