"""Pydantic models for the audio relay endpoint."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessAudioRequest(BaseModel):
    """Request payload carrying the recorded audio."""

    audio: Optional[str] = Field(
        default=None, description="Recorded audio encoded in base64"
    )


class ProcessAudioResponse(BaseModel):
    """Transcript, assistant reply and synthesised reply audio."""

    model_config = ConfigDict(populate_by_name=True)

    transcription: str = Field(..., description="Transcript of the submitted audio")
    bot_reply: str = Field(..., alias="botReply", description="Reply produced by the language model")
    audio_response: str = Field(
        ..., alias="audioResponse", description="Synthesised reply audio encoded in base64"
    )


class ErrorResponse(BaseModel):
    """Uniform error payload returned by the relay."""

    error: str = Field(..., description="Generic description of the failure")
    details: str = Field(..., description="Message of the underlying error")
