"""Audio relay pipeline: transcription, reply generation and speech synthesis."""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

from .errors import RelayError, ValidationError

logger = logging.getLogger(__name__)


class RelayStage(str, Enum):
    VALIDATING = "validating"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


class SpeechClient(Protocol):
    async def transcribe(self, audio_path: Path) -> str: ...

    async def synthesize(self, text: str) -> bytes: ...


class ChatClient(Protocol):
    async def generate_reply(self, transcript: str) -> str: ...


@dataclass
class RelayResult:
    """Outcome of a successful relay."""

    transcription: str
    bot_reply: str
    audio_base64: str


def validate_audio_payload(body: Optional[Mapping[str, Any]]) -> bytes:
    """Return the decoded audio of a request body.

    The ``audio`` field must be canonical base64: decoding and re-encoding it
    must give back the exact input.
    """

    audio = body.get("audio") if body else None
    if not audio:
        raise ValidationError("No audio data received", stage=RelayStage.VALIDATING.value)

    invalid = ValidationError(
        "Invalid audio data format. Expected base64 encoded string.",
        stage=RelayStage.VALIDATING.value,
    )
    if not isinstance(audio, str):
        raise invalid
    try:
        decoded = base64.b64decode(audio, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise invalid from exc
    if base64.b64encode(decoded).decode("ascii") != audio:
        raise invalid
    return decoded


@asynccontextmanager
async def temporary_audio_file(
    directory: Path, audio: bytes, suffix: str = ".webm"
) -> AsyncIterator[Path]:
    """Write ``audio`` to a uniquely named file removed when the block exits."""

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"audio_{uuid.uuid4().hex}{suffix}"
    try:
        await asyncio.to_thread(path.write_bytes, audio)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.exception("Error cleaning up temp file", extra={"path": str(path)})


class AudioRelayPipeline:
    """Run one request through speech-to-text, the chat model and text-to-speech.

    Steps run strictly in order and the first failure aborts the rest. The
    temporary upload file lives until every step has finished or failed.
    """

    def __init__(self, speech_client: SpeechClient, chat_client: ChatClient, upload_dir: Path) -> None:
        self._speech = speech_client
        self._chat = chat_client
        self._upload_dir = upload_dir
        self.stage = RelayStage.VALIDATING

    def _enter(self, stage: RelayStage) -> None:
        self.stage = stage
        logger.info("Relay stage changed", extra={"stage": stage.value})

    async def run(self, body: Optional[Mapping[str, Any]]) -> RelayResult:
        try:
            return await self._run(body)
        except RelayError as exc:
            if exc.stage is None:
                exc.stage = self.stage.value
            self._enter(RelayStage.FAILED)
            raise
        except Exception:
            self._enter(RelayStage.FAILED)
            raise

    async def _run(self, body: Optional[Mapping[str, Any]]) -> RelayResult:
        self._enter(RelayStage.VALIDATING)
        audio = validate_audio_payload(body)

        async with temporary_audio_file(self._upload_dir, audio) as audio_path:
            self._enter(RelayStage.TRANSCRIBING)
            transcription = await self._speech.transcribe(audio_path)
            logger.info("Transcription received", extra={"length": len(transcription)})

            self._enter(RelayStage.GENERATING)
            bot_reply = await self._chat.generate_reply(transcription)
            logger.info("Bot reply generated", extra={"length": len(bot_reply)})

            self._enter(RelayStage.SYNTHESIZING)
            speech = await self._speech.synthesize(bot_reply)

        self._enter(RelayStage.DONE)
        return RelayResult(
            transcription=transcription,
            bot_reply=bot_reply,
            audio_base64=base64.b64encode(speech).decode("ascii"),
        )
