from __future__ import annotations

import os
import sys
from collections.abc import Generator
from pathlib import Path
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("VOICE_RELAY_ELEVENLABS_API_KEY", "test-elevenlabs-key")
os.environ.setdefault("VOICE_RELAY_GEMINI_API_KEY", "test-gemini-key")
os.environ["VOICE_RELAY_STARTUP_CHECK"] = "false"

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from voice_relay import main
from voice_relay.config import Settings


class FakeSpeechClient:
    """In-memory stand-in for the ElevenLabs client."""

    def __init__(
        self,
        calls: List[str],
        transcript: str = "hello",
        audio: bytes = b"ID3",
        transcribe_error: Optional[Exception] = None,
        synthesize_error: Optional[Exception] = None,
    ) -> None:
        self.calls = calls
        self.transcript = transcript
        self.audio = audio
        self.transcribe_error = transcribe_error
        self.synthesize_error = synthesize_error
        self.audio_paths: List[Path] = []
        self.uploaded: List[bytes] = []
        self.synthesized: List[str] = []

    async def transcribe(self, audio_path: Path) -> str:
        self.calls.append("stt")
        self.audio_paths.append(audio_path)
        self.uploaded.append(audio_path.read_bytes())
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript

    async def synthesize(self, text: str) -> bytes:
        self.calls.append("tts")
        self.synthesized.append(text)
        if self.synthesize_error is not None:
            raise self.synthesize_error
        return self.audio


class FakeChatClient:
    """In-memory stand-in for the Gemini client."""

    def __init__(
        self,
        calls: List[str],
        reply: str = "Hi there!",
        error: Optional[Exception] = None,
    ) -> None:
        self.calls = calls
        self.reply = reply
        self.error = error
        self.transcripts: List[str] = []

    async def generate_reply(self, transcript: str) -> str:
        self.calls.append("chat")
        self.transcripts.append(transcript)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture()
def calls() -> List[str]:
    return []


@pytest.fixture()
def upload_dir(tmp_path: Path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture()
def settings(upload_dir: Path) -> Settings:
    return Settings(
        elevenlabs_api_key="test-elevenlabs-key",
        gemini_api_key="test-gemini-key",
        upload_dir=upload_dir,
        startup_check=False,
    )


@pytest.fixture()
def speech_client(calls: List[str]) -> FakeSpeechClient:
    return FakeSpeechClient(calls)


@pytest.fixture()
def chat_client(calls: List[str]) -> FakeChatClient:
    return FakeChatClient(calls)


@pytest.fixture()
def client(
    settings: Settings,
    speech_client: FakeSpeechClient,
    chat_client: FakeChatClient,
) -> Generator[TestClient, None, None]:
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_speech_client] = lambda: speech_client
    main.app.dependency_overrides[main.get_chat_client] = lambda: chat_client
    with TestClient(main.app) as http_client:
        yield http_client
    main.app.dependency_overrides.clear()
