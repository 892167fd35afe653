"""Wrappers around the third-party speech and language services."""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import httpx
from openai import APIConnectionError, OpenAI, OpenAIError
from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from .errors import EmptyTranscriptError, RelayError, UpstreamConnectError, UpstreamError
from .telemetry import get_correlation_id

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REPLY_PROMPT_TEMPLATE = (
    "You are a helpful and friendly AI assistant. Please respond to the following "
    "message in a concise and natural way: {transcript}"
)
VOICE_STABILITY = 0.5
VOICE_SIMILARITY_BOOST = 0.5


@contextmanager
def _upstream_span(name: str, attributes: Dict[str, Any]) -> Iterator[Span]:
    correlation_id = get_correlation_id()
    if correlation_id:
        attributes = {**attributes, "correlation.id": correlation_id}

    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        except RelayError as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
        span.set_status(Status(StatusCode.OK))


class ElevenLabsClient:
    """Async HTTP client for the ElevenLabs speech-to-text and text-to-speech APIs."""

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        stt_model: str,
        tts_model: str,
        base_url: str = "https://api.elevenlabs.io",
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id
        self._stt_model = stt_model
        self._tts_model = tts_model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def _request(
        self, method: str, path: str, *, service: str, **kwargs: Any
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        headers = {"xi-api-key": self._api_key, **kwargs.pop("headers", {})}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers.setdefault("X-Correlation-ID", correlation_id)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.exception("ElevenLabs %s request failed: %s %s", service, method, url)
            raise UpstreamConnectError(
                f"Failed to connect to ElevenLabs {service} service: {exc}"
            ) from exc

    async def transcribe(self, audio_path: Path) -> str:
        """Upload an audio file and return its transcript."""

        with _upstream_span(
            "ElevenLabs.speechToText",
            {"stt.system": "elevenlabs", "stt.model": self._stt_model},
        ):
            audio = await asyncio.to_thread(audio_path.read_bytes)
            response = await self._request(
                "POST",
                "/v1/speech-to-text",
                service="STT",
                headers={"Accept": "application/json"},
                files={"file": (audio_path.name, audio, "audio/webm")},
                data={"model_id": self._stt_model},
            )

            if response.status_code >= 400:
                logger.error(
                    "Speech-to-text returned error %s: %s",
                    response.status_code,
                    response.text,
                )
                raise UpstreamError(f"Failed to transcribe audio: {response.text}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError(
                    f"Failed to transcribe audio: invalid JSON response: {response.text}"
                ) from exc

            text = payload.get("text") if isinstance(payload, dict) else None
            if not isinstance(text, str) or not text:
                raise EmptyTranscriptError("No transcription received from ElevenLabs")
            return text

    async def synthesize(self, text: str) -> bytes:
        """Convert ``text`` into speech and return the raw audio bytes."""

        with _upstream_span(
            "ElevenLabs.textToSpeech",
            {
                "tts.system": "elevenlabs",
                "tts.model": self._tts_model,
                "tts.voice": self._voice_id,
            },
        ):
            response = await self._request(
                "POST",
                f"/v1/text-to-speech/{self._voice_id}",
                service="TTS",
                headers={"Accept": "audio/mpeg", "Content-Type": "application/json"},
                json={
                    "text": text,
                    "model_id": self._tts_model,
                    "voice_settings": {
                        "stability": VOICE_STABILITY,
                        "similarity_boost": VOICE_SIMILARITY_BOOST,
                    },
                },
            )

            if response.status_code >= 400:
                logger.error(
                    "Text-to-speech returned error %s: %s",
                    response.status_code,
                    response.text,
                )
                raise UpstreamError(f"Failed to convert text to speech: {response.text}")
            return response.content

    async def verify(self) -> None:
        """Check that the configured API key is accepted."""

        response = await self._request(
            "GET", "/v1/models", service="models", headers={"Accept": "application/json"}
        )
        if response.status_code >= 400:
            raise UpstreamError(
                f"ElevenLabs API key verification failed: {response.status_code} {response.text}"
            )
        response.json()


class GeminiClient:
    """Chat client for Gemini through its OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = 60.0) -> None:
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self._model = model

    async def complete(self, prompt: str) -> str:
        """Send a single user prompt and return the generated text."""

        def _call() -> str:
            try:
                response = self._client.chat.completions.create(
                    model=self._model,
                    messages=[{"role": "user", "content": prompt}],
                )
            except APIConnectionError as exc:
                logger.exception("Gemini chat completion could not connect")
                raise UpstreamConnectError(
                    f"Failed to connect to Gemini service: {exc}"
                ) from exc
            except OpenAIError as exc:
                logger.exception("Gemini chat completion failed")
                raise UpstreamError(f"Failed to generate reply: {exc}") from exc

            if not response.choices:
                return ""
            return getattr(response.choices[0].message, "content", None) or ""

        with _upstream_span(
            "Gemini.chatCompletion",
            {"llm.system": "gemini", "llm.model": self._model},
        ) as span:
            reply = await asyncio.to_thread(_call)
            span.set_attribute("llm.reply_length", len(reply))
            return reply

    async def generate_reply(self, transcript: str) -> str:
        """Ask the model for a concise reply to ``transcript``."""

        return await self.complete(REPLY_PROMPT_TEMPLATE.format(transcript=transcript))

    async def verify(self) -> None:
        await self.complete("Test message")


async def verify_upstreams(
    speech_client: ElevenLabsClient,
    chat_client: GeminiClient,
) -> Dict[str, Optional[str]]:
    """Verify every upstream once, logging failures instead of raising.

    Returns a mapping of service name to ``None`` on success or the error text.
    """

    results: Dict[str, Optional[str]] = {}
    for name, verify in (("elevenlabs", speech_client.verify), ("gemini", chat_client.verify)):
        try:
            await verify()
        except Exception as exc:  # startup must not depend on upstream health
            logger.error("%s API key verification failed: %s", name, exc)
            results[name] = str(exc)
        else:
            logger.info("%s API key verified successfully", name)
            results[name] = None
    return results
