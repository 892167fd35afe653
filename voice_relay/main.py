#!/usr/bin/env python3
"""Voice relay application chaining speech-to-text, a chat model and text-to-speech."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
import os
import sys
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from structlog.stdlib import ProcessorFormatter

from .clients import ElevenLabsClient, GeminiClient, verify_upstreams
from .config import Settings, get_settings
from .errors import RelayError
from .middleware import BodySizeLimitMiddleware, CorrelationIdMiddleware, error_response
from .models import ErrorResponse, ProcessAudioRequest, ProcessAudioResponse
from .pipeline import AudioRelayPipeline
from .telemetry import configure_tracing, correlation_id_var

SERVICE_NAME = "voice-relay"

logger = logging.getLogger("voice_relay")


class CorrelationIdFilter(logging.Filter):
    """Inject the correlation identifier into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging helper
        record.correlation_id = correlation_id_var.get() or "unknown"
        return True


def _add_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - logging helper
    event_dict.setdefault("correlation_id", correlation_id_var.get() or "unknown")
    return event_dict


def _configure_otlp_logging(service_name: str) -> None:
    if not (
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
    ):
        return

    root_logger = logging.getLogger()
    try:
        resource = Resource.create(
            {"service.name": os.getenv("OTEL_SERVICE_NAME", service_name)}
        )
        logger_provider = LoggerProvider(resource=resource)
        exporter = OTLPLogExporter()
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
        set_logger_provider(logger_provider)
        otlp_handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        root_logger.addHandler(otlp_handler)
        root_logger.debug(
            "OTLP log exporter configured",
            extra={"service_name": resource.attributes.get("service.name")},
        )
    except Exception:  # pragma: no cover - exporter is optional
        root_logger.exception("Failed to configure OTLP log exporter")


def configure_logging(service_name: str = SERVICE_NAME) -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        timestamper,
        structlog.processors.format_exc_info,
    ]

    formatter = ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.INFO)

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _configure_otlp_logging(service_name)


configure_logging()


def install_fault_handlers(loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
    """Log faults that escape request handling instead of letting them stop the server.

    Returns a callable that puts the previous hooks back.
    """

    def _log_thread_exception(args: threading.ExceptHookArgs) -> None:
        logger.error(
            "Uncaught exception in thread %s",
            getattr(args.thread, "name", "unknown"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    def _log_loop_exception(_: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.error(
            "Unhandled asynchronous error: %s",
            context.get("message", "unknown"),
            exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
        )

    def _log_uncaught(exc_type, exc_value, exc_traceback) -> None:  # type: ignore[no-untyped-def]
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))

    previous_thread_hook = threading.excepthook
    previous_sys_hook = sys.excepthook
    previous_loop_handler = loop.get_exception_handler()

    threading.excepthook = _log_thread_exception
    sys.excepthook = _log_uncaught
    loop.set_exception_handler(_log_loop_exception)

    def restore() -> None:
        threading.excepthook = previous_thread_hook
        sys.excepthook = previous_sys_hook
        if not loop.is_closed():
            loop.set_exception_handler(previous_loop_handler)

    return restore


# Dependency factories -----------------------------------------------------

def get_speech_client(settings: Settings = Depends(get_settings)) -> ElevenLabsClient:
    return ElevenLabsClient(
        api_key=settings.elevenlabs_api_key,
        voice_id=settings.elevenlabs_voice_id,
        stt_model=settings.elevenlabs_stt_model,
        tts_model=settings.elevenlabs_tts_model,
        base_url=settings.elevenlabs_base_url,
        timeout=settings.upstream_timeout,
    )


def get_chat_client(settings: Settings = Depends(get_settings)) -> GeminiClient:
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.upstream_timeout,
    )


def get_pipeline(
    speech_client: ElevenLabsClient = Depends(get_speech_client),
    chat_client: GeminiClient = Depends(get_chat_client),
    settings: Settings = Depends(get_settings),
) -> AudioRelayPipeline:
    return AudioRelayPipeline(
        speech_client=speech_client,
        chat_client=chat_client,
        upload_dir=settings.upload_dir,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    restore_fault_handlers = install_fault_handlers(asyncio.get_running_loop())
    try:
        settings = get_settings()
        if settings.startup_check:
            logger.info("Verifying upstream API keys")
            await verify_upstreams(get_speech_client(settings), get_chat_client(settings))
        logger.info(
            "Voice relay ready",
            extra={"host": settings.host, "port": settings.port},
        )
        yield
    finally:
        restore_fault_handlers()


app = FastAPI(title="Voice Relay", version="0.1.0", lifespan=lifespan)
settings = get_settings()
configure_tracing(app, SERVICE_NAME)
app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Accept"],
)
app.add_middleware(CorrelationIdMiddleware)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [error.get("msg", "invalid value") for error in exc.errors()]
    logger.warning("Rejected malformed request body", extra={"path": request.url.path})
    return error_response("Invalid request body: " + "; ".join(messages))


# Routes -------------------------------------------------------------------

@app.get("/")
async def root() -> Dict[str, Any]:
    return {
        "status": "Voice Chatbot API is running",
        "endpoints": {
            "/": "This help message",
            "/health": "Health check endpoint",
            "/process-audio": "POST endpoint for processing audio",
        },
    }


@app.get("/health")
async def health() -> Dict[str, str]:
    """Liveness check."""

    logger.info("Health check requested")
    return {"status": "ok"}


@app.post(
    "/process-audio",
    response_model=ProcessAudioResponse,
    responses={500: {"model": ErrorResponse}},
)
async def process_audio(
    payload: ProcessAudioRequest,
    pipeline: AudioRelayPipeline = Depends(get_pipeline),
):
    logger.info("Received audio processing request")
    try:
        result = await pipeline.run(payload.model_dump())
    except RelayError as exc:
        logger.error(
            "Error processing request: %s",
            exc,
            extra={"stage": exc.stage, "error_kind": type(exc).__name__},
        )
        return error_response(str(exc))
    except Exception as exc:
        logger.exception("Unexpected error processing request")
        return error_response(str(exc))

    logger.info("Audio response generated successfully")
    return ProcessAudioResponse(
        transcription=result.transcription,
        bot_reply=result.bot_reply,
        audio_response=result.audio_base64,
    )


def run() -> None:
    """Serve the application with uvicorn."""

    import uvicorn

    current = get_settings()
    uvicorn.run(app, host=current.host, port=current.port)


if __name__ == "__main__":
    run()
