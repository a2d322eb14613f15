"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Dict, Optional, Type

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from .. import __version__
from ..config import AppConfig
from ..core.errors import (
    AlreadyFinalized,
    ConcurrentModification,
    EmptyOrder,
    InvalidArgument,
    InvalidAudio,
    InvalidOrder,
    ProviderFailure,
    RateLimited,
    SessionExpired,
    SessionNotFound,
    TokenIssueError,
    TurnNotFound,
    VoiceOrderingError,
)
from ..service import VoiceOrderingService
from . import realtime, voice

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR: Dict[Type[VoiceOrderingError], int] = {
    SessionNotFound: 404,
    TurnNotFound: 404,
    SessionExpired: 410,
    InvalidArgument: 400,
    InvalidAudio: 400,
    InvalidOrder: 400,
    EmptyOrder: 422,
    AlreadyFinalized: 409,
    ConcurrentModification: 409,
    RateLimited: 429,
    TokenIssueError: 502,
}


def status_for_error(error: VoiceOrderingError) -> int:
    if isinstance(error, ProviderFailure):
        return 503 if error.transient else 502
    for error_type, status in _STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            return status
    return 500


async def _voice_error_handler(request: Request, exc: VoiceOrderingError) -> JSONResponse:
    status = status_for_error(exc)
    log = logger.warning if status < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        status=status,
        error_code=exc.code,
        error=exc.message,
    )
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers["Retry-After"] = str(max(1, int(round(exc.retry_after))))
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "message": exc.message, "retryable": bool(exc.retryable)},
        headers=headers,
    )


def create_app(config: Optional[AppConfig] = None, service: Optional[VoiceOrderingService] = None) -> FastAPI:
    """Create the API application around a (new or given) VoiceOrderingService."""
    service = service or VoiceOrderingService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Voice Ordering API",
        description="Voice ordering sessions, conversation and realtime bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(VoiceOrderingError, _voice_error_handler)

    app.include_router(voice.router, prefix="/api/voice")
    app.include_router(realtime.router, prefix="/api/voice")
    app.mount("/metrics", make_asgi_app())

    return app
