"""
Voice session endpoints.

Mounted under ``/api/voice``. Domain errors raised by the service propagate to
the exception handler registered in ``api.app``, which maps them to HTTP
status codes.
"""

import base64
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import Response

from ..core.models import OrderAction, VoiceProcessingResult
from ..service import VoiceOrderingService
from .schemas import (
    AddTurnRequest,
    CloseSessionRequest,
    FinalizeRequest,
    FinalizeResponse,
    HistoryResponse,
    StartSessionRequest,
    StartSessionResponse,
    TextInteractionRequest,
    TTSRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["voice"])

_TTS_MEDIA_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "pcm": "audio/pcm",
}


def get_service(request: Request) -> VoiceOrderingService:
    return request.app.state.service


def _result_body(result: VoiceProcessingResult) -> Dict[str, Any]:
    body = result.to_dict()
    body["audio_base64"] = base64.b64encode(result.audio).decode("ascii") if result.audio else None
    update = result.order_update
    body["ready_to_finalize"] = bool(update is not None and update.action == OrderAction.FINALIZE_REQUEST)
    return body


@router.post("/session/start", response_model=StartSessionResponse)
async def start_session(body: StartSessionRequest, service: VoiceOrderingService = Depends(get_service)):
    session_id = await service.registry.create_session(body.customer_id, body.customer_email, body.context)
    session = await service.registry.get_session(session_id)
    return StartSessionResponse(session_id=session_id, status=session.status.value, created_at=session.created_at)


@router.post("/session/{session_id}/process")
async def process_audio(
    session_id: str,
    audio: UploadFile = File(...),
    language: str = Form("en"),
    synthesize: Optional[bool] = Form(None),
    request_id: Optional[str] = Form(None),
    service: VoiceOrderingService = Depends(get_service),
):
    payload = await audio.read()
    audio_format = audio.content_type or ""
    if audio.filename and "." in audio.filename:
        audio_format = audio.filename.rsplit(".", 1)[1]
    result = await service.coordinator.process_voice_interaction(
        payload,
        session_id,
        language or None,
        audio_format=audio_format,
        synthesize=synthesize,
        request_id=request_id,
    )
    return _result_body(result)


@router.post("/session/{session_id}/text")
async def process_text(session_id: str, body: TextInteractionRequest, service: VoiceOrderingService = Depends(get_service)):
    result = await service.coordinator.process_text_interaction(
        body.text,
        session_id,
        synthesize=body.synthesize,
        request_id=body.request_id,
    )
    return _result_body(result)


@router.post("/tts")
async def text_to_speech(body: TTSRequest, service: VoiceOrderingService = Depends(get_service)):
    audio = await service.coordinator.text_to_speech(body.text, body.session_id)
    fmt = service.config.providers.openai.tts_response_format
    return Response(content=audio, media_type=_TTS_MEDIA_TYPES.get(fmt, "application/octet-stream"))


@router.get("/session/{session_id}/order")
async def get_order(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    session = await service.registry.get_session(session_id)
    return {"session_id": session_id, "order": session.working_order.to_dict()}


@router.post("/session/{session_id}/finalize", response_model=FinalizeResponse)
async def finalize_order(
    session_id: str,
    body: Optional[FinalizeRequest] = None,
    service: VoiceOrderingService = Depends(get_service),
):
    details = body.model_dump(exclude_none=True) if body else {}
    order_id = await service.finalizer.finalize(session_id, details)
    return FinalizeResponse(session_id=session_id, order_id=order_id)


@router.post("/session/{session_id}/cancel")
async def cancel_session(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    cancelled = await service.registry.close_session(session_id, "cancelled")
    return {"session_id": session_id, "cancelled": cancelled}


@router.get("/session/{session_id}/status")
async def session_status(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    session = await service.registry.get_session(session_id)
    body = session.to_dict()
    body["branch_count"] = service.conversation_log.branch_count(session_id)
    return body


@router.post("/session/{session_id}/heartbeat")
async def heartbeat(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    session = await service.registry.heartbeat(session_id)
    return {"session_id": session_id, "status": session.status.value, "last_activity_at": session.last_activity_at}


@router.post("/session/{session_id}/close")
async def close_session(
    session_id: str,
    body: Optional[CloseSessionRequest] = None,
    service: VoiceOrderingService = Depends(get_service),
):
    reason = body.reason if body else "closed"
    closed = await service.registry.close_session(session_id, reason)
    return {"session_id": session_id, "closed": closed}


@router.get("/session/{session_id}/history", response_model=HistoryResponse)
async def history(
    session_id: str,
    window_size: int = Query(0, ge=0),
    service: VoiceOrderingService = Depends(get_service),
):
    turns = await service.conversation_log.get_history(session_id, window_size)
    return HistoryResponse(
        session_id=session_id,
        turns=[t.to_dict() for t in turns],
        branch_count=service.conversation_log.branch_count(session_id),
        total_turns=service.conversation_log.turn_count(session_id),
    )


@router.get("/session/{session_id}/analytics")
async def session_analytics(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    return await service.conversation_log.get_session_analytics(session_id)


@router.post("/session/{session_id}/turn")
async def add_turn(session_id: str, body: AddTurnRequest, service: VoiceOrderingService = Depends(get_service)):
    turn = await service.conversation_log.add_turn(session_id, body.user_message, body.ai_response, intent=body.intent)
    return turn.to_dict()


@router.post("/session/{session_id}/turn/{parent_turn_id}")
async def add_branched_turn(
    session_id: str,
    parent_turn_id: int,
    body: AddTurnRequest,
    service: VoiceOrderingService = Depends(get_service),
):
    turn = await service.conversation_log.add_branched_turn(
        session_id, parent_turn_id, body.user_message, body.ai_response, intent=body.intent
    )
    return turn.to_dict()


@router.get("/rate-limit-status")
async def rate_limit_status(
    customer_id: Optional[str] = None,
    session_id: Optional[str] = None,
    service: VoiceOrderingService = Depends(get_service),
):
    return await service.coordinator.get_rate_limit_status(customer_id=customer_id, session_id=session_id)


@router.get("/health")
async def health(service: VoiceOrderingService = Depends(get_service)):
    stats = await service.registry.get_session_statistics()
    return {
        "status": "healthy",
        "active_sessions": stats["active_session_count"],
        "high_load": await service.rate_limiter.is_high_load(),
        "speech_to_text": service.speech_enabled,
        "storage": service.audio_storage.stats(),
    }


@router.post("/admin/cleanup")
async def admin_cleanup(service: VoiceOrderingService = Depends(get_service)):
    pipeline = await service.coordinator.cleanup()
    realtime = await service.bridge.cleanup_expired()
    logger.info("Manual cleanup completed", **pipeline, **realtime)
    return {**pipeline, **realtime}


@router.get("/sessions/statistics")
async def session_statistics(service: VoiceOrderingService = Depends(get_service)):
    return await service.registry.get_session_statistics()
