"""
Realtime endpoints: ephemeral tokens, connection status and the streaming
websocket.

Websocket protocol (``/api/voice/realtime/ws``):

- binary frames carry little-endian PCM16 mono audio
- text frames carry JSON control messages: ``{"type": "flush"}`` processes the
  buffered speech now, ``{"type": "text", "text": ...}`` sends a typed
  utterance, ``{"type": "ping"}`` is answered with ``{"type": "pong"}``
- replies are sent as a JSON ``response`` message followed by the reply audio
  as a binary frame
"""

import json
import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ..core.errors import InvalidArgument, SessionExpired, SessionNotFound, VoiceOrderingError
from ..core.models import VoiceProcessingResult
from ..service import VoiceOrderingService
from .schemas import RealtimeTokenRequest
from .voice import get_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.post("/token")
async def create_token(body: RealtimeTokenRequest, service: VoiceOrderingService = Depends(get_service)):
    token = await service.bridge.generate_ephemeral_token(body.customer_id, body.session_type, body.session_id)
    return token.to_public_dict()


@router.get("/session/{session_id}/validate")
async def validate_session(session_id: str, service: VoiceOrderingService = Depends(get_service)):
    return {"session_id": session_id, "valid": await service.bridge.validate_session(session_id)}


@router.get("/connection")
async def connection_status(service: VoiceOrderingService = Depends(get_service)):
    return await service.bridge.get_connection_status()


@router.get("/health")
async def realtime_health(service: VoiceOrderingService = Depends(get_service)):
    status = await service.bridge.get_connection_status()
    return {
        "status": "healthy" if status["healthy"] else "degraded",
        "service_type": status["service_type"],
        "active_connections": status["active_connections"],
        "model": service.config.realtime.model,
        "token_issuing": service.config.providers.openai.api_key is not None,
    }


async def _send_error(websocket: WebSocket, error: VoiceOrderingError) -> None:
    await websocket.send_json({
        "type": "error",
        "error": error.code,
        "message": error.message,
        "retryable": bool(error.retryable),
    })


async def _send_result(websocket: WebSocket, result: VoiceProcessingResult) -> None:
    await websocket.send_json({"type": "response" if result.success else "error", **result.to_dict()})
    if result.success and result.audio:
        await websocket.send_bytes(result.audio)


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    customer_id: str = Query(...),
    session_id: Optional[str] = Query(None),
    customer_email: Optional[str] = Query(None),
):
    service: VoiceOrderingService = websocket.app.state.service
    bridge = service.bridge
    connection_id = uuid.uuid4().hex
    await websocket.accept()

    async def _speak(result: VoiceProcessingResult) -> None:
        await _send_result(websocket, result)

    try:
        bound_session = await bridge.handle_connection(
            connection_id, customer_id, customer_email, session_id, on_speak=_speak
        )
    except InvalidArgument as e:
        await _send_error(websocket, e)
        await websocket.close(code=1008)
        return

    await websocket.send_json({"type": "session", "session_id": bound_session, "connection_id": connection_id})
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                if message.get("bytes") is not None:
                    result = await bridge.handle_audio_frame(connection_id, message["bytes"])
                elif message.get("text") is not None:
                    result = await _handle_control(websocket, service, connection_id, bound_session, message["text"])
                else:
                    continue
            except VoiceOrderingError as e:
                # A closed session also drops its connection mapping
                if isinstance(e, (SessionNotFound, SessionExpired)) or not await bridge.validate_session(bound_session):
                    await websocket.send_json({"type": "session_closed", "session_id": bound_session, "message": e.message})
                    await websocket.close(code=1000)
                    return
                await _send_error(websocket, e)
                continue
            if result is not None and not result.success:
                await _send_result(websocket, result)
    except WebSocketDisconnect as e:
        logger.info("Realtime websocket disconnected", connection_id=connection_id, code=e.code)
    finally:
        await bridge.handle_disconnection(connection_id)


async def _handle_control(
    websocket: WebSocket,
    service: VoiceOrderingService,
    connection_id: str,
    session_id: str,
    raw: str,
) -> Optional[VoiceProcessingResult]:
    try:
        control = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidArgument(f"Malformed control message: {e}") from e
    if not isinstance(control, dict):
        raise InvalidArgument("Control message must be a JSON object")

    kind = control.get("type")
    if kind == "ping":
        await websocket.send_json({"type": "pong"})
        return None
    if kind == "flush":
        return await service.bridge.flush(connection_id)
    if kind == "text":
        result = await service.coordinator.process_text_interaction(
            str(control.get("text") or ""),
            session_id,
            synthesize=bool(control.get("synthesize", True)),
            request_id=control.get("request_id"),
        )
        if result.success:
            await _send_result(websocket, result)
        return result
    if kind == "status":
        await websocket.send_json({"type": "status", **service.bridge.get_connection(connection_id).to_dict()})
        return None
    raise InvalidArgument(f"Unknown control message type: {kind}")
