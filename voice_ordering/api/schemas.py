"""Request and response bodies for the HTTP API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StartSessionRequest(BaseModel):
    customer_id: str
    customer_email: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class StartSessionResponse(BaseModel):
    session_id: str
    status: str
    created_at: float


class TextInteractionRequest(BaseModel):
    text: str
    synthesize: bool = Field(default=False)
    request_id: Optional[str] = None


class TTSRequest(BaseModel):
    text: str
    session_id: Optional[str] = None


class FinalizeRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    special_instructions: Optional[str] = None


class FinalizeResponse(BaseModel):
    session_id: str
    order_id: str
    status: str = "finalized"


class CloseSessionRequest(BaseModel):
    reason: str = Field(default="closed")


class AddTurnRequest(BaseModel):
    user_message: str
    ai_response: str
    intent: Optional[str] = None


class HistoryResponse(BaseModel):
    session_id: str
    turns: List[Dict[str, Any]]
    branch_count: int
    total_turns: int


class RealtimeTokenRequest(BaseModel):
    customer_id: str
    session_type: str = Field(default="voice_ordering")
    session_id: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
