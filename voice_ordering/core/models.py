"""
Core data models for the voice ordering service.

Session state is kept in plain dataclasses owned by the SessionRegistry;
HTTP payloads are converted at the API boundary.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    EXPIRED = "expired"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionState(str, Enum):
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class OrderAction(str, Enum):
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"
    MODIFY_QUANTITY = "modify_quantity"
    ADD_CUSTOMIZATION = "add_customization"
    FINALIZE_REQUEST = "finalize_request"
    NO_OP = "no_op"


@dataclass
class LineItem:
    """One line of the working order."""
    menu_item_id: str
    name: str
    quantity: int = 1
    unit_price: float = 0.0
    customizations: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    is_reward_item: bool = False

    @property
    def line_total(self) -> float:
        if self.is_reward_item:
            return 0.0
        return round(self.unit_price * self.quantity, 2)

    def describe(self) -> str:
        text = f"{self.quantity}x {self.name}"
        if self.customizations:
            text += f" ({', '.join(self.customizations)})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "customizations": list(self.customizations),
            "notes": self.notes,
            "is_reward_item": self.is_reward_item,
        }


@dataclass
class WorkingOrder:
    """In-progress order assembled turn by turn."""
    items: List[LineItem] = field(default_factory=list)
    status: str = "building"
    special_instructions: Optional[str] = None
    tax_rate: float = 0.0825

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> float:
        return round(sum(item.line_total for item in self.items), 2)

    @property
    def tax(self) -> float:
        return round(self.subtotal * self.tax_rate, 2)

    @property
    def total(self) -> float:
        return round(self.subtotal + self.tax, 2)

    def is_empty(self) -> bool:
        return not self.items

    def snapshot_items(self) -> List[LineItem]:
        """Deep copy of the line items; mutations are applied to a copy and swapped in."""
        return copy.deepcopy(self.items)

    def summary(self) -> str:
        if not self.items:
            return "No items in the order yet."
        lines = "; ".join(item.describe() for item in self.items)
        return (
            f"Current order: {lines}. "
            f"Subtotal ${self.subtotal:.2f}, tax ${self.tax:.2f}, total ${self.total:.2f}."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "status": self.status,
            "special_instructions": self.special_instructions,
            "item_count": self.item_count,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
        }


@dataclass
class VoiceSession:
    """Complete state for one voice ordering session."""
    customer_id: str
    customer_email: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    working_order: WorkingOrder = field(default_factory=WorkingOrder)
    turn_count: int = 0
    close_reason: Optional[str] = None
    closed_at: Optional[float] = None
    finalized_order_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity_at = now if now is not None else time.time()

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_activity_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "customer_id": self.customer_id,
            "customer_email": self.customer_email,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "turn_count": self.turn_count,
            "close_reason": self.close_reason,
            "finalized_order_id": self.finalized_order_id,
            "order": self.working_order.to_dict(),
            "context": dict(self.context),
        }


@dataclass
class ConversationTurn:
    """A node in the per-session conversation tree."""
    turn_id: int
    session_id: str
    parent_turn_id: Optional[int]
    user_message: str
    ai_response: str
    turn_number: int = 1  # depth on its path, root = 1
    timestamp: float = field(default_factory=time.time)
    intent: Optional[str] = None
    transcription_confidence: Optional[float] = None
    processing_time_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "session_id": self.session_id,
            "parent_turn_id": self.parent_turn_id,
            "turn_number": self.turn_number,
            "user_message": self.user_message,
            "ai_response": self.ai_response,
            "timestamp": self.timestamp,
            "intent": self.intent,
            "transcription_confidence": self.transcription_confidence,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class OrderUpdateResult:
    updated: bool
    action: OrderAction = OrderAction.NO_OP
    message: str = ""
    error: Optional[str] = None
    line_item: Optional[LineItem] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "action": self.action.value,
            "message": self.message,
            "error": self.error,
            "line_item": self.line_item.to_dict() if self.line_item else None,
        }


@dataclass
class VoiceProcessingResult:
    session_id: str
    request_id: str
    success: bool
    transcription: Optional[str] = None
    ai_response: Optional[str] = None
    order_update: Optional[OrderUpdateResult] = None
    audio: Optional[bytes] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    processing_time_ms: int = 0
    turn_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "request_id": self.request_id,
            "success": self.success,
            "transcription": self.transcription,
            "ai_response": self.ai_response,
            "order_update": self.order_update.to_dict() if self.order_update else None,
            "has_audio": self.audio is not None,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "processing_time_ms": self.processing_time_ms,
            "turn_id": self.turn_id,
        }


@dataclass
class RealtimeConnection:
    """Mapping of a transport connection to a voice session."""
    connection_id: str
    session_id: str
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    state: ConnectionState = ConnectionState.LISTENING
    ephemeral_token_expiry: Optional[float] = None
    connected_at: float = field(default_factory=time.time)
    disconnected_at: Optional[float] = None
    segments_submitted: int = 0
    frames_received: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "state": self.state.value,
            "ephemeral_token_expiry": self.ephemeral_token_expiry,
            "connected_at": self.connected_at,
            "disconnected_at": self.disconnected_at,
            "segments_submitted": self.segments_submitted,
            "frames_received": self.frames_received,
        }
