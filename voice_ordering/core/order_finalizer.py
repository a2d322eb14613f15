"""
Order Finalizer

Turns a session's working order into a persisted order, at most once.

The emptiness check, the OrderStore call and the session close all happen under
the session lock, so two finalize requests racing on one session produce one
order. After the session closes its tombstone keeps the order id; a repeated
finalize raises AlreadyFinalized instead of SessionNotFound.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

import structlog
from prometheus_client import Counter

from ..config import OrderConfig
from .catalog import OrderStore
from .errors import AlreadyFinalized, EmptyOrder, InvalidOrder, SessionExpired
from .models import VoiceSession
from .session_registry import SessionRegistry

logger = structlog.get_logger(__name__)

_ORDERS_FINALIZED = Counter(
    "voice_ordering_orders_finalized_total",
    "Finalize attempts by outcome",
    ["outcome"],
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class OrderFinalizer:
    def __init__(self, registry: SessionRegistry, order_store: OrderStore, config: Optional[OrderConfig] = None):
        self._registry = registry
        self._store = order_store
        self._config = config or OrderConfig()

    def service_fee(self, subtotal: float) -> float:
        if subtotal <= 0:
            return 0.0
        return round(subtotal * self._config.service_fee_rate + self._config.service_fee_fixed, 2)

    def validate_order(self, session: VoiceSession, email: Optional[str] = None) -> None:
        """Raise InvalidOrder if the working order cannot be submitted."""
        order = session.working_order
        for item in order.items:
            if item.quantity <= 0:
                raise InvalidOrder(f"Invalid quantity {item.quantity} for {item.name}")
            if item.unit_price < 0:
                raise InvalidOrder(f"Invalid price for {item.name}")
        if order.total < self._config.minimum_total:
            raise InvalidOrder(
                f"Order total ${order.total:.2f} is below the minimum of ${self._config.minimum_total:.2f}"
            )
        if self._config.require_email:
            if not email:
                raise InvalidOrder("Customer email is required to place an order")
            if not _EMAIL_RE.match(email):
                raise InvalidOrder(f"Invalid customer email: {email}")

    def build_customer_info(self, session: VoiceSession, extra_details: Dict[str, Any]) -> Dict[str, Any]:
        order = session.working_order
        fee = self.service_fee(order.subtotal)
        return {
            "customer_id": session.customer_id,
            "email": extra_details.get("email") or session.customer_email,
            "name": extra_details.get("name"),
            "phone": extra_details.get("phone"),
            "special_instructions": extra_details.get("special_instructions") or order.special_instructions,
            "session_id": session.session_id,
            "subtotal": order.subtotal,
            "tax": order.tax,
            "service_fee": fee,
            "total": round(order.total + fee, 2),
        }

    async def finalize(self, session_id: str, extra_details: Optional[Dict[str, Any]] = None) -> str:
        """Persist the working order and close the session.

        Raises:
            EmptyOrder: no line items
            AlreadyFinalized: the session was finalized before
            InvalidOrder: validation failed
            SessionNotFound / SessionExpired: the session is gone for another reason
        """
        extra_details = dict(extra_details or {})
        try:
            async with self._registry.locked_session(session_id) as session:
                if session.finalized_order_id:
                    raise AlreadyFinalized(session_id, session.finalized_order_id)
                if session.working_order.is_empty():
                    _ORDERS_FINALIZED.labels(outcome="empty").inc()
                    raise EmptyOrder(session_id)

                customer_info = self.build_customer_info(session, extra_details)
                try:
                    self.validate_order(session, customer_info["email"])
                except InvalidOrder as e:
                    _ORDERS_FINALIZED.labels(outcome="invalid").inc()
                    logger.warning("Order validation failed", session_id=session_id, error=str(e))
                    raise

                items = session.working_order.snapshot_items()
                session.working_order.status = "submitting"
                try:
                    order_id = await self._store.create_order(items, customer_info)
                except Exception as e:
                    session.working_order.status = "building"
                    _ORDERS_FINALIZED.labels(outcome="store_error").inc()
                    logger.error("Order store rejected order", session_id=session_id, error=str(e), exc_info=True)
                    raise

                session.working_order.status = "submitted"
                session.finalized_order_id = order_id
                self._registry.mark_closed(session, "finalized")
        except SessionExpired:
            tombstone = self._registry.get_tombstone(session_id)
            if tombstone is not None and tombstone.finalized_order_id:
                _ORDERS_FINALIZED.labels(outcome="duplicate").inc()
                raise AlreadyFinalized(session_id, tombstone.finalized_order_id)
            raise

        _ORDERS_FINALIZED.labels(outcome="success").inc()
        logger.info(
            "Order finalized",
            session_id=session_id,
            order_id=order_id,
            items=len(items),
            total=customer_info["total"],
        )
        return order_id
