"""
Offline response generator.

Builds the spoken reply from the order update and the order summary without
calling a hosted model. Used when no provider API key is configured and as a
deterministic generator in development.
"""

from __future__ import annotations

from typing import Any, Dict

from ..logging_config import get_logger
from .base import LLMComponent, LLMResponse, ResponseContext

logger = get_logger(__name__)


class TemplateResponseGenerator(LLMComponent):
    component_key = "template_llm"

    async def start(self) -> None:
        logger.info("Template response generator active; replies are built from order state")

    async def generate(
        self,
        session_id: str,
        transcript: str,
        context: ResponseContext,
        options: Dict[str, Any],
    ) -> LLMResponse:
        parts = []
        if context.order_update_message:
            parts.append(context.order_update_message)
        if context.order_context:
            parts.append(context.order_context)
        if not context.order_update_message:
            parts.append("What would you like to order?")
        else:
            parts.append("Anything else?")
        return LLMResponse(text=" ".join(parts), metadata={"generator": "template"})
