"""
Order Intent Processor

Maps a transcribed utterance plus the current working order onto one order
mutation: add an item, remove an item, change a quantity, attach a
customization, or nothing. Classification is keyword based; menu items are
resolved through the MenuCatalog collaborator.

Every mutation is computed on a copy of the line items and swapped in only
when it succeeds, so a failed turn never leaves the order half-edited.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from .catalog import MenuCatalog, MenuItem, normalize_text
from .models import ConversationTurn, LineItem, OrderAction, OrderUpdateResult, VoiceSession

logger = structlog.get_logger(__name__)

REMOVE_KEYWORDS = ("remove", "delete", "take off", "take out", "don't want", "dont want", "no more", "cancel the", "get rid of")
QUANTITY_KEYWORDS = ("change", "update", "make it", "make that", "instead of", "more", "less", "fewer")
CUSTOMIZATION_KEYWORDS = ("without", "extra", "hold the", "on the side", "no ", "with ", "light ")
ADD_KEYWORDS = ("add", "order", "get", "i want", "i'll have", "ill have", "can i get", "i'd like", "id like", "give me", "i'll take", "another")
FINALIZE_KEYWORDS = ("that's all", "thats all", "that is all", "checkout", "check out", "pay", "finish", "complete", "done", "ready")

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "another": 1, "zero": 0, "none": 0,
}
_NUMBER_PATTERN = r"\d+|" + "|".join(sorted((w for w in NUMBER_WORDS if w not in ("a", "an", "another")), key=len, reverse=True))
_NUMBER_RE = re.compile(rf"\b({_NUMBER_PATTERN})\b")
_TARGET_NUMBER_RE = re.compile(rf"\b(?:to|make it|make that)\s+({_NUMBER_PATTERN})\b")
_INSTEAD_NUMBER_RE = re.compile(rf"\b({_NUMBER_PATTERN})\b(?:\s+[a-z']+){{0,2}}\s+instead of\b")
_LEADING_QTY_RE = re.compile(
    r"\b(\d+|" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True)) + r")\s+(?:(?!and\b|with\b)[a-z']+\s+){0,2}$"
)
_CUSTOMIZATION_RE = re.compile(
    r"\b(without|with|no|extra|hold the|light)\s+([a-z' ]+?)(?=\s+(?:and|please|on my|on the|on it|to it|to my|to the|for)\b|$)"
)
_ON_THE_SIDE_RE = re.compile(r"\b([a-z']+) on the side\b")
_IGNORED_MODIFIERS = {"thanks", "thank you", "problem", "worries", "that's all", "thats all", "that's it", "more", "it", "i"}


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    padded = f" {text} "
    for keyword in keywords:
        if keyword.endswith(" "):
            if f" {keyword}" in padded:
                return True
        elif re.search(rf"\b{re.escape(keyword)}\b", text):
            return True
    return False


def _number_value(token: str) -> int:
    return int(token) if token.isdigit() else NUMBER_WORDS[token]


def parse_number(text: str) -> Optional[int]:
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    return _number_value(match.group(1))


def parse_target_quantity(text: str) -> Optional[int]:
    """The quantity a change request asks for.

    "change the 2 burgers to 3" and "make it 3" name the target after the verb;
    "3 burgers instead of 2" names it before "instead of". Otherwise the last
    number spoken wins.
    """
    for pattern in (_TARGET_NUMBER_RE, _INSTEAD_NUMBER_RE):
        match = pattern.search(text)
        if match:
            return _number_value(match.group(1))
    numbers = _NUMBER_RE.findall(text)
    return _number_value(numbers[-1]) if numbers else None


def extract_customizations(text: str) -> List[str]:
    """Pull modifier phrases such as "no onions" or "extra cheese" out of an utterance."""
    lowered = normalize_text(text)
    found: List[str] = []
    for marker, body in _CUSTOMIZATION_RE.findall(lowered):
        body = body.strip()
        if not body or body in _IGNORED_MODIFIERS or body.startswith("thank"):
            continue
        phrase = body if marker == "with" else f"{marker} {body}"
        if phrase not in found:
            found.append(phrase)
    for side in _ON_THE_SIDE_RE.findall(lowered):
        # "salad with dressing on the side" yields "dressing" above; keep the side form only
        found = [p for p in found if p != side]
        phrase = f"{side} on the side"
        if phrase not in found:
            found.append(phrase)
    return found


class OrderIntentProcessor:
    """Classify utterances and apply the resulting mutation to a session's order."""

    def __init__(self, registry, catalog: MenuCatalog, conversation_log=None, history_window: int = 10):
        self._registry = registry
        self._catalog = catalog
        self._log = conversation_log
        self._history_window = history_window

    async def process_order_intent(self, transcription: str, session_id: str) -> OrderUpdateResult:
        async with self._registry.locked_session(session_id) as session:
            history: Sequence[ConversationTurn] = ()
            if self._log is not None:
                history = self._log.history_locked(session_id, self._history_window)
            result = self.apply_intent(session, transcription, history)
            session.touch(self._registry.now())
            return result

    # ------------------------------------------------------------------ classification

    def classify(self, transcription: str, mentioned: Optional[List[MenuItem]] = None) -> OrderAction:
        text = normalize_text(transcription)
        if not text:
            return OrderAction.NO_OP
        if mentioned is None:
            mentioned = self._catalog.find_items(text)

        if _contains_any(text, REMOVE_KEYWORDS) or (mentioned and _contains_any(text, ("cancel",))):
            return OrderAction.REMOVE_ITEM
        if _contains_any(text, QUANTITY_KEYWORDS) and parse_number(text) is not None:
            relative_add = _contains_any(text, ("more",)) and _contains_any(text, ADD_KEYWORDS)
            if not (relative_add and mentioned):
                return OrderAction.MODIFY_QUANTITY
        if mentioned and (_contains_any(text, ADD_KEYWORDS) or not _contains_any(text, CUSTOMIZATION_KEYWORDS)):
            return OrderAction.ADD_ITEM
        if not mentioned and _contains_any(text, FINALIZE_KEYWORDS):
            return OrderAction.FINALIZE_REQUEST
        if _contains_any(text, CUSTOMIZATION_KEYWORDS) and extract_customizations(text):
            return OrderAction.ADD_CUSTOMIZATION
        if _contains_any(text, FINALIZE_KEYWORDS):
            return OrderAction.FINALIZE_REQUEST
        if _contains_any(text, ADD_KEYWORDS) and not mentioned:
            # Asked for something, but nothing on the menu matched
            return OrderAction.ADD_ITEM
        return OrderAction.NO_OP

    # ------------------------------------------------------------------ mutation

    def apply_intent(
        self,
        session: VoiceSession,
        transcription: str,
        history: Sequence[ConversationTurn] = (),
    ) -> OrderUpdateResult:
        """Apply the utterance to ``session.working_order``.

        The caller must hold the session lock. Catalog failures are reported on
        the result and leave the order untouched.
        """
        text = normalize_text(transcription)
        try:
            mentioned = self._catalog.find_items(text) if text else []
            action = self.classify(text, mentioned)
            items = session.working_order.snapshot_items()

            if action == OrderAction.ADD_ITEM:
                result, new_items = self._add(text, mentioned, items)
            elif action == OrderAction.REMOVE_ITEM:
                result, new_items = self._remove(text, mentioned, items, history)
            elif action == OrderAction.MODIFY_QUANTITY:
                result, new_items = self._modify_quantity(text, mentioned, items, history)
            elif action == OrderAction.ADD_CUSTOMIZATION:
                result, new_items = self._customize(text, mentioned, items, history)
            elif action == OrderAction.FINALIZE_REQUEST:
                message = "Ready to place the order." if items else "The order is empty."
                return OrderUpdateResult(updated=False, action=action, message=message)
            else:
                return OrderUpdateResult(updated=False, action=OrderAction.NO_OP, message="No order change requested.")
        except Exception as e:
            logger.warning(
                "Order intent processing failed; order left unchanged",
                session_id=session.session_id,
                error=str(e),
                exc_info=True,
            )
            return OrderUpdateResult(
                updated=False,
                action=OrderAction.NO_OP,
                message="Sorry, I couldn't update the order.",
                error=str(e),
            )

        if result.updated:
            session.working_order.items = new_items
            logger.info(
                "Working order updated",
                session_id=session.session_id,
                action=result.action.value,
                item_count=session.working_order.item_count,
                subtotal=session.working_order.subtotal,
            )
        else:
            logger.debug(
                "Order intent produced no change",
                session_id=session.session_id,
                action=result.action.value,
                error=result.error,
            )
        return result

    def _add(self, text: str, mentioned: List[MenuItem], items: List[LineItem]) -> Tuple[OrderUpdateResult, List[LineItem]]:
        if not mentioned:
            return OrderUpdateResult(
                updated=False,
                action=OrderAction.ADD_ITEM,
                message="I couldn't find that on the menu.",
                error="item_not_found",
            ), items

        # "a burger with fries" names a second item, not a modifier
        customizations = [c for c in extract_customizations(text) if self._catalog.resolve_item(c) is None]
        added: List[LineItem] = []
        for index, menu_item in enumerate(mentioned):
            quantity = self._quantity_before(text, menu_item)
            if quantity is None:
                quantity = 1
            if quantity <= 0:
                continue
            line = LineItem(
                menu_item_id=menu_item.menu_item_id,
                name=menu_item.name,
                quantity=quantity,
                unit_price=menu_item.price,
                customizations=list(customizations) if index == self._customization_owner(text, mentioned) else [],
            )
            items.append(line)
            added.append(line)

        if not added:
            return OrderUpdateResult(updated=False, action=OrderAction.ADD_ITEM, message="Nothing to add."), items
        return OrderUpdateResult(
            updated=True,
            action=OrderAction.ADD_ITEM,
            message="Added " + ", ".join(line.describe() for line in added) + " to your order.",
            line_item=added[0],
        ), items

    def _remove(self, text, mentioned, items, history) -> Tuple[OrderUpdateResult, List[LineItem]]:
        index = self._find_line(items, mentioned, history if not mentioned else ())
        if index is None:
            return OrderUpdateResult(
                updated=False,
                action=OrderAction.REMOVE_ITEM,
                message="That item isn't in your order.",
            ), items
        removed = items.pop(index)
        return OrderUpdateResult(
            updated=True,
            action=OrderAction.REMOVE_ITEM,
            message=f"Removed {removed.name} from your order.",
            line_item=removed,
        ), items

    def _modify_quantity(self, text, mentioned, items, history) -> Tuple[OrderUpdateResult, List[LineItem]]:
        index = self._find_line(items, mentioned, history)
        if index is None and not mentioned and items:
            index = len(items) - 1
        amount = parse_target_quantity(text)
        if index is None or amount is None:
            return OrderUpdateResult(
                updated=False,
                action=OrderAction.MODIFY_QUANTITY,
                message="I couldn't tell which item to change.",
            ), items

        line = items[index]
        if _contains_any(text, ("more",)):
            new_quantity = line.quantity + amount
        elif _contains_any(text, ("less", "fewer")):
            new_quantity = line.quantity - amount
        else:
            new_quantity = amount

        if new_quantity <= 0:
            items.pop(index)
            message = f"Removed {line.name} from your order."
        else:
            line.quantity = new_quantity
            message = f"Updated {line.name} to {new_quantity}."
        return OrderUpdateResult(
            updated=True,
            action=OrderAction.MODIFY_QUANTITY,
            message=message,
            line_item=line,
        ), items

    def _customize(self, text, mentioned, items, history) -> Tuple[OrderUpdateResult, List[LineItem]]:
        customizations = extract_customizations(text)
        index = self._find_line(items, mentioned, history)
        if index is None and mentioned:
            # "a burger with cheese" when no burger is on the order yet
            return self._add(text, mentioned, items)
        if index is None and items:
            index = len(items) - 1
        if index is None or not customizations:
            return OrderUpdateResult(
                updated=False,
                action=OrderAction.ADD_CUSTOMIZATION,
                message="There's no matching item to customize yet.",
            ), items

        line = items[index]
        for phrase in customizations:
            if phrase not in line.customizations:
                line.customizations.append(phrase)
        return OrderUpdateResult(
            updated=True,
            action=OrderAction.ADD_CUSTOMIZATION,
            message=f"Got it, {', '.join(customizations)} on the {line.name}.",
            line_item=line,
        ), items

    # ------------------------------------------------------------------ helpers

    def _find_line(
        self,
        items: List[LineItem],
        mentioned: List[MenuItem],
        history: Sequence[ConversationTurn],
    ) -> Optional[int]:
        """Index of the most recently added line matching the named (or recently discussed) item."""
        targets = [m.menu_item_id for m in mentioned]
        if not targets:
            recent = self._recent_history_item(history)
            if recent is not None:
                targets = [recent.menu_item_id]
        for index in range(len(items) - 1, -1, -1):
            if items[index].menu_item_id in targets:
                return index
        return None

    def _recent_history_item(self, history: Sequence[ConversationTurn]) -> Optional[MenuItem]:
        for turn in reversed(list(history)):
            found = self._catalog.find_items(turn.user_message)
            if found:
                return found[-1]
        return None

    @staticmethod
    def _mention_position(text: str, menu_item: MenuItem) -> int:
        positions = [text.find(term) for term in menu_item.search_terms() if text.find(term) >= 0]
        if not positions:
            stem = menu_item.search_terms()[0].rstrip("s") if menu_item.search_terms() else ""
            if stem and text.find(stem) >= 0:
                positions.append(text.find(stem))
        return min(positions) if positions else -1

    def _quantity_before(self, text: str, menu_item: MenuItem) -> Optional[int]:
        position = self._mention_position(text, menu_item)
        if position <= 0:
            return None
        match = _LEADING_QTY_RE.search(text[:position])
        if not match:
            return None
        token = match.group(1)
        return int(token) if token.isdigit() else NUMBER_WORDS[token]

    def _customization_owner(self, text: str, mentioned: List[MenuItem]) -> int:
        """Index of the mentioned item that customizations in ``text`` belong to.

        Modifiers attach to the closest item named before the first modifier.
        """
        match = _CUSTOMIZATION_RE.search(text) or _ON_THE_SIDE_RE.search(text)
        if not match or len(mentioned) < 2:
            return 0
        marker_pos = match.start()
        owner, best = 0, -1
        for index, item in enumerate(mentioned):
            position = self._mention_position(text, item)
            if best < position <= marker_pos:
                owner, best = index, position
        return owner
