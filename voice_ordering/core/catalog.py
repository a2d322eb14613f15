"""
Menu catalog and order persistence collaborators.

The core consumes these through the abstract interfaces below. The in-memory
implementations back the standalone service (menu loaded from configuration)
and the test-suite.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .models import LineItem

logger = structlog.get_logger(__name__)

_WORD_RE = re.compile(r"[a-z0-9']+")


def normalize_text(text: str) -> str:
    return " ".join(_WORD_RE.findall((text or "").lower()))


def _singular(word: str) -> str:
    if len(word) > 3 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("es") and word[-3] in "sxz":
        return word[:-2]
    if len(word) > 2 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _singular_phrase(text: str) -> str:
    return " ".join(_singular(w) for w in text.split())


@dataclass
class MenuItem:
    menu_item_id: str
    name: str
    price: float
    category: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    available: bool = True

    def search_terms(self) -> List[str]:
        terms = {normalize_text(self.name)}
        terms.update(normalize_text(alias) for alias in self.aliases)
        terms.discard("")
        return sorted(terms, key=len, reverse=True)


class MenuCatalog(ABC):
    """Menu lookup used by the intent processor."""

    @abstractmethod
    def resolve_item(self, name: str) -> Optional[MenuItem]:
        """Return the best menu match mentioned in ``name``, or None."""

    @abstractmethod
    def find_items(self, text: str) -> List[MenuItem]:
        """Return every menu item mentioned in ``text``, in order of appearance."""

    @abstractmethod
    def list_items(self) -> List[MenuItem]:
        """Return all available items."""

    def menu_context(self, focus_text: Optional[str] = None, max_items: int = 40) -> str:
        """Menu description for the response generator.

        When ``focus_text`` mentions menu items, only those items (and their
        categories) are described; otherwise a condensed menu by category.
        """
        items = self.list_items()
        if not items:
            return "The menu is currently unavailable."

        focused = self.find_items(focus_text) if focus_text else []
        if focused:
            categories = {item.category for item in focused if item.category}
            related = [i for i in items if i.category in categories and i not in focused]
            lines = [f"- {i.name}: ${i.price:.2f}" for i in focused]
            if related:
                lines.append("Also in the same categories: " + ", ".join(i.name for i in related[:10]))
            return "Items the customer mentioned:\n" + "\n".join(lines)

        by_category: Dict[str, List[MenuItem]] = {}
        for item in items[:max_items]:
            by_category.setdefault(item.category or "Other", []).append(item)
        sections = []
        for category, members in by_category.items():
            entries = ", ".join(f"{i.name} (${i.price:.2f})" for i in members)
            sections.append(f"{category}: {entries}")
        return "Menu:\n" + "\n".join(sections)


class InMemoryMenuCatalog(MenuCatalog):
    def __init__(self, items: Iterable[MenuItem] = ()):
        self._items: Dict[str, MenuItem] = {}
        for item in items:
            self._items[item.menu_item_id] = item

    @classmethod
    def from_config(cls, menu_config: Iterable[Any]) -> "InMemoryMenuCatalog":
        return cls(
            MenuItem(
                menu_item_id=str(entry.id),
                name=entry.name,
                price=float(entry.price),
                category=entry.category,
                aliases=list(entry.aliases or []),
                available=bool(entry.available),
            )
            for entry in menu_config
        )

    def list_items(self) -> List[MenuItem]:
        return [item for item in self._items.values() if item.available]

    def get(self, menu_item_id: str) -> Optional[MenuItem]:
        return self._items.get(menu_item_id)

    def _matches(self, text: str) -> List[tuple]:
        normalized = normalize_text(text)
        if not normalized:
            return []
        haystacks = (f" {normalized} ", f" {_singular_phrase(normalized)} ")
        found = []
        for item in self.list_items():
            for term in item.search_terms():
                needles = {f" {term} ", f" {_singular_phrase(term)} "}
                positions = [h.find(n) for h in haystacks for n in needles if h.find(n) >= 0]
                if positions:
                    found.append((min(positions), -len(term), item))
                    break
        return found

    def resolve_item(self, name: str) -> Optional[MenuItem]:
        matches = self._matches(name)
        if not matches:
            return None
        # Longest term wins ("cheese burger" over "burger"), then earliest mention
        matches.sort(key=lambda m: (m[1], m[0]))
        return matches[0][2]

    def find_items(self, text: str) -> List[MenuItem]:
        matches = self._matches(text)
        matches.sort(key=lambda m: (m[0], m[1]))
        ordered: List[MenuItem] = []
        for _, _, item in matches:
            if item not in ordered:
                ordered.append(item)
        return ordered


class OrderStore(ABC):
    """Order persistence collaborator."""

    @abstractmethod
    async def create_order(self, items: List[LineItem], customer_info: Dict[str, Any]) -> str:
        """Persist the order and return its identifier."""


class InMemoryOrderStore(OrderStore):
    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create_order(self, items: List[LineItem], customer_info: Dict[str, Any]) -> str:
        order_id = f"ord_{uuid.uuid4().hex[:12]}"
        async with self._lock:
            self.orders[order_id] = {
                "order_id": order_id,
                "items": [item.to_dict() for item in items],
                "customer_info": dict(customer_info),
            }
        logger.info("Order persisted", order_id=order_id, items=len(items))
        return order_id
