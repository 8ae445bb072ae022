"""
Clerk - Storefront Collaborators
================================
In-memory stand-ins for the cart and the product grid.

The real storefront owns these; the assistant only mutates them through
the small surface below. The cart carries the negotiation lock and the
single applied coupon (a new coupon overwrites the previous one).
"""

import logging
import time
from dataclasses import dataclass, field

from services.catalog import Item
from services.exceptions import CartLockedError

logger = logging.getLogger("clerk.storefront")

SORT_ORDERS = ("relevance", "price-low", "price-high")


@dataclass
class CartLine:
    item_id: str
    name: str
    category: str
    quantity: int
    price: float
    floor_price: float

    @property
    def subtotal(self) -> float:
        return self.price * self.quantity

    @property
    def floor_subtotal(self) -> float:
        return self.floor_price * self.quantity


@dataclass
class Coupon:
    """An applied discount. Negative percent means a surcharge."""
    code: str
    percent: int
    reason: str
    applied_at: float = 0.0


class Cart:
    """Shopping bag for one shopper session."""

    def __init__(self):
        self._lines: dict[str, CartLine] = {}
        self.coupon: Coupon | None = None
        self.locked_by: str | None = None

    # ── Reads ──────────────────────────────────────────────────────────

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    @property
    def is_locked(self) -> bool:
        return self.locked_by is not None

    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def subtotal(self) -> float:
        return round(sum(line.subtotal for line in self._lines.values()), 2)

    def floor_total(self) -> float:
        return round(sum(line.floor_subtotal for line in self._lines.values()), 2)

    @property
    def discount_percent(self) -> int:
        return self.coupon.percent if self.coupon else 0

    def total(self) -> float:
        return round(self.subtotal() * (1 - self.discount_percent / 100), 2)

    def categories(self) -> set[str]:
        return {line.category for line in self._lines.values()}

    def snapshot(self) -> list[CartLine]:
        """Copy of the lines, safe to keep after the cart changes."""
        return [CartLine(**vars(line)) for line in self._lines.values()]

    # ── Writes ─────────────────────────────────────────────────────────

    def _check_unlocked(self) -> None:
        if self.locked_by is not None:
            raise CartLockedError(self.locked_by)

    def add(self, item: Item, quantity: int = 1) -> CartLine:
        self._check_unlocked()
        quantity = max(1, int(quantity))
        line = self._lines.get(item.id)
        if line:
            line.quantity += quantity
        else:
            line = CartLine(
                item_id=item.id,
                name=item.name,
                category=item.category,
                quantity=quantity,
                price=item.price,
                floor_price=item.floor_price,
            )
            self._lines[item.id] = line
        logger.info("Cart add: %s x%d (now %d)", item.id, quantity, line.quantity)
        return line

    def remove(self, item_id: str) -> CartLine | None:
        self._check_unlocked()
        line = self._lines.pop(item_id, None)
        logger.info("Cart remove: %s (%s)", item_id, "removed" if line else "not in cart")
        return line

    def set_quantity(self, item_id: str, quantity: int) -> None:
        self._check_unlocked()
        if quantity <= 0:
            self._lines.pop(item_id, None)
        elif item_id in self._lines:
            self._lines[item_id].quantity = quantity

    def lock(self, owner: str) -> None:
        self.locked_by = owner
        logger.info("Cart locked by %s", owner)

    def unlock(self, owner: str) -> None:
        if self.locked_by == owner:
            self.locked_by = None
            logger.info("Cart unlocked by %s", owner)

    def apply_coupon(self, code: str, percent: int, reason: str,
                     applied_at: float | None = None) -> Coupon:
        self.coupon = Coupon(
            code=code,
            percent=percent,
            reason=reason,
            applied_at=applied_at if applied_at is not None else time.time(),
        )
        logger.info("Coupon applied: %s (%d%%, %s)", code, percent, reason)
        return self.coupon

    def to_dict(self) -> dict:
        return {
            "lines": [vars(line) | {"subtotal": line.subtotal} for line in self._lines.values()],
            "subtotal": self.subtotal(),
            "discount_percent": self.discount_percent,
            "coupon_code": self.coupon.code if self.coupon else None,
            "total": self.total(),
            "locked": self.is_locked,
        }


@dataclass
class DisplayState:
    """What the product grid currently shows."""
    sort_order: str = "relevance"
    category: str = "All"
    query: str = ""
    item_ids: list[str] = field(default_factory=list)

    def update(self, sort: str | None = None, category: str | None = None,
               query: str | None = None, item_ids: list[str] | None = None) -> None:
        if sort in SORT_ORDERS:
            self.sort_order = sort
        if category:
            self.category = category
        if query is not None:
            self.query = query
        if item_ids is not None:
            self.item_ids = list(item_ids)
        logger.info(
            "Display updated: sort=%s category=%s ids=%d",
            self.sort_order, self.category, len(self.item_ids),
        )

    def to_dict(self) -> dict:
        return {
            "sort_order": self.sort_order,
            "category": self.category,
            "query": self.query,
            "item_ids": list(self.item_ids),
        }
