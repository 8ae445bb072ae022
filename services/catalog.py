"""
Clerk - Catalog Snapshot
========================
Read-only view of the store's items for one session.

Items are owned by the catalog collaborator; here they are loaded once,
validated (floor_price <= price), and never mutated afterwards except
for attaching a cached embedding at startup.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("clerk.catalog")


class Item(BaseModel):
    """A sellable catalog entry."""
    id: str
    name: str
    category: str
    price: float = Field(ge=0)
    floor_price: float = Field(ge=0)
    tags: list[str] = Field(default_factory=list)
    description: str = ""
    embedding: list[float] | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value):
        if value is None:
            return []
        seen: list[str] = []
        for tag in value:
            if tag not in seen:
                seen.append(tag)
        return seen

    @model_validator(mode="after")
    def _floor_not_above_price(self) -> "Item":
        if self.floor_price > self.price:
            raise ValueError(
                f"floor_price {self.floor_price} exceeds price {self.price} for item {self.id}"
            )
        return self

    def search_text(self) -> str:
        """Text fed to both the keyword index and the embedding model."""
        return f"{self.name} {self.category} {' '.join(self.tags)} {self.description}"


class Catalog:
    """Immutable, ordered collection of items with id lookup."""

    def __init__(self, items: list[Item] | None = None):
        self._items: tuple[Item, ...] = tuple(items or [])
        self._by_id: dict[str, Item] = {item.id: item for item in self._items}
        if len(self._by_id) != len(self._items):
            raise ValueError("Catalog item ids must be unique")

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    @property
    def items(self) -> tuple[Item, ...]:
        return self._items

    def get(self, item_id: str) -> Item | None:
        return self._by_id.get(item_id)

    def categories(self) -> list[str]:
        """Distinct categories in catalog order."""
        seen: list[str] = []
        for item in self._items:
            if item.category not in seen:
                seen.append(item.category)
        return seen

    def with_embeddings(self, embeddings: dict[str, list[float]]) -> "Catalog":
        """Return a new snapshot with cached embeddings attached."""
        return Catalog([
            item.model_copy(update={"embedding": embeddings[item.id]})
            if item.id in embeddings else item
            for item in self._items
        ])

    def embedded_count(self) -> int:
        return sum(1 for item in self._items if item.embedding)


def load_catalog(path: str | Path) -> Catalog:
    """
    Load a catalog snapshot from a JSON file (a list of item objects).

    A missing file yields an empty catalog. Individual invalid items are
    skipped with an error log so one bad row cannot take the store down.
    """
    path = Path(path)
    if not path.exists():
        logger.warning("Catalog file %s not found, serving an empty catalog", path)
        return Catalog()

    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    items: list[Item] = []
    for row in raw:
        try:
            items.append(Item.model_validate(row))
        except ValueError as e:
            logger.error("Skipping invalid catalog row %s: %s", row.get("id", "?"), e)
    logger.info("Catalog loaded from %s: %d items", path, len(items))
    return Catalog(items)
