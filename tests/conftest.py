"""
Shared test fixtures for The Clerk tests.
=========================================
Fakes for the embedding provider, the clock and the chat model so no
test touches the network or loads the real embedding model.
"""

import random

import pytest

from services.catalog import Catalog, Item
from services.llm_client import ChatCompletion, ToolCall
from services.vector_matcher import EmbeddingProvider


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Keyword-bucket embeddings: each text maps to a vector with one
    dimension per bucket whose keywords it mentions. `vectors` can pin
    exact vectors for exact texts.
    """

    BUCKETS = (
        ("jacket", "blazer", "coat", "outerwear", "suede", "leather"),
        ("shirt", "tee", "linen", "cotton"),
        ("boots", "sneakers", "shoes", "footwear"),
        ("lamp", "candle", "blanket", "home"),
    )

    def __init__(self, vectors: dict[str, list[float]] | None = None, fail: bool = False):
        self.vectors = vectors or {}
        self.fail = fail
        self.calls: list[str] = []

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("embedding backend down")
        out = []
        for text in texts:
            self.calls.append(text)
            if text in self.vectors:
                out.append(self.vectors[text])
                continue
            lowered = text.lower()
            out.append([
                1.0 if any(word in lowered for word in bucket) else 0.0
                for bucket in self.BUCKETS
            ])
        return out


class ScriptedChatClient:
    """Stands in for ChatModelClient; returns queued completions in order."""

    def __init__(self, completions: list | None = None, configured: bool = True):
        self.completions = list(completions or [])
        self.configured = configured
        self.requests: list[list[dict]] = []

    async def complete(self, messages, tools=None):
        self.requests.append(messages)
        nxt = self.completions.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def tool_completion(name: str, arguments: str = "{}") -> ChatCompletion:
    return ChatCompletion(model="test-model", tool_calls=[ToolCall(name=name, arguments=arguments)])


def text_completion(text: str) -> ChatCompletion:
    return ChatCompletion(model="test-model", content=text)


def make_item(item_id: str, name: str, category: str, price: float, floor: float | None = None,
              tags: list[str] | None = None, description: str = "") -> Item:
    return Item(
        id=item_id,
        name=name,
        category=category,
        price=price,
        floor_price=floor if floor is not None else price * 0.8,
        tags=tags or [],
        description=description,
    )


@pytest.fixture
def items() -> list[Item]:
    return [
        make_item("out-001", "Suede Blazer", "Outerwear", 280, 210, ["suede", "tailored"]),
        make_item("out-002", "Wool Overcoat", "Outerwear", 350, 270, ["wool", "winter"]),
        make_item("bas-001", "Heavyweight Cotton Tee", "Basics", 45, 36, ["cotton", "white"]),
        make_item("acc-001", "Leather Belt", "Accessories", 85, 60, ["brass buckle", "brown"]),
        make_item("hom-001", "Ceramic Table Lamp", "Home", 190, 150, ["ceramic", "lighting"]),
        make_item("app-001", "Linen Camp Shirt", "Apparel", 95, 72, ["linen", "summer"]),
        make_item("ftw-001", "Canvas Low Sneakers", "Footwear", 90, 70, ["canvas", "white"]),
    ]


@pytest.fixture
def catalog(items) -> Catalog:
    return Catalog(items)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(7)


@pytest.fixture(autouse=True)
def _reset_app_state():
    """Reset main's process-wide state so tests don't leak into each other."""
    import main

    main.sessions.clear()
    saved = (main.catalog, main.provider, main.client)
    yield
    main.sessions.clear()
    main.catalog, main.provider, main.client = saved
