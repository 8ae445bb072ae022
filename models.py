"""
Clerk - Pydantic Request/Response Models
========================================
Wire schemas for the storefront front-end.
"""

from pydantic import BaseModel, Field


class ItemOut(BaseModel):
    """Catalog item as shown to the shopper (no floor price, no embedding)."""
    id: str
    name: str
    category: str
    price: float
    tags: list[str] = Field(default_factory=list)
    description: str = ""


class CartLineOut(BaseModel):
    item_id: str
    name: str
    quantity: int
    price: float
    subtotal: float


class CartOut(BaseModel):
    lines: list[CartLineOut] = Field(default_factory=list)
    subtotal: float = 0.0
    discount_percent: int = 0
    coupon_code: str | None = None
    total: float = 0.0
    locked: bool = False


class DisplayOut(BaseModel):
    sort_order: str = "relevance"
    category: str = "All"
    query: str = ""
    item_ids: list[str] = Field(default_factory=list)


class CouponOut(BaseModel):
    code: str
    percent: int
    reason: str


class SearchMetadata(BaseModel):
    query: str = ""
    method: str = "fallback"
    elapsed_time_ms: float = 0.0
    vector_match_count: int = 0
    keyword_match_count: int = 0
    results_count: int = 0


class SessionResponse(BaseModel):
    session_id: str
    item_count: int = 0


class ChatRequest(BaseModel):
    """One shopper message. No session_id opens a new session."""
    session_id: str | None = None
    message: str = ""


class ChatResponse(BaseModel):
    session_id: str
    reply: str = ""
    intent: str = ""
    handled_by: str = "local"
    items: list[ItemOut] = Field(default_factory=list)
    cart: CartOut = Field(default_factory=CartOut)
    display: DisplayOut = Field(default_factory=DisplayOut)
    coupon: CouponOut | None = None
    search: SearchMetadata | None = None


class SearchRequest(BaseModel):
    session_id: str
    query: str = ""
    category: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    max_results: int = Field(10, ge=1, le=50)


class SearchResponse(BaseModel):
    items: list[ItemOut] = Field(default_factory=list)
    method: str = "fallback"
    elapsed_time_ms: float = 0.0
    vector_match_count: int = 0
    keyword_match_count: int = 0


class CartItemRequest(BaseModel):
    """Cart edit from another UI surface; quantity 0 removes the line."""
    item_id: str
    quantity: int = Field(1, ge=0)


class ResetRequest(BaseModel):
    session_id: str
