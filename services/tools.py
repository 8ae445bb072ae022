"""
Clerk - Tool Contracts
======================
The tools the chat model may call, as one tagged union of validated
request records (one variant per tool) plus the executor that runs them
against the retriever, the cart, the display and the negotiation manager.

Validation rules:
  - unknown or malformed optional fields fall back to their defaults
  - a missing required field (no query, no item, no percent) raises
    ToolArgumentError, which the executor turns into NEED_MORE_DETAIL
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Literal, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, field_validator

from services.catalog import Catalog, Item
from services.exceptions import CartLockedError, ToolArgumentError
from services.intent_router import match_item_by_name
from services.negotiation import NegotiationManager
from services.replies import Reply, ReplyIntent
from services.retrieval import HybridRetriever, SearchOutcome, extract_category
from services.storefront import SORT_ORDERS, Cart, DisplayState

logger = logging.getLogger("clerk.tools")

# Names the model (or older prompts) may use for each tool.
_TOOL_ALIASES = {
    "search": "search",
    "search_inventory": "search",
    "add_to_cart": "add_to_cart",
    "addtocart": "add_to_cart",
    "generate_coupon": "generate_coupon",
    "generatecoupon": "generate_coupon",
    "update_display": "update_display",
    "updatedisplay": "update_display",
    "update_ui": "update_display",
    "initiate_checkout": "initiate_checkout",
    "checkout": "initiate_checkout",
}


def _optional_number(value, cast):
    if value is None or value == "":
        return None
    try:
        return cast(float(value))
    except (TypeError, ValueError):
        return None


def _optional_text(value) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class SearchRequest(BaseModel):
    tool: Literal["search"] = "search"
    query: str = ""
    category: str | None = None
    min_price: float | None = Field(None, validation_alias=AliasChoices("min_price", "minPrice"))
    max_price: float | None = Field(None, validation_alias=AliasChoices("max_price", "maxPrice"))
    max_results: int = Field(10, validation_alias=AliasChoices("max_results", "maxResults"))

    @field_validator("query", mode="before")
    @classmethod
    def _query(cls, v):
        return v.strip() if isinstance(v, str) else ""

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _optional_text(v)

    @field_validator("min_price", "max_price", mode="before")
    @classmethod
    def _price(cls, v):
        number = _optional_number(v, float)
        return number if number is None or number >= 0 else None

    @field_validator("max_results", mode="before")
    @classmethod
    def _max_results(cls, v):
        number = _optional_number(v, int)
        return number if number and 0 < number <= 50 else 10


class AddToCartRequest(BaseModel):
    tool: Literal["add_to_cart"] = "add_to_cart"
    item_ref: str = Field("", validation_alias=AliasChoices(
        "item_ref", "itemRef", "product_id", "item_id", "name"))
    quantity: int = 1

    @field_validator("item_ref", mode="before")
    @classmethod
    def _ref(cls, v):
        return str(v).strip() if v is not None else ""

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v):
        number = _optional_number(v, int)
        return number if number and number > 0 else 1


class GenerateCouponRequest(BaseModel):
    tool: Literal["generate_coupon"] = "generate_coupon"
    percent: int | None = Field(None, validation_alias=AliasChoices("percent", "discount"))
    reason: str = ""

    @field_validator("percent", mode="before")
    @classmethod
    def _percent(cls, v):
        return _optional_number(v, int)

    @field_validator("reason", mode="before")
    @classmethod
    def _reason(cls, v):
        return _optional_text(v) or ""


class UpdateDisplayRequest(BaseModel):
    tool: Literal["update_display"] = "update_display"
    sort: str | None = None
    category: str | None = None

    @field_validator("sort", mode="before")
    @classmethod
    def _sort(cls, v):
        v = _optional_text(v)
        return v if v in SORT_ORDERS else None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _optional_text(v)


class CheckoutRequest(BaseModel):
    tool: Literal["initiate_checkout"] = "initiate_checkout"


ToolRequest = Annotated[
    Union[SearchRequest, AddToCartRequest, GenerateCouponRequest, UpdateDisplayRequest, CheckoutRequest],
    Field(discriminator="tool"),
]
_REQUEST_ADAPTER = TypeAdapter(ToolRequest)

_REQUIRED = {
    "search": ("query", lambda r: bool(r.query)),
    "add_to_cart": ("item_ref", lambda r: bool(r.item_ref)),
    "generate_coupon": ("percent", lambda r: r.percent is not None),
}


def parse_tool_request(name: str, arguments: str | dict | None) -> ToolRequest:
    """
    Single validation entry point for every tool call.

    Raises:
        ToolArgumentError: unknown tool, or a required field missing.
    """
    tool = _TOOL_ALIASES.get((name or "").strip().lower())
    if tool is None:
        raise ToolArgumentError(name or "?", detail="unknown tool")

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            logger.warning("Tool %s sent unparseable arguments: %.80s", tool, arguments)
            arguments = {}
    if not isinstance(arguments, dict):
        arguments = {}

    try:
        request = _REQUEST_ADAPTER.validate_python({**arguments, "tool": tool})
    except ValidationError as e:
        raise ToolArgumentError(tool, detail=str(e)) from e

    if tool in _REQUIRED:
        field_name, present = _REQUIRED[tool]
        if not present(request):
            raise ToolArgumentError(tool, field=field_name, detail="required field missing")
    return request


def tool_schemas(categories: list[str]) -> list[dict]:
    """OpenAI-style function declarations sent with every model call."""
    category_hint = ", ".join(["All", *categories]) or "All"
    return [
        {"type": "function", "function": {
            "name": "search",
            "description": "Hybrid catalog search (keyword + semantic). Use for any product request.",
            "parameters": {"type": "object", "properties": {
                "query": {"type": "string", "description": "Natural language query"},
                "category": {"type": "string", "description": f"One of: {category_hint}"},
                "min_price": {"type": "number"},
                "max_price": {"type": "number"},
                "max_results": {"type": "integer", "description": "Default 10"},
            }, "required": ["query"]},
        }},
        {"type": "function", "function": {
            "name": "add_to_cart",
            "description": "Add an item to the bag by id or by (partial) name.",
            "parameters": {"type": "object", "properties": {
                "item_ref": {"type": "string"},
                "quantity": {"type": "integer", "description": "Default 1"},
            }, "required": ["item_ref"]},
        }},
        {"type": "function", "function": {
            "name": "generate_coupon",
            "description": "Request a discount coupon. Rejected until the shopper has "
                           "negotiated for a few turns; never promise a discount without it.",
            "parameters": {"type": "object", "properties": {
                "percent": {"type": "integer"},
                "reason": {"type": "string"},
            }, "required": ["percent", "reason"]},
        }},
        {"type": "function", "function": {
            "name": "update_display",
            "description": "Sort or filter the product grid.",
            "parameters": {"type": "object", "properties": {
                "sort": {"type": "string", "enum": list(SORT_ORDERS)},
                "category": {"type": "string", "description": f"One of: {category_hint}"},
            }},
        }},
        {"type": "function", "function": {
            "name": "initiate_checkout",
            "description": "Start checkout with the current bag.",
            "parameters": {"type": "object", "properties": {}},
        }},
    ]


@dataclass
class ToolResult:
    """Outcome of one tool call, both for the shopper and for the model."""
    tool: str
    reply: Reply
    items: list[Item] = field(default_factory=list)
    search: SearchOutcome | None = None
    accepted: bool = False
    data: dict = field(default_factory=dict)

    def for_model(self) -> str:
        """Compact JSON summary, replayed to the model with the turn history."""
        payload = {"tool": self.tool, "intent": self.reply.intent.value, **self.data}
        if self.items:
            payload["items"] = [
                {"id": i.id, "name": i.name, "price": i.price, "category": i.category}
                for i in self.items
            ]
        return json.dumps(payload, default=str)


class ToolExecutor:
    """Runs validated tool requests against the session's collaborators."""

    def __init__(self, catalog: Catalog, cart: Cart, display: DisplayState,
                 retriever: HybridRetriever, negotiation: NegotiationManager):
        self.catalog = catalog
        self.cart = cart
        self.display = display
        self.retriever = retriever
        self.negotiation = negotiation

    async def execute(self, name: str, arguments: str | dict | None) -> ToolResult:
        try:
            request = parse_tool_request(name, arguments)
        except ToolArgumentError as e:
            logger.warning("Tool call rejected: %s", e)
            return ToolResult(tool=e.tool, reply=Reply(ReplyIntent.NEED_MORE_DETAIL),
                              data={"error": e.detail, "field": e.field})

        logger.info("Executing tool %s", request.tool)
        if isinstance(request, SearchRequest):
            return await self.search(request)
        if isinstance(request, AddToCartRequest):
            return self.add_to_cart(request)
        if isinstance(request, GenerateCouponRequest):
            return self.generate_coupon(request)
        if isinstance(request, UpdateDisplayRequest):
            return self.update_display(request)
        return self.checkout()

    async def search(self, request: SearchRequest) -> ToolResult:
        if len(self.catalog) == 0:
            return ToolResult(tool="search", reply=Reply(ReplyIntent.CATALOG_EMPTY))
        category = request.category or extract_category(request.query, self.catalog.categories())
        outcome = await self.retriever.search(
            request.query,
            category=category,
            min_price=request.min_price,
            max_price=request.max_price,
            max_results=request.max_results,
        )
        data = {"method": outcome.method, "elapsed_time_ms": round(outcome.elapsed_ms, 2)}
        if not outcome.items:
            return ToolResult(tool="search", reply=Reply(ReplyIntent.NO_RESULTS, {"query": request.query}),
                              search=outcome, data=data)
        self.display.update(query=request.query, category=category,
                            item_ids=[i.id for i in outcome.items])
        reply = Reply(ReplyIntent.SEARCH_RESULTS, {
            "count": len(outcome.items), "method": outcome.method, "elapsed_ms": outcome.elapsed_ms,
        })
        return ToolResult(tool="search", reply=reply, items=outcome.items, search=outcome,
                          accepted=True, data=data)

    def resolve_item(self, ref: str) -> Item | None:
        """Exact id first, then case-insensitive id, then fuzzy name."""
        item = self.catalog.get(ref)
        if item is not None:
            return item
        lowered = ref.lower()
        for candidate in self.catalog:
            if candidate.id.lower() == lowered:
                return candidate
        return match_item_by_name(ref, self.catalog.items, self.catalog.categories())

    def add_to_cart(self, request: AddToCartRequest) -> ToolResult:
        item = self.resolve_item(request.item_ref)
        if item is None:
            return ToolResult(tool="add_to_cart", reply=Reply(ReplyIntent.ITEM_NOT_FOUND),
                              data={"found": False})
        try:
            self.cart.add(item, request.quantity)
        except CartLockedError:
            return ToolResult(tool="add_to_cart", reply=Reply(ReplyIntent.CART_LOCKED),
                              data={"found": True, "locked": True})
        return ToolResult(
            tool="add_to_cart",
            reply=Reply(ReplyIntent.ITEM_ADDED, {"name": item.name, "quantity": request.quantity}),
            items=[item],
            accepted=True,
            data={"found": True, "item_id": item.id},
        )

    def generate_coupon(self, request: GenerateCouponRequest) -> ToolResult:
        result = self.negotiation.grant_coupon(request.percent, request.reason)
        data: dict = {"accepted": result.accepted}
        if result.accepted and result.session and result.session.coupon:
            data["code"] = result.session.coupon.code
            data["applied_percent"] = result.applied_percent
        return ToolResult(tool="generate_coupon", reply=result.reply, accepted=result.accepted, data=data)

    def update_display(self, request: UpdateDisplayRequest) -> ToolResult:
        self.display.update(sort=request.sort, category=request.category)
        return ToolResult(
            tool="update_display",
            reply=Reply(ReplyIntent.DISPLAY_UPDATED, {"sort": request.sort, "category": request.category}),
            accepted=True,
            data=self.display.to_dict(),
        )

    def checkout(self) -> ToolResult:
        if self.cart.is_empty():
            return ToolResult(tool="initiate_checkout", reply=Reply(ReplyIntent.CART_EMPTY))
        lines = "\n".join(f"- {l.name} x{l.quantity}: ${l.subtotal:.2f}" for l in self.cart.lines)
        reply = Reply(ReplyIntent.CHECKOUT_READY, {"lines": lines, "total": self.cart.total(),
                                                   "checkout": True})
        return ToolResult(tool="initiate_checkout", reply=reply, accepted=True,
                          data={"total": self.cart.total()})
