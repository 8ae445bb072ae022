"""
Clerk - Shopper Session & Tool-Call Bridge
==========================================
Glue for one conversational turn:

    message → LocalIntentRouter ─handled──────────────▶ reply
                     │ deferred (negotiation open)
                     ▼
              NegotiationManager ─handled──────────────▶ reply
                     │ not handled / unmatched
                     ▼
              ToolCallBridge → chat model → tools ─────▶ reply

A turn is fully processed before the next one is accepted; nothing
here runs in the background.
"""

import logging
import random
import re
import time
import uuid
from dataclasses import dataclass, field

from services.catalog import Catalog, Item
from services.config import Settings
from services.context_memory import ConversationMemory
from services.exceptions import ModelServiceError, ModelsExhaustedError
from services.intent_router import LocalIntentRouter
from services.llm_client import ChatModelClient
from services.negotiation import NegotiationManager
from services.replies import Phrasebook, Reply, ReplyIntent
from services.retrieval import HybridRetriever, SearchOutcome
from services.storefront import Cart, DisplayState
from services.tools import ToolExecutor, ToolResult, tool_schemas
from services.vector_matcher import EmbeddingProvider

logger = logging.getLogger("clerk.assistant")

_UNBACKED_DISCOUNT = re.compile(
    r"\d+\s*(?:%|percent)\s*off|discount (?:code|applied)|coupon code|\b[A-Z]{3,}-\d{1,2}-[A-Z0-9]{4}\b",
    re.I,
)

_SYSTEM_PROMPT = (
    "You are The Clerk, the shopping assistant of a curated fashion and home store. "
    "Be concise and a little dry. Use the tools for every search, cart change, display "
    "change and discount. Never promise or invent a discount or a coupon code: only "
    "generate_coupon can grant one, and it refuses until the shopper has made their case."
)


@dataclass
class TurnResult:
    """Everything the API returns for one message."""
    reply: Reply
    handled_by: str
    items: list[Item] = field(default_factory=list)
    search: SearchOutcome | None = None
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.reply.text

    @property
    def intent(self) -> ReplyIntent:
        return self.reply.intent


class ToolCallBridge:
    """Forwards unresolved messages to the chat model and runs its tool calls."""

    def __init__(self, client: ChatModelClient | None, executor: ToolExecutor,
                 memory: ConversationMemory, negotiation: NegotiationManager,
                 catalog: Catalog, history_turns: int = 6):
        self.client = client
        self.executor = executor
        self.memory = memory
        self.negotiation = negotiation
        self.catalog = catalog
        self.history_turns = history_turns

    def _system_message(self) -> dict:
        cart = self.executor.cart
        if cart.is_empty():
            cart_text = "Empty"
        else:
            cart_text = ", ".join(f"{l.name} (${l.price:.2f} x{l.quantity})" for l in cart.lines)
        state = self.negotiation.state.value
        content = (
            f"{_SYSTEM_PROMPT}\n\nCURRENT STATE:\n"
            f"- INVENTORY: {len(self.catalog)} items in {', '.join(self.catalog.categories()) or 'no categories'}\n"
            f"- CART: {cart_text}\n"
            f"- TOTAL: ${cart.total():.2f} | DISCOUNT: {cart.discount_percent}%\n"
            f"- NEGOTIATION: {state}\n"
            f"- RUDENESS: {self.negotiation.rudeness_score}"
        )
        summary = self.memory.get_summary()
        if summary:
            content += f"\n\nEARLIER IN THIS CONVERSATION:\n{summary}"
        return {"role": "system", "content": content}

    async def respond(self, message: str) -> TurnResult:
        if self.client is None or not self.client.configured:
            logger.warning("Chat model not configured, scripted fallback")
            return TurnResult(reply=Reply(ReplyIntent.FALLBACK), handled_by="model")

        messages = [
            self._system_message(),
            *self.memory.as_chat_messages(self.history_turns),
            {"role": "user", "content": message},
        ]
        try:
            completion = await self.client.complete(
                messages, tool_schemas(self.catalog.categories()))
        except (ModelsExhaustedError, ModelServiceError) as e:
            logger.error("Chat model unavailable: %s", e)
            return TurnResult(reply=Reply(ReplyIntent.MODEL_UNAVAILABLE), handled_by="model")

        results: list[ToolResult] = []
        for call in completion.tool_calls:
            result = await self.executor.execute(call.name, call.arguments)
            logger.info("Tool %s → %s", result.tool, result.reply.intent.value)
            results.append(result)

        coupon_accepted = any(r.tool == "generate_coupon" and r.accepted for r in results)
        if results:
            # the most significant result speaks: a coupon decision beats a search
            primary = next((r for r in results if r.tool == "generate_coupon"), results[-1])
            items = [i for r in results for i in r.items]
            search = next((r.search for r in results if r.search is not None), None)
            return TurnResult(reply=primary.reply, handled_by="model", items=items,
                              search=search, tool_results=results)

        text = completion.content.strip()
        if not text:
            return TurnResult(reply=Reply(ReplyIntent.FALLBACK), handled_by="model")
        if not coupon_accepted and _UNBACKED_DISCOUNT.search(text):
            logger.warning("Model promised an unbacked discount, replacing reply")
            return TurnResult(reply=Reply(ReplyIntent.COUPON_REJECTED), handled_by="model")
        return TurnResult(reply=Reply(ReplyIntent.MODEL_REPLY, {"text": text}), handled_by="model")


class ShopperSession:
    """All per-shopper state: cart, display, memory, negotiation, indexes."""

    def __init__(self, catalog: Catalog, settings: Settings | None = None,
                 provider: EmbeddingProvider | None = None, client: ChatModelClient | None = None,
                 session_id: str = "", rng: random.Random | None = None, clock=time.time):
        self.settings = settings or Settings()
        self.session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
        self.catalog = catalog
        self.clock = clock
        self.rng = rng or random.Random()
        self.opened_at = clock()

        self.cart = Cart()
        self.display = DisplayState()
        # turns older than the model's history window live on in the rolling summary
        self.memory = ConversationMemory(
            session_id=self.session_id, max_window=self.settings.bridge.history_turns, clock=clock)
        # session-open: the keyword index is built here and never rebuilt mid-session
        self.retriever = HybridRetriever(catalog, provider, self.settings.retrieval)
        self.negotiation = NegotiationManager(
            self.cart, cart_id=self.session_id, config=self.settings.negotiation,
            clock=clock, rng=self.rng,
        )
        self.router = LocalIntentRouter(
            catalog, self.cart, self.display, self.retriever, self.negotiation,
            self.memory, rng=self.rng,
        )
        self.executor = ToolExecutor(catalog, self.cart, self.display, self.retriever, self.negotiation)
        self.bridge = ToolCallBridge(
            client, self.executor, self.memory, self.negotiation, catalog,
            history_turns=self.settings.bridge.history_turns,
        )
        self.phrasebook = Phrasebook(self.rng)
        logger.info("Shopper session %s opened: %d items", self.session_id, len(catalog))

    async def handle_message(self, message: str) -> TurnResult:
        text = (message or "").strip()
        if not text:
            result = TurnResult(reply=Reply(ReplyIntent.NEED_MORE_DETAIL), handled_by="local")
            self.phrasebook.render(result.reply)
            return result

        route = await self.router.route(text)
        if route.handled:
            handled_by = "negotiation" if route.intent in ("discount", "rudeness") else "local"
            result = TurnResult(reply=route.reply, handled_by=handled_by,
                                items=route.items, search=route.search)
        elif route.deferred:
            outcome = self.negotiation.handle_reply(text)
            if outcome.handled:
                result = TurnResult(reply=outcome.reply, handled_by="negotiation")
            else:
                result = await self.bridge.respond(text)
        else:
            result = await self.bridge.respond(text)

        self.phrasebook.render(result.reply)
        self.memory.add_turn("user", text)
        self.memory.add_turn("clerk", result.text, metadata={
            "intent": result.intent.value,
            "handled_by": result.handled_by,
            "tools": [r.for_model() for r in result.tool_results],
        })
        logger.info(
            "Turn %s: %s via %s (%d items)",
            self.session_id, result.intent.value, result.handled_by, len(result.items),
        )
        return result
