"""
Clerk - Local Intent Router
===========================
Fast, deterministic first pass over every user message.

Classifiers run in a fixed priority order and the first match wins:

     1. discount request   → negotiation manager
     2. greeting
     3. help
     4. show cart
     5. checkout           (skipped if recent turns talk about discounts)
     6. sort / filter
     7. add to cart by fuzzy name (a bare category word is not enough)
     8. remove from cart
     9. recommendation
    10. general search     (only with clear shopping markers)

Anything else is left for the chat model. Rudeness is scored before all
of the above, and while a negotiation is open that is ALL the router
does: the rest is deferred so cart edits cannot race with bargaining.
"""

import logging
import random
import re
from dataclasses import dataclass, field

from services import signals
from services.catalog import Catalog, Item
from services.context_memory import ConversationMemory
from services.keyword_ranker import tokenize
from services.negotiation import NegotiationManager
from services.replies import Reply, ReplyIntent
from services.retrieval import HybridRetriever, SearchOutcome, extract_category
from services.storefront import Cart, DisplayState

logger = logging.getLogger("clerk.router")

_GREETING = re.compile(
    r"^(hi|hey|hello|yo|sup|what'?s up|howdy|good (?:morning|afternoon|evening)|greetings)\b", re.I)
_HELP = re.compile(r"^help\b(?! me)|\b(what can you do|how does this work|what do you do)\b", re.I)
_SHOW_CART = re.compile(
    r"\b(show|view|see|open|check|what'?s in)\b(?: me)? (?:my|the) (cart|bag|basket)"
    r"(?: please| now| again)?\s*[?.!]*$|^(?:my )?(cart|bag|basket)\s*\??$", re.I)
_CHECKOUT = re.compile(
    r"\b(checkout|check out(?! (?:this|these|that|those|the|a|an|some|your)\b)|buy now|pay now|complete (?:my |the )?(?:order|purchase)|"
    r"place (?:my |the )?order)\b", re.I)
_SORT = re.compile(r"\b(sort|order by|arrange|cheapest|most expensive|low to high|high to low|"
                   r"price.?low|price.?high|by relevance)\b", re.I)
_SORT_HIGH = re.compile(r"\b(high to low|most expensive|expensive first|price.?high|descending)\b", re.I)
_SORT_RELEVANCE = re.compile(r"\b(relevance|relevant|default order)\b", re.I)
_FILTER = re.compile(r"\b(filter|only show|show only|just show|switch to|narrow to)\b", re.I)
_FILTER_RESET = re.compile(r"\b(reset|clear|remove) (?:the )?filters?\b|\bshow (?:me )?everything\b", re.I)
_ADD = re.compile(r"\b(add|put|throw in|i'?ll take|give me|grab|buy)\b", re.I)
_REMOVE = re.compile(r"\b(remove|delete|take out|drop|get rid of)\b", re.I)
_RECOMMEND = re.compile(
    r"\b(recommend|suggest|what goes with|pairs? with|complete the look|goes well with|"
    r"match(?:es)? with)\b", re.I)
_SHOPPING = re.compile(
    r"\b(show me|looking for|look for|find|search(?: for)?|do you have|got any|i need|i want|browse)\b",
    re.I)
_QUANTITY = re.compile(
    r"\b(?:add|put|take|grab|buy|give me|throw in) (\d{1,2})\b|\b(\d{1,2}) ?(?:x|of|pcs|pieces)\b", re.I)
_NUMBER_WORDS = {"one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "a pair": 2, "a couple": 2}

_STOP_WORDS = frozenset({
    "add", "put", "the", "this", "that", "please", "cart", "bag", "basket", "into", "for",
    "take", "out", "remove", "delete", "drop", "get", "rid", "give", "grab", "throw",
    "and", "with", "one", "two", "three", "four", "five", "some", "can", "you", "want",
    "i'll", "ill", "from", "my", "your", "buy",
})


@dataclass
class RouteResult:
    """What the router decided for one message."""
    handled: bool
    intent: str = ""
    reply: Reply | None = None
    items: list[Item] = field(default_factory=list)
    search: SearchOutcome | None = None
    deferred: bool = False


def _category_words(categories: list[str]) -> set[str]:
    words = set()
    for category in categories:
        for token in tokenize(category):
            words.add(token)
            if token.endswith("s"):
                words.add(token[:-1])
    return words


def parse_quantity(message: str) -> int:
    lowered = message.lower()
    for word, value in _NUMBER_WORDS.items():
        if re.search(rf"\b{word}\b", lowered):
            return value
    m = _QUANTITY.search(lowered)
    if m:
        return max(1, int(m.group(1) or m.group(2)))
    return 1


def match_item_by_name(message: str, items: list[Item] | tuple[Item, ...],
                       categories: list[str]) -> Item | None:
    """
    Best fuzzy name match for a message, or None.

    A full item name inside the message wins outright. Otherwise the item
    sharing the most name tokens wins, but only if at least one shared
    token is not a category word ("add outerwear" matches nothing).
    """
    lowered = message.lower()
    for item in items:
        if item.name.lower() in lowered:
            return item

    query_tokens = {t for t in tokenize(message) if t not in _STOP_WORDS}
    if not query_tokens:
        return None
    category_words = _category_words(categories)

    best: Item | None = None
    best_overlap = 0
    for item in items:
        shared = query_tokens & set(tokenize(item.name))
        if not shared or shared <= category_words:
            continue
        if len(shared) > best_overlap:
            best, best_overlap = item, len(shared)
    return best


class LocalIntentRouter:
    """Priority-ordered heuristic classifiers with immediate side effects."""

    def __init__(self, catalog: Catalog, cart: Cart, display: DisplayState,
                 retriever: HybridRetriever, negotiation: NegotiationManager,
                 memory: ConversationMemory, rng: random.Random | None = None,
                 discount_context_turns: int = 4):
        self.catalog = catalog
        self.cart = cart
        self.display = display
        self.retriever = retriever
        self.negotiation = negotiation
        self.memory = memory
        self.rng = rng or random.Random()
        self.discount_context_turns = discount_context_turns

    async def route(self, message: str) -> RouteResult:
        """Classify one message; the current message must not be in memory yet."""
        text = message.strip()

        rudeness = self.negotiation.register_rudeness(text)
        if rudeness.handled:
            return RouteResult(handled=True, intent="rudeness", reply=rudeness.reply)

        if self.negotiation.active_session is not None:
            return RouteResult(handled=False, intent="negotiation_active", deferred=True)

        for name, classifier in (
            ("discount", self._discount),
            ("greeting", self._greeting),
            ("help", self._help),
            ("show_cart", self._show_cart),
            ("checkout", self._checkout),
            ("sort_filter", self._sort_filter),
            ("add_to_cart", self._add_to_cart),
            ("remove_from_cart", self._remove_from_cart),
            ("recommendation", self._recommend),
        ):
            reply = classifier(text)
            if reply is not None:
                logger.info("Local intent: %s", name)
                return RouteResult(handled=True, intent=name, reply=reply,
                                   items=reply.context.pop("_items", []))

        result = await self._search(text)
        if result is not None:
            logger.info("Local intent: search (%s)", result.reply.intent.value)
            return result

        logger.info("No local intent for \"%s\", forwarding", text[:50])
        return RouteResult(handled=False, intent="unmatched")

    # ── Classifiers (None = not mine) ──────────────────────────────────

    def _discount(self, text: str) -> Reply | None:
        if not signals.is_discount_request(text) or signals.is_decline(text):
            return None
        return self.negotiation.start(text).reply

    def _greeting(self, text: str) -> Reply | None:
        if _GREETING.search(text) and len(text.split()) <= 5:
            return Reply(ReplyIntent.GREETING)
        return None

    def _help(self, text: str) -> Reply | None:
        return Reply(ReplyIntent.HELP) if _HELP.search(text) else None

    def _cart_context(self) -> dict:
        lines = "\n".join(
            f"- {line.name} x{line.quantity}: ${line.subtotal:.2f}" for line in self.cart.lines
        )
        return {"lines": lines, "subtotal": self.cart.subtotal(), "total": self.cart.total()}

    def _show_cart(self, text: str) -> Reply | None:
        if not _SHOW_CART.search(text):
            return None
        if self.cart.is_empty():
            return Reply(ReplyIntent.CART_EMPTY)
        return Reply(ReplyIntent.CART_SUMMARY, self._cart_context())

    def _checkout(self, text: str) -> Reply | None:
        if not _CHECKOUT.search(text):
            return None
        recent = self.memory.recent_text(self.discount_context_turns, role="user")
        if signals.is_discount_request(recent):
            logger.info("Checkout skipped: discount talk in recent turns")
            return None
        if self.cart.is_empty():
            return Reply(ReplyIntent.CART_EMPTY)
        return Reply(ReplyIntent.CHECKOUT_READY, self._cart_context() | {"checkout": True})

    def _sort_filter(self, text: str) -> Reply | None:
        sort = category = None
        if _SORT.search(text):
            if _SORT_HIGH.search(text):
                sort = "price-high"
            elif _SORT_RELEVANCE.search(text):
                sort = "relevance"
            else:
                sort = "price-low"
        if _FILTER_RESET.search(text):
            category = "All"
        elif _FILTER.search(text):
            category = extract_category(text, self.catalog.categories())
        if sort is None and category is None:
            return None
        self.display.update(sort=sort, category=category)
        return Reply(ReplyIntent.DISPLAY_UPDATED, {"sort": sort, "category": category})

    def _add_to_cart(self, text: str) -> Reply | None:
        if not _ADD.search(text):
            return None
        item = match_item_by_name(text, self.catalog.items, self.catalog.categories())
        if item is None:
            return None
        quantity = parse_quantity(text)
        self.cart.add(item, quantity)
        return Reply(ReplyIntent.ITEM_ADDED,
                     {"name": item.name, "quantity": quantity, "_items": [item]})

    def _remove_from_cart(self, text: str) -> Reply | None:
        if not _REMOVE.search(text) or self.cart.is_empty():
            return None
        in_cart = [self.catalog.get(line.item_id) for line in self.cart.lines]
        item = match_item_by_name(text, [i for i in in_cart if i], self.catalog.categories())
        if item is None:
            return Reply(ReplyIntent.ITEM_NOT_FOUND)
        self.cart.remove(item.id)
        return Reply(ReplyIntent.ITEM_REMOVED, {"name": item.name})

    def _recommend(self, text: str) -> Reply | None:
        if not _RECOMMEND.search(text):
            return None
        picks = self.recommend()
        if not picks:
            return None
        self.display.update(query=" ".join(p.name for p in picks), item_ids=[p.id for p in picks])
        return Reply(ReplyIntent.RECOMMENDATIONS,
                     {"names": ", ".join(p.name for p in picks), "_items": picks})

    def recommend(self, limit: int = 2) -> list[Item]:
        """Pieces from categories the cart does not cover yet, one per category."""
        owned = {line.item_id for line in self.cart.lines}
        taken = self.cart.categories()
        by_category: dict[str, list[Item]] = {}
        for item in self.catalog:
            if item.id not in owned and item.category not in taken:
                by_category.setdefault(item.category, []).append(item)
        categories = list(by_category)
        self.rng.shuffle(categories)
        return [self.rng.choice(by_category[c]) for c in categories[:limit]]

    async def _search(self, text: str) -> RouteResult | None:
        if not _SHOPPING.search(text):
            return None
        if len(self.catalog) == 0:
            return RouteResult(handled=True, intent="search", reply=Reply(ReplyIntent.CATALOG_EMPTY))
        category = extract_category(text, self.catalog.categories())
        outcome = await self.retriever.search(text, category=category)
        if not outcome.items:
            reply = Reply(ReplyIntent.NO_RESULTS, {"query": text})
        else:
            self.display.update(query=text, item_ids=[i.id for i in outcome.items])
            reply = Reply(ReplyIntent.SEARCH_RESULTS, {
                "count": len(outcome.items),
                "method": outcome.method,
                "elapsed_ms": outcome.elapsed_ms,
            })
        return RouteResult(handled=True, intent="search", reply=reply,
                           items=outcome.items, search=outcome)
