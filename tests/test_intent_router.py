"""
Tests for services/intent_router.py - Local Intent Router.

Covers:
  - each classifier in priority order and its side effects
  - checkout skipped when recent turns talk about discounts
  - fuzzy name matching (bare category words are not enough)
  - rudeness scoring on every message
  - deferral while a negotiation is open
"""

import random

import pytest

from services.catalog import Catalog
from services.context_memory import ConversationMemory
from services.intent_router import LocalIntentRouter, match_item_by_name, parse_quantity
from services.negotiation import NegotiationManager
from services.replies import ReplyIntent
from services.retrieval import HybridRetriever
from services.storefront import Cart, DisplayState


def _router(catalog: Catalog) -> LocalIntentRouter:
    cart = Cart()
    rng = random.Random(3)
    return LocalIntentRouter(
        catalog, cart, DisplayState(), HybridRetriever(catalog),
        NegotiationManager(cart, cart_id="cart-test", rng=rng),
        ConversationMemory(session_id="s"), rng=rng,
    )


@pytest.fixture
def router(catalog):
    return _router(catalog)


# ══════════════════════════════════════════════════════════════════════
#  Helpers
# ══════════════════════════════════════════════════════════════════════

class TestParseQuantity:

    @pytest.mark.parametrize("text,expected", [
        ("add the belt", 1),
        ("add two belts", 2),
        ("add 3 belts", 3),
        ("add a pair of sneakers", 2),
        ("give me 12 of those", 12),
        ("add 2x belts", 2),
        ("add the linen shirt in size 42", 1),
        ("add the sneakers, size 9", 1),
    ])
    def test_quantities(self, text, expected):
        assert parse_quantity(text) == expected


class TestMatchItemByName:

    def test_full_name_wins(self, catalog):
        item = match_item_by_name("add the Suede Blazer", catalog.items, catalog.categories())
        assert item.id == "out-001"

    def test_partial_name_tokens(self, catalog):
        item = match_item_by_name("add two linen shirts", catalog.items, catalog.categories())
        assert item.id == "app-001"

    def test_most_shared_tokens_wins(self, catalog):
        item = match_item_by_name("the canvas low ones", catalog.items, catalog.categories())
        assert item.id == "ftw-001"

    def test_category_word_alone_does_not_match(self, catalog):
        assert match_item_by_name("add outerwear", catalog.items, catalog.categories()) is None

    def test_stop_words_only(self, catalog):
        assert match_item_by_name("add this to my cart", catalog.items, catalog.categories()) is None


# ══════════════════════════════════════════════════════════════════════
#  Classifiers
# ══════════════════════════════════════════════════════════════════════

class TestClassifiers:

    @pytest.mark.asyncio
    async def test_greeting(self, router):
        result = await router.route("hello there")
        assert result.handled and result.intent == "greeting"
        assert result.reply.intent == ReplyIntent.GREETING

    @pytest.mark.asyncio
    async def test_long_greeting_is_not_just_a_greeting(self, router):
        result = await router.route("hello, I'm looking for a wool overcoat for winter")
        assert result.intent == "search"

    @pytest.mark.asyncio
    async def test_help(self, router):
        result = await router.route("what can you do?")
        assert result.reply.intent == ReplyIntent.HELP

    @pytest.mark.asyncio
    async def test_help_me_find_is_a_search(self, router):
        result = await router.route("help me find a linen shirt")
        assert result.intent == "search"

    @pytest.mark.asyncio
    async def test_show_empty_cart(self, router):
        result = await router.route("show me my cart")
        assert result.reply.intent == ReplyIntent.CART_EMPTY

    @pytest.mark.asyncio
    async def test_show_cart(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("what's in my bag?")
        assert result.reply.intent == ReplyIntent.CART_SUMMARY
        assert "Suede Blazer" in result.reply.context["lines"]

    @pytest.mark.asyncio
    async def test_checkout(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("checkout please")
        assert result.reply.intent == ReplyIntent.CHECKOUT_READY
        assert result.reply.context["checkout"] is True

    @pytest.mark.asyncio
    async def test_checkout_skipped_after_discount_talk(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        router.memory.add_turn("user", "any discount for me?")
        router.memory.add_turn("clerk", "Tell me more.")
        result = await router.route("checkout please")
        assert not result.handled

    @pytest.mark.asyncio
    async def test_bag_as_product_is_a_search(self, router):
        result = await router.route("show me a canvas bag")
        assert result.intent == "search"
        assert result.reply.intent != ReplyIntent.CART_EMPTY

    @pytest.mark.asyncio
    async def test_check_out_this_item_is_not_checkout(self, router, catalog):
        router.cart.add(catalog.get("acc-001"))
        result = await router.route("check out this suede blazer, do you have it in camel?")
        assert result.intent == "search"
        assert result.reply.intent != ReplyIntent.CHECKOUT_READY

    @pytest.mark.asyncio
    async def test_check_my_cart(self, router, catalog):
        router.cart.add(catalog.get("acc-001"))
        result = await router.route("can you show me the cart please?")
        assert result.reply.intent == ReplyIntent.CART_SUMMARY

    @pytest.mark.asyncio
    async def test_size_is_not_a_quantity(self, router):
        await router.route("add the linen camp shirt in size 42")
        assert router.cart.item_count() == 1

    @pytest.mark.asyncio
    async def test_sort_high_to_low(self, router):
        result = await router.route("sort by price high to low")
        assert result.reply.intent == ReplyIntent.DISPLAY_UPDATED
        assert router.display.sort_order == "price-high"

    @pytest.mark.asyncio
    async def test_sort_cheapest(self, router):
        await router.route("cheapest first")
        assert router.display.sort_order == "price-low"

    @pytest.mark.asyncio
    async def test_filter_category(self, router):
        await router.route("only show footwear")
        assert router.display.category == "Footwear"

    @pytest.mark.asyncio
    async def test_filter_reset(self, router):
        router.display.update(category="Home")
        await router.route("clear filters")
        assert router.display.category == "All"

    @pytest.mark.asyncio
    async def test_add_by_name(self, router):
        result = await router.route("add the suede blazer")
        assert result.reply.intent == ReplyIntent.ITEM_ADDED
        assert [i.id for i in result.items] == ["out-001"]
        assert router.cart.item_count() == 1
        assert "_items" not in result.reply.context

    @pytest.mark.asyncio
    async def test_add_with_quantity(self, router):
        await router.route("add two linen shirts")
        assert router.cart.lines[0].item_id == "app-001"
        assert router.cart.lines[0].quantity == 2

    @pytest.mark.asyncio
    async def test_add_category_word_not_added(self, router):
        result = await router.route("add outerwear")
        assert router.cart.is_empty()
        assert result.intent != "add_to_cart"

    @pytest.mark.asyncio
    async def test_remove(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("remove the blazer")
        assert result.reply.intent == ReplyIntent.ITEM_REMOVED
        assert router.cart.is_empty()

    @pytest.mark.asyncio
    async def test_remove_unknown(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("remove the lamp")
        assert result.reply.intent == ReplyIntent.ITEM_NOT_FOUND
        assert router.cart.item_count() == 1

    @pytest.mark.asyncio
    async def test_recommendations_from_other_categories(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("what goes with this?")
        assert result.reply.intent == ReplyIntent.RECOMMENDATIONS
        assert len(result.items) == 2
        categories = [i.category for i in result.items]
        assert "Outerwear" not in categories
        assert len(set(categories)) == 2
        assert router.display.item_ids == [i.id for i in result.items]

    @pytest.mark.asyncio
    async def test_search(self, router):
        result = await router.route("show me white sneakers")
        assert result.reply.intent == ReplyIntent.SEARCH_RESULTS
        assert result.items[0].id == "ftw-001"
        assert result.search.method == "keyword"
        assert router.display.item_ids[0] == "ftw-001"

    @pytest.mark.asyncio
    async def test_search_empty_catalog(self):
        result = await _router(Catalog()).route("show me jackets")
        assert result.reply.intent == ReplyIntent.CATALOG_EMPTY
        assert result.intent == "search"
        assert result.search is None

    @pytest.mark.asyncio
    async def test_unmatched_forwarded(self, router):
        result = await router.route("tell me a joke")
        assert not result.handled
        assert not result.deferred


# ══════════════════════════════════════════════════════════════════════
#  Discounts, rudeness, deferral
# ══════════════════════════════════════════════════════════════════════

class TestNegotiationHooks:

    @pytest.mark.asyncio
    async def test_discount_has_top_priority(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        result = await router.route("hi, any discount on the blazer?")
        assert result.intent == "discount"
        assert result.reply.intent == ReplyIntent.NEGOTIATION_PROBE
        assert router.cart.is_locked

    @pytest.mark.asyncio
    async def test_discount_with_empty_cart(self, router):
        result = await router.route("can I get a discount?")
        assert result.reply.intent == ReplyIntent.CART_EMPTY

    @pytest.mark.asyncio
    async def test_open_negotiation_defers_everything(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        await router.route("can I get a discount?")
        result = await router.route("add the wool overcoat")
        assert result.deferred and not result.handled
        assert router.cart.item_count() == 1

    @pytest.mark.asyncio
    async def test_single_rude_message_only_scores(self, router):
        result = await router.route("this service is trash")
        assert result.intent != "rudeness"
        assert router.negotiation.rudeness_score == 1

    @pytest.mark.asyncio
    async def test_rudeness_surcharge(self, router, catalog):
        router.cart.add(catalog.get("out-001"))
        await router.route("this service is trash")
        await router.route("what a scam")
        result = await router.route("oh shut up")
        assert result.intent == "rudeness"
        assert result.reply.intent == ReplyIntent.SURCHARGE_APPLIED
        assert router.cart.discount_percent == -15
