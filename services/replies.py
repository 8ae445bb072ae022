"""
Clerk - Scripted Replies
========================
Which reply to give (ReplyIntent, deterministic) is decided by the
router, the negotiation manager and the tool layer. How it is worded is
decided here by the Phrasebook, which picks a variant at random.
Tests assert on intents; the wording is free to change.
"""

import enum
import logging
import random
from dataclasses import dataclass, field

logger = logging.getLogger("clerk.replies")


class ReplyIntent(str, enum.Enum):
    GREETING = "greeting"
    HELP = "help"
    CART_SUMMARY = "cart_summary"
    CART_EMPTY = "cart_empty"
    CART_LOCKED = "cart_locked"
    CHECKOUT_READY = "checkout_ready"
    DISPLAY_UPDATED = "display_updated"
    ITEM_ADDED = "item_added"
    ITEM_REMOVED = "item_removed"
    ITEM_NOT_FOUND = "item_not_found"
    RECOMMENDATIONS = "recommendations"
    SEARCH_RESULTS = "search_results"
    NO_RESULTS = "no_results"
    CATALOG_EMPTY = "catalog_empty"
    NEGOTIATION_PROBE = "negotiation_probe"
    STILL_INTERESTED = "still_interested"
    ALREADY_HELPED = "already_helped"
    NEGOTIATION_DECLINED = "negotiation_declined"
    DISCOUNT_GRANTED = "discount_granted"
    FLOOR_REACHED = "floor_reached"
    SURCHARGE_APPLIED = "surcharge_applied"
    RUDENESS_WARNING = "rudeness_warning"
    COUPON_REJECTED = "coupon_rejected"
    NEED_MORE_DETAIL = "need_more_detail"
    MODEL_UNAVAILABLE = "model_unavailable"
    MODEL_REPLY = "model_reply"
    FALLBACK = "fallback"


@dataclass
class Reply:
    """A decided reply: intent plus the facts needed to phrase it."""
    intent: ReplyIntent
    context: dict = field(default_factory=dict)
    text: str = ""


_TEMPLATES: dict[ReplyIntent, tuple[str, ...]] = {
    ReplyIntent.GREETING: (
        "Welcome in. I'm The Clerk. What are we looking for today?",
        "Good to see you. Tell me the occasion and I'll find the pieces.",
        "Welcome. Curator, negotiator, keeper of the archive. Where shall we start?",
    ),
    ReplyIntent.HELP: (
        "I can search the collection (\"linen shirt under $80\"), add or remove items, "
        "sort and filter the grid, show your bag, suggest pairings, and, if you ask "
        "nicely, talk about a discount.",
    ),
    ReplyIntent.CART_SUMMARY: (
        "Your bag:\n{lines}\nSubtotal ${subtotal:.2f}, total ${total:.2f}.",
        "Here's what you're holding:\n{lines}\nTotal comes to ${total:.2f}.",
    ),
    ReplyIntent.CART_EMPTY: (
        "Your bag is empty. Let me find you something first.",
        "Nothing in the bag yet. Add a piece and we can talk.",
    ),
    ReplyIntent.CART_LOCKED: (
        "Let's settle the price first, then we can change the bag.",
    ),
    ReplyIntent.CHECKOUT_READY: (
        "Excellent choices. Preparing checkout:\n{lines}\nTotal: ${total:.2f}.",
    ),
    ReplyIntent.DISPLAY_UPDATED: (
        "The floor's been reorganized. Check the grid.",
        "Done. The grid now reflects that.",
    ),
    ReplyIntent.ITEM_ADDED: (
        "{name} x {quantity}, secured. Excellent choice.",
        "{name} is in your bag ({quantity}).",
    ),
    ReplyIntent.ITEM_REMOVED: (
        "{name} is out of your bag.",
        "Removed {name}.",
    ),
    ReplyIntent.ITEM_NOT_FOUND: (
        "I couldn't find that exact piece. Try searching first?",
    ),
    ReplyIntent.RECOMMENDATIONS: (
        "A piece like that wants companions. May I suggest: {names}?",
        "To complete the look: {names}. The grid has been updated.",
    ),
    ReplyIntent.SEARCH_RESULTS: (
        "Found {count} pieces ({method} search). Take a look:",
        "{count} matches from the archive in {elapsed_ms:.0f}ms:",
    ),
    ReplyIntent.NO_RESULTS: (
        "Nothing in the archive matches \"{query}\". Try broader terms?",
    ),
    ReplyIntent.CATALOG_EMPTY: (
        "Nothing is available right now. Please check back soon.",
    ),
    ReplyIntent.NEGOTIATION_PROBE: (
        "Perhaps. Tell me a little more. What's the occasion?",
        "I might be able to do something. Are you buying today?",
        "Convince me. What brings you to these pieces?",
    ),
    ReplyIntent.STILL_INTERESTED: (
        "Happy to help with that, but are you still interested in a better price on your bag?",
    ),
    ReplyIntent.ALREADY_HELPED: (
        "I've already helped you once today. Let's enjoy that deal.",
        "You already have my best. Come back a little later.",
    ),
    ReplyIntent.NEGOTIATION_DECLINED: (
        "Understood. Full price it is, and the bag is yours to change again.",
        "No problem. The offer's off the table and your bag is unlocked.",
    ),
    ReplyIntent.DISCOUNT_GRANTED: (
        "You drive a fair bargain. {percent}% off, sealed and applied. Code: {code}",
        "For the {reason}: {percent}% off. Your code is {code}.",
    ),
    ReplyIntent.FLOOR_REACHED: (
        "These pieces are already at their lowest price. I can't go further.",
    ),
    ReplyIntent.SURCHARGE_APPLIED: (
        "Interesting approach. The archive has a dignity clause: prices just went up "
        "{surcharge}%. Code: {code}",
    ),
    ReplyIntent.RUDENESS_WARNING: (
        "Let's keep it civil, please.",
        "I'd rather we kept this pleasant.",
    ),
    ReplyIntent.COUPON_REJECTED: (
        "Not so fast. Tell me a bit more before we talk numbers.",
        "Let's get to know each other first. What's the occasion?",
    ),
    ReplyIntent.NEED_MORE_DETAIL: (
        "I need a little more detail to do that. What exactly are you looking for?",
    ),
    ReplyIntent.MODEL_UNAVAILABLE: (
        "I'm a bit overwhelmed at the moment. Try again shortly.",
    ),
    ReplyIntent.MODEL_REPLY: (
        "{text}",
    ),
    ReplyIntent.FALLBACK: (
        "I'm not sure I follow. Try asking me to search, show your bag, or sort the grid.",
    ),
}


class Phrasebook:
    """Renders a Reply's intent into text using a random template variant."""

    def __init__(self, rng: random.Random | None = None,
                 templates: dict[ReplyIntent, tuple[str, ...]] | None = None):
        self.rng = rng or random.Random()
        self.templates = templates or _TEMPLATES

    def render(self, reply: Reply) -> str:
        variants = self.templates.get(reply.intent) or self.templates[ReplyIntent.FALLBACK]
        template = self.rng.choice(variants)
        try:
            text = template.format(**reply.context)
        except (KeyError, ValueError, IndexError) as e:
            # missing context key: fall back to the first variant that renders
            logger.warning("Template for %s failed (%s), using plain variant", reply.intent.value, e)
            text = next(
                (v for v in variants if "{" not in v),
                reply.intent.value.replace("_", " "),
            )
        reply.text = text
        return text
