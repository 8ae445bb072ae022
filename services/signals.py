"""
Clerk - Conversational Signals
==============================
Regex heuristics shared by the intent router and the negotiation
manager. They are deliberately simple: word lists, not NLP.
"""

import re

# Each pattern that matches adds exactly 1 rudeness point.
RUDE_PATTERNS = (
    re.compile(r"\b(stupid|idiot|dumb|trash|garbage|scam|rip.?off|sucks?|hate|worst|terrible|"
               r"awful|pathetic|useless|waste)\b", re.I),
    re.compile(r"\b(fuck\w*|shit|damn|hell|ass|crap|bullshit|wtf)\b", re.I),
    re.compile(r"\b(shut up|go away|leave me|don'?t care|whatever)\b", re.I),
)

DISCOUNT_INTENT = re.compile(
    r"\b(discount|deal|deals|coupon|promo|voucher|cheaper price|lower (?:the )?price|"
    r"better price|best price|price (?:drop|cut|match)|haggle|negotiate|bargain|"
    r"knock .{0,20}off|\d+\s*(?:%|percent) off|any offers?)\b",
    re.I,
)

DECLINE = re.compile(
    r"\b(no thanks|no thank you|never ?mind|forget it|not interested|i'?ll pass|no deal|"
    r"cancel (?:it|that|the deal)|stop (?:it|negotiating)|full price is fine)\b",
    re.I,
)

POSITIVE_SIGNALS = (
    re.compile(r"\b(buy|buying|purchase)\b", re.I),
    re.compile(r"\b(ready|definitely|for sure|absolutely)\b", re.I),
    re.compile(r"\b(today|right now|tonight)\b", re.I),
    re.compile(r"\b(love|perfect|need (?:it|this|them))\b", re.I),
    re.compile(r"\b(i'?ll take|take (?:it|them)|deal me in|sold)\b", re.I),
    re.compile(r"\b(serious|committed|promise)\b", re.I),
    re.compile(r"\b(check ?out)\b", re.I),
)

NEGATIVE_SIGNALS = (
    re.compile(r"\b(maybe|not sure|unsure|might)\b", re.I),
    re.compile(r"\b(just (?:looking|browsing)|window shopping)\b", re.I),
    re.compile(r"\b(later|some ?day|think about it)\b", re.I),
    re.compile(r"\b(cheaper elsewhere|other stores?|competitor)\b", re.I),
    re.compile(r"\b(too expensive|overpriced)\b", re.I),
)

OFF_TOPIC = re.compile(
    r"\b(show me|search|find|looking for|do you have|return policy|returns?|shipping|"
    r"refund|exchange|warranty|delivery|size guide|sizing|store hours)\b",
    re.I,
)

# (keyword pattern, reason label, coupon prefix). First match wins.
REASONS = (
    (re.compile(r"\b(birthday|bday)\b", re.I), "birthday", "BDAY"),
    (re.compile(r"\b(student|college|university)\b", re.I), "student", "STUDENT"),
    (re.compile(r"\b(military|veteran|army|navy|service member)\b", re.I), "military", "HONOR"),
    (re.compile(r"\b(first (?:purchase|order|time)|new customer)\b", re.I), "first purchase", "WELCOME"),
    (re.compile(r"\b(anniversary)\b", re.I), "anniversary", "ANNIV"),
    (re.compile(r"\b(bulk|several|multiple|a lot of|whole set)\b", re.I), "bulk", "BULK"),
)
DEFAULT_REASON = ("valued customer", "CLERK")
SURCHARGE_PREFIX = "RUDE"


def detect_rudeness(message: str) -> int:
    """Number of rude pattern groups the message hits (0-3)."""
    return sum(1 for pattern in RUDE_PATTERNS if pattern.search(message))


def is_discount_request(message: str) -> bool:
    return bool(DISCOUNT_INTENT.search(message))


def is_decline(message: str) -> bool:
    return bool(DECLINE.search(message))


def commitment_signal(message: str, baseline: int = 50, positive_weight: int = 15,
                      positive_cap: int = 45, negative_weight: int = 20) -> int:
    """
    Score how serious the shopper sounds in one message, 0-100.

    Each positive pattern adds `positive_weight` (total capped at
    `positive_cap`), each negative one subtracts `negative_weight`.
    """
    positives = sum(1 for p in POSITIVE_SIGNALS if p.search(message))
    negatives = sum(1 for p in NEGATIVE_SIGNALS if p.search(message))
    score = baseline + min(positives * positive_weight, positive_cap) - negatives * negative_weight
    return max(0, min(100, score))


def is_off_topic(message: str) -> bool:
    """A product search or policy question that carries no bargaining content."""
    if not OFF_TOPIC.search(message):
        return False
    if is_discount_request(message) or is_decline(message):
        return False
    if any(pattern.search(message) for pattern, _, _ in REASONS):
        return False
    return not any(p.search(message) for p in POSITIVE_SIGNALS)


def infer_reason(text: str) -> tuple[str, str]:
    """(reason label, coupon prefix) inferred from conversation text."""
    for pattern, reason, prefix in REASONS:
        if pattern.search(text):
            return reason, prefix
    return DEFAULT_REASON


def prefix_for_reason(reason: str) -> str:
    """Coupon prefix for a free-text reason, e.g. one supplied by the chat model."""
    return infer_reason(reason or "")[1]
