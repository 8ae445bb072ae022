"""
Clerk - Negotiation Session Manager
===================================
Per-cart state machine for multi-turn discount bargaining.

    Idle ──discount request──▶ Probing(turn 1..N) ──▶ Resolved(Success | Declined | Surcharged)

- Entering Probing needs a non-empty cart and no active cooldown; it
  locks the cart until the session resolves.
- Each on-topic reply adds one turn and moves commitment toward the new
  signal score. Off-topic replies get one "still interested?" nudge and
  never count as turns.
- At the turn threshold the discount is computed from the cart's floor
  prices, so cart_total * (1 - discount/100) >= floor_total always holds.
- Cumulative rudeness at or above the threshold resolves straight to a
  surcharge, from any state, without starting a cooldown.

One NegotiationManager per shopper session; it remembers the cumulative
rudeness and the cooldown across the sessions it creates.
"""

import enum
import logging
import math
import random
import string
import time
import uuid
from dataclasses import dataclass, field

from services import signals
from services.config import NegotiationConfig
from services.context_memory import ConversationMemory
from services.replies import Reply, ReplyIntent
from services.storefront import Cart, CartLine, Coupon

logger = logging.getLogger("clerk.negotiation")


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    PROBING = "probing"
    RESOLVED = "resolved"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    SURCHARGED = "surcharged"


# ── Pricing math ───────────────────────────────────────────────────────

def max_discount_percent(lines: list[CartLine], cap: int = 30) -> int:
    """floor((sum price - sum floor) / sum price * 100), capped; 0 for an empty cart."""
    total = sum(line.subtotal for line in lines)
    if total <= 0:
        return 0
    floor_total = sum(line.floor_subtotal for line in lines)
    headroom = math.floor((total - floor_total) / total * 100)
    return max(0, min(headroom, cap))


def compute_discount(max_discount: int, commitment: int, turn_count: int,
                     config: NegotiationConfig) -> int:
    """
    Offer for a successful negotiation.

    base (max discount, capped at max_offer_percent) + commitment bonus
    - a penalty for every turn past the threshold, clamped to
    [min_discount, min(max_discount, max_offer_percent)]. The upper bound
    wins when the two bounds cross, so the floor price is never breached.
    """
    upper = min(max_discount, config.max_offer_percent)
    base = upper
    bonus = math.floor(commitment / 100 * config.commitment_bonus_max)
    penalty = max(0, (turn_count - config.turn_threshold) * config.turn_penalty)
    raw = base + bonus - penalty
    lower = min(config.min_discount, upper)
    return max(lower, min(raw, upper))


def surcharge_percent(rudeness: int, config: NegotiationConfig) -> int:
    """Negative discount for rude shoppers."""
    return -min(rudeness * config.surcharge_per_point, config.surcharge_cap)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ── Session ────────────────────────────────────────────────────────────

@dataclass
class NegotiationSession:
    session_id: str
    cart_id: str
    state: NegotiationState = NegotiationState.PROBING
    turn_count: int = 0
    started_at: float = 0.0
    cart_snapshot: list[CartLine] = field(default_factory=list)
    log: ConversationMemory = field(default_factory=ConversationMemory)
    last_question_asked: ReplyIntent | None = None
    commitment_level: int = 50
    rudeness_score: int = 0
    discount_given: bool = False
    coupon: Coupon | None = None
    cooldown_until: float | None = None
    outcome: Outcome | None = None
    resolved_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.state == NegotiationState.PROBING

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "cart_id": self.cart_id,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "turn_count": self.turn_count,
            "started_at": self.started_at,
            "resolved_at": self.resolved_at,
            "commitment_level": self.commitment_level,
            "rudeness_score": self.rudeness_score,
            "discount_given": self.discount_given,
            "coupon": vars(self.coupon) if self.coupon else None,
            "cooldown_until": self.cooldown_until,
            "last_question_asked": self.last_question_asked.value if self.last_question_asked else None,
            "cart_snapshot": [vars(line) for line in self.cart_snapshot],
            "log": self.log.to_dict(),
        }


@dataclass
class NegotiationResult:
    """What the manager did with a message."""
    handled: bool
    reply: Reply | None = None
    session: NegotiationSession | None = None
    accepted: bool = False
    applied_percent: int | None = None


class NegotiationManager:
    """Owns the bargaining state for one cart."""

    def __init__(self, cart: Cart, cart_id: str = "", config: NegotiationConfig | None = None,
                 clock=time.time, rng: random.Random | None = None):
        self.cart = cart
        self.cart_id = cart_id or f"cart-{uuid.uuid4().hex[:8]}"
        self.config = config or NegotiationConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.session: NegotiationSession | None = None
        self.rudeness_score = 0
        self.cooldown_until: float | None = None

    # ── State queries ──────────────────────────────────────────────────

    @property
    def active_session(self) -> NegotiationSession | None:
        if self.session is not None and self.session.is_active:
            return self.session
        return None

    @property
    def state(self) -> NegotiationState:
        return self.session.state if self.session else NegotiationState.IDLE

    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None and self.clock() < self.cooldown_until

    # ── Helpers ────────────────────────────────────────────────────────

    def _coupon_code(self, prefix: str, percent: int) -> str:
        suffix = "".join(self.rng.choices(string.ascii_uppercase + string.digits, k=4))
        return f"{prefix}-{abs(percent)}-{suffix}"

    def _count_turn(self, session: NegotiationSession, message: str) -> None:
        cfg = self.config
        signal = signals.commitment_signal(
            message,
            baseline=cfg.commitment_baseline,
            positive_weight=cfg.positive_signal_weight,
            positive_cap=cfg.positive_signal_cap,
            negative_weight=cfg.negative_signal_weight,
        )
        session.turn_count += 1
        session.commitment_level = max(0, min(100, _round_half_up(
            (session.commitment_level + signal) / 2)))
        logger.info(
            "Negotiation %s turn %d: signal=%d commitment=%d",
            session.session_id, session.turn_count, signal, session.commitment_level,
        )

    def _probe(self, session: NegotiationSession, intent: ReplyIntent) -> NegotiationResult:
        session.last_question_asked = intent
        reply = Reply(intent, {"turn": session.turn_count})
        session.log.add_turn("clerk", f"[{intent.value}]")
        return NegotiationResult(handled=True, reply=reply, session=session)

    def _resolve(self, session: NegotiationSession, outcome: Outcome) -> None:
        session.state = NegotiationState.RESOLVED
        session.outcome = outcome
        session.resolved_at = self.clock()
        self.cart.unlock(session.session_id)
        logger.info(
            "Negotiation %s resolved: %s after %d turns",
            session.session_id, outcome.value, session.turn_count,
        )

    def _new_session(self, state: NegotiationState) -> NegotiationSession:
        session_id = f"neg-{uuid.uuid4().hex[:8]}"
        session = NegotiationSession(
            session_id=session_id,
            cart_id=self.cart_id,
            state=state,
            started_at=self.clock(),
            cart_snapshot=self.cart.snapshot(),
            log=ConversationMemory(session_id=session_id, max_window=self.config.log_window,
                                   clock=self.clock),
            commitment_level=self.config.commitment_baseline,
            rudeness_score=self.rudeness_score,
        )
        self.session = session
        return session

    # ── Transitions ────────────────────────────────────────────────────

    def start(self, message: str) -> NegotiationResult:
        """
        Idle → Probing on a discount request.

        An already active session is returned untouched. Refuses (no
        session created) when the cart is empty or a cooldown is running.
        A shopper past the rudeness threshold gets the surcharge again
        instead of a new session.
        """
        active = self.active_session
        if active is not None:
            intent = active.last_question_asked or ReplyIntent.NEGOTIATION_PROBE
            return NegotiationResult(handled=True, reply=Reply(intent), session=active)

        if self.in_cooldown():
            logger.info("Discount request refused: cooldown until %.0f", self.cooldown_until)
            return NegotiationResult(handled=True, reply=Reply(ReplyIntent.ALREADY_HELPED))
        if self.cart.is_empty():
            return NegotiationResult(handled=True, reply=Reply(ReplyIntent.CART_EMPTY))
        if self.rudeness_score >= self.config.rudeness_threshold:
            logger.info("Discount request refused: rudeness %d for %s",
                        self.rudeness_score, self.cart_id)
            return self._surcharge()

        session = self._new_session(NegotiationState.PROBING)
        self.cart.lock(session.session_id)
        logger.info(
            "Negotiation %s started for %s: %d lines, subtotal %.2f",
            session.session_id, self.cart_id, len(session.cart_snapshot), self.cart.subtotal(),
        )
        session.log.add_turn("user", message)
        self._count_turn(session, message)
        if session.turn_count >= self.config.turn_threshold:
            return self._resolve_success(session)
        return self._probe(session, ReplyIntent.NEGOTIATION_PROBE)

    def handle_reply(self, message: str) -> NegotiationResult:
        """
        One user message while Probing.

        Returns handled=False when there is no active session, or when the
        shopper stays off-topic after the "still interested?" nudge, so the
        caller can hand the message to the chat model.
        """
        session = self.active_session
        if session is None:
            return NegotiationResult(handled=False)

        session.log.add_turn("user", message)

        if signals.is_decline(message):
            self._resolve(session, Outcome.DECLINED)
            return NegotiationResult(
                handled=True, reply=Reply(ReplyIntent.NEGOTIATION_DECLINED), session=session)

        if signals.detect_rudeness(message):
            return self._probe(session, ReplyIntent.RUDENESS_WARNING)

        if signals.is_off_topic(message):
            if session.last_question_asked == ReplyIntent.STILL_INTERESTED:
                logger.info("Negotiation %s: off-topic again, deferring", session.session_id)
                return NegotiationResult(handled=False, session=session)
            return self._probe(session, ReplyIntent.STILL_INTERESTED)

        self._count_turn(session, message)
        if session.turn_count >= self.config.turn_threshold:
            return self._resolve_success(session)
        return self._probe(session, ReplyIntent.NEGOTIATION_PROBE)

    def _resolve_success(self, session: NegotiationSession, percent: int | None = None,
                         reason: str | None = None) -> NegotiationResult:
        if self.rudeness_score >= self.config.rudeness_threshold:
            return self._surcharge()
        max_discount = max_discount_percent(session.cart_snapshot, self.config.max_discount_cap)
        if max_discount <= 0:
            self._resolve(session, Outcome.DECLINED)
            return NegotiationResult(
                handled=True, reply=Reply(ReplyIntent.FLOOR_REACHED), session=session)

        if percent is None:
            percent = compute_discount(
                max_discount, session.commitment_level, session.turn_count, self.config)
        else:
            percent = min(percent, max_discount)

        if reason:
            prefix = signals.prefix_for_reason(reason)
        else:
            reason, prefix = signals.infer_reason(session.log.full_text("user"))
        code = self._coupon_code(prefix, percent)
        now = self.clock()
        session.coupon = self.cart.apply_coupon(code, percent, reason, applied_at=now)
        session.discount_given = True
        self.cooldown_until = session.cooldown_until = now + self.config.cooldown_seconds
        self._resolve(session, Outcome.SUCCESS)
        return NegotiationResult(
            handled=True,
            reply=Reply(ReplyIntent.DISCOUNT_GRANTED,
                        {"percent": percent, "code": code, "reason": reason}),
            session=session,
            accepted=True,
            applied_percent=percent,
        )

    def register_rudeness(self, message: str) -> NegotiationResult:
        """
        Score a message for rudeness; checked on every turn in every state.

        Below the threshold this only records points (handled=False).
        At or above it the cart gets a surcharge and the active session,
        if any, resolves as Surcharged.
        """
        points = signals.detect_rudeness(message)
        if not points:
            return NegotiationResult(handled=False, session=self.session)
        self.rudeness_score += points
        if self.session is not None and self.session.is_active:
            self.session.rudeness_score = self.rudeness_score
        logger.info("Rudeness +%d (total %d) for %s", points, self.rudeness_score, self.cart_id)
        if self.rudeness_score < self.config.rudeness_threshold:
            return NegotiationResult(handled=False, session=self.session)
        return self._surcharge()

    def _surcharge(self) -> NegotiationResult:
        if self.cart.is_empty():
            return NegotiationResult(handled=True, reply=Reply(ReplyIntent.RUDENESS_WARNING),
                                     session=self.session)
        session = self.active_session or self._new_session(NegotiationState.RESOLVED)
        session.rudeness_score = self.rudeness_score
        percent = surcharge_percent(self.rudeness_score, self.config)
        code = self._coupon_code(signals.SURCHARGE_PREFIX, percent)
        session.coupon = self.cart.apply_coupon(code, percent, "rudeness", applied_at=self.clock())
        session.discount_given = False
        self._resolve(session, Outcome.SURCHARGED)
        return NegotiationResult(
            handled=True,
            reply=Reply(ReplyIntent.SURCHARGE_APPLIED, {"surcharge": -percent, "code": code}),
            session=session,
            accepted=True,
            applied_percent=percent,
        )

    def grant_coupon(self, percent: int, reason: str) -> NegotiationResult:
        """
        Coupon requested by the chat model.

        Accepted only once the active session reached the turn threshold,
        or as a surcharge when rudeness crossed its threshold. The
        requested percent is always re-capped by the floor prices.
        """
        if self.rudeness_score >= self.config.rudeness_threshold and not self.cart.is_empty():
            return self._surcharge()
        if self.cart.is_empty():
            return NegotiationResult(handled=True, reply=Reply(ReplyIntent.CART_EMPTY))
        session = self.active_session
        if session is None and self.in_cooldown():
            return NegotiationResult(handled=True, reply=Reply(ReplyIntent.ALREADY_HELPED))
        if session is None or session.turn_count < self.config.turn_threshold:
            logger.info("Coupon request rejected: turn threshold not met")
            return NegotiationResult(
                handled=True, reply=Reply(ReplyIntent.COUPON_REJECTED), session=session)
        if percent <= 0:
            return NegotiationResult(
                handled=True, reply=Reply(ReplyIntent.COUPON_REJECTED), session=session)
        return self._resolve_success(session, percent=percent, reason=reason)
