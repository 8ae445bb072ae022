"""
Clerk - Conversation Memory
===========================
Instance-based dialogue log.

One ConversationMemory per shopper session (the full chat) and one per
negotiation session (just the bargaining turns). Stores turns with
arbitrary metadata, renders recent history for the chat model, and
folds old turns into a rolling summary when the window overflows, so
keyword signals from early turns (e.g. "birthday") are never lost.
"""

import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger("clerk.memory")

_MODEL_ROLES = {"user": "user", "clerk": "assistant"}


@dataclass
class DialogueTurn:
    """A single turn in the conversation."""
    role: str               # "user" | "clerk"
    text: str
    timestamp: float = 0.0
    metadata: dict = field(default_factory=dict)


class ConversationMemory:
    """Ordered dialogue turns plus a rolling summary of evicted ones."""

    def __init__(self, session_id: str = "", max_window: int = 10, clock=time.time):
        self.session_id = session_id
        self.max_window = max_window
        self._clock = clock
        self._turns: list[DialogueTurn] = []
        self._rolling_summary: str = ""

    def __len__(self) -> int:
        return len(self._turns)

    def add_turn(self, role: str, text: str, metadata: dict | None = None) -> DialogueTurn:
        """Append a turn. Compresses the oldest turns if the window is exceeded."""
        turn = DialogueTurn(
            role=role,
            text=text,
            timestamp=self._clock(),
            metadata=metadata or {},
        )
        self._turns.append(turn)
        logger.debug(
            "Turn added: session=%s, role=%s, text=%.60s, turns=%d",
            self.session_id or "(no-id)", role, text, len(self._turns),
        )
        if len(self._turns) > self.max_window:
            self._summarize_overflow()
        return turn

    def get_recent_turns(self, n: int = 5) -> list[DialogueTurn]:
        """Return the last N turns."""
        if n <= 0:
            return []
        return self._turns[-n:]

    def recent_text(self, n: int = 4, role: str | None = None) -> str:
        """Lowercased text of the last N turns, optionally for one role only."""
        turns = self.get_recent_turns(n)
        return " ".join(t.text for t in turns if role is None or t.role == role).lower()

    def full_text(self, role: str | None = "user") -> str:
        """Everything said by `role` (summary included), lowercased."""
        parts = []
        if self._rolling_summary:
            prefix = f"{role.capitalize()}: " if role else ""
            parts.extend(
                line[len(prefix):] for line in self._rolling_summary.splitlines()
                if line.startswith(prefix)
            )
        parts.extend(t.text for t in self._turns if role is None or t.role == role)
        return " ".join(parts).lower()

    def as_chat_messages(self, n: int = 6) -> list[dict]:
        """
        Recent turns in OpenAI chat format, for the external model.

        Tool outcomes recorded on a turn (metadata["tools"]) are appended
        to its content so the model sees what its earlier calls did.
        """
        messages = []
        for t in self.get_recent_turns(n):
            content = t.text
            if t.metadata.get("tools"):
                content += "\n[tool results] " + "\n".join(t.metadata["tools"])
            messages.append({"role": _MODEL_ROLES.get(t.role, "user"), "content": content})
        return messages

    def get_summary(self) -> str:
        """Turns evicted from the window, one "Role: text" line each."""
        return self._rolling_summary

    def to_dict(self) -> dict:
        """Serialize for the debug/negotiation endpoints."""
        return {
            "session_id": self.session_id,
            "max_window": self.max_window,
            "rolling_summary": self._rolling_summary,
            "turns": [
                {
                    "role": t.role,
                    "text": t.text,
                    "timestamp": t.timestamp,
                    "metadata": t.metadata,
                }
                for t in self._turns
            ],
        }

    def _summarize_overflow(self) -> None:
        """Move turns beyond the window into the rolling summary."""
        overflow_count = len(self._turns) - self.max_window
        if overflow_count <= 0:
            return
        overflow = self._turns[:overflow_count]
        self._turns = self._turns[overflow_count:]
        summary_lines = [f"{t.role.capitalize()}: {t.text}" for t in overflow]
        if self._rolling_summary:
            self._rolling_summary += "\n" + "\n".join(summary_lines)
        else:
            self._rolling_summary = "\n".join(summary_lines)
        logger.info(
            "Compressed %d turns into summary (%d chars), %d turns remain",
            overflow_count, len(self._rolling_summary), len(self._turns),
        )
