"""
Clerk - Custom Exception Types
==============================
Raised by the service layer; caught in the orchestrators and in main.py.
Degraded retrieval and refused negotiations are NOT exceptions: they are
reported through the search `method` field and through reply intents.
"""

import enum


class EmbeddingServiceError(Exception):
    """Raised when the embedding provider is unreachable, slow, or returns garbage."""

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"Embedding error: {detail}")


class ModelErrorKind(str, enum.Enum):
    """How the fallback chain should react to an upstream model failure."""
    NOT_FOUND = "not_found"        # skip straight to the next model
    RATE_LIMITED = "rate_limited"  # back off, retry the same model
    TRANSIENT = "transient"        # timeouts / connection drops, same as rate limit
    FATAL = "fatal"                # give up on the whole turn


class ModelServiceError(Exception):
    """Raised when the external chat model call fails."""

    def __init__(self, kind: ModelErrorKind, model: str = "",
                 status_code: int | None = None, detail: str = ""):
        self.kind = kind
        self.model = model
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Model {model or '?'} {kind.value} ({status_code}): {detail}")


class ModelsExhaustedError(Exception):
    """Raised when every model in the fallback list has been tried."""

    def __init__(self, models: list[str] | None = None, detail: str = ""):
        self.models = list(models or [])
        self.detail = detail
        super().__init__(
            f"All models exhausted ({', '.join(self.models) or 'none configured'}): {detail}"
        )


class ToolArgumentError(Exception):
    """Raised when a tool call is unknown or misses a required argument."""

    def __init__(self, tool: str, field: str = "", detail: str = ""):
        self.tool = tool
        self.field = field
        self.detail = detail
        super().__init__(f"Tool {tool} argument error ({field or '-'}): {detail}")


class CartLockedError(Exception):
    """Raised when the cart is edited while a negotiation holds its lock."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__(
            f"Cart is locked by negotiation session {session_id or '(unknown)'}"
        )
