"""
Clerk - Chat Model Client
=========================
Async client for an OpenAI-compatible /chat/completions endpoint with
tool calling (Groq by default).

- RateLimiter spaces requests by a minimum interval. One instance per
  process, injected into every client; clock and sleep are injectable.
- ModelFallbackChain is an ordered model list plus a cursor. The cursor
  moves on when a model is not found or keeps rate-limiting.
- Rate-limit and transient errors back off exponentially; fatal errors
  abort the turn. When every model is spent, ModelsExhaustedError.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field

import httpx

from services.config import BridgeConfig
from services.exceptions import ModelErrorKind, ModelServiceError, ModelsExhaustedError

logger = logging.getLogger("clerk.llm")


class RateLimiter:
    """Enforces a minimum spacing between upstream requests."""

    def __init__(self, min_interval: float = 1.0, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Wait until the next request may go out. Returns the seconds waited."""
        async with self._lock:
            waited = 0.0
            if self._last is not None:
                waited = self.min_interval - (self._clock() - self._last)
                if waited > 0:
                    await self._sleep(waited)
                else:
                    waited = 0.0
            self._last = self._clock()
            return waited


class ModelFallbackChain:
    """Ordered model names with a sticky cursor."""

    def __init__(self, models: list[str] | tuple[str, ...]):
        self.models = list(models)
        self.cursor = 0

    @property
    def current(self) -> str | None:
        if self.cursor < len(self.models):
            return self.models[self.cursor]
        return None

    def advance(self) -> str | None:
        self.cursor += 1
        return self.current

    def reset(self) -> None:
        self.cursor = 0


@dataclass
class ToolCall:
    name: str
    arguments: str = "{}"
    call_id: str = ""


@dataclass
class ChatCompletion:
    model: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


def classify_error(exc: Exception, model: str = "") -> ModelServiceError:
    """Map an httpx failure onto a ModelErrorKind."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:300]
        if status == 404 or "model_not_found" in body or "does not exist" in body:
            kind = ModelErrorKind.NOT_FOUND
        elif status == 429 or "rate_limit" in body:
            kind = ModelErrorKind.RATE_LIMITED
        elif status >= 500:
            kind = ModelErrorKind.TRANSIENT
        else:
            kind = ModelErrorKind.FATAL
        return ModelServiceError(kind, model=model, status_code=status, detail=body)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ModelServiceError(ModelErrorKind.TRANSIENT, model=model,
                                 detail=f"{type(exc).__name__}: {exc}")
    return ModelServiceError(ModelErrorKind.FATAL, model=model,
                             detail=f"{type(exc).__name__}: {exc}")


class ChatModelClient:
    """Tool-calling chat client with rate limiting, retry and model fallback."""

    def __init__(self, config: BridgeConfig, limiter: RateLimiter,
                 http_client: httpx.AsyncClient | None = None, sleep=asyncio.sleep):
        self.config = config
        self.limiter = limiter
        self.chain = ModelFallbackChain(config.models)
        self._http = http_client
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key) and bool(self.config.models)

    async def _post(self, model: str, messages: list[dict], tools: list[dict]) -> ChatCompletion:
        payload: dict = {
            "model": model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"

        try:
            if self._http is not None:
                resp = await self._http.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise classify_error(e, model) from e

        if not isinstance(data, dict):
            raise ModelServiceError(ModelErrorKind.FATAL, model=model, status_code=resp.status_code,
                                    detail=f"unexpected response body: {type(data).__name__}")
        message = ((data.get("choices") or [{}])[0]).get("message") or {}
        calls = [
            ToolCall(
                name=(c.get("function") or {}).get("name", ""),
                arguments=(c.get("function") or {}).get("arguments") or "{}",
                call_id=c.get("id", ""),
            )
            for c in message.get("tool_calls") or []
        ]
        return ChatCompletion(model=model, content=message.get("content") or "", tool_calls=calls)

    async def complete(self, messages: list[dict], tools: list[dict] | None = None) -> ChatCompletion:
        """
        Run one completion, walking the fallback chain as needed.

        Raises:
            ModelServiceError:    on a fatal (non-retryable) upstream error.
            ModelsExhaustedError: when no model in the chain answered.
        """
        tools = tools or []
        while (model := self.chain.current) is not None:
            for attempt in range(self.config.max_retries):
                await self.limiter.acquire()
                try:
                    completion = await self._post(model, messages, tools)
                    logger.info(
                        "Model %s answered (%d tool calls, %d chars)",
                        model, len(completion.tool_calls), len(completion.content),
                    )
                    return completion
                except ModelServiceError as e:
                    if e.kind == ModelErrorKind.FATAL:
                        logger.error("Model %s fatal error: %s", model, e.detail[:200])
                        raise
                    if e.kind == ModelErrorKind.NOT_FOUND:
                        logger.warning("Model %s not available, skipping", model)
                        break
                    if attempt < self.config.max_retries - 1:
                        delay = self.config.retry_base_delay * (2 ** attempt)
                        logger.warning(
                            "Model %s %s (attempt %d/%d), retrying in %.1fs",
                            model, e.kind.value, attempt + 1, self.config.max_retries, delay,
                        )
                        await self._sleep(delay)
            self.chain.advance()

        self.chain.reset()
        raise ModelsExhaustedError(self.config.models, detail="no model answered")
