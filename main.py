"""
Clerk - FastAPI Application
===========================
Storefront talks to us over JSON. Every shopper gets a ShopperSession
(cart, display, memory, negotiation, keyword index); the catalog
snapshot, its embedding cache and the model client are process-wide.
"""

import asyncio
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()  # Must run BEFORE load_settings() reads env vars

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from models import (
    CartItemRequest,
    CartOut,
    ChatRequest,
    ChatResponse,
    CouponOut,
    DisplayOut,
    ItemOut,
    ResetRequest,
    SearchMetadata,
    SearchRequest,
    SearchResponse,
    SessionResponse,
)
from services.assistant import ShopperSession, TurnResult
from services.catalog import Catalog, Item, load_catalog
from services.config import Settings, load_settings
from services.exceptions import CartLockedError
from services.llm_client import ChatModelClient, RateLimiter
from services.vector_matcher import ChromaEmbeddingProvider, EmbeddingProvider, build_item_embeddings

# ── Logging setup ──────────────────────────────────────────────────────
settings: Settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stdout,
)

# Quiet noisy third-party loggers
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("chromadb").setLevel(logging.WARNING)

logger = logging.getLogger("clerk")

# ── Process-wide state (filled in by lifespan) ─────────────────────────
catalog: Catalog = Catalog()
provider: EmbeddingProvider | None = None
client: ChatModelClient | None = None

# ── Session store (in-memory) ──────────────────────────────────────────
sessions: dict[str, ShopperSession] = {}


def create_session(session_id: str = "") -> ShopperSession:
    session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
    session = ShopperSession(
        catalog, settings=settings, provider=provider, client=client, session_id=session_id,
    )
    sessions[session_id] = session
    logger.info("New session: %s (active=%d)", session_id, len(sessions))
    return session


def get_or_create_session(session_id: str | None) -> tuple[ShopperSession, bool]:
    """Return (session, is_new). An unknown id opens a session under that id."""
    if session_id and session_id in sessions:
        return sessions[session_id], False
    return create_session(session_id or ""), True


def get_session(session_id: str) -> ShopperSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return session


async def warm_embeddings(snapshot: Catalog, embedder: EmbeddingProvider) -> Catalog:
    """Attach cached embeddings to every item. Failure leaves vector search off."""
    t0 = time.perf_counter()
    try:
        embeddings = await asyncio.to_thread(build_item_embeddings, snapshot, embedder)
    except Exception as e:
        logger.warning("Embedding warm-up failed (%s), vector search disabled", e)
        return snapshot
    warmed = snapshot.with_embeddings(embeddings)
    logger.info(
        "Embedding cache ready: %d/%d items (%.0fms)",
        warmed.embedded_count(), len(warmed), (time.perf_counter() - t0) * 1000,
    )
    return warmed


# ── Response helpers ───────────────────────────────────────────────────

def item_out(item: Item) -> ItemOut:
    return ItemOut(**item.model_dump(exclude={"embedding", "floor_price"}))


def cart_out(session: ShopperSession) -> CartOut:
    return CartOut.model_validate(session.cart.to_dict())


def chat_response(session: ShopperSession, result: TurnResult, message: str) -> ChatResponse:
    coupon = session.cart.coupon
    search = None
    if result.search is not None:
        search = SearchMetadata(
            query=message,
            method=result.search.method,
            elapsed_time_ms=round(result.search.elapsed_ms, 2),
            vector_match_count=result.search.vector_match_count,
            keyword_match_count=result.search.keyword_match_count,
            results_count=len(result.search.items),
        )
    return ChatResponse(
        session_id=session.session_id,
        reply=result.text,
        intent=result.intent.value,
        handled_by=result.handled_by,
        items=[item_out(i) for i in result.items],
        cart=cart_out(session),
        display=DisplayOut(**session.display.to_dict()),
        coupon=CouponOut(code=coupon.code, percent=coupon.percent, reason=coupon.reason) if coupon else None,
        search=search,
    )


# ── App lifespan (startup / shutdown) ──────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    global catalog, provider, client
    logger.info("Loading catalog from %s...", settings.catalog_path)
    provider = ChromaEmbeddingProvider()
    catalog = await warm_embeddings(load_catalog(settings.catalog_path), provider)

    limiter = RateLimiter(settings.bridge.min_request_interval)
    client = ChatModelClient(settings.bridge, limiter)
    if client.configured:
        logger.info("Chat model chain: %s", ", ".join(settings.bridge.models))
    else:
        logger.warning("LLM_API_KEY not set, unmatched messages get the scripted fallback")
    yield
    logger.info("Shutting down The Clerk (%d sessions).", len(sessions))
    sessions.clear()


app = FastAPI(
    title="The Clerk",
    description="Conversational shopping assistant for the storefront",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_request(request: Request, call_next):
    t0 = time.perf_counter()
    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        logger.info(
            "%s %s -> %d (%.0fms)",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - t0) * 1000,
        )
    return response


# ── Health ─────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    """Quick connectivity check."""
    return {
        "status": "ok",
        "service": "clerk-assistant",
        "catalog_items": len(catalog),
        "embedded_items": catalog.embedded_count(),
        "model_configured": bool(client and client.configured),
        "active_sessions": len(sessions),
    }


# ── Sessions & chat ────────────────────────────────────────────────────

@app.post("/api/session", response_model=SessionResponse)
async def open_session() -> SessionResponse:
    """Open a shopper session; the keyword index is built here."""
    session = create_session()
    return SessionResponse(session_id=session.session_id, item_count=len(session.catalog))


@app.post("/api/chat", response_model=ChatResponse)
async def chat(request: ChatRequest) -> ChatResponse:
    """One conversational turn: router → negotiation → chat model."""
    request_start = time.perf_counter()
    session, is_new = get_or_create_session(request.session_id)
    logger.info(
        "▶ chat session=%s %s: \"%s\"",
        session.session_id, "(NEW)" if is_new else "(continuing)", request.message[:80],
    )

    result = await session.handle_message(request.message)
    response = chat_response(session, result, request.message)

    logger.info(
        "◀ chat %s: intent=%s via %s, %d items, cart=%d, total=%.2f (%.0fms)",
        session.session_id, response.intent, response.handled_by, len(response.items),
        session.cart.item_count(), session.cart.total(),
        (time.perf_counter() - request_start) * 1000,
    )
    return response


@app.post("/api/search", response_model=SearchResponse)
async def search(request: SearchRequest) -> SearchResponse:
    """Direct retrieval call, bypassing the conversation."""
    session = get_session(request.session_id)
    outcome = await session.retriever.search(
        request.query,
        category=request.category,
        min_price=request.min_price,
        max_price=request.max_price,
        max_results=request.max_results,
    )
    return SearchResponse(
        items=[item_out(i) for i in outcome.items],
        method=outcome.method,
        elapsed_time_ms=round(outcome.elapsed_ms, 2),
        vector_match_count=outcome.vector_match_count,
        keyword_match_count=outcome.keyword_match_count,
    )


# ── Cart (the storefront's own UI) ─────────────────────────────────────

@app.get("/api/cart/{session_id}", response_model=CartOut)
async def get_cart(session_id: str) -> CartOut:
    return cart_out(get_session(session_id))


@app.post("/api/cart/{session_id}/items", response_model=CartOut)
async def edit_cart(session_id: str, request: CartItemRequest) -> CartOut:
    """
    Add, re-quantify or remove (quantity 0) a cart line.

    Answers 409 while a negotiation holds the cart lock.
    """
    session = get_session(session_id)
    item = session.catalog.get(request.item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown item: {request.item_id}")
    in_cart = any(line.item_id == item.id for line in session.cart.lines)
    try:
        if in_cart:
            session.cart.set_quantity(item.id, request.quantity)
        elif request.quantity > 0:
            session.cart.add(item, request.quantity)
    except CartLockedError as e:
        logger.info("Cart edit refused for %s: %s", session_id, e)
        raise HTTPException(status_code=409, detail=str(e))
    return cart_out(session)


@app.get("/api/negotiation/{session_id}")
async def get_negotiation(session_id: str):
    """Serialized negotiation state for the storefront and for debugging."""
    negotiation = get_session(session_id).negotiation
    return {
        "state": negotiation.state.value,
        "rudeness_score": negotiation.rudeness_score,
        "cooldown_until": negotiation.cooldown_until,
        "in_cooldown": negotiation.in_cooldown(),
        "session": negotiation.session.to_dict() if negotiation.session else None,
    }


# ── Admin ──────────────────────────────────────────────────────────────

@app.post("/api/reset")
async def reset_session(request: ResetRequest):
    """Drop a shopper session. The next chat without an id starts fresh."""
    removed = sessions.pop(request.session_id, None)
    logger.info("Session reset: %s (%s)", request.session_id, "removed" if removed else "not found")
    return {
        "status": "ok",
        "old_session_id": request.session_id,
        "removed": removed is not None,
    }


@app.post("/api/reindex")
async def reindex():
    """
    Reload the catalog file and rebuild the embedding cache.
    Open sessions keep the snapshot they were opened with.
    """
    global catalog, provider
    if provider is None:
        provider = ChromaEmbeddingProvider()
    logger.info("Reindexing catalog from %s...", settings.catalog_path)
    catalog = await warm_embeddings(load_catalog(settings.catalog_path), provider)
    return {
        "status": "ok",
        "catalog_items": len(catalog),
        "embedded_items": catalog.embedded_count(),
    }


# ── Run with uvicorn ───────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
