"""
Clerk - Vector Matcher (Embedding Similarity)
=============================================
Cosine similarity between a query embedding and the per-item embeddings
cached on the catalog snapshot.

Embeddings come from chromadb's default embedding function
(all-MiniLM-L6-v2, ONNX, in-process). The cached item vectors are loaded
into an in-memory chromadb collection with cosine distance, one per
catalog snapshot, and queries go through collection.query(). The
embedding and query calls are sync, so they run in asyncio.to_thread()
under a timeout. A slow or broken provider makes the matcher return []
so retrieval degrades instead of failing.
"""

import asyncio
import logging
import threading
import uuid
import weakref
from dataclasses import dataclass

import chromadb
from chromadb.utils import embedding_functions

from services.catalog import Catalog
from services.exceptions import EmbeddingServiceError

logger = logging.getLogger("clerk.vector")

# ── Module state (one in-memory chromadb client per process) ───────────
_client: chromadb.ClientAPI | None = None
_indexes: "weakref.WeakKeyDictionary[Catalog, chromadb.Collection]" = weakref.WeakKeyDictionary()
_index_lock = threading.Lock()


def _chroma() -> chromadb.ClientAPI:
    global _client
    if _client is None:
        _client = chromadb.Client()
    return _client


def _drop_collection(name: str) -> None:
    try:
        _chroma().delete_collection(name)
    except Exception as e:
        logger.warning("Could not drop vector index %s: %s", name, e)


def catalog_index(catalog: Catalog) -> chromadb.Collection:
    """
    Cosine-space chromadb collection over a snapshot's cached embeddings.

    Built once per snapshot and dropped when the snapshot is garbage
    collected. Zero vectors are skipped, as are vectors whose dimension
    differs from the first indexed one.
    """
    with _index_lock:
        collection = _indexes.get(catalog)
        if collection is not None:
            return collection

        name = f"catalog-{uuid.uuid4().hex[:12]}"
        collection = _chroma().get_or_create_collection(
            name=name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )
        ids: list[str] = []
        vectors: list[list[float]] = []
        dimension = 0
        for item in catalog:
            if not item.embedding or not any(item.embedding):
                continue
            dimension = dimension or len(item.embedding)
            if len(item.embedding) != dimension:
                logger.warning("Item %s embedding has %d dims, expected %d; not indexed",
                               item.id, len(item.embedding), dimension)
                continue
            ids.append(item.id)
            vectors.append(item.embedding)
        if ids:
            collection.add(ids=ids, embeddings=vectors)

        _indexes[catalog] = collection
        weakref.finalize(catalog, _drop_collection, name).atexit = False
        logger.info("Vector index %s ready: %d/%d items", name, len(ids), len(catalog))
        return collection


class EmbeddingProvider:
    """Turns text into vectors. Subclasses implement embed_batch()."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, text: str, timeout: float | None = None) -> list[float]:
        """
        Embed one text without blocking the event loop.

        Raises:
            EmbeddingServiceError: on timeout or any provider failure.
        """
        try:
            vectors = await asyncio.wait_for(
                asyncio.to_thread(self.embed_batch, [text]), timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingServiceError(detail=f"timed out after {timeout}s") from e
        except EmbeddingServiceError:
            raise
        except Exception as e:
            raise EmbeddingServiceError(detail=f"{type(e).__name__}: {e}") from e
        if not vectors or not vectors[0]:
            raise EmbeddingServiceError(detail="provider returned no vector")
        return vectors[0]


class ChromaEmbeddingProvider(EmbeddingProvider):
    """chromadb DefaultEmbeddingFunction, loaded lazily on first use."""

    def __init__(self):
        self._fn = None

    def _function(self):
        if self._fn is None:
            logger.info("Loading chromadb default embedding function...")
            self._fn = embedding_functions.DefaultEmbeddingFunction()
        return self._fn

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._function()(texts)
        return [[float(x) for x in vec] for vec in vectors]


def build_item_embeddings(catalog: Catalog, provider: EmbeddingProvider,
                          batch_size: int = 32) -> dict[str, list[float]]:
    """
    Embed every item's search text. Sync; call via asyncio.to_thread().

    A failing batch is logged and skipped; those items simply get no
    vector and never show up in vector results.
    """
    items = list(catalog)
    embeddings: dict[str, list[float]] = {}
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        try:
            vectors = provider.embed_batch([item.search_text() for item in batch])
        except Exception as e:
            logger.error("Embedding batch %d failed: %s", start // batch_size, e)
            continue
        for item, vector in zip(batch, vectors):
            embeddings[item.id] = vector
    logger.info("Item embeddings built: %d/%d items", len(embeddings), len(items))
    return embeddings


@dataclass(frozen=True)
class VectorHit:
    item_id: str
    similarity: float


class VectorMatcher:
    """Ranks catalog items by embedding similarity to a query."""

    def __init__(self, catalog: Catalog, provider: EmbeddingProvider | None,
                 threshold: float = 0.3, timeout: float = 5.0):
        self.catalog = catalog
        self.provider = provider
        self.threshold = threshold
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return self.provider is not None and self.catalog.embedded_count() > 0

    def rank(self, query_embedding: list[float], limit: int) -> list[VectorHit]:
        """
        Query the snapshot's index: similarity >= threshold, descending,
        at most `limit`. Sync; call via asyncio.to_thread().

        Raises:
            EmbeddingServiceError: if the chromadb query fails.
        """
        collection = catalog_index(self.catalog)
        count = collection.count()
        if count == 0 or limit <= 0:
            return []
        try:
            results = collection.query(
                query_embeddings=[query_embedding],
                n_results=min(limit, count),
                include=["distances"],
            )
        except Exception as e:
            raise EmbeddingServiceError(detail=f"chromadb query failed: {e}") from e

        ids = (results.get("ids") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        hits = []
        for item_id, distance in zip(ids, distances):
            # cosine distance is 1 - similarity; float32 noise rounded away
            similarity = round(1.0 - float(distance), 6)
            if similarity >= self.threshold:
                hits.append(VectorHit(item_id=item_id, similarity=similarity))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    async def match(self, query: str, limit: int) -> list[VectorHit]:
        """Embed the query and rank. Never raises; [] when the provider is down."""
        if not self.available or not query.strip():
            return []
        try:
            query_embedding = await self.provider.embed(query, timeout=self.timeout)
            hits = await asyncio.to_thread(self.rank, query_embedding, limit)
        except EmbeddingServiceError as e:
            logger.warning("Vector search degraded: %s", e.detail)
            return []
        logger.info("Vector matches: %d for \"%s\"", len(hits), query[:50])
        return hits
