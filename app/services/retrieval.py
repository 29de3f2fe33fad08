# =============================================================================
# Retrieval Collaborator — Filtered Pitch Search
# =============================================================================
#
# The shark_tank_search tool asks this layer for pitch facts:
#
#   search(query_text, filter=None, limit) -> RetrievalResponse(intent, hits)
#
# A filter is a conjunction of field predicates over the pitch schema:
#   match: company, entrepreneur, investor_name, industry, deal_made,
#          season, episode
#   range: <field>_gt / <field>_lt over ask_amount, valuation, equity_offered
#
# Intent filters arrive loosely typed (""/0/"any" mean "no filter",
# deal_made is the string "true"/"false"), so build_search_filter()
# normalizes them into a SearchFilter before any backend sees them.
#
# ARCHITECTURE:
#   RetrievalClient (Protocol)
#   ├── HttpRetrievalClient   — POST {retrieval_url}/search (httpx)
#   └── ChromaRetrievalClient — embed query + ChromaDB similarity search
#       └── search()          — async via asyncio.to_thread() wrapper
#
# Zero hits is a valid outcome, never an error. Transport failures raise
# UpstreamError; the tool layer turns that into a failure payload.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from app.config import settings
from app.errors import UpstreamError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldMatch:
    key: str
    value: Any


@dataclass(frozen=True)
class FieldRange:
    key: str
    gt: float | None = None
    lt: float | None = None


@dataclass(frozen=True)
class SearchFilter:
    """Conjunction of match / range predicates. Empty means no filtering."""

    matches: tuple[FieldMatch, ...] = ()
    ranges: tuple[FieldRange, ...] = ()

    def is_empty(self) -> bool:
        return not self.matches and not self.ranges

    def to_dict(self) -> dict[str, Any]:
        """Wire form: {"must": [{key, match: {value}} | {key, range: {gt|lt}}]}."""
        must: list[dict[str, Any]] = [
            {"key": m.key, "match": {"value": m.value}} for m in self.matches
        ]
        for r in self.ranges:
            bounds = {k: v for k, v in (("gt", r.gt), ("lt", r.lt)) if v is not None}
            must.append({"key": r.key, "range": bounds})
        return {"must": must}

    def to_chroma_where(self) -> dict[str, Any] | None:
        """ChromaDB `where` clause; multiple predicates are joined with $and."""
        clauses: list[dict[str, Any]] = [
            {m.key: {"$eq": m.value}} for m in self.matches
        ]
        for r in self.ranges:
            if r.gt is not None:
                clauses.append({r.key: {"$gt": r.gt}})
            if r.lt is not None:
                clauses.append({r.key: {"$lt": r.lt}})

        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}


@dataclass
class RetrievalHit:
    """One pitch chunk as stored in the vector index."""

    payload: dict[str, Any]
    score: float | None = None


@dataclass
class RetrievalResponse:
    intent: dict[str, Any] | None = None
    hits: list[RetrievalHit] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.hits)


def build_search_filter(filters: Mapping[str, Any] | None) -> SearchFilter | None:
    """
    Normalize loosely typed intent filters.

    Skips "", 0, None and "any". `deal_made` accepts only "true"/"false"
    (or a bool). `<field>_gt` / `<field>_lt` become range bounds on <field>.
    Returns None when nothing is left to filter on.
    """
    if not filters:
        return None

    matches: list[FieldMatch] = []
    bounds: dict[str, dict[str, float]] = {}

    for key, value in filters.items():
        if value is None or value == "" or value == "any":
            continue
        if value == 0 and not isinstance(value, bool):
            continue

        if key == "deal_made":
            if isinstance(value, bool):
                matches.append(FieldMatch(key, value))
            elif str(value).lower() in ("true", "false"):
                matches.append(FieldMatch(key, str(value).lower() == "true"))
        elif key.endswith("_gt"):
            bounds.setdefault(key[:-3], {})["gt"] = float(value)
        elif key.endswith("_lt"):
            bounds.setdefault(key[:-3], {})["lt"] = float(value)
        else:
            matches.append(FieldMatch(key, value))

    ranges = tuple(
        FieldRange(key, gt=b.get("gt"), lt=b.get("lt")) for key, b in bounds.items()
    )
    result = SearchFilter(matches=tuple(matches), ranges=ranges)
    return None if result.is_empty() else result


def dedupe_by_summary(hits: list[RetrievalHit]) -> list[RetrievalHit]:
    """Keep the first hit per pitch summary, dropping hits without one."""
    seen: set[str] = set()
    unique: list[RetrievalHit] = []
    for hit in hits:
        summary = hit.payload.get("parent_summary")
        if summary and summary not in seen:
            seen.add(summary)
            unique.append(hit)
    return unique


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class RetrievalClient(Protocol):
    async def search(
        self,
        query_text: str,
        filter: SearchFilter | None = None,
        limit: int | None = None,
    ) -> RetrievalResponse:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: HTTP Retrieval Service
# ---------------------------------------------------------------------------


class HttpRetrievalClient:
    """
    Calls the retrieval service's search endpoint.

    Request:  POST {base_url}/search {query, filter?, limit}
    Response: {intent, results: [payload | {payload, score}], count}
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.retrieval_url).rstrip("/")
        self._timeout = timeout or settings.retrieval_timeout_s
        self._transport = transport

    async def search(
        self,
        query_text: str,
        filter: SearchFilter | None = None,
        limit: int | None = None,
    ) -> RetrievalResponse:
        body: dict[str, Any] = {
            "query": query_text,
            "limit": limit or settings.retrieval_limit,
        }
        if filter is not None and not filter.is_empty():
            body["filter"] = filter.to_dict()

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.post(f"{self._base_url}/search", json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Retrieval service returned %d: %s",
                exc.response.status_code, exc.response.text[:500],
            )
            raise UpstreamError(
                f"Retrieval service returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
                body=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Retrieval service unreachable: %s", exc)
            raise UpstreamError(f"Retrieval service unreachable: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("Retrieval service returned a non-JSON body") from exc

        hits: list[RetrievalHit] = []
        for row in data.get("results") or []:
            if isinstance(row, dict) and isinstance(row.get("payload"), dict):
                hits.append(RetrievalHit(payload=row["payload"], score=row.get("score")))
            elif isinstance(row, dict):
                hits.append(RetrievalHit(payload=row))

        logger.info("Retrieval returned %d hits for %r", len(hits), query_text[:80])
        return RetrievalResponse(intent=data.get("intent"), hits=hits)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaRetrievalClient:
    """
    Pitch search straight against a ChromaDB collection.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): no extra infra
    - Client/server: set CHROMA_URL for a Docker deployment
    """

    def __init__(self, collection=None, embed=None) -> None:
        if collection is None:
            import chromadb

            if settings.chroma_url:
                client = chromadb.HttpClient(host=settings.chroma_url)
            else:
                client = chromadb.Client()
            collection = client.get_or_create_collection(
                name=settings.chroma_collection,
                metadata={"hnsw:space": "cosine"},
            )
        if embed is None:
            from app.services.embedder import embed_query as embed

        self._collection = collection
        self._embed = embed

    async def search(
        self,
        query_text: str,
        filter: SearchFilter | None = None,
        limit: int | None = None,
    ) -> RetrievalResponse:
        """
        Similarity search in ChromaDB.

        The ChromaDB client and the embedding call are synchronous, so the
        whole lookup runs in a worker thread.
        """
        n_results = limit or settings.retrieval_limit
        where = filter.to_chroma_where() if filter is not None else None

        def _sync_search() -> list[RetrievalHit]:
            results = self._collection.query(
                query_embeddings=[self._embed(query_text)],
                n_results=n_results,
                where=where,
                include=["documents", "metadatas", "distances"],
            )

            hits: list[RetrievalHit] = []
            if results and results["ids"] and results["ids"][0]:
                for i, _ in enumerate(results["ids"][0]):
                    metadata = dict(results["metadatas"][0][i]) if results["metadatas"] else {}
                    if results["documents"] and "chunk_text" not in metadata:
                        metadata["chunk_text"] = results["documents"][0][i]
                    distance = results["distances"][0][i] if results["distances"] else 0.0
                    # ChromaDB cosine distance is in [0, 2]; convert to similarity
                    hits.append(RetrievalHit(payload=metadata, score=round(1.0 - distance, 4)))
            return hits

        try:
            hits = await asyncio.to_thread(_sync_search)
        except Exception as exc:
            logger.error("ChromaDB search failed: %s", exc)
            raise UpstreamError(f"ChromaDB search failed: {exc}") from exc

        hits = dedupe_by_summary(hits)
        intent = {
            "type": "SEMANTIC" if where is None else "HYBRID",
            "filters": filter.to_dict() if filter is not None else {},
            "search_term": query_text,
        }
        logger.info("ChromaDB returned %d unique pitches for %r", len(hits), query_text[:80])
        return RetrievalResponse(intent=intent, hits=hits)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_retrieval_client(override_type: str | None = None) -> RetrievalClient:
    """Return the retrieval backend configured by `retrieval_backend`."""
    backend = override_type or settings.retrieval_backend
    if backend == "chroma":
        logger.info("Using ChromaDB retrieval backend")
        return ChromaRetrievalClient()

    logger.info("Using HTTP retrieval backend (%s)", settings.retrieval_url)
    return HttpRetrievalClient()
