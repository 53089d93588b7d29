from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings
from fastapi.concurrency import run_in_threadpool

from .metrics import rag_retrieval_passages, rag_retrieval_strategy_failures_total

logger = logging.getLogger(__name__)

# Tiny stopword set + tokenization for keyword search
_STOPWORDS = {
    "the","a","an","of","to","in","on","at","for","and","or","if","is","are","was","were",
    "by","with","from","as","that","this","these","those","it","its","be","been","being",
    "which","who","whom","what","when","where","why","how","do","does","did","can","you",
    "your","about","tell","there","any","not"
}
_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def keywords(query: str, min_len: int = 3) -> List[str]:
    """Lower-cased content words of `query`, in order, without repeats."""
    out: List[str] = []
    for w in _WORD_RE.findall(query or ""):
        lw = w.lower()
        if len(lw) < min_len or lw in _STOPWORDS or lw in out:
            continue
        out.append(lw)
    return out


@dataclass(frozen=True)
class Passage:
    content: str
    source: str
    score: Optional[float] = None


# ------------------------------
# Chroma collection
# ------------------------------

class ChromaStore:
    """Persistent Chroma collection holding chunk text, source metadata and Gemini embeddings."""

    def __init__(self, path: str, collection_name: str = "rag_docs", client=None):
        self._client = client if client is not None else chromadb.PersistentClient(
            path=path, settings=ChromaSettings(allow_reset=False, anonymized_telemetry=False)
        )
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            # embeddings are supplied by the caller; cosine for Gemini vectors
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def count(self) -> int:
        return self._collection.count()

    def upsert(self, docs: List[dict], embeddings: List[List[float]]) -> None:
        """Insert or replace chunks. Each doc must have keys: id, text, source."""
        if not docs:
            return
        self._collection.upsert(
            ids=[d["id"] for d in docs],
            documents=[d["text"] for d in docs],
            metadatas=[{"source": d["source"]} for d in docs],
            embeddings=embeddings,
        )

    def delete_source(self, source: str) -> None:
        """Drop every stored chunk of `source`."""
        self._collection.delete(where={"source": source})

    def keyword_search(self, query: str, limit: int) -> List[Passage]:
        """
        Chunks containing any content word of `query`, most keywords matched first.

        `$contains` is case-sensitive, so each keyword is tried lower-case,
        capitalized and upper-case.
        """
        terms = keywords(query)
        if not terms:
            return []
        variants: List[str] = []
        for t in terms:
            for v in (t, t.capitalize(), t.upper()):
                if v not in variants:
                    variants.append(v)
        clauses = [{"$contains": v} for v in variants]
        where = clauses[0] if len(clauses) == 1 else {"$or": clauses}

        res = self._collection.get(
            where_document=where,
            limit=limit * 5,
            include=["documents", "metadatas"],
        )
        docs = res.get("documents") or []
        metas = res.get("metadatas") or []

        hits = []
        for t, m in zip(docs, metas):
            low = (t or "").lower()
            hits.append((sum(1 for term in terms if term in low), t, m))
        hits.sort(key=lambda h: h[0], reverse=True)
        return [Passage(content=t, source=_source_of(m)) for _, t, m in hits[:limit]]

    def vector_search(self, embedding: Sequence[float], limit: int, min_score: float) -> List[Passage]:
        """Nearest chunks by cosine similarity, dropping those scoring below `min_score`."""
        res = self._collection.query(
            query_embeddings=[list(embedding)],
            n_results=limit,
            include=["documents", "metadatas", "distances"],
        )
        docs = (res.get("documents") or [[]])[0]
        metas = (res.get("metadatas") or [[]])[0]
        dists = (res.get("distances") or [[]])[0]

        out: List[Passage] = []
        for t, m, d in zip(docs, metas, dists):
            if d is None:
                continue
            score = 1.0 - float(d)
            if score >= min_score:
                out.append(Passage(content=t, source=_source_of(m), score=score))
        return out

    def sample(self, n: int = 10) -> List[Passage]:
        """Return up to n stored chunks for debugging."""
        n = max(1, n)
        count = self._collection.count()
        if count == 0:
            return []
        start = random.randint(0, max(0, count - n))
        res = self._collection.get(include=["documents", "metadatas"], limit=n, offset=start)
        docs = res.get("documents") or []
        metas = res.get("metadatas") or []
        return [Passage(content=t, source=_source_of(m)) for t, m in zip(docs, metas)]


def _source_of(meta) -> str:
    return meta.get("source", "unknown") if isinstance(meta, dict) else "unknown"


# ------------------------------
# Ranking
# ------------------------------

Ranker = Callable[[Sequence[Sequence[Passage]]], List[Passage]]


def merge_passages(result_lists: Sequence[Sequence[Passage]]) -> List[Passage]:
    """
    Concatenate result lists in precedence order, keeping only the first
    passage seen for each source.
    """
    seen: set[str] = set()
    merged: List[Passage] = []
    for results in result_lists:
        for p in results:
            if p.source in seen:
                continue
            seen.add(p.source)
            merged.append(p)
    return merged


# ------------------------------
# Retriever
# ------------------------------

Strategy = Callable[[str], Awaitable[List[Passage]]]


class ContextRetriever:
    """
    Runs named search strategies concurrently and merges their results.

    Strategies are listed highest-precision first; that order is the merge
    precedence. A strategy that raises is logged and skipped as long as the
    others still produce passages; otherwise the first error is re-raised,
    since "nothing found" would be a lie.
    """

    def __init__(
        self,
        strategies: Dict[str, Strategy],
        *,
        ranker: Ranker = merge_passages,
        max_passages: int = 8,
    ):
        if not strategies:
            raise ValueError("at least one retrieval strategy is required")
        self.strategies = strategies
        self.ranker = ranker
        self.max_passages = max_passages

    async def retrieve(self, query: str) -> List[Passage]:
        q = (query or "").strip()
        if not q:
            logger.info("Search skipped: empty query")
            return []

        names = list(self.strategies)
        results = await asyncio.gather(
            *(self.strategies[name](q) for name in names), return_exceptions=True
        )

        ok: List[List[Passage]] = []
        errors: List[BaseException] = []
        for name, res in zip(names, results):
            if isinstance(res, BaseException):
                rag_retrieval_strategy_failures_total.labels(strategy=name).inc()
                logger.warning("Retrieval strategy %s failed: %r", name, res)
                errors.append(res)
                continue
            logger.info("Strategy %s: %d passages for '%s'", name, len(res), q)
            ok.append(list(res))

        passages = self.ranker(ok)[: self.max_passages] if ok else []
        if not passages and errors:
            raise errors[0]
        rag_retrieval_passages.observe(len(passages))
        return passages


def build_retriever(store: ChromaStore, gemini, settings) -> ContextRetriever:
    """Keyword search first, then Gemini-embedding similarity search."""

    async def lexical(query: str) -> List[Passage]:
        return await run_in_threadpool(store.keyword_search, query, settings.lexical_count)

    async def semantic(query: str) -> List[Passage]:
        vector = await gemini.embed(query)
        return await run_in_threadpool(
            store.vector_search, vector, settings.match_count, settings.match_threshold
        )

    return ContextRetriever(
        {"lexical": lexical, "semantic": semantic},
        max_passages=settings.max_passages,
    )
