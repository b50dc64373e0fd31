from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from cmsagent.discovery.embeddings import Embedder, cosine_similarity
from cmsagent.discovery.lexical import BM25Index, LexicalHit
from cmsagent.tools.registry import ToolMetadata

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.7
LOW_CONFIDENCE = 0.3
MAX_RELATED_TOOLS = 3
RELATED_SCORE_DISCOUNT = 0.7
RRF_K = 60
FORCED_VECTOR_CONFIDENCE = 0.5


@dataclass(slots=True)
class ToolSearchResult:
    name: str
    score: float
    related_tools: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SearchOutcome:
    tools: List[ToolSearchResult] = field(default_factory=list)
    confidence: float = 0.0
    source: str = "bm25"


def _embedding_text(tool: ToolMetadata) -> str:
    return f"{tool.name}: {tool.description}. {' '.join(tool.phrases)}"


def blend_results(
    lexical: list[ToolSearchResult], semantic: list[ToolSearchResult], limit: int
) -> list[ToolSearchResult]:
    """Reciprocal rank fusion of both rankings, scores normalized to the best."""
    scores: dict[str, float] = {}
    by_name: dict[str, ToolSearchResult] = {}
    for ranking in (lexical, semantic):
        for rank, result in enumerate(ranking):
            scores[result.name] = scores.get(result.name, 0.0) + 1 / (RRF_K + rank + 1)
            by_name.setdefault(result.name, result)
    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
    if not ordered:
        return []
    best = ordered[0][1] or 1.0
    return [
        ToolSearchResult(
            name=name, score=score / best, related_tools=list(by_name[name].related_tools)
        )
        for name, score in ordered
    ]


class ToolDiscoveryIndex:
    """Hybrid tool search.

    Lexical BM25 answers immediately. Embeddings are built in the background
    after `start()`; until they are ready every query is answered lexically.
    """

    def __init__(
        self,
        tools: Iterable[ToolMetadata],
        embedder: Embedder | None = None,
        batch_size: int = 10,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._tools = {tool.name: tool for tool in tools}
        self._lexical = BM25Index(self._tools.values())
        self._embedder = embedder
        self._batch_size = batch_size
        self._vectors: dict[str, list[float]] = {}
        self._vector_ready = False
        self._task: asyncio.Task[None] | None = None

    @property
    def vector_ready(self) -> bool:
        return self._vector_ready

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolMetadata | None:
        return self._tools.get(name)

    def start(self) -> asyncio.Task[None] | None:
        """Schedule the embedding build on the running loop (idempotent)."""
        if self._embedder is None:
            return None
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.build_vectors())
        return self._task

    async def wait_until_ready(self) -> bool:
        if self._task is not None:
            await self._task
        return self._vector_ready

    async def build_vectors(self) -> None:
        if self._embedder is None:
            return
        tools = list(self._tools.values())
        vectors: dict[str, list[float]] = {}
        try:
            for start in range(0, len(tools), self._batch_size):
                batch = tools[start : start + self._batch_size]
                embedded = await asyncio.to_thread(
                    self._embedder.embed, [_embedding_text(tool) for tool in batch]
                )
                if len(embedded) != len(batch):
                    raise ValueError("embedder returned a different number of vectors")
                for tool, vector in zip(batch, embedded):
                    vectors[tool.name] = vector
        except Exception:  # noqa: BLE001
            logger.exception("Tool embedding build failed; discovery stays lexical-only")
            return
        self._vectors = vectors
        self._vector_ready = True
        logger.info("Tool vector index ready: %d tools embedded", len(vectors))

    def _to_result(self, name: str, score: float) -> ToolSearchResult:
        tool = self._tools[name]
        return ToolSearchResult(name=name, score=score, related_tools=list(tool.related_tools))

    def _lexical_results(self, hits: list[LexicalHit]) -> list[ToolSearchResult]:
        return [self._to_result(hit.name, hit.score) for hit in hits]

    async def vector_search(self, query: str, limit: int = 5) -> list[ToolSearchResult]:
        if not self._vector_ready or self._embedder is None or limit <= 0:
            return []
        try:
            embedded = await asyncio.to_thread(self._embedder.embed, [query])
        except Exception as exc:  # noqa: BLE001
            logger.warning("Query embedding failed, answering lexically: %s", exc)
            return []
        if not embedded:
            return []
        query_vector = embedded[0]
        scored = [
            (name, cosine_similarity(query_vector, vector))
            for name, vector in self._vectors.items()
        ]
        ranked = sorted(
            (item for item in scored if item[1] > 0), key=lambda item: item[1], reverse=True
        )
        return [self._to_result(name, score) for name, score in ranked[:limit]]

    def expand_with_related(
        self, results: list[ToolSearchResult], limit: int
    ) -> list[ToolSearchResult]:
        if not results:
            return results
        seen = {result.name for result in results}
        expanded = list(results)
        cap = limit + MAX_RELATED_TOOLS
        for result in results:
            for related in result.related_tools:
                if len(expanded) >= cap:
                    break
                if related in seen or related not in self._tools:
                    continue
                expanded.append(self._to_result(related, result.score * RELATED_SCORE_DISCOUNT))
                seen.add(related)
        expanded.sort(key=lambda item: item.score, reverse=True)
        return expanded[:cap]

    async def search_with_confidence(
        self,
        query: str,
        limit: int = 5,
        *,
        expand_related: bool = True,
        force_vector: bool = False,
    ) -> SearchOutcome:
        outcome = await self._rank(query, limit, force_vector)
        if expand_related:
            outcome.tools = self.expand_with_related(outcome.tools, limit)
        return outcome

    async def search(
        self,
        query: str,
        limit: int = 5,
        *,
        expand_related: bool = True,
        force_vector: bool = False,
    ) -> list[ToolSearchResult]:
        outcome = await self.search_with_confidence(
            query, limit, expand_related=expand_related, force_vector=force_vector
        )
        return outcome.tools

    async def _rank(self, query: str, limit: int, force_vector: bool) -> SearchOutcome:
        if force_vector and self._vector_ready:
            semantic = await self.vector_search(query, limit)
            return SearchOutcome(semantic, FORCED_VECTOR_CONFIDENCE, "vector")

        lexical = self._lexical.search(query, limit)
        lexical_results = self._lexical_results(lexical.hits)
        confidence = lexical.confidence
        if confidence >= HIGH_CONFIDENCE or not self._vector_ready:
            return SearchOutcome(lexical_results, confidence, "bm25")

        semantic = await self.vector_search(query, limit)
        if confidence < LOW_CONFIDENCE:
            if semantic:
                return SearchOutcome(semantic, confidence, "vector")
            return SearchOutcome(lexical_results, confidence, "bm25")
        if not semantic:
            return SearchOutcome(lexical_results, confidence, "bm25")
        return SearchOutcome(blend_results(lexical_results, semantic, limit), confidence, "hybrid")
