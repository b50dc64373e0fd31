from __future__ import annotations

import asyncio
import json
import logging

import pytest

from cmsagent.discovery.embeddings import HashEmbedder, HttpEmbedder, cosine_similarity
from cmsagent.discovery.index import ToolDiscoveryIndex, ToolSearchResult, blend_results
from cmsagent.discovery.lexical import (
    BM25Index,
    LexicalHit,
    LexicalResult,
    calculate_confidence,
    normalize_token,
    tokenize,
)
from cmsagent.tools.demo import DEMO_METADATA


class FixedEmbedder:
    """Maps known texts onto fixed axes; everything else lands on the last axis."""

    def __init__(self, axes: dict[str, int], dim: int = 4) -> None:
        self.axes = axes
        self.dim = dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            axis = next(
                (index for key, index in self.axes.items() if text.startswith(key)), self.dim - 1
            )
            vector = [0.0] * self.dim
            vector[axis] = 1.0
            vectors.append(vector)
        return vectors


class BrokenEmbedder:
    def embed(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service down")


def _index(embedder=None) -> ToolDiscoveryIndex:
    return ToolDiscoveryIndex(DEMO_METADATA, embedder=embedder, batch_size=3)


def _fake_urlopen_factory(calls, response_payload: bytes):
    class FakeResponse:
        def read(self) -> bytes:
            return response_payload

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb) -> bool:
            return False

    def fake_urlopen(request, timeout=0):
        calls.append(request)
        return FakeResponse()

    return fake_urlopen


def test_tokenize_splits_identifiers_and_normalizes() -> None:
    assert tokenize("createPage") == tokenize("create page")
    assert tokenize("list_pages") == tokenize("list page")
    assert tokenize("cms.getSection") == tokenize("cms get section")
    assert tokenize("a page") == tokenize("page")


def test_normalize_token_keeps_short_stems() -> None:
    assert normalize_token("entries") == "entry"
    assert normalize_token("updating") == "updat"
    assert normalize_token("bus") == "bus"


def test_calculate_confidence() -> None:
    assert calculate_confidence([]) == 0.0
    assert calculate_confidence([0.0]) == 0.0
    assert calculate_confidence([10.0]) == pytest.approx(0.5 + 0.3 + 0.2 * 0.95)
    close = calculate_confidence([2.0, 1.9, 1.8])
    clear = calculate_confidence([2.0, 0.5])
    assert close < clear


def test_bm25_ranks_by_name_and_phrases() -> None:
    index = BM25Index(DEMO_METADATA)

    result = index.search("delete page", limit=3)

    assert result.hits[0].name == "deletePage"
    assert result.hits[0].score == 1.0
    assert len(result.hits) <= 3
    assert 0.0 < result.confidence <= 1.0


def test_bm25_no_match() -> None:
    result = BM25Index(DEMO_METADATA).search("zzz qqq")

    assert result.hits == []
    assert result.confidence == 0.0


def test_lexical_only_until_vectors_ready() -> None:
    index = _index(HashEmbedder())

    outcome = asyncio.run(index.search_with_confidence("create a new page", limit=2))

    assert not index.vector_ready
    assert outcome.source == "bm25"
    assert outcome.tools[0].name == "createPage"


def test_related_tools_are_appended_with_discount() -> None:
    index = _index()

    outcome = asyncio.run(index.search_with_confidence("create a new page", limit=1))
    names = [tool.name for tool in outcome.tools]

    assert names[0] == "createPage"
    assert set(names[1:]) == {"createSection", "getPage"}
    related = {tool.name: tool.score for tool in outcome.tools[1:]}
    assert related["createSection"] == pytest.approx(outcome.tools[0].score * 0.7)
    assert len(outcome.tools) <= 1 + 3


def test_related_expansion_can_be_disabled() -> None:
    tools = asyncio.run(_index().search("create a new page", limit=1, expand_related=False))

    assert [tool.name for tool in tools] == ["createPage"]


def test_force_vector_uses_embeddings() -> None:
    async def scenario():
        index = _index(HashEmbedder())
        first = index.start()
        assert index.start() is first
        assert await index.wait_until_ready()
        return await index.search_with_confidence(
            "remove trash destroy page", limit=2, expand_related=False, force_vector=True
        )

    outcome = asyncio.run(scenario())

    assert outcome.source == "vector"
    assert outcome.confidence == 0.5
    assert outcome.tools[0].name == "deletePage"


def test_confidence_bands_pick_the_source(monkeypatch) -> None:
    embedder = FixedEmbedder({"getSection": 0, "show section": 0})
    index = _index(embedder)
    asyncio.run(index.build_vectors())

    def lexical_with(confidence: float):
        return lambda query, limit: LexicalResult(
            hits=[LexicalHit(name="getPage", score=1.0)], confidence=confidence
        )

    def run(confidence: float):
        monkeypatch.setattr(index._lexical, "search", lexical_with(confidence))
        return asyncio.run(
            index.search_with_confidence("show section", limit=1, expand_related=False)
        )

    high = run(0.9)
    low = run(0.1)
    middle = run(0.5)

    assert high.source == "bm25" and [t.name for t in high.tools] == ["getPage"]
    assert low.source == "vector" and [t.name for t in low.tools] == ["getSection"]
    assert middle.source == "hybrid"
    assert {t.name for t in middle.tools} <= {"getPage", "getSection"}


def test_blend_results_uses_reciprocal_rank() -> None:
    lexical = [ToolSearchResult("a", 1.0), ToolSearchResult("b", 0.5)]
    semantic = [ToolSearchResult("b", 0.9), ToolSearchResult("c", 0.8)]

    blended = blend_results(lexical, semantic, limit=3)

    assert blended[0].name == "b"
    assert blended[0].score == 1.0
    assert [result.name for result in blended] == ["b", "a", "c"]
    assert blend_results([], [], limit=3) == []


def test_embedding_failure_stays_lexical(caplog) -> None:
    index = _index(BrokenEmbedder())

    with caplog.at_level(logging.ERROR, logger="cmsagent.discovery.index"):
        asyncio.run(index.build_vectors())
        outcome = asyncio.run(index.search_with_confidence("delete page", force_vector=True))

    assert not index.vector_ready
    assert outcome.source == "bm25"
    assert outcome.tools[0].name == "deletePage"
    assert any("lexical-only" in record.getMessage() for record in caplog.records)


def test_hash_embedder_similarity() -> None:
    embedder = HashEmbedder(dim=128)
    page, pages, hero = embedder.embed(["create page", "create pages", "hero banner image"])

    assert cosine_similarity(page, pages) == pytest.approx(1.0)
    assert cosine_similarity(page, hero) < 0.5
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0


def test_http_embedder_orders_by_index(monkeypatch) -> None:
    calls: list[object] = []
    payload = json.dumps(
        {"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1, 0]}]}
    ).encode("utf-8")
    monkeypatch.setattr(
        "cmsagent.discovery.embeddings.urllib.request.urlopen",
        _fake_urlopen_factory(calls, payload),
    )

    embedder = HttpEmbedder(base_url="http://example.com/", model="embed-small", api_key="k")
    vectors = embedder.embed(["first", "second"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    request = calls[0]
    assert request.full_url == "http://example.com/v1/embeddings"
    assert request.get_header("Authorization") == "Bearer k"
    assert json.loads(request.data) == {"model": "embed-small", "input": ["first", "second"]}


def test_http_embedder_rejects_length_mismatch(monkeypatch) -> None:
    payload = json.dumps({"data": [{"index": 0, "embedding": [1.0]}]}).encode("utf-8")
    monkeypatch.setattr(
        "cmsagent.discovery.embeddings.urllib.request.urlopen",
        _fake_urlopen_factory([], payload),
    )

    with pytest.raises(ValueError):
        HttpEmbedder(base_url="http://example.com").embed(["a", "b"])
