from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List

from cmsagent.tools.registry import ToolMetadata

K1 = 1.2
B = 0.75
FIELD_WEIGHTS = {"name": 3.0, "phrases": 2.0, "description": 1.0}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_SUFFIXES = ("ings", "ing", "ies", "ed", "es", "s")


def normalize_token(token: str) -> str:
    """Strip a common English suffix so 'pages', 'paging' and 'page' meet."""
    for suffix in _SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= 3:
            stem = token[: -len(suffix)]
            if suffix == "ies":
                return stem + "y"
            return stem
    if token.endswith("e") and len(token) > 3:
        return token[:-1]
    return token


def tokenize(text: str) -> list[str]:
    spaced = _CAMEL_RE.sub(" ", text.replace("_", " ").replace(".", " "))
    return [
        normalize_token(token)
        for token in _SPLIT_RE.split(spaced.lower())
        if len(token) >= 2
    ]


@dataclass(slots=True)
class _Document:
    name: str
    fields: dict[str, Counter] = field(default_factory=dict)
    lengths: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class LexicalHit:
    name: str
    score: float


@dataclass(slots=True)
class LexicalResult:
    hits: List[LexicalHit] = field(default_factory=list)
    confidence: float = 0.0


def calculate_confidence(scores: list[float]) -> float:
    if not scores:
        return 0.0
    top = scores[0]
    if top <= 0:
        return 0.0
    score_factor = min(top / 10, 1.0)
    gap_factor = 1.0
    if len(scores) >= 2:
        gap_factor = min((top - scores[1]) / top + 0.5, 1.0)
    count_factor = max(1 - len(scores) / 20, 0.5)
    confidence = score_factor * 0.5 + gap_factor * 0.3 + count_factor * 0.2
    return min(max(confidence, 0.0), 1.0)


class BM25Index:
    """Field-weighted BM25 over tool names, phrases and descriptions."""

    def __init__(self, tools: Iterable[ToolMetadata] = ()) -> None:
        self._docs: list[_Document] = []
        self._df: Counter = Counter()
        self._avg_len: dict[str, float] = {}
        for tool in tools:
            self.add(tool)
        self.consolidate()

    def __len__(self) -> int:
        return len(self._docs)

    def add(self, tool: ToolMetadata) -> None:
        texts = {
            "name": tool.name,
            "phrases": " ".join(tool.phrases),
            "description": tool.description,
        }
        doc = _Document(name=tool.name)
        seen: set[str] = set()
        for field_name, text in texts.items():
            tokens = tokenize(text)
            doc.fields[field_name] = Counter(tokens)
            doc.lengths[field_name] = len(tokens)
            seen.update(tokens)
        self._df.update(seen)
        self._docs.append(doc)

    def consolidate(self) -> None:
        count = max(len(self._docs), 1)
        self._avg_len = {
            field_name: (sum(doc.lengths.get(field_name, 0) for doc in self._docs) / count) or 1.0
            for field_name in FIELD_WEIGHTS
        }

    def _idf(self, term: str) -> float:
        total = len(self._docs)
        df = self._df.get(term, 0)
        return math.log(1 + (total - df + 0.5) / (df + 0.5))

    def score(self, doc: _Document, terms: list[str]) -> float:
        total = 0.0
        for term in terms:
            idf = self._idf(term)
            for field_name, weight in FIELD_WEIGHTS.items():
                tf = doc.fields.get(field_name, Counter()).get(term, 0)
                if not tf:
                    continue
                norm = 1 - B + B * doc.lengths[field_name] / self._avg_len[field_name]
                total += weight * idf * (tf * (K1 + 1)) / (tf + K1 * norm)
        return total

    def search(self, query: str, limit: int = 5) -> LexicalResult:
        terms = tokenize(query)
        if not terms or not self._docs:
            return LexicalResult()
        scored = [(doc.name, self.score(doc, terms)) for doc in self._docs]
        ranked = sorted(
            (item for item in scored if item[1] > 0), key=lambda item: item[1], reverse=True
        )[: limit * 2]
        if not ranked:
            return LexicalResult()
        confidence = calculate_confidence([score for _, score in ranked])
        top = ranked[0][1]
        hits = [LexicalHit(name=name, score=score / top) for name, score in ranked[:limit]]
        return LexicalResult(hits=hits, confidence=confidence)
