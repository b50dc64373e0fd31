from __future__ import annotations

import hashlib
import json
import math
import os
import urllib.request
from typing import Protocol

from cmsagent.config import _env_float
from cmsagent.discovery.lexical import tokenize


class Embedder(Protocol):
    def embed(self, texts: list[str]) -> list[list[float]]:
        ...


class HashEmbedder:
    """Feature-hashed bag of words: texts sharing terms land near each other."""

    def __init__(self, dim: int = 256) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> list[float]:
        values = [0.0] * self.dim
        for token in tokenize(text):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if digest[4] & 1 else -1.0
            values[bucket] += sign
        return _normalize(values)


class HttpEmbedder:
    """Client for an OpenAI-compatible /v1/embeddings endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = base_url or os.getenv(
            "CMSAGENT_EMBED_BASE_URL", "https://openrouter.ai/api"
        )
        self.model = model or os.getenv("CMSAGENT_EMBED_MODEL", "text-embedding-3-small")
        self.api_key = api_key or os.getenv("CMSAGENT_EMBED_API_KEY")
        self.timeout_s = timeout_s or _env_float("CMSAGENT_EMBED_TIMEOUT_S", 30.0)

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        url = f"{self.base_url.rstrip('/')}/v1/embeddings"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        data = json.dumps({"model": self.model, "input": texts}).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(request, timeout=self.timeout_s) as response:
            body = json.loads(response.read().decode("utf-8"))
        items = body.get("data") if isinstance(body, dict) else None
        if not isinstance(items, list) or len(items) != len(texts):
            raise ValueError("embedding response field 'data' must match the input length")
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [[float(value) for value in item["embedding"]] for item in ordered]


def build_embedder(name: str) -> Embedder:
    key = name.lower()
    if key == "hash":
        return HashEmbedder()
    if key == "http":
        return HttpEmbedder()
    raise ValueError(f"Unknown embedder '{name}'. Available embedders: hash, http")


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        return 0.0
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    return dot / (left_norm * right_norm)


def _normalize(values: list[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in values))
    if norm == 0:
        return [0.0 for _ in values]
    return [value / norm for value in values]
