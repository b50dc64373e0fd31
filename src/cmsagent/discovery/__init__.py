"""Lexical and semantic tool discovery."""

from .embeddings import (
    Embedder,
    HashEmbedder,
    HttpEmbedder,
    build_embedder,
    cosine_similarity,
)
from .index import SearchOutcome, ToolDiscoveryIndex, ToolSearchResult, blend_results
from .lexical import BM25Index, calculate_confidence, tokenize

__all__ = [
    "BM25Index",
    "Embedder",
    "HashEmbedder",
    "HttpEmbedder",
    "SearchOutcome",
    "ToolDiscoveryIndex",
    "ToolSearchResult",
    "blend_results",
    "build_embedder",
    "calculate_confidence",
    "cosine_similarity",
    "tokenize",
]
