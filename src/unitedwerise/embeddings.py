"""Text embeddings and vector helpers.

Two providers:

- ``azure`` / ``openai``: remote embedding deployments over HTTP.
- ``hash``: a deterministic hashed bag-of-words projection. Texts that share
  vocabulary land close together, which is enough for development databases
  and tests that need clustering to behave sensibly without network access.

Vectors are plain ``list[float]`` at the boundaries (they are stored as JSON
in the posts table); numpy is used for the arithmetic.
"""

from __future__ import annotations

import hashlib
import os
import re
import time
from collections import OrderedDict
from typing import List, Optional, Sequence

import httpx
import numpy as np

from .config import EmbeddingsConfig
from .logger import get_logger

log = get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9']+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def centroid(vectors: Sequence[Sequence[float]]) -> List[float]:
    """Element-wise mean of equally sized vectors."""
    usable = [v for v in vectors if v]
    if not usable:
        return []
    dim = len(usable[0])
    usable = [v for v in usable if len(v) == dim]
    return np.mean(np.asarray(usable, dtype=np.float64), axis=0).tolist()


def hash_embedding(text: str, dimension: int = 256) -> List[float]:
    vec = np.zeros(dimension, dtype=np.float64)
    for token in _TOKEN_RE.findall((text or "").lower()):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        idx = int.from_bytes(digest[:4], "little") % dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        vec[idx] += sign
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec.tolist()


class EmbeddingClient:
    def __init__(self, config: Optional[EmbeddingsConfig] = None, timeout: float = 20.0) -> None:
        self.config = config or EmbeddingsConfig()
        self.provider = (self.config.provider or "hash").lower().strip()
        self.timeout = timeout
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        if self.provider not in {"hash", "azure", "openai"}:
            log.warning("Unknown embedding provider '%s'; using hash embeddings", self.provider)
            self.provider = "hash"

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def embed(self, text: str) -> List[float]:
        key = self._cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        if self.provider == "hash":
            vector = hash_embedding(text, self.config.dimension)
        else:
            vector = self._embed_remote(text)

        self._cache[key] = vector
        if len(self._cache) > self.config.max_cache_size:
            self._cache.popitem(last=False)
        return vector

    def _request(self) -> tuple[str, dict[str, str], dict[str, object]]:
        if self.provider == "azure":
            endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
            api_key = os.getenv("AZURE_OPENAI_API_KEY")
            deployment = self.config.model or os.getenv("AZURE_OPENAI_EMBEDDING_DEPLOYMENT") or "text-embedding-ada-002"
            if not endpoint or not api_key:
                raise RuntimeError("AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY must be set")
            url = f"{endpoint.rstrip('/')}/openai/deployments/{deployment}/embeddings?api-version=2024-02-01"
            return url, {"api-key": api_key, "Content-Type": "application/json"}, {}
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY not set")
        base_url = os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1"
        model = self.config.model or "text-embedding-3-small"
        return (
            f"{base_url.rstrip('/')}/embeddings",
            {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            {"model": model},
        )

    def _embed_remote(self, text: str) -> List[float]:
        url, headers, extra = self._request()
        body = {"input": text[:8000], **extra}
        max_attempts = 3
        backoff = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(url, headers=headers, json=body)
                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    if attempt < max_attempts:
                        time.sleep(backoff)
                        backoff *= 2
                        continue
                resp.raise_for_status()
                data = resp.json()
                return [float(x) for x in data["data"][0]["embedding"]]
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                log.error("Embedding request attempt %d failed: %s", attempt, e)
                if attempt < max_attempts:
                    time.sleep(backoff)
                    backoff *= 2
                    continue
                raise
        raise RuntimeError("Embedding request failed")
