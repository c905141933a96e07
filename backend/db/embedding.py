"""
Embedding adapters and vector helpers.

Vectors are stored as raw little-endian float32 arrays with no header, so
the dimensionality of a blob is only known from the embedder that wrote it.
"""

import hashlib
import logging
import math
import re
import struct
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from config import env_float, env_int, first_env
from memory.errors import InvalidEncodingError, TransportError

_DISABLED_BACKENDS = {"", "none", "off", "disabled", "false", "0"}


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


def encode_embedding(vector: Optional[Sequence[float]]) -> Optional[bytes]:
    """Pack a vector as consecutive 4-byte little-endian float32 values."""
    if not vector:
        return None
    return struct.pack(f"<{len(vector)}f", *vector)


def decode_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    if len(blob) % 4 != 0:
        raise InvalidEncodingError(
            f"invalid embedding blob length: {len(blob)} is not a multiple of 4"
        )
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        fx = float(x)
        fy = float(y)
        dot += fx * fy
        norm_a += fx * fx
        norm_b += fy * fy
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class HashEmbedder:
    """Deterministic offline embedding built from hashed tokens."""

    def __init__(self, dim: int = 64) -> None:
        self.dim = max(16, int(dim))

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dim

        normalized = re.sub(r"\s+", " ", (text or "").strip().lower())
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self.dim
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * self.dim
        return [v / norm for v in vector]


class RemoteEmbedder:
    """
    Embedding client for OpenAI-compatible and Ollama endpoints.

    Backends:
    - "openai": POST {api_base}/embeddings {"model", "input"}
    - "ollama": POST {api_base}/api/embed {"model", "input"}
    """

    def __init__(
        self,
        backend: str,
        model: str,
        api_base: str,
        api_key: str = "",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        backend_value = (backend or "").strip().lower()
        if backend_value not in {"openai", "ollama"}:
            raise ValueError(f"unsupported embedding backend: {backend!r}")
        if not model:
            raise ValueError("embedding model name is required")
        if not api_base:
            raise ValueError("embedding api base is required")
        self.backend = backend_value
        self.model = model
        self.api_base = self._normalize_api_base(api_base)
        self._api_key = api_key
        self._timeout_sec = max(1.0, float(timeout_sec))
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _normalize_api_base(base: str) -> str:
        normalized = (base or "").strip().rstrip("/")
        lowered = normalized.lower()
        for suffix in ("/embeddings", "/api/embed"):
            if lowered.endswith(suffix):
                return normalized[: -len(suffix)]
        return normalized

    @staticmethod
    def _extract_embedding(payload: Any) -> Optional[List[float]]:
        candidates: List[Any] = []
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, list) and data:
                first_item = data[0]
                if isinstance(first_item, dict):
                    candidates.append(first_item.get("embedding"))
                elif isinstance(first_item, list):
                    candidates.append(first_item)
            embeddings = payload.get("embeddings")
            if isinstance(embeddings, list) and embeddings:
                candidates.append(embeddings[0])
            candidates.append(payload.get("embedding"))

        for candidate in candidates:
            if not isinstance(candidate, list) or not candidate:
                continue
            try:
                return [float(v) for v in candidate]
            except (TypeError, ValueError):
                continue
        return None

    async def embed(self, text: str) -> List[float]:
        endpoint = "/embeddings" if self.backend == "openai" else "/api/embed"
        url = f"{self.api_base}{endpoint}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_sec), transport=self._transport
            ) as client:
                response = await client.post(
                    url, json={"model": self.model, "input": text}, headers=headers
                )
        except httpx.HTTPError as exc:
            raise TransportError(f"embedding request failed: {exc}") from exc

        if response.status_code >= 400:
            raise TransportError(
                f"embedding request failed with HTTP {response.status_code}",
                status_code=response.status_code,
                permanent=response.status_code < 500 and response.status_code != 429,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError("embedding response is not JSON") from exc

        embedding = self._extract_embedding(payload)
        if embedding is None:
            raise TransportError("embedding response has no vector")
        self._logger.debug(
            "embedded %s chars via %s model=%s dim=%s",
            len(text or ""),
            self.backend,
            self.model,
            len(embedding),
        )
        return embedding


def build_embedder_from_env(logger: Optional[logging.Logger] = None) -> Optional[Embedder]:
    """Build the configured embedder, or None when embeddings are disabled."""
    backend = first_env(["MEMORY_EMBEDDING_BACKEND"], default="none").lower()
    if backend in _DISABLED_BACKENDS:
        return None
    if backend in {"hash", "local"}:
        return HashEmbedder(env_int("MEMORY_EMBEDDING_DIM", 64, minimum=16))

    timeout_sec = env_float("MEMORY_REMOTE_TIMEOUT_SEC", 30.0, minimum=1.0)
    if backend == "ollama":
        return RemoteEmbedder(
            backend="ollama",
            model=first_env(["MEMORY_EMBEDDING_MODEL"], default="mxbai-embed-large"),
            api_base=first_env(
                ["MEMORY_EMBEDDING_API_BASE", "OLLAMA_HOST"],
                default="http://localhost:11434",
            ),
            timeout_sec=timeout_sec,
            logger=logger,
        )
    if backend == "openai":
        return RemoteEmbedder(
            backend="openai",
            model=first_env(["MEMORY_EMBEDDING_MODEL"], default="text-embedding-3-small"),
            api_base=first_env(
                ["MEMORY_EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"],
                default="https://api.openai.com/v1",
            ),
            api_key=first_env(["MEMORY_EMBEDDING_API_KEY", "OPENAI_API_KEY"]),
            timeout_sec=timeout_sec,
            logger=logger,
        )
    raise ValueError(f"unsupported MEMORY_EMBEDDING_BACKEND: {backend!r}")
