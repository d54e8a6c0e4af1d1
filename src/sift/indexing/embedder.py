"""
Embedding provider abstraction with a local ONNX implementation.

Provides:
- Abstract base class for embedding providers
- Local ONNX provider (mean pooling, L2 normalization)
- Caching wrapper keyed by content hash
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.request import urlopen

import numpy as np
import structlog

from sift.errors import ProviderInitError

if TYPE_CHECKING:
    from sift.config import Config

logger = structlog.get_logger(__name__)


MODEL_CONFIGS = {
    "all-MiniLM-L6-v2": {
        "dimension": 384,
        "onnx_url": "https://huggingface.co/sentence-transformers/all-MiniLM-L6-v2/resolve/main/onnx/model.onnx",
        "tokenizer_url": "https://huggingface.co/sentence-transformers/all-MiniLM-L6-v2/resolve/main/tokenizer.json",
    },
    "all-mpnet-base-v2": {
        "dimension": 768,
        "onnx_url": "https://huggingface.co/sentence-transformers/all-mpnet-base-v2/resolve/main/onnx/model.onnx",
        "tokenizer_url": "https://huggingface.co/sentence-transformers/all-mpnet-base-v2/resolve/main/tokenizer.json",
    },
}


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Normalize rows (or a single vector) to unit length."""
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms[norms == 0] = 1
    return vectors / norms


class EmbeddingProvider(ABC):
    """
    Converts text into fixed-length, L2-normalized float32 vectors.

    Similarity between two embeddings is their dot product.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier stamped into the index."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Return True once initialize() has succeeded."""

    @abstractmethod
    async def initialize(self) -> None:
        """Load models. Repeated calls after success are no-ops."""

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """
        Generate embedding for a single text.

        Args:
            text: Input text.

        Returns:
            Unit-length float32 vector of length `dimension`.
        """

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts concurrently."""
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))

    async def close(self) -> None:
        """Cleanup resources."""
        pass


class LocalONNXProvider(EmbeddingProvider):
    """
    Local ONNX embedding provider.

    Features:
    - No network required once model files are present
    - Mean pooling with attention mask
    - Inference off the event loop
    """

    def __init__(
        self,
        config: "Config",
        model_name: str | None = None,
        model_path: Path | None = None,
    ) -> None:
        self.config = config
        self._model_name = model_name or config.embedding.model_name
        self.model_path = model_path or config.embedding.model_path
        self._configured_dimension = config.embedding.dimension
        known = MODEL_CONFIGS.get(self._model_name, {}).get("dimension")
        self._dimension: int | None = known or self._configured_dimension
        self.max_tokens = config.embedding.max_tokens

        self._session: Any = None
        self._tokenizer: Any = None
        self._input_names: set[str] = set()
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            raise ProviderInitError(
                f"Dimension of {self._model_name} is unknown until the model is loaded"
            )
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_ready(self) -> bool:
        return self._initialized

    def _check_configured_dimension(self) -> None:
        configured = self._configured_dimension
        if configured is not None and self._dimension is not None and configured != self._dimension:
            raise ProviderInitError(
                f"Configured embedding dimension {configured} does not match "
                f"{self._model_name} ({self._dimension})"
            )

    async def initialize(self) -> None:
        """Initialize the ONNX model and tokenizer."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            logger.info("Initializing ONNX embedding provider", model=self._model_name)
            self._check_configured_dimension()

            model_dir = self._get_model_dir()
            model_file = model_dir / "model.onnx"
            tokenizer_file = model_dir / "tokenizer.json"

            try:
                if not model_file.exists() or not tokenizer_file.exists():
                    await self._download_model(model_dir)

                loop = asyncio.get_running_loop()
                await loop.run_in_executor(
                    None, self._load_sync, model_file, tokenizer_file
                )
            except ProviderInitError:
                raise
            except Exception as e:
                raise ProviderInitError(
                    f"Failed to load embedding model {self._model_name}: {e}"
                ) from e

            self._initialized = True
            logger.info(
                "ONNX embedding provider initialized",
                providers=self._session.get_providers(),
                dimension=self._dimension,
            )

    def _load_sync(self, model_file: Path, tokenizer_file: Path) -> None:
        import onnxruntime as ort
        from tokenizers import Tokenizer

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        sess_options.intra_op_num_threads = min(4, os.cpu_count() or 1)

        self._session = ort.InferenceSession(
            str(model_file),
            sess_options,
            providers=["CPUExecutionProvider"],
        )
        self._input_names = {i.name for i in self._session.get_inputs()}

        output_dim = self._session.get_outputs()[0].shape[-1]
        if isinstance(output_dim, int):
            if self._dimension is None:
                self._dimension = output_dim
            elif output_dim != self._dimension:
                raise ProviderInitError(
                    f"{self._model_name} outputs {output_dim} dimensions, "
                    f"expected {self._dimension}"
                )
        elif self._dimension is None:
            raise ProviderInitError(
                f"Cannot determine the output dimension of {self._model_name}; "
                f"set embedding.dimension"
            )

        self._tokenizer = Tokenizer.from_file(str(tokenizer_file))
        self._tokenizer.enable_truncation(max_length=self.max_tokens)
        self._tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")

    def _get_model_dir(self) -> Path:
        if self.model_path and self.model_path.is_dir():
            return self.model_path

        model_dir = self.config.absolute_data_dir / "models" / self._model_name
        model_dir.mkdir(parents=True, exist_ok=True)
        return model_dir

    async def _download_model(self, model_dir: Path) -> None:
        """Download model files if not present."""
        if self._model_name not in MODEL_CONFIGS:
            raise ProviderInitError(
                f"Unknown model {self._model_name} and no model files in {model_dir}"
            )

        if not self.config.network.enabled:
            raise ProviderInitError(
                f"Model files not found and network disabled. "
                f"Place model.onnx and tokenizer.json in {model_dir} or enable network access."
            )

        urls = MODEL_CONFIGS[self._model_name]
        loop = asyncio.get_running_loop()
        logger.info("Downloading model files", model=self._model_name)

        for filename, key in (("model.onnx", "onnx_url"), ("tokenizer.json", "tokenizer_url")):
            target = model_dir / filename
            if not target.exists():
                await loop.run_in_executor(None, self._download_file, urls[key], target)

        logger.info("Model files downloaded", path=str(model_dir))

    def _download_file(self, url: str, target: Path) -> None:
        partial = target.with_suffix(target.suffix + ".part")
        with urlopen(url, timeout=self.config.network.timeout_seconds) as response:
            with partial.open("wb") as f:
                shutil.copyfileobj(response, f)
        partial.replace(target)

    async def embed(self, text: str) -> np.ndarray:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not self._initialized:
            await self.initialize()

        if not texts:
            return []

        loop = asyncio.get_running_loop()
        batch_size = self.config.embedding.batch_size
        all_embeddings: list[np.ndarray] = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            all_embeddings.extend(
                await loop.run_in_executor(None, self._embed_sync, batch)
            )

        return all_embeddings

    def _embed_sync(self, texts: list[str]) -> list[np.ndarray]:
        encodings = self._tokenizer.encode_batch(texts)

        input_ids = np.array([e.ids for e in encodings], dtype=np.int64)
        attention_mask = np.array([e.attention_mask for e in encodings], dtype=np.int64)

        inputs = {"input_ids": input_ids, "attention_mask": attention_mask}
        if "token_type_ids" in self._input_names:
            inputs["token_type_ids"] = np.zeros_like(input_ids)

        last_hidden_state = self._session.run(None, inputs)[0]
        embeddings = l2_normalize(self._mean_pooling(last_hidden_state, attention_mask))

        return [embeddings[i].astype(np.float32) for i in range(len(texts))]

    def _mean_pooling(
        self,
        last_hidden_state: np.ndarray,
        attention_mask: np.ndarray,
    ) -> np.ndarray:
        mask_expanded = np.broadcast_to(
            np.expand_dims(attention_mask, -1), last_hidden_state.shape
        )
        sum_embeddings = np.sum(last_hidden_state * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        return sum_embeddings / sum_mask

    async def close(self) -> None:
        self._session = None
        self._tokenizer = None
        self._initialized = False


class CachedEmbeddingProvider(EmbeddingProvider):
    """
    Wrapper that adds caching to any embedding provider.

    Identical chunk text (license headers, boilerplate) is embedded once.
    """

    def __init__(self, provider: EmbeddingProvider, cache_size: int = 10000) -> None:
        self._provider = provider
        self._cache: OrderedDict[str, np.ndarray] = OrderedDict()
        self._cache_size = cache_size
        self._cache_hits = 0
        self._cache_misses = 0

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def is_ready(self) -> bool:
        return self._provider.is_ready

    async def initialize(self) -> None:
        await self._provider.initialize()

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()

    async def embed(self, text: str) -> np.ndarray:
        key = self._cache_key(text)

        cached = self._cache.get(key)
        if cached is not None:
            self._cache_hits += 1
            self._cache.move_to_end(key)
            return cached.copy()

        self._cache_misses += 1
        embedding = await self._provider.embed(text)

        self._cache[key] = embedding.copy()
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

        return embedding

    async def close(self) -> None:
        await self._provider.close()
        self._cache.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total = self._cache_hits + self._cache_misses
        return {
            "cache_size": len(self._cache),
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
            "hit_rate": self._cache_hits / total if total > 0 else 0,
        }


def create_provider(config: "Config") -> EmbeddingProvider:
    """
    Create an embedding provider based on configuration.

    Args:
        config: sift configuration.

    Returns:
        Configured EmbeddingProvider instance.
    """
    provider: EmbeddingProvider = LocalONNXProvider(config)

    if config.embedding.cache_size > 0:
        provider = CachedEmbeddingProvider(provider, cache_size=config.embedding.cache_size)

    return provider
