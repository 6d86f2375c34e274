"""
Provider-Agnostic Embedding Layer for NoteVault

Provides a single interface over the embedding backends a vault can be
indexed with:
- Ollama (local server, default)
- OpenAI and OpenAI-compatible servers (openai SDK)
- Local sentence-transformers models

Every network call is bounded by a short timeout. Connection failures,
timeouts and malformed payloads surface as ProviderUnavailableError so the
search engine can fall back to its lexical tiers.

Usage:
    from core.embedding_provider import create_embedding_provider

    provider = create_embedding_provider({"provider": "ollama"})
    vector = provider.get_query_embedding("jwt refresh flow")
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
import logging
import time

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception
)

from .errors import ProviderUnavailableError, ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Constants
# =============================================================================

class ProviderType(Enum):
    """Supported embedding providers."""
    OLLAMA = "ollama"
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"
    LOCAL = "local"
    NONE = "none"


OLLAMA_DEFAULT_DIMS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "snowflake-arctic-embed": 1024,
    "snowflake-arctic-embed2": 768,
    "embeddinggemma": 768,
    "bge-m3": 1024,
}

OPENAI_DEFAULT_DIMS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

DEFAULT_TIMEOUT = 2.0


@dataclass
class ProviderHealth:
    """Health status of a provider."""
    provider: str
    is_available: bool
    last_check: datetime
    last_error: Optional[str] = None
    success_rate: float = 1.0
    avg_latency_ms: float = 0.0


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderUnavailableError) and error.retryable


def validate_embedding(vector: List[float], expected_dims: int, provider: str) -> List[float]:
    """
    Reject vectors of the wrong size or that are entirely zero.

    Raises:
        ProviderUnavailableError: If the vector is unusable
    """
    if not vector:
        raise ProviderUnavailableError(
            "Provider returned an empty embedding", provider=provider, retryable=False
        )
    if expected_dims and len(vector) != expected_dims:
        raise ProviderUnavailableError(
            f"Embedding dimension mismatch: expected {expected_dims}, got {len(vector)}",
            provider=provider,
            retryable=False
        )
    if not any(vector):
        raise ProviderUnavailableError(
            "Embedding is all zeros (provider returned invalid vector)",
            provider=provider,
            retryable=False
        )
    return [float(v) for v in vector]


# =============================================================================
# Abstract Provider
# =============================================================================

class EmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    Implementations convert text to fixed-dimension vectors and identify
    themselves by (name, model, dimensions) so stored vectors can be checked
    against the query-time configuration.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize provider with configuration.

        Args:
            config: Provider-specific configuration dictionary
        """
        self.config = config
        self._timeout = float(config.get("timeout", DEFAULT_TIMEOUT))
        self._health = ProviderHealth(
            provider=self.name,
            is_available=False,
            last_check=datetime.now()
        )
        self._call_count = 0
        self._error_count = 0
        self._total_latency = 0.0

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name recorded in the vault's embedding metadata."""
        pass

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier."""
        pass

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector dimensions (0 when the provider decides at runtime)."""
        pass

    @abstractmethod
    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        """
        Embed text for a given purpose ("query" or "document").

        Raises:
            ProviderUnavailableError: If the backend cannot produce a vector
        """
        pass

    def get_query_embedding(self, text: str) -> List[float]:
        return self.get_embedding(text, purpose="query")

    def get_document_embedding(self, text: str) -> List[float]:
        return self.get_embedding(text, purpose="document")

    def _check_availability(self) -> bool:
        self.get_query_embedding("ping")
        return True

    def refresh_health(self) -> ProviderHealth:
        """Refresh and return health status."""
        try:
            self._health.is_available = self._check_availability()
            self._health.last_error = None
        except ProviderUnavailableError as e:
            self._health.is_available = False
            self._health.last_error = str(e)

        self._health.last_check = datetime.now()

        if self._call_count > 0:
            self._health.success_rate = 1 - (self._error_count / self._call_count)
            self._health.avg_latency_ms = self._total_latency / self._call_count

        return self._health

    def _record_call(self, latency_ms: float, success: bool):
        """Record call metrics."""
        self._call_count += 1
        self._total_latency += latency_ms
        if not success:
            self._error_count += 1

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict] = None) -> Dict:
        """POST a JSON payload, mapping transport failures to ProviderUnavailableError."""
        start_time = time.time()
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.HTTPError as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            status = e.response.status_code if e.response is not None else 0
            raise ProviderUnavailableError(
                f"{self.name} returned HTTP {status}: {e}",
                provider=self.name,
                retryable=status >= 500 or status == 429,
                original_error=e,
                status_code=status
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                f"{self.name} not reachable at {url}: {e}",
                provider=self.name,
                retryable=True,
                original_error=e
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                f"{self.name} request failed: {e}",
                provider=self.name,
                retryable=False,
                original_error=e
            )

        self._record_call((time.time() - start_time) * 1000, success=True)
        return data


# =============================================================================
# Ollama Provider
# =============================================================================

class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Ollama local embedding provider.

    Uses the /api/embeddings endpoint. nomic-style models receive
    search_query / search_document prefixes.
    """

    DEFAULT_MODEL = "nomic-embed-text"

    def __init__(self, config: Dict[str, Any]):
        self._model = config.get("model") or self.DEFAULT_MODEL
        self._base_url = (config.get("base_url") or "http://localhost:11434").rstrip("/")
        self._dims = int(config.get("dimensions") or OLLAMA_DEFAULT_DIMS.get(self._model, 768))
        super().__init__(config)

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dims

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        reraise=True,
    )
    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        prefix = "search_query" if purpose == "query" else "search_document"
        data = self._post_json(
            f"{self._base_url}/api/embeddings",
            {"model": self._model, "prompt": f"{prefix}: {text}"}
        )
        return validate_embedding(data.get("embedding") or [], self._dims, self.name)


# =============================================================================
# OpenAI Provider
# =============================================================================

class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI and OpenAI-compatible embedding provider.

    For "openai-compatible" servers (llama.cpp, vLLM, LM Studio) the API key
    is optional and dimensions default to whatever the server returns.
    """

    DEFAULT_MODEL = "text-embedding-3-small"

    def __init__(self, config: Dict[str, Any]):
        self._compatible = config.get("provider") == ProviderType.OPENAI_COMPATIBLE.value
        self._model = config.get("model") or self.DEFAULT_MODEL
        self._api_key = config.get("api_key", "")
        self._base_url = (config.get("base_url") or "").rstrip("/")
        self._client = None

        if not self._compatible and not self._api_key:
            raise ConfigurationError("OpenAI embedding provider requires an api_key")

        dims = config.get("dimensions") or 0
        if not dims and not self._compatible:
            dims = OPENAI_DEFAULT_DIMS.get(self._model, 0)
        self._dims = int(dims)
        super().__init__(config)

    @property
    def name(self) -> str:
        return ProviderType.OPENAI_COMPATIBLE.value if self._compatible else ProviderType.OPENAI.value

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dims

    def _get_client(self):
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            kwargs = {
                # Local servers accept any key but the client insists on one
                "api_key": self._api_key or "not-needed",
                "timeout": self._timeout,
                "max_retries": 0,
            }
            if self._base_url:
                base_url = self._base_url
                if not base_url.endswith("/v1"):
                    base_url += "/v1"
                kwargs["base_url"] = base_url
            self._client = OpenAI(**kwargs)
        return self._client

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        reraise=True,
    )
    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        import openai

        kwargs: Dict[str, Any] = {"model": self._model, "input": text}
        if self._dims and self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dims

        start_time = time.time()
        try:
            response = self._get_client().embeddings.create(**kwargs)
            vector = response.data[0].embedding
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                f"{self.name} embedding request failed: {e}",
                provider=self.name,
                retryable=True,
                original_error=e
            )
        except openai.APIError as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                f"{self.name} embedding request rejected: {e}",
                provider=self.name,
                retryable=False,
                original_error=e
            )
        except (IndexError, AttributeError, TypeError):
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                "Malformed embedding response", provider=self.name, retryable=False
            )

        self._record_call((time.time() - start_time) * 1000, success=True)
        return validate_embedding(vector, self._dims, self.name)


# =============================================================================
# Local Provider
# =============================================================================

class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Runs a sentence-transformers model in-process. No network, no cost.
    """

    DEFAULT_MODEL = "all-MiniLM-L6-v2"

    def __init__(self, config: Dict[str, Any]):
        from search.embeddings import EmbeddingEngine

        self._engine = EmbeddingEngine(config.get("model") or self.DEFAULT_MODEL)
        super().__init__(config)

    @property
    def name(self) -> str:
        return ProviderType.LOCAL.value

    @property
    def model(self) -> str:
        return self._engine.model_name

    @property
    def dimensions(self) -> int:
        return int(self.config.get("dimensions") or 0) or self._engine.dimension

    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        start_time = time.time()
        try:
            vector = self._engine.embed(text, purpose=purpose)
        except (ImportError, OSError, RuntimeError) as e:
            self._record_call((time.time() - start_time) * 1000, success=False)
            raise ProviderUnavailableError(
                f"Local model {self.model} unavailable: {e}",
                provider=self.name,
                retryable=False,
                original_error=e
            )
        self._record_call((time.time() - start_time) * 1000, success=True)
        return validate_embedding(vector.tolist(), 0, self.name)


# =============================================================================
# Factory
# =============================================================================

def create_embedding_provider(config: Dict[str, Any]) -> Optional[EmbeddingProvider]:
    """
    Create a provider instance from configuration.

    Expected config structure:
    {
        "provider": "ollama",          # ollama | openai | openai-compatible | local | none
        "model": "nomic-embed-text",
        "base_url": "http://localhost:11434",
        "api_key": "...",
        "dimensions": 768,
        "timeout": 2.0
    }

    Returns:
        Configured provider, or None for keyword-only ("none") mode
    """
    name = config.get("provider") or ProviderType.OLLAMA.value

    try:
        provider_type = ProviderType(name)
    except ValueError:
        raise ConfigurationError(
            f"Unknown embedding provider: {name!r} "
            f"(supported: {', '.join(p.value for p in ProviderType)})"
        )

    if provider_type == ProviderType.NONE:
        logger.info("Embedding provider is 'none'; running in keyword-only mode")
        return None

    providers = {
        ProviderType.OLLAMA: OllamaEmbeddingProvider,
        ProviderType.OPENAI: OpenAIEmbeddingProvider,
        ProviderType.OPENAI_COMPATIBLE: OpenAIEmbeddingProvider,
        ProviderType.LOCAL: LocalEmbeddingProvider,
    }

    return providers[provider_type](dict(config, provider=provider_type.value))
