"""
In-Process Sentence Embeddings

Backs the "local" embedding provider: a sentence-transformers model loaded
once per process and shared by every vault that asks for the same model name.

Usage:
    from search.embeddings import EmbeddingEngine

    engine = EmbeddingEngine('all-MiniLM-L6-v2')
    vector = engine.embed('jwt refresh flow', purpose='query')
"""

import logging
import threading
from typing import Dict

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_MODEL = 'all-MiniLM-L6-v2'

# Models trained with asymmetric instructions
INSTRUCTION_PREFIXES = {
    'intfloat/e5-small-v2': ('query: ', 'passage: '),
    'intfloat/e5-base-v2': ('query: ', 'passage: '),
    'nomic-ai/nomic-embed-text-v1.5': ('search_query: ', 'search_document: '),
}

_models: Dict[str, object] = {}
_models_lock = threading.Lock()


def load_model(model_name: str):
    """Load a sentence-transformers model, reusing one already in memory."""
    with _models_lock:
        model = _models.get(model_name)
        if model is not None:
            return model

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers not installed. "
                "Install with: pip install 'notevault[local]'"
            )

        logger.info(f"Loading local embedding model: {model_name}")
        model = SentenceTransformer(model_name)
        _models[model_name] = model
        return model


class EmbeddingEngine:
    """Encodes note text and queries with a local model."""

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL):
        self.model_name = model_name
        self._model = None

    @property
    def model(self):
        if self._model is None:
            self._model = load_model(self.model_name)
        return self._model

    @property
    def dimension(self) -> int:
        return self.model.get_sentence_embedding_dimension()

    def embed(self, text: str, purpose: str = 'document') -> np.ndarray:
        """
        Encode one text as a unit-length float32 vector.

        Args:
            text: Query or note text
            purpose: 'query' or 'document'; selects the instruction prefix
                     for models trained with one
        """
        prefixes = INSTRUCTION_PREFIXES.get(self.model_name)
        if prefixes:
            text = (prefixes[0] if purpose == 'query' else prefixes[1]) + text

        vector = self.model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return np.asarray(vector, dtype=np.float32)
