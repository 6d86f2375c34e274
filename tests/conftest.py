"""
Shared fixtures for NoteVault tests.

Provides in-memory embedding providers and builders for small vaults so
search tests never touch the network.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.embedding_provider import EmbeddingProvider
from core.errors import ProviderUnavailableError
from database.models import NoteChunk, EmbeddingMeta
from database.repository import NoteRepository

DAY = 86400.0

# Fixed clock so recency is reproducible
NOW = 1_760_000_000.0

DIMS = 4


class FakeProvider(EmbeddingProvider):
    """Provider that answers from a lookup table of query vectors."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        default: Optional[List[float]] = None,
        name: str = 'fake',
        model: str = 'fake-embed',
        dims: int = DIMS
    ):
        self._name = name
        self._model = model
        self._dims = dims
        self.vectors = vectors or {}
        self.default = default or [1.0] + [0.0] * (dims - 1)
        self.calls = []
        super().__init__({})

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dims

    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        self.calls.append((text, purpose))
        return list(self.vectors.get(text, self.default))


class UnavailableProvider(FakeProvider):
    """Provider whose backend is always unreachable."""

    def get_embedding(self, text: str, purpose: str = "document") -> List[float]:
        self.calls.append((text, purpose))
        raise ProviderUnavailableError("connection refused", provider=self.name)


def make_note(path: str, text: str = '', embedding: Optional[List[float]] = None, **fields) -> NoteChunk:
    """Build an anchor chunk with sensible defaults."""
    fields.setdefault('title', Path(path).stem.replace('-', ' ').title())
    fields.setdefault('modified', NOW)
    fields.setdefault('confidence', 0.5)
    return NoteChunk(path=path, text=text or f"Notes about {path}", embedding=embedding, **fields)


def build_vault(db_path, notes: List[NoteChunk], meta: Optional[EmbeddingMeta] = None) -> NoteRepository:
    """Create a vault database holding notes; records meta when given."""
    repo = NoteRepository(db_path)
    repo.bulk_insert(notes)
    if meta is not None:
        repo.set_embedding_meta(meta)
    return repo


@pytest.fixture
def fake_meta():
    """Embedding metadata matching FakeProvider defaults."""
    return EmbeddingMeta(provider='fake', model='fake-embed', dimensions=DIMS)


@pytest.fixture
def provider():
    """Fake provider returning the first basis vector by default."""
    return FakeProvider()


@pytest.fixture
def unavailable_provider():
    """Provider that always fails."""
    return UnavailableProvider()


@pytest.fixture
def repo(tmp_path):
    """Empty writable vault."""
    return NoteRepository(tmp_path / 'vault.db')


@pytest.fixture
def fixed_clock():
    """Clock pinned to NOW."""
    return lambda: NOW


@pytest.fixture
def vector_vault(tmp_path, fake_meta):
    """Vault with three embedded notes at increasing distance from [1, 0, 0, 0]."""
    notes = [
        make_note('auth.md', 'JWT refresh tokens and session auth', [1.0, 0.0, 0.0, 0.0], domain='eng'),
        make_note('deploy.md', 'Deploying with blue-green releases', [0.0, 1.0, 0.0, 0.0], domain='ops'),
        make_note('cooking.md', 'Sourdough starter schedule', [0.0, 0.0, 3.0, 0.0], domain='home'),
    ]
    return build_vault(tmp_path / 'vault.db', notes, fake_meta)

