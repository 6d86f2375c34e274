"""
Storage Layer for NoteVault

SQLite-based note store with FTS5 full-text search and float32 vector blobs.

Features:
- Chunk rows keyed by (path, chunk_id), anchor row at chunk_id 0
- Full-text search with porter stemming
- Embedding metadata, pins and context usage tables
- Read-only handles for search and federation

Usage:
    from database import NoteRepository

    repo = NoteRepository("vault.db")
    repo.insert_note(chunk)
    hits = repo.fts_search('"jwt"', limit=10)
"""

from .models import NoteChunk, EmbeddingMeta, SearchFilter, UsageRecord
from .repository import NoteRepository

__all__ = [
    'NoteChunk',
    'EmbeddingMeta',
    'SearchFilter',
    'UsageRecord',
    'NoteRepository',
]
