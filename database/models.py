"""
Data Models for the Vault Database

NoteChunk mirrors one row of vault_notes. Chunk 0 is the anchor row whose
title, confidence and pinned flag stand for the whole note.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence, Tuple

import numpy as np

PRIVATE_PREFIX = '_private/'

VECTOR_DTYPE = np.dtype('<f4')


def serialize_vector(vector) -> bytes:
    """Pack a vector as little-endian float32 bytes."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def deserialize_vector(blob: bytes) -> np.ndarray:
    """Unpack float32 bytes written by serialize_vector."""
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def is_private_path(path: str) -> bool:
    """Notes under _PRIVATE/ are never surfaced by search."""
    return path.replace('\\', '/').lower().startswith(PRIVATE_PREFIX)


def _parse_tags(tags_str: Optional[str]) -> List[str]:
    if not tags_str:
        return []
    try:
        tags = json.loads(tags_str)
    except (TypeError, ValueError):
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


@dataclass
class NoteChunk:
    """A chunk-level note record."""
    path: str
    title: str = ''
    chunk_id: int = 0
    chunk_heading: str = '(full)'
    text: str = ''
    tags: List[str] = field(default_factory=list)
    content_type: str = 'note'
    domain: str = ''
    workstream: str = ''
    agent: str = ''
    modified: float = 0.0
    content_hash: str = ''
    confidence: float = 0.5
    access_count: int = 0
    review_by: str = ''
    pinned: bool = False
    embedding: Optional[List[float]] = None
    id: Optional[int] = None

    @property
    def is_anchor(self) -> bool:
        return self.chunk_id == 0

    @property
    def is_private(self) -> bool:
        return is_private_path(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'path': self.path,
            'title': self.title,
            'chunk_id': self.chunk_id,
            'chunk_heading': self.chunk_heading,
            'text': self.text,
            'tags': self.tags,
            'content_type': self.content_type,
            'domain': self.domain,
            'workstream': self.workstream,
            'agent': self.agent,
            'modified': self.modified,
            'content_hash': self.content_hash,
            'confidence': self.confidence,
            'access_count': self.access_count,
            'review_by': self.review_by,
            'pinned': self.pinned,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'NoteChunk':
        keys = row.keys()
        return cls(
            id=row['id'],
            path=row['path'],
            title=row['title'] or '',
            chunk_id=row['chunk_id'],
            chunk_heading=row['chunk_heading'] or '',
            text=row['text'] or '',
            tags=_parse_tags(row['tags']),
            content_type=row['content_type'] or 'note',
            domain=row['domain'] or '',
            workstream=row['workstream'] or '',
            agent=row['agent'] or '',
            modified=row['modified'] or 0.0,
            content_hash=row['content_hash'] or '',
            confidence=row['confidence'] if row['confidence'] is not None else 0.5,
            access_count=row['access_count'] or 0,
            review_by=row['review_by'] or '',
            pinned=bool(row['pinned']) if 'pinned' in keys else False,
        )


@dataclass(frozen=True)
class EmbeddingMeta:
    """The (provider, model, dimensions) triple a vault's vectors were built with."""
    provider: str
    model: str
    dimensions: int

    def describe(self) -> str:
        return f"{self.provider}/{self.model} ({self.dimensions} dims)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'model': self.model,
            'dimensions': self.dimensions,
        }


@dataclass(frozen=True)
class SearchFilter:
    """
    Metadata restrictions shared by every search tier.

    Domain and workstream match the whole value, ignoring ASCII case. Tags
    match when the note carries any of the listed tags, also ignoring case.
    Filters are applied in SQL so they take effect before any truncation.
    """
    domain: Optional[str] = None
    workstream: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        domain: Optional[str] = None,
        workstream: Optional[str] = None,
        tags: Optional[Sequence[str]] = None
    ) -> Optional['SearchFilter']:
        """A filter from optional arguments, or None when nothing restricts."""
        tags = tuple(t.strip() for t in (tags or ()) if t and t.strip())
        if not domain and not workstream and not tags:
            return None
        return cls(domain=domain or None, workstream=workstream or None, tags=tags)

    def sql(self) -> Tuple[str, List[Any]]:
        """WHERE-clause fragment over the vault_notes alias `n`, plus its params."""
        clause = ''
        params: List[Any] = []
        if self.domain:
            clause += ' AND lower(n.domain) = lower(?)'
            params.append(self.domain)
        if self.workstream:
            clause += ' AND lower(n.workstream) = lower(?)'
            params.append(self.workstream)
        if self.tags:
            placeholders = ', '.join('lower(?)' for _ in self.tags)
            clause += (
                ' AND EXISTS (SELECT 1 FROM json_each(n.tags) t'
                f' WHERE lower(t.value) IN ({placeholders}))'
            )
            params.extend(self.tags)
        return clause, params

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'workstream': self.workstream,
            'tags': list(self.tags),
        }


@dataclass
class UsageRecord:
    """One context injection: which notes were handed to the assistant."""
    session_id: str
    timestamp: str
    source: str
    injected_paths: List[str] = field(default_factory=list)
    estimated_tokens: int = 0
    was_referenced: bool = False
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'UsageRecord':
        return cls(
            id=row['id'],
            session_id=row['session_id'],
            timestamp=row['timestamp'],
            source=row['source'],
            injected_paths=_parse_tags(row['injected_paths']),
            estimated_tokens=row['estimated_tokens'] or 0,
            was_referenced=bool(row['was_referenced']),
        )
