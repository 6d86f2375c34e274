"""
Tests for the Vault Note Repository

Tests schema setup, chunk writes, read-only handles, lexical queries,
embedding metadata, pins and usage records.
"""

import sqlite3
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import StoreError, NotFoundError
from database.models import (
    NoteChunk, EmbeddingMeta, SearchFilter, UsageRecord,
    serialize_vector, deserialize_vector, is_private_path,
)
from database.repository import NoteRepository, like_escape

from conftest import make_note, build_vault, DIMS


class TestModels:
    """Tests for row models and helpers."""

    def test_vector_serialization(self):
        """Test vectors pack as little-endian float32."""
        blob = serialize_vector([1.0, 2.5, -3.0])

        assert len(blob) == 12
        assert deserialize_vector(blob).tolist() == [1.0, 2.5, -3.0]

    def test_private_paths(self):
        """Test _PRIVATE detection is case-insensitive."""
        assert is_private_path('_PRIVATE/diary.md')
        assert is_private_path('_private/keys.md')
        assert not is_private_path('notes/_PRIVATE.md')

    def test_anchor_flag(self):
        """Test chunk 0 is the anchor."""
        assert NoteChunk(path='a.md').is_anchor
        assert not NoteChunk(path='a.md', chunk_id=2).is_anchor

    def test_embedding_meta_describe(self):
        """Test metadata description."""
        meta = EmbeddingMeta(provider='ollama', model='nomic-embed-text', dimensions=768)

        assert meta.describe() == 'ollama/nomic-embed-text (768 dims)'


class TestNoteWrites:
    """Tests for inserting and replacing notes."""

    def test_insert_and_get(self, repo):
        """Test a note round-trips through the store."""
        note = make_note('projects/alpha.md', 'Alpha plan', tags=['plan', 'alpha'], domain='eng')
        note_id = repo.insert_note(note)

        chunks = repo.get_note('projects/alpha.md')

        assert note_id > 0
        assert len(chunks) == 1
        assert chunks[0].tags == ['plan', 'alpha']
        assert chunks[0].domain == 'eng'

    def test_duplicate_chunk_rejected(self, repo):
        """Test (path, chunk_id) is unique."""
        repo.insert_note(make_note('a.md'))

        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_note(make_note('a.md'))

    def test_replace_note(self, repo):
        """Test reindexing a note replaces all of its chunks."""
        repo.bulk_insert([
            make_note('a.md', 'old anchor'),
            NoteChunk(path='a.md', chunk_id=1, text='old chunk'),
        ])

        repo.replace_note('a.md', [make_note('a.md', 'new anchor')])

        chunks = repo.get_note('a.md')
        assert [c.text for c in chunks] == ['new anchor']

    def test_prune_missing(self, repo):
        """Test orphaned notes are removed."""
        repo.bulk_insert([make_note('keep.md'), make_note('gone.md')])

        removed = repo.prune_missing({'keep.md'})

        assert removed == ['gone.md']
        assert repo.note_count() == 1

    def test_delete_removes_vectors(self, repo):
        """Test deleting a note also drops its embedding."""
        repo.insert_note(make_note('a.md', embedding=[1.0] * DIMS))
        assert repo.has_vectors()

        repo.delete_by_path('a.md')

        assert not repo.has_vectors()

    def test_counts(self, repo):
        """Test note and chunk counts."""
        repo.bulk_insert([
            make_note('a.md'),
            NoteChunk(path='a.md', chunk_id=1, text='more'),
            make_note('b.md'),
        ])

        assert repo.note_count() == 2
        assert repo.chunk_count() == 3

    def test_content_hashes(self, repo):
        """Test content hashes are keyed by path."""
        repo.insert_note(make_note('a.md', content_hash='abc123'))

        assert repo.content_hashes() == {'a.md': 'abc123'}


class TestReadOnly:
    """Tests for read-only handles."""

    def test_missing_database(self, tmp_path):
        """Test a missing vault is a store error, not a new empty database."""
        with pytest.raises(StoreError):
            NoteRepository(tmp_path / 'missing.db', read_only=True)

        assert not (tmp_path / 'missing.db').exists()

    def test_corrupt_database(self, tmp_path):
        """Test a garbage file is reported as a store error."""
        path = tmp_path / 'corrupt.db'
        path.write_bytes(b'this is not a sqlite database' * 100)

        with pytest.raises(StoreError):
            NoteRepository(path, read_only=True)

    def test_writes_rejected(self, tmp_path):
        """Test read-only repositories refuse writes."""
        build_vault(tmp_path / 'vault.db', [make_note('a.md')])
        reader = NoteRepository(tmp_path / 'vault.db', read_only=True)

        assert reader.note_count() == 1
        with pytest.raises(StoreError):
            reader.insert_note(make_note('b.md'))


class TestQueries:
    """Tests for lexical and metadata queries."""

    def test_fts_search(self, repo):
        """Test full-text search finds stemmed terms."""
        repo.bulk_insert([
            make_note('auth.md', 'Rotating refresh tokens'),
            make_note('food.md', 'Bread recipes'),
        ])

        rows = repo.fts_search('"token"', limit=10)

        assert [chunk.path for chunk, _ in rows] == ['auth.md']

    def test_fts_excludes_private(self, repo):
        """Test private notes never appear in full-text results."""
        repo.bulk_insert([
            make_note('_PRIVATE/secret.md', 'refresh tokens'),
            make_note('auth.md', 'refresh tokens'),
        ])

        rows = repo.fts_search('"tokens"', limit=10)

        assert [chunk.path for chunk, _ in rows] == ['auth.md']

    def test_keyword_search_ranks_by_matches(self, repo):
        """Test notes matching more terms rank first, one row per note."""
        repo.bulk_insert([
            make_note('one.md', 'deploy notes'),
            make_note('two.md', 'deploy rollback notes'),
            NoteChunk(path='two.md', chunk_id=1, text='rollback again'),
        ])

        rows = repo.keyword_search(['deploy', 'rollback'], limit=10)

        assert [(chunk.path, matches) for chunk, matches in rows] == [('two.md', 2), ('one.md', 1)]
        assert all(chunk.is_anchor for chunk, _ in rows)

    def test_keyword_search_escapes_wildcards(self, repo):
        """Test '%' in a term matches literally."""
        repo.bulk_insert([make_note('a.md', 'coverage at 100% now'), make_note('b.md', 'coverage 1000')])

        rows = repo.keyword_search(['100%'], limit=10)

        assert [chunk.path for chunk, _ in rows] == ['a.md']

    def test_like_escape(self):
        """Test LIKE metacharacters are escaped."""
        assert like_escape('a_b%c') == 'a\\_b\\%c'

    def test_domain_filter(self, repo):
        """Test domain filter matches the whole value, ignoring case."""
        repo.bulk_insert([
            make_note('a.md', 'release plan', domain='eng'),
            make_note('b.md', 'release plan', domain='engineering'),
        ])

        rows = repo.keyword_search(['release'], limit=10, filters=SearchFilter(domain='ENG'))

        assert [chunk.path for chunk, _ in rows] == ['a.md']

    def test_workstream_and_tag_filters(self, repo):
        """Test workstream equality and any-of tag matching in full-text search."""
        repo.bulk_insert([
            make_note('a.md', 'release plan', workstream='Billing', tags=['Q3', 'launch']),
            make_note('b.md', 'release plan', workstream='billing'),
            make_note('c.md', 'release plan', workstream='platform', tags=['launch']),
        ])

        by_workstream = repo.fts_search('"release"', limit=10, filters=SearchFilter(workstream='billing'))
        by_tag = repo.fts_search('"release"', limit=10, filters=SearchFilter(tags=('LAUNCH', 'other')))

        assert sorted(chunk.path for chunk, _ in by_workstream) == ['a.md', 'b.md']
        assert sorted(chunk.path for chunk, _ in by_tag) == ['a.md', 'c.md']

    def test_title_match_search(self, repo):
        """Test title-only matching ranks by matched terms and skips body text."""
        repo.bulk_insert([
            make_note('a.md', 'jwt rotation', title='Session Notes'),
            make_note('b.md', 'x', title='JWT Rotation Policy'),
            make_note('c.md', 'x', title='JWT Basics'),
            make_note('_PRIVATE/d.md', 'x', title='JWT Rotation'),
        ])

        rows = repo.title_match_search(['jwt', 'rotation'], limit=10)

        assert [(chunk.path, matches) for chunk, matches in rows] == [('b.md', 2), ('c.md', 1)]

    def test_iter_anchors(self, repo):
        """Test anchors stream newest first and honour filters."""
        repo.bulk_insert([
            make_note('old.md', modified=100.0, domain='eng'),
            make_note('new.md', modified=200.0, domain='eng'),
            make_note('other.md', modified=300.0, domain='ops'),
            NoteChunk(path='new.md', chunk_id=1, text='body'),
        ])

        batches = list(repo.iter_anchors(filters=SearchFilter(domain='eng'), batch_size=1))

        assert [[chunk.path for chunk in batch] for batch in batches] == [['new.md'], ['old.md']]

    def test_search_filter_build(self):
        """Test empty arguments yield no filter and blank tags are dropped."""
        assert SearchFilter.build() is None
        assert SearchFilter.build(domain='', tags=['', '  ']) is None
        assert SearchFilter.build(tags=[' ops ']) == SearchFilter(tags=('ops',))

    def test_recent_notes_and_handoff(self, repo):
        """Test recency ordering and latest handoff lookup."""
        repo.bulk_insert([
            make_note('old.md', modified=100.0),
            make_note('sessions/h1.md', modified=200.0, content_type='handoff'),
            make_note('new.md', modified=300.0),
        ])

        assert [n.path for n in repo.recent_notes(limit=2)] == ['new.md', 'sessions/h1.md']
        assert repo.latest_handoff().path == 'sessions/h1.md'

    def test_iter_vectors_batches(self, repo):
        """Test vectors stream in batches and skip private notes."""
        repo.bulk_insert([
            make_note(f'n{i}.md', embedding=[float(i)] * DIMS) for i in range(5)
        ] + [make_note('_private/x.md', embedding=[9.0] * DIMS)])

        batches = list(repo.iter_vectors(batch_size=2))

        assert [len(b) for b in batches] == [2, 2, 1]
        assert repo.stored_vector_dims() == DIMS


class TestEmbeddingMeta:
    """Tests for the recorded embedding triple."""

    def test_absent_by_default(self, repo):
        """Test a fresh vault has no triple."""
        assert repo.embedding_meta() is None

    def test_round_trip(self, repo):
        """Test the triple is stored and read back."""
        meta = EmbeddingMeta(provider='ollama', model='nomic-embed-text', dimensions=768)
        repo.set_embedding_meta(meta)

        assert repo.embedding_meta() == meta
        assert repo.get_meta('last_reindex_time') is not None


class TestConfidenceWrites:
    """Tests for confidence and access updates."""

    def test_update_confidence_applies_to_all_chunks(self, repo):
        """Test the anchor's new value is written to every chunk."""
        repo.bulk_insert([
            make_note('a.md', confidence=0.4),
            NoteChunk(path='a.md', chunk_id=1, confidence=0.4),
        ])

        changes = repo.update_confidence('a.md', lambda c: c + 0.1, access_boost=2)

        assert changes[0]['old'] == 0.4
        assert {c.confidence for c in repo.get_note('a.md')} == {changes[0]['new']}
        assert all(c.access_count == 2 for c in repo.get_note('a.md'))

    def test_increment_access_count(self, repo):
        """Test access counts increase."""
        repo.insert_note(make_note('a.md'))

        repo.increment_access_count(['a.md'], amount=3)

        assert repo.get_anchor('a.md').access_count == 3


class TestPinsAndUsage:
    """Tests for pin and usage tables."""

    def test_pin_flag_on_rows(self, repo):
        """Test the pinned flag is visible on note rows."""
        repo.insert_note(make_note('a.md'))

        repo.pin_note('a.md')

        assert repo.get_anchor('a.md').pinned
        assert repo.pinned_paths() == ['a.md']

    def test_pin_missing_note(self, repo):
        """Test pinning a note that does not exist."""
        with pytest.raises(NotFoundError):
            repo.pin_note('nope.md')

    def test_pin_survives_reindex(self, repo):
        """Test pins are kept when a note's chunks are replaced."""
        repo.insert_note(make_note('a.md'))
        repo.pin_note('a.md')

        repo.replace_note('a.md', [make_note('a.md', 'rewritten')])

        assert repo.is_pinned('a.md')

    def test_usage_by_session(self, repo):
        """Test usage records round-trip."""
        repo.insert_usage(UsageRecord(
            session_id='s1', timestamp='2026-01-01T00:00:00Z', source='bootstrap',
            injected_paths=['a.md'], estimated_tokens=40,
        ))

        records = repo.usage_by_session('s1')

        assert len(records) == 1
        assert records[0].injected_paths == ['a.md']
        assert not records[0].was_referenced

    def test_stats(self, repo):
        """Test repository statistics."""
        repo.bulk_insert([make_note('a.md', content_type='decision'), make_note('b.md')])

        stats = repo.get_stats()

        assert stats['notes'] == 2
        assert stats['by_content_type'] == {'decision': 1, 'note': 1}
        assert stats['embedding'] is None

    def test_integrity_check(self, repo):
        """Test a healthy store passes the integrity check."""
        assert repo.integrity_check() is True
