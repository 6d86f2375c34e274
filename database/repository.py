"""
SQLite Note Repository for NoteVault

Provides indexed storage with:
- Chunk-level note rows (vault_notes) with per-note metadata
- Stored embeddings as float32 blobs (vault_notes_vec)
- Full-text search via FTS5, created when the SQLite build supports it
- Embedding metadata, pins and context-usage tracking
- Write-ahead logging so readers are not blocked by an indexer

Usage:
    from database.repository import NoteRepository

    repo = NoteRepository("/path/to/vault/.notevault/vault.db")
    repo.replace_note("notes/auth.md", chunks)

    reader = NoteRepository(db_path, read_only=True)
    hits = reader.fts_search('"jwt"', limit=10)
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Iterator, Iterable, Callable, Set
from contextlib import contextmanager

from core.errors import StoreError, NotFoundError
from .models import NoteChunk, EmbeddingMeta, SearchFilter, UsageRecord, serialize_vector

logger = logging.getLogger(__name__)

SCHEMA_VERSION = '3'

BUSY_TIMEOUT_SECONDS = 5.0


# =============================================================================
# Schema
# =============================================================================

SCHEMA = '''
-- Chunk-level notes; chunk_id 0 is the anchor row for the note
CREATE TABLE IF NOT EXISTS vault_notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
    domain TEXT NOT NULL DEFAULT '',
    workstream TEXT NOT NULL DEFAULT '',
    agent TEXT NOT NULL DEFAULT '',
    chunk_id INTEGER NOT NULL DEFAULT 0,
    chunk_heading TEXT NOT NULL DEFAULT '',
    text TEXT NOT NULL DEFAULT '',
    modified REAL NOT NULL DEFAULT 0,
    content_hash TEXT NOT NULL DEFAULT '',
    content_type TEXT NOT NULL DEFAULT 'note',
    review_by TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL DEFAULT 0.5,
    access_count INTEGER NOT NULL DEFAULT 0
);

-- Embeddings, one per chunk
CREATE TABLE IF NOT EXISTS vault_notes_vec (
    note_id INTEGER PRIMARY KEY,
    embedding BLOB NOT NULL
);

CREATE TRIGGER IF NOT EXISTS vault_notes_vec_ad AFTER DELETE ON vault_notes BEGIN
    DELETE FROM vault_notes_vec WHERE note_id = OLD.id;
END;

-- Key/value metadata (embedding triple, schema version, reindex time)
CREATE TABLE IF NOT EXISTS schema_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Pins survive wholesale row replacement on reindex
CREATE TABLE IF NOT EXISTS pinned_notes (
    path TEXT PRIMARY KEY,
    pinned_at REAL NOT NULL
);

-- Context injections handed to the assistant
CREATE TABLE IF NOT EXISTS context_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT '',
    injected_paths TEXT NOT NULL DEFAULT '[]',  -- JSON array
    estimated_tokens INTEGER NOT NULL DEFAULT 0,
    was_referenced INTEGER NOT NULL DEFAULT 0
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_vault_notes_path_chunk ON vault_notes(path, chunk_id);
CREATE INDEX IF NOT EXISTS idx_vault_notes_hash ON vault_notes(content_hash);
CREATE INDEX IF NOT EXISTS idx_vault_notes_type ON vault_notes(content_type);
CREATE INDEX IF NOT EXISTS idx_vault_notes_domain ON vault_notes(domain);
CREATE INDEX IF NOT EXISTS idx_vault_notes_workstream ON vault_notes(workstream);
CREATE INDEX IF NOT EXISTS idx_vault_notes_chunk_modified ON vault_notes(chunk_id, modified DESC);
CREATE INDEX IF NOT EXISTS idx_context_usage_session ON context_usage(session_id);
'''

FTS_SCHEMA = '''
CREATE VIRTUAL TABLE IF NOT EXISTS vault_notes_fts USING fts5(
    path,
    title,
    text,
    content=vault_notes,
    content_rowid=id,
    tokenize='porter unicode61'
);

-- Triggers to keep FTS in sync
CREATE TRIGGER IF NOT EXISTS vault_notes_ai AFTER INSERT ON vault_notes BEGIN
    INSERT INTO vault_notes_fts(rowid, path, title, text)
    VALUES (NEW.id, NEW.path, NEW.title, NEW.text);
END;

CREATE TRIGGER IF NOT EXISTS vault_notes_ad AFTER DELETE ON vault_notes BEGIN
    INSERT INTO vault_notes_fts(vault_notes_fts, rowid, path, title, text)
    VALUES ('delete', OLD.id, OLD.path, OLD.title, OLD.text);
END;

CREATE TRIGGER IF NOT EXISTS vault_notes_au AFTER UPDATE OF path, title, text ON vault_notes BEGIN
    INSERT INTO vault_notes_fts(vault_notes_fts, rowid, path, title, text)
    VALUES ('delete', OLD.id, OLD.path, OLD.title, OLD.text);
    INSERT INTO vault_notes_fts(rowid, path, title, text)
    VALUES (NEW.id, NEW.path, NEW.title, NEW.text);
END;
'''

NOTE_COLUMNS = '''
    n.id, n.path, n.title, n.tags, n.domain, n.workstream, n.agent,
    n.chunk_id, n.chunk_heading, n.text, n.modified, n.content_hash,
    n.content_type, n.review_by, n.confidence, n.access_count,
    EXISTS(SELECT 1 FROM pinned_notes p WHERE p.path = n.path) AS pinned
'''

NOT_PRIVATE = "lower(n.path) NOT LIKE '\\_private/%' ESCAPE '\\'"

META_PROVIDER = 'embed_provider'
META_MODEL = 'embed_model'
META_DIMS = 'embed_dims'


def like_escape(value: str) -> str:
    """Escape LIKE wildcards so they match literally (ESCAPE '\\')."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class NoteRepository:
    """
    Repository for vault note storage and retrieval.

    Every operation opens its own connection, so one repository object can be
    shared between threads. A read-only repository never creates or migrates
    the database and rejects every write.
    """

    def __init__(self, db_path, read_only: bool = False):
        """
        Initialize the repository.

        Args:
            db_path: Path to the vault's SQLite database
            read_only: Open an existing database without write access

        Raises:
            StoreError: If a read-only database is missing or unreadable
        """
        self.db_path = Path(db_path)
        self.read_only = read_only
        self._fts_available = False

        if read_only:
            self._verify_readable()
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        with self._connection() as conn:
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA synchronous=NORMAL')
            conn.executescript(SCHEMA)
            conn.execute(
                'INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)',
                ('schema_version', SCHEMA_VERSION)
            )

        try:
            with self._connection() as conn:
                conn.executescript(FTS_SCHEMA)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS5 unavailable, lexical search will use keyword matching: {e}")
            self._fts_available = False

    def _verify_readable(self):
        """Check a read-only database exists and looks like a vault."""
        if not self.db_path.exists():
            raise StoreError(f"Vault database not found: {self.db_path}", path=str(self.db_path))

        try:
            with self._connection() as conn:
                names = {
                    row['name'] for row in
                    conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
                }
        except sqlite3.DatabaseError as e:
            raise StoreError(f"Vault database unreadable: {e}", path=str(self.db_path))

        if 'vault_notes' not in names:
            raise StoreError(f"Not a vault database: {self.db_path}", path=str(self.db_path))

        self._fts_available = 'vault_notes_fts' in names

    @contextmanager
    def _connection(self):
        """Get a database connection with proper cleanup."""
        if self.read_only:
            conn = sqlite3.connect(
                self.db_path.resolve().as_uri() + '?mode=ro',
                uri=True,
                timeout=BUSY_TIMEOUT_SECONDS
            )
        else:
            conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _require_writable(self):
        if self.read_only:
            raise StoreError("Repository is read-only", path=str(self.db_path))

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    # =========================================================================
    # Writes
    # =========================================================================

    def _insert(self, conn: sqlite3.Connection, note: NoteChunk) -> int:
        cursor = conn.execute('''
            INSERT INTO vault_notes (
                path, title, tags, domain, workstream, agent, chunk_id,
                chunk_heading, text, modified, content_hash, content_type,
                review_by, confidence, access_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            note.path, note.title, json.dumps(note.tags), note.domain,
            note.workstream, note.agent, note.chunk_id, note.chunk_heading,
            note.text, note.modified, note.content_hash, note.content_type,
            note.review_by, note.confidence, note.access_count,
        ))
        note_id = cursor.lastrowid

        if note.embedding is not None:
            conn.execute(
                'INSERT INTO vault_notes_vec (note_id, embedding) VALUES (?, ?)',
                (note_id, serialize_vector(note.embedding))
            )
        return note_id

    def insert_note(self, note: NoteChunk) -> int:
        """
        Insert a single chunk (and its embedding, if any).

        Returns:
            Row id of the new chunk
        """
        self._require_writable()
        with self._connection() as conn:
            note.id = self._insert(conn, note)
        return note.id

    def bulk_insert(self, notes: Iterable[NoteChunk]) -> int:
        """Insert many chunks in one transaction. Chunks without embeddings are stored lexical-only."""
        self._require_writable()
        count = 0
        with self._connection() as conn:
            for note in notes:
                note.id = self._insert(conn, note)
                count += 1
        return count

    def replace_note(self, path: str, chunks: List[NoteChunk]) -> int:
        """
        Replace every chunk of a note wholesale, as a reindex does.

        Returns:
            Number of chunks written
        """
        self._require_writable()
        with self._connection() as conn:
            conn.execute('DELETE FROM vault_notes WHERE path = ?', (path,))
            for chunk in chunks:
                chunk.path = path
                chunk.id = self._insert(conn, chunk)
        return len(chunks)

    def delete_by_path(self, path: str) -> int:
        """Delete all chunks for a path. Returns rows removed."""
        self._require_writable()
        with self._connection() as conn:
            cursor = conn.execute('DELETE FROM vault_notes WHERE path = ?', (path,))
            return cursor.rowcount

    def delete_all(self):
        """Remove every note, as a rebuild-from-scratch does."""
        self._require_writable()
        with self._connection() as conn:
            conn.execute('DELETE FROM vault_notes')
            conn.execute('DELETE FROM vault_notes_vec')

    def prune_missing(self, existing_paths: Set[str]) -> List[str]:
        """
        Delete notes whose source file no longer exists.

        Args:
            existing_paths: Vault-relative paths still present on disk

        Returns:
            Paths that were removed
        """
        self._require_writable()
        with self._connection() as conn:
            stored = [row['path'] for row in conn.execute('SELECT DISTINCT path FROM vault_notes')]
            orphans = sorted(p for p in stored if p not in existing_paths)
            for path in orphans:
                conn.execute('DELETE FROM vault_notes WHERE path = ?', (path,))

        if orphans:
            logger.info(f"Pruned {len(orphans)} orphaned notes from {self.db_path}")
        return orphans

    def rebuild_fts(self):
        """Rebuild the full-text index from vault_notes."""
        self._require_writable()
        if not self._fts_available:
            return
        with self._connection() as conn:
            conn.execute("INSERT INTO vault_notes_fts(vault_notes_fts) VALUES('rebuild')")

    # =========================================================================
    # Reads
    # =========================================================================

    def get_note(self, path: str) -> List[NoteChunk]:
        """All chunks for a path, ordered by chunk index."""
        with self._connection() as conn:
            rows = conn.execute(
                f'SELECT {NOTE_COLUMNS} FROM vault_notes n WHERE n.path = ? ORDER BY n.chunk_id',
                (path,)
            ).fetchall()
        return [NoteChunk.from_row(row) for row in rows]

    def get_anchor(self, path: str) -> Optional[NoteChunk]:
        """The chunk-0 row that represents a note, or None."""
        with self._connection() as conn:
            row = conn.execute(
                f'SELECT {NOTE_COLUMNS} FROM vault_notes n WHERE n.path = ? AND n.chunk_id = 0',
                (path,)
            ).fetchone()
        return NoteChunk.from_row(row) if row else None

    def get_chunks(self, ids: List[int]) -> Dict[int, NoteChunk]:
        """Fetch chunks by row id."""
        if not ids:
            return {}
        placeholders = ', '.join('?' for _ in ids)
        with self._connection() as conn:
            rows = conn.execute(
                f'SELECT {NOTE_COLUMNS} FROM vault_notes n WHERE n.id IN ({placeholders})',
                list(ids)
            ).fetchall()
        return {row['id']: NoteChunk.from_row(row) for row in rows}

    def all_notes(self) -> List[NoteChunk]:
        """Anchor rows of every non-private note, ordered by path."""
        with self._connection() as conn:
            rows = conn.execute(f'''
                SELECT {NOTE_COLUMNS} FROM vault_notes n
                WHERE n.chunk_id = 0 AND {NOT_PRIVATE}
                ORDER BY n.path
            ''').fetchall()
        return [NoteChunk.from_row(row) for row in rows]

    def recent_notes(self, limit: int = 10) -> List[NoteChunk]:
        """Most recently modified non-private notes (anchor rows)."""
        with self._connection() as conn:
            rows = conn.execute(f'''
                SELECT {NOTE_COLUMNS} FROM vault_notes n
                WHERE n.chunk_id = 0 AND {NOT_PRIVATE}
                ORDER BY n.modified DESC, n.path
                LIMIT ?
            ''', (limit,)).fetchall()
        return [NoteChunk.from_row(row) for row in rows]

    def latest_handoff(self) -> Optional[NoteChunk]:
        """The most recent handoff note, if any."""
        with self._connection() as conn:
            row = conn.execute(f'''
                SELECT {NOTE_COLUMNS} FROM vault_notes n
                WHERE n.chunk_id = 0 AND n.content_type = 'handoff' AND {NOT_PRIVATE}
                ORDER BY n.modified DESC
                LIMIT 1
            ''').fetchone()
        return NoteChunk.from_row(row) if row else None

    def content_hashes(self) -> Dict[str, str]:
        """Map of path to anchor content hash, used to skip unchanged files on reindex."""
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT path, content_hash FROM vault_notes WHERE chunk_id = 0'
            ).fetchall()
        return {row['path']: row['content_hash'] for row in rows}

    def note_count(self) -> int:
        with self._connection() as conn:
            return conn.execute('SELECT COUNT(DISTINCT path) FROM vault_notes').fetchone()[0]

    def chunk_count(self) -> int:
        with self._connection() as conn:
            return conn.execute('SELECT COUNT(*) FROM vault_notes').fetchone()[0]

    def has_vectors(self) -> bool:
        """Whether any embedding is stored (false for lite-mode vaults)."""
        with self._connection() as conn:
            return conn.execute('SELECT 1 FROM vault_notes_vec LIMIT 1').fetchone() is not None

    def stored_vector_dims(self) -> Optional[int]:
        """Dimensions of the stored vectors, read from the first blob."""
        with self._connection() as conn:
            row = conn.execute('SELECT length(embedding) FROM vault_notes_vec LIMIT 1').fetchone()
        return row[0] // 4 if row else None

    def iter_vectors(
        self,
        filters: Optional[SearchFilter] = None,
        batch_size: int = 1024
    ) -> Iterator[List[Tuple[int, bytes]]]:
        """
        Stream (row id, embedding blob) pairs in batches.

        Private notes are never yielded; metadata filters are applied in SQL
        so they take effect before any truncation.
        """
        sql = f'''
            SELECT v.note_id, v.embedding
            FROM vault_notes_vec v
            JOIN vault_notes n ON n.id = v.note_id
            WHERE {NOT_PRIVATE}
        '''
        params: List[Any] = []
        if filters is not None:
            clause, filter_params = filters.sql()
            sql += clause
            params.extend(filter_params)
        sql += ' ORDER BY v.note_id'

        with self._connection() as conn:
            cursor = conn.execute(sql, params)
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                yield [(row[0], row[1]) for row in rows]

    # =========================================================================
    # Lexical Search
    # =========================================================================

    def fts_search(
        self,
        fts_query: str,
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> List[Tuple[NoteChunk, float]]:
        """
        Run an FTS5 MATCH query.

        Returns:
            (chunk, bm25 rank) pairs, best first. Lower rank is better.

        Raises:
            sqlite3.OperationalError: If FTS is missing or the query is malformed
        """
        sql = f'''
            SELECT {NOTE_COLUMNS}, bm25(vault_notes_fts) AS rank
            FROM vault_notes_fts
            JOIN vault_notes n ON n.id = vault_notes_fts.rowid
            WHERE vault_notes_fts MATCH ? AND {NOT_PRIVATE}
        '''
        params: List[Any] = [fts_query]
        if filters is not None:
            clause, filter_params = filters.sql()
            sql += clause
            params.extend(filter_params)
        sql += ' ORDER BY rank, n.path, n.chunk_id LIMIT ?'
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(NoteChunk.from_row(row), row['rank']) for row in rows]

    def keyword_search(
        self,
        terms: List[str],
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> List[Tuple[NoteChunk, int]]:
        """
        Substring match of terms against titles and text of every chunk.

        A note matches when any chunk contains any term. Each note is reported
        once through its anchor row, ranked by how many distinct terms matched.

        Returns:
            (anchor chunk, matched term count) pairs, best first
        """
        if not terms:
            return []

        match_exprs = []
        params: List[Any] = []
        for term in terms:
            pattern = f'%{like_escape(term.lower())}%'
            match_exprs.append(
                "MAX(CASE WHEN lower(title) LIKE ? ESCAPE '\\' "
                "OR lower(text) LIKE ? ESCAPE '\\' THEN 1 ELSE 0 END)"
            )
            params.extend([pattern, pattern])

        sql = f'''
            SELECT {NOTE_COLUMNS}, m.matches
            FROM (
                SELECT path, {' + '.join(match_exprs)} AS matches
                FROM vault_notes
                GROUP BY path
            ) m
            JOIN vault_notes n ON n.path = m.path AND n.chunk_id = 0
            WHERE m.matches > 0 AND {NOT_PRIVATE}
        '''
        if filters is not None:
            clause, filter_params = filters.sql()
            sql += clause
            params.extend(filter_params)
        sql += ' ORDER BY m.matches DESC, n.modified DESC, n.path LIMIT ?'
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(NoteChunk.from_row(row), row['matches']) for row in rows]

    def title_match_search(
        self,
        terms: List[str],
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> List[Tuple[NoteChunk, int]]:
        """
        Substring match of terms against note titles only.

        Returns:
            (anchor chunk, matched term count) pairs, best first
        """
        if not terms:
            return []

        match_exprs = []
        params: List[Any] = []
        for term in terms:
            match_exprs.append("(CASE WHEN lower(n.title) LIKE ? ESCAPE '\\' THEN 1 ELSE 0 END)")
            params.append(f'%{like_escape(term.lower())}%')

        sql = f'''
            SELECT {NOTE_COLUMNS}, {' + '.join(match_exprs)} AS matches
            FROM vault_notes n
            WHERE n.chunk_id = 0 AND {NOT_PRIVATE}
        '''
        if filters is not None:
            clause, filter_params = filters.sql()
            sql += clause
            params.extend(filter_params)
        sql = f'SELECT * FROM ({sql}) WHERE matches > 0 ORDER BY matches DESC, modified DESC, path LIMIT ?'
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(NoteChunk.from_row(row), row['matches']) for row in rows]

    def iter_anchors(
        self,
        filters: Optional[SearchFilter] = None,
        batch_size: int = 1024
    ) -> Iterator[List[NoteChunk]]:
        """Stream anchor rows of non-private notes, most recently modified first."""
        sql = f'''
            SELECT {NOTE_COLUMNS} FROM vault_notes n
            WHERE n.chunk_id = 0 AND {NOT_PRIVATE}
        '''
        params: List[Any] = []
        if filters is not None:
            clause, filter_params = filters.sql()
            sql += clause
            params.extend(filter_params)
        sql += ' ORDER BY n.modified DESC, n.path'

        with self._connection() as conn:
            cursor = conn.execute(sql, params)
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                yield [NoteChunk.from_row(row) for row in rows]

    # =========================================================================
    # Confidence and Access
    # =========================================================================

    def update_confidence(
        self,
        like_pattern: str,
        update: Callable[[float], float],
        access_boost: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Rewrite confidence for every note whose anchor path matches a LIKE pattern.

        Runs in a single transaction. The new value is written to every chunk
        of a matched note so chunk rows agree with the anchor.

        Args:
            like_pattern: SQL LIKE pattern using '\\' as the escape character
            update: Maps the anchor's current confidence to the new value
            access_boost: Added to access_count on every chunk

        Returns:
            One dict per matched note: path, title, old, new, access_count
        """
        self._require_writable()
        changes = []
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT path, title, confidence, access_count
                FROM vault_notes
                WHERE chunk_id = 0 AND path LIKE ? ESCAPE '\\'
                ORDER BY path
            ''', (like_pattern,)).fetchall()

            for row in rows:
                new_confidence = update(row['confidence'])
                conn.execute(
                    'UPDATE vault_notes SET confidence = ?, access_count = access_count + ? WHERE path = ?',
                    (new_confidence, access_boost, row['path'])
                )
                changes.append({
                    'path': row['path'],
                    'title': row['title'],
                    'old': row['confidence'],
                    'new': new_confidence,
                    'access_count': row['access_count'] + access_boost,
                })
        return changes

    def set_confidence(self, path: str, confidence: float) -> int:
        """Set confidence on every chunk of a note. Returns rows updated."""
        self._require_writable()
        with self._connection() as conn:
            cursor = conn.execute(
                'UPDATE vault_notes SET confidence = ? WHERE path = ?', (confidence, path)
            )
            return cursor.rowcount

    def increment_access_count(self, paths: List[str], amount: int = 1):
        """Bump access_count for notes that were surfaced to the assistant."""
        self._require_writable()
        with self._connection() as conn:
            conn.executemany(
                'UPDATE vault_notes SET access_count = access_count + ? WHERE path = ?',
                [(amount, path) for path in paths]
            )

    # =========================================================================
    # Pins
    # =========================================================================

    def pin_note(self, path: str):
        """
        Mark a note for unconditional surfacing.

        Raises:
            NotFoundError: If no note exists at path
        """
        self._require_writable()
        with self._connection() as conn:
            exists = conn.execute(
                'SELECT 1 FROM vault_notes WHERE path = ? LIMIT 1', (path,)
            ).fetchone()
            if not exists:
                raise NotFoundError(f"No note at {path}", path=path)
            conn.execute(
                'INSERT OR REPLACE INTO pinned_notes (path, pinned_at) VALUES (?, ?)',
                (path, time.time())
            )

    def unpin_note(self, path: str):
        """
        Remove a pin.

        Raises:
            NotFoundError: If the note is not pinned
        """
        self._require_writable()
        with self._connection() as conn:
            cursor = conn.execute('DELETE FROM pinned_notes WHERE path = ?', (path,))
            if cursor.rowcount == 0:
                raise NotFoundError("Note is not pinned", path=path)

    def is_pinned(self, path: str) -> bool:
        with self._connection() as conn:
            return conn.execute(
                'SELECT 1 FROM pinned_notes WHERE path = ?', (path,)
            ).fetchone() is not None

    def pinned_paths(self) -> List[str]:
        """Pinned paths, oldest pin first."""
        with self._connection() as conn:
            rows = conn.execute('SELECT path FROM pinned_notes ORDER BY pinned_at, path').fetchall()
        return [row['path'] for row in rows]

    def pinned_notes(self) -> List[NoteChunk]:
        """Anchor rows for pinned notes that still exist."""
        with self._connection() as conn:
            rows = conn.execute(f'''
                SELECT {NOTE_COLUMNS} FROM vault_notes n
                JOIN pinned_notes p ON p.path = n.path
                WHERE n.chunk_id = 0
                ORDER BY p.pinned_at, n.path
            ''').fetchall()
        return [NoteChunk.from_row(row) for row in rows]

    # =========================================================================
    # Metadata
    # =========================================================================

    def get_meta(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute('SELECT value FROM schema_meta WHERE key = ?', (key,)).fetchone()
        return row['value'] if row else None

    def set_meta(self, key: str, value: str):
        self._require_writable()
        with self._connection() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)', (key, str(value))
            )

    def embedding_meta(self) -> Optional[EmbeddingMeta]:
        """The recorded embedding triple, or None for a vault never embedded."""
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT key, value FROM schema_meta WHERE key IN (?, ?, ?)',
                (META_PROVIDER, META_MODEL, META_DIMS)
            ).fetchall()
        values = {row['key']: row['value'] for row in rows}
        if META_PROVIDER not in values:
            return None

        try:
            dims = int(values.get(META_DIMS, '0'))
        except ValueError:
            dims = 0
        return EmbeddingMeta(
            provider=values[META_PROVIDER],
            model=values.get(META_MODEL, ''),
            dimensions=dims,
        )

    def set_embedding_meta(self, meta: EmbeddingMeta):
        """Record the triple the stored vectors were produced with."""
        self._require_writable()
        with self._connection() as conn:
            conn.executemany(
                'INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)',
                [
                    (META_PROVIDER, meta.provider),
                    (META_MODEL, meta.model),
                    (META_DIMS, str(meta.dimensions)),
                    ('last_reindex_time', str(int(time.time()))),
                ]
            )

    def integrity_check(self) -> bool:
        """
        Run SQLite's integrity check.

        Raises:
            StoreError: If the database reports corruption
        """
        try:
            with self._connection() as conn:
                result = conn.execute('PRAGMA integrity_check').fetchone()[0]
        except sqlite3.DatabaseError as e:
            raise StoreError(f"Integrity check failed: {e}", path=str(self.db_path))

        if result != 'ok':
            raise StoreError(f"Integrity check failed: {result}", path=str(self.db_path))
        return True

    # =========================================================================
    # Context Usage
    # =========================================================================

    def insert_usage(self, record: UsageRecord) -> int:
        self._require_writable()
        with self._connection() as conn:
            cursor = conn.execute('''
                INSERT INTO context_usage
                    (session_id, timestamp, source, injected_paths, estimated_tokens, was_referenced)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                record.session_id, record.timestamp, record.source,
                json.dumps(record.injected_paths), record.estimated_tokens,
                int(record.was_referenced),
            ))
            record.id = cursor.lastrowid
        return record.id

    def usage_by_session(self, session_id: str) -> List[UsageRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT * FROM context_usage WHERE session_id = ? ORDER BY timestamp, id',
                (session_id,)
            ).fetchall()
        return [UsageRecord.from_row(row) for row in rows]

    def recent_usage(self, last_n_sessions: int = 5) -> List[UsageRecord]:
        """Usage records belonging to the most recent sessions."""
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT * FROM context_usage
                WHERE session_id IN (
                    SELECT session_id FROM context_usage
                    GROUP BY session_id
                    ORDER BY MAX(timestamp) DESC
                    LIMIT ?
                )
                ORDER BY timestamp, id
            ''', (last_n_sessions,)).fetchall()
        return [UsageRecord.from_row(row) for row in rows]

    def mark_referenced(self, usage_id: int):
        self._require_writable()
        with self._connection() as conn:
            conn.execute('UPDATE context_usage SET was_referenced = 1 WHERE id = ?', (usage_id,))

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get repository statistics."""
        with self._connection() as conn:
            stats = {
                'notes': conn.execute('SELECT COUNT(DISTINCT path) FROM vault_notes').fetchone()[0],
                'chunks': conn.execute('SELECT COUNT(*) FROM vault_notes').fetchone()[0],
                'vectors': conn.execute('SELECT COUNT(*) FROM vault_notes_vec').fetchone()[0],
                'pinned': conn.execute('SELECT COUNT(*) FROM pinned_notes').fetchone()[0],
            }
            rows = conn.execute('''
                SELECT content_type, COUNT(*) AS count
                FROM vault_notes
                WHERE chunk_id = 0
                GROUP BY content_type
            ''').fetchall()
            stats['by_content_type'] = {row['content_type']: row['count'] for row in rows}

        meta = self.embedding_meta()
        stats['embedding'] = meta.to_dict() if meta else None
        stats['fts_available'] = self._fts_available
        return stats
