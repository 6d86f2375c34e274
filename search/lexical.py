"""
Lexical Search Tiers

Full-text search over the FTS5 index, with a substring/keyword matcher as the
last resort when FTS is unavailable or finds nothing. Both tiers report one
hit per note and give hits a fixed placeholder score, since bm25 ranks and
match counts are not comparable with composite semantic scores.

Usage:
    from search.lexical import LexicalIndex

    hits, tier = LexicalIndex(repo).search("jwt-tokens", limit=10)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Tuple

from database.models import NoteChunk, SearchFilter
from database.repository import NoteRepository

logger = logging.getLogger(__name__)

FTS_PLACEHOLDER_SCORE = 0.5
KEYWORD_PLACEHOLDER_SCORE = 0.4

TIER_FTS = 'fts'
TIER_KEYWORD = 'keyword'
TIER_NONE = 'none'

STOP_WORDS = frozenset('''
    the a an is are was were be been being have has had do does did will would
    could should may might shall can of in to for with on at from by about as
    into through during and or but not so what how when where which who whom
    this that these those it its my your our their i me we you he she they
    them explain describe tell show work works tracked area project help find
    search
'''.split())

# Two-letter terms that still carry meaning
MEANINGFUL_SHORT_TERMS = frozenset(['ai', 'os', 'pm', 'qa', 'ui', 'ux', 'hr', 'ml'])

STRIP_CHARS = '.,;:!?"\'()[]{}'


def extract_search_terms(query: str) -> List[str]:
    """
    Pull meaningful, de-duplicated search terms out of a natural-language query.

    Lower-cases, strips surrounding punctuation, drops stop words and one-letter
    words, and keeps two-letter words only when they are known abbreviations.
    """
    terms = []
    seen = set()
    for word in query.split():
        term = word.lower().strip(STRIP_CHARS)
        if len(term) < 2:
            continue
        if len(term) == 2 and term not in MEANINGFUL_SHORT_TERMS:
            continue
        if term in STOP_WORDS or term in seen:
            continue
        seen.add(term)
        terms.append(term)
    return terms


def build_fts_query(query: str) -> Optional[str]:
    """
    Build an FTS5 MATCH expression from a user query.

    Each term becomes a quoted phrase so punctuation such as '-' is tokenized
    rather than parsed as syntax; phrases are OR-ed for recall.
    """
    terms = extract_search_terms(query)
    if not terms:
        terms = [t for t in (w.strip(STRIP_CHARS) for w in query.split()) if t]
    if not terms:
        return None

    return ' OR '.join('"' + term.replace('"', '""') + '"' for term in terms)


def term_coverage(terms: List[str], text: str) -> float:
    """Fraction of terms that occur (as substrings) in text."""
    if not terms:
        return 0.0
    lowered = text.lower()
    return sum(1 for term in terms if term in lowered) / len(terms)


@dataclass
class LexicalHit:
    """A note found by a lexical tier."""
    chunk: NoteChunk
    score: float
    tier: str


class LexicalIndex:
    """FTS5 search with a substring fallback, over one vault."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> Tuple[List[LexicalHit], str]:
        """
        Run the lexical tiers in order.

        Returns:
            (hits, tier) where tier names the tier that produced the hits
        """
        hits = self.fts_search(query, limit, filters)
        if hits:
            return hits, TIER_FTS

        hits = self.keyword_search(query, limit, filters)
        if hits:
            return hits, TIER_KEYWORD

        return [], TIER_NONE

    def fts_search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> List[LexicalHit]:
        """Full-text tier. Returns [] when FTS is unavailable or the query fails."""
        if not self.repository.fts_available:
            return []

        fts_query = build_fts_query(query)
        if fts_query is None:
            return []

        try:
            rows = self.repository.fts_search(fts_query, limit * 5, filters)
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS query failed, falling back to keyword search: {e}")
            return []

        hits = []
        seen = set()
        for chunk, _rank in rows:
            if chunk.path in seen:
                continue
            seen.add(chunk.path)
            hits.append(LexicalHit(chunk=chunk, score=FTS_PLACEHOLDER_SCORE, tier=TIER_FTS))
            if len(hits) >= limit:
                break
        return hits

    def keyword_search(
        self,
        query: str,
        limit: int,
        filters: Optional[SearchFilter] = None
    ) -> List[LexicalHit]:
        """Substring tier over extracted terms (or the whole query if none survive)."""
        terms = extract_search_terms(query)
        if not terms:
            terms = [query.strip().lower()]

        rows = self.repository.keyword_search(terms, limit, filters)
        return [
            LexicalHit(chunk=chunk, score=KEYWORD_PLACEHOLDER_SCORE, tier=TIER_KEYWORD)
            for chunk, _matches in rows
        ]
