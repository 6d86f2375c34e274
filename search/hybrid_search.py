"""
Hybrid Search for NoteVault

Tiered retrieval over a single vault:

1. Vector tier: embed the query, check the vault's embedding metadata,
   overfetch nearest chunks, keep the closest chunk per note, drop those past
   the profile's distance threshold, and rank by a composite of similarity,
   recency and confidence. Title signals then adjust the list: strong title
   keyword matches are fused into scores, a share of the slots is kept for
   title hits the vectors missed, open slots take one-typo title matches,
   and titles overlapping the query get a small boost.
2. Full-text tier (FTS5) when no query vector is available or the vector tier
   finds nothing.
3. Substring/keyword tier when full-text search is unavailable or empty.

Results from tiers 2 and 3 carry placeholder scores and set `degraded`.

Usage:
    from search.hybrid_search import HybridSearcher

    searcher = HybridSearcher(repo, provider, profile="balanced")
    response = searcher.search("jwt refresh flow", top_k=10)

    for result in response.results:
        print(f"{result.score:.3f} - {result.title}")
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Set, Tuple, Any

from core.embedding_provider import EmbeddingProvider
from core.errors import EmbeddingMismatchError, InvalidInputError, ProviderUnavailableError
from core.metrics import SearchMetrics
from database.models import NoteChunk, SearchFilter
from database.repository import NoteRepository
from memory.confidence import recency_score, has_recency_intent
from .lexical import LexicalIndex, extract_search_terms
from .scoring import SearchProfile, get_profile, normalize_distances, composite_score, DEFAULT_PROFILE
from .title_ranking import (
    FUSION_THRESHOLD,
    FUSION_WEIGHT,
    FUZZY_TITLE_SCORE,
    MIN_FUZZY_TERM_LENGTH,
    fuzzy_title_match,
    keyword_title_score,
    query_words_for_title_match,
    title_boost,
)
from .vector_index import VectorIndex, VectorCandidate

logger = logging.getLogger(__name__)

TIER_VECTOR = 'vector'

SNIPPET_LENGTH = 500
MAX_TOP_K = 100
DEFAULT_OVERFETCH_FACTOR = 5

# Share of the result list kept open for title keyword hits
KEYWORD_SLOT_SHARE = 0.3
MIN_KEYWORD_SLOTS = 2


@dataclass
class SearchResult:
    """A ranked note."""
    path: str
    title: str
    chunk_heading: str
    snippet: str
    score: float
    distance: float
    domain: str
    workstream: str
    tags: List[str]
    content_type: str
    confidence: float

    @classmethod
    def from_chunk(cls, chunk: NoteChunk, score: float, distance: float = 0.0) -> 'SearchResult':
        return cls(
            path=chunk.path,
            title=chunk.title,
            chunk_heading=chunk.chunk_heading,
            snippet=chunk.text[:SNIPPET_LENGTH],
            score=score,
            distance=round(distance, 4),
            domain=chunk.domain,
            workstream=chunk.workstream,
            tags=list(chunk.tags),
            content_type=chunk.content_type,
            confidence=chunk.confidence,
        )

    def to_dict(self) -> dict:
        return {
            'path': self.path,
            'title': self.title,
            'chunk_heading': self.chunk_heading,
            'snippet': self.snippet,
            'score': self.score,
            'distance': self.distance,
            'domain': self.domain,
            'workstream': self.workstream,
            'tags': self.tags,
            'content_type': self.content_type,
            'confidence': self.confidence,
        }


@dataclass
class SearchResponse:
    """Ranked results plus how they were produced."""
    results: List[SearchResult] = field(default_factory=list)
    degraded: bool = False
    tier: str = TIER_VECTOR
    profile: str = DEFAULT_PROFILE

    def to_dict(self) -> dict:
        return {
            'results': [r.to_dict() for r in self.results],
            'degraded': self.degraded,
            'tier': self.tier,
            'profile': self.profile,
        }


# =============================================================================
# Helpers
# =============================================================================

def validate_query(query: str, top_k: int) -> Tuple[str, int]:
    """
    Reject empty queries and non-positive top_k; cap top_k.

    Raises:
        InvalidInputError: Before any I/O happens
    """
    if query is None or not query.strip():
        raise InvalidInputError("Search query must not be empty")
    if top_k < 1:
        raise InvalidInputError("top_k must be at least 1", top_k=top_k)
    return query.strip(), min(top_k, MAX_TOP_K)


def check_embedding_meta(
    repository: NoteRepository,
    provider: Optional[EmbeddingProvider],
    query_vector: List[float]
):
    """
    Verify the query vector was produced under the vault's recorded triple.

    A vault with no recorded triple is checked against the size of its stored
    vectors instead. A vault with a recorded triple also needs the provider,
    since dimensions alone cannot tell two models apart.

    Raises:
        EmbeddingMismatchError: On any provider, model or dimension mismatch
    """
    query_dims = len(query_vector)

    if provider is not None and provider.dimensions and provider.dimensions != query_dims:
        raise EmbeddingMismatchError(
            f"Provider {provider.name} declares {provider.dimensions} dimensions "
            f"but returned {query_dims}",
            expected=provider.dimensions,
            actual=query_dims
        )

    stored = repository.embedding_meta()
    if stored is None:
        stored_dims = repository.stored_vector_dims()
        if stored_dims is not None and stored_dims != query_dims:
            raise EmbeddingMismatchError(
                f"Embedding dimensions changed from {stored_dims} to {query_dims}; "
                f"run a forced reindex",
                stored_dims=stored_dims,
                query_dims=query_dims
            )
        return

    if stored.dimensions and stored.dimensions != query_dims:
        raise EmbeddingMismatchError(
            f"Embedding dimensions changed from {stored.dimensions} to {query_dims}; "
            f"run a forced reindex",
            stored=stored.to_dict(),
            query_dims=query_dims
        )

    if provider is None:
        raise EmbeddingMismatchError(
            f"Vault was indexed with {stored.describe()} but the query vector "
            f"carries no provider identity to compare",
            stored=stored.to_dict(),
            query_dims=query_dims
        )

    if stored.provider != provider.name or stored.model != provider.model:
        raise EmbeddingMismatchError(
            f"Vault was indexed with {stored.provider}/{stored.model} but the current "
            f"provider is {provider.name}/{provider.model}; run a forced reindex",
            stored=stored.to_dict(),
            provider=provider.name,
            model=provider.model
        )


def dedup_by_path(candidates: List[VectorCandidate]) -> List[VectorCandidate]:
    """Keep the lowest-distance chunk for each note. Input must be distance-ordered."""
    best: Dict[str, VectorCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.chunk.path)
        if current is None or candidate.distance < current.distance:
            best[candidate.chunk.path] = candidate
    return sorted(best.values(), key=lambda c: (c.distance, c.chunk.path))


def sort_results(results: List[SearchResult]) -> List[SearchResult]:
    """Score descending, ties broken by path."""
    return sorted(results, key=lambda r: (-r.score, r.path))


def clamp_score(score: float) -> float:
    return round(max(0.0, min(1.0, score)), 3)


# =============================================================================
# Hybrid Searcher
# =============================================================================

class HybridSearcher:
    """
    Tiered vector/full-text/keyword search over one vault.

    The searcher holds no per-query state; one instance can serve concurrent
    requests as long as its repository does.
    """

    def __init__(
        self,
        repository: NoteRepository,
        provider: Optional[EmbeddingProvider] = None,
        profile: str = DEFAULT_PROFILE,
        overfetch_factor: int = DEFAULT_OVERFETCH_FACTOR,
        vault_name: str = 'default',
        metrics: Optional[SearchMetrics] = None,
        clock=time.time
    ):
        """
        Initialize hybrid searcher.

        Args:
            repository: The vault's note repository
            provider: Embedding provider, or None for keyword-only mode
            profile: Ranking profile name (precise, balanced, broad, pi)
            overfetch_factor: Vector candidates fetched per requested result
            vault_name: Name used in logs and metrics
            metrics: Optional metrics collector
            clock: Returns the current unix time; recency is measured against it
        """
        self.repository = repository
        self.provider = provider
        self.profile: SearchProfile = get_profile(profile)
        self.overfetch_factor = max(1, overfetch_factor)
        self.vault_name = vault_name
        self.metrics = metrics
        self.clock = clock
        self.vector_index = VectorIndex(repository)
        self.lexical_index = LexicalIndex(repository)

    def search(
        self,
        query: str,
        top_k: int = 10,
        domain: Optional[str] = None,
        workstream: Optional[str] = None,
        tags: Optional[List[str]] = None,
        query_vector: Optional[List[float]] = None
    ) -> SearchResponse:
        """
        Search the vault.

        Args:
            query: Search query
            top_k: Maximum results (also capped by the profile)
            domain: Domain filter (whole value, case-insensitive)
            workstream: Workstream filter (whole value, case-insensitive)
            tags: Keep notes carrying any of these tags (case-insensitive)
            query_vector: Precomputed query embedding (federated search shares
                one); requires the provider that produced it

        Returns:
            SearchResponse with results sorted by score, then path

        Raises:
            InvalidInputError: Empty query, top_k < 1, or a query vector
                without a provider
            EmbeddingMismatchError: Query embedding incompatible with the vault
        """
        query, top_k = validate_query(query, top_k)
        if query_vector is not None and self.provider is None:
            raise InvalidInputError("A precomputed query vector needs the provider that produced it")
        filters = SearchFilter.build(domain=domain, workstream=workstream, tags=tags)
        start_time = time.time()

        profile = self.profile
        if has_recency_intent(query):
            profile = profile.with_recency_emphasis()
        limit = min(top_k, profile.max_results)

        response = None
        if self.repository.has_vectors():
            if query_vector is None:
                query_vector = self._embed_query(query)
            if query_vector is not None:
                response = self._vector_search(query, query_vector, limit, filters, profile)

        if response is None:
            response = self._lexical_search(query, limit, filters)

        latency_ms = (time.time() - start_time) * 1000
        if self.metrics is not None:
            self.metrics.record_search(
                vault=self.vault_name,
                tier=response.tier,
                degraded=response.degraded,
                result_count=len(response.results),
                latency_ms=latency_ms
            )

        logger.debug(
            f"Search '{query}' on {self.vault_name}: {len(response.results)} results "
            f"via {response.tier} tier",
            extra={'vault': self.vault_name, 'duration_ms': round(latency_ms, 1)}
        )
        return response

    def _embed_query(self, query: str) -> Optional[List[float]]:
        """Query embedding, or None when the provider is absent or unavailable."""
        if self.provider is None:
            return None

        try:
            return self.provider.get_query_embedding(query)
        except ProviderUnavailableError as e:
            logger.warning(
                f"Embedding provider unavailable, using lexical search: {e}",
                extra={'vault': self.vault_name}
            )
            if self.metrics is not None:
                self.metrics.record_provider_failure(self.provider.name)
            return None

    def _vector_search(
        self,
        query: str,
        query_vector: List[float],
        limit: int,
        filters: Optional[SearchFilter],
        profile: SearchProfile
    ) -> Optional[SearchResponse]:
        """
        Vector tier. Returns None when no candidate survives the distance gate
        so lexical tiers run.

        Steps after the nearest-neighbour fetch:
        1. Composite-score candidates within the profile's distance threshold
        2. Fuse strong title keyword matches into the matching vector results
        3. Reserve slots for title keyword hits the vector search missed
        4. Fill any slots still open with one-typo title matches
        5. Boost results whose titles overlap the query, then apply min_score
        """
        check_embedding_meta(self.repository, self.provider, query_vector)

        candidates = self.vector_index.search(query_vector, limit * self.overfetch_factor, filters)
        candidates = dedup_by_path(candidates)
        if profile.distance_threshold is not None:
            candidates = [c for c in candidates if c.distance <= profile.distance_threshold]
        if not candidates:
            return None

        terms = extract_search_terms(query)
        title_words = query_words_for_title_match(query)

        keyword_scores = self._title_keyword_scores(terms, limit, filters)
        vector_results = []
        for result in self.rank(candidates, profile):
            keyword_score = keyword_scores.get(result.path, (None, 0.0))[1]
            if keyword_score >= FUSION_THRESHOLD:
                result.score = clamp_score(result.score + FUSION_WEIGHT * keyword_score)
            vector_results.append(self._with_title_boost(result, title_words))

        seen = {c.chunk.path for c in candidates}
        keyword_results = [
            self._with_title_boost(SearchResult.from_chunk(chunk, score), title_words)
            for path, (chunk, score) in keyword_scores.items()
            if path not in seen
        ]
        seen.update(keyword_scores)

        vector_results = sort_results([r for r in vector_results if r.score >= profile.min_score])
        keyword_results = sort_results([r for r in keyword_results if r.score >= profile.min_score])

        reserved = min(max(MIN_KEYWORD_SLOTS, math.ceil(KEYWORD_SLOT_SHARE * limit)), len(keyword_results))
        if len(vector_results) + reserved > limit:
            vector_results = vector_results[:max(0, limit - reserved)]
        merged = vector_results + keyword_results[:limit - len(vector_results)]

        if len(merged) < limit:
            for chunk in self._fuzzy_title_matches(terms, limit - len(merged), filters, seen):
                result = self._with_title_boost(
                    SearchResult.from_chunk(chunk, FUZZY_TITLE_SCORE), title_words
                )
                if result.score >= profile.min_score:
                    merged.append(result)

        return SearchResponse(
            results=sort_results(merged)[:limit],
            degraded=False,
            tier=TIER_VECTOR,
            profile=profile.name,
        )

    def rank(self, candidates: List[VectorCandidate], profile: SearchProfile) -> List[SearchResult]:
        """Composite-score deduplicated candidates and sort them."""
        now = self.clock()
        similarities = normalize_distances([c.distance for c in candidates])

        results = []
        for candidate, similarity in zip(candidates, similarities):
            chunk = candidate.chunk
            score = composite_score(
                similarity=similarity,
                recency=recency_score(chunk.modified, chunk.content_type, now),
                confidence=chunk.confidence,
                content_type=chunk.content_type,
                profile=profile
            )
            results.append(SearchResult.from_chunk(chunk, score, candidate.distance))

        return sort_results(results)

    def _title_keyword_scores(
        self,
        terms: List[str],
        limit: int,
        filters: Optional[SearchFilter]
    ) -> Dict[str, Tuple[NoteChunk, float]]:
        """Path to (anchor chunk, keyword title score) for notes whose titles contain a term."""
        if not terms:
            return {}
        rows = self.repository.title_match_search(terms, limit * 2, filters)
        return {chunk.path: (chunk, keyword_title_score(chunk.title, terms)) for chunk, _ in rows}

    def _fuzzy_title_matches(
        self,
        terms: List[str],
        limit: int,
        filters: Optional[SearchFilter],
        seen: Set[str]
    ) -> List[NoteChunk]:
        """Most recent unseen notes with a title word one typo away from a long term."""
        if not any(len(t) >= MIN_FUZZY_TERM_LENGTH for t in terms):
            return []

        matches = []
        for batch in self.repository.iter_anchors(filters):
            for chunk in batch:
                if chunk.path in seen or not fuzzy_title_match(terms, chunk.title):
                    continue
                seen.add(chunk.path)
                matches.append(chunk)
                if len(matches) >= limit:
                    return matches
        return matches

    def _with_title_boost(self, result: SearchResult, title_words: List[str]) -> SearchResult:
        if title_words:
            boost = title_boost(title_words, result.title, result.path)
            if boost:
                result.score = clamp_score(result.score + boost)
        return result

    def _lexical_search(self, query: str, limit: int, filters: Optional[SearchFilter]) -> SearchResponse:
        """Full-text then keyword tier; always degraded."""
        hits, tier = self.lexical_index.search(query, limit, filters)
        results = [SearchResult.from_chunk(hit.chunk, hit.score) for hit in hits]
        return SearchResponse(
            results=sort_results(results),
            degraded=True,
            tier=tier,
            profile=self.profile.name,
        )


# =============================================================================
# Search Utilities
# =============================================================================

def create_searcher(config, read_only: bool = True, metrics: Optional[SearchMetrics] = None) -> HybridSearcher:
    """
    Create a fully configured hybrid searcher.

    Args:
        config: VaultConfig
        read_only: Open the vault database read-only
        metrics: Optional metrics collector

    Returns:
        Configured HybridSearcher
    """
    from core.embedding_provider import create_embedding_provider

    repository = NoteRepository(config.db_path, read_only=read_only)
    provider = create_embedding_provider(config.embedding.to_provider_config())

    return HybridSearcher(
        repository,
        provider,
        profile=config.search.profile,
        overfetch_factor=config.search.overfetch_factor,
        vault_name=config.vault_name,
        metrics=metrics,
    )


def search_vault(
    query: str,
    db_path,
    provider: Optional[EmbeddingProvider] = None,
    top_k: int = 10,
    **kwargs: Any
) -> SearchResponse:
    """
    Convenience function for one-off searches.

    Args:
        query: Search query
        db_path: Path to the vault database
        provider: Embedding provider (None for keyword-only)
        top_k: Max results
        **kwargs: Passed to HybridSearcher

    Returns:
        SearchResponse
    """
    searcher = HybridSearcher(NoteRepository(db_path, read_only=True), provider, **kwargs)
    return searcher.search(query, top_k=top_k)
