"""
Federated Search Across Vaults

Runs one query against several independent vaults concurrently and merges
the results into a single ranked list.

Features:
- One read-only repository per vault, opened inside its worker thread
- One worker per vault, each held to the same timeout, so a slow or broken
  vault cannot stall the others
- Query embedding computed once and shared by every vault
- Results tagged with their origin vault and deduplicated on (vault, path)
- Failed vaults reported as warnings; only zero usable vaults is an error

Known limitation: similarity is normalised within each vault before the
global sort, so scores from different vaults are comparable only
approximately. There is no single calibrated distance scale across vaults.

Usage:
    from search.federation import FederatedSearcher

    federated = FederatedSearcher(provider)
    response = federated.search("auth decisions", top_k=10, vaults={
        "work": "/vaults/work/.notevault/vault.db",
        "personal": "/vaults/personal/.notevault/vault.db",
    })
    for warning in response.warnings:
        print(warning)
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Dict, Optional, Union

from core.embedding_provider import EmbeddingProvider
from core.errors import (
    VaultError,
    InvalidInputError,
    NoUsableVaultsError,
    ProviderUnavailableError,
)
from core.metrics import SearchMetrics
from database.repository import NoteRepository
from .hybrid_search import HybridSearcher, SearchResult, validate_query
from .lexical import extract_search_terms, term_coverage
from .scoring import DEFAULT_PROFILE

logger = logging.getLogger(__name__)

MAX_FEDERATED_VAULTS = 50
DEFAULT_VAULT_TIMEOUT = 5.0


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class FederatedSearchResult(SearchResult):
    """A search result tagged with the vault it came from."""
    vault: str = ''

    @classmethod
    def from_result(cls, result: SearchResult, vault: str) -> 'FederatedSearchResult':
        return cls(vault=vault, **{k: v for k, v in result.to_dict().items()})

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['vault'] = self.vault
        return data


class OutcomeKind(Enum):
    """Tag for per-vault outcomes."""
    HITS = "hits"
    FAILURE = "failure"


@dataclass
class VaultHits:
    """A vault that answered."""
    vault: str
    results: List[FederatedSearchResult]
    degraded: bool
    tier: str
    kind: OutcomeKind = OutcomeKind.HITS

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'vault': self.vault,
            'result_count': len(self.results),
            'degraded': self.degraded,
            'tier': self.tier,
        }


@dataclass
class VaultFailure:
    """A vault that was skipped."""
    vault: str
    reason: str
    error_type: str
    kind: OutcomeKind = OutcomeKind.FAILURE

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'vault': self.vault,
            'reason': self.reason,
            'error_type': self.error_type,
        }


VaultOutcome = Union[VaultHits, VaultFailure]


@dataclass
class FederatedSearchResponse:
    """Merged results plus per-vault outcomes."""
    results: List[FederatedSearchResult] = field(default_factory=list)
    degraded: bool = False
    outcomes: List[VaultOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        return [
            f"vault '{o.vault}' skipped: {o.reason}"
            for o in self.outcomes
            if o.kind is OutcomeKind.FAILURE
        ]

    def to_dict(self) -> dict:
        return {
            'results': [r.to_dict() for r in self.results],
            'degraded': self.degraded,
            'warnings': self.warnings,
            'outcomes': [o.to_dict() for o in self.outcomes],
        }


# =============================================================================
# Federated Searcher
# =============================================================================

class FederatedSearcher:
    """
    Fan a query out to several vaults and merge the answers.

    Every vault gets its own worker thread, so a vault that hangs can only
    cost its own slot in the results.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        profile: str = DEFAULT_PROFILE,
        vault_timeout: float = DEFAULT_VAULT_TIMEOUT,
        max_vaults: int = MAX_FEDERATED_VAULTS,
        metrics: Optional[SearchMetrics] = None,
        vaults: Optional[Dict[str, str]] = None
    ):
        """
        Initialize federated searcher.

        Args:
            provider: Embedding provider shared by all vaults (None for keyword-only)
            profile: Ranking profile used in every vault
            vault_timeout: Seconds each vault may take before it is skipped
            max_vaults: Upper bound on vaults per query
            metrics: Optional metrics collector
            vaults: Default mapping of vault name to database path, searched
                when a query names no vaults of its own
        """
        self.provider = provider
        self.profile = profile
        self.vault_timeout = vault_timeout
        self.max_vaults = max_vaults
        self.metrics = metrics
        self.vaults = dict(vaults or {})

    def search(
        self,
        query: str,
        top_k: int,
        vaults: Optional[Dict[str, str]] = None,
        domain: Optional[str] = None,
        workstream: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> FederatedSearchResponse:
        """
        Search every vault and merge.

        Args:
            query: Search query
            top_k: Global result limit (also the per-vault fetch size)
            vaults: Mapping of vault name to database path (defaults to the
                searcher's configured vaults)
            domain: Domain filter (whole value, case-insensitive)
            workstream: Workstream filter (whole value, case-insensitive)
            tags: Keep notes carrying any of these tags

        Returns:
            FederatedSearchResponse sorted by score, then vault, then path

        Raises:
            InvalidInputError: Empty query, no vaults, or too many vaults
            NoUsableVaultsError: Every vault failed
        """
        query, top_k = validate_query(query, top_k)
        if vaults is None:
            vaults = self.vaults
        if not vaults:
            raise InvalidInputError("No vaults to search")
        if len(vaults) > self.max_vaults:
            raise InvalidInputError(
                f"too many vaults: {len(vaults)} (max {self.max_vaults})",
                count=len(vaults)
            )

        filters = {'domain': domain, 'workstream': workstream, 'tags': tags}
        query_vector = self._embed_query(query)
        outcomes = self._run_all(query, top_k, vaults, filters, query_vector)

        usable = [o for o in outcomes if o.kind is OutcomeKind.HITS]
        for outcome in outcomes:
            if outcome.kind is OutcomeKind.FAILURE:
                logger.warning(
                    f"Skipping vault '{outcome.vault}': {outcome.reason}",
                    extra={'vault': outcome.vault}
                )
                if self.metrics is not None:
                    self.metrics.record_vault_failure(outcome.vault, outcome.error_type)

        if not usable:
            raise NoUsableVaultsError(
                f"All {len(vaults)} vault(s) failed",
                failures=[o.to_dict() for o in outcomes]
            )

        merged = self._merge(usable, query, query_vector is not None)
        return FederatedSearchResponse(
            results=merged[:top_k],
            degraded=query_vector is None or any(o.degraded for o in usable),
            outcomes=sorted(outcomes, key=lambda o: o.vault),
        )

    def _embed_query(self, query: str) -> Optional[List[float]]:
        if self.provider is None:
            return None
        try:
            return self.provider.get_query_embedding(query)
        except ProviderUnavailableError as e:
            logger.warning(f"Embedding provider unavailable, federated search is lexical-only: {e}")
            if self.metrics is not None:
                self.metrics.record_provider_failure(self.provider.name)
            return None

    def _search_vault(
        self,
        name: str,
        db_path: str,
        query: str,
        top_k: int,
        filters: Dict[str, Any],
        query_vector: Optional[List[float]]
    ) -> VaultOutcome:
        """Search one vault in a worker thread with its own read-only handle."""
        try:
            repository = NoteRepository(db_path, read_only=True)
            searcher = HybridSearcher(
                repository,
                # The shared vector was already computed; a vault without one never calls out
                self.provider if query_vector is not None else None,
                profile=self.profile,
                vault_name=name,
                metrics=self.metrics,
            )
            response = searcher.search(query, top_k=top_k, query_vector=query_vector, **filters)
        except VaultError as e:
            return VaultFailure(vault=name, reason=e.message, error_type=e.error_type)
        except sqlite3.DatabaseError as e:
            return VaultFailure(vault=name, reason=str(e), error_type='store_error')

        return VaultHits(
            vault=name,
            results=[FederatedSearchResult.from_result(r, name) for r in response.results],
            degraded=response.degraded,
            tier=response.tier,
        )

    def _run_all(
        self,
        query: str,
        top_k: int,
        vaults: Dict[str, str],
        filters: Dict[str, Any],
        query_vector: Optional[List[float]]
    ) -> List[VaultOutcome]:
        """
        Run every vault at once; vaults still running after vault_timeout
        become failures.

        The pool has one worker per vault, so each vault starts on submission
        and the shared deadline is also each vault's own.
        """
        executor = ThreadPoolExecutor(max_workers=len(vaults), thread_name_prefix='vault-search')
        try:
            futures = {
                executor.submit(
                    self._search_vault, name, str(path), query, top_k, filters, query_vector
                ): name
                for name, path in sorted(vaults.items())
            }
            done, _ = wait(futures, timeout=self.vault_timeout)

            outcomes = []
            for future, name in futures.items():
                if future in done:
                    outcomes.append(future.result())
                else:
                    outcomes.append(VaultFailure(
                        vault=name,
                        reason=f"timed out after {self.vault_timeout:.1f}s",
                        error_type='timeout'
                    ))
            return outcomes
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _merge(
        self,
        outcomes: List[VaultHits],
        query: str,
        semantic: bool
    ) -> List[FederatedSearchResult]:
        """
        Merge per-vault results.

        With a shared query embedding, results are ordered by score. Without
        one every vault used a lexical tier, so results are ordered by how many
        query terms each note covers, which means the same thing in every vault.
        """
        seen = set()
        merged = []
        for outcome in outcomes:
            for result in outcome.results:
                key = (result.vault, result.path)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(result)

        if semantic:
            return sorted(merged, key=lambda r: (-r.score, r.vault, r.path))

        terms = extract_search_terms(query) or [query.lower()]
        return sorted(
            merged,
            key=lambda r: (
                -r.score,
                -term_coverage(terms, f"{r.title} {r.snippet}"),
                r.vault,
                r.path,
            )
        )


# =============================================================================
# Search Utilities
# =============================================================================

def create_federated_searcher(config, metrics: Optional[SearchMetrics] = None) -> FederatedSearcher:
    """
    Create a federated searcher from configuration.

    The configured vault is searched alongside every vault listed under
    federation.vaults; a listed vault with the same name takes precedence.

    Args:
        config: VaultConfig
        metrics: Optional metrics collector

    Returns:
        Configured FederatedSearcher
    """
    from core.embedding_provider import create_embedding_provider

    provider = create_embedding_provider(config.embedding.to_provider_config())
    vaults = {config.vault_name: str(config.db_path)}
    vaults.update(config.federation.vaults)

    return FederatedSearcher(
        provider,
        profile=config.search.profile,
        vault_timeout=config.federation.vault_timeout,
        max_vaults=config.federation.max_vaults,
        metrics=metrics,
        vaults=vaults,
    )
