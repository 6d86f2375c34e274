"""
Search System for NoteVault

Provides:
- Vector k-NN over stored note embeddings
- Full-text and keyword fallback tiers
- Composite scoring with named profiles and title-match signals
- Federated search across vaults

Usage:
    from search import HybridSearcher, FederatedSearcher

    searcher = HybridSearcher(repo, provider)
    response = searcher.search("find auth decisions", top_k=10)

    federated = FederatedSearcher(provider)
    response = federated.search("auth", top_k=10, vaults={"work": "work.db"})
"""

from .hybrid_search import HybridSearcher, SearchResult, SearchResponse
from .federation import (
    FederatedSearcher,
    FederatedSearchResult,
    FederatedSearchResponse,
    create_federated_searcher,
)
from .scoring import SearchProfile, PROFILES, get_profile

__all__ = [
    'HybridSearcher',
    'SearchResult',
    'SearchResponse',
    'FederatedSearcher',
    'FederatedSearchResult',
    'FederatedSearchResponse',
    'create_federated_searcher',
    'SearchProfile',
    'PROFILES',
    'get_profile',
]
