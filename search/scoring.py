"""
Composite Scoring for Vector Search Results

Blends semantic similarity, recency and stored confidence into one ranking
score, with a small additive boost for privileged content types.

    similarity = 1 - (distance - min_distance) / range
    range      = max(max_distance - min_distance, 1.0)
    composite  = wR * similarity + wT * recency + wC * confidence + boost

The range floor keeps degenerate candidate sets (one candidate, or all
distances equal) at similarity 1.0 instead of dividing by zero.

Profiles:
- precise:  relevance-heavy, two results, high minimum score
- balanced: default blend
- broad:    looser distance gate, more weight on recency and confidence
- pi:       two results for low-resource machines

Each profile also carries a raw L2 distance threshold. Candidates farther
than it are dropped before normalisation, so min-max scaling cannot turn a
set of uniformly distant notes into confident matches.

Usage:
    from search.scoring import get_profile, normalize_distances, composite_score

    profile = get_profile("balanced")
    similarities = normalize_distances([c.distance for c in candidates])
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from core.errors import InvalidInputError

MIN_DISTANCE_RANGE = 1.0

# Additive boosts for content that should win close contests
CONTENT_TYPE_BOOSTS = {
    'decision': 0.05,
    'handoff': 0.05,
}


@dataclass(frozen=True)
class SearchProfile:
    """Named ranking configuration."""
    name: str
    relevance_weight: float
    recency_weight: float
    confidence_weight: float
    max_results: int
    min_score: float
    distance_threshold: Optional[float] = None
    description: str = ''
    token_warning: str = ''

    def with_recency_emphasis(self) -> 'SearchProfile':
        """
        Shift weight toward recency for queries about recent activity.

        Doubles the recency weight and rescales so the weights keep their total.
        """
        total = self.relevance_weight + self.recency_weight + self.confidence_weight
        boosted = self.recency_weight * 2 or 0.2
        scale = total / (self.relevance_weight + boosted + self.confidence_weight)
        return replace(
            self,
            relevance_weight=round(self.relevance_weight * scale, 4),
            recency_weight=round(boosted * scale, 4),
            confidence_weight=round(self.confidence_weight * scale, 4),
        )

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'relevance_weight': self.relevance_weight,
            'recency_weight': self.recency_weight,
            'confidence_weight': self.confidence_weight,
            'max_results': self.max_results,
            'min_score': self.min_score,
            'distance_threshold': self.distance_threshold,
            'description': self.description,
            'token_warning': self.token_warning,
        }


PROFILES: Dict[str, SearchProfile] = {
    'precise': SearchProfile(
        name='precise',
        relevance_weight=0.6,
        recency_weight=0.1,
        confidence_weight=0.3,
        max_results=2,
        min_score=0.75,
        distance_threshold=14.0,
        description='Fewer, highly relevant results',
        token_warning='Uses fewer tokens per query',
    ),
    'balanced': SearchProfile(
        name='balanced',
        relevance_weight=0.5,
        recency_weight=0.25,
        confidence_weight=0.25,
        max_results=4,
        min_score=0.35,
        distance_threshold=16.2,
        description='Default balance of relevance and coverage',
    ),
    'broad': SearchProfile(
        name='broad',
        relevance_weight=0.35,
        recency_weight=0.3,
        confidence_weight=0.35,
        max_results=4,
        min_score=0.55,
        distance_threshold=18.0,
        description='More context, casts a wider net',
        token_warning='Uses about twice the tokens per query',
    ),
    'pi': SearchProfile(
        name='pi',
        relevance_weight=0.6,
        recency_weight=0.15,
        confidence_weight=0.25,
        max_results=2,
        min_score=0.65,
        distance_threshold=15.0,
        description='Low-resource machines such as a Raspberry Pi',
        token_warning='Keeps CPU, memory and token use low',
    ),
}

DEFAULT_PROFILE = 'balanced'


def get_profile(name: str) -> SearchProfile:
    """
    Look up a profile by name.

    Raises:
        InvalidInputError: If the profile is unknown
    """
    profile = PROFILES.get(name)
    if profile is None:
        raise InvalidInputError(
            f"Unknown search profile '{name}' (expected one of {', '.join(PROFILES)})",
            profile=name
        )
    return profile


def normalize_distances(distances: List[float]) -> List[float]:
    """Min-max normalize raw distances into similarities in [0, 1]."""
    if not distances:
        return []

    min_distance = min(distances)
    distance_range = max(max(distances) - min_distance, MIN_DISTANCE_RANGE)
    return [1.0 - (d - min_distance) / distance_range for d in distances]


def content_type_boost(content_type: str) -> float:
    return CONTENT_TYPE_BOOSTS.get(content_type, 0.0)


def composite_score(
    similarity: float,
    recency: float,
    confidence: float,
    content_type: str,
    profile: SearchProfile
) -> float:
    """Weighted blend of the three signals plus boost, clamped to [0, 1] and rounded."""
    score = (
        profile.relevance_weight * similarity
        + profile.recency_weight * recency
        + profile.confidence_weight * confidence
        + content_type_boost(content_type)
    )
    return round(max(0.0, min(1.0, score)), 3)
