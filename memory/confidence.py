"""
Note Confidence and Recency

Per-content-type decay and baseline confidence for vault notes.

Decay half-lives (days):
- decision, hub: never decay
- research, project: 90
- note: 60 (also the default)
- handoff, progress: 30

Usage:
    from memory.confidence import recency_score, compute_confidence

    recency = recency_score(note.modified, note.content_type)
    confidence = compute_confidence("decision", note.modified, access_count=3)
"""

import math
import time
from typing import List, Optional

SECONDS_PER_DAY = 86400.0

# None means the type never decays
DECAY_HALF_LIFE_DAYS = {
    'decision': None,
    'hub': None,
    'research': 90.0,
    'project': 90.0,
    'note': 60.0,
    'handoff': 30.0,
    'progress': 30.0,
}

DEFAULT_HALF_LIFE_DAYS = 60.0

TYPE_BASELINES = {
    'decision': 0.9,
    'hub': 0.85,
    'research': 0.7,
    'project': 0.65,
    'handoff': 0.6,
    'progress': 0.5,
    'note': 0.5,
}

RECENCY_KEYWORDS = (
    'recent', 'recently', 'lately', 'today', 'yesterday',
    'this week', 'last week', 'this month', 'last month',
    'last session', 'previous session', 'earlier today',
    'worked on', 'changed', 'modified',
    'updated', 'latest', 'newest', 'last time',
    'last night', 'left off', 'up to speed', 'catch me up',
    'where were we', 'bring me up', 'what happened',
    'handoff', 'hand off', 'hand-off',
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def recency_score(modified: float, content_type: str, now: Optional[float] = None) -> float:
    """
    Half-life decay of a note's age, in [0, 1].

    Monotonic non-increasing in age; 1.0 for notes modified now or in the
    future and for types that never decay.
    """
    half_life = DECAY_HALF_LIFE_DAYS.get(content_type, DEFAULT_HALF_LIFE_DAYS)
    if half_life is None:
        return 1.0

    if now is None:
        now = time.time()
    age_days = (now - modified) / SECONDS_PER_DAY
    if age_days <= 0:
        return 1.0

    return math.pow(0.5, age_days / half_life)


def compute_confidence(
    content_type: str,
    modified: float,
    access_count: int = 0,
    has_review_by: bool = False,
    now: Optional[float] = None
) -> float:
    """
    Initial confidence for a freshly indexed note.

    Blends the type baseline, recency, a log-scaled access boost (capped at
    0.15) and a small bonus for notes with a review date.
    """
    baseline = TYPE_BASELINES.get(content_type, 0.5)
    recency = recency_score(modified, content_type, now)
    access_boost = min(0.15, math.log2(access_count + 1) / 10)
    review_boost = 0.05 if has_review_by else 0.0

    confidence = 0.5 * baseline + 0.35 * recency + access_boost + review_boost
    return round(_clamp(confidence), 3)


def infer_content_type(path: str, explicit_type: str = '', tags: Optional[List[str]] = None) -> str:
    """
    Decide a note's content type.

    An explicit, known type wins; otherwise path keywords, then tags, then 'note'.
    """
    if explicit_type:
        lowered = explicit_type.strip().lower()
        if lowered in DECAY_HALF_LIFE_DAYS:
            return lowered

    path_lower = path.lower()
    if 'handoff' in path_lower or 'session' in path_lower:
        return 'handoff'
    if 'decision' in path_lower:
        return 'decision'
    if 'research' in path_lower:
        return 'research'
    if 'project' in path_lower:
        return 'project'
    if 'hub' in path_lower or 'moc' in path_lower or 'index' in path_lower:
        return 'hub'

    tag_set = {t.lower() for t in (tags or [])}
    for content_type in ('decision', 'research', 'handoff'):
        if content_type in tag_set:
            return content_type

    return 'note'


def has_recency_intent(query: str) -> bool:
    """Whether a query asks about recent activity ("what did we change lately")."""
    lowered = query.lower()
    return any(keyword in lowered for keyword in RECENCY_KEYWORDS)
