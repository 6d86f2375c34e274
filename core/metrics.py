"""
Search Metrics for NoteVault

Provides thread-safe metrics collection for:
- Searches by tier (vector, fts, keyword)
- Degraded (fallback) result rates
- Embedding provider failures
- Vaults skipped during federated search

Usage:
    from core.metrics import get_metrics

    metrics = get_metrics()
    searcher = HybridSearcher(repo, provider, metrics=metrics)
    ...
    print(metrics.get_summary())
"""

import logging
import threading
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)

MAX_EVENTS = 5000


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class SearchEvent:
    """A single completed search."""
    vault: str
    tier: str
    degraded: bool
    result_count: int
    latency_ms: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "vault": self.vault,
            "tier": self.tier,
            "degraded": self.degraded,
            "result_count": self.result_count,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp.isoformat()
        }


# =============================================================================
# Metrics Collector
# =============================================================================

class SearchMetrics:
    """
    Thread-safe search metrics collector.

    Federated searches record from worker threads, so every mutation happens
    under a single re-entrant lock.
    """

    def __init__(self, max_events: int = MAX_EVENTS):
        self.max_events = max_events
        self._lock = threading.RLock()
        self._events: List[SearchEvent] = []
        self._tier_counts: Dict[str, int] = defaultdict(int)
        self._provider_failures: Dict[str, int] = defaultdict(int)
        self._vault_failures: Dict[str, int] = defaultdict(int)
        self._total_searches = 0
        self._degraded_searches = 0

    def record_search(
        self,
        vault: str,
        tier: str,
        degraded: bool,
        result_count: int,
        latency_ms: float
    ):
        """Record a completed search."""
        with self._lock:
            self._total_searches += 1
            self._tier_counts[tier] += 1
            if degraded:
                self._degraded_searches += 1

            self._events.append(SearchEvent(
                vault=vault,
                tier=tier,
                degraded=degraded,
                result_count=result_count,
                latency_ms=latency_ms
            ))
            if len(self._events) > self.max_events:
                self._events = self._events[-(self.max_events // 2):]

    def record_provider_failure(self, provider: str):
        """Record an embedding call that fell back to lexical search."""
        with self._lock:
            self._provider_failures[provider] += 1

    def record_vault_failure(self, vault: str, reason: str):
        """Record a vault skipped during federated search."""
        with self._lock:
            self._vault_failures[vault] += 1
        logger.debug(f"Vault failure recorded for {vault}: {reason}")

    def recent_events(self, limit: int = 20) -> List[SearchEvent]:
        with self._lock:
            return list(self._events[-limit:])

    def _latency_stats(self) -> Dict[str, float]:
        latencies = [e.latency_ms for e in self._events]
        if not latencies:
            return {"avg_ms": 0.0, "p50_ms": 0.0, "p95_ms": 0.0, "max_ms": 0.0}

        ordered = sorted(latencies)
        p95_index = min(len(ordered) - 1, int(len(ordered) * 0.95))
        return {
            "avg_ms": round(statistics.mean(ordered), 2),
            "p50_ms": round(statistics.median(ordered), 2),
            "p95_ms": round(ordered[p95_index], 2),
            "max_ms": round(ordered[-1], 2),
        }

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate counters and latency statistics."""
        with self._lock:
            total = self._total_searches
            return {
                "generated_at": datetime.now().isoformat(),
                "total_searches": total,
                "degraded_searches": self._degraded_searches,
                "degraded_rate": round(self._degraded_searches / total, 3) if total else 0.0,
                "tiers": dict(self._tier_counts),
                "provider_failures": dict(self._provider_failures),
                "vault_failures": dict(self._vault_failures),
                "latency": self._latency_stats(),
            }

    def reset(self):
        """Reset all statistics."""
        with self._lock:
            self._events.clear()
            self._tier_counts.clear()
            self._provider_failures.clear()
            self._vault_failures.clear()
            self._total_searches = 0
            self._degraded_searches = 0


_metrics: Optional[SearchMetrics] = None
_metrics_lock = threading.Lock()


def get_metrics() -> SearchMetrics:
    """Get the process-wide metrics collector."""
    global _metrics

    with _metrics_lock:
        if _metrics is None:
            _metrics = SearchMetrics()
        return _metrics


def reset_metrics():
    """Discard the process-wide metrics collector."""
    global _metrics

    with _metrics_lock:
        _metrics = None
