"""
Context Budget Tracking

Records which notes were injected into an assistant's context, detects
which of them the assistant actually referenced, and summarises how much of
the injected budget was used.

Reports are a tagged sum type: `get_budget_report` returns either a
`BudgetReport` or a `NoUsageData`, and callers switch on `report.kind`.

Usage:
    from memory.budget import log_injection, get_budget_report, ReportKind

    log_injection(repo, session_id, "session-start", paths, injected_text)
    detect_references(repo, session_id, assistant_reply)

    report = get_budget_report(repo, last_n=5)
    if report.kind is ReportKind.BUDGET:
        print(f"{report.utilization_rate:.0%} of injections referenced")
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Dict, Optional, Union

from database.models import UsageRecord
from database.repository import NoteRepository

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

LOW_UTILIZATION = 0.3
HIGH_UTILIZATION = 0.8
SOURCE_LOW_UTILIZATION = 0.2
SOURCE_MIN_INJECTIONS = 3
SOURCE_MAX_AVG_TOKENS = 500

NO_DATA_HINT = "Context usage tracking starts after context has been injected."

_SEPARATORS = re.compile(r'[–—_\-]')
_WHITESPACE = re.compile(r'\s+')
_DATE_PREFIX = re.compile(r'^\d{4}[-_]\d{2}[-_]\d{2}[-_ ]*')


# =============================================================================
# Report Types
# =============================================================================

class ReportKind(Enum):
    """Tag for budget report variants."""
    BUDGET = "budget"
    NO_DATA = "no_data"


@dataclass
class SourceStats:
    """Utilisation for one injection source."""
    injections: int = 0
    referenced: int = 0
    utilization_rate: float = 0.0
    total_tokens: int = 0
    avg_tokens_per_injection: int = 0

    def to_dict(self) -> dict:
        return {
            'injections': self.injections,
            'referenced': self.referenced,
            'utilization_rate': self.utilization_rate,
            'total_tokens': self.total_tokens,
            'avg_tokens_per_injection': self.avg_tokens_per_injection,
        }


@dataclass
class BudgetReport:
    """Context budget utilisation across one or more sessions."""
    sessions_analyzed: int
    total_injections: int
    total_tokens_injected: int
    referenced_injections: int
    utilization_rate: float
    per_source: Dict[str, SourceStats] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)
    kind: ReportKind = ReportKind.BUDGET

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'sessions_analyzed': self.sessions_analyzed,
            'total_injections': self.total_injections,
            'total_tokens_injected': self.total_tokens_injected,
            'referenced_injections': self.referenced_injections,
            'utilization_rate': self.utilization_rate,
            'per_source': {name: stats.to_dict() for name, stats in sorted(self.per_source.items())},
            'suggestions': self.suggestions,
        }


@dataclass
class NoUsageData:
    """No injections recorded for the requested window."""
    hint: str = NO_DATA_HINT
    kind: ReportKind = ReportKind.NO_DATA

    def to_dict(self) -> dict:
        return {'kind': self.kind.value, 'status': 'no data', 'hint': self.hint}


Report = Union[BudgetReport, NoUsageData]


# =============================================================================
# Text Matching
# =============================================================================

def estimate_tokens(text: str) -> int:
    """Rough token count (about four characters per token)."""
    return len(text or '') // CHARS_PER_TOKEN


def normalize_for_matching(text: str) -> str:
    """Turn dashes and underscores into spaces and collapse whitespace."""
    return _WHITESPACE.sub(' ', _SEPARATORS.sub(' ', text)).strip()


def title_words(filename: str) -> str:
    """Filename without a leading YYYY-MM-DD date, normalised and lower-cased."""
    return normalize_for_matching(_DATE_PREFIX.sub('', filename)).lower()


def _is_referenced(path: str, text_lower: str, text_normalized: str) -> bool:
    if path.lower() in text_lower:
        return True

    filename = Path(path).name
    if filename.endswith('.md'):
        filename = filename[:-3]
    filename_lower = filename.lower()
    if len(filename_lower) > 3 and filename_lower in text_lower:
        return True

    filename_normalized = normalize_for_matching(filename_lower)
    if len(filename_normalized) > 5 and filename_normalized in text_normalized:
        return True

    words = title_words(filename)
    return len(words) >= 3 and words in text_normalized


# =============================================================================
# Usage Tracking
# =============================================================================

def log_injection(
    repository: NoteRepository,
    session_id: str,
    source: str,
    injected_paths: List[str],
    injected_text: str
) -> UsageRecord:
    """Record one context injection."""
    record = UsageRecord(
        session_id=session_id,
        timestamp=datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
        source=source,
        injected_paths=list(injected_paths),
        estimated_tokens=estimate_tokens(injected_text),
    )
    repository.insert_usage(record)
    logger.debug(f"Logged {len(injected_paths)} injected note(s) for session {session_id} from {source}")
    return record


def detect_references(repository: NoteRepository, session_id: str, assistant_text: str) -> int:
    """
    Mark injections whose notes the assistant mentioned.

    A note counts as referenced when its path, its filename, or the title
    words of its filename appear in the assistant's text.

    Returns:
        Number of injections newly or already marked as referenced
    """
    records = repository.usage_by_session(session_id)
    if not records:
        return 0

    text_lower = (assistant_text or '').lower()
    text_normalized = normalize_for_matching(text_lower)

    referenced = 0
    for record in records:
        if any(_is_referenced(path, text_lower, text_normalized) for path in record.injected_paths):
            referenced += 1
            if not record.was_referenced:
                repository.mark_referenced(record.id)
    return referenced


# =============================================================================
# Reports
# =============================================================================

def _suggestions(utilization_rate: float, per_source: Dict[str, SourceStats]) -> List[str]:
    suggestions = []
    if utilization_rate < LOW_UTILIZATION:
        suggestions.append(
            "Low utilization rate (<30%). Consider raising the minimum confidence for context surfacing."
        )
    if utilization_rate > HIGH_UTILIZATION:
        suggestions.append("High utilization rate (>80%). Context surfacing is well-calibrated.")

    for name, stats in sorted(per_source.items()):
        if stats.utilization_rate < SOURCE_LOW_UTILIZATION and stats.injections > SOURCE_MIN_INJECTIONS:
            suggestions.append(
                f"{name}: Very low utilization ({stats.utilization_rate * 100:.0f}%). "
                f"Consider adjusting or disabling."
            )
        if stats.avg_tokens_per_injection > SOURCE_MAX_AVG_TOKENS:
            suggestions.append(
                f"{name}: High average tokens ({stats.avg_tokens_per_injection}). "
                f"Consider shorter snippets."
            )
    return suggestions


def get_budget_report(
    repository: NoteRepository,
    session_id: Optional[str] = None,
    last_n: int = 5
) -> Report:
    """
    Summarise context usage for one session or the last N sessions.

    Returns:
        BudgetReport, or NoUsageData when nothing was recorded
    """
    if session_id:
        records = repository.usage_by_session(session_id)
    else:
        records = repository.recent_usage(last_n)

    if not records:
        return NoUsageData()

    per_source: Dict[str, SourceStats] = {}
    sessions = set()
    total_tokens = 0
    referenced = 0

    for record in records:
        sessions.add(record.session_id)
        total_tokens += record.estimated_tokens
        stats = per_source.setdefault(record.source, SourceStats())
        stats.injections += 1
        stats.total_tokens += record.estimated_tokens
        if record.was_referenced:
            referenced += 1
            stats.referenced += 1

    for stats in per_source.values():
        stats.utilization_rate = round(stats.referenced / stats.injections, 3)
        stats.avg_tokens_per_injection = stats.total_tokens // stats.injections

    utilization_rate = referenced / len(records)
    return BudgetReport(
        sessions_analyzed=len(sessions),
        total_injections=len(records),
        total_tokens_injected=total_tokens,
        referenced_injections=referenced,
        utilization_rate=round(utilization_rate, 3),
        per_source=per_source,
        suggestions=_suggestions(utilization_rate, per_source),
    )


def save_report(report: Report, output_path) -> Path:
    """Write a report as indented JSON, creating parent directories."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(report.to_dict(), f, indent=2)
    logger.info(f"Saved {report.kind.value} report to {output_path}")
    return output_path
