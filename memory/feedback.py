"""
Explicit Relevance Feedback

Lets a caller boost or penalise stored note confidence. Confidence feeds the
composite score, so feedback changes future rankings.

    up:   confidence = min(1.0, confidence + 0.2), access_count += 5
    down: confidence = max(0.05, confidence - 0.3)

Patterns are vault-relative paths where '*' matches any run of characters.
Each call applies its full delta to every matched note in one transaction;
repeated calls converge on the bounds and never pass them.

Usage:
    from memory.feedback import FeedbackAdjuster

    adjuster = FeedbackAdjuster(repo)
    changes = adjuster.adjust("decisions/*", "up")
"""

import logging
from dataclasses import dataclass
from typing import List

from core.errors import InvalidDirectionError, InvalidInputError, NotFoundError
from database.repository import NoteRepository, like_escape

logger = logging.getLogger(__name__)

CONFIDENCE_CEILING = 1.0
CONFIDENCE_FLOOR = 0.05
BOOST_UP_DELTA = 0.2
BOOST_DOWN_DELTA = 0.3
BOOST_UP_ACCESS = 5

DIRECTION_UP = 'up'
DIRECTION_DOWN = 'down'
DIRECTIONS = (DIRECTION_UP, DIRECTION_DOWN)


@dataclass
class FeedbackChange:
    """Confidence change applied to one note."""
    path: str
    title: str
    old_confidence: float
    new_confidence: float
    access_count: int

    def to_dict(self) -> dict:
        return {
            'path': self.path,
            'title': self.title,
            'old_confidence': self.old_confidence,
            'new_confidence': self.new_confidence,
            'access_count': self.access_count,
        }


def glob_to_like(pattern: str) -> str:
    """Translate a '*' glob into a LIKE pattern with other wildcards escaped."""
    return '%'.join(like_escape(part) for part in pattern.split('*'))


def raise_confidence(confidence: float) -> float:
    return round(min(CONFIDENCE_CEILING, confidence + BOOST_UP_DELTA), 3)


def lower_confidence(confidence: float) -> float:
    return round(max(CONFIDENCE_FLOOR, confidence - BOOST_DOWN_DELTA), 3)


class FeedbackAdjuster:
    """Boost or penalise confidence for notes matching a path pattern."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def boost_up(self, pattern: str) -> List[FeedbackChange]:
        return self.adjust(pattern, DIRECTION_UP)

    def boost_down(self, pattern: str) -> List[FeedbackChange]:
        return self.adjust(pattern, DIRECTION_DOWN)

    def adjust(self, pattern: str, direction: str) -> List[FeedbackChange]:
        """
        Apply feedback to every note whose path matches pattern.

        Args:
            pattern: Path or glob ('*' matches anything)
            direction: 'up' or 'down'

        Returns:
            One FeedbackChange per matched note, ordered by path

        Raises:
            InvalidInputError: Empty pattern
            InvalidDirectionError: Direction is not 'up' or 'down'
            NotFoundError: Nothing matched
        """
        if pattern is None or not pattern.strip():
            raise InvalidInputError("Feedback path pattern must not be empty")

        normalized = (direction or '').strip().lower()
        if normalized not in DIRECTIONS:
            raise InvalidDirectionError(
                f"Invalid feedback direction '{direction}' (expected 'up' or 'down')",
                direction=direction
            )

        if normalized == DIRECTION_UP:
            rows = self.repository.update_confidence(
                glob_to_like(pattern.strip()), raise_confidence, access_boost=BOOST_UP_ACCESS
            )
        else:
            rows = self.repository.update_confidence(glob_to_like(pattern.strip()), lower_confidence)

        if not rows:
            raise NotFoundError(f"No notes match '{pattern}'", pattern=pattern)

        changes = [
            FeedbackChange(
                path=row['path'],
                title=row['title'],
                old_confidence=row['old'],
                new_confidence=row['new'],
                access_count=row['access_count'],
            )
            for row in rows
        ]
        logger.info(f"Feedback '{normalized}' applied to {len(changes)} note(s) matching '{pattern}'")
        return changes
