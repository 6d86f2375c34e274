"""
Pinned Notes

Pinned notes are surfaced unconditionally, outside of relevance ranking.
Pins live in their own table so they survive a reindex, and pinning never
touches confidence.
"""

import logging
from typing import List

from database.models import NoteChunk
from database.repository import NoteRepository

logger = logging.getLogger(__name__)


class PinManager:
    """Pin membership for one vault."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    def pin(self, path: str):
        """Pin a note. Raises NotFoundError if the note does not exist."""
        self.repository.pin_note(path)
        logger.info(f"Pinned {path}")

    def unpin(self, path: str):
        """Unpin a note. Raises NotFoundError if it was not pinned."""
        self.repository.unpin_note(path)
        logger.info(f"Unpinned {path}")

    def is_pinned(self, path: str) -> bool:
        return self.repository.is_pinned(path)

    def pinned_paths(self) -> List[str]:
        return self.repository.pinned_paths()

    def pinned_notes(self) -> List[NoteChunk]:
        return self.repository.pinned_notes()

    def always_include(self, notes: List[NoteChunk]) -> List[NoteChunk]:
        """
        Prepend pinned notes to a context list.

        Pinned notes come first in pin order; any pinned note already in
        `notes` is not repeated.
        """
        pinned = self.repository.pinned_notes()
        pinned_set = {note.path for note in pinned}
        return pinned + [note for note in notes if note.path not in pinned_set]
