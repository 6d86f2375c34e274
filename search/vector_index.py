"""
Vector Index over Stored Embeddings

Brute-force L2 nearest-neighbour search that streams embedding blobs from the
repository in batches and keeps only the running top-k, so memory stays
bounded by the batch size rather than the corpus.

Usage:
    from search.vector_index import VectorIndex

    index = VectorIndex(repo)
    candidates = index.search(query_vector, k=50)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from core.errors import EmbeddingMismatchError
from database.models import NoteChunk, SearchFilter, VECTOR_DTYPE
from database.repository import NoteRepository

logger = logging.getLogger(__name__)


@dataclass
class VectorCandidate:
    """A chunk with its raw distance from the query."""
    chunk: NoteChunk
    distance: float


class VectorIndex:
    """Nearest-neighbour lookup against one vault's stored embeddings."""

    def __init__(self, repository: NoteRepository, batch_size: int = 1024):
        self.repository = repository
        self.batch_size = batch_size

    def search(
        self,
        query_vector,
        k: int,
        filters: Optional[SearchFilter] = None
    ) -> List[VectorCandidate]:
        """
        Find the k chunks closest to query_vector.

        Args:
            query_vector: Query embedding
            k: Number of chunks to return
            filters: Metadata filter applied before truncation

        Returns:
            Candidates ordered by (distance, path, chunk index)

        Raises:
            EmbeddingMismatchError: If a stored vector has different dimensions
        """
        if k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        dims = query.shape[0]

        best_ids = np.empty(0, dtype=np.int64)
        best_distances = np.empty(0, dtype=np.float64)

        for batch in self.repository.iter_vectors(filters=filters, batch_size=self.batch_size):
            ids = np.fromiter((row_id for row_id, _ in batch), dtype=np.int64, count=len(batch))

            for row_id, blob in batch:
                if len(blob) != dims * VECTOR_DTYPE.itemsize:
                    raise EmbeddingMismatchError(
                        f"Stored vector has {len(blob) // VECTOR_DTYPE.itemsize} dimensions, "
                        f"query has {dims}; run a forced reindex",
                        stored_dims=len(blob) // VECTOR_DTYPE.itemsize,
                        query_dims=dims
                    )

            matrix = np.frombuffer(b''.join(blob for _, blob in batch), dtype=VECTOR_DTYPE)
            matrix = matrix.reshape(len(batch), dims).astype(np.float64)
            distances = np.linalg.norm(matrix - query, axis=1)

            all_ids = np.concatenate([best_ids, ids])
            all_distances = np.concatenate([best_distances, distances])
            order = np.lexsort((all_ids, all_distances))[:k]
            best_ids = all_ids[order]
            best_distances = all_distances[order]

        if best_ids.size == 0:
            return []

        chunks = self.repository.get_chunks(best_ids.tolist())
        candidates = [
            VectorCandidate(chunk=chunks[int(row_id)], distance=float(distance))
            for row_id, distance in zip(best_ids, best_distances)
            if int(row_id) in chunks
        ]
        candidates.sort(key=lambda c: (c.distance, c.chunk.path, c.chunk.chunk_id))

        logger.debug(f"Vector search returned {len(candidates)} candidates (k={k})")
        return candidates
