"""
Match Index: 1:N identification over enrolled embeddings.

The index holds a gallery of IdentityTemplates and a flat search structure
built from them: a (M, L) matrix of reference vectors and, for each row,
the position of the identity that owns it. With mean-descriptor mode on,
an identity that carries a mean embedding contributes one row; otherwise
every captured embedding is a row.

Queries are exact nearest-neighbor searches under Euclidean distance.
The linear scan is O(M) per query, which is fine for tens to low hundreds
of identities. NearestNeighborBackend is the seam for an approximate
index; any backend must return the same answer as LinearScanBackend on
exact cases, including the tie-break (first row in load order).

Confidence is an exponential decay of the distance:
    confidence = clamp(exp(-distance / match_threshold) * 100, 0, 100)
so distance 0 gives 100 and distance == match_threshold gives about 36.8.

Usage:
    from faceid.matching import MatchIndex, MatchStatus

    index = MatchIndex({"match_threshold": 0.6})
    index.load_from_storage(store)

    outcome = index.find_best_match(embedding)
    if outcome.status == MatchStatus.MATCHED:
        print(outcome.user.user_name, f"{outcome.confidence:.1f}%")
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import ValidationError

from faceid.errors import FaceIdError, InvalidGalleryRecordError
from faceid.gallery_io import parse_records, record_to_template
from faceid.template_store import IdentityTemplate, TemplateStorage
from faceid.vector_ops import distances_to, to_embedding

logger = logging.getLogger(__name__)


class MatchStatus(str, Enum):
    """Classification of a best-match query."""

    MATCHED = "matched"
    NO_MATCH = "no_match"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RegisteredUser:
    """Gallery entry summary kept alongside the search index."""

    user_id: str
    user_name: str
    descriptor_count: int
    has_mean_descriptor: bool


@dataclass
class MatchOutcome:
    """
    Result of find_best_match().

    Attributes:
        status: MATCHED, NO_MATCH or UNKNOWN.
        user: The matched identity (MATCHED only).
        distance: Best distance found; +inf for UNKNOWN. NO_MATCH keeps
                  the best distance for diagnostics.
        confidence: 0-100; always 0 unless MATCHED.
        is_high_confidence: distance < high_confidence_threshold.
        match_time_ms: Time spent scanning the index.
    """

    status: MatchStatus
    user: Optional[RegisteredUser] = None
    distance: float = math.inf
    confidence: float = 0.0
    is_high_confidence: bool = False
    match_time_ms: float = 0.0

    @property
    def is_match(self) -> bool:
        return self.status == MatchStatus.MATCHED


@dataclass
class TopMatch:
    """One identity in a find_top_matches() ranking."""

    user: RegisteredUser
    distance: float
    confidence: float
    is_match: bool


@dataclass(frozen=True, eq=False)
class SearchIndex:
    """
    Immutable snapshot of the flat search structure.

    Attributes:
        users: Gallery entries in load order.
        vectors: (M, L) float64 reference matrix.
        owners: (M,) position in `users` owning each row.
    """

    users: Tuple[RegisteredUser, ...] = ()
    vectors: np.ndarray = field(default_factory=lambda: np.empty((0, 0), dtype=np.float64))
    owners: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))

    @property
    def size(self) -> int:
        return int(self.vectors.shape[0])

    @property
    def dim(self) -> int:
        return int(self.vectors.shape[1]) if self.size else 0


class NearestNeighborBackend(ABC):
    """Strategy that answers distance queries against a SearchIndex."""

    @abstractmethod
    def distances(self, index: SearchIndex, query: Sequence[float]) -> np.ndarray:
        """
        Distance from the query to every row of the index, in row order.

        Raises:
            InvalidInputError: If the query is not a finite 1-D vector or its
                length differs from the index's.
        """

    def nearest(self, index: SearchIndex, query: Sequence[float]) -> Tuple[int, float]:
        """Row position and distance of the closest vector (first on ties)."""
        distances = self.distances(index, query)
        position = int(np.argmin(distances))
        return position, float(distances[position])


class LinearScanBackend(NearestNeighborBackend):
    """Exact search: compare the query with every indexed vector."""

    def distances(self, index: SearchIndex, query: Sequence[float]) -> np.ndarray:
        return distances_to(query, index.vectors)


def distance_to_confidence(distance: float, match_threshold: float) -> float:
    """Map a distance to a 0-100 confidence with exponential decay."""
    if match_threshold <= 0:
        return 0.0
    confidence = math.exp(-distance / match_threshold) * 100.0
    return min(100.0, max(0.0, confidence))


GalleryRecord = Union[IdentityTemplate, Dict[str, Any]]


class MatchIndex:
    """
    Gallery plus flat nearest-neighbor index.

    Args:
        config: Dictionary with optional keys:
            - match_threshold: distance below which a query matches (default 0.6)
            - high_confidence_threshold: distance below which a match is
              high-confidence (default 0.4)
            - use_mean_descriptor: index one mean vector per identity when
              available (default True)
            - top_k: default size of find_top_matches() rankings (default 3)
        backend: NearestNeighborBackend (default LinearScanBackend).
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, backend: Optional[NearestNeighborBackend] = None):
        if config is None:
            config = {}
        self.match_threshold = config.get("match_threshold", 0.6)
        self.high_confidence_threshold = config.get("high_confidence_threshold", 0.4)
        self.use_mean_descriptor = config.get("use_mean_descriptor", True)
        self.top_k = config.get("top_k", 3)
        self.backend = backend or LinearScanBackend()

        self._index = SearchIndex()
        self._reset_stats()

    # ============================================================
    # Loading
    # ============================================================

    def load(self, identities: Iterable[GalleryRecord]) -> int:
        """
        Replace the gallery and rebuild the search index.

        Invalid records (no id, no embeddings, malformed vectors, or a
        vector length that differs from the first indexed identity) are
        skipped with a warning; a later record reusing an id already in
        this load is skipped too.

        Args:
            identities: IdentityTemplates or exchange-format dicts.

        Returns:
            Number of identities loaded.
        """
        users: List[RegisteredUser] = []
        blocks: List[np.ndarray] = []
        owners: List[int] = []
        seen_ids = set()
        dim: Optional[int] = None

        for position, record in enumerate(identities):
            try:
                template = record if isinstance(record, IdentityTemplate) else record_to_template(record)

                if template.user_id in seen_ids:
                    raise InvalidGalleryRecordError(f"duplicate identity id {template.user_id}")

                vectors = self._vectors_for(template)
                if dim is None:
                    dim = vectors.shape[1]
                elif vectors.shape[1] != dim:
                    raise InvalidGalleryRecordError(
                        f"embedding length {vectors.shape[1]} does not match gallery length {dim}"
                    )
            except (ValidationError, FaceIdError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid identity record at index {position}: {e}")
                continue

            seen_ids.add(template.user_id)
            users.append(RegisteredUser(
                user_id=template.user_id,
                user_name=template.user_name or template.user_id,
                descriptor_count=template.capture_count,
                has_mean_descriptor=template.mean_descriptor is not None,
            ))
            blocks.append(vectors)
            owners.extend([len(users) - 1] * vectors.shape[0])

        if blocks:
            index = SearchIndex(
                users=tuple(users),
                vectors=np.vstack(blocks),
                owners=np.asarray(owners, dtype=np.int64),
            )
        else:
            index = SearchIndex()

        # Single reference swap: queries see the old or the new index, never a mix
        self._index = index

        logger.info(f"MatchIndex: indexed {index.size} descriptors from {len(index.users)} users")
        return len(index.users)

    def _vectors_for(self, template: IdentityTemplate) -> np.ndarray:
        if self.use_mean_descriptor and template.mean_descriptor is not None:
            return np.asarray(template.mean_descriptor, dtype=np.float64).reshape(1, -1)
        return np.asarray(template.descriptors, dtype=np.float64)

    def load_from_storage(self, storage: TemplateStorage) -> int:
        """Load every identity held by a TemplateStorage."""
        count = self.load(storage.get_all_users())
        logger.info(f"MatchIndex: loaded {count} users from storage")
        return count

    def load_from_json(self, text: str) -> int:
        """
        Load identities from an exchange-format JSON document.

        Raises:
            InvalidImportFormatError: If the document is not a JSON array.
                                      The current index is left untouched.
        """
        return self.load(parse_records(text))

    # ============================================================
    # Queries
    # ============================================================

    def find_best_match(self, query: Optional[Sequence[float]]) -> MatchOutcome:
        """
        Find the closest enrolled identity.

        Args:
            query: Embedding of length L, or None.

        Returns:
            MatchOutcome. UNKNOWN when the index is empty or the query is
            None; MATCHED when the best distance is strictly below
            match_threshold; NO_MATCH otherwise.

        Raises:
            InvalidInputError: If the query is not a finite 1-D vector or its
                length differs from the index's.
        """
        index = self._index
        if query is None or index.size == 0:
            return MatchOutcome(status=MatchStatus.UNKNOWN)

        # Same float32 rounding as the indexed vectors
        query = to_embedding(query)
        start_time = time.perf_counter()
        position, best_distance = self.backend.nearest(index, query)
        match_time_ms = (time.perf_counter() - start_time) * 1000.0

        self.total_queries += 1
        self.last_query_latency_ms = match_time_ms

        if best_distance < self.match_threshold:
            self.successful_queries += 1
            return MatchOutcome(
                status=MatchStatus.MATCHED,
                user=index.users[int(index.owners[position])],
                distance=best_distance,
                confidence=self.distance_to_confidence(best_distance),
                is_high_confidence=best_distance < self.high_confidence_threshold,
                match_time_ms=match_time_ms,
            )

        return MatchOutcome(
            status=MatchStatus.NO_MATCH,
            distance=best_distance,
            confidence=0.0,
            match_time_ms=match_time_ms,
        )

    def find_top_matches(self, query: Optional[Sequence[float]], k: Optional[int] = None) -> List[TopMatch]:
        """
        Rank identities by their best distance to the query.

        Args:
            query: Embedding of length L, or None.
            k: Ranking size; defaults to the configured top_k.

        Returns:
            At most k TopMatch entries, one per identity, sorted by
            ascending distance (ties keep load order).
        """
        if k is None:
            k = self.top_k

        index = self._index
        if query is None or index.size == 0 or k <= 0:
            return []

        query = to_embedding(query)
        distances = self.backend.distances(index, query)

        best_per_user: Dict[int, float] = {}
        for owner, distance in zip(index.owners.tolist(), distances.tolist()):
            if owner not in best_per_user or distance < best_per_user[owner]:
                best_per_user[owner] = distance

        ranked = sorted(best_per_user.items(), key=lambda item: (item[1], item[0]))

        return [
            TopMatch(
                user=index.users[owner],
                distance=distance,
                confidence=self.distance_to_confidence(distance),
                is_match=distance < self.match_threshold,
            )
            for owner, distance in ranked[:k]
        ]

    def distance_to_confidence(self, distance: float) -> float:
        return distance_to_confidence(distance, self.match_threshold)

    # ============================================================
    # State
    # ============================================================

    def get_registered_users(self) -> List[RegisteredUser]:
        return list(self._index.users)

    @property
    def user_count(self) -> int:
        return len(self._index.users)

    @property
    def descriptor_count(self) -> int:
        return self._index.size

    def is_ready(self) -> bool:
        """True once at least one identity is indexed."""
        return self.user_count > 0

    def get_stats(self) -> Dict[str, Any]:
        """
        Query counters plus index size.

        match_rate is a percentage, or None before the first query.
        """
        match_rate = None
        if self.total_queries > 0:
            match_rate = round(self.successful_queries / self.total_queries * 100.0, 1)

        return {
            "total_queries": self.total_queries,
            "successful_queries": self.successful_queries,
            "last_query_latency_ms": self.last_query_latency_ms,
            "user_count": self.user_count,
            "descriptor_count": self.descriptor_count,
            "match_rate": match_rate,
        }

    def clear(self) -> None:
        """Drop the gallery and reset the query counters."""
        self._index = SearchIndex()
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.total_queries = 0
        self.successful_queries = 0
        self.last_query_latency_ms = 0.0
