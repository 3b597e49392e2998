# faceaccess/matcher.py
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import MATCH_THRESHOLD

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

Candidate = Tuple[str, Sequence[Sequence[float]]]


@dataclass
class MatchResult:
    label: str
    distance: float
    query: np.ndarray

    @property
    def recognized(self) -> bool:
        return self.label != UNKNOWN

    @property
    def confidence(self) -> float:
        """1 - distance, floored at 0. Zero when there was nothing to compare."""
        if math.isinf(self.distance):
            return 0.0
        return round(max(0.0, 1.0 - self.distance), 2)


def min_distance(query: np.ndarray, vectors: Sequence[Sequence[float]]) -> Optional[float]:
    """
    Smallest Euclidean distance from query to any of vectors.
    Vectors whose length differs from the query are skipped; returns None
    when nothing comparable is left.
    """
    usable = [v for v in vectors if len(v) == query.shape[0]]
    if len(usable) < len(vectors):
        logger.debug(f"Skipped {len(vectors) - len(usable)} descriptor(s) of a different dimension")
    if not usable:
        return None
    arr = np.asarray(usable, dtype=np.float64)
    return float(np.min(np.linalg.norm(arr - query, axis=1)))


def match(query, candidates: Iterable[Candidate], threshold: float = MATCH_THRESHOLD) -> MatchResult:
    """
    Best-sample-wins nearest neighbour.

    Each label is represented by the closest of its own vectors; the label
    with the smallest such distance wins if it is strictly below threshold.
    Otherwise the result is "unknown" but still carries the best distance
    found (inf when there were no candidates). On ties the first label
    enumerated wins; callers should not rely on that order.
    """
    q = np.asarray(query, dtype=np.float64).ravel()
    best_label = None
    best_distance = math.inf
    for label, vectors in candidates:
        if len(vectors) == 0:
            continue
        d = min_distance(q, vectors)
        if d is not None and d < best_distance:
            best_label, best_distance = label, d

    if best_label is not None and best_distance < threshold:
        return MatchResult(label=best_label, distance=best_distance, query=q)
    return MatchResult(label=UNKNOWN, distance=best_distance, query=q)


class MatcherCache:
    """
    Labeled descriptor snapshot owned by one recognition session.
    Rebuilt whenever the store revision moves or invalidate() is called.
    """

    def __init__(self, store, threshold: float = MATCH_THRESHOLD):
        self.store = store
        self.threshold = threshold
        self._candidates: Optional[List[Candidate]] = None
        self._revision = None

    def invalidate(self) -> None:
        self._candidates = None

    def candidates(self) -> List[Candidate]:
        revision = self.store.revision
        if self._candidates is None or revision != self._revision:
            self._candidates = self.store.labeled_descriptors()
            self._revision = revision
            logger.info(f"Matcher rebuilt with {len(self._candidates)} label(s) at revision {revision}")
        return self._candidates

    def match(self, query) -> MatchResult:
        return match(query, self.candidates(), self.threshold)
