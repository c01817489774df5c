"""
Layer 4 — Face Matching
Component: Face matcher
Responsibility: Decide whether two face descriptors belong to the same person
"""
import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.55      # dlib 128-d descriptors
SFACE_MATCH_THRESHOLD = 1.128       # L2-normalized SFace descriptors


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    distance: float

    def to_dict(self):
        return {"is_match": self.is_match, "distance": round(self.distance, 4)}


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """
    Euclidean distance between two descriptors.

    Raises:
        ValueError: If the descriptors differ in shape
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


class FaceMatcher:
    """Euclidean-distance decision rule; smaller distance means more similar."""

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD):
        self.threshold = threshold

    def match(self, a: np.ndarray, b: np.ndarray, threshold: float = None) -> MatchResult:
        """
        Compare two descriptors.

        Args:
            a: First face descriptor
            b: Second face descriptor
            threshold: Overrides the configured threshold for this call

        Returns:
            MatchResult: is_match is True when distance < threshold
        """
        limit = self.threshold if threshold is None else threshold
        distance = euclidean_distance(a, b)
        is_match = distance < limit
        logger.info(
            f"Face distance {distance:.3f} (threshold {limit}) -> "
            f"{'✓ match' if is_match else 'no match'}"
        )
        return MatchResult(is_match=is_match, distance=distance)
