"""
Layer 3 — Liveness
Component: Eye aspect ratio
Responsibility: Turn a face-mesh landmark frame into an open/closed-eye observation
"""
import math
from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence, Tuple

# Face mesh eye contours: [outer corner, inner corner, top1, bottom1, top2, bottom2]
LEFT_EYE_INDICES = (33, 133, 159, 145, 158, 153)
RIGHT_EYE_INDICES = (362, 263, 386, 374, 385, 380)

FACE_MESH_POINTS = 468
DEFAULT_EAR_THRESHOLD = 0.2


class LandmarkPoint(NamedTuple):
    x: float
    y: float
    z: float = 0.0


class LandmarkFrame(tuple):
    """Ordered landmark points of one detected face."""

    @property
    def is_full_mesh(self) -> bool:
        return len(self) >= FACE_MESH_POINTS


@dataclass(frozen=True)
class FrameObservation:
    """What the blink counter needs to know about one video frame."""
    face_detected: bool
    eyes_closed: bool
    timestamp: float
    ear: Optional[float] = None


def _distance(a: LandmarkPoint, b: LandmarkPoint) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def eye_aspect_ratio(points: Sequence[LandmarkPoint]) -> float:
    """
    Eye aspect ratio of six eye points.

    EAR = (|p2 - p3| + |p4 - p5|) / (2 * |p0 - p1|)

    Returns 0.0 for fewer than six points or a degenerate horizontal span.
    """
    if len(points) < 6:
        return 0.0
    horizontal = _distance(points[0], points[1])
    if horizontal == 0:
        return 0.0
    vertical = _distance(points[2], points[3]) + _distance(points[4], points[5])
    return vertical / (2.0 * horizontal)


def eye_points(landmarks: Sequence[LandmarkPoint], indices: Tuple[int, ...]):
    return [landmarks[i] for i in indices]


def mean_eye_aspect_ratio(landmarks: Sequence[LandmarkPoint]) -> float:
    left = eye_aspect_ratio(eye_points(landmarks, LEFT_EYE_INDICES))
    right = eye_aspect_ratio(eye_points(landmarks, RIGHT_EYE_INDICES))
    return (left + right) / 2.0


def observe_landmarks(
    landmarks: Optional[Sequence[LandmarkPoint]],
    timestamp: float,
    ear_threshold: float = DEFAULT_EAR_THRESHOLD,
) -> FrameObservation:
    """
    Classify one frame.

    A frame without landmarks, or with fewer than the 468 face-mesh points,
    counts as no face.
    """
    if not landmarks or len(landmarks) < FACE_MESH_POINTS:
        return FrameObservation(face_detected=False, eyes_closed=False, timestamp=timestamp)

    ear = mean_eye_aspect_ratio(landmarks)
    return FrameObservation(
        face_detected=True,
        eyes_closed=ear < ear_threshold,
        timestamp=timestamp,
        ear=ear,
    )
