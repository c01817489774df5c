"""
Layer 3 — Liveness
Handles face landmark tracking, eye aspect ratio and blink counting
"""
from .blink_counter import BlinkConfig, BlinkCounter, BlinkEvent, BlinkSession, BlinkState
from .detection_loop import (
    BlinkDetectionLoop,
    CancellationToken,
    LoopOutcome,
    detect_observation,
)
from .eye_aspect import (
    LEFT_EYE_INDICES,
    RIGHT_EYE_INDICES,
    FrameObservation,
    LandmarkFrame,
    LandmarkPoint,
    eye_aspect_ratio,
    observe_landmarks,
)
from .landmarks import LandmarkConfig, MediaPipeLandmarkDetector

__all__ = [
    'BlinkConfig',
    'BlinkCounter',
    'BlinkDetectionLoop',
    'BlinkEvent',
    'BlinkSession',
    'BlinkState',
    'CancellationToken',
    'FrameObservation',
    'LEFT_EYE_INDICES',
    'LandmarkConfig',
    'LandmarkFrame',
    'LandmarkPoint',
    'LoopOutcome',
    'MediaPipeLandmarkDetector',
    'RIGHT_EYE_INDICES',
    'detect_observation',
    'eye_aspect_ratio',
    'observe_landmarks',
]
