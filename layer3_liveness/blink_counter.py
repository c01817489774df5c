"""
Layer 3 — Liveness
Component: Blink counter
Responsibility: Count debounced blinks until the required number is reached
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from .eye_aspect import DEFAULT_EAR_THRESHOLD, FrameObservation

logger = logging.getLogger(__name__)


class BlinkState(Enum):
    IDLE = "idle"
    EYES_OPEN = "eyes_open"
    EYES_CLOSED = "eyes_closed"
    COMPLETED = "completed"


@dataclass
class BlinkConfig:
    """Configuration for blink counting."""
    required_blinks: int = 2
    debounce_ms: float = 400       # Minimum gap between two counted blinks
    ear_threshold: float = DEFAULT_EAR_THRESHOLD


@dataclass
class BlinkSession:
    blink_count: int = 0
    was_eyes_closed: bool = False
    last_blink_timestamp: Optional[float] = None


@dataclass(frozen=True)
class BlinkEvent:
    """Emitted when a blink is counted."""
    blink_count: int
    timestamp: float
    completed: bool


class BlinkCounter:
    """
    Blink state machine.

    IDLE -> EYES_OPEN on start(). A blink is counted on the closed -> open
    edge when no blink was counted in the last ``debounce_ms``. COMPLETED
    is terminal until reset().
    """

    def __init__(self, config: BlinkConfig = None):
        self.config = config or BlinkConfig()
        self.state = BlinkState.IDLE
        self._session = BlinkSession()

    @property
    def blink_count(self) -> int:
        return self._session.blink_count

    @property
    def is_completed(self) -> bool:
        return self.state is BlinkState.COMPLETED

    def start(self):
        self._session = BlinkSession()
        self.state = BlinkState.EYES_OPEN
        logger.info(f"Blink detection started, {self.config.required_blinks} blinks required")

    def reset(self):
        self._session = BlinkSession()
        self.state = BlinkState.IDLE
        logger.debug("Blink session reset")

    def snapshot(self) -> BlinkSession:
        return replace(self._session)

    def update(self, observation: FrameObservation) -> Optional[BlinkEvent]:
        """
        Feed one frame observation.

        Args:
            observation: Result of observe_landmarks() for the frame

        Returns:
            BlinkEvent when this frame completed a counted blink, else None
        """
        if self.state in (BlinkState.IDLE, BlinkState.COMPLETED):
            return None
        if not observation.face_detected:
            return None

        session = self._session
        if observation.eyes_closed:
            session.was_eyes_closed = True
            self.state = BlinkState.EYES_CLOSED
            return None

        event = None
        if session.was_eyes_closed:
            last = session.last_blink_timestamp
            if last is None or observation.timestamp - last > self.config.debounce_ms:
                session.blink_count += 1
                session.last_blink_timestamp = observation.timestamp
                completed = session.blink_count >= self.config.required_blinks
                event = BlinkEvent(session.blink_count, observation.timestamp, completed)
                logger.info(f"Blink {session.blink_count}/{self.config.required_blinks} detected")
            else:
                logger.debug(f"Blink ignored, within {self.config.debounce_ms}ms of the last one")
            session.was_eyes_closed = False

        if event is not None and event.completed:
            self.state = BlinkState.COMPLETED
            logger.info("✓ Required blinks reached")
        else:
            self.state = BlinkState.EYES_OPEN
        return event
