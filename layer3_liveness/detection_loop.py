"""
Layer 3 — Liveness
Component: Blink detection loop
Responsibility: Pull video frames at a fixed cadence, feed the blink counter
and hand over to the face match once enough blinks were seen
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

import numpy as np

from capabilities import LandmarkDetector, call_with_timeout
from error_handlers import VerificationError

from .blink_counter import BlinkCounter, BlinkEvent
from .eye_aspect import DEFAULT_EAR_THRESHOLD, FrameObservation, observe_landmarks

logger = logging.getLogger(__name__)

# A frame source returns (frame, monotonic timestamp in ms), or None when
# the stream has ended. It may be a plain or an async callable.
Frame = Tuple[np.ndarray, float]
FrameSource = Callable[[], Optional[Frame]]


class LoopOutcome(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class CancellationToken:
    """Shared flag checked by the loop at every tick and after every await."""

    def __init__(self):
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True


async def detect_observation(
    detector: LandmarkDetector,
    frame: np.ndarray,
    timestamp: float,
    ear_threshold: float = DEFAULT_EAR_THRESHOLD,
    timeout: Optional[float] = None,
) -> FrameObservation:
    """
    Run landmark detection on one frame and classify it.

    Detection failures are logged and reported as a frame without a face,
    so one bad frame never stops liveness detection.
    """
    try:
        landmarks = await call_with_timeout(
            detector.detect(frame, timestamp), timeout, "landmark_detector"
        )
    except VerificationError as e:
        logger.warning(f"Landmark detection skipped frame: {e.error_code}")
        landmarks = None
    except Exception as e:
        logger.error(f"Landmark detection failed: {e}")
        landmarks = None
    return observe_landmarks(landmarks, timestamp, ear_threshold)


class BlinkDetectionLoop:
    """
    Cancellable detection loop.

    Only one tick is ever pending or running. The next tick is scheduled
    after the current one finishes, and the pending tick is dropped as soon
    as the counter completes so nothing runs while ``on_completed`` works.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        detector: LandmarkDetector,
        counter: BlinkCounter,
        on_completed: Callable[[], Awaitable[None]],
        frame_interval: float = 1 / 30,
        timeout: Optional[float] = None,
        on_blink: Optional[Callable[[BlinkEvent], None]] = None,
    ):
        self.frame_source = frame_source
        self.detector = detector
        self.counter = counter
        self.on_completed = on_completed
        self.on_blink = on_blink
        self.frame_interval = frame_interval
        self.timeout = timeout
        self.token = CancellationToken()

        self._loop = None
        self._handle = None
        self._task = None
        self._done = None
        self._in_flight = False
        self._completing = False
        self.frames_processed = 0

    @property
    def is_running(self) -> bool:
        return self._done is not None and not self._done.done()

    def start(self):
        """Schedule the first tick. Must be called from a running event loop."""
        if self._done is not None:
            raise RuntimeError("Detection loop already started")
        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()
        logger.info("Blink detection loop started")
        self._schedule(0)

    def cancel(self):
        """Stop the loop; no further tick is scheduled and no state is mutated."""
        if self.token.is_cancelled:
            return
        self.token.cancel()
        self._drop_pending()
        # A running completion handler decides the outcome itself
        if not self._completing:
            self._finish(LoopOutcome.CANCELLED)
        logger.info("Blink detection loop cancelled")

    async def wait(self) -> LoopOutcome:
        if self._done is None:
            raise RuntimeError("Detection loop not started")
        return await self._done

    def _schedule(self, delay: float):
        if self.token.is_cancelled or self._done.done():
            return
        self._handle = self._loop.call_later(delay, self._launch_tick)

    def _drop_pending(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _launch_tick(self):
        self._handle = None
        if self.token.is_cancelled:
            return
        self._task = self._loop.create_task(self._tick())

    def _finish(self, outcome: LoopOutcome):
        if self._done is not None and not self._done.done():
            self._done.set_result(outcome)

    async def _tick(self):
        if self.token.is_cancelled or self._in_flight:
            return

        self._in_flight = True
        try:
            outcome = await self._step()
        except Exception as e:
            logger.error(f"Blink detection loop failed: {e}")
            logger.exception("Full traceback:")
            outcome = LoopOutcome.FAILED
        finally:
            self._in_flight = False

        if outcome is not None:
            self._finish(outcome)
            return
        self._schedule(self.frame_interval)

    async def _step(self) -> Optional[LoopOutcome]:
        frame = self.frame_source()
        if inspect.isawaitable(frame):
            frame = await frame
        if self.token.is_cancelled:
            return LoopOutcome.CANCELLED
        if frame is None:
            logger.info("Frame source exhausted")
            return LoopOutcome.EXHAUSTED

        image, timestamp = frame
        observation = await detect_observation(
            self.detector, image, timestamp,
            ear_threshold=self.counter.config.ear_threshold,
            timeout=self.timeout,
        )
        if self.token.is_cancelled:
            return LoopOutcome.CANCELLED

        self.frames_processed += 1
        event = self.counter.update(observation)
        if event is not None and self.on_blink is not None:
            self.on_blink(event)

        if not self.counter.is_completed:
            return None

        self._drop_pending()
        self._completing = True
        try:
            await self.on_completed()
        finally:
            self._completing = False
        return LoopOutcome.COMPLETED
