"""
Tests for eye aspect ratio, blink counting and the detection loop.
"""
import asyncio

import numpy as np
import pytest

from conftest import FakeLandmarkDetector, make_landmarks
from layer3_liveness import (
    BlinkConfig,
    BlinkCounter,
    BlinkDetectionLoop,
    BlinkState,
    FrameObservation,
    LandmarkPoint,
    LoopOutcome,
    detect_observation,
    eye_aspect_ratio,
    observe_landmarks,
)

FRAME = np.zeros((4, 4, 3), dtype=np.uint8)


def obs(timestamp, closed=False, face=True):
    return FrameObservation(face_detected=face, eyes_closed=closed, timestamp=timestamp)


def blink_frames(count, start=0, spacing=1000):
    """Observation sequence with `count` close->open transitions."""
    frames = []
    for i in range(count):
        t = start + i * spacing
        frames.append(obs(t, closed=False))
        frames.append(obs(t + 50, closed=True))
        frames.append(obs(t + 100, closed=False))
    return frames


class TestEyeAspectRatio:
    """Test EAR geometry."""

    def test_known_ratio(self):
        points = [
            LandmarkPoint(0, 0), LandmarkPoint(4, 0),
            LandmarkPoint(1, 1), LandmarkPoint(1, -1),
            LandmarkPoint(3, 0.5), LandmarkPoint(3, -0.5),
        ]
        assert eye_aspect_ratio(points) == pytest.approx((2 + 1) / 8)

    def test_degenerate_horizontal_distance(self):
        points = [LandmarkPoint(1, 1)] * 6
        assert eye_aspect_ratio(points) == 0.0

    def test_too_few_points(self):
        assert eye_aspect_ratio([LandmarkPoint(0, 0)] * 5) == 0.0

    def test_observation_from_landmarks(self):
        open_obs = observe_landmarks(make_landmarks(0.3), 10)
        closed_obs = observe_landmarks(make_landmarks(0.1), 20)
        assert open_obs.face_detected and not open_obs.eyes_closed
        assert open_obs.ear == pytest.approx(0.3)
        assert closed_obs.eyes_closed

    def test_partial_mesh_is_no_face(self):
        """Test fewer than 468 landmarks count as no face."""
        landmarks = list(make_landmarks(0.3))[:400]
        assert observe_landmarks(landmarks, 0).face_detected is False
        assert observe_landmarks(None, 0).face_detected is False


class TestBlinkCounter:
    """Test the blink state machine."""

    def test_idle_until_started(self):
        counter = BlinkCounter()
        for o in blink_frames(2):
            counter.update(o)
        assert counter.blink_count == 0
        assert counter.state is BlinkState.IDLE

    def test_counts_closed_to_open(self):
        counter = BlinkCounter(BlinkConfig(required_blinks=5))
        counter.start()
        counter.update(obs(0))
        assert counter.update(obs(50, closed=True)) is None
        assert counter.state is BlinkState.EYES_CLOSED
        event = counter.update(obs(100))
        assert event.blink_count == 1
        assert counter.state is BlinkState.EYES_OPEN

    def test_debounce_counts_one(self):
        """Test two transitions inside the debounce window count once."""
        counter = BlinkCounter(BlinkConfig(required_blinks=5, debounce_ms=400))
        counter.start()
        for o in [obs(0), obs(50, True), obs(100), obs(150, True), obs(200)]:
            counter.update(o)
        assert counter.blink_count == 1

    def test_debounce_is_strict(self):
        """Test a blink exactly debounce_ms after the last one is ignored."""
        counter = BlinkCounter(BlinkConfig(required_blinks=5, debounce_ms=400))
        counter.start()
        for o in [obs(50, True), obs(100), obs(450, True), obs(500), obs(600, True), obs(901)]:
            counter.update(o)
        assert counter.blink_count == 2

    @pytest.mark.parametrize("n", [0, 1, 3, 6])
    def test_counts_n_blinks_with_no_face_frames(self, n):
        """Test N spaced blinks interleaved with no-face frames count N."""
        counter = BlinkCounter(BlinkConfig(required_blinks=100))
        counter.start()
        for o in blink_frames(n):
            counter.update(obs(o.timestamp - 1, face=False))
            counter.update(o)
            counter.update(obs(o.timestamp + 1, closed=True, face=False))
        assert counter.blink_count == n

    def test_no_face_keeps_closed_state(self):
        counter = BlinkCounter()
        counter.start()
        counter.update(obs(0, closed=True))
        counter.update(obs(10, face=False))
        assert counter.state is BlinkState.EYES_CLOSED
        assert counter.update(obs(20)).blink_count == 1

    def test_completed_is_terminal(self):
        counter = BlinkCounter(BlinkConfig(required_blinks=2))
        counter.start()
        events = [counter.update(o) for o in blink_frames(3)]
        completed = [e for e in events if e is not None and e.completed]
        assert len(completed) == 1
        assert counter.state is BlinkState.COMPLETED
        assert counter.blink_count == 2

    def test_snapshot_is_a_copy(self):
        counter = BlinkCounter()
        counter.start()
        snapshot = counter.snapshot()
        snapshot.blink_count = 99
        assert counter.blink_count == 0

    def test_reset(self):
        counter = BlinkCounter()
        counter.start()
        for o in blink_frames(2):
            counter.update(o)
        counter.reset()
        assert counter.state is BlinkState.IDLE
        assert counter.snapshot().last_blink_timestamp is None


class ScriptedFrames:
    """Frame source yielding frames with increasing timestamps."""

    def __init__(self, count, spacing=100):
        self.count = count
        self.spacing = spacing
        self.served = 0

    def __call__(self):
        if self.served >= self.count:
            return None
        self.served += 1
        return FRAME, self.served * self.spacing


def blink_landmarks(blinks, open_frames=5):
    """Landmark script with `blinks` blinks separated by open frames."""
    frames = []
    for _ in range(blinks):
        frames += [make_landmarks(0.3)] * open_frames
        frames.append(make_landmarks(0.1))
    frames += [make_landmarks(0.3)] * open_frames
    return frames


class TestDetectObservation:
    """Test the single detection tick."""

    def test_detector_failure_is_no_face(self):
        class Broken(FakeLandmarkDetector):
            async def detect(self, frame, timestamp_ms):
                raise RuntimeError("inference crashed")

        observation = asyncio.run(detect_observation(Broken(), FRAME, 5))
        assert observation.face_detected is False

    def test_timeout_is_no_face(self):
        class Stalled(FakeLandmarkDetector):
            async def detect(self, frame, timestamp_ms):
                await asyncio.sleep(1)

        observation = asyncio.run(detect_observation(Stalled(), FRAME, 5, timeout=0.01))
        assert observation.face_detected is False


class TestBlinkDetectionLoop:
    """Test the cancellable detection loop."""

    def test_single_match_attempt_after_required_blinks(self):
        """Test 3 blinks with 2 required trigger exactly one completion."""
        calls = []
        counter = BlinkCounter(BlinkConfig(required_blinks=2, debounce_ms=400))
        detector = FakeLandmarkDetector(blink_landmarks(3))
        frames = ScriptedFrames(len(detector.frames))

        async def on_completed():
            calls.append(counter.blink_count)

        async def run():
            counter.start()
            loop = BlinkDetectionLoop(frames, detector, counter, on_completed, frame_interval=0)
            loop.start()
            return await loop.wait()

        outcome = asyncio.run(run())
        assert outcome is LoopOutcome.COMPLETED
        assert calls == [2]
        # 2nd blink ends on frame 13; later frames are never pulled
        assert frames.served == 13

    def test_exhausted_source(self):
        counter = BlinkCounter()
        detector = FakeLandmarkDetector([make_landmarks(0.3)] * 3)

        async def run():
            counter.start()
            loop = BlinkDetectionLoop(ScriptedFrames(3), detector, counter, None, frame_interval=0)
            loop.start()
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.EXHAUSTED
        assert counter.blink_count == 0

    def test_cancel_stops_ticks_and_mutation(self):
        """Test a cancelled loop schedules nothing and leaves the session alone."""
        counter = BlinkCounter()
        detector = FakeLandmarkDetector(blink_landmarks(5))
        frames = ScriptedFrames(1000)

        async def run():
            counter.start()
            loop = BlinkDetectionLoop(frames, detector, counter, None, frame_interval=0.01)
            loop.start()
            await asyncio.sleep(0.015)
            loop.cancel()
            served = frames.served
            count = counter.blink_count
            await asyncio.sleep(0.05)
            return await loop.wait(), served, count

        outcome, served, count = asyncio.run(run())
        assert outcome is LoopOutcome.CANCELLED
        assert frames.served == served
        assert counter.blink_count == count

    def test_cancel_during_detection_does_not_update(self):
        counter = BlinkCounter()
        loop_ref = {}

        class CancellingDetector(FakeLandmarkDetector):
            async def detect(self, frame, timestamp_ms):
                loop_ref["loop"].cancel()
                return make_landmarks(0.1)

        async def run():
            counter.start()
            loop = BlinkDetectionLoop(ScriptedFrames(5), CancellingDetector(), counter, None,
                                      frame_interval=0)
            loop_ref["loop"] = loop
            loop.start()
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.CANCELLED
        assert counter.state is BlinkState.EYES_OPEN

    def test_failing_source_reports_failed(self):
        def broken_source():
            raise OSError("camera unplugged")

        async def run():
            counter = BlinkCounter()
            counter.start()
            loop = BlinkDetectionLoop(broken_source, FakeLandmarkDetector(), counter, None)
            loop.start()
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.FAILED

    def test_async_frame_source(self):
        served = []

        async def source():
            if len(served) >= 2:
                return None
            served.append(1)
            return FRAME, len(served) * 10

        async def run():
            counter = BlinkCounter()
            counter.start()
            loop = BlinkDetectionLoop(source, FakeLandmarkDetector(), counter, None, frame_interval=0)
            loop.start()
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.EXHAUSTED
        assert len(served) == 2
