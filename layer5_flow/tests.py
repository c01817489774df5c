"""
Tests for the verification flow controller.
"""
import asyncio

import numpy as np
import pytest

from conftest import FakeDescriptorExtractor, FakeLandmarkDetector, make_landmarks
from error_handlers import IncompleteIdentityFieldsError, InvalidStepError
from layer3_liveness import BlinkState, LoopOutcome
from layer5_flow import AdvisoryKind, FailureCause, FlowEventKind, VerificationStep

FRAME = np.zeros((4, 4, 3), dtype=np.uint8)


def collect(controller):
    events = []
    controller.add_listener(events.append)
    return events


def advisories(events):
    return [e.advisory for e in events if e.kind is FlowEventKind.ADVISORY]


def advisory_kinds(events):
    return [a.kind for a in advisories(events)]


def to_identity_back(controller, portrait_image):
    controller.start_identity()
    assert asyncio.run(controller.submit_identity_front(portrait_image))


def to_liveness_blink(controller, selfie_image):
    controller.start_liveness()
    assert asyncio.run(controller.submit_liveness_selfie(selfie_image))


def feed_blinks(controller, blinks, start=0):
    """Push frames encoding `blinks` spaced blinks; returns next timestamp."""
    t = start
    for _ in range(blinks):
        for ear in (0.3, 0.1, 0.3):
            controller.landmark_detector.frames.append(make_landmarks(ear))
            asyncio.run(controller.process_liveness_frame(FRAME, t))
            t += 100
        t += 500
    return t


class TestStepGuards:
    """Test step ordering."""

    def test_initial_step(self, controller):
        assert controller.step is VerificationStep.START

    def test_wrong_step_raises(self, controller, portrait_image):
        with pytest.raises(InvalidStepError):
            asyncio.run(controller.submit_identity_front(portrait_image))
        with pytest.raises(InvalidStepError):
            controller.confirm_identity()

    def test_stages_in_any_order(self, controller):
        controller.start_liveness()
        assert controller.step is VerificationStep.LIVENESS_FRONT
        controller.go_to_start()
        controller.start_identity()
        assert controller.step is VerificationStep.IDENTITY_FRONT

    def test_step_changed_events(self, controller):
        events = collect(controller)
        controller.start_identity()
        changed = [e for e in events if e.kind is FlowEventKind.STEP_CHANGED]
        assert changed[0].previous_step is VerificationStep.START
        assert changed[0].step is VerificationStep.IDENTITY_FRONT


class TestIdentityStage:
    """Test the government-ID stage."""

    def test_front_without_face_stays(self, controller, faceless_image):
        events = collect(controller)
        controller.start_identity()
        assert asyncio.run(controller.submit_identity_front(faceless_image)) is False
        assert controller.step is VerificationStep.IDENTITY_FRONT
        advisory = advisories(events)[-1]
        assert advisory.kind is AdvisoryKind.NO_FACE_DETECTED
        assert advisory.cause is FailureCause.FACE_ABSENCE

    def test_front_crops_portrait(self, controller, portrait_image):
        to_identity_back(controller, portrait_image)
        assert controller.step is VerificationStep.IDENTITY_BACK
        assert controller.session.id_portrait is not None
        assert controller.session.id_portrait.shape[0] < portrait_image.shape[0]

    def test_back_scan_then_confirm(self, controller, portrait_image, card_image):
        events = collect(controller)
        to_identity_back(controller, portrait_image)
        fields = asyncio.run(controller.scan_identity_back(card_image))
        assert fields.is_complete
        assert controller.step is VerificationStep.IDENTITY_BACK

        controller.confirm_identity()
        assert controller.session.is_government_id_complete
        assert controller.step is VerificationStep.START
        stages = [e.stage for e in events if e.kind is FlowEventKind.STAGE_COMPLETED]
        assert stages == ["government_id"]

    def test_incomplete_fields_block_confirm(self, controller, fake_ocr, portrait_image, card_image):
        # Name line missing: only the national ID can be read
        fake_ocr.text = "I<TURA12B345678<<<<<<<<<<<<<<<\n9001015M3001012TUR12345678901<\n"
        events = collect(controller)
        to_identity_back(controller, portrait_image)
        asyncio.run(controller.scan_identity_back(card_image))
        assert AdvisoryKind.FIELDS_INCOMPLETE in advisory_kinds(events)
        with pytest.raises(IncompleteIdentityFieldsError):
            controller.confirm_identity()
        assert controller.step is VerificationStep.IDENTITY_BACK

    def test_retry_clears_results(self, controller, portrait_image, card_image):
        to_identity_back(controller, portrait_image)
        asyncio.run(controller.scan_identity_back(card_image))
        controller.retry_identity()
        assert controller.session.ocr_results is None
        assert controller.step is VerificationStep.IDENTITY_BACK

    def test_dark_back_photo_advises_image_quality(self, controller, portrait_image, dark_image):
        events = collect(controller)
        to_identity_back(controller, portrait_image)
        assert asyncio.run(controller.scan_identity_back(dark_image)) is None
        advisory = advisories(events)[-1]
        assert advisory.kind is AdvisoryKind.IMAGE_TOO_DARK
        assert advisory.cause is FailureCause.IMAGE_QUALITY
        assert controller.session.is_processing_government_id is False

    def test_ocr_crash_is_contained(self, controller, fake_ocr, portrait_image, card_image):
        async def broken(image):
            raise RuntimeError("tesseract died")
        fake_ocr.recognize = broken

        events = collect(controller)
        to_identity_back(controller, portrait_image)
        assert asyncio.run(controller.scan_identity_back(card_image)) is None
        assert advisory_kinds(events)[-1] is AdvisoryKind.PROCESSING_FAILED
        assert controller.step is VerificationStep.IDENTITY_BACK


class TestLivenessStage:
    """Test the liveness stage."""

    def test_selfie_without_face_stays(self, controller, faceless_image):
        controller.start_liveness()
        assert asyncio.run(controller.submit_liveness_selfie(faceless_image)) is False
        assert controller.step is VerificationStep.LIVENESS_FRONT

    def test_match_completes_liveness(self, controller, portrait_image, selfie_image):
        events = collect(controller)
        to_identity_back(controller, portrait_image)
        controller.go_to_start()
        to_liveness_blink(controller, selfie_image)

        feed_blinks(controller, 2)

        assert controller.session.is_liveness_complete
        assert controller.step is VerificationStep.START
        assert AdvisoryKind.FACES_MATCH in advisory_kinds(events)
        assert [e.stage for e in events if e.kind is FlowEventKind.STAGE_COMPLETED] == ["liveness"]

    def test_single_comparison_for_extra_blinks(self, controller, fake_extractor,
                                                portrait_image, selfie_image):
        """Test a third blink does not trigger a second comparison."""
        to_identity_back(controller, portrait_image)
        controller.go_to_start()
        to_liveness_blink(controller, selfie_image)
        calls_before = fake_extractor.calls

        t = feed_blinks(controller, 2)
        assert fake_extractor.calls == calls_before + 2
        with pytest.raises(InvalidStepError):
            feed_blinks(controller, 1, start=t)
        assert fake_extractor.calls == calls_before + 2

    def test_missing_portrait(self, controller, fake_extractor, selfie_image):
        events = collect(controller)
        to_liveness_blink(controller, selfie_image)
        calls_before = fake_extractor.calls

        feed_blinks(controller, 2)

        assert advisory_kinds(events)[-1] is AdvisoryKind.MISSING_FACE_IMAGES
        assert controller.step is VerificationStep.LIVENESS_FRONT
        assert controller.blink_counter.state is BlinkState.IDLE
        assert fake_extractor.calls == calls_before

    def test_mismatch_returns_to_selfie(self, controller, portrait_image, selfie_image):
        controller.comparator.extractor = FakeDescriptorExtractor({
            100: np.zeros(128, dtype=np.float32),
            150: np.ones(128, dtype=np.float32),
        })
        events = collect(controller)
        to_identity_back(controller, portrait_image)
        controller.go_to_start()
        to_liveness_blink(controller, selfie_image)

        feed_blinks(controller, 2)

        advisory = advisories(events)[-1]
        assert advisory.kind is AdvisoryKind.FACES_DO_NOT_MATCH
        assert advisory.cause is FailureCause.MISMATCH
        assert advisory.details["distance"] == pytest.approx(np.sqrt(128))
        assert controller.step is VerificationStep.LIVENESS_FRONT
        assert controller.blink_counter.blink_count == 0
        assert not controller.session.is_liveness_complete

    def test_face_lost_during_comparison(self, controller, portrait_image, selfie_image):
        to_identity_back(controller, portrait_image)
        controller.go_to_start()
        to_liveness_blink(controller, selfie_image)
        # Selfie descriptor disappears between capture and comparison
        controller.comparator.extractor = FakeDescriptorExtractor({
            100: np.zeros(128, dtype=np.float32),
        })
        events = collect(controller)

        feed_blinks(controller, 2)

        advisory = advisories(events)[-1]
        assert advisory.kind is AdvisoryKind.NO_FACE_DETECTED
        assert advisory.cause is FailureCause.FACE_ABSENCE
        assert controller.step is VerificationStep.LIVENESS_FRONT

    def test_frames_ignored_while_comparing(self, controller, selfie_image):
        to_liveness_blink(controller, selfie_image)
        controller._comparing = True
        assert asyncio.run(controller.process_liveness_frame(FRAME, 0)) is None
        assert controller.landmark_detector.calls == 0

    def test_overlapping_frames_run_one_detection(self, controller, selfie_image):
        """Test a frame pushed while another is being detected is ignored."""
        class SlowDetector(FakeLandmarkDetector):
            async def detect(self, frame, timestamp_ms):
                self.calls += 1
                await asyncio.sleep(0.01)
                return make_landmarks(0.3)

        to_liveness_blink(controller, selfie_image)
        controller.landmark_detector = SlowDetector()

        async def run():
            return await asyncio.gather(
                controller.process_liveness_frame(FRAME, 0),
                controller.process_liveness_frame(FRAME, 1),
            )

        first, second = asyncio.run(run())
        assert first is not None and first.face_detected
        assert second is None
        assert controller.landmark_detector.calls == 1
        assert asyncio.run(controller.process_liveness_frame(FRAME, 2)) is not None

    def test_blink_advisories(self, controller, portrait_image, selfie_image):
        events = collect(controller)
        to_liveness_blink(controller, selfie_image)
        feed_blinks(controller, 1)
        assert AdvisoryKind.BLINK_DETECTED in advisory_kinds(events)
        assert controller.snapshot()["blink"]["blink_count"] == 1


class TestContinuousLoop:
    """Test the controller-owned detection loop."""

    def test_loop_runs_to_match(self, controller, portrait_image, selfie_image):
        to_identity_back(controller, portrait_image)
        controller.go_to_start()
        to_liveness_blink(controller, selfie_image)

        script = []
        for _ in range(2):
            script += [make_landmarks(0.3)] * 5 + [make_landmarks(0.1)]
        script += [make_landmarks(0.3)] * 5
        controller.landmark_detector.frames = script
        served = []

        def source():
            served.append(1)
            return FRAME, len(served) * 100

        async def run():
            loop = controller.run_blink_detection(source)
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.COMPLETED
        assert controller.session.is_liveness_complete
        assert controller.step is VerificationStep.START

    def test_leaving_step_cancels_loop(self, controller, selfie_image):
        to_liveness_blink(controller, selfie_image)

        def source():
            return FRAME, 0

        async def run():
            loop = controller.run_blink_detection(source)
            await asyncio.sleep(0)
            controller.go_to_start()
            return await loop.wait()

        assert asyncio.run(run()) is LoopOutcome.CANCELLED


class TestResetAndSnapshot:
    """Test session reset and snapshots."""

    def test_reset_clears_everything(self, controller, portrait_image, card_image):
        to_identity_back(controller, portrait_image)
        asyncio.run(controller.scan_identity_back(card_image))
        controller.reset()
        snapshot = controller.snapshot()
        assert snapshot["step"] == "start"
        assert snapshot["ocr_results"] is None
        assert snapshot["has_id_portrait"] is False

    def test_snapshot_is_json_safe(self, controller, portrait_image, card_image):
        import json
        to_identity_back(controller, portrait_image)
        asyncio.run(controller.scan_identity_back(card_image))
        data = json.loads(json.dumps(controller.snapshot()))
        assert data["ocr_results"]["surname"] == "OZTURK"
        assert data["blink"]["required_blinks"] == 2
