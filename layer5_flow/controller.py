"""
Layer 5 — Verification Flow
Component: Verification flow controller
Responsibility: Sequence the ID and liveness stages, guard every step and
turn failures into resumable steps with specific advisories
"""
import logging
from typing import Callable, List, Optional

import numpy as np

from capabilities import LandmarkDetector
from error_handlers import (
    IncompleteIdentityFieldsError,
    InvalidStepError,
    VerificationError,
)
from layer2_mrz import IdentityFields, MRZScanner
from layer3_liveness import (
    BlinkCounter,
    BlinkDetectionLoop,
    BlinkEvent,
    FrameObservation,
    detect_observation,
)
from layer3_liveness.detection_loop import FrameSource
from layer4_face_match import FaceComparator, crop_face

from .session import (
    STAGE_GOVERNMENT_ID,
    STAGE_LIVENESS,
    Advisory,
    AdvisoryKind,
    FailureCause,
    FlowEvent,
    FlowEventKind,
    VerificationSession,
    VerificationStep,
)

logger = logging.getLogger(__name__)

Step = VerificationStep

# Error codes that have a dedicated advisory; everything else is PROCESSING_FAILED
_ERROR_ADVISORIES = {
    "NO_FACE_DETECTED": AdvisoryKind.NO_FACE_DETECTED,
    "MATCH_COMPARISON_FAILED": AdvisoryKind.NO_FACE_DETECTED,
    "IMAGE_TOO_DARK": AdvisoryKind.IMAGE_TOO_DARK,
    "INVALID_IMAGE": AdvisoryKind.INVALID_IMAGE,
    "MRZ_NOT_FOUND": AdvisoryKind.MRZ_NOT_FOUND,
}


class VerificationFlowController:
    """
    Drives one verification session.

    Steps: start -> identity-front -> identity-back -> start and
    start -> liveness-front -> liveness-blink -> start. The two stages can
    be completed in either order.
    """

    def __init__(
        self,
        scanner: MRZScanner,
        comparator: FaceComparator,
        landmark_detector: LandmarkDetector,
        blink_counter: BlinkCounter = None,
        face_padding: float = 0.2,
        frame_interval: float = 1 / 30,
        timeout: Optional[float] = None,
    ):
        self.scanner = scanner
        self.comparator = comparator
        self.landmark_detector = landmark_detector
        self.blink_counter = blink_counter or BlinkCounter()
        self.face_padding = face_padding
        self.frame_interval = frame_interval
        self.timeout = timeout

        self.session = VerificationSession()
        self._listeners: List[Callable[[FlowEvent], None]] = []
        self._loop: Optional[BlinkDetectionLoop] = None
        self._comparing = False
        self._frame_in_flight = False

        logger.info("VerificationFlowController initialized")

    # Events
    def add_listener(self, listener: Callable[[FlowEvent], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[FlowEvent], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: FlowEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Flow listener failed: {e}")
                logger.exception("Full traceback:")

    def _advise(self, kind: AdvisoryKind, message: str, level: str = "info",
                cause: FailureCause = FailureCause.NONE, **details) -> Advisory:
        advisory = Advisory(kind=kind, message=message, level=level, cause=cause, details=details)
        log = logger.warning if level in ("warning", "error") else logger.info
        log(f"[{kind.value}] {message}")
        self._emit(FlowEvent(FlowEventKind.ADVISORY, step=self.session.step, advisory=advisory))
        return advisory

    def _advise_failure(self, error: Exception, attempt: str) -> Advisory:
        if isinstance(error, VerificationError):
            kind = _ERROR_ADVISORIES.get(error.error_code, AdvisoryKind.PROCESSING_FAILED)
            level = "warning" if kind is AdvisoryKind.NO_FACE_DETECTED else "error"
            return self._advise(kind, error.message, level=level,
                                cause=FailureCause(error.cause), **error.details)

        logger.error(f"Unexpected error during {attempt}: {error}")
        logger.exception("Full traceback:")
        return self._advise(
            AdvisoryKind.PROCESSING_FAILED,
            f"Failed to process {attempt}. Please try again.",
            level="error",
            cause=FailureCause.PROCESSING,
            error_type=type(error).__name__,
        )

    # Step handling
    @property
    def step(self) -> VerificationStep:
        return self.session.step

    def _require(self, *steps: VerificationStep):
        if self.session.step not in steps:
            raise InvalidStepError(self.session.step.value, [s.value for s in steps])

    def _set_step(self, step: VerificationStep):
        previous = self.session.step
        if previous is Step.LIVENESS_BLINK and step is not Step.LIVENESS_BLINK:
            self.stop_blink_detection()
        self.session.step = step
        if previous is not step:
            logger.info(f"Step: {previous.value} -> {step.value}")
            self._emit(FlowEvent(FlowEventKind.STEP_CHANGED, step=step, previous_step=previous))

    def _complete_stage(self, stage: str):
        logger.info(f"✓ Stage completed: {stage}")
        self._emit(FlowEvent(FlowEventKind.STAGE_COMPLETED, step=self.session.step, stage=stage))

    def start_identity(self):
        self._require(Step.START)
        self._set_step(Step.IDENTITY_FRONT)

    def start_liveness(self):
        self._require(Step.START)
        self._set_step(Step.LIVENESS_FRONT)

    def go_to_start(self):
        self._set_step(Step.START)

    def reset(self):
        """Discard the whole session and return to the start step."""
        self.stop_blink_detection()
        self.blink_counter.reset()
        self._comparing = False
        self._frame_in_flight = False
        previous = self.session.step
        self.session = VerificationSession()
        logger.info("Verification session reset")
        if previous is not Step.START:
            self._emit(FlowEvent(FlowEventKind.STEP_CHANGED, step=Step.START, previous_step=previous))

    def snapshot(self):
        data = self.session.to_dict()
        blink = self.blink_counter.snapshot()
        data["blink"] = {
            "state": self.blink_counter.state.value,
            "blink_count": blink.blink_count,
            "required_blinks": self.blink_counter.config.required_blinks,
            "last_blink_timestamp": blink.last_blink_timestamp,
        }
        data["is_comparing"] = self._comparing
        return data

    # Government ID stage
    async def submit_identity_front(self, image: np.ndarray) -> bool:
        """
        Store the ID front photo and crop its portrait.

        Returns:
            bool: True if the portrait was found and the flow moved on
        """
        self._require(Step.IDENTITY_FRONT)
        session = self.session
        session.is_processing_government_id = True
        try:
            session.identity_photo = image
            face = await self.comparator.detect(image, "id_portrait")
            session.id_portrait = crop_face(image, face.box, self.face_padding)
        except Exception as e:
            self._advise_failure(e, "ID card")
            return False
        finally:
            session.is_processing_government_id = False

        self._advise(AdvisoryKind.ID_FRONT_CAPTURED, "Front photo captured successfully!",
                     level="success")
        self._set_step(Step.IDENTITY_BACK)
        return True

    async def scan_identity_back(self, image: np.ndarray) -> Optional[IdentityFields]:
        """
        Scan the MRZ on the ID back. Never advances the step by itself.

        Returns:
            IdentityFields, or None when nothing usable was read
        """
        self._require(Step.IDENTITY_BACK)
        session = self.session
        session.is_processing_government_id = True
        try:
            fields = await self.scanner.scan(image)
        except Exception as e:
            self._advise_failure(e, "ID card")
            return None
        finally:
            session.is_processing_government_id = False

        if fields is None:
            self._advise(
                AdvisoryKind.MRZ_UNREADABLE,
                "Failed to process ID card. Please try again.",
                level="error",
                cause=FailureCause.IMAGE_QUALITY,
            )
            return None

        session.ocr_results = fields
        if not fields.is_complete:
            self._advise(
                AdvisoryKind.FIELDS_INCOMPLETE,
                "Could not read ID. Please ensure the 3-line MRZ section is clearly "
                "visible and try again.",
                level="warning",
                cause=FailureCause.IMAGE_QUALITY,
                missing_fields=fields.missing_fields,
            )
        else:
            self._advise(AdvisoryKind.FIELDS_EXTRACTED,
                         "ID information extracted. Please verify the details.",
                         level="success")
        return fields

    def confirm_identity(self):
        """
        Accept the extracted fields and complete the ID stage.

        Raises:
            IncompleteIdentityFieldsError: If any identity field is missing
        """
        self._require(Step.IDENTITY_BACK)
        fields = self.session.ocr_results
        if fields is None or not fields.is_complete:
            missing = fields.missing_fields if fields else ["name", "surname", "national_id"]
            raise IncompleteIdentityFieldsError(missing)

        self.session.is_government_id_complete = True
        self._advise(AdvisoryKind.ID_CONFIRMED, "ID information confirmed successfully!",
                     level="success")
        self._complete_stage(STAGE_GOVERNMENT_ID)
        self._set_step(Step.START)

    def retry_identity(self):
        self._require(Step.IDENTITY_BACK)
        self.session.ocr_results = None
        self._advise(AdvisoryKind.RETRY_REQUESTED,
                     "Please take a new photo of the ID card back.")

    # Liveness stage
    async def submit_liveness_selfie(self, image: np.ndarray) -> bool:
        """
        Store the cropped selfie and arm blink detection.

        Returns:
            bool: True if a face was found and the flow moved on
        """
        self._require(Step.LIVENESS_FRONT)
        session = self.session
        session.is_processing_liveness = True
        try:
            face = await self.comparator.detect(image, "selfie")
            session.liveness_selfie = crop_face(image, face.box, self.face_padding)
        except Exception as e:
            self._advise_failure(e, "selfie")
            return False
        finally:
            session.is_processing_liveness = False

        self.blink_counter.start()
        self._advise(AdvisoryKind.SELFIE_CAPTURED, "Selfie captured successfully!",
                     level="success")
        self._set_step(Step.LIVENESS_BLINK)
        return True

    async def process_liveness_frame(self, frame: np.ndarray,
                                     timestamp: float) -> Optional[FrameObservation]:
        """
        Run one blink-detection tick for a pushed video frame.

        Frames arriving while another tick or a face comparison is running
        are ignored.

        Args:
            frame: BGR video frame
            timestamp: Monotonic capture time in milliseconds

        Returns:
            FrameObservation, or None if the frame was ignored
        """
        self._require(Step.LIVENESS_BLINK)
        if self._frame_in_flight or self._comparing or self.blink_counter.is_completed:
            return None

        self._frame_in_flight = True
        try:
            observation = await detect_observation(
                self.landmark_detector, frame, timestamp,
                ear_threshold=self.blink_counter.config.ear_threshold,
                timeout=self.timeout,
            )
            if self._comparing or self.session.step is not Step.LIVENESS_BLINK:
                return None

            event = self.blink_counter.update(observation)
            if event is not None:
                self._on_blink(event)
        finally:
            self._frame_in_flight = False

        if self.blink_counter.is_completed:
            await self._on_blinks_completed()
        return observation

    def run_blink_detection(self, frame_source: FrameSource) -> BlinkDetectionLoop:
        """
        Start a continuous detection loop over a frame source.

        Must be called from a running event loop. Leaving the blink step
        or calling stop_blink_detection() cancels it.
        """
        self._require(Step.LIVENESS_BLINK)
        self.stop_blink_detection()
        self._loop = BlinkDetectionLoop(
            frame_source,
            self.landmark_detector,
            self.blink_counter,
            on_completed=self._on_blinks_completed,
            frame_interval=self.frame_interval,
            timeout=self.timeout,
            on_blink=self._on_blink,
        )
        self._loop.start()
        return self._loop

    def stop_blink_detection(self):
        if self._loop is not None:
            self._loop.cancel()
            self._loop = None

    def _on_blink(self, event: BlinkEvent):
        required = self.blink_counter.config.required_blinks
        self._advise(
            AdvisoryKind.BLINK_DETECTED,
            f"Blink detected! ({event.blink_count}/{required})",
            level="success",
            blink_count=event.blink_count,
        )

    def _fail_liveness_attempt(self):
        self.blink_counter.reset()
        self._set_step(Step.LIVENESS_FRONT)

    async def _on_blinks_completed(self):
        if self._comparing:
            return

        self._comparing = True
        session = self.session
        session.is_processing_liveness = True
        try:
            if session.id_portrait is None or session.liveness_selfie is None:
                self._advise(
                    AdvisoryKind.MISSING_FACE_IMAGES,
                    "Missing face images for comparison",
                    level="error",
                    cause=FailureCause.FACE_ABSENCE,
                    has_id_portrait=session.id_portrait is not None,
                    has_liveness_selfie=session.liveness_selfie is not None,
                )
                self._fail_liveness_attempt()
                return

            try:
                result = await self.comparator.compare(session.id_portrait, session.liveness_selfie)
            except Exception as e:
                # MatchComparisonFailure maps to NO_FACE_DETECTED, never to a mismatch
                self._advise_failure(e, "face comparison")
                self._fail_liveness_attempt()
                return

            session.last_match = result
            if result.is_match:
                session.is_liveness_complete = True
                self._advise(
                    AdvisoryKind.FACES_MATCH,
                    f"Faces match! Identity verified. (Distance: {result.distance:.3f})",
                    level="success",
                    distance=result.distance,
                )
                self._complete_stage(STAGE_LIVENESS)
                self._set_step(Step.START)
            else:
                self._advise(
                    AdvisoryKind.FACES_DO_NOT_MATCH,
                    f"Faces do not match. Please try again. (Distance: {result.distance:.3f})",
                    level="error",
                    cause=FailureCause.MISMATCH,
                    distance=result.distance,
                )
                self._fail_liveness_attempt()
        finally:
            session.is_processing_liveness = False
            self._comparing = False
