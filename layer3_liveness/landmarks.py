"""
Layer 3 — Liveness
Component: MediaPipe landmark detector
Responsibility: Track one face per video frame and return its 468+ mesh points
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from error_handlers import CapabilityNotReadyError, ProcessingUnavailableError

from .eye_aspect import LandmarkFrame, LandmarkPoint

logger = logging.getLogger(__name__)


@dataclass
class LandmarkConfig:
    """Configuration for the face landmarker."""
    model_path: str = "models/face_landmarker.task"
    num_faces: int = 1
    min_face_detection_confidence: float = 0.5
    min_face_presence_confidence: float = 0.5
    min_tracking_confidence: float = 0.5


class MediaPipeLandmarkDetector:
    """
    Face landmarker running in VIDEO mode.

    VIDEO mode tracks across frames and requires strictly increasing
    timestamps; a repeated or older timestamp is bumped by 1 ms.
    """

    name = "landmark_detector"

    def __init__(self, config: LandmarkConfig = None):
        self.config = config or LandmarkConfig()
        self._landmarker = None
        self._mp = None
        self._last_timestamp = -1

    @property
    def is_ready(self) -> bool:
        return self._landmarker is not None

    async def initialize(self):
        """
        Load the face landmarker model.

        Raises:
            ProcessingUnavailableError: If the model cannot be loaded
        """
        if self._landmarker is not None:
            return

        logger.info("Loading MediaPipe face landmarker...")
        logger.debug(f"  Model: {self.config.model_path}")

        try:
            import mediapipe as mp

            options = mp.tasks.vision.FaceLandmarkerOptions(
                base_options=mp.tasks.BaseOptions(model_asset_path=self.config.model_path),
                running_mode=mp.tasks.vision.RunningMode.VIDEO,
                num_faces=self.config.num_faces,
                min_face_detection_confidence=self.config.min_face_detection_confidence,
                min_face_presence_confidence=self.config.min_face_presence_confidence,
                min_tracking_confidence=self.config.min_tracking_confidence,
            )
            self._landmarker = await asyncio.to_thread(
                mp.tasks.vision.FaceLandmarker.create_from_options, options
            )
            self._mp = mp
        except Exception as e:
            logger.error(f"Failed to load face landmarker: {e}")
            raise ProcessingUnavailableError(e)

        self._last_timestamp = -1
        logger.info("✓ Face landmarker loaded")

    async def detect(self, frame: np.ndarray, timestamp_ms: float) -> Optional[LandmarkFrame]:
        """
        Detect face landmarks in a BGR video frame.

        Returns:
            LandmarkFrame of the first face, or None if no face was found
        """
        if self._landmarker is None:
            raise CapabilityNotReadyError(self.name)

        ts = int(timestamp_ms)
        if ts <= self._last_timestamp:
            ts = self._last_timestamp + 1
        self._last_timestamp = ts

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
        result = await asyncio.to_thread(self._landmarker.detect_for_video, image, ts)

        if not result.face_landmarks:
            return None
        return LandmarkFrame(
            LandmarkPoint(lm.x, lm.y, lm.z) for lm in result.face_landmarks[0]
        )

    async def close(self):
        if self._landmarker is not None:
            logger.info("Closing face landmarker")
            self._landmarker.close()
        self._landmarker = None
        self._mp = None
