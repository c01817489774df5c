"""
Layer 4 — Face Matching
Component: Face descriptor extractors
Responsibility: Detect a face and compute its descriptor, with dlib
(``face_recognition``, the default) or OpenCV YuNet + SFace
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from error_handlers import CapabilityNotReadyError, InvalidImageError, ProcessingUnavailableError

logger = logging.getLogger(__name__)

Box = Tuple[int, int, int, int]   # x, y, w, h

BACKEND_DLIB = "dlib"
BACKEND_SFACE = "sface"


@dataclass
class DescriptorConfig:
    """Configuration for face detection and description."""
    backend: str = BACKEND_DLIB
    padding_ratio: float = 0.5      # White border added before detection

    # dlib / face_recognition
    detection_model: str = "hog"    # "hog" or "cnn"
    upsample_times: int = 1
    num_jitters: int = 1
    encoding_model: str = "small"   # "small" (5-point) or "large" (68-point)

    # OpenCV YuNet + SFace
    detector_model: str = "models/face_detection_yunet_2023mar.onnx"
    recognizer_model: str = "models/face_recognition_sface_2021dec.onnx"
    score_threshold: float = 0.6
    nms_threshold: float = 0.3
    normalize: bool = True          # L2-normalize SFace descriptors


@dataclass(frozen=True)
class DetectedFace:
    box: Box
    score: float
    descriptor: np.ndarray


def crop_face(image: np.ndarray, box: Box, padding: float = 0.2) -> np.ndarray:
    """
    Crop a face with extra margin on every side, clamped to the image.

    Raises:
        InvalidImageError: If the padded box lies outside the image
    """
    ih, iw = image.shape[:2]
    x, y, w, h = box
    x0 = max(0, int(round(x - w * padding)))
    y0 = max(0, int(round(y - h * padding)))
    x1 = min(iw, int(round(x + w * (1 + padding))))
    y1 = min(ih, int(round(y + h * (1 + padding))))
    if x1 <= x0 or y1 <= y0:
        raise InvalidImageError(f"Face box {box} outside image {iw}x{ih}")
    return image[y0:y1, x0:x1].copy()


def pad_white(image: np.ndarray, ratio: float) -> Tuple[np.ndarray, int, int]:
    """
    Add a white border so faces touching the image edge can be detected.

    Returns:
        tuple: (padded image, horizontal pad, vertical pad)
    """
    h, w = image.shape[:2]
    pad_x = int(w * ratio)
    pad_y = int(h * ratio)
    padded = cv2.copyMakeBorder(
        image, pad_y, pad_y, pad_x, pad_x,
        cv2.BORDER_CONSTANT, value=(255, 255, 255),
    )
    return padded, pad_x, pad_y


def _check_image(image):
    if image is None or getattr(image, "size", 0) == 0:
        raise InvalidImageError("No image data")


class DlibDescriptorExtractor:
    """
    dlib face descriptor capability via the ``face_recognition`` library.

    Produces 128-d ResNet descriptors, for which a Euclidean distance below
    roughly 0.6 means the same person. When several faces are found the
    largest one is used.
    """

    name = "descriptor_extractor"

    def __init__(self, config: DescriptorConfig = None):
        self.config = config or DescriptorConfig()
        self._fr = None

    @property
    def is_ready(self) -> bool:
        return self._fr is not None

    async def initialize(self):
        """
        Import face_recognition and load its dlib models.

        Raises:
            ProcessingUnavailableError: If the library or its models are missing
        """
        if self.is_ready:
            return

        logger.info("Loading dlib face models...")
        try:
            import face_recognition

            self._fr = face_recognition
        except Exception as e:
            logger.error(f"Failed to load face_recognition: {e}")
            raise ProcessingUnavailableError(e)

        logger.info("✓ dlib face models loaded")

    async def extract(self, image: np.ndarray) -> Optional[DetectedFace]:
        """
        Detect the largest face and compute its descriptor.

        Returns:
            DetectedFace, or None if no face was detected
        """
        if not self.is_ready:
            raise CapabilityNotReadyError(self.name)
        _check_image(image)
        return await asyncio.to_thread(self._extract_sync, image)

    def _locate(self, rgb: np.ndarray):
        locations = self._fr.face_locations(
            rgb,
            number_of_times_to_upsample=self.config.upsample_times,
            model=self.config.detection_model,
        )
        if not locations:
            # Small faces on ID cards often need one more upsample
            logger.debug("No face found, retrying with extra upsampling")
            locations = self._fr.face_locations(
                rgb,
                number_of_times_to_upsample=self.config.upsample_times + 1,
                model=self.config.detection_model,
            )
        return locations

    def _extract_sync(self, image: np.ndarray) -> Optional[DetectedFace]:
        padded, pad_x, pad_y = pad_white(image, self.config.padding_ratio)
        rgb = cv2.cvtColor(padded, cv2.COLOR_BGR2RGB)

        locations = self._locate(rgb)
        if not locations:
            logger.debug("No face detected")
            return None

        # (top, right, bottom, left)
        best = max(locations, key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3]))
        encodings = self._fr.face_encodings(
            rgb,
            known_face_locations=[best],
            num_jitters=self.config.num_jitters,
            model=self.config.encoding_model,
        )
        if not encodings:
            logger.debug("Face found but could not be encoded")
            return None

        top, right, bottom, left = best
        box = (left - pad_x, top - pad_y, right - left, bottom - top)
        logger.debug(f"Face detected at {box} ({len(locations)} found)")
        return DetectedFace(box=box, score=1.0, descriptor=np.asarray(encodings[0], dtype=np.float32))

    async def close(self):
        if self.is_ready:
            logger.info("Releasing dlib face models")
        self._fr = None


class SFaceDescriptorExtractor:
    """
    OpenCV YuNet + SFace face descriptor capability.

    Descriptors are L2-normalized, so distances lie in [0, 2]; pair this
    extractor with SFACE_MATCH_THRESHOLD rather than the dlib default.

    Tight portrait crops often fail detection because the face touches the
    border, so the image is padded with white before detection. Boxes are
    reported in the coordinates of the unpadded image.
    """

    name = "descriptor_extractor"

    def __init__(self, config: DescriptorConfig = None):
        self.config = config or DescriptorConfig()
        self._detector = None
        self._recognizer = None

    @property
    def is_ready(self) -> bool:
        return self._detector is not None and self._recognizer is not None

    async def initialize(self):
        """
        Load the YuNet detector and SFace recognizer models.

        Raises:
            ProcessingUnavailableError: If a model cannot be loaded
        """
        if self.is_ready:
            return

        logger.info("Loading face models...")
        logger.debug(f"  Detector: {self.config.detector_model}")
        logger.debug(f"  Recognizer: {self.config.recognizer_model}")

        try:
            self._detector = await asyncio.to_thread(
                cv2.FaceDetectorYN.create,
                self.config.detector_model,
                "",
                (320, 320),
                score_threshold=self.config.score_threshold,
                nms_threshold=self.config.nms_threshold,
            )
            self._recognizer = await asyncio.to_thread(
                cv2.FaceRecognizerSF.create, self.config.recognizer_model, ""
            )
        except cv2.error as e:
            self._detector = None
            self._recognizer = None
            logger.error(f"Failed to load face models: {e}")
            raise ProcessingUnavailableError(e)

        logger.info("✓ Face models loaded")

    async def extract(self, image: np.ndarray) -> Optional[DetectedFace]:
        """
        Detect the most confident face and compute its descriptor.

        Returns:
            DetectedFace, or None if no face was detected
        """
        if not self.is_ready:
            raise CapabilityNotReadyError(self.name)
        _check_image(image)
        return await asyncio.to_thread(self._extract_sync, image)

    def _extract_sync(self, image: np.ndarray) -> Optional[DetectedFace]:
        padded, pad_x, pad_y = pad_white(image, self.config.padding_ratio)
        ph, pw = padded.shape[:2]
        self._detector.setInputSize((pw, ph))
        _, faces = self._detector.detect(padded)
        if faces is None or len(faces) == 0:
            logger.debug("No face detected")
            return None

        best = max(faces, key=lambda row: float(row[4]))
        aligned = self._recognizer.alignCrop(padded, best)
        feature = self._recognizer.feature(aligned).astype(np.float32).ravel()
        if self.config.normalize:
            norm = np.linalg.norm(feature)
            if norm > 0:
                feature = feature / norm

        x, y, bw, bh = (int(v) for v in best[:4])
        box = (x - pad_x, y - pad_y, bw, bh)
        logger.debug(f"Face detected at {box} (score {float(best[4]):.2f})")
        return DetectedFace(box=box, score=float(best[4]), descriptor=feature)

    async def close(self):
        if self.is_ready:
            logger.info("Releasing face models")
        self._detector = None
        self._recognizer = None


def create_descriptor_extractor(config: DescriptorConfig = None):
    """
    Build the descriptor capability named by ``config.backend``.

    Raises:
        ValueError: If the backend is unknown
    """
    config = config or DescriptorConfig()
    if config.backend == BACKEND_DLIB:
        return DlibDescriptorExtractor(config)
    if config.backend == BACKEND_SFACE:
        return SFaceDescriptorExtractor(config)
    raise ValueError(f"Unknown descriptor backend: {config.backend!r}")
