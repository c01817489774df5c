"""
Layer 1 — MRZ Image Preprocessing
Crops the MRZ band out of a raw ID-card photo, upscales it and binarizes it
for text recognition. Also estimates scene brightness so OCR attempts that
are doomed by poor lighting can be skipped.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Union

import cv2
import numpy as np

from error_handlers import InvalidImageError, ProcessingUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class PreprocessConfig:
    """Configuration for MRZ preprocessing."""
    # Crop settings (must match the on-screen MRZ guide frame)
    crop_width_ratio: float = 0.85   # Crop width as fraction of source width
    aspect_ratio: float = 3.5        # MRZ band width:height

    # Enhancement settings
    scale_factor: float = 2.5        # Upscale so small OCR-B glyphs survive
    binary_threshold: int = 110      # Tune 100-130 depending on lighting
    upscale_method: int = cv2.INTER_LANCZOS4

    # Low-light gate
    min_brightness: float = 60.0     # Mean luminance floor (0-255)


@dataclass(frozen=True)
class CropRegion:
    """Pixel rectangle inside the source image."""
    x: int
    y: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class PreprocessedMRZImage:
    """Binarized, upscaled MRZ band ready for OCR."""
    image: np.ndarray
    crop: CropRegion
    scale_factor: float
    threshold: int

    @property
    def size(self):
        h, w = self.image.shape[:2]
        return w, h


def decode_image(data: Union[bytes, str]) -> np.ndarray:
    """
    Decode an encoded image (raw bytes, base64 or data URL) into a BGR array.

    Raises:
        InvalidImageError: If the payload is not a decodable image
    """
    if isinstance(data, str):
        if data.startswith("data:") and "," in data:
            data = data.split(",", 1)[1]
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidImageError(f"Invalid base64 payload: {e}")

    if not data:
        raise InvalidImageError("Empty image payload")

    arr = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if image is None:
        raise InvalidImageError("Could not decode image. Upload a valid PNG/JPG.")
    return image


class MRZPreprocessor:
    """
    Turns a raw capture into a black/white MRZ band.

    The crop is centered in the source, its width a fixed fraction of the
    source width and its height derived from the MRZ aspect ratio.
    """

    def __init__(self, config: PreprocessConfig = None):
        self.config = config or PreprocessConfig()
        logger.info("MRZPreprocessor initialized")
        logger.debug(f"  Crop width ratio: {self.config.crop_width_ratio}")
        logger.debug(f"  Aspect ratio: {self.config.aspect_ratio}")
        logger.debug(f"  Scale factor: {self.config.scale_factor}")
        logger.debug(f"  Binary threshold: {self.config.binary_threshold}")

    def mrz_region(self, image: np.ndarray) -> CropRegion:
        """Compute the centered MRZ crop rectangle for an image."""
        self._validate(image)
        h, w = image.shape[:2]

        crop_w = w * self.config.crop_width_ratio
        crop_h = crop_w / self.config.aspect_ratio

        # Clamp to the source; very tall ratios can exceed the frame height
        crop_w = min(crop_w, w)
        crop_h = min(crop_h, h)

        x = int(round((w - crop_w) / 2))
        y = int(round((h - crop_h) / 2))
        return CropRegion(x=x, y=y, width=int(crop_w), height=int(crop_h))

    def preprocess(self, raw: np.ndarray) -> PreprocessedMRZImage:
        """
        Crop, upscale and binarize the MRZ band.

        Args:
            raw: BGR image (numpy array); left untouched

        Returns:
            PreprocessedMRZImage: single-channel image with values 0/255

        Raises:
            InvalidImageError: If the source is not a usable image
            ProcessingUnavailableError: If OpenCV fails during processing
        """
        region = self.mrz_region(raw)
        crop = self._crop(raw, region)
        cfg = self.config

        try:
            target = (
                max(1, int(round(region.width * cfg.scale_factor))),
                max(1, int(round(region.height * cfg.scale_factor))),
            )
            upscaled = cv2.resize(crop, target, interpolation=cfg.upscale_method)
            gray = self._luminance(upscaled)
            # THRESH_BINARY keeps pixels strictly above the threshold
            _, binary = cv2.threshold(gray, cfg.binary_threshold, 255, cv2.THRESH_BINARY)
        except cv2.error as e:
            logger.error(f"OpenCV failed during MRZ preprocessing: {e}")
            raise ProcessingUnavailableError(e)

        logger.debug(f"MRZ band {region.width}x{region.height} -> {target[0]}x{target[1]}")
        return PreprocessedMRZImage(
            image=binary,
            crop=region,
            scale_factor=cfg.scale_factor,
            threshold=cfg.binary_threshold,
        )

    def measure_brightness(self, raw: np.ndarray) -> float:
        """Mean luminance (0-255) of the un-scaled MRZ crop."""
        region = self.mrz_region(raw)
        crop = self._crop(raw, region)
        try:
            gray = self._luminance(crop)
        except cv2.error as e:
            logger.error(f"OpenCV failed during brightness estimation: {e}")
            raise ProcessingUnavailableError(e)
        return float(np.mean(gray))

    def estimate_brightness(self, raw: np.ndarray) -> bool:
        """Return True when the MRZ region is bright enough for OCR."""
        brightness = self.measure_brightness(raw)
        bright_enough = brightness >= self.config.min_brightness
        if not bright_enough:
            logger.warning(
                f"MRZ region too dark: {brightness:.1f} < {self.config.min_brightness}"
            )
        return bright_enough

    def _validate(self, image):
        if image is None or not isinstance(image, np.ndarray):
            raise InvalidImageError("No image data")
        if image.ndim not in (2, 3) or image.size == 0:
            raise InvalidImageError(f"Unexpected image shape {getattr(image, 'shape', None)}")

    def _crop(self, image: np.ndarray, region: CropRegion) -> np.ndarray:
        if region.is_empty:
            raise InvalidImageError(
                f"Image {image.shape[1]}x{image.shape[0]} too small for MRZ crop"
            )
        return image[region.y:region.y + region.height, region.x:region.x + region.width]

    @staticmethod
    def _luminance(image: np.ndarray) -> np.ndarray:
        # BGR2GRAY applies 0.299R + 0.587G + 0.114B
        if image.ndim == 2:
            return image
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
