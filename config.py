"""
Service configuration
Builds the component configs from environment variables.
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from layer1_preprocessing import PreprocessConfig
from layer2_mrz import HeuristicConfig, OCRConfig
from layer3_liveness import BlinkConfig, LandmarkConfig
from layer4_face_match import (
    BACKEND_SFACE,
    DEFAULT_MATCH_THRESHOLD,
    SFACE_MATCH_THRESHOLD,
    DescriptorConfig,
)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


@dataclass
class Settings:
    """All tunable values of the verification service."""
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    face_match_threshold: float = DEFAULT_MATCH_THRESHOLD
    face_crop_padding: float = 0.2
    capability_timeout: Optional[float] = None   # Seconds; None waits forever

    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    heuristics: HeuristicConfig = field(default_factory=HeuristicConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)
    blink: BlinkConfig = field(default_factory=BlinkConfig)
    landmarks: LandmarkConfig = field(default_factory=LandmarkConfig)
    descriptors: DescriptorConfig = field(default_factory=DescriptorConfig)

    @classmethod
    def from_env(cls):
        debug = _env_bool("ENABLE_DEBUG_MODE")
        timeout = os.environ.get("CAPABILITY_TIMEOUT")
        languages = os.environ.get("OCR_LANGUAGES", "eng+tur")
        backend = os.environ.get("DESCRIPTOR_BACKEND", DescriptorConfig.backend).strip().lower()
        default_threshold = SFACE_MATCH_THRESHOLD if backend == BACKEND_SFACE else DEFAULT_MATCH_THRESHOLD

        return cls(
            app_env=os.environ.get("APP_ENV", "development"),
            debug=debug,
            log_level=os.environ.get("LOG_LEVEL", "DEBUG" if debug else "INFO").upper(),
            face_match_threshold=_env_float("FACE_MATCH_THRESHOLD", default_threshold),
            capability_timeout=float(timeout) if timeout else None,
            preprocess=PreprocessConfig(
                crop_width_ratio=_env_float("MRZ_CROP_WIDTH_RATIO", 0.85),
                aspect_ratio=_env_float("MRZ_ASPECT_RATIO", 3.5),
                scale_factor=_env_float("MRZ_SCALE_FACTOR", 2.5),
                binary_threshold=_env_int("MRZ_BINARY_THRESHOLD", 110),
                min_brightness=_env_float("LOW_LIGHT_THRESHOLD", 60.0),
            ),
            ocr=OCRConfig(
                languages=tuple(lang for lang in languages.split("+") if lang),
                tesseract_cmd=os.environ.get("TESSERACT_CMD") or None,
            ),
            blink=BlinkConfig(
                required_blinks=_env_int("REQUIRED_BLINKS", 2),
                debounce_ms=_env_float("BLINK_DEBOUNCE_MS", 400),
                ear_threshold=_env_float("EAR_THRESHOLD", 0.2),
            ),
            landmarks=LandmarkConfig(
                model_path=os.environ.get("FACE_LANDMARKER_MODEL", LandmarkConfig.model_path),
            ),
            descriptors=DescriptorConfig(
                backend=backend,
                detection_model=os.environ.get("FACE_DETECTION_MODEL", DescriptorConfig.detection_model),
                num_jitters=_env_int("FACE_NUM_JITTERS", DescriptorConfig.num_jitters),
                detector_model=os.environ.get("FACE_DETECTOR_MODEL", DescriptorConfig.detector_model),
                recognizer_model=os.environ.get("FACE_RECOGNIZER_MODEL", DescriptorConfig.recognizer_model),
            ),
        )
