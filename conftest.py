"""
Pytest configuration and fixtures for the verification service tests.
"""
import base64
import os
import sys

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from config import Settings
from layer1_preprocessing import MRZPreprocessor
from layer2_mrz import MRZScanner
from layer3_liveness import (
    LEFT_EYE_INDICES,
    RIGHT_EYE_INDICES,
    BlinkConfig,
    BlinkCounter,
    LandmarkFrame,
    LandmarkPoint,
)
from layer4_face_match import DetectedFace, FaceComparator, FaceMatcher
from layer5_flow import VerificationFlowController

# Pixel values used to tell fake images apart
PORTRAIT_SHADE = 100
SELFIE_SHADE = 150
FACELESS_SHADE = 30

VALID_TD1 = (
    "I<TURA12B345678<<<<<<<<<<<<<<<\n"
    "9001015M3001012TUR12345678901<\n"
    "OZTURK<<AHMET<<<<<<<<<<<<<<<<<"
)


class FakeOCR:
    """OCR capability returning canned text."""

    def __init__(self, text=VALID_TD1):
        self.text = text
        self.initialized = False
        self.calls = 0

    async def initialize(self):
        self.initialized = True

    async def recognize(self, image):
        self.calls += 1
        return self.text

    async def close(self):
        self.initialized = False


class FakeLandmarkDetector:
    """Landmark capability replaying a scripted list of landmark frames."""

    def __init__(self, frames=None):
        self.frames = list(frames or [])
        self.calls = 0

    async def initialize(self):
        pass

    async def detect(self, frame, timestamp_ms):
        self.calls += 1
        if not self.frames:
            return None
        return self.frames.pop(0)

    async def close(self):
        pass


class FakeDescriptorExtractor:
    """Descriptor capability keyed by the (uniform) shade of the image."""

    def __init__(self, descriptors=None):
        self.descriptors = descriptors if descriptors is not None else {
            PORTRAIT_SHADE: np.zeros(128, dtype=np.float32),
            SELFIE_SHADE: np.full(128, 0.01, dtype=np.float32),
        }
        self.calls = 0

    async def initialize(self):
        pass

    async def extract(self, image):
        self.calls += 1
        descriptor = self.descriptors.get(int(round(float(image.mean()))))
        if descriptor is None:
            return None
        h, w = image.shape[:2]
        return DetectedFace(box=(w // 4, h // 4, w // 2, h // 2), score=0.9, descriptor=descriptor)

    async def close(self):
        pass


def make_landmarks(ear=0.3):
    """Build a 468-point face mesh whose eyes have the given aspect ratio."""
    points = [LandmarkPoint(0.5, 0.5, 0.0)] * 468
    for indices, x0 in ((LEFT_EYE_INDICES, 0.2), (RIGHT_EYE_INDICES, 0.6)):
        outer, inner, top1, bottom1, top2, bottom2 = indices
        points[outer] = LandmarkPoint(x0, 0.4)
        points[inner] = LandmarkPoint(x0 + 0.2, 0.4)
        points[top1] = LandmarkPoint(x0 + 0.06, 0.4 - ear * 0.1)
        points[bottom1] = LandmarkPoint(x0 + 0.06, 0.4 + ear * 0.1)
        points[top2] = LandmarkPoint(x0 + 0.14, 0.4 - ear * 0.1)
        points[bottom2] = LandmarkPoint(x0 + 0.14, 0.4 + ear * 0.1)
    return LandmarkFrame(points)


def shade_image(shade, size=(200, 200)):
    return np.full((size[1], size[0], 3), shade, dtype=np.uint8)


def encode_image(image):
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return base64.b64encode(buffer.tobytes()).decode("ascii")


@pytest.fixture
def open_landmarks():
    return make_landmarks(0.3)


@pytest.fixture
def closed_landmarks():
    return make_landmarks(0.1)


@pytest.fixture
def card_image():
    """Bright card-sized image that passes the brightness gate."""
    return shade_image(200, size=(640, 400))


@pytest.fixture
def dark_image():
    return shade_image(20, size=(640, 400))


@pytest.fixture
def portrait_image():
    return shade_image(PORTRAIT_SHADE)


@pytest.fixture
def selfie_image():
    return shade_image(SELFIE_SHADE)


@pytest.fixture
def faceless_image():
    return shade_image(FACELESS_SHADE)


@pytest.fixture
def fake_ocr():
    return FakeOCR()


@pytest.fixture
def fake_detector():
    return FakeLandmarkDetector()


@pytest.fixture
def fake_extractor():
    return FakeDescriptorExtractor()


@pytest.fixture
def controller(fake_ocr, fake_detector, fake_extractor):
    """Flow controller wired to fake capabilities."""
    scanner = MRZScanner(preprocessor=MRZPreprocessor(), ocr=fake_ocr)
    comparator = FaceComparator(extractor=fake_extractor, matcher=FaceMatcher(0.55))
    return VerificationFlowController(
        scanner=scanner,
        comparator=comparator,
        landmark_detector=fake_detector,
        blink_counter=BlinkCounter(BlinkConfig(required_blinks=2, debounce_ms=400)),
        frame_interval=0,
    )


@pytest.fixture
def app(controller):
    """Create Flask test application."""
    from app import create_app
    flask_app = create_app(controller=controller, settings=Settings())
    flask_app.config['TESTING'] = True
    yield flask_app
    flask_app.config['COORDINATOR'].close()


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def sample_base64_image(card_image):
    return encode_image(card_image)
