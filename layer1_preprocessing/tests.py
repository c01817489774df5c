"""
Tests for MRZ image preprocessing.
"""
import base64

import cv2
import numpy as np
import pytest

from error_handlers import InvalidImageError
from layer1_preprocessing import MRZPreprocessor, PreprocessConfig, decode_image


class TestMRZRegion:
    """Test MRZ crop geometry."""

    def test_region_is_centered(self):
        """Test the crop is centered with the configured width and aspect."""
        image = np.zeros((400, 1000, 3), dtype=np.uint8)
        region = MRZPreprocessor().mrz_region(image)
        assert region.width == 850
        assert region.height == int(850 / 3.5)
        assert region.x == 75
        assert abs((region.y + region.height / 2) - 200) <= 1

    def test_region_clamped_to_image(self):
        """Test very flat images do not produce a crop taller than the source."""
        image = np.zeros((50, 1000, 3), dtype=np.uint8)
        region = MRZPreprocessor().mrz_region(image)
        assert region.height <= 50
        assert region.y >= 0


class TestPreprocess:
    """Test crop, upscale and binarization."""

    def test_output_is_binary(self):
        """Test every pixel in the output is either 0 or 255."""
        rng = np.random.default_rng(7)
        image = rng.integers(0, 256, size=(300, 600, 3), dtype=np.uint8)
        result = MRZPreprocessor().preprocess(image)
        assert result.image.ndim == 2
        assert set(np.unique(result.image)).issubset({0, 255})

    def test_output_is_upscaled(self):
        """Test the crop is upscaled by the scale factor."""
        image = np.full((400, 1000, 3), 180, dtype=np.uint8)
        result = MRZPreprocessor().preprocess(image)
        width, height = result.size
        assert width == int(round(result.crop.width * 2.5))
        assert height == int(round(result.crop.height * 2.5))

    def test_threshold_is_strictly_greater(self):
        """Test pixels equal to the threshold become black."""
        config = PreprocessConfig(binary_threshold=110)
        at_threshold = np.full((100, 350, 3), 110, dtype=np.uint8)
        above = np.full((100, 350, 3), 111, dtype=np.uint8)
        processor = MRZPreprocessor(config)
        assert processor.preprocess(at_threshold).image.max() == 0
        assert processor.preprocess(above).image.min() == 255

    def test_source_not_mutated(self):
        """Test the raw image is left untouched."""
        image = np.full((200, 400, 3), 90, dtype=np.uint8)
        original = image.copy()
        MRZPreprocessor().preprocess(image)
        assert np.array_equal(image, original)

    def test_grayscale_input_supported(self):
        """Test single-channel input is accepted."""
        image = np.full((200, 400), 250, dtype=np.uint8)
        result = MRZPreprocessor().preprocess(image)
        assert result.image.min() == 255

    @pytest.mark.parametrize("bad", [None, np.zeros((0, 0, 3), dtype=np.uint8), "not an image"])
    def test_invalid_input_raises(self, bad):
        """Test missing or empty images raise InvalidImageError."""
        with pytest.raises(InvalidImageError):
            MRZPreprocessor().preprocess(bad)

    def test_tiny_image_raises(self):
        """Test images too small for a crop raise InvalidImageError."""
        image = np.zeros((1, 1, 3), dtype=np.uint8)
        with pytest.raises(InvalidImageError):
            MRZPreprocessor().preprocess(image)


class TestBrightness:
    """Test the low-light gate."""

    def test_bright_image_passes(self, card_image):
        assert MRZPreprocessor().estimate_brightness(card_image) is True

    def test_dark_image_fails(self, dark_image):
        assert MRZPreprocessor().estimate_brightness(dark_image) is False

    def test_measure_brightness_uses_luminance(self):
        """Test brightness is the mean luminance of the crop."""
        image = np.zeros((200, 400, 3), dtype=np.uint8)
        image[:, :, 1] = 100   # pure green
        brightness = MRZPreprocessor().measure_brightness(image)
        assert brightness == pytest.approx(0.587 * 100, abs=1)


class TestDecodeImage:
    """Test image payload decoding."""

    def test_decode_base64_png(self, card_image):
        ok, buffer = cv2.imencode(".png", card_image)
        payload = base64.b64encode(buffer.tobytes()).decode("ascii")
        decoded = decode_image(payload)
        assert decoded.shape == card_image.shape

    def test_decode_data_url(self, card_image):
        ok, buffer = cv2.imencode(".png", card_image)
        payload = "data:image/png;base64," + base64.b64encode(buffer.tobytes()).decode("ascii")
        assert decode_image(payload).shape == card_image.shape

    def test_decode_raw_bytes(self, card_image):
        ok, buffer = cv2.imencode(".jpg", card_image)
        assert decode_image(buffer.tobytes()).shape == card_image.shape

    @pytest.mark.parametrize("payload", ["!!!not-base64!!!", base64.b64encode(b"garbage").decode(), b""])
    def test_undecodable_payload_raises(self, payload):
        with pytest.raises(InvalidImageError):
            decode_image(payload)
