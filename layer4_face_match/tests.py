"""
Tests for the face match rule, face cropping and the comparator.
"""
import asyncio

import numpy as np
import pytest

from conftest import FakeDescriptorExtractor
from error_handlers import CapabilityNotReadyError, InvalidImageError, MatchComparisonFailure, NoFaceDetectedError
from layer4_face_match import (
    BACKEND_SFACE,
    DEFAULT_MATCH_THRESHOLD,
    SFACE_MATCH_THRESHOLD,
    DescriptorConfig,
    DlibDescriptorExtractor,
    FaceComparator,
    FaceMatcher,
    SFaceDescriptorExtractor,
    create_descriptor_extractor,
    crop_face,
    euclidean_distance,
)


def descriptors_at(distance, size=128):
    a = np.zeros(size, dtype=np.float32)
    b = np.zeros(size, dtype=np.float32)
    b[0] = distance
    return a, b


class TestEuclideanDistance:
    """Test descriptor distance."""

    def test_known_distance(self):
        assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)

    def test_symmetric(self):
        rng = np.random.default_rng(3)
        a, b = rng.random(128), rng.random(128)
        assert euclidean_distance(a, b) == euclidean_distance(b, a)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            euclidean_distance(np.zeros(128), np.zeros(512))


class TestFaceMatcher:
    """Test the match decision rule."""

    def test_distance_below_threshold_matches(self):
        a, b = descriptors_at(0.40)
        result = FaceMatcher().match(a, b, threshold=0.55)
        assert result.is_match is True
        assert result.distance == pytest.approx(0.40, abs=1e-6)

    def test_distance_above_threshold_does_not_match(self):
        a, b = descriptors_at(0.40)
        assert FaceMatcher().match(a, b, threshold=0.30).is_match is False

    def test_threshold_is_strict(self):
        a, b = descriptors_at(0.5)
        assert FaceMatcher(threshold=0.5).match(a, b).is_match is False

    def test_default_threshold(self):
        a, b = descriptors_at(0.54)
        assert FaceMatcher().match(a, b).is_match is True
        a, b = descriptors_at(0.56)
        assert FaceMatcher().match(a, b).is_match is False

    def test_lowering_threshold_only_flips_to_false(self):
        """Test decreasing the threshold never turns a non-match into a match."""
        a, b = descriptors_at(0.4)
        results = [FaceMatcher().match(a, b, threshold=t).is_match
                   for t in (1.0, 0.6, 0.41, 0.4, 0.2, 0.0)]
        assert results == sorted(results, reverse=True)

    def test_order_independent(self):
        a, b = descriptors_at(0.3)
        assert FaceMatcher().match(a, b) == FaceMatcher().match(b, a)


class TestCropFace:
    """Test padded face crops."""

    def test_padding_applied(self):
        image = np.zeros((200, 200, 3), dtype=np.uint8)
        crop = crop_face(image, (50, 50, 100, 100), padding=0.2)
        assert crop.shape[:2] == (140, 140)

    def test_clamped_to_image(self):
        image = np.zeros((100, 100, 3), dtype=np.uint8)
        crop = crop_face(image, (0, 0, 100, 100), padding=0.2)
        assert crop.shape[:2] == (100, 100)

    def test_box_outside_image(self):
        image = np.zeros((100, 100, 3), dtype=np.uint8)
        with pytest.raises(InvalidImageError):
            crop_face(image, (500, 500, 10, 10))


class TestSFaceExtractor:
    """Test extractor lifecycle without loading models."""

    def test_extract_before_initialize(self):
        extractor = SFaceDescriptorExtractor()
        with pytest.raises(CapabilityNotReadyError):
            asyncio.run(extractor.extract(np.zeros((10, 10, 3), dtype=np.uint8)))


class TestFaceComparator:
    """Test comparison of ID portrait and selfie."""

    def test_matching_faces(self, fake_extractor, portrait_image, selfie_image):
        result = asyncio.run(FaceComparator(fake_extractor).compare(portrait_image, selfie_image))
        assert result.is_match is True

    def test_mismatching_faces(self, portrait_image, selfie_image):
        far = FakeDescriptorExtractor({
            100: np.zeros(128, dtype=np.float32),
            150: np.ones(128, dtype=np.float32),
        })
        result = asyncio.run(FaceComparator(far).compare(portrait_image, selfie_image))
        assert result.is_match is False
        assert result.distance == pytest.approx(np.sqrt(128))

    @pytest.mark.parametrize("which", ["id_portrait", "selfie"])
    def test_missing_face_is_comparison_failure(self, fake_extractor, portrait_image,
                                                selfie_image, faceless_image, which):
        """Test a missing face raises instead of reporting a non-match."""
        images = {"id_portrait": portrait_image, "selfie": selfie_image}
        images[which] = faceless_image
        comparator = FaceComparator(fake_extractor)
        with pytest.raises(MatchComparisonFailure) as exc:
            asyncio.run(comparator.compare(images["id_portrait"], images["selfie"]))
        assert exc.value.source == which
        assert isinstance(exc.value.__cause__, NoFaceDetectedError)

    def test_detect_raises_no_face(self, fake_extractor, faceless_image):
        with pytest.raises(NoFaceDetectedError):
            asyncio.run(FaceComparator(fake_extractor).detect(faceless_image, "selfie"))


class FakeFaceRecognition:
    """Stands in for the face_recognition module with scripted results."""

    def __init__(self, locations_by_upsample, encoding=None):
        self.locations_by_upsample = locations_by_upsample
        self.encoding = np.full(128, 0.1) if encoding is None else encoding
        self.upsamples = []
        self.encoded_locations = None

    def face_locations(self, image, number_of_times_to_upsample=1, model="hog"):
        assert image.shape[2] == 3
        self.upsamples.append(number_of_times_to_upsample)
        return self.locations_by_upsample.get(number_of_times_to_upsample, [])

    def face_encodings(self, image, known_face_locations=None, num_jitters=1, model="small"):
        self.encoded_locations = known_face_locations
        return [self.encoding]


def ready_dlib_extractor(fake, padding_ratio=0.5):
    extractor = DlibDescriptorExtractor(DescriptorConfig(padding_ratio=padding_ratio))
    extractor._fr = fake
    return extractor


class TestDlibExtractor:
    """Test the face_recognition-backed extractor with a scripted library."""

    def test_extract_before_initialize(self):
        with pytest.raises(CapabilityNotReadyError):
            asyncio.run(DlibDescriptorExtractor().extract(np.zeros((10, 10, 3), dtype=np.uint8)))

    def test_largest_face_box_in_unpadded_coordinates(self):
        # 100x100 image padded by 50 on every side
        fake = FakeFaceRecognition({1: [(60, 90, 80, 70), (70, 130, 130, 70)]})
        extractor = ready_dlib_extractor(fake)
        face = asyncio.run(extractor.extract(np.zeros((100, 100, 3), dtype=np.uint8)))
        assert face.box == (20, 20, 60, 60)
        assert fake.encoded_locations == [(70, 130, 130, 70)]
        assert face.descriptor.shape == (128,)
        assert face.descriptor.dtype == np.float32

    def test_retries_with_more_upsampling(self):
        fake = FakeFaceRecognition({2: [(60, 90, 90, 60)]})
        face = asyncio.run(ready_dlib_extractor(fake).extract(np.zeros((100, 100, 3), dtype=np.uint8)))
        assert fake.upsamples == [1, 2]
        assert face is not None

    def test_no_face_returns_none(self):
        fake = FakeFaceRecognition({})
        assert asyncio.run(ready_dlib_extractor(fake).extract(np.zeros((50, 50, 3), dtype=np.uint8))) is None

    def test_empty_image_rejected(self):
        extractor = ready_dlib_extractor(FakeFaceRecognition({}))
        with pytest.raises(InvalidImageError):
            asyncio.run(extractor.extract(np.zeros((0, 0, 3), dtype=np.uint8)))

    def test_close(self):
        extractor = ready_dlib_extractor(FakeFaceRecognition({}))
        asyncio.run(extractor.close())
        assert extractor.is_ready is False


class TestExtractorFactory:
    """Test descriptor backend selection."""

    def test_default_is_dlib(self):
        assert isinstance(create_descriptor_extractor(), DlibDescriptorExtractor)

    def test_sface_backend(self):
        extractor = create_descriptor_extractor(DescriptorConfig(backend=BACKEND_SFACE))
        assert isinstance(extractor, SFaceDescriptorExtractor)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_descriptor_extractor(DescriptorConfig(backend="arcface"))

    def test_sface_threshold_accepts_genuine_pair(self):
        """Test unit descriptors at cosine 0.7 match under the SFace threshold."""
        a = np.zeros(128)
        b = np.zeros(128)
        a[0] = 1.0
        b[0], b[1] = 0.7, np.sqrt(1 - 0.49)
        assert FaceMatcher(SFACE_MATCH_THRESHOLD).match(a, b).is_match is True
        assert FaceMatcher(DEFAULT_MATCH_THRESHOLD).match(a, b).is_match is False
