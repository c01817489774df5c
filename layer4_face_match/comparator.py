"""
Layer 4 — Face Matching
Component: Face comparator
Responsibility: Extract both descriptors and apply the match rule
"""
import logging
from typing import Optional

import numpy as np

from capabilities import DescriptorExtractor, call_with_timeout
from error_handlers import MatchComparisonFailure, NoFaceDetectedError

from .descriptors import DetectedFace
from .matcher import FaceMatcher, MatchResult

logger = logging.getLogger(__name__)

SOURCE_ID_PORTRAIT = "id_portrait"
SOURCE_SELFIE = "selfie"


class FaceComparator:
    """Compares the ID-card portrait with the liveness selfie."""

    def __init__(
        self,
        extractor: DescriptorExtractor,
        matcher: FaceMatcher = None,
        timeout: Optional[float] = None,
    ):
        self.extractor = extractor
        self.matcher = matcher or FaceMatcher()
        self.timeout = timeout

    async def detect(self, image: np.ndarray, source: str) -> DetectedFace:
        """
        Detect the face in one image.

        Raises:
            NoFaceDetectedError: If no face is found
        """
        face = await call_with_timeout(
            self.extractor.extract(image), self.timeout, "descriptor_extractor"
        )
        if face is None:
            raise NoFaceDetectedError(source)
        return face

    async def compare(self, id_portrait: np.ndarray, selfie: np.ndarray,
                      threshold: float = None) -> MatchResult:
        """
        Compare two face images.

        Args:
            id_portrait: Cropped portrait from the ID card
            selfie: Cropped liveness selfie
            threshold: Optional per-call threshold override

        Returns:
            MatchResult

        Raises:
            MatchComparisonFailure: If either image has no detectable face
        """
        logger.info("Comparing faces...")
        descriptors = []
        for image, source in ((id_portrait, SOURCE_ID_PORTRAIT), (selfie, SOURCE_SELFIE)):
            try:
                face = await self.detect(image, source)
            except NoFaceDetectedError as e:
                logger.warning(f"Comparison aborted: {e.message}")
                raise MatchComparisonFailure(source, reason=e.error_code) from e
            descriptors.append(face.descriptor)

        return self.matcher.match(descriptors[0], descriptors[1], threshold=threshold)
