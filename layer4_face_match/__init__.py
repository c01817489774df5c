"""
Layer 4 — Face Matching
Handles face detection, descriptor extraction and the match decision
"""
from .comparator import FaceComparator
from .descriptors import (
    BACKEND_DLIB,
    BACKEND_SFACE,
    DescriptorConfig,
    DetectedFace,
    DlibDescriptorExtractor,
    SFaceDescriptorExtractor,
    create_descriptor_extractor,
    crop_face,
)
from .matcher import (
    DEFAULT_MATCH_THRESHOLD,
    SFACE_MATCH_THRESHOLD,
    FaceMatcher,
    MatchResult,
    euclidean_distance,
)

__all__ = [
    'BACKEND_DLIB',
    'BACKEND_SFACE',
    'DEFAULT_MATCH_THRESHOLD',
    'DescriptorConfig',
    'DetectedFace',
    'DlibDescriptorExtractor',
    'FaceComparator',
    'FaceMatcher',
    'MatchResult',
    'SFACE_MATCH_THRESHOLD',
    'SFaceDescriptorExtractor',
    'create_descriptor_extractor',
    'crop_face',
    'euclidean_distance',
]
