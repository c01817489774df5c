"""
Layer 1 — Preprocessing
Crops, upscales and binarizes the MRZ band of an ID-card photo
and gates OCR on scene brightness.
"""
from .processor import (
    CropRegion,
    MRZPreprocessor,
    PreprocessConfig,
    PreprocessedMRZImage,
    decode_image,
)

__all__ = [
    'CropRegion',
    'MRZPreprocessor',
    'PreprocessConfig',
    'PreprocessedMRZImage',
    'decode_image',
]
