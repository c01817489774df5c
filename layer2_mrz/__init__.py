"""
Layer 2 — MRZ Extraction
Handles OCR, MRZ line normalization and identity-field parsing
"""
from .ocr import OCRConfig, TesseractOCR
from .parser import (
    HeuristicConfig,
    IdentityFields,
    MRZParser,
    normalize_mrz_line,
    parse,
    select_mrz_lines,
)
from .scanner import MRZScanner
from .structured import StructuredMRZFields, parse_td1

__all__ = [
    'HeuristicConfig',
    'IdentityFields',
    'MRZParser',
    'MRZScanner',
    'OCRConfig',
    'StructuredMRZFields',
    'TesseractOCR',
    'normalize_mrz_line',
    'parse',
    'parse_td1',
    'select_mrz_lines',
]
