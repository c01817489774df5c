"""
Layer 2 — MRZ Extraction
Component: MRZ scanner
Responsibility: Run brightness gate, preprocessing, OCR and parsing in order
"""
import logging
from typing import Optional

import numpy as np

from capabilities import OCREngine, call_with_timeout
from error_handlers import ImageTooDarkError, InsufficientMRZLinesError
from layer1_preprocessing import MRZPreprocessor

from .parser import IdentityFields, MRZParser

logger = logging.getLogger(__name__)


class MRZScanner:
    """Reads identity fields from the back side of an ID card."""

    def __init__(
        self,
        preprocessor: MRZPreprocessor,
        ocr: OCREngine,
        parser: MRZParser = None,
        timeout: Optional[float] = None,
    ):
        self.preprocessor = preprocessor
        self.ocr = ocr
        self.parser = parser or MRZParser()
        self.timeout = timeout

    async def scan(self, raw: np.ndarray) -> Optional[IdentityFields]:
        """
        Scan a raw ID-card image.

        Args:
            raw: BGR image of the card back

        Returns:
            IdentityFields, or None if MRZ lines were found but no field
            could be read from them

        Raises:
            ImageTooDarkError: If the MRZ region is below the brightness floor
            InsufficientMRZLinesError: If fewer than 2 MRZ lines survive filtering
            ProcessingUnavailableError: If preprocessing or OCR fails
            CapabilityTimeoutError: If OCR exceeds the configured timeout
        """
        logger.info("Starting MRZ scan...")

        brightness = self.preprocessor.measure_brightness(raw)
        if brightness < self.preprocessor.config.min_brightness:
            logger.warning(f"Scan skipped, image too dark ({brightness:.1f})")
            raise ImageTooDarkError(brightness, self.preprocessor.config.min_brightness)

        prepared = self.preprocessor.preprocess(raw)
        text = await call_with_timeout(self.ocr.recognize(prepared.image), self.timeout, "ocr")

        fields = self.parser.parse(text)
        if len(fields.mrz_lines) < 2:
            raise InsufficientMRZLinesError(len(fields.mrz_lines), raw_text=text)

        if not fields.has_any_field:
            logger.warning("MRZ lines found but no identity field could be read")
            return None

        logger.info("✓ MRZ scan finished")
        return fields
