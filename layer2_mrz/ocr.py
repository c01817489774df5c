"""
Layer 2 — MRZ Extraction
Component: Tesseract OCR capability
Responsibility: Recognize raw text in the binarized MRZ band
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pytesseract

from error_handlers import CapabilityNotReadyError, ProcessingUnavailableError

logger = logging.getLogger(__name__)

MRZ_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789<"


@dataclass
class OCRConfig:
    """Configuration for the OCR engine."""
    languages: Tuple[str, ...] = ("eng", "tur")
    psm: int = 6                       # Single uniform block of text
    whitelist: str = MRZ_ALPHABET
    tesseract_cmd: Optional[str] = None

    @property
    def lang(self) -> str:
        return "+".join(self.languages)

    @property
    def tesseract_config(self) -> str:
        return f"--psm {self.psm} -c tessedit_char_whitelist={self.whitelist}"


class TesseractOCR:
    """
    Long-lived Tesseract engine.

    Must be initialized once before use and released with ``close()``.
    The engine is not reentrant: a second ``recognize`` while one is in
    flight is refused instead of queued.
    """

    name = "ocr"

    def __init__(self, config: OCRConfig = None):
        self.config = config or OCRConfig()
        self._ready = False
        self._busy = False
        self.version = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self):
        """
        Verify the Tesseract binary and language data are reachable.

        Raises:
            ProcessingUnavailableError: If Tesseract is not installed
        """
        if self._ready:
            return

        logger.info("Initializing Tesseract OCR")
        logger.debug(f"  Languages: {self.config.lang}")
        logger.debug(f"  Config: {self.config.tesseract_config}")

        if self.config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.config.tesseract_cmd

        try:
            self.version = await asyncio.to_thread(pytesseract.get_tesseract_version)
        except pytesseract.TesseractNotFoundError as e:
            logger.error(f"Tesseract binary not found: {e}")
            raise ProcessingUnavailableError(e)

        self._ready = True
        logger.info(f"✓ Tesseract {self.version} ready")

    async def recognize(self, image: np.ndarray) -> str:
        """
        Run OCR on a preprocessed MRZ image.

        Args:
            image: Binarized single-channel image

        Returns:
            str: Raw recognized text

        Raises:
            CapabilityNotReadyError: If called before initialize()
            ProcessingUnavailableError: If a recognition is already running
                or Tesseract fails
        """
        if not self._ready:
            raise CapabilityNotReadyError(self.name)
        if self._busy:
            raise ProcessingUnavailableError("OCR engine is busy")

        self._busy = True
        try:
            text = await asyncio.to_thread(
                pytesseract.image_to_string,
                image,
                lang=self.config.lang,
                config=self.config.tesseract_config,
            )
        except pytesseract.TesseractError as e:
            logger.error(f"Tesseract failed: {e}")
            raise ProcessingUnavailableError(e)
        finally:
            self._busy = False

        logger.debug(f"OCR returned {len(text)} characters")
        return text

    async def close(self):
        if self._ready:
            logger.info("Releasing Tesseract OCR")
        self._ready = False
