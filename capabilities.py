"""
External capabilities consumed by the verification core.

Each capability is an explicitly constructed object with an async
``initialize()`` and ``close()``; components receive them by injection.
Default implementations live in their layers:

- OCR:                  layer2_mrz.TesseractOCR
- Landmark detection:   layer3_liveness.MediaPipeLandmarkDetector
- Descriptor extraction: layer4_face_match.DlibDescriptorExtractor
                        (or SFaceDescriptorExtractor)
"""
import asyncio
import logging
from typing import Awaitable, Optional, Protocol, TypeVar, runtime_checkable

import numpy as np

from error_handlers import CapabilityTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class OCREngine(Protocol):
    """Recognizes raw text in a preprocessed, binarized image."""

    async def initialize(self) -> None: ...

    async def recognize(self, image: np.ndarray) -> str: ...

    async def close(self) -> None: ...


@runtime_checkable
class LandmarkDetector(Protocol):
    """Returns the landmark set of the single tracked face, or None."""

    async def initialize(self) -> None: ...

    async def detect(self, frame: np.ndarray, timestamp_ms: float): ...

    async def close(self) -> None: ...


@runtime_checkable
class DescriptorExtractor(Protocol):
    """Returns at most one detected face (box + descriptor), or None."""

    async def initialize(self) -> None: ...

    async def extract(self, image: np.ndarray): ...

    async def close(self) -> None: ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: Optional[float], capability: str) -> T:
    """
    Await a capability call, optionally bounded by a timeout.

    Args:
        awaitable: The pending capability call
        timeout: Seconds to wait, or None to wait indefinitely
        capability: Name used in the error and log message

    Raises:
        CapabilityTimeoutError: If the call does not finish in time
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{capability} timed out after {timeout}s")
        raise CapabilityTimeoutError(capability, timeout) from None
