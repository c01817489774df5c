"""
Error Handling System
Provides consistent error responses across all verification layers
"""
import logging

logger = logging.getLogger(__name__)


# Failure causes surfaced to the user so retry guidance can be specific
CAUSE_IMAGE_QUALITY = "image_quality"
CAUSE_FACE_ABSENCE = "face_absence"
CAUSE_MISMATCH = "mismatch"
CAUSE_PROCESSING = "processing"


class VerificationError(Exception):
    """Base exception for verification errors"""
    cause = CAUSE_PROCESSING

    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "cause": self.cause,
            "details": self.details
        }


# Layer 1 Errors - Image Preprocessing
class ImageError(VerificationError):
    """Source image problems"""
    cause = CAUSE_IMAGE_QUALITY


class InvalidImageError(ImageError):
    """Source image cannot be decoded or is empty"""
    def __init__(self, reason=None):
        super().__init__(
            message="The captured image could not be decoded",
            error_code="INVALID_IMAGE",
            details={
                "reason": reason,
                "suggestion": "Capture the image again"
            }
        )


class ImageTooDarkError(ImageError):
    """MRZ region is below the brightness floor"""
    def __init__(self, brightness, minimum):
        super().__init__(
            message="The image is too dark to read the ID card",
            error_code="IMAGE_TOO_DARK",
            details={
                "brightness": round(float(brightness), 2),
                "minimum": minimum,
                "suggestion": "Move to a brighter place and avoid shadows on the card"
            }
        )


# Processing Errors - drawing surface and external capabilities
class ProcessingError(VerificationError):
    """Compute surface or capability errors"""
    pass


class ProcessingUnavailableError(ProcessingError):
    """Drawing/compute surface could not be acquired"""
    def __init__(self, reason=None):
        super().__init__(
            message="Image processing is currently unavailable",
            error_code="PROCESSING_UNAVAILABLE",
            details={
                "reason": str(reason) if reason else None,
                "suggestion": "Try again in a moment"
            }
        )


class CapabilityNotReadyError(ProcessingError):
    """Capability used before initialize() or after close()"""
    def __init__(self, capability):
        super().__init__(
            message=f"{capability} is not initialized",
            error_code="CAPABILITY_NOT_READY",
            details={
                "capability": capability,
                "suggestion": "Wait for initialization to finish"
            }
        )


class CapabilityTimeoutError(ProcessingError):
    """Capability call exceeded the configured timeout"""
    def __init__(self, capability, timeout):
        super().__init__(
            message=f"{capability} did not respond within {timeout}s",
            error_code="CAPABILITY_TIMEOUT",
            details={
                "capability": capability,
                "timeout": timeout,
                "suggestion": "Try again"
            }
        )


# Layer 2 Errors - MRZ Extraction
class MRZError(VerificationError):
    """MRZ extraction errors"""
    cause = CAUSE_IMAGE_QUALITY


class InsufficientMRZLinesError(MRZError):
    """Fewer than two usable MRZ lines after filtering"""
    def __init__(self, found, raw_text=""):
        super().__init__(
            message="No MRZ data found in the image",
            error_code="MRZ_NOT_FOUND",
            details={
                "lines_found": found,
                "raw_text": raw_text,
                "suggestion": "Ensure the 3-line MRZ section is clearly visible and in focus"
            }
        )


class StructuredParseFailure(MRZError):
    """Structured MRZ parser rejected the lines"""
    def __init__(self, reason):
        super().__init__(
            message=f"Structured MRZ parsing failed: {reason}",
            error_code="MRZ_PARSE_FAILED",
            details={"reason": str(reason)}
        )


# Layer 4 Errors - Face Matching
class FaceError(VerificationError):
    """Face detection and comparison errors"""
    cause = CAUSE_FACE_ABSENCE


class NoFaceDetectedError(FaceError):
    """No face found in an image"""
    def __init__(self, source):
        super().__init__(
            message=f"No face detected in {source.replace('_', ' ')}",
            error_code="NO_FACE_DETECTED",
            details={
                "source": source,
                "suggestion": "Make sure the face is fully visible and well-lit"
            }
        )
        self.source = source


class MatchComparisonFailure(FaceError):
    """Descriptor extraction failed before a distance could be computed"""
    def __init__(self, source, reason=None):
        super().__init__(
            message=f"Face comparison failed: no face detected in {source.replace('_', ' ')}",
            error_code="MATCH_COMPARISON_FAILED",
            details={
                "source": source,
                "reason": reason,
                "suggestion": "Retake the selfie with your face centered in the frame"
            }
        )
        self.source = source


# Layer 5 Errors - Flow
class FlowError(VerificationError):
    """Flow sequencing errors"""
    pass


class InvalidStepError(FlowError):
    """Operation attempted from the wrong step"""
    def __init__(self, current, expected):
        super().__init__(
            message=f"Operation not allowed in step '{current}'",
            error_code="INVALID_STEP",
            details={
                "current_step": current,
                "expected_steps": list(expected)
            }
        )


class IncompleteIdentityFieldsError(FlowError):
    """Confirm attempted before all identity fields were extracted"""
    cause = CAUSE_IMAGE_QUALITY

    def __init__(self, missing):
        super().__init__(
            message="Not all ID fields were extracted",
            error_code="FIELDS_INCOMPLETE",
            details={
                "missing_fields": list(missing),
                "suggestion": "Retry the scan of the ID card back"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, VerificationError):
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "cause": CAUSE_PROCESSING,
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
