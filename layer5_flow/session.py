"""
Layer 5 — Verification Flow
Component: Session state and flow events
Responsibility: Hold the per-session verification state and describe what
the controller reports back to its host
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from error_handlers import (
    CAUSE_FACE_ABSENCE,
    CAUSE_IMAGE_QUALITY,
    CAUSE_MISMATCH,
    CAUSE_PROCESSING,
)
from layer2_mrz import IdentityFields
from layer4_face_match import MatchResult


class VerificationStep(Enum):
    START = "start"
    IDENTITY_FRONT = "identity-front"
    IDENTITY_BACK = "identity-back"
    LIVENESS_FRONT = "liveness-front"
    LIVENESS_BLINK = "liveness-blink"


class FailureCause(Enum):
    NONE = "none"
    IMAGE_QUALITY = CAUSE_IMAGE_QUALITY
    FACE_ABSENCE = CAUSE_FACE_ABSENCE
    MISMATCH = CAUSE_MISMATCH
    PROCESSING = CAUSE_PROCESSING


class AdvisoryKind(Enum):
    # Identity stage
    ID_FRONT_CAPTURED = "ID_FRONT_CAPTURED"
    FIELDS_EXTRACTED = "FIELDS_EXTRACTED"
    FIELDS_INCOMPLETE = "FIELDS_INCOMPLETE"
    MRZ_NOT_FOUND = "MRZ_NOT_FOUND"
    MRZ_UNREADABLE = "MRZ_UNREADABLE"
    ID_CONFIRMED = "ID_CONFIRMED"
    RETRY_REQUESTED = "RETRY_REQUESTED"

    # Liveness stage
    SELFIE_CAPTURED = "SELFIE_CAPTURED"
    BLINK_DETECTED = "BLINK_DETECTED"
    FACES_MATCH = "FACES_MATCH"
    FACES_DO_NOT_MATCH = "FACES_DO_NOT_MATCH"
    MISSING_FACE_IMAGES = "MISSING_FACE_IMAGES"

    # Shared
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    IMAGE_TOO_DARK = "IMAGE_TOO_DARK"
    INVALID_IMAGE = "INVALID_IMAGE"
    PROCESSING_FAILED = "PROCESSING_FAILED"


@dataclass(frozen=True)
class Advisory:
    """User-facing outcome of an operation."""
    kind: AdvisoryKind
    message: str
    level: str = "info"        # info | success | warning | error
    cause: FailureCause = FailureCause.NONE
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "message": self.message,
            "level": self.level,
            "cause": self.cause.value,
            "details": self.details,
        }


class FlowEventKind(Enum):
    STEP_CHANGED = "step_changed"
    STAGE_COMPLETED = "stage_completed"
    ADVISORY = "advisory"


STAGE_GOVERNMENT_ID = "government_id"
STAGE_LIVENESS = "liveness"


@dataclass(frozen=True)
class FlowEvent:
    kind: FlowEventKind
    step: Optional[VerificationStep] = None
    previous_step: Optional[VerificationStep] = None
    stage: Optional[str] = None
    advisory: Optional[Advisory] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self):
        data = {"kind": self.kind.value}
        if self.step is not None:
            data["step"] = self.step.value
        if self.previous_step is not None:
            data["previous_step"] = self.previous_step.value
        if self.stage is not None:
            data["stage"] = self.stage
        if self.advisory is not None:
            data["advisory"] = self.advisory.to_dict()
        return data


@dataclass
class VerificationSession:
    """Everything collected during one verification session."""
    step: VerificationStep = VerificationStep.START

    # Government ID
    identity_photo: Optional[np.ndarray] = None
    id_portrait: Optional[np.ndarray] = None
    ocr_results: Optional[IdentityFields] = None
    is_processing_government_id: bool = False
    is_government_id_complete: bool = False

    # Liveness
    liveness_selfie: Optional[np.ndarray] = None
    last_match: Optional[MatchResult] = None
    is_processing_liveness: bool = False
    is_liveness_complete: bool = False

    def to_dict(self):
        return {
            "step": self.step.value,
            "has_identity_photo": self.identity_photo is not None,
            "has_id_portrait": self.id_portrait is not None,
            "ocr_results": self.ocr_results.to_dict() if self.ocr_results else None,
            "is_processing_government_id": self.is_processing_government_id,
            "is_government_id_complete": self.is_government_id_complete,
            "has_liveness_selfie": self.liveness_selfie is not None,
            "last_match": self.last_match.to_dict() if self.last_match else None,
            "is_processing_liveness": self.is_processing_liveness,
            "is_liveness_complete": self.is_liveness_complete,
        }
