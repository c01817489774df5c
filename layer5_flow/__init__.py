"""
Layer 5 — Verification Flow
Sequences the government-ID and liveness stages of a verification session
"""
from .controller import VerificationFlowController
from .session import (
    Advisory,
    AdvisoryKind,
    FailureCause,
    FlowEvent,
    FlowEventKind,
    VerificationSession,
    VerificationStep,
)

__all__ = [
    'Advisory',
    'AdvisoryKind',
    'FailureCause',
    'FlowEvent',
    'FlowEventKind',
    'VerificationFlowController',
    'VerificationSession',
    'VerificationStep',
]
