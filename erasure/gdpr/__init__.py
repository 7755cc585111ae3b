"""GDPR right-to-erasure pipeline.

This module provides:
- Deletion Scheduling: grace periods and the deletion request lifecycle
- Account Recovery: time-boxed, attempt-limited recovery codes
- Complete Erasure: ordered deletion across all subsystems
- Verification: post-deletion re-query of every subsystem
- Certificates: HMAC-signed, tamper-evident proof of erasure
- Audit Logging: erasure audit trail keyed by hashed subject
"""

from erasure.gdpr.audit import ErasureAuditEntry, ErasureAuditLogger, ErasureOperation
from erasure.gdpr.certificates import CertificateIssuer
from erasure.gdpr.coordinator import ErasureCoordinator
from erasure.gdpr.errors import (
    CertificateTamperedError,
    CodeExpiredError,
    ConfigurationError,
    ErasureError,
    ErasureInProgressError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    RecoveryCodeError,
    SecurityError,
    SubjectNotFoundError,
    TransientSubsystemError,
    ValidationError,
    WrongCodeError,
)
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.pipeline import ErasurePipeline, LoggingRecoveryNotifier, RecoveryNotifier
from erasure.gdpr.recovery import RecoveryCodeService
from erasure.gdpr.scheduler import DeletionScheduler
from erasure.gdpr.schemas import (
    CertificateValidation,
    CompleteDeletionResult,
    DeletionCertificate,
    DeletionStatus,
    IssuedRecoveryCode,
    RecoveryResult,
    RecoveryVerification,
    ScopeDeletionResult,
    VerificationResult,
)
from erasure.gdpr.verification import VerificationEngine

__all__ = [
    # Pipeline
    "ErasurePipeline",
    "RecoveryNotifier",
    "LoggingRecoveryNotifier",
    # Components
    "DeletionScheduler",
    "RecoveryCodeService",
    "ErasureCoordinator",
    "VerificationEngine",
    "CertificateIssuer",
    "SubjectHasher",
    # Schemas
    "CertificateValidation",
    "CompleteDeletionResult",
    "DeletionCertificate",
    "DeletionStatus",
    "IssuedRecoveryCode",
    "RecoveryResult",
    "RecoveryVerification",
    "ScopeDeletionResult",
    "VerificationResult",
    # Audit
    "ErasureAuditLogger",
    "ErasureOperation",
    "ErasureAuditEntry",
    # Errors
    "CertificateTamperedError",
    "CodeExpiredError",
    "ConfigurationError",
    "ErasureError",
    "ErasureInProgressError",
    "InvalidTransitionError",
    "MaxAttemptsExceededError",
    "RecoveryCodeError",
    "SecurityError",
    "SubjectNotFoundError",
    "TransientSubsystemError",
    "ValidationError",
    "WrongCodeError",
]
