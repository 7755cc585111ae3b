"""Result and value types for the erasure pipeline.

These dataclasses are what the pipeline hands back to callers. They
hold hashed or opaque identifiers wherever a value may end up in a log
line or a certificate.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from erasure.gdpr.errors import (
    CodeExpiredError,
    MaxAttemptsExceededError,
    RecoveryCodeError,
    WrongCodeError,
)

SCOPE_ALL = "all"

# Primary store categories a scope may name, besides "all"
DATA_CATEGORIES = ("sessions", "settings", "subscriptions", "consents")


@dataclass
class SubsystemVerification:
    """Outcome of re-querying one subsystem after deletion.

    Attributes:
        verified: True when nothing for the user is left
        remaining: Namespaced residue labels, e.g. "object_storage:user-files"
    """
    verified: bool
    remaining: List[str] = field(default_factory=list)


# The primary store check reports per-category residue the same way
PrimaryStoreVerification = SubsystemVerification


@dataclass
class VerificationResult:
    """Aggregate of the four post-deletion checks.

    Attributes:
        primary_store: No user records left in the primary store
        object_storage: No objects left under the user's prefix
        analytics_warehouse: No rows left for the user's hash
        identity_provider: Identity record no longer resolvable
        remaining: Residue labels from every failed check
    """
    primary_store: bool
    object_storage: bool
    analytics_warehouse: bool
    identity_provider: bool
    remaining: List[str] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return (
            self.primary_store
            and self.object_storage
            and self.analytics_warehouse
            and self.identity_provider
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_store": self.primary_store,
            "object_storage": self.object_storage,
            "analytics_warehouse": self.analytics_warehouse,
            "identity_provider": self.identity_provider,
            "all_passed": self.all_passed,
            "remaining": list(self.remaining),
        }


@dataclass
class StageOutcome:
    """Result of one deletion stage in a complete erasure."""
    subsystem: str
    deleted: bool
    count: int = 0
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"deleted": self.deleted, "count": self.count}
        if self.skipped:
            result["skipped"] = True
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ScopeDeletionResult:
    """Result of deleting scoped categories from the primary store.

    Attributes:
        touched_categories: Categories whose deletion finished without error
        success: True when no category failed
        errors: "primary_store: <category>: <error>" for each failure
        counts: Rows removed per category
    """
    touched_categories: List[str]
    success: bool
    errors: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass
class DeletionCertificate:
    """Tamper-evident proof that a user's data was erased.

    Only the six payload fields are covered by the signature; the
    remaining attributes describe the signature itself.
    """
    certificate_id: str
    user_id_hash: str
    deleted_at: str
    deletion_request_id: str
    deleted_data_summary: Dict[str, Any]
    verification_result: Dict[str, Any]
    signature: str
    signature_algorithm: str
    issued_at: datetime
    issued_by: str

    def signed_payload(self) -> Dict[str, Any]:
        return {
            "certificate_id": self.certificate_id,
            "user_id_hash": self.user_id_hash,
            "deleted_at": self.deleted_at,
            "deletion_request_id": self.deletion_request_id,
            "deleted_data_summary": self.deleted_data_summary,
            "verification_result": self.verification_result,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.signed_payload()
        result.update(
            signature=self.signature,
            signature_algorithm=self.signature_algorithm,
            issued_at=self.issued_at.isoformat(),
            issued_by=self.issued_by,
        )
        return result


@dataclass
class CertificateValidation:
    """Result of re-checking a stored certificate.

    error is "not_found" or "signature_mismatch" when valid is False.
    """
    valid: bool
    certificate: Optional[DeletionCertificate] = None
    error: Optional[str] = None


@dataclass
class CompleteDeletionResult:
    """Result of a complete, multi-subsystem erasure.

    Attributes:
        audit_id: Audit trail entry for this run
        user_id_hash: Hashed subject (the raw id is not kept)
        deletion_request_id: Request this run belongs to
        scope: Normalised scope that was erased
        stages: Per-subsystem outcome, keyed by subsystem name
        verification: Post-deletion verification
        certificate: Issued certificate (None if issuing failed)
        success: No errors and every verification check passed
        errors: "<subsystem>: <message>" for every failed stage
        completed_at: When the run finished
    """
    audit_id: str
    user_id_hash: str
    deletion_request_id: str
    scope: List[str]
    stages: Dict[str, StageOutcome]
    verification: VerificationResult
    certificate: Optional[DeletionCertificate]
    success: bool
    errors: List[str]
    completed_at: datetime

    @property
    def deleted(self) -> Dict[str, bool]:
        return {name: stage.deleted for name, stage in self.stages.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "user_id_hash": self.user_id_hash,
            "deletion_request_id": self.deletion_request_id,
            "scope": list(self.scope),
            "stages": {name: stage.to_dict() for name, stage in self.stages.items()},
            "verification": self.verification.to_dict(),
            "certificate_id": self.certificate.certificate_id if self.certificate else None,
            "success": self.success,
            "errors": list(self.errors),
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass
class IssuedRecoveryCode:
    """A freshly issued recovery code. The code itself is kept out of repr."""
    code_id: str
    code: str = field(repr=False)
    expires_at: datetime


@dataclass
class RecoveryVerification:
    """Outcome of checking a recovery code.

    reason is one of "verified", "wrong_code", "expired",
    "max_attempts_exceeded" or "no_pending_code".
    """
    valid: bool
    reason: str
    remaining_attempts: Optional[int] = None
    recovery_code: Any = None
    deletion_request: Any = None

    def raise_for_reason(self) -> None:
        """Raise the matching RecoveryCodeError unless the code was valid."""
        if self.valid:
            return
        if self.reason == "expired":
            raise CodeExpiredError()
        if self.reason == "max_attempts_exceeded":
            raise MaxAttemptsExceededError()
        if self.reason == "wrong_code":
            raise WrongCodeError(self.remaining_attempts or 0)
        raise RecoveryCodeError("No pending recovery code", "NO_PENDING_CODE")


@dataclass
class RecoveryResult:
    success: bool
    message: str
    deletion_request_id: Optional[str] = None


@dataclass
class DeletionStatus:
    """What a user (or support) sees about a pending erasure."""
    deletion_scheduled: bool
    scheduled_deletion_date: Optional[datetime] = None
    request_id: Optional[str] = None
    request_status: Optional[str] = None
    deletion_type: Optional[str] = None
    can_recover: bool = False
    recover_deadline: Optional[datetime] = None
