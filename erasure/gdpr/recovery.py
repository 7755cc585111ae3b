"""Account recovery codes.

A user scheduled for erasure can keep their account by proving control
of their email address with a six-digit code. Codes are:

- drawn from the ``secrets`` CSPRNG
- valid for a fixed TTL (24 hours by default), expired at ``>= expires_at``
- limited to a fixed number of wrong guesses (5 by default)
- unique per user while pending: issuing a new code invalidates the
  previous one in the same transaction, backed by a partial unique index

Recovery itself (clear the schedule, cancel the request, consume the
code) commits as one transaction or not at all.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from erasure.gdpr.audit import ErasureAuditLogger, ErasureOperation
from erasure.gdpr.errors import TransientSubsystemError, ValidationError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.scheduler import OPEN_STATUSES, CANCELLABLE_STATUSES, apply_transition
from erasure.gdpr.schemas import IssuedRecoveryCode, RecoveryResult, RecoveryVerification
from erasure.gdpr.validators import normalize_email, require_id, validate_code
from erasure.models import (
    DeletionRequest,
    DeletionRequestStatus,
    RecoveryCode,
    RecoveryCodeStatus,
    UserAccount,
    get_current_utc_time,
)
from erasure.observability.metrics import record_recovery_event

logger = logging.getLogger(__name__)

RECOVERY_CODE_TTL_HOURS = 24
RECOVERY_CODE_MAX_ATTEMPTS = 5
CLEANUP_BATCH_LIMIT = 500
RECOVERY_CANCELLATION_REASON = "user recovery"

PENDING = RecoveryCodeStatus.pending.value
VERIFIED = RecoveryCodeStatus.verified.value


def generate_code() -> str:
    """Six decimal digits, zero-padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


class RecoveryCodeService:
    """Issues, checks and redeems recovery codes.

    Args:
        db: Session for the primary store
        hasher: Hashes user ids and IP addresses
        ttl_hours: Lifetime of a code
        max_attempts: Wrong guesses allowed before a code is invalidated
        audit: Audit trail writer for successful recoveries (optional)
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        db: Session,
        hasher: SubjectHasher,
        ttl_hours: int = RECOVERY_CODE_TTL_HOURS,
        max_attempts: int = RECOVERY_CODE_MAX_ATTEMPTS,
        audit: Optional[ErasureAuditLogger] = None,
        clock: Callable[[], datetime] = get_current_utc_time,
    ):
        self._db = db
        self._audit = audit
        self._hasher = hasher
        self._ttl = timedelta(hours=ttl_hours)
        self._max_attempts = max_attempts
        self._clock = clock

    def issue(
        self,
        user_id: str,
        email: str,
        deletion_request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedRecoveryCode:
        """Invalidate any pending code of the user and issue a new one.

        Both happen in one transaction. If a concurrent issue wins the
        race for the one-pending-code index, the rotation is retried once.

        Raises:
            ValidationError: Missing user id, malformed email, or the
                linked deletion request is not recoverable
            TransientSubsystemError: Rotation failed twice
        """
        user_id = require_id(user_id, "user_id")
        email = normalize_email(email)
        ip_hash = self._hasher.ip_hash(ip_address) if ip_address else None

        if deletion_request_id:
            request = self._db.get(DeletionRequest, deletion_request_id)
            if request is not None and not request.can_recover:
                raise ValidationError("this deletion request cannot be recovered")

        for attempt in range(2):
            now = self._clock()
            record = RecoveryCode(
                user_id=user_id,
                email=email,
                code=generate_code(),
                status=PENDING,
                attempts=0,
                max_attempts=self._max_attempts,
                created_at=now,
                expires_at=now + self._ttl,
                deletion_request_id=deletion_request_id,
                ip_address_hash=ip_hash,
            )
            try:
                self._db.query(RecoveryCode).filter(
                    RecoveryCode.user_id == user_id,
                    RecoveryCode.status == PENDING,
                ).update(
                    {RecoveryCode.status: RecoveryCodeStatus.invalidated.value},
                    synchronize_session=False,
                )
                self._db.add(record)
                self._db.commit()
                break
            except IntegrityError as e:
                self._db.rollback()
                if attempt:
                    raise TransientSubsystemError(
                        "recovery_codes", "concurrent code rotation did not settle"
                    ) from e
                logger.warning(
                    f"Recovery code rotation conflict, retrying: "
                    f"user_ref={self._hasher.user_hash(user_id)}"
                )

        record_recovery_event("issued")
        logger.info(
            f"Recovery code issued: user_ref={self._hasher.user_hash(user_id)}, "
            f"code_id={record.code_id}, expires_at={record.expires_at.isoformat()}"
        )
        return IssuedRecoveryCode(
            code_id=record.code_id,
            code=record.code,
            expires_at=record.expires_at,
        )

    def _linked_request(self, code: RecoveryCode) -> Optional[DeletionRequest]:
        if code.deletion_request_id:
            request = self._db.get(DeletionRequest, code.deletion_request_id)
            if request is not None:
                return request
        return (
            self._db.query(DeletionRequest)
            .filter(
                DeletionRequest.user_id == code.user_id,
                DeletionRequest.status.in_(OPEN_STATUSES),
            )
            .order_by(DeletionRequest.requested_at.desc())
            .first()
        )

    def _record_wrong_guess(self, email: str) -> RecoveryVerification:
        """Charge a wrong guess to the most recent pending code for the email."""
        latest = (
            self._db.query(RecoveryCode)
            .filter(RecoveryCode.email == email, RecoveryCode.status == PENDING)
            .order_by(RecoveryCode.created_at.desc())
            .first()
        )
        if latest is None:
            record_recovery_event("no_pending_code")
            return RecoveryVerification(valid=False, reason="no_pending_code")

        latest.attempts = (latest.attempts or 0) + 1
        if latest.attempts >= latest.max_attempts:
            latest.status = RecoveryCodeStatus.invalidated.value
            self._db.commit()
            record_recovery_event("max_attempts_exceeded")
            logger.warning(
                f"Recovery code invalidated after too many attempts: "
                f"user_ref={self._hasher.user_hash(latest.user_id)}, code_id={latest.code_id}"
            )
            return RecoveryVerification(
                valid=False, reason="max_attempts_exceeded", remaining_attempts=0
            )

        self._db.commit()
        record_recovery_event("wrong_code")
        return RecoveryVerification(
            valid=False,
            reason="wrong_code",
            remaining_attempts=latest.max_attempts - latest.attempts,
        )

    def _expire(self, code: RecoveryCode) -> RecoveryVerification:
        code.status = RecoveryCodeStatus.expired.value
        self._db.commit()
        record_recovery_event("expired")
        return RecoveryVerification(valid=False, reason="expired")

    def verify(self, email: str, code: str) -> RecoveryVerification:
        """Check a code for an email address.

        A matching pending code is marked verified, unless it is at or
        past its expiry, in which case it is marked expired. A
        non-matching code counts as a wrong guess against the most
        recent pending code for the email.

        Raises:
            ValidationError: Malformed email or code
        """
        email = normalize_email(email)
        code = validate_code(code)

        match = (
            self._db.query(RecoveryCode)
            .filter(
                RecoveryCode.email == email,
                RecoveryCode.code == code,
                RecoveryCode.status == PENDING,
            )
            .order_by(RecoveryCode.created_at.desc())
            .first()
        )
        if match is None:
            return self._record_wrong_guess(email)

        if self._clock() >= match.expires_at:
            return self._expire(match)

        match.status = VERIFIED
        match.attempts = (match.attempts or 0) + 1
        self._db.commit()
        record_recovery_event("verified")
        return RecoveryVerification(
            valid=True,
            reason="verified",
            recovery_code=match,
            deletion_request=self._linked_request(match),
        )

    def execute_recovery(self, email: str, code: str) -> RecoveryResult:
        """Redeem a code: unschedule the user and cancel their request.

        A code that was already verified (but not used) is accepted, so
        verify-then-recover flows work. The three writes commit together;
        on any failure nothing is changed.
        """
        email = normalize_email(email)
        code = validate_code(code)

        record = (
            self._db.query(RecoveryCode)
            .filter(
                RecoveryCode.email == email,
                RecoveryCode.code == code,
                RecoveryCode.status.in_((PENDING, VERIFIED)),
            )
            .order_by(RecoveryCode.created_at.desc())
            .first()
        )
        if record is None:
            verification = self._record_wrong_guess(email)
            return RecoveryResult(success=False, message=_failure_message(verification))

        now = self._clock()
        if now >= record.expires_at:
            return RecoveryResult(success=False, message=_failure_message(self._expire(record)))

        user_ref = self._hasher.user_hash(record.user_id)
        request = self._linked_request(record)
        if request is not None:
            if request.status not in CANCELLABLE_STATUSES:
                record_recovery_event("failed")
                return RecoveryResult(
                    success=False,
                    message="Deletion is already being processed and can no longer be recovered",
                    deletion_request_id=request.request_id,
                )
            if not request.can_recover:
                record_recovery_event("failed")
                return RecoveryResult(
                    success=False,
                    message="This deletion cannot be recovered",
                    deletion_request_id=request.request_id,
                )
            if request.recover_deadline is not None and now >= request.recover_deadline:
                record_recovery_event("failed")
                return RecoveryResult(
                    success=False,
                    message="The recovery window for this deletion has closed",
                    deletion_request_id=request.request_id,
                )

        try:
            user = self._db.get(UserAccount, record.user_id)
            if user is not None:
                user.deletion_scheduled = False
                user.scheduled_deletion_date = None
            if request is not None:
                apply_transition(request, DeletionRequestStatus.cancelled, now)
                request.cancellation_reason = RECOVERY_CANCELLATION_REASON
            if record.status == PENDING:
                record.attempts = (record.attempts or 0) + 1
            record.status = RecoveryCodeStatus.used.value
            record.used_at = now
            self._db.commit()
        except SQLAlchemyError as e:
            self._db.rollback()
            record_recovery_event("failed")
            logger.error(f"Account recovery failed: user_ref={user_ref}, error={type(e).__name__}")
            return RecoveryResult(success=False, message="Recovery failed, please try again")

        record_recovery_event("recovered")
        if self._audit:
            self._audit.log_operation(
                ErasureOperation.RECOVERY,
                subject_hash=user_ref,
                status="completed",
                deletion_request_id=request.request_id if request else None,
                reason=RECOVERY_CANCELLATION_REASON,
            )
        logger.info(
            f"Account recovered: user_ref={user_ref}, "
            f"request_id={request.request_id if request else None}"
        )
        return RecoveryResult(
            success=True,
            message="Account recovered, scheduled deletion cancelled",
            deletion_request_id=request.request_id if request else None,
        )

    def cleanup_expired(self, batch_limit: int = CLEANUP_BATCH_LIMIT) -> int:
        """Mark a bounded batch of pending, past-due codes as expired."""
        ids = [
            row[0]
            for row in self._db.query(RecoveryCode.code_id)
            .filter(
                RecoveryCode.status == PENDING,
                RecoveryCode.expires_at <= self._clock(),
            )
            .limit(batch_limit)
            .all()
        ]
        if not ids:
            return 0
        self._db.query(RecoveryCode).filter(RecoveryCode.code_id.in_(ids)).update(
            {RecoveryCode.status: RecoveryCodeStatus.expired.value},
            synchronize_session=False,
        )
        self._db.commit()
        logger.info(f"Expired {len(ids)} recovery codes")
        return len(ids)


def _failure_message(verification: RecoveryVerification) -> str:
    if verification.reason == "expired":
        return "Recovery code has expired, request a new one"
    if verification.reason == "max_attempts_exceeded":
        return "Too many failed attempts, request a new code"
    if verification.reason == "wrong_code":
        return f"Invalid recovery code, {verification.remaining_attempts} attempts remaining"
    return "No pending recovery code for this email"
