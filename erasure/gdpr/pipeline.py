"""Public entry point of the erasure pipeline.

ErasurePipeline wires the scheduler, recovery codes, coordinator,
verification and certificates together around one primary store session
and exposes every pipeline operation in one place. Clients are passed
in, or built from Settings by ``from_settings``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Sequence

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from erasure.database import create_db_engine
from erasure.gdpr.audit import ErasureAuditLogger, ErasureOperation
from erasure.gdpr.certificates import CertificateIssuer
from erasure.gdpr.coordinator import ErasureCoordinator
from erasure.gdpr.errors import ErasureError, ErasureInProgressError, SubjectNotFoundError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.recovery import RecoveryCodeService
from erasure.gdpr.scheduler import DeletionScheduler
from erasure.gdpr.schemas import (
    SCOPE_ALL,
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
from erasure.gdpr.subsystems import (
    AnalyticsWarehouseClient,
    IdentityProviderClient,
    ObjectStorageClient,
    PrimaryStoreClient,
    build_identity_http_client,
    build_s3_client,
)
from erasure.gdpr.subsystems.base import scope_includes_all
from erasure.gdpr.validators import normalize_scope
from erasure.gdpr.verification import VerificationEngine
from erasure.models import DeletionRequest, get_current_utc_time
from erasure.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RecoveryNotifier(Protocol):
    """Delivers recovery codes to users (email, push, ...)."""

    def send_recovery_code(self, email: str, code: str, expires_at: datetime) -> None:
        ...


class LoggingRecoveryNotifier:
    """Placeholder delivery that records the event without the code."""

    def send_recovery_code(self, email: str, code: str, expires_at: datetime) -> None:
        logger.info(
            f"Recovery code ready for delivery, no notifier configured: "
            f"expires_at={expires_at.isoformat()}"
        )


class ErasurePipeline:
    """All erasure, recovery and certificate operations for one session."""

    def __init__(
        self,
        db: Session,
        scheduler: DeletionScheduler,
        recovery: RecoveryCodeService,
        coordinator: ErasureCoordinator,
        verifier: VerificationEngine,
        certificates: CertificateIssuer,
        hasher: SubjectHasher,
        audit: Optional[ErasureAuditLogger] = None,
        notifier: Optional[RecoveryNotifier] = None,
    ):
        self._db = db
        self.scheduler = scheduler
        self.recovery = recovery
        self.coordinator = coordinator
        self.verifier = verifier
        self.certificates = certificates
        self.hasher = hasher
        self.audit = audit
        self._notifier = notifier or LoggingRecoveryNotifier()

    @classmethod
    def from_settings(
        cls,
        db: Session,
        settings: Optional[Settings] = None,
        s3_client: Any = None,
        warehouse_engine: Optional[Engine] = None,
        identity_http: Optional[httpx.Client] = None,
        notifier: Optional[RecoveryNotifier] = None,
        clock: Callable[[], datetime] = get_current_utc_time,
    ) -> "ErasurePipeline":
        """Build a pipeline, creating any client that is not passed in.

        Raises:
            pydantic.ValidationError: Required secrets missing from the environment
            ConfigurationError: Signing secret or salt empty
        """
        settings = settings or get_settings()
        hasher = SubjectHasher(settings.user_hash_salt)
        audit = ErasureAuditLogger(db)

        if s3_client is None:
            s3_client = build_s3_client(
                settings.object_storage_endpoint_url,
                settings.object_storage_region,
            )
        if warehouse_engine is None:
            warehouse_engine = create_db_engine(settings.warehouse_url)
        if identity_http is None:
            identity_http = build_identity_http_client(
                settings.identity_provider_url,
                settings.identity_provider_token,
                settings.identity_provider_timeout,
            )

        primary = PrimaryStoreClient(db, hasher, batch_size=settings.deletion_batch_size)
        storage = ObjectStorageClient(
            s3_client,
            settings.object_storage_bucket,
            hasher,
            batch_size=settings.storage_delete_batch_size,
        )
        analytics = AnalyticsWarehouseClient(
            warehouse_engine,
            hasher,
            tables=settings.warehouse_table_names,
            fail_open=settings.analytics_verify_fail_open,
        )
        identity = IdentityProviderClient(identity_http, hasher)

        verifier = VerificationEngine(primary, storage, analytics, identity, hasher)
        certificates = CertificateIssuer(
            db,
            settings.certificate_signing_secret,
            hasher,
            issuer_name=settings.certificate_issuer,
            clock=clock,
        )
        coordinator = ErasureCoordinator(
            primary,
            storage,
            analytics,
            identity,
            verifier=verifier,
            certificates=certificates,
            hasher=hasher,
            audit=audit,
            stage_timeout=settings.stage_timeout_seconds,
        )
        scheduler = DeletionScheduler(
            db,
            hasher,
            grace_period_days=settings.deletion_grace_period_days,
            hard_delay_hours=settings.hard_deletion_delay_hours,
            recover_margin_hours=settings.recover_deadline_margin_hours,
            clock=clock,
        )
        recovery = RecoveryCodeService(
            db,
            hasher,
            ttl_hours=settings.recovery_code_ttl_hours,
            max_attempts=settings.recovery_code_max_attempts,
            audit=audit,
            clock=clock,
        )
        return cls(
            db,
            scheduler=scheduler,
            recovery=recovery,
            coordinator=coordinator,
            verifier=verifier,
            certificates=certificates,
            hasher=hasher,
            audit=audit,
            notifier=notifier,
        )

    # ==========================================
    # Scheduling
    # ==========================================

    def schedule_deletion(self, user_id: str, at: datetime) -> None:
        self.scheduler.schedule(user_id, at)
        if self.audit:
            self.audit.log_operation(
                ErasureOperation.SCHEDULE,
                subject_hash=self.hasher.user_hash(user_id),
                status="completed",
                details={"scheduled_deletion_date": at.isoformat()},
            )

    def cancel_scheduled_deletion(self, user_id: str) -> None:
        """Unschedule the user and cancel any request still waiting to run."""
        cancelled = self.scheduler.cancel(user_id, cancel_requests=True)
        if self.audit:
            self.audit.log_operation(
                ErasureOperation.CANCEL,
                subject_hash=self.hasher.user_hash(user_id),
                status="completed",
                details={"cancelled_requests": cancelled},
            )

    def list_expired_scheduled(self, limit: int = 500) -> List[str]:
        return self.scheduler.list_expired(limit)

    def request_deletion(
        self,
        user_id: str,
        deletion_type: str = "soft",
        scope: Optional[Sequence[str]] = None,
        reason: Optional[str] = None,
    ) -> DeletionRequest:
        request = self.scheduler.create_request(user_id, deletion_type, scope, reason)
        if self.audit:
            self.audit.log_operation(
                ErasureOperation.SCHEDULE,
                subject_hash=self.hasher.user_hash(user_id),
                status="completed",
                deletion_request_id=request.request_id,
                reason=request.reason,
                details={"deletion_type": request.deletion_type, "scope": request.scope},
            )
        return request

    def cancel_deletion_request(
        self,
        user_id: str,
        request_id: Optional[str] = None,
        reason: str = "user cancelled",
    ) -> DeletionRequest:
        request = self.scheduler.cancel_request(user_id, request_id, reason)
        if self.audit:
            self.audit.log_operation(
                ErasureOperation.CANCEL,
                subject_hash=self.hasher.user_hash(user_id),
                status="completed",
                deletion_request_id=request.request_id,
                reason=request.cancellation_reason,
            )
        return request

    def get_deletion_status(self, user_id: str) -> DeletionStatus:
        return self.scheduler.get_status(user_id)

    # ==========================================
    # Recovery
    # ==========================================

    def issue_recovery_code(
        self,
        user_id: str,
        email: str,
        deletion_request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedRecoveryCode:
        return self.recovery.issue(user_id, email, deletion_request_id, ip_address)

    def request_recovery_code(self, email: str, ip_address: Optional[str] = None) -> bool:
        """Issue and deliver a code if the email belongs to a recoverable user.

        Returns False when there is nothing to recover; callers should not
        reveal the difference to the requester.
        """
        found = self.scheduler.find_scheduled_by_email(email)
        if found is None:
            return False
        user, request = found
        issued = self.recovery.issue(
            user.id,
            user.email or email,
            deletion_request_id=request.request_id if request else None,
            ip_address=ip_address,
        )
        try:
            self._notifier.send_recovery_code(user.email or email, issued.code, issued.expires_at)
        except Exception as e:
            # Delivery is best effort; the code stays valid and can be re-sent
            logger.error(
                f"Recovery code delivery failed: user_ref={self.hasher.user_hash(user.id)}, "
                f"error={type(e).__name__}"
            )
        return True

    def verify_recovery_code(self, email: str, code: str) -> RecoveryVerification:
        return self.recovery.verify(email, code)

    def execute_recovery(self, email: str, code: str) -> RecoveryResult:
        return self.recovery.execute_recovery(email, code)

    def cleanup_expired_codes(self, batch_limit: int = 500) -> int:
        return self.recovery.cleanup_expired(batch_limit)

    # ==========================================
    # Erasure
    # ==========================================

    async def delete_scope(self, user_id: str, scope: Sequence[str]) -> ScopeDeletionResult:
        return await self.coordinator.delete_scope(user_id, scope)

    async def delete_user_completely(
        self,
        user_id: str,
        request_id: str,
        scope: Sequence[str] = (SCOPE_ALL,),
    ) -> CompleteDeletionResult:
        return await self.coordinator.delete_completely(user_id, request_id, scope)

    async def verify_deletion(
        self, user_id: str, scope: Sequence[str] = (SCOPE_ALL,)
    ) -> VerificationResult:
        return await self.verifier.verify_all(user_id, normalize_scope(scope))

    async def process_request(self, request: DeletionRequest) -> CompleteDeletionResult:
        """Run a deletion request through processing to completed."""
        request_id = request.request_id
        user_id = request.user_id
        scope = list(request.scope or [SCOPE_ALL])

        self.scheduler.mark_processing(request_id)
        result = await self.delete_user_completely(user_id, request_id, scope)
        self.scheduler.mark_completed(
            request_id,
            verified=result.verification.all_passed,
            certificate_id=result.certificate.certificate_id if result.certificate else None,
            error="; ".join(result.errors) or None,
        )

        # Partial erasure keeps the account, so it must leave the sweep's queue
        if not scope_includes_all(scope):
            try:
                self.scheduler.cancel(user_id)
            except SubjectNotFoundError:
                pass
        return result

    async def process_expired(self, limit: int = 500) -> List[CompleteDeletionResult]:
        """Erase every user whose scheduled deletion date has passed.

        A failure for one user is logged and rolled back; the rest of the
        batch still runs and the user is picked up again by the next sweep.
        """
        results: List[CompleteDeletionResult] = []
        for user_id in self.scheduler.list_expired(limit):
            user_ref = self.hasher.user_hash(user_id)
            try:
                request = self.scheduler.ensure_request(user_id)
                results.append(await self.process_request(request))
            except ErasureInProgressError:
                logger.info(f"Skipping user with erasure in progress: user_ref={user_ref}")
            except (ErasureError, SQLAlchemyError) as e:
                self._db.rollback()
                logger.error(
                    f"Scheduled erasure failed: user_ref={user_ref}, error={type(e).__name__}"
                )
        return results

    # ==========================================
    # Certificates
    # ==========================================

    def issue_certificate(
        self,
        user_id: str,
        deletion_request_id: str,
        deleted_data_summary: dict,
        verification_result: dict,
    ) -> DeletionCertificate:
        return self.certificates.issue(
            user_id, deletion_request_id, deleted_data_summary, verification_result
        )

    def validate_certificate(self, certificate_id: str) -> CertificateValidation:
        return self.certificates.validate(certificate_id)

    def find_certificates_by_user_hash(self, user_id_hash: str) -> List[DeletionCertificate]:
        return self.certificates.find_by_user_hash(user_id_hash)
