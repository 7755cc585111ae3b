"""Complete erasure across all subsystems.

This module implements the Right to Erasure (GDPR Article 17) for one
user. Stages run in a fixed order, each under its own timeout:

1. Primary store - user records, plus the profile row for scope "all"
2. Object storage - everything under the user's prefix
3. Analytics warehouse - rows keyed by the one-way user hash
4. Identity provider - the login record (scope "all" only)

A failing stage is recorded and the next stage still runs. Afterwards
every subsystem is verified and a signed certificate is issued. There
is no automatic retry: every stage is idempotent, so a retry is simply
another call.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from erasure.gdpr.audit import ErasureAuditLogger, ErasureOperation
from erasure.gdpr.certificates import CertificateIssuer
from erasure.gdpr.errors import (
    ErasureError,
    ErasureInProgressError,
    SubjectNotFoundError,
    TransientSubsystemError,
)
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import (
    SCOPE_ALL,
    CompleteDeletionResult,
    DeletionCertificate,
    ScopeDeletionResult,
    StageOutcome,
)
from erasure.gdpr.subsystems.base import SubsystemClient
from erasure.gdpr.subsystems.primary_store import PrimaryStoreClient
from erasure.gdpr.validators import normalize_scope, require_id
from erasure.gdpr.verification import VerificationEngine
from erasure.observability.metrics import record_pipeline, record_stage, stage_timer

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUT_SECONDS = 120.0


class ErasureCoordinator:
    """Run scoped and complete erasures with verification and certificates.

    Attributes:
        DELETION_ORDER: Order in which subsystems are processed
    """

    DELETION_ORDER = [
        "primary_store",
        "object_storage",
        "analytics_warehouse",
        "identity_provider",
    ]

    def __init__(
        self,
        primary_store: PrimaryStoreClient,
        object_storage: SubsystemClient,
        analytics_warehouse: SubsystemClient,
        identity_provider: SubsystemClient,
        verifier: VerificationEngine,
        certificates: CertificateIssuer,
        hasher: SubjectHasher,
        audit: Optional[ErasureAuditLogger] = None,
        stage_timeout: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
    ):
        """Initialize the coordinator with its subsystem clients.

        Args:
            primary_store: Primary SQL store client
            object_storage: Object storage client
            analytics_warehouse: Analytics warehouse client
            identity_provider: Identity provider client
            verifier: Post-deletion verification engine
            certificates: Certificate issuer
            hasher: Hashes user ids for logs and results
            audit: Audit trail writer (optional)
            stage_timeout: Seconds allowed per deletion stage
        """
        self._primary_store = primary_store
        self._stages: List[SubsystemClient] = [
            primary_store,
            object_storage,
            analytics_warehouse,
            identity_provider,
        ]
        self._verifier = verifier
        self._certificates = certificates
        self._hasher = hasher
        self._audit = audit
        self._stage_timeout = stage_timeout
        self._in_flight: Set[str] = set()

    @property
    def stages(self) -> List[SubsystemClient]:
        return list(self._stages)

    async def delete_scope(self, user_id: str, scope: Sequence[str]) -> ScopeDeletionResult:
        """Delete the scoped categories from the primary store only.

        Missing data counts as success. A failing category is recorded
        and the remaining categories are still deleted. The profile row
        (scope "all") is removed only when every category succeeded.
        """
        user_id = require_id(user_id, "user_id")
        scope = normalize_scope(scope)
        user_ref = self._hasher.user_hash(user_id)

        counts, failures = await asyncio.to_thread(
            self._primary_store.delete_scoped, user_id, scope
        )
        touched = list(counts)
        errors = list(failures.values())
        for category in failures:
            logger.error(f"Scoped deletion failed: user_ref={user_ref}, category={category}")

        success = not errors
        if self._audit:
            self._audit.log_operation(
                ErasureOperation.SCOPE_ERASURE,
                subject_hash=user_ref,
                status="completed" if success else "partial",
                details={"scope": scope, "counts": counts, "errors": errors},
            )
        logger.info(
            f"Scoped deletion finished: user_ref={user_ref}, scope={scope}, "
            f"success={success}, counts={counts}"
        )
        return ScopeDeletionResult(
            touched_categories=touched,
            success=success,
            errors=errors,
            counts=counts,
        )

    async def delete_completely(
        self,
        user_id: str,
        request_id: str,
        scope: Sequence[str] = (SCOPE_ALL,),
    ) -> CompleteDeletionResult:
        """Erase a user from every subsystem, verify, and certify.

        Subsystem failures never raise; they end up in ``errors`` and make
        ``success`` False. Only one run per user may be in flight.

        Raises:
            ValidationError: Missing ids or malformed scope
            ErasureInProgressError: Another run for this user is active
        """
        user_id = require_id(user_id, "user_id")
        request_id = require_id(request_id, "request_id")
        scope = normalize_scope(scope)

        if user_id in self._in_flight:
            raise ErasureInProgressError()
        self._in_flight.add(user_id)
        try:
            return await self._run(user_id, request_id, scope)
        finally:
            self._in_flight.discard(user_id)

    async def _run_stage(
        self, client: SubsystemClient, user_id: str, scope: List[str]
    ) -> Tuple[StageOutcome, str]:
        try:
            count = await asyncio.wait_for(
                client.delete(user_id, scope),
                timeout=self._stage_timeout,
            )
            return StageOutcome(client.name, deleted=True, count=count or 0), "deleted"
        except SubjectNotFoundError:
            return StageOutcome(client.name, deleted=True, count=0), "not_found"
        except asyncio.TimeoutError:
            error = TransientSubsystemError(client.name, f"timed out after {self._stage_timeout}s")
            return StageOutcome(client.name, deleted=False, error=error.message), "timeout"
        except ErasureError as e:
            message = e.message if isinstance(e, TransientSubsystemError) else f"{client.name}: {e.message}"
            return StageOutcome(client.name, deleted=False, error=message), "failed"
        except Exception as e:
            message = f"{client.name}: unexpected {type(e).__name__}"
            return StageOutcome(client.name, deleted=False, error=message), "failed"

    async def _run(self, user_id: str, request_id: str, scope: List[str]) -> CompleteDeletionResult:
        user_ref = self._hasher.user_hash(user_id)
        if self._audit:
            audit_id = self._audit.log_operation_start(
                ErasureOperation.ERASURE,
                subject_hash=user_ref,
                deletion_request_id=request_id,
            ).audit_id
        else:
            audit_id = str(uuid4())

        logger.info(
            f"Starting complete erasure: user_ref={user_ref}, "
            f"request_id={request_id}, audit_id={audit_id}, scope={scope}"
        )

        stages: Dict[str, StageOutcome] = {}
        errors: List[str] = []

        for client in self._stages:
            if not client.applies_to(scope):
                stages[client.name] = StageOutcome(client.name, deleted=False, skipped=True)
                record_stage(client.name, "skipped", 0.0)
                continue

            with stage_timer() as timing:
                outcome, label = await self._run_stage(client, user_id, scope)
            record_stage(client.name, label, timing["elapsed"])
            stages[client.name] = outcome

            if outcome.error:
                errors.append(outcome.error)
                logger.error(
                    f"Erasure stage failed: user_ref={user_ref}, "
                    f"subsystem={client.name}, error={outcome.error}"
                )
            else:
                logger.info(
                    f"Erasure stage done: user_ref={user_ref}, "
                    f"subsystem={client.name}, count={outcome.count}"
                )

        verification = await self._verifier.verify_all(user_id, scope)

        summary = {
            "scope": scope,
            "subsystems": {name: stage.to_dict() for name, stage in stages.items()},
        }
        certificate: Optional[DeletionCertificate] = None
        try:
            certificate = self._certificates.issue(
                user_id, request_id, summary, verification.to_dict()
            )
        except (SQLAlchemyError, ErasureError) as e:
            errors.append(f"certificate: {type(e).__name__}")
            logger.error(f"Certificate issuance failed: user_ref={user_ref}, request_id={request_id}")

        success = not errors and verification.all_passed
        result = CompleteDeletionResult(
            audit_id=audit_id,
            user_id_hash=user_ref,
            deletion_request_id=request_id,
            scope=scope,
            stages=stages,
            verification=verification,
            certificate=certificate,
            success=success,
            errors=errors,
            completed_at=datetime.now(timezone.utc),
        )

        record_pipeline(success)
        if self._audit:
            self._audit.log_operation_complete(
                audit_id,
                status="completed" if success else "partial",
                details=result.to_dict(),
            )

        logger.info(
            f"Completed erasure: user_ref={user_ref}, request_id={request_id}, "
            f"success={success}, errors={len(errors)}, "
            f"verified={verification.all_passed}"
        )
        return result
