"""Deletion scheduling and the deletion request lifecycle.

A user is "scheduled" when ``deletion_scheduled`` is set together with a
``scheduled_deletion_date``. The background sweep picks up users whose
date has passed. Deletion requests record why and how a user is being
erased and move through:

    pending -> scheduled -> processing -> completed
    pending | scheduled -> cancelled

"completed" means the pipeline ran to the end. Whether every subsystem
verified clean is kept separately in ``deletion_verified``.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from erasure.gdpr.errors import (
    InvalidTransitionError,
    SubjectNotFoundError,
    ValidationError,
)
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import SCOPE_ALL, DeletionStatus
from erasure.gdpr.validators import normalize_email, normalize_scope, require_id, validate_reason
from erasure.models import (
    DeletionRequest,
    DeletionRequestStatus,
    DeletionType,
    UserAccount,
    get_current_utc_time,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500
DEFAULT_GRACE_PERIOD_DAYS = 30

OPEN_STATUSES = (
    DeletionRequestStatus.pending.value,
    DeletionRequestStatus.scheduled.value,
    DeletionRequestStatus.processing.value,
)

CANCELLABLE_STATUSES = (
    DeletionRequestStatus.pending.value,
    DeletionRequestStatus.scheduled.value,
)

ALLOWED_TRANSITIONS = {
    DeletionRequestStatus.pending: {DeletionRequestStatus.scheduled, DeletionRequestStatus.cancelled},
    DeletionRequestStatus.scheduled: {DeletionRequestStatus.processing, DeletionRequestStatus.cancelled},
    DeletionRequestStatus.processing: {DeletionRequestStatus.completed},
    DeletionRequestStatus.completed: set(),
    DeletionRequestStatus.cancelled: set(),
}


def apply_transition(
    request: DeletionRequest,
    target: DeletionRequestStatus,
    now: datetime,
) -> None:
    """Move a request to ``target`` and stamp the matching timestamp.

    Does not commit.

    Raises:
        InvalidTransitionError: The lifecycle does not allow the move
    """
    current = DeletionRequestStatus(request.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)

    request.status = target.value
    if target is DeletionRequestStatus.processing:
        request.processing_started_at = now
    elif target is DeletionRequestStatus.completed:
        request.completed_at = now
    elif target is DeletionRequestStatus.cancelled:
        request.cancelled_at = now


class DeletionScheduler:
    """Schedules users for erasure and tracks their deletion requests.

    Args:
        db: Session for the primary store
        hasher: Hashes user ids for log lines
        grace_period_days: Delay for soft and partial deletions
        hard_delay_hours: Delay for hard deletions
        recover_margin_hours: Recovery closes this long before execution
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        db: Session,
        hasher: SubjectHasher,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        hard_delay_hours: int = 1,
        recover_margin_hours: int = 1,
        clock: Callable[[], datetime] = get_current_utc_time,
    ):
        self._db = db
        self._hasher = hasher
        self._grace_period = timedelta(days=grace_period_days)
        self._hard_delay = timedelta(hours=hard_delay_hours)
        self._recover_margin = timedelta(hours=recover_margin_hours)
        self._clock = clock

    # ==========================================
    # User schedule flag
    # ==========================================

    def _get_user(self, user_id: str) -> UserAccount:
        user_id = require_id(user_id, "user_id")
        user = self._db.get(UserAccount, user_id)
        if user is None:
            raise SubjectNotFoundError("user not found")
        return user

    def schedule(self, user_id: str, at: datetime) -> None:
        """Mark the user for erasure at ``at``. Re-scheduling overwrites."""
        if at is None:
            raise ValidationError("scheduled time is required")
        user = self._get_user(user_id)
        user.deletion_scheduled = True
        user.scheduled_deletion_date = at
        self._db.commit()
        logger.info(
            f"Deletion scheduled: user_ref={self._hasher.user_hash(user_id)}, "
            f"at={at.isoformat()}"
        )

    def cancel(self, user_id: str, cancel_requests: bool = False) -> int:
        """Clear the schedule flag and date. Safe to call repeatedly.

        With ``cancel_requests`` any pending or scheduled request of the
        user is cancelled in the same commit.

        Returns:
            Number of requests cancelled
        """
        user = self._get_user(user_id)
        cancelled = 0
        if cancel_requests:
            cancelled = self.cancel_open_requests(user.id, "deletion unscheduled")
        user.deletion_scheduled = False
        user.scheduled_deletion_date = None
        self._db.commit()
        logger.info(
            f"Deletion unscheduled: user_ref={self._hasher.user_hash(user_id)}, "
            f"cancelled_requests={cancelled}"
        )
        return cancelled

    def list_expired(self, limit: int = MAX_BATCH_SIZE) -> List[str]:
        """User ids whose scheduled deletion date has passed, oldest first."""
        if limit < 1:
            return []
        rows = (
            self._db.query(UserAccount.id)
            .filter(
                UserAccount.deletion_scheduled.is_(True),
                UserAccount.scheduled_deletion_date <= self._clock(),
            )
            .order_by(UserAccount.scheduled_deletion_date.asc())
            .limit(min(limit, MAX_BATCH_SIZE))
            .all()
        )
        return [row[0] for row in rows]

    # ==========================================
    # Deletion requests
    # ==========================================

    def get_request(self, request_id: str) -> Optional[DeletionRequest]:
        return self._db.get(DeletionRequest, request_id)

    def find_open_request(self, user_id: str) -> Optional[DeletionRequest]:
        """Most recent request that has not completed or been cancelled."""
        return (
            self._db.query(DeletionRequest)
            .filter(
                DeletionRequest.user_id == user_id,
                DeletionRequest.status.in_(OPEN_STATUSES),
            )
            .order_by(DeletionRequest.requested_at.desc())
            .first()
        )

    def has_open_request(self, user_id: str) -> bool:
        return self.find_open_request(user_id) is not None

    def create_request(
        self,
        user_id: str,
        deletion_type: str = DeletionType.soft.value,
        scope: Optional[Sequence[str]] = None,
        reason: Optional[str] = None,
    ) -> DeletionRequest:
        """Create a deletion request and schedule the user for it.

        Soft and partial deletions wait out the grace period and can be
        recovered until one margin before execution. Hard deletions run
        after a short delay and cannot be recovered. Partial deletions
        need explicit categories; the others always cover everything.

        Raises:
            ValidationError: Bad type/scope, or an open request already exists
            SubjectNotFoundError: Unknown user
        """
        user = self._get_user(user_id)
        try:
            kind = DeletionType(deletion_type)
        except ValueError as e:
            raise ValidationError(f"unknown deletion type: {deletion_type}") from e

        if kind is DeletionType.partial:
            normalized = normalize_scope(scope)
            if normalized == [SCOPE_ALL]:
                raise ValidationError("partial deletion requires explicit data categories")
        else:
            normalized = [SCOPE_ALL]
        reason = validate_reason(reason)

        if self.has_open_request(user.id):
            raise ValidationError("a deletion request is already pending for this user")

        now = self._clock()
        if kind is DeletionType.hard:
            scheduled_at = now + self._hard_delay
            can_recover = False
            recover_deadline = None
        else:
            scheduled_at = now + self._grace_period
            can_recover = True
            recover_deadline = scheduled_at - self._recover_margin

        request = DeletionRequest(
            user_id=user.id,
            deletion_type=kind.value,
            scope=normalized,
            reason=reason,
            status=DeletionRequestStatus.pending.value,
            can_recover=can_recover,
            recover_deadline=recover_deadline,
            requested_at=now,
            scheduled_at=scheduled_at,
        )
        apply_transition(request, DeletionRequestStatus.scheduled, now)
        self._db.add(request)
        user.deletion_scheduled = True
        user.scheduled_deletion_date = scheduled_at
        self._db.commit()

        logger.info(
            f"Deletion request created: user_ref={self._hasher.user_hash(user.id)}, "
            f"request_id={request.request_id}, type={kind.value}, "
            f"scheduled_at={scheduled_at.isoformat()}"
        )
        return request

    def ensure_request(self, user_id: str) -> DeletionRequest:
        """Open request for a user scheduled without one.

        Users scheduled directly through ``schedule`` get a hard, full
        request stamped with their scheduled date, so every erasure run
        is tied to a request id.
        """
        existing = self.find_open_request(user_id)
        if existing is not None:
            return existing

        user = self._get_user(user_id)
        now = self._clock()
        request = DeletionRequest(
            user_id=user.id,
            deletion_type=DeletionType.hard.value,
            scope=[SCOPE_ALL],
            reason="scheduled deletion",
            status=DeletionRequestStatus.pending.value,
            can_recover=False,
            requested_at=now,
            scheduled_at=user.scheduled_deletion_date or now,
        )
        apply_transition(request, DeletionRequestStatus.scheduled, now)
        self._db.add(request)
        self._db.commit()
        return request

    def cancel_request(
        self,
        user_id: str,
        request_id: Optional[str] = None,
        reason: str = "user cancelled",
    ) -> DeletionRequest:
        """User-initiated cancellation of an open, recoverable request.

        Clears the user's schedule in the same commit.

        Raises:
            SubjectNotFoundError: No matching open request
            ValidationError: Request is not recoverable or its deadline passed
            InvalidTransitionError: Request is already processing
        """
        user = self._get_user(user_id)
        if request_id:
            request = self.get_request(request_id)
            if request is None or request.user_id != user.id:
                raise SubjectNotFoundError("deletion request not found")
        else:
            request = self.find_open_request(user.id)
            if request is None:
                raise SubjectNotFoundError("no open deletion request")

        now = self._clock()
        if not request.can_recover:
            raise ValidationError("this deletion request cannot be cancelled")
        if request.recover_deadline is not None and now >= request.recover_deadline:
            raise ValidationError("the cancellation window has closed")

        apply_transition(request, DeletionRequestStatus.cancelled, now)
        request.cancellation_reason = validate_reason(reason)
        user.deletion_scheduled = False
        user.scheduled_deletion_date = None
        self._db.commit()

        logger.info(
            f"Deletion request cancelled: user_ref={self._hasher.user_hash(user.id)}, "
            f"request_id={request.request_id}"
        )
        return request

    def cancel_open_requests(self, user_id: str, reason: str) -> int:
        """Cancel every pending/scheduled request of a user. Does not commit."""
        now = self._clock()
        requests = (
            self._db.query(DeletionRequest)
            .filter(
                DeletionRequest.user_id == user_id,
                DeletionRequest.status.in_(CANCELLABLE_STATUSES),
            )
            .all()
        )
        for request in requests:
            apply_transition(request, DeletionRequestStatus.cancelled, now)
            request.cancellation_reason = reason
        return len(requests)

    def list_due_requests(self, limit: int = MAX_BATCH_SIZE) -> List[DeletionRequest]:
        """Scheduled requests whose execution time has passed."""
        return (
            self._db.query(DeletionRequest)
            .filter(
                DeletionRequest.status == DeletionRequestStatus.scheduled.value,
                DeletionRequest.scheduled_at <= self._clock(),
            )
            .order_by(DeletionRequest.scheduled_at.asc())
            .limit(min(max(limit, 0), MAX_BATCH_SIZE))
            .all()
        )

    def mark_processing(self, request_id: str) -> DeletionRequest:
        """Move a request to processing. A request already processing is resumed."""
        request = self.get_request(request_id)
        if request is None:
            raise SubjectNotFoundError("deletion request not found")
        if request.status == DeletionRequestStatus.processing.value:
            return request
        apply_transition(request, DeletionRequestStatus.processing, self._clock())
        self._db.commit()
        return request

    def mark_completed(
        self,
        request_id: str,
        verified: bool,
        certificate_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> DeletionRequest:
        request = self.get_request(request_id)
        if request is None:
            raise SubjectNotFoundError("deletion request not found")
        apply_transition(request, DeletionRequestStatus.completed, self._clock())
        request.deletion_verified = verified
        request.certificate_id = certificate_id
        request.error = error
        self._db.commit()
        return request

    # ==========================================
    # Lookups
    # ==========================================

    def find_scheduled_by_email(
        self, email: str
    ) -> Optional[Tuple[UserAccount, Optional[DeletionRequest]]]:
        """Find a scheduled user that can still recover their account.

        Returns:
            (user, open request or None), or None when there is nothing
            to recover: unknown email, not scheduled, request not
            recoverable, or recovery deadline passed
        """
        email = normalize_email(email)
        user = (
            self._db.query(UserAccount)
            .filter(func.lower(UserAccount.email) == email)
            .first()
        )
        if user is None or not user.deletion_scheduled:
            return None

        now = self._clock()
        request = self.find_open_request(user.id)
        if request is not None:
            if request.status not in CANCELLABLE_STATUSES or not request.can_recover:
                return None
            if request.recover_deadline is not None and now >= request.recover_deadline:
                return None
        elif user.scheduled_deletion_date is not None and now >= user.scheduled_deletion_date:
            return None
        return user, request

    def get_status(self, user_id: str) -> DeletionStatus:
        user = self._get_user(user_id)
        request = self.find_open_request(user.id)
        status = DeletionStatus(
            deletion_scheduled=bool(user.deletion_scheduled),
            scheduled_deletion_date=user.scheduled_deletion_date,
        )
        if request is not None:
            status.request_id = request.request_id
            status.request_status = request.status
            status.deletion_type = request.deletion_type
            status.can_recover = bool(request.can_recover)
            status.recover_deadline = request.recover_deadline
        return status
