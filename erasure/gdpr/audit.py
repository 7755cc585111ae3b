"""Erasure audit trail.

Every pipeline operation that changes a user's erasure state leaves an
entry here. The table is keyed by the hashed subject and has no foreign
key to users, so the trail survives the erasure it records and never
holds the raw user id.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, String
from sqlalchemy.orm import Session

from erasure.database import Base
from erasure.models import UTCDateTime


class ErasureOperation(Enum):
    """Types of erasure operations that are logged."""
    SCHEDULE = "schedule"          # Deletion scheduled or requested
    CANCEL = "cancel"              # Scheduled deletion cancelled
    RECOVERY = "recovery"          # Account recovered with a code
    ERASURE = "erasure"            # Complete multi-subsystem erasure
    SCOPE_ERASURE = "scope_erasure"  # Primary store categories only


@dataclass
class ErasureAuditEntry:
    """Audit log entry for an erasure operation.

    Attributes:
        audit_id: Unique identifier for this audit entry
        operation: Type of erasure operation
        subject_hash: Hashed id of the user the operation concerns
        deletion_request_id: Request the operation belongs to, if any
        reason: Reason given for the operation
        status: started, completed, partial or failed
        started_at: When the operation began
        completed_at: When the operation finished (None if still running)
        details: Result summary (never contains raw identifiers)
    """
    audit_id: str
    operation: ErasureOperation
    subject_hash: str
    deletion_request_id: Optional[str]
    reason: Optional[str]
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    details: Optional[Dict[str, Any]]


class ErasureAuditLogModel(Base):
    __tablename__ = "erasure_audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    audit_id = Column(String, nullable=False, unique=True, index=True)
    operation = Column(String, nullable=False, index=True)
    subject_hash = Column(String, nullable=False, index=True)
    deletion_request_id = Column(String, nullable=True, index=True)
    reason = Column(String, nullable=True)
    status = Column(String, nullable=False, default="started")
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    details = Column(JSON, nullable=True)

    def to_entry(self) -> ErasureAuditEntry:
        return ErasureAuditEntry(
            audit_id=self.audit_id,
            operation=ErasureOperation(self.operation),
            subject_hash=self.subject_hash,
            deletion_request_id=self.deletion_request_id,
            reason=self.reason,
            status=self.status,
            started_at=self.started_at,
            completed_at=self.completed_at,
            details=self.details,
        )


class ErasureAuditLogger:
    """Writes and reads the erasure audit trail.

    Each write commits on its own, so call it outside any transaction
    that must stay atomic.
    """

    def __init__(self, db: Session):
        self._db = db

    def log_operation_start(
        self,
        operation: ErasureOperation,
        subject_hash: str,
        deletion_request_id: Optional[str] = None,
        reason: Optional[str] = None,
        audit_id: Optional[str] = None,
    ) -> ErasureAuditEntry:
        """Log the start of an operation.

        Call this BEFORE the operation begins so a record exists even if
        the process dies half way.
        """
        record = ErasureAuditLogModel(
            audit_id=audit_id or str(uuid.uuid4()),
            operation=operation.value,
            subject_hash=subject_hash,
            deletion_request_id=deletion_request_id,
            reason=reason,
            status="started",
            started_at=datetime.now(timezone.utc),
        )
        self._db.add(record)
        self._db.commit()
        return record.to_entry()

    def log_operation_complete(
        self,
        audit_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log the completion of an operation (completed, partial, failed)."""
        record = self._db.query(ErasureAuditLogModel).filter(
            ErasureAuditLogModel.audit_id == audit_id
        ).first()

        if record:
            record.status = status
            record.completed_at = datetime.now(timezone.utc)
            record.details = details
            self._db.commit()

    def log_operation(
        self,
        operation: ErasureOperation,
        subject_hash: str,
        status: str,
        deletion_request_id: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ErasureAuditEntry:
        """Record an operation that has already finished."""
        now = datetime.now(timezone.utc)
        record = ErasureAuditLogModel(
            audit_id=str(uuid.uuid4()),
            operation=operation.value,
            subject_hash=subject_hash,
            deletion_request_id=deletion_request_id,
            reason=reason,
            status=status,
            started_at=now,
            completed_at=now,
            details=details,
        )
        self._db.add(record)
        self._db.commit()
        return record.to_entry()

    def get_audit_log(self, audit_id: str) -> Optional[ErasureAuditEntry]:
        record = self._db.query(ErasureAuditLogModel).filter(
            ErasureAuditLogModel.audit_id == audit_id
        ).first()
        return record.to_entry() if record else None

    def list_audit_logs_for_subject(self, subject_hash: str) -> List[ErasureAuditEntry]:
        """List all entries for a hashed subject, newest first."""
        records = self._db.query(ErasureAuditLogModel).filter(
            ErasureAuditLogModel.subject_hash == subject_hash
        ).order_by(ErasureAuditLogModel.started_at.desc()).all()
        return [r.to_entry() for r in records]

    def list_recent_operations(
        self,
        limit: int = 100,
        operation: Optional[ErasureOperation] = None,
    ) -> List[ErasureAuditEntry]:
        query = self._db.query(ErasureAuditLogModel)
        if operation:
            query = query.filter(ErasureAuditLogModel.operation == operation.value)
        records = query.order_by(
            ErasureAuditLogModel.started_at.desc()
        ).limit(limit).all()
        return [r.to_entry() for r in records]
