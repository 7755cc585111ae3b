import datetime
import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.types import TypeDecorator

from erasure.database import Base


def get_current_utc_time():
    """Get current UTC time"""
    return datetime.datetime.now(datetime.UTC)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC.

    SQLite drops tzinfo on the way in, so aware values are normalised
    before binding and re-tagged after loading.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(datetime.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class DeletionType(enum.Enum):
    soft = "soft"        # grace period, recoverable
    hard = "hard"        # executed after a short delay, not recoverable
    partial = "partial"  # explicit scope, grace period


class DeletionRequestStatus(enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"


class RecoveryCodeStatus(enum.Enum):
    pending = "pending"
    verified = "verified"
    used = "used"
    expired = "expired"
    invalidated = "invalidated"


# ==========================================
# User data (primary store)
# ==========================================

class UserAccount(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    deletion_scheduled = Column(Boolean, nullable=False, default=False, index=True)
    scheduled_deletion_date = Column(UTCDateTime, nullable=True, index=True)
    created_at = Column(UTCDateTime, default=get_current_utc_time)
    updated_at = Column(UTCDateTime,
                        default=get_current_utc_time,
                        onupdate=get_current_utc_time)


class TrainingSession(Base):
    __tablename__ = "training_sessions"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    exercise = Column(String, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    payload = Column(JSON, default=dict)
    started_at = Column(UTCDateTime, default=get_current_utc_time)


class UserSetting(Base):
    __tablename__ = "user_settings"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    value = Column(JSON, nullable=True)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    plan = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    created_at = Column(UTCDateTime, default=get_current_utc_time)


class Consent(Base):
    __tablename__ = "consents"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    purpose = Column(String, nullable=False)
    granted = Column(Boolean, nullable=False, default=True)
    recorded_at = Column(UTCDateTime, default=get_current_utc_time)


# ==========================================
# Erasure pipeline records
# ==========================================

class DeletionRequest(Base):
    """A user's erasure request and its lifecycle.

    Never deleted by the pipeline; status moves forward only, except
    that pending and scheduled requests may be cancelled.
    """

    __tablename__ = "deletion_requests"
    request_id = Column(String, primary_key=True, default=lambda: f"del_{uuid.uuid4().hex}")
    user_id = Column(String, nullable=False, index=True)
    deletion_type = Column(String, nullable=False, default=DeletionType.soft.value)
    scope = Column(JSON, nullable=False, default=lambda: ["all"])
    reason = Column(String, nullable=True)
    status = Column(String, nullable=False, default=DeletionRequestStatus.pending.value, index=True)
    can_recover = Column(Boolean, nullable=False, default=True)
    recover_deadline = Column(UTCDateTime, nullable=True)
    requested_at = Column(UTCDateTime, nullable=False, default=get_current_utc_time)
    scheduled_at = Column(UTCDateTime, nullable=True, index=True)
    processing_started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    deletion_verified = Column(Boolean, nullable=True)
    certificate_id = Column(String, nullable=True)
    error = Column(String, nullable=True)


class RecoveryCode(Base):
    """Six-digit account recovery code.

    The partial unique index allows at most one pending code per user;
    rotation invalidates the old code and inserts the new one in a
    single transaction.
    """

    __tablename__ = "recovery_codes"
    code_id = Column(String, primary_key=True, default=lambda: f"rc_{uuid.uuid4().hex}")
    user_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    code = Column(String(6), nullable=False)
    status = Column(String, nullable=False, default=RecoveryCodeStatus.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    created_at = Column(UTCDateTime, nullable=False, default=get_current_utc_time)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)
    deletion_request_id = Column(String, nullable=True)
    ip_address_hash = Column(String, nullable=True)

    __table_args__ = (
        Index(
            "uq_recovery_codes_one_pending_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_recovery_codes_email_status", "email", "status"),
    )


class DeletionCertificateRecord(Base):
    """Signed proof of erasure, append-only.

    Holds only the hashed user id so that it survives the deletion it
    certifies. deleted_at is stored as the exact string that was signed.
    """

    __tablename__ = "deletion_certificates"
    certificate_id = Column(String, primary_key=True)
    user_id_hash = Column(String, nullable=False, index=True)
    deleted_at = Column(String, nullable=False)
    deletion_request_id = Column(String, nullable=False, index=True)
    deleted_data_summary = Column(JSON, nullable=False)
    verification_result = Column(JSON, nullable=False)
    signature = Column(String, nullable=False)
    signature_algorithm = Column(String, nullable=False, default="HMAC-SHA256")
    issued_at = Column(UTCDateTime, nullable=False, default=get_current_utc_time, index=True)
    issued_by = Column(String, nullable=False)
