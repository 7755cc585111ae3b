"""Signed deletion certificates.

A certificate proves that a user's data was erased without naming the
user: it carries the salted user hash, the request id, what was deleted
and how verification went. The canonical payload is the JSON of exactly
six fields (sorted keys, compact separators) signed with HMAC-SHA256.
Certificates are append-only; any later change to a stored row shows up
as a signature mismatch on validation.
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from erasure.gdpr.errors import CertificateTamperedError, ConfigurationError, SubjectNotFoundError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import CertificateValidation, DeletionCertificate
from erasure.gdpr.validators import require_id
from erasure.models import DeletionCertificateRecord, get_current_utc_time
from erasure.observability.metrics import record_certificate_event

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "HMAC-SHA256"
DEFAULT_ISSUER = "erasure-pipeline"


def canonical_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def new_certificate_id(now: datetime) -> str:
    return f"cert_{int(now.timestamp() * 1000)}_{secrets.token_hex(8)}"


def _to_certificate(record: DeletionCertificateRecord) -> DeletionCertificate:
    return DeletionCertificate(
        certificate_id=record.certificate_id,
        user_id_hash=record.user_id_hash,
        deleted_at=record.deleted_at,
        deletion_request_id=record.deletion_request_id,
        deleted_data_summary=record.deleted_data_summary,
        verification_result=record.verification_result,
        signature=record.signature,
        signature_algorithm=record.signature_algorithm,
        issued_at=record.issued_at,
        issued_by=record.issued_by,
    )


class CertificateIssuer:
    """Issues, stores and validates deletion certificates.

    Args:
        db: Session for the primary store
        signing_secret: HMAC key; there is no default
        hasher: Produces the user hash embedded in certificates
        issuer_name: Recorded as ``issued_by``
        clock: Returns the current aware UTC time

    Raises:
        ConfigurationError: Signing secret missing
    """

    def __init__(
        self,
        db: Session,
        signing_secret: str,
        hasher: SubjectHasher,
        issuer_name: str = DEFAULT_ISSUER,
        clock: Callable[[], datetime] = get_current_utc_time,
    ):
        if not signing_secret:
            raise ConfigurationError("certificate signing secret is not configured")
        self._db = db
        self._key = signing_secret.encode("utf-8")
        self._hasher = hasher
        self._issuer_name = issuer_name
        self._clock = clock

    def sign(self, payload: Dict[str, Any]) -> str:
        return hmac.new(
            self._key,
            canonical_payload(payload).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue(
        self,
        user_id: str,
        deletion_request_id: str,
        deleted_data_summary: Dict[str, Any],
        verification_result: Dict[str, Any],
    ) -> DeletionCertificate:
        """Sign and persist a certificate for a finished erasure."""
        user_id = require_id(user_id, "user_id")
        deletion_request_id = require_id(deletion_request_id, "deletion_request_id")
        now = self._clock()

        record = DeletionCertificateRecord(
            certificate_id=new_certificate_id(now),
            user_id_hash=self._hasher.user_hash(user_id),
            deleted_at=now.isoformat(),
            deletion_request_id=deletion_request_id,
            # Round-trip through JSON so the stored value equals what was signed
            deleted_data_summary=json.loads(canonical_payload(deleted_data_summary)),
            verification_result=json.loads(canonical_payload(verification_result)),
            signature_algorithm=SIGNATURE_ALGORITHM,
            issued_at=now,
            issued_by=self._issuer_name,
        )
        certificate = _to_certificate(record)
        record.signature = self.sign(certificate.signed_payload())
        certificate.signature = record.signature

        try:
            self._db.add(record)
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise

        record_certificate_event("issued")
        logger.info(
            f"Deletion certificate issued: certificate_id={certificate.certificate_id}, "
            f"user_ref={certificate.user_id_hash}, request_id={deletion_request_id}"
        )
        return certificate

    def validate(self, certificate_id: str) -> CertificateValidation:
        """Recompute the signature of a stored certificate.

        Returns:
            valid=False with error "not_found" or "signature_mismatch"
            when the certificate is missing or has been altered
        """
        record = self._db.get(DeletionCertificateRecord, certificate_id)
        if record is None:
            record_certificate_event("not_found")
            return CertificateValidation(valid=False, error="not_found")

        certificate = _to_certificate(record)
        expected = self.sign(certificate.signed_payload())
        if not hmac.compare_digest(expected, certificate.signature or ""):
            record_certificate_event("signature_mismatch")
            logger.warning(
                f"Deletion certificate signature mismatch, tampering suspected: "
                f"certificate_id={certificate_id}"
            )
            return CertificateValidation(valid=False, certificate=certificate, error="signature_mismatch")

        record_certificate_event("valid")
        return CertificateValidation(valid=True, certificate=certificate)

    def validate_or_raise(self, certificate_id: str) -> DeletionCertificate:
        result = self.validate(certificate_id)
        if result.error == "signature_mismatch":
            raise CertificateTamperedError(certificate_id)
        if not result.valid:
            raise SubjectNotFoundError(f"certificate {certificate_id} not found")
        return result.certificate

    def find_by_user_hash(self, user_id_hash: str) -> List[DeletionCertificate]:
        """All certificates for a user hash, newest first."""
        records = (
            self._db.query(DeletionCertificateRecord)
            .filter(DeletionCertificateRecord.user_id_hash == user_id_hash)
            .order_by(
                DeletionCertificateRecord.issued_at.desc(),
                DeletionCertificateRecord.certificate_id.desc(),
            )
            .all()
        )
        return [_to_certificate(r) for r in records]
