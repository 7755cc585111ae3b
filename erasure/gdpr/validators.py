"""Input validation for erasure and recovery requests."""

import re
from typing import Iterable, List, Optional

from erasure.gdpr.errors import ValidationError
from erasure.gdpr.schemas import DATA_CATEGORIES, SCOPE_ALL

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_PATTERN = re.compile(r"^\d{6}$")
MAX_REASON_LENGTH = 500


def require_id(value: Optional[str], name: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


def normalize_email(email: Optional[str]) -> str:
    """Lower-case and trim an email address, rejecting malformed ones."""
    if not email:
        raise ValidationError("email is required")
    normalized = email.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("email is malformed")
    return normalized


def validate_code(code: Optional[str]) -> str:
    if code is None:
        raise ValidationError("recovery code is required")
    code = str(code).strip()
    if not CODE_PATTERN.match(code):
        raise ValidationError("recovery code must be exactly 6 digits")
    return code


def normalize_scope(scope: Optional[Iterable[str]]) -> List[str]:
    """Validate a deletion scope.

    "all" absorbs every other category. The result keeps the canonical
    category order so equal scopes compare equal.
    """
    if scope is None:
        raise ValidationError("scope is required")
    if isinstance(scope, str):
        scope = [scope]
    items = {str(s).strip().lower() for s in scope}
    if not items:
        raise ValidationError("scope must not be empty")
    unknown = items - set(DATA_CATEGORIES) - {SCOPE_ALL}
    if unknown:
        raise ValidationError(f"unknown scope categories: {', '.join(sorted(unknown))}")
    if SCOPE_ALL in items:
        return [SCOPE_ALL]
    return [c for c in DATA_CATEGORIES if c in items]


def validate_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    reason = reason.strip()
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    return reason or None
