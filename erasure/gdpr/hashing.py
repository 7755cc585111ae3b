"""One-way identifiers for logs, analytics keys and certificates."""

import hashlib

from erasure.gdpr.errors import ConfigurationError

USER_HASH_LENGTH = 16


class SubjectHasher:
    """Salted SHA-256 hashing of user ids and IP addresses.

    The same salt must be used by whatever wrote the analytics rows,
    otherwise erasure in the warehouse finds nothing to delete.
    """

    def __init__(self, salt: str):
        if not salt:
            raise ConfigurationError("user hash salt must not be empty")
        self._salt = salt

    def user_hash(self, user_id: str) -> str:
        digest = hashlib.sha256(f"{user_id}{self._salt}".encode("utf-8")).hexdigest()
        return digest[:USER_HASH_LENGTH]

    def ip_hash(self, ip_address: str) -> str:
        return hashlib.sha256(f"ip:{ip_address}{self._salt}".encode("utf-8")).hexdigest()

    def __call__(self, user_id: str) -> str:
        return self.user_hash(user_id)
