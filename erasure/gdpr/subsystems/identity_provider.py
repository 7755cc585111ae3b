"""Identity provider erasure through its admin REST API.

Only a scope of "all" removes the identity record: partial erasure keeps
the account able to sign in. A 404 from the admin API means the record
is already gone, which counts as success for deletion and as verified
for verification.
"""

import asyncio
import logging
from typing import Any, Dict, Sequence

import httpx

from erasure.gdpr.errors import SubjectNotFoundError, TransientSubsystemError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import SubsystemVerification
from erasure.gdpr.subsystems.base import SubsystemClient, scope_includes_all

logger = logging.getLogger(__name__)


def build_identity_http_client(base_url: str, token: str = "", timeout: float = 10.0) -> httpx.Client:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.Client(base_url=base_url, timeout=timeout, headers=headers)


class IdentityProviderClient(SubsystemClient):
    """Deletes and looks up users via ``/users/{user_id}``."""

    name = "identity_provider"
    residue_label = "user-record"

    def __init__(self, http: httpx.Client, hasher: SubjectHasher):
        self._http = http
        self._hasher = hasher

    def applies_to(self, scope: Sequence[str]) -> bool:
        return scope_includes_all(scope)

    def get_user(self, user_id: str) -> Dict[str, Any]:
        """Fetch the identity record.

        Raises:
            SubjectNotFoundError: The provider has no such user
            TransientSubsystemError: Any other failure
        """
        try:
            resp = self._http.get(f"/users/{user_id}")
        except httpx.HTTPError as e:
            raise TransientSubsystemError(self.name, type(e).__name__) from e
        if resp.status_code == 404:
            raise SubjectNotFoundError("identity record not found")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientSubsystemError(self.name, f"HTTP {resp.status_code}") from e
        return resp.json()

    def delete_user(self, user_id: str) -> int:
        try:
            resp = self._http.delete(f"/users/{user_id}")
        except httpx.HTTPError as e:
            raise TransientSubsystemError(self.name, type(e).__name__) from e
        if resp.status_code == 404:
            return 0
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientSubsystemError(self.name, f"HTTP {resp.status_code}") from e
        return 1

    async def delete(self, user_id: str, scope: Sequence[str]) -> int:
        deleted = await asyncio.to_thread(self.delete_user, user_id)
        logger.info(
            f"Identity provider deletion: user_ref={self._hasher.user_hash(user_id)}, "
            f"deleted={bool(deleted)}"
        )
        return deleted

    async def verify(self, user_id: str, scope: Sequence[str]) -> SubsystemVerification:
        try:
            await asyncio.to_thread(self.get_user, user_id)
        except SubjectNotFoundError:
            return SubsystemVerification(verified=True)
        except TransientSubsystemError as e:
            logger.warning(
                f"Identity provider verification failed: "
                f"user_ref={self._hasher.user_hash(user_id)}, error={e.message}"
            )
            return SubsystemVerification(verified=False, remaining=[self.residue("unverifiable")])
        return SubsystemVerification(verified=False, remaining=[self.residue()])
