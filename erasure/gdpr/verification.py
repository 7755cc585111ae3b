"""Post-deletion verification.

After an erasure every subsystem is queried again. The four checks are
independent, run concurrently, and none of them can mask another: a
check that raises is reported as not verified rather than aborting the
rest.
"""

import asyncio
import logging
from typing import Sequence

from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import (
    SCOPE_ALL,
    PrimaryStoreVerification,
    SubsystemVerification,
    VerificationResult,
)
from erasure.gdpr.subsystems.base import SubsystemClient
from erasure.observability.metrics import record_verification

logger = logging.getLogger(__name__)


class VerificationEngine:
    """Re-queries each subsystem for anything left of a user."""

    def __init__(
        self,
        primary_store: SubsystemClient,
        object_storage: SubsystemClient,
        analytics_warehouse: SubsystemClient,
        identity_provider: SubsystemClient,
        hasher: SubjectHasher,
    ):
        self._primary_store = primary_store
        self._object_storage = object_storage
        self._analytics_warehouse = analytics_warehouse
        self._identity_provider = identity_provider
        self._hasher = hasher

    async def verify_primary_store(
        self, user_id: str, scope: Sequence[str] = (SCOPE_ALL,)
    ) -> PrimaryStoreVerification:
        return await self._primary_store.verify(user_id, scope)

    async def verify_object_storage(self, user_id: str) -> bool:
        return (await self._object_storage.verify(user_id, [SCOPE_ALL])).verified

    async def verify_analytics_warehouse(self, user_id: str) -> bool:
        return (await self._analytics_warehouse.verify(user_id, [SCOPE_ALL])).verified

    async def verify_identity_provider(self, user_id: str) -> bool:
        return (await self._identity_provider.verify(user_id, [SCOPE_ALL])).verified

    async def _check(
        self, client: SubsystemClient, user_id: str, scope: Sequence[str]
    ) -> SubsystemVerification:
        if not client.applies_to(scope):
            # Out of scope: the record is meant to stay
            return SubsystemVerification(verified=True)
        try:
            result = await client.verify(user_id, scope)
        except Exception as e:
            logger.error(
                f"Verification check raised: subsystem={client.name}, "
                f"user_ref={self._hasher.user_hash(user_id)}, error={type(e).__name__}"
            )
            result = SubsystemVerification(verified=False, remaining=[client.residue("unverifiable")])
        record_verification(client.name, result.verified)
        return result

    async def verify_all(self, user_id: str, scope: Sequence[str] = (SCOPE_ALL,)) -> VerificationResult:
        """Run all four checks concurrently and merge their residue."""
        scope = list(scope)
        primary, storage, analytics, identity = await asyncio.gather(
            self._check(self._primary_store, user_id, scope),
            self._check(self._object_storage, user_id, scope),
            self._check(self._analytics_warehouse, user_id, scope),
            self._check(self._identity_provider, user_id, scope),
        )
        result = VerificationResult(
            primary_store=primary.verified,
            object_storage=storage.verified,
            analytics_warehouse=analytics.verified,
            identity_provider=identity.verified,
            remaining=primary.remaining + storage.remaining + analytics.remaining + identity.remaining,
        )
        log = logger.info if result.all_passed else logger.warning
        log(
            f"Deletion verification: user_ref={self._hasher.user_hash(user_id)}, "
            f"all_passed={result.all_passed}, remaining={result.remaining}"
        )
        return result
