"""Object storage (S3-compatible) erasure.

All of a user's uploads live under ``users/{user_id}/``. Deletion lists
the prefix page by page and removes objects in chunks; verification is a
single one-key listing of the same prefix.
"""

import asyncio
import logging
from typing import Any, List, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from erasure.gdpr.errors import TransientSubsystemError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import SubsystemVerification
from erasure.gdpr.subsystems.base import SubsystemClient

logger = logging.getLogger(__name__)

DEFAULT_DELETE_BATCH_SIZE = 100
USER_PREFIX_TEMPLATE = "users/{user_id}/"

# Error codes that mean there is nothing to delete
NOT_FOUND_CODES = {"NoSuchBucket", "NoSuchKey", "404"}


def build_s3_client(endpoint_url: str = "", region_name: str = "us-east-1") -> Any:
    """Create a boto3 S3 client, optionally against an S3-compatible endpoint."""
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url or None,
        region_name=region_name,
    )


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class ObjectStorageClient(SubsystemClient):
    """Deletes and verifies a user's objects in one bucket."""

    name = "object_storage"
    residue_label = "user-files"

    def __init__(
        self,
        s3_client: Any,
        bucket: str,
        hasher: SubjectHasher,
        batch_size: int = DEFAULT_DELETE_BATCH_SIZE,
    ):
        self._s3 = s3_client
        self._bucket = bucket
        self._hasher = hasher
        # S3 accepts at most 1000 keys per DeleteObjects call
        self._batch_size = min(batch_size, 1000)

    @staticmethod
    def prefix_for(user_id: str) -> str:
        return USER_PREFIX_TEMPLATE.format(user_id=user_id)

    def _list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        token = None
        while True:
            kwargs = {"Bucket": self._bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            resp = self._s3.list_objects_v2(**kwargs)
            keys.extend(obj["Key"] for obj in resp.get("Contents", []))
            token = resp.get("NextContinuationToken")
            if not resp.get("IsTruncated") or not token:
                break
        return keys

    def _delete_keys(self, keys: List[str]) -> None:
        for start in range(0, len(keys), self._batch_size):
            chunk = keys[start:start + self._batch_size]
            resp = self._s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
            )
            errors = resp.get("Errors") or []
            if errors:
                raise TransientSubsystemError(
                    self.name, f"{len(errors)} of {len(chunk)} objects could not be deleted"
                )

    def _delete_sync(self, user_id: str) -> int:
        try:
            keys = self._list_keys(self.prefix_for(user_id))
            self._delete_keys(keys)
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_CODES:
                return 0
            raise TransientSubsystemError(self.name, code or "ClientError") from e
        except BotoCoreError as e:
            raise TransientSubsystemError(self.name, type(e).__name__) from e
        return len(keys)

    async def delete(self, user_id: str, scope: Sequence[str]) -> int:
        deleted = await asyncio.to_thread(self._delete_sync, user_id)
        logger.info(
            f"Object storage deletion: user_ref={self._hasher.user_hash(user_id)}, "
            f"objects={deleted}"
        )
        return deleted

    def _has_objects(self, user_id: str) -> bool:
        resp = self._s3.list_objects_v2(
            Bucket=self._bucket,
            Prefix=self.prefix_for(user_id),
            MaxKeys=1,
        )
        return resp.get("KeyCount", len(resp.get("Contents", []))) > 0

    async def verify(self, user_id: str, scope: Sequence[str]) -> SubsystemVerification:
        try:
            has_objects = await asyncio.to_thread(self._has_objects, user_id)
        except ClientError as e:
            if _error_code(e) == "NoSuchBucket":
                return SubsystemVerification(verified=True)
            logger.warning(
                f"Object storage verification failed: "
                f"user_ref={self._hasher.user_hash(user_id)}, code={_error_code(e)}"
            )
            return SubsystemVerification(verified=False, remaining=[self.residue()])
        except BotoCoreError as e:
            logger.warning(
                f"Object storage verification failed: "
                f"user_ref={self._hasher.user_hash(user_id)}, error={type(e).__name__}"
            )
            return SubsystemVerification(verified=False, remaining=[self.residue()])

        if has_objects:
            return SubsystemVerification(verified=False, remaining=[self.residue()])
        return SubsystemVerification(verified=True)
