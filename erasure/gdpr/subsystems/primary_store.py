"""Primary store (SQL) erasure.

Scoped categories map to one table each; "all" additionally removes the
root profile row. Bulk deletes run in bounded batches and commit per
batch, so a very large history never becomes one huge transaction.

Erasure runs on a worker thread with its own session; the caller's
session is never used from another thread.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from erasure.gdpr.errors import TransientSubsystemError, ValidationError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import DATA_CATEGORIES, SubsystemVerification
from erasure.gdpr.subsystems.base import SubsystemClient, scope_includes_all
from erasure.models import Consent, Subscription, TrainingSession, UserAccount, UserSetting

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

CATEGORY_MODELS = {
    "sessions": TrainingSession,
    "settings": UserSetting,
    "subscriptions": Subscription,
    "consents": Consent,
}


class PrimaryStoreClient(SubsystemClient):
    """Deletes and verifies user rows in the primary SQL store.

    Args:
        db: Caller's session, used for verification and direct category deletes
        hasher: Hashes user ids for logs
        batch_size: Rows deleted per committed batch
        session_factory: Builds the worker session for ``delete`` and
            ``delete_scoped`` (default: a sessionmaker on ``db``'s bind)
    """

    name = "primary_store"
    residue_label = "profile"

    def __init__(
        self,
        db: Session,
        hasher: SubjectHasher,
        batch_size: int = DEFAULT_BATCH_SIZE,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self._db = db
        self._hasher = hasher
        self._batch_size = batch_size
        self._session_factory = session_factory

    @staticmethod
    def categories_for(scope: Sequence[str]) -> List[str]:
        if scope_includes_all(scope):
            return list(DATA_CATEGORIES)
        return [c for c in DATA_CATEGORIES if c in scope]

    @contextmanager
    def _worker_session(self) -> Iterator[Session]:
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self._db.get_bind(), autoflush=False)
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    def delete_category(self, user_id: str, category: str, db: Optional[Session] = None) -> int:
        """Delete every row of one category for the user, in batches.

        Returns:
            Number of rows removed

        Raises:
            ValidationError: Unknown category
            TransientSubsystemError: Database failure (the batch is rolled back)
        """
        model = CATEGORY_MODELS.get(category)
        if model is None:
            raise ValidationError(f"unknown data category: {category}")
        db = db or self._db

        total = 0
        try:
            while True:
                ids = [
                    row[0]
                    for row in db.query(model.id)
                    .filter(model.user_id == user_id)
                    .limit(self._batch_size)
                    .all()
                ]
                if not ids:
                    break
                db.query(model).filter(model.id.in_(ids)).delete(
                    synchronize_session=False
                )
                db.commit()
                total += len(ids)
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientSubsystemError(self.name, f"{category}: {type(e).__name__}") from e
        return total

    def delete_profile(self, user_id: str, db: Optional[Session] = None) -> int:
        db = db or self._db
        try:
            deleted = db.query(UserAccount).filter(UserAccount.id == user_id).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientSubsystemError(self.name, f"profile: {type(e).__name__}") from e
        return deleted

    def delete_scoped(self, user_id: str, scope: Sequence[str]) -> Tuple[Dict[str, int], Dict[str, str]]:
        """Blocking erasure of the scoped categories on a worker session.

        A failing category is recorded and the rest still run. The
        profile row (scope "all") goes only when every category succeeded,
        since it keeps the user visible to the sweep.

        Returns:
            (rows removed per category, error message per failed category)
        """
        counts: Dict[str, int] = {}
        errors: Dict[str, str] = {}
        with self._worker_session() as db:
            for category in self.categories_for(scope):
                try:
                    counts[category] = self.delete_category(user_id, category, db)
                except TransientSubsystemError as e:
                    errors[category] = e.message
            if scope_includes_all(scope) and not errors:
                try:
                    counts["profile"] = self.delete_profile(user_id, db)
                except TransientSubsystemError as e:
                    errors["profile"] = e.message
        return counts, errors

    async def delete(self, user_id: str, scope: Sequence[str]) -> int:
        user_ref = self._hasher.user_hash(user_id)
        counts, errors = await asyncio.to_thread(self.delete_scoped, user_id, scope)

        for message in errors.values():
            logger.error(f"Primary store deletion failed: user_ref={user_ref}, error={message}")
        logger.info(f"Primary store deletion: user_ref={user_ref}, counts={counts}")
        if errors:
            raise TransientSubsystemError(self.name, f"failed categories: {', '.join(errors)}")
        return sum(counts.values())

    def remaining_categories(self, user_id: str, scope: Sequence[str]) -> List[str]:
        """Residue labels for every category that still has a row."""
        remaining = []
        for category in self.categories_for(scope):
            model = CATEGORY_MODELS[category]
            if self._db.query(model.id).filter(model.user_id == user_id).limit(1).first() is not None:
                remaining.append(self.residue(category))
        if scope_includes_all(scope):
            if self._db.query(UserAccount.id).filter(UserAccount.id == user_id).limit(1).first() is not None:
                remaining.append(self.residue("profile"))
        return remaining

    async def verify(self, user_id: str, scope: Sequence[str]) -> SubsystemVerification:
        try:
            remaining = self.remaining_categories(user_id, scope)
        except SQLAlchemyError as e:
            self._db.rollback()
            logger.warning(
                f"Primary store verification query failed: "
                f"user_ref={self._hasher.user_hash(user_id)}, error={type(e).__name__}"
            )
            return SubsystemVerification(verified=False, remaining=[self.residue("unverifiable")])
        return SubsystemVerification(verified=not remaining, remaining=remaining)
