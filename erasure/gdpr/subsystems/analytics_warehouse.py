"""Analytics warehouse erasure.

The warehouse never sees raw user ids: rows are keyed by the salted
one-way user hash, so erasure and verification both work on the hash.
Queries are parameterised; table names come from configuration and are
checked against an identifier pattern before use.
"""

import asyncio
import logging
import re
from typing import Iterable, List, Sequence

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from erasure.gdpr.errors import ConfigurationError, TransientSubsystemError
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.schemas import SubsystemVerification
from erasure.gdpr.subsystems.base import SubsystemClient

logger = logging.getLogger(__name__)

DEFAULT_TABLES = ("users_anonymized", "training_sessions")

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class AnalyticsWarehouseClient(SubsystemClient):
    """Deletes and counts hash-keyed rows in the analytics warehouse.

    Args:
        engine: SQLAlchemy engine for the warehouse
        hasher: Produces the user hash the rows are keyed by
        tables: Tables holding a ``user_hash`` column
        fail_open: Treat a failed verification query as verified
    """

    name = "analytics_warehouse"
    residue_label = "user-data"

    def __init__(
        self,
        engine: Engine,
        hasher: SubjectHasher,
        tables: Iterable[str] = DEFAULT_TABLES,
        fail_open: bool = False,
    ):
        self._engine = engine
        self._hasher = hasher
        self._tables = list(tables)
        self._fail_open = fail_open
        for table in self._tables:
            if not _TABLE_NAME.match(table):
                raise ConfigurationError(f"invalid warehouse table name: {table!r}")
        if not self._tables:
            raise ConfigurationError("at least one warehouse table is required")

    def _existing_tables(self, conn) -> List[str]:
        inspector = inspect(conn)
        existing = []
        for table in self._tables:
            schema, _, name = table.rpartition(".")
            if inspector.has_table(name, schema=schema or None):
                existing.append(table)
            else:
                logger.debug(f"Warehouse table {table} does not exist, skipping")
        return existing

    def _delete_sync(self, user_hash: str) -> int:
        total = 0
        with self._engine.begin() as conn:
            for table in self._existing_tables(conn):
                result = conn.execute(
                    text(f"DELETE FROM {table} WHERE user_hash = :user_hash"),
                    {"user_hash": user_hash},
                )
                total += max(result.rowcount or 0, 0)
        return total

    def count_rows(self, user_hash: str) -> int:
        total = 0
        with self._engine.connect() as conn:
            for table in self._existing_tables(conn):
                total += conn.execute(
                    text(f"SELECT COUNT(*) FROM {table} WHERE user_hash = :user_hash"),
                    {"user_hash": user_hash},
                ).scalar_one()
        return total

    async def delete(self, user_id: str, scope: Sequence[str]) -> int:
        user_hash = self._hasher.user_hash(user_id)
        try:
            deleted = await asyncio.to_thread(self._delete_sync, user_hash)
        except SQLAlchemyError as e:
            raise TransientSubsystemError(self.name, type(e).__name__) from e
        logger.info(f"Analytics warehouse deletion: user_ref={user_hash}, rows={deleted}")
        return deleted

    async def verify(self, user_id: str, scope: Sequence[str]) -> SubsystemVerification:
        user_hash = self._hasher.user_hash(user_id)
        try:
            remaining = await asyncio.to_thread(self.count_rows, user_hash)
        except SQLAlchemyError as e:
            logger.warning(
                f"Analytics warehouse verification query failed: user_ref={user_hash}, "
                f"error={type(e).__name__}, fail_open={self._fail_open}"
            )
            if self._fail_open:
                return SubsystemVerification(verified=True)
            return SubsystemVerification(verified=False, remaining=[self.residue("unverifiable")])

        if remaining:
            return SubsystemVerification(verified=False, remaining=[self.residue()])
        return SubsystemVerification(verified=True)
