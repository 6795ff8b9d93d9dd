"""
Durable value store for configuration nodes.

The store is the source of truth for ``(tenant, config, path) -> value``.
Writes go through ``ValueStore.transaction()`` so that callers can run
their own side effects between the upsert and the commit: the transaction
commits only if the whole block succeeds and is rolled back otherwise.

Read results are ordered by path so that tree reconstruction is
deterministic.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import StoreError
from .config import DatabaseConfig
from .models import ConfigNode

logger = logging.getLogger(__name__)

Row = Tuple[str, str]

_UPSERT_INSERTS = {
    'sqlite': sqlite_insert,
    'postgresql': pg_insert,
}


class StoreTransaction:
    """Operations bound to one open database transaction."""

    def __init__(self, session: AsyncSession, dialect: str):
        self.session = session
        self.dialect = dialect

    async def upsert(self, tenant_id: str, config_id: str, path: str, value: str) -> None:
        """
        Insert or overwrite the value at a path.

        Raises:
            StoreError: If the statement fails
        """
        now = datetime.now(timezone.utc)
        try:
            insert = _UPSERT_INSERTS.get(self.dialect)
            if insert is not None:
                stmt = insert(ConfigNode).values(
                    tenant_id=tenant_id,
                    config_id=config_id,
                    path=path,
                    value=value,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=['tenant_id', 'config_id', 'path'],
                    set_={'value': stmt.excluded.value, 'updated_at': stmt.excluded.updated_at},
                )
                await self.session.execute(stmt)
            else:
                await self._upsert_orm(tenant_id, config_id, path, value, now)
        except SQLAlchemyError as e:
            raise StoreError(f"Upsert failed for {tenant_id}/{config_id}{path}: {e}") from e

        logger.debug(f"Upserted {tenant_id}/{config_id}{path}")

    async def _upsert_orm(self, tenant_id: str, config_id: str, path: str, value: str, now: datetime) -> None:
        # Dialects without ON CONFLICT support
        result = await self.session.execute(
            select(ConfigNode).where(
                ConfigNode.tenant_id == tenant_id,
                ConfigNode.config_id == config_id,
                ConfigNode.path == path,
            )
        )
        node = result.scalar_one_or_none()
        if node is None:
            self.session.add(ConfigNode(
                tenant_id=tenant_id, config_id=config_id, path=path, value=value, updated_at=now
            ))
        else:
            node.value = value
            node.updated_at = now
        await self.session.flush()


class ValueStore:
    """
    Query/upsert interface over the ``configs`` table.

    Every SQLAlchemy failure surfaces as ``StoreError``.
    """

    def __init__(self, db_config: DatabaseConfig, acquire_timeout: Optional[float] = None):
        self.db = db_config
        self.acquire_timeout = db_config.pool_timeout if acquire_timeout is None else acquire_timeout

    async def _open_session(self) -> AsyncSession:
        session = await self.db.get_session()
        try:
            await asyncio.wait_for(session.connection(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as e:
            await session.close()
            raise StoreError(f"Timed out after {self.acquire_timeout}s waiting for a database connection") from e
        except SQLAlchemyError as e:
            await session.close()
            raise StoreError(f"Could not acquire a database connection: {e}") from e
        return session

    @staticmethod
    async def _rollback(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """
        Open a transaction that commits when the block completes.

        Any exception raised inside the block rolls the transaction back and
        is re-raised unchanged. The connection is released on every exit path.

        Raises:
            StoreError: If no connection can be acquired or the commit fails
        """
        session = await self._open_session()
        try:
            yield StoreTransaction(session, self.db.db_type)
        except Exception:
            await self._rollback(session)
            logger.debug("Transaction rolled back")
            raise
        else:
            try:
                await session.commit()
            except SQLAlchemyError as e:
                await self._rollback(session)
                raise StoreError(f"Commit failed: {e}") from e
        finally:
            await session.close()

    async def upsert(self, tenant_id: str, config_id: str, path: str, value: str) -> None:
        """Upsert a single value in its own transaction."""
        async with self.transaction() as tx:
            await tx.upsert(tenant_id, config_id, path, value)

    def _ordered_path(self):
        # Byte-wise ordering regardless of the database's default collation
        if self.db.db_type == 'postgresql':
            return ConfigNode.path.collate('C')
        return ConfigNode.path

    async def _fetch_rows(self, stmt) -> List[Row]:
        session = await self._open_session()
        try:
            result = await session.execute(stmt)
            return [(path, value) for path, value in result.all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Query failed: {e}") from e
        finally:
            await session.close()

    async def query_all(self, tenant_id: str, config_id: str) -> List[Row]:
        """All ``(path, value)`` rows of a tenant/config, ordered by path."""
        stmt = (
            select(ConfigNode.path, ConfigNode.value)
            .where(ConfigNode.tenant_id == tenant_id, ConfigNode.config_id == config_id)
            .order_by(self._ordered_path())
        )
        return await self._fetch_rows(stmt)

    async def query_prefix(self, tenant_id: str, config_id: str, prefix: str) -> List[Row]:
        """
        Rows whose path starts with ``prefix``, ordered by path.

        The comparison is exact and case-sensitive; ``%`` and ``_`` have no
        special meaning.
        """
        stmt = (
            select(ConfigNode.path, ConfigNode.value)
            .where(
                ConfigNode.tenant_id == tenant_id,
                ConfigNode.config_id == config_id,
                func.substr(ConfigNode.path, 1, len(prefix)) == prefix,
            )
            .order_by(self._ordered_path())
        )
        return await self._fetch_rows(stmt)

    async def get_value(self, tenant_id: str, config_id: str, path: str) -> Optional[str]:
        """Value stored at an exact path, or None."""
        stmt = select(ConfigNode.path, ConfigNode.value).where(
            ConfigNode.tenant_id == tenant_id,
            ConfigNode.config_id == config_id,
            ConfigNode.path == path,
        )
        rows = await self._fetch_rows(stmt)
        return rows[0][1] if rows else None
