"""
SQLAlchemy database models for the configuration store.

A single table holds every configuration value, addressed by tenant,
config and a ``/``-delimited path. The unique constraint on that triple
backs the upsert-on-conflict write semantics.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

# Create the declarative base for all models
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfigNode(Base):
    """
    One configuration value at a path within a tenant/config scope.

    Rows are only created and updated through upserts; the last writer wins.
    """
    __tablename__ = 'configs'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'config_id', 'path', name='uq_configs_tenant_config_path'),
        Index('idx_configs_tenant_config', 'tenant_id', 'config_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    tenant_id = Column(String(64), nullable=False)
    config_id = Column(String(64), nullable=False)
    path = Column(String(1024), nullable=False)  # e.g. '/settings/theme/color'

    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return (
            f"<ConfigNode(tenant_id='{self.tenant_id}', config_id='{self.config_id}', "
            f"path='{self.path}', value='{self.value}')>"
        )


async def create_all_tables(engine) -> None:
    """Create all tables on an async engine."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
