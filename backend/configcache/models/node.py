"""
Node, metadata and update event models for the configuration cache.

This module contains the Pydantic models that cross component boundaries:
cache entries, per-node dependency metadata, update events and the
envelopes published on the updates channel, and the write request/result
shapes consumed by the transport layer.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "v1"
UNKNOWN_ACTOR = "Unknown"


class UpdateAction(str, Enum):
    """Actions carried by update events."""
    INVALIDATED = "invalidated"


class InvalidationPolicy(str, Enum):
    """
    Which one-hop neighbours are invalidated together with a node.

    ``DEPENDENCIES`` drops the entries of the paths the node depends on.
    ``DEPENDENTS`` drops the entries of the paths that declared the node
    as a dependency.
    """
    DEPENDENCIES = "dependencies"
    DEPENDENTS = "dependents"


def parse_path_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Ignoring malformed path list in metadata: {raw!r}")
        return []
    return [str(item) for item in parsed] if isinstance(parsed, list) else []


class CacheEntryModel(BaseModel):
    """Cached value of a single node."""
    model_config = ConfigDict(from_attributes=True)

    value: str = Field(..., description="Node value")
    version: Optional[str] = Field(None, description="Version minted by the write that cached it")


class NodeMetadataModel(BaseModel):
    """
    Version and dependency edges of a single node.

    Stored as a Valkey hash whose list fields are JSON-encoded strings.
    """
    model_config = ConfigDict(from_attributes=True)

    version: str = Field(default=DEFAULT_VERSION, description="Version of the last write")
    dependencies: List[str] = Field(default_factory=list, description="Paths this node depends on, in declared order")
    dependents: List[str] = Field(default_factory=list, description="Paths that declared this node as a dependency")
    updated_at: Optional[datetime] = Field(None, description="Time of the last metadata write")

    @classmethod
    def from_hash(cls, fields: Dict[str, str]) -> "NodeMetadataModel":
        updated_at = None
        if fields.get("updated_at"):
            try:
                updated_at = datetime.fromisoformat(fields["updated_at"])
            except ValueError:
                logger.warning(f"Ignoring malformed updated_at in metadata: {fields['updated_at']!r}")
        return cls(
            version=fields.get("version") or DEFAULT_VERSION,
            dependencies=parse_path_list(fields.get("dependencies")),
            dependents=parse_path_list(fields.get("dependents")),
            updated_at=updated_at,
        )


class UpdateEventModel(BaseModel):
    """
    A single change notification.

    The actor is carried on the wire as ``userId`` so existing consumers
    of the updates channel keep working.
    """
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., description="Invalidated node path")
    action: UpdateAction = Field(default=UpdateAction.INVALIDATED, description="What happened to the node")
    version: str = Field(default=DEFAULT_VERSION, description="Node version after the change")
    actor_id: str = Field(default=UNKNOWN_ACTOR, alias="userId", description="Who made the change")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UpdateEnvelopeModel(BaseModel):
    """Batch of update events published on ``config_updates:{tenant}:{config}``."""
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId")
    config_id: str = Field(..., alias="configId")
    data: List[UpdateEventModel] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WriteRequestModel(BaseModel):
    """Write request body as received from the transport layer."""
    model_config = ConfigDict(populate_by_name=True)

    path: str
    value: str
    dependencies: Optional[List[str]] = None
    user_id: Optional[str] = Field(None, alias="userId")


class WriteResultModel(BaseModel):
    """Outcome of a successful write."""

    status: str = "updated"
    path: str
    version: str
    invalidated: List[str] = Field(default_factory=list, description="Paths whose cache entries were dropped")
    published: bool = Field(default=True, description="Whether the update event reached the bus")


class CachedNodeMetricsModel(BaseModel):
    """Metadata of one cached node as shown by the metrics listing."""

    path: str
    metadata: NodeMetadataModel


class CachedNodesReportModel(BaseModel):
    """Paginated listing of the cached nodes of one tenant/config."""

    cached_nodes: List[str] = Field(default_factory=list, description="Every member of the cached node set")
    metrics: List[CachedNodeMetricsModel] = Field(default_factory=list, description="Metadata for the requested page")
    cache_stats: Dict[str, int] = Field(default_factory=dict, description="Process-lifetime hit/miss counters")
