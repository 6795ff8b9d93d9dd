"""
Pydantic models package.

Models used across the cache, engine and event bus for validation and
wire serialization.
"""

from .node import (
    DEFAULT_VERSION,
    UNKNOWN_ACTOR,
    UpdateAction,
    InvalidationPolicy,
    parse_path_list,
    CacheEntryModel,
    NodeMetadataModel,
    UpdateEventModel,
    UpdateEnvelopeModel,
    WriteRequestModel,
    WriteResultModel,
    CachedNodeMetricsModel,
    CachedNodesReportModel,
)

__all__ = [
    "DEFAULT_VERSION",
    "UNKNOWN_ACTOR",
    "UpdateAction",
    "InvalidationPolicy",
    "parse_path_list",
    "CacheEntryModel",
    "NodeMetadataModel",
    "UpdateEventModel",
    "UpdateEnvelopeModel",
    "WriteRequestModel",
    "WriteResultModel",
    "CachedNodeMetricsModel",
    "CachedNodesReportModel",
]
