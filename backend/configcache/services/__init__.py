"""
Business logic services for the configuration service.

This module contains the invalidation engine, the update event bus and
the tree reconstruction helpers.
"""

from .tree import build_tree, merge_node, split_path
from .validation import validate_identifiers, validate_path, validate_page
from .event_bus import EventBus, SubscriptionRegistry, UpdateBatcher, glob_to_regex, matches_pattern
from .invalidation_engine import (
    InvalidationEngine,
    VersionMinter,
    get_invalidation_engine,
    close_global_invalidation_engine
)

__all__ = [
    'build_tree',
    'merge_node',
    'split_path',
    'validate_identifiers',
    'validate_path',
    'validate_page',
    'EventBus',
    'SubscriptionRegistry',
    'UpdateBatcher',
    'glob_to_regex',
    'matches_pattern',
    'InvalidationEngine',
    'VersionMinter',
    'get_invalidation_engine',
    'close_global_invalidation_engine',
]
