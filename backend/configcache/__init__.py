"""
Tenant-scoped configuration cache with dependency-driven invalidation.

Hierarchical configuration values live in a relational store and are served
through a Valkey-backed node cache. Every write records dependency edges,
invalidates the affected cache entries and fans change notifications out to
subscribers over Valkey Pub/Sub.
"""

__version__ = "0.1.0"
