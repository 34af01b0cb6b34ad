"""Shared libraries for the adaptive support assistant.

This package contains reusable components:
- common: configuration, logging and text utilities
- caching: Redis client management and in-process caches
- stores: durable store interfaces and their Redis implementations
- memory: core and recall memory tiers behind one engine
"""
