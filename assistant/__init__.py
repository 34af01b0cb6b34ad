"""Adaptive support assistant: routed retrieval, corrective re-querying and self-scoring."""
