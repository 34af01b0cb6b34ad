"""Retrieval tools: query analysis, hybrid search, reranking and corrective evaluation."""
