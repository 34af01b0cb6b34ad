"""Durable record models shared by the stores and the pipeline."""

from libs.models.records import GraphEdge, QualityScore, RecallEntry, ReflexionLog

__all__ = ["GraphEdge", "QualityScore", "RecallEntry", "ReflexionLog"]
