"""Schemas shared across the assistant pipeline."""
