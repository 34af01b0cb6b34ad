"""Prompt text and system instruction assembly."""
