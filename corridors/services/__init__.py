"""Corridor learning and retrieval services."""
