"""Bottleneck aggregation and stop-pattern retrieval services."""
