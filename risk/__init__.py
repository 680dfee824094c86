"""Hex-grid risk scoring, reason tallies and risk zone clustering."""
