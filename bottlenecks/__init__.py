"""Stop/dwell bottleneck aggregation and heat weighting."""
