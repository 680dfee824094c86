"""Risk layer services: hex aggregation, clustering and zone regimes."""
