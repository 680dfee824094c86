"""Upstream feed contracts, query parameters and paginated loaders."""
