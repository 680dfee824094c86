"""
Centralized exception hierarchy for domain-specific errors.

Most of these never reach the caller: invalid points are dropped, degenerate
hulls fall back to a buffer, missing snapshots become empty results. Only
feed failures and superseded requests propagate.
"""


class FleetRiskError(Exception):
    """Base exception for all library-specific errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidCoordinateError(FleetRiskError, ValueError):
    """Exception raised for NaN or out-of-range latitude/longitude."""


class VersionUnavailableError(FleetRiskError):
    """Exception raised when a snapshot feed has no published version."""


class ClusteringDegenerateError(FleetRiskError):
    """Exception raised when a cluster hull cannot be built from its members."""


class PaginationExhaustedError(FleetRiskError):
    """Exception raised when a paginated fetch hits its page cap."""


class UpstreamFetchError(FleetRiskError):
    """Exception raised when a feed page cannot be fetched after retries."""


class StaleResultError(FleetRiskError):
    """Exception raised when a request was superseded by a newer filter context."""


InvalidCoordinate = InvalidCoordinateError
VersionUnavailable = VersionUnavailableError
ClusteringDegenerate = ClusteringDegenerateError
PaginationExhausted = PaginationExhaustedError
UpstreamFetchFailure = UpstreamFetchError
