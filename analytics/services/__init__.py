"""Analytics services that combine the spatial layers."""

from analytics.services.spatial_insights_service import SpatialInsightsService

__all__ = [
    "SpatialInsightsService",
]
