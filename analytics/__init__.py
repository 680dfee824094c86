"""
Spatial insights module.

Combines the hex risk grid, risk zones, corridor network and bottleneck
layers behind one request/response entry point.
"""

from analytics.services import SpatialInsightsService

__all__ = ["SpatialInsightsService"]
