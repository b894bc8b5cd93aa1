from .metrics import PlacementMetrics

__all__ = ["PlacementMetrics"]
