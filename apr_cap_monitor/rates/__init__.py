"""Market rate sources."""
from .morpho import MorphoRateSource

__all__ = ["MorphoRateSource"]
