"""EarthLord construction and trade settlement server."""

__version__ = "1.0.0"
