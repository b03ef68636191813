"""
User Dimension Module
"""
from .cache import DimensionCache
from .source import DimensionSource, RedisDimensionSource, StaticDimensionSource

__all__ = [
    "DimensionCache",
    "DimensionSource",
    "RedisDimensionSource",
    "StaticDimensionSource",
]
