"""
Engagement Rollups

Incremental aggregation engine maintaining session-level and user-level
engagement rollups over a continuously growing event stream.
"""

__version__ = "1.0.0"
