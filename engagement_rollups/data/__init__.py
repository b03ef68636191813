"""
Synthetic Data Module
"""
from .generators import EngagementDataGenerator, SyntheticDataset

__all__ = [
    "EngagementDataGenerator",
    "SyntheticDataset",
]
