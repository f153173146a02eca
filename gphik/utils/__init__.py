"""
Utilities Module
================

Key Components:
    DataGenerator: Synthetic L1-normalised histograms for demos and tests
"""

from gphik.utils.data_generator import DataGenerator

__all__ = [
    "DataGenerator",
]
