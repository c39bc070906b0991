"""Anomaly Detection package.

This package provides an Isolation Forest implementation for anomaly detection:
- isolation: randomized partitioning trees, path-length scoring, contamination
  thresholds and model persistence
- config: YAML defaults for training and runtime settings
"""

from . import isolation
from .errors import (
    AnomalyDetectionError,
    CorruptModelError,
    DimensionMismatchError,
    EmptyDatasetError,
    InvalidParameterError,
)

__all__ = [
    "isolation",
    "AnomalyDetectionError",
    "CorruptModelError",
    "DimensionMismatchError",
    "EmptyDatasetError",
    "InvalidParameterError",
]
