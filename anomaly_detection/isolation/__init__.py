"""Isolation Forest implementation for anomaly detection.

This package provides the standard Isolation Forest algorithm using random
partitioning of the feature space.
"""

from .codec import dumps, load, loads, save
from .forest import IsolationForest, derive_tree_seeds, score, score_rows, train
from .params import TrainingParams, resolve_max_features, resolve_max_samples
from .sampler import Sample, draw_sample
from .threshold import select_threshold
from .tree import (
    ExternalNode,
    InternalNode,
    IsolationTree,
    average_path_length,
    build_tree,
    max_depth_for,
)

__all__ = [
    "IsolationTree",
    "InternalNode",
    "ExternalNode",
    "IsolationForest",
    "TrainingParams",
    "Sample",
    "average_path_length",
    "build_tree",
    "derive_tree_seeds",
    "draw_sample",
    "dumps",
    "load",
    "loads",
    "max_depth_for",
    "resolve_max_features",
    "resolve_max_samples",
    "save",
    "score",
    "score_rows",
    "select_threshold",
    "train",
]
