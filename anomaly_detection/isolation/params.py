"""
Training hyperparameters for the Isolation Forest and the rules that resolve
fractional sizes to absolute counts.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Any

from ..errors import InvalidParameterError


def _is_int(value: Any) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _is_real(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


@dataclass(frozen=True)
class TrainingParams:
    """
    Hyperparameters of an Isolation Forest, validated on construction.
    Attributes:
        num_estimators: Number of trees in the ensemble.
        max_samples: Rows drawn per tree. Values <= 1.0 are a fraction of the
            training set size, values > 1.0 an absolute count.
        contamination: Expected fraction of outliers, in [0, 1).
        max_features: Features available to each tree. Values <= 1.0 are a
            fraction of the dimensionality, values > 1.0 an absolute count.
        bootstrap: Whether rows are drawn with replacement.
        random_seed: Seed every tree seed is derived from.
    """
    num_estimators: int = 100
    max_samples: float = 256
    contamination: float = 0.0
    max_features: float = 1.0
    bootstrap: bool = False
    random_seed: int = 1

    def __post_init__(self) -> None:
        if not _is_int(self.num_estimators) or self.num_estimators < 1:
            raise InvalidParameterError(
                f"num_estimators must be an integer >= 1, got {self.num_estimators!r}"
            )
        if not _is_real(self.max_samples) or not self.max_samples > 0:
            raise InvalidParameterError(
                f"max_samples must be a positive number, got {self.max_samples!r}"
            )
        if not _is_real(self.contamination) or not 0.0 <= self.contamination < 1.0:
            raise InvalidParameterError(
                f"contamination must be in [0, 1), got {self.contamination!r}"
            )
        if not _is_real(self.max_features) or not self.max_features > 0:
            raise InvalidParameterError(
                f"max_features must be a positive number, got {self.max_features!r}"
            )
        if not isinstance(self.bootstrap, bool):
            raise InvalidParameterError(f"bootstrap must be a bool, got {self.bootstrap!r}")
        if not _is_int(self.random_seed):
            raise InvalidParameterError(f"random_seed must be an integer, got {self.random_seed!r}")


def resolve_max_samples(max_samples: float, n_rows: int, bootstrap: bool = False) -> int:
    """
    Resolve max_samples to the per-tree subsample size.
    Args:
        max_samples: Fraction of n_rows (<= 1.0) or absolute count (> 1.0).
        n_rows: Number of training rows.
        bootstrap: Whether rows are drawn with replacement. Without replacement
            an absolute count larger than n_rows is capped at n_rows.
    Returns:
        The subsample size, always >= 2.
    """
    if max_samples <= 1.0:
        subsample_size = int(max_samples * n_rows)
    else:
        subsample_size = int(max_samples)
        if not bootstrap:
            subsample_size = min(subsample_size, n_rows)

    if subsample_size < 2:
        raise InvalidParameterError(
            f"max_samples={max_samples!r} resolves to {subsample_size} rows "
            f"on a dataset of {n_rows} rows; at least 2 are required"
        )
    return subsample_size


def resolve_max_features(max_features: float, n_features: int) -> int:
    """
    Resolve max_features to the per-tree feature count.
    Args:
        max_features: Fraction of n_features (<= 1.0) or absolute count (> 1.0).
        n_features: Dimensionality of the training data.
    Returns:
        The feature count, in [1, n_features].
    """
    if max_features <= 1.0:
        n_selected = int(max_features * n_features)
    else:
        n_selected = int(max_features)

    if not 1 <= n_selected <= n_features:
        raise InvalidParameterError(
            f"max_features={max_features!r} resolves to {n_selected} features; "
            f"must be between 1 and {n_features}"
        )
    return n_selected
