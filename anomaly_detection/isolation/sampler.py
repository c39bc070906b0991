"""
This module draws the per-tree subsample: the rows a tree is built from and
the features it is allowed to split on.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from ..errors import InvalidParameterError


@dataclass(frozen=True)
class Sample:
    """
    Rows and features selected for one tree.
    Attributes:
        row_indices: Indices into the training set, shape (subsample_size,).
            May repeat when drawn with replacement.
        feature_indices: Sorted, distinct feature indices, shape (n_selected,).
    """
    row_indices: npt.NDArray[np.int_]
    feature_indices: npt.NDArray[np.int_]

    @property
    def size(self) -> int:
        return int(self.row_indices.shape[0])


def draw_sample(
    n_rows: int,
    n_features: int,
    subsample_size: int,
    n_selected_features: int,
    seed: int | np.random.RandomState,
    bootstrap: bool = False,
) -> Sample:
    """
    Draw row and feature indices uniformly at random.
    Args:
        n_rows: Training set size.
        n_features: Dimensionality of the training set.
        subsample_size: Number of rows to draw. Must be >= 2, and <= n_rows
            unless bootstrap is enabled.
        n_selected_features: Number of distinct features to draw, in [1, n_features].
        seed: Integer seed or an existing RandomState to draw from.
        bootstrap: Draw rows with replacement.
    Returns:
        The Sample. The same seed always yields the same Sample.
    """
    if subsample_size < 2:
        raise InvalidParameterError(f"subsample size must be >= 2, got {subsample_size}")
    if not bootstrap and subsample_size > n_rows:
        raise InvalidParameterError(
            f"cannot draw {subsample_size} rows without replacement from {n_rows}"
        )
    if not 1 <= n_selected_features <= n_features:
        raise InvalidParameterError(
            f"feature count must be in [1, {n_features}], got {n_selected_features}"
        )

    rng = seed if isinstance(seed, np.random.RandomState) else np.random.RandomState(seed)

    row_indices = rng.choice(n_rows, subsample_size, replace=bootstrap)
    if n_selected_features == n_features:
        feature_indices = np.arange(n_features)
    else:
        feature_indices = np.sort(rng.choice(n_features, n_selected_features, replace=False))

    return Sample(
        row_indices=row_indices.astype(np.intp),
        feature_indices=feature_indices.astype(np.intp),
    )
