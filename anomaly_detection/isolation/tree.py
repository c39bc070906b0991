"""
This module contains the IsolationTree class and the recursive builder that
implements the standard Isolation Forest partitioning, together with the
path length scoring of a single tree.

Trees are stored as an arena of nodes indexed by integer id: node 0 is the
root, and every per-node attribute lives in a parallel array. Unset cells are
-1 for integer attributes and NaN for split thresholds.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import matplotlib.pyplot as plt
import numpy as np
import numpy.typing as npt

from ..errors import DimensionMismatchError
from .sampler import Sample

EULER_GAMMA = 0.5772156649


def average_path_length(n: Any) -> Any:
    """
    Average path length of an unsuccessful binary search over n points:
    c(n) = 2 * H(n - 1) - 2 * (n - 1) / n, with H(i) ~ ln(i) + Euler's constant
    and c(n) = 0 for n <= 1.
    Args:
        n: Point count, scalar or array.
    Returns:
        c(n) with the same shape as n (a float for scalar input).
    """
    n_arr = np.asarray(n, dtype=np.float64)
    result = np.zeros_like(n_arr)
    mask = n_arr > 1
    HARMONIC_NUMBER = np.log(n_arr[mask] - 1.0) + EULER_GAMMA
    result[mask] = 2.0 * HARMONIC_NUMBER - 2.0 * (n_arr[mask] - 1.0) / n_arr[mask]
    if result.ndim == 0:
        return float(result)
    return result


def max_depth_for(subsample_size: int) -> int:
    """Depth limit ceil(log2(subsample_size)) used while building a tree."""
    return max(int(subsample_size) - 1, 0).bit_length()


@dataclass(frozen=True)
class InternalNode:
    """Split node: points with value < threshold go left, the rest go right."""
    node_id: int
    depth: int
    feature: int
    threshold: float
    left: int
    right: int


@dataclass(frozen=True)
class ExternalNode:
    """Leaf node holding the number of training points that reached it."""
    node_id: int
    depth: int
    size: int


def _draw_split_threshold(rng: np.random.RandomState, low: float, high: float) -> float:
    """
    Draw a threshold strictly inside (low, high). When the two values are
    adjacent floats no such value exists and high is returned, which still
    separates them under the `value < threshold` rule.
    """
    threshold = rng.uniform(low, high)
    if low < threshold < high:
        return float(threshold)
    midpoint = low + (high - low) / 2.0
    if low < midpoint < high:
        return float(midpoint)
    return float(high)


class _TreeBuilder:
    """
    Recursive partitioning of one subsample into the node arena.
    Attributes:
        feature_indices: Features this tree may split on.
        max_depth: Depth at which recursion stops.
        rng: Random state owned by this tree.
    """

    def __init__(
        self,
        feature_indices: npt.NDArray[np.int_],
        max_depth: int,
        rng: np.random.RandomState,
    ) -> None:
        self.feature_indices = np.asarray(feature_indices, dtype=np.intp)
        self.max_depth = max_depth
        self.rng = rng

        self.feature: list[int] = []
        self.threshold: list[float] = []
        self.left: list[int] = []
        self.right: list[int] = []
        self.leaf_size: list[int] = []
        self.depth: list[int] = []

    def _new_node(self, depth: int) -> int:
        self.feature.append(-1)
        self.threshold.append(np.nan)
        self.left.append(-1)
        self.right.append(-1)
        self.leaf_size.append(-1)
        self.depth.append(depth)
        return len(self.depth) - 1

    def partition_space(self, Xs: npt.NDArray[np.floating[Any]], depth: int) -> int:
        """
        Partition Xs with random axis-aligned splits until points are
        isolated, indistinguishable, or the depth limit is reached.
        Args:
            Xs: Points in the current partition, shape (n_points, n_features).
            depth: Depth of the node being created.
        Returns:
            Id of the node created for this partition.
        """
        node_id = self._new_node(depth)

        if depth == self.max_depth or Xs.shape[0] <= 1:
            self.leaf_size[node_id] = Xs.shape[0]
            return node_id

        Xs_selected = Xs[:, self.feature_indices]
        mins = Xs_selected.min(axis=0)
        maxs = Xs_selected.max(axis=0)

        # Features that are constant in this partition cannot split it.
        candidates = np.flatnonzero(maxs > mins)
        if candidates.size == 0:
            self.leaf_size[node_id] = Xs.shape[0]
            return node_id

        pick = candidates[self.rng.randint(candidates.size)]
        idx_feature = int(self.feature_indices[pick])
        split_threshold = _draw_split_threshold(self.rng, float(mins[pick]), float(maxs[pick]))

        mask_lower = Xs[:, idx_feature] < split_threshold

        self.feature[node_id] = idx_feature
        self.threshold[node_id] = split_threshold
        self.left[node_id] = self.partition_space(Xs[mask_lower], depth + 1)
        self.right[node_id] = self.partition_space(Xs[~mask_lower], depth + 1)
        return node_id


class IsolationTree:
    """
    Immutable isolation tree stored as a node arena.
    Attributes:
        feature: Split feature per node (-1 for leaves).
        threshold: Split threshold per node (NaN for leaves).
        left: Left child id per node (-1 for leaves).
        right: Right child id per node (-1 for leaves).
        leaf_size: Training points that reached each leaf (-1 for internal nodes).
        depth: Depth of each node, root is 0.
        max_depth: Depth limit used during construction.
        n_features: Dimensionality of the training data.
    """

    def __init__(
        self,
        feature: Sequence[int] | npt.NDArray[np.int_],
        threshold: Sequence[float] | npt.NDArray[np.floating[Any]],
        left: Sequence[int] | npt.NDArray[np.int_],
        right: Sequence[int] | npt.NDArray[np.int_],
        leaf_size: Sequence[int] | npt.NDArray[np.int_],
        depth: Sequence[int] | npt.NDArray[np.int_],
        max_depth: int,
        n_features: int,
    ) -> None:
        self.feature = self._frozen(feature, np.intp)
        self.threshold = self._frozen(threshold, np.float64)
        self.left = self._frozen(left, np.intp)
        self.right = self._frozen(right, np.intp)
        self.leaf_size = self._frozen(leaf_size, np.int64)
        self.depth = self._frozen(depth, np.intp)
        self.max_depth = int(max_depth)
        self.n_features = int(n_features)

        self.is_leaf = self._frozen(self.left < 0, np.bool_)
        corrections = np.where(self.is_leaf, average_path_length(np.maximum(self.leaf_size, 1)), 0.0)
        self._leaf_path_lengths = self._frozen(self.depth + corrections, np.float64)

    @staticmethod
    def _frozen(values: Any, dtype: Any) -> npt.NDArray[Any]:
        arr = np.array(values, dtype=dtype)
        arr.setflags(write=False)
        return arr

    def __setstate__(self, state: dict[str, Any]) -> None:
        # Unpickled arrays (e.g. returned by joblib workers) come back writeable.
        self.__dict__.update(state)
        for value in self.__dict__.values():
            if isinstance(value, np.ndarray):
                value.setflags(write=False)

    @property
    def n_nodes(self) -> int:
        return int(self.depth.shape[0])

    @property
    def n_leaves(self) -> int:
        return int(np.count_nonzero(self.is_leaf))

    @property
    def height(self) -> int:
        """Depth of the deepest node."""
        return int(self.depth.max())

    def node(self, node_id: int) -> InternalNode | ExternalNode:
        """
        Args:
            node_id: Id of the node in this tree.
        Returns:
            An ExternalNode for leaves, an InternalNode otherwise.
        """
        if self.is_leaf[node_id]:
            return ExternalNode(
                node_id=node_id,
                depth=int(self.depth[node_id]),
                size=int(self.leaf_size[node_id]),
            )
        return InternalNode(
            node_id=node_id,
            depth=int(self.depth[node_id]),
            feature=int(self.feature[node_id]),
            threshold=float(self.threshold[node_id]),
            left=int(self.left[node_id]),
            right=int(self.right[node_id]),
        )

    def nodes(self) -> Iterator[InternalNode | ExternalNode]:
        for node_id in range(self.n_nodes):
            yield self.node(node_id)

    def _check_dimension(self, n_features: int) -> None:
        if n_features != self.n_features:
            raise DimensionMismatchError(self.n_features, n_features)

    def path_length(self, x: Sequence[float] | npt.NDArray[np.floating[Any]]) -> float:
        """
        Args:
            x: One feature vector of length n_features.
        Returns:
            Edges traversed from the root to the leaf reached by x, plus c(n)
            for that leaf's size n.
        """
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 1:
            raise DimensionMismatchError(self.n_features, x.size)
        self._check_dimension(x.shape[0])

        node_id = 0
        while not self.is_leaf[node_id]:
            if x[self.feature[node_id]] < self.threshold[node_id]:
                node_id = self.left[node_id]
            else:
                node_id = self.right[node_id]
        return float(self._leaf_path_lengths[node_id])

    def apply(self, Xs: npt.NDArray[np.floating[Any]]) -> npt.NDArray[np.int_]:
        """
        Args:
            Xs: Data samples of shape (n_samples, n_features).
        Returns:
            Id of the leaf each sample lands in, shape (n_samples,).
        """
        Xs = np.asarray(Xs, dtype=np.float64)
        if Xs.ndim != 2:
            raise DimensionMismatchError(self.n_features, Xs.shape[-1] if Xs.ndim else 0)
        self._check_dimension(Xs.shape[1])

        node_ids = np.zeros(Xs.shape[0], dtype=np.intp)
        active = np.flatnonzero(~self.is_leaf[node_ids])
        while active.size:
            current = node_ids[active]
            go_lower = Xs[active, self.feature[current]] < self.threshold[current]
            node_ids[active] = np.where(go_lower, self.left[current], self.right[current])
            active = active[~self.is_leaf[node_ids[active]]]
        return node_ids

    def get_path_lengths_batch(self, Xs: npt.NDArray[np.floating[Any]]) -> npt.NDArray[np.floating[Any]]:
        """
        Args:
            Xs: Data samples of shape (n_samples, n_features).
        Returns:
            Path lengths for each sample of shape (n_samples,).
        """
        return self._leaf_path_lengths[self.apply(Xs)]

    def plot_partition_space_2D(
        self,
        Xs: npt.NDArray[np.floating[Any]] | None = None,
        ax: plt.Axes | None = None,
    ) -> plt.Axes:
        """
        Visualize the 2D space partitioning created by this tree.
        Only works for 2D data.
        Args:
            Xs: Optional points to scatter over the partition.
            ax: Axes to draw on. A new figure is created when omitted.
        Returns:
            The Axes that was drawn on.
        """
        if self.n_features != 2:
            raise DimensionMismatchError(2, self.n_features)

        PADDING = 1.0
        if Xs is not None:
            Xs = np.asarray(Xs, dtype=np.float64)
            self._check_dimension(Xs.shape[1])
            mins = Xs.min(axis=0)
            maxs = Xs.max(axis=0)
        else:
            mins = np.zeros(2)
            maxs = np.zeros(2)
            for idx_feature in range(2):
                splits = self.threshold[self.feature == idx_feature]
                if splits.size:
                    mins[idx_feature] = splits.min()
                    maxs[idx_feature] = splits.max()
        feature_limits = [[float(mins[i]) - PADDING, float(maxs[i]) + PADDING] for i in range(2)]

        if ax is None:
            _, ax = plt.subplots()

        ax.set_title("Space Partition Isolation Tree")
        ax.set_xlabel("X")
        ax.set_ylabel("Y")

        (x0, x1), (y0, y1) = feature_limits
        ax.plot([x0, x1], [y0, y0], c="gray")
        ax.plot([x0, x1], [y1, y1], c="gray")
        ax.plot([x0, x0], [y0, y1], c="gray")
        ax.plot([x1, x1], [y0, y1], c="gray")

        self._plot_node_2D(ax, 0, feature_limits)

        if Xs is not None:
            ax.scatter(Xs[:, 0], Xs[:, 1], c="lightgray", s=5)
        return ax

    def _plot_node_2D(self, ax: plt.Axes, node_id: int, feature_limits: list[list[float]]) -> None:
        if self.is_leaf[node_id]:
            return

        idx_feature = int(self.feature[node_id])
        split_threshold = float(self.threshold[node_id])
        if idx_feature == 0:
            ax.plot([split_threshold, split_threshold],
                    [feature_limits[1][0], feature_limits[1][1]], c="gray")
        else:
            ax.plot([feature_limits[0][0], feature_limits[0][1]],
                    [split_threshold, split_threshold], c="gray")

        feature_limits_lower = deepcopy(feature_limits)
        feature_limits_lower[idx_feature][1] = split_threshold

        feature_limits_upper = deepcopy(feature_limits)
        feature_limits_upper[idx_feature][0] = split_threshold

        self._plot_node_2D(ax, int(self.left[node_id]), feature_limits_lower)
        self._plot_node_2D(ax, int(self.right[node_id]), feature_limits_upper)


def build_tree(
    Xs: npt.NDArray[np.floating[Any]],
    sample: Sample,
    rng: np.random.RandomState,
) -> IsolationTree:
    """
    Build one isolation tree from the rows and features of a Sample.
    Args:
        Xs: Full training data of shape (n_samples, n_features).
        sample: Rows and features drawn for this tree.
        rng: Random state owned by this tree.
    Returns:
        The built tree; its depth never exceeds ceil(log2(sample.size)).
    """
    MAX_DEPTH = max_depth_for(sample.size)
    builder = _TreeBuilder(sample.feature_indices, MAX_DEPTH, rng)
    builder.partition_space(Xs[sample.row_indices], depth=0)

    return IsolationTree(
        feature=builder.feature,
        threshold=builder.threshold,
        left=builder.left,
        right=builder.right,
        leaf_size=builder.leaf_size,
        depth=builder.depth,
        max_depth=MAX_DEPTH,
        n_features=Xs.shape[1],
    )
