"""
This module contains the IsolationForest class that holds an ensemble
of isolation trees, and the train and score operations that build and
evaluate it.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

import numpy as np
import numpy.typing as npt
from joblib import Parallel, delayed

from ..errors import DimensionMismatchError, EmptyDatasetError, InvalidParameterError
from ..utils import logger
from .params import TrainingParams, resolve_max_features, resolve_max_samples
from .sampler import draw_sample
from .threshold import select_threshold
from .tree import IsolationTree, average_path_length, build_tree

MAX_SEED = 2 ** 32


def derive_tree_seeds(random_seed: int, num_estimators: int) -> npt.NDArray[np.int_]:
    """
    Args:
        random_seed: Seed of the whole forest.
        num_estimators: Number of trees.
    Returns:
        One integer seed per tree; seed t depends only on random_seed and t.
    """
    rng = np.random.RandomState(random_seed % MAX_SEED)
    MAX_INT = np.iinfo(np.int32).max
    return rng.randint(MAX_INT, size=num_estimators)


def _fit_single_tree(
    seed: int,
    Xs: npt.NDArray[np.floating[Any]],
    subsample_size: int,
    n_selected_features: int,
    bootstrap: bool,
) -> IsolationTree:
    """
    Worker function to fit an isolation tree with a given seed.
    This function is designed to be called in parallel using joblib.
    The tree owns its RandomState, so no random state is shared between workers.

    Args:
        seed: Random seed for this tree (integer).
        Xs: Training data of shape (n_samples, n_features).
        subsample_size: Number of rows to draw for this tree.
        n_selected_features: Number of features this tree may split on.
        bootstrap: Draw rows with replacement.
    Returns:
        Fitted IsolationTree instance.
    """
    rng = np.random.RandomState(seed)
    sample = draw_sample(
        n_rows=Xs.shape[0],
        n_features=Xs.shape[1],
        subsample_size=subsample_size,
        n_selected_features=n_selected_features,
        seed=rng,
        bootstrap=bootstrap,
    )
    return build_tree(Xs, sample, rng)


def _score_single_tree(
    tree: IsolationTree,
    Xs: npt.NDArray[np.floating[Any]],
) -> npt.NDArray[np.floating[Any]]:
    """
    Worker function to score samples on a single tree.
    This function is designed to be called in parallel using joblib.
    Args:
        tree: Fitted IsolationTree instance.
        Xs: Data samples of shape (n_samples, n_features).
    Returns:
        Path lengths for each sample of shape (n_samples,).
    """
    return tree.get_path_lengths_batch(Xs)


def _check_n_jobs(n_jobs: Any) -> None:
    if not isinstance(n_jobs, (int, np.integer)) or isinstance(n_jobs, bool) or n_jobs == 0:
        raise InvalidParameterError(f"n_jobs must be a non-zero integer, got {n_jobs!r}")


def _mean_path_lengths(
    trees: Sequence[IsolationTree],
    Xs: npt.NDArray[np.floating[Any]],
    n_jobs: int,
) -> npt.NDArray[np.floating[Any]]:
    _check_n_jobs(n_jobs)
    if n_jobs == 1:
        # Sequential execution
        depth_matrix = np.zeros((Xs.shape[0], len(trees)))
        for tree_idx, tree in enumerate(trees):
            depth_matrix[:, tree_idx] = _score_single_tree(tree, Xs)
    else:
        # Parallel execution using joblib
        depth_results = Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(_score_single_tree)(tree, Xs) for tree in trees
        )
        depth_matrix = np.column_stack(list(depth_results))

    # Columns are in tree order whatever n_jobs is, so the sum is reproducible.
    return depth_matrix.sum(axis=1) / len(trees)


def _as_training_matrix(Xs: Any) -> npt.NDArray[np.floating[Any]]:
    try:
        Xs = np.asarray(Xs, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidParameterError(f"training data is not a numeric matrix: {exc}") from exc

    if Xs.ndim == 0 or Xs.shape[0] == 0:
        raise EmptyDatasetError("training set has zero rows")
    if Xs.ndim != 2:
        raise InvalidParameterError(f"training data must be 2-D, got {Xs.ndim} dimensions")
    if Xs.shape[1] == 0:
        raise InvalidParameterError("training data has zero features")
    if not np.all(np.isfinite(Xs)):
        raise InvalidParameterError("training data contains NaN or infinite values")
    return Xs


class IsolationForest:
    """
    Trained ensemble of isolation trees. Read-only: scoring never mutates it.

    Attributes:
        trees: Fitted trees, in tree-index order.
        params: Hyperparameters the forest was trained with.
        max_samples: Resolved subsample size per tree.
        max_features: Resolved feature count per tree.
        n_features: Dimensionality of the training data.
        threshold: Score at or above which a point is labeled an outlier.
            +inf when contamination is 0, so nothing is labeled.
        expected_path_length: c(max_samples), the score normalisation.
    """

    def __init__(
        self,
        trees: Sequence[IsolationTree],
        params: TrainingParams,
        max_samples: int,
        max_features: int,
        n_features: int,
        threshold: float,
    ) -> None:
        self.trees: tuple[IsolationTree, ...] = tuple(trees)
        self.params = params
        self.max_samples = int(max_samples)
        self.max_features = int(max_features)
        self.n_features = int(n_features)
        self.threshold = float(threshold)
        self.expected_path_length = average_path_length(self.max_samples)

    @property
    def num_estimators(self) -> int:
        return len(self.trees)

    @property
    def contamination(self) -> float:
        return self.params.contamination

    @property
    def bootstrap(self) -> bool:
        return self.params.bootstrap

    @property
    def random_seed(self) -> int:
        return self.params.random_seed

    def _check_matrix(self, Xs: Any) -> npt.NDArray[np.floating[Any]]:
        Xs = np.asarray(Xs, dtype=np.float64)
        if Xs.ndim == 1:
            # a single feature vector
            Xs = Xs.reshape(1, -1)
        if Xs.ndim != 2:
            raise DimensionMismatchError(self.n_features, Xs.shape[-1] if Xs.ndim else 0)
        if Xs.shape[1] != self.n_features:
            raise DimensionMismatchError(self.n_features, Xs.shape[1])
        return Xs

    def path_lengths(
        self, Xs: npt.NDArray[np.floating[Any]], n_jobs: int = 1,
    ) -> npt.NDArray[np.floating[Any]]:
        """
        Args:
            Xs: Data samples of shape (n_samples, n_features).
            n_jobs: Number of parallel jobs (1 sequential, -1 all processors).
        Returns:
            Mean path length E[h(x)] across trees for each sample.
        """
        return _mean_path_lengths(self.trees, self._check_matrix(Xs), n_jobs)

    def scores(
        self, Xs: npt.NDArray[np.floating[Any]], n_jobs: int = 1,
    ) -> npt.NDArray[np.floating[Any]]:
        """
        Anomaly scores are in (0, 1] where higher scores indicate anomalies.
        Based on the formula: 2^(-E[h(x)] / c(max_samples)).
        Args:
            Xs: Data samples of shape (n_samples, n_features).
            n_jobs: Number of parallel jobs (1 sequential, -1 all processors).
        Returns:
            Anomaly scores for each sample of shape (n_samples,).
        """
        mean_depths = self.path_lengths(Xs, n_jobs=n_jobs)
        return 2.0 ** (-mean_depths / self.expected_path_length)

    def predict(self, Xs: npt.NDArray[np.floating[Any]], n_jobs: int = 1) -> npt.NDArray[np.int_]:
        """
        Args:
            Xs: Data samples of shape (n_samples, n_features).
            n_jobs: Number of parallel jobs (1 sequential, -1 all processors).
        Returns:
            Binary labels (0=normal, 1=anomaly) of shape (n_samples,).
        """
        return (self.scores(Xs, n_jobs=n_jobs) >= self.threshold).astype(int)


def train(
    Xs: npt.NDArray[np.floating[Any]],
    params: TrainingParams | None = None,
    n_jobs: int = 1,
    quantile_method: str = "linear",
) -> IsolationForest:
    """
    Creates params.num_estimators isolation trees, each trained on its own
    random subsample of the data, then derives the anomaly threshold from
    the contamination parameter.

    Args:
        Xs: Training data of shape (n_samples, n_features).
        params: Hyperparameters. Defaults to TrainingParams().
        n_jobs: Number of parallel jobs to run for tree building.
            - If 1 (default): sequential execution (no parallelization)
            - If -1: use all available processors
            - If > 1: use specified number of processors
            The same random_seed produces identical forests for every n_jobs.
        quantile_method: Interpolation used by select_threshold.
    Returns:
        The trained IsolationForest.
    """
    _check_n_jobs(n_jobs)
    if params is None:
        params = TrainingParams()
    Xs = _as_training_matrix(Xs)
    n_rows, n_features = Xs.shape

    subsample_size = resolve_max_samples(params.max_samples, n_rows, params.bootstrap)
    n_selected_features = resolve_max_features(params.max_features, n_features)

    logger.info(
        f"Training Isolation Forest (num_estimators={params.num_estimators}, "
        f"rows={n_rows}, features={n_features}, contamination={params.contamination})"
    )
    logger.debug(
        f"Resolved subsample_size={subsample_size}, max_features={n_selected_features}, "
        f"bootstrap={params.bootstrap}, random_seed={params.random_seed}, n_jobs={n_jobs}"
    )

    seeds = derive_tree_seeds(params.random_seed, params.num_estimators)

    # Build trees in parallel or sequentially
    if n_jobs == 1:
        # Sequential execution
        trees = []
        for seed in seeds:
            tree = _fit_single_tree(seed, Xs, subsample_size, n_selected_features, params.bootstrap)
            trees.append(tree)
    else:
        # Parallel execution using joblib
        trees_list = Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(_fit_single_tree)(seed, Xs, subsample_size, n_selected_features, params.bootstrap)
            for seed in seeds
        )
        trees = list(trees_list)

    anomaly_threshold = np.inf
    if params.contamination > 0:
        mean_depths = _mean_path_lengths(trees, Xs, n_jobs)
        Xs_train_anomaly_scores = 2.0 ** (-mean_depths / average_path_length(subsample_size))
        anomaly_threshold = select_threshold(
            Xs_train_anomaly_scores, params.contamination, method=quantile_method,
        )

    logger.info(f"Built {len(trees)} trees; anomaly threshold = {anomaly_threshold:.6f}")

    return IsolationForest(
        trees=trees,
        params=params,
        max_samples=subsample_size,
        max_features=n_selected_features,
        n_features=n_features,
        threshold=anomaly_threshold,
    )


def score(
    forest: IsolationForest,
    Xs: npt.NDArray[np.floating[Any]],
    n_jobs: int = 1,
) -> tuple[npt.NDArray[np.floating[Any]], npt.NDArray[np.bool_]]:
    """
    Args:
        forest: Trained forest.
        Xs: Data samples of shape (n_samples, n_features).
        n_jobs: Number of parallel jobs (1 sequential, -1 all processors).
    Returns:
        Tuple of (anomaly scores, outlier labels), each of shape (n_samples,).
    """
    _check_n_jobs(n_jobs)
    scores_arr = forest.scores(Xs, n_jobs=n_jobs)
    return scores_arr, scores_arr >= forest.threshold


def score_rows(
    forest: IsolationForest,
    rows: Iterable[Sequence[float]],
    on_error: str = "raise",
    n_jobs: int = 1,
) -> tuple[npt.NDArray[np.floating[Any]], npt.NDArray[np.bool_]]:
    """
    Score feature vectors that may not all have the same length.
    Args:
        forest: Trained forest.
        rows: Feature vectors, one per row.
        on_error: "raise" to fail on the first row whose length differs from
            the training dimensionality, "nan" to give such rows a NaN score
            and a False label and score the rest.
        n_jobs: Number of parallel jobs (1 sequential, -1 all processors).
    Returns:
        Tuple of (anomaly scores, outlier labels), one entry per input row.
    """
    if on_error not in ("raise", "nan"):
        raise InvalidParameterError(f"on_error must be 'raise' or 'nan', got {on_error!r}")
    _check_n_jobs(n_jobs)

    vectors = [np.asarray(row, dtype=np.float64) for row in rows]
    valid = np.zeros(len(vectors), dtype=bool)
    for row_idx, vector in enumerate(vectors):
        got = vector.shape[0] if vector.ndim == 1 else vector.size
        if vector.ndim == 1 and got == forest.n_features:
            valid[row_idx] = True
            continue
        if on_error == "raise":
            raise DimensionMismatchError(forest.n_features, got, row=row_idx)
        logger.warning(f"Row {row_idx} has {got} features, expected {forest.n_features}; scored as NaN")

    scores_arr = np.full(len(vectors), np.nan)
    labels = np.zeros(len(vectors), dtype=bool)
    if np.any(valid):
        Xs = np.stack([vector for vector, ok in zip(vectors, valid) if ok])
        scores_arr[valid], labels[valid] = score(forest, Xs, n_jobs=n_jobs)
    return scores_arr, labels
