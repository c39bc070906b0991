"""Sequential (n_jobs=1) and parallel (n_jobs=-1) runs must agree for the same random_seed."""

import numpy as np

from anomaly_detection.isolation import TrainingParams, train


def test_isolation_forest_reproducibility(make_data) -> None:
    X_train, _ = make_data(n_samples=1000, random_state=42)
    X_test, _ = make_data(n_samples=200, random_state=43)
    params = TrainingParams(num_estimators=50, max_samples=256, contamination=0.1, random_seed=12345)

    if_seq = train(X_train, params, n_jobs=1)
    if_par = train(X_train, params, n_jobs=-1)

    for tree_seq, tree_par in zip(if_seq.trees, if_par.trees):
        np.testing.assert_array_equal(tree_seq.feature, tree_par.feature)
        np.testing.assert_array_equal(tree_seq.threshold, tree_par.threshold)

    assert if_seq.threshold == if_par.threshold
    np.testing.assert_array_equal(if_seq.scores(X_test), if_par.scores(X_test))
    np.testing.assert_array_equal(if_seq.predict(X_test), if_par.predict(X_test))


def test_parallel_scoring_matches_sequential(small_forest, cluster_data) -> None:
    np.testing.assert_array_equal(
        small_forest.scores(cluster_data, n_jobs=1),
        small_forest.scores(cluster_data, n_jobs=2),
    )


def test_parallel_trees_are_read_only(cluster_data) -> None:
    forest = train(cluster_data, TrainingParams(num_estimators=4, max_samples=32), n_jobs=2)
    assert not forest.trees[0].threshold.flags.writeable
