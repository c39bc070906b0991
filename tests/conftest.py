import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from anomaly_detection.isolation import TrainingParams, train


def generate_test_data(n_samples=1000, n_features=5, random_state=42):
    """Gaussian cluster with 10% shifted outliers, shuffled."""
    rng = np.random.default_rng(random_state)

    normal = rng.normal(size=(int(n_samples * 0.9), n_features))
    anomalies = rng.normal(size=(int(n_samples * 0.1), n_features)) * 3 + 5

    X = np.vstack([normal, anomalies])
    y = np.array([0] * len(normal) + [1] * len(anomalies))

    indices = rng.permutation(len(X))
    return X[indices].astype(np.float64), y[indices]


@pytest.fixture
def cluster_data():
    X, _ = generate_test_data(n_samples=400, n_features=3, random_state=7)
    return X


@pytest.fixture
def small_forest(cluster_data):
    params = TrainingParams(num_estimators=15, max_samples=64, contamination=0.1, random_seed=3)
    return train(cluster_data, params)


@pytest.fixture
def make_data():
    return generate_test_data
