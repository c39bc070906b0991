"""Train, score, persist and plot an Isolation Forest using the packaged config."""

import os
import sys
import tempfile

import matplotlib.pyplot as plt
import numpy as np

from anomaly_detection.config import load_config, params_from_config, runtime_from_config
from anomaly_detection.isolation import load, save, score, train
from anomaly_detection.utils import configure_logging


def main():
    config = load_config()
    runtime = runtime_from_config(config)
    configure_logging(runtime["log_level"])

    rng = np.random.default_rng(42)
    X_train = np.vstack([rng.normal(size=(999, 2)), [[50.0, 50.0]]])
    X_test = rng.normal(size=(20, 2))

    forest = train(
        X_train,
        params_from_config(config),
        n_jobs=runtime["n_jobs"],
        quantile_method=runtime["quantile_method"],
    )
    scores, labels = score(forest, X_train, n_jobs=runtime["n_jobs"])
    print(f"  Outlier score: {scores[-1]:.4f}")
    print(f"  99th percentile of cluster scores: {np.percentile(scores[:-1], 99):.4f}")
    print(f"  Points labeled outlier: {int(labels.sum())}")

    with tempfile.TemporaryDirectory() as tmp_dir:
        path = os.path.join(tmp_dir, "forest.npz")
        save(forest, path)
        restored = load(path)
    same = np.array_equal(forest.scores(X_test), restored.scores(X_test))
    print(f"  Reloaded model scores identically: {same}")

    forest.trees[0].plot_partition_space_2D(X_train[:-1])
    plt.show()
    return 0 if same else 1


if __name__ == "__main__":
    sys.exit(main())
