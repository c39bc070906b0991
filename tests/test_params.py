import pytest

from anomaly_detection.errors import InvalidParameterError
from anomaly_detection.isolation import TrainingParams, resolve_max_features, resolve_max_samples


def test_defaults() -> None:
    params = TrainingParams()
    assert params.num_estimators == 100
    assert params.max_samples == 256
    assert params.contamination == 0.0
    assert params.max_features == 1.0
    assert params.bootstrap is False
    assert params.random_seed == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"num_estimators": 0},
        {"num_estimators": 2.5},
        {"max_samples": 0},
        {"max_samples": -3},
        {"contamination": 1.0},
        {"contamination": -0.1},
        {"max_features": 0.0},
        {"bootstrap": "yes"},
        {"random_seed": 1.5},
        {"random_seed": True},
    ],
)
def test_invalid_params_are_rejected(kwargs) -> None:
    with pytest.raises(InvalidParameterError):
        TrainingParams(**kwargs)


def test_max_samples_fraction() -> None:
    assert resolve_max_samples(0.5, 500) == 250
    assert resolve_max_samples(1.0, 37) == 37


def test_max_samples_absolute_count() -> None:
    assert resolve_max_samples(300, 1000) == 300
    assert resolve_max_samples(300, 120) == 120
    assert resolve_max_samples(300, 120, bootstrap=True) == 300


def test_max_samples_below_two_is_rejected() -> None:
    with pytest.raises(InvalidParameterError):
        resolve_max_samples(0.01, 100)
    with pytest.raises(InvalidParameterError):
        resolve_max_samples(256, 1)


def test_max_features_resolution() -> None:
    assert resolve_max_features(1.0, 7) == 7
    assert resolve_max_features(0.5, 6) == 3
    assert resolve_max_features(4, 6) == 4


def test_max_features_out_of_range() -> None:
    with pytest.raises(InvalidParameterError):
        resolve_max_features(0.1, 5)
    with pytest.raises(InvalidParameterError):
        resolve_max_features(8, 5)
