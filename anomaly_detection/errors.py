"""
Exceptions raised by the anomaly detection package.

Every error derives from AnomalyDetectionError and also from ValueError,
so callers that only catch ValueError keep working.
"""


class AnomalyDetectionError(Exception):
    """Base class for all errors raised by this package."""


class InvalidParameterError(AnomalyDetectionError, ValueError):
    """A hyperparameter or input argument is out of range."""


class DimensionMismatchError(AnomalyDetectionError, ValueError):
    """A feature vector does not have the dimensionality seen at training time."""

    def __init__(self, expected: int, got: int, row: int | None = None) -> None:
        self.expected = expected
        self.got = got
        self.row = row
        where = "" if row is None else f" (row {row})"
        super().__init__(f"expected {expected} features, got {got}{where}")


class EmptyDatasetError(AnomalyDetectionError, ValueError):
    """The training set has no rows."""


class CorruptModelError(AnomalyDetectionError, ValueError):
    """A persisted model is structurally invalid."""
