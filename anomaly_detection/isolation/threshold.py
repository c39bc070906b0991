"""Score cutoff derivation from an expected contamination rate."""

from __future__ import annotations

from typing import Any

import numpy as np
import numpy.typing as npt

from ..errors import EmptyDatasetError, InvalidParameterError


def select_threshold(
    scores: npt.NDArray[np.floating[Any]],
    contamination: float,
    method: str = "linear",
) -> float:
    """
    Score at the (1 - contamination) quantile of the training scores.
    Args:
        scores: Anomaly scores of the training points.
        contamination: Expected proportion of anomalies, in [0, 1).
        method: Quantile interpolation passed to numpy.quantile. The default
            "linear" is the inclusive interpolation.
    Returns:
        The threshold; points scoring >= it are outliers.
    """
    if not 0.0 <= contamination < 1.0:
        raise InvalidParameterError(f"contamination must be in [0, 1), got {contamination!r}")

    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        raise EmptyDatasetError("cannot select a threshold from zero scores")

    return float(np.quantile(scores, 1.0 - contamination, method=method))
