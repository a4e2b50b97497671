"""
Utility functions used throughout the immunodose package.
"""

from typing import Sequence, Tuple
import numpy as np
from scipy.stats import binomtest

from .exceptions import InvalidConfigurationError


def check_probabilities(values, name: str) -> np.ndarray:
    """
    Validate that every entry of an array lies in [0, 1].

    Parameters
    ----------
    values : array_like
        Probabilities to check
    name : str
        Name used in the error message

    Returns
    -------
    np.ndarray
        The values as a float array
    """
    arr = np.asarray(values, dtype=float)
    if not np.all(np.isfinite(arr)):
        raise InvalidConfigurationError(f"{name} contains non-finite values")
    if np.any(arr < 0) or np.any(arr > 1):
        raise InvalidConfigurationError(f"{name} must lie in [0, 1]")
    return arr


def binomial_confidence_interval(successes: int, n: int,
                                 confidence_level: float = 0.95) -> Tuple[float, float]:
    """
    Exact (Clopper-Pearson) confidence interval for a binomial proportion.

    Parameters
    ----------
    successes : int
        Number of successes
    n : int
        Number of trials
    confidence_level : float
        Coverage of the interval

    Returns
    -------
    tuple
        (lower, upper)
    """
    if n < 1:
        raise ValueError("n must be positive")
    ci = binomtest(int(successes), int(n)).proportion_ci(
        confidence_level=confidence_level, method='exact'
    )
    return float(ci.low), float(ci.high)


def column_quantiles(samples: np.ndarray,
                     probs: Sequence[float] = (0.025, 0.975)) -> np.ndarray:
    """
    Quantiles of each column of a (n_samples, ...) array.

    Returns
    -------
    np.ndarray
        Array with shape (len(probs), ...)
    """
    return np.quantile(samples, probs, axis=0)


def uniform_probabilities(n: int) -> np.ndarray:
    """Equal allocation probabilities over n doses."""
    return np.full(n, 1.0 / n)
