"""
Adaptive randomization and cohort apportionment.
"""

from typing import Sequence
import numpy as np

from .utils import uniform_probabilities


def initial_allocation(n_doses: int) -> np.ndarray:
    """Stage 1 allocation: uniform over all doses."""
    return uniform_probabilities(n_doses)


def adaptive_randomization(admissible: Sequence[int], utilities: np.ndarray,
                           n_doses: int) -> np.ndarray:
    """
    Allocation probabilities proportional to utility over the admissible set.

    Parameters
    ----------
    admissible : sequence of int
        Admissible dose levels (1-based)
    utilities : np.ndarray
        Expected utility of every dose, shape (J,)
    n_doses : int
        Number of doses J

    Returns
    -------
    np.ndarray
        Probabilities of shape (J,). Zero outside the admissible set and
        at doses with negative utility. Uniform over the admissible set when
        no dose there has positive utility; all zero if it is empty.
    """
    probs = np.zeros(n_doses)
    if len(admissible) == 0:
        return probs

    idx = np.asarray(admissible, dtype=int) - 1
    scores = np.clip(np.asarray(utilities, dtype=float)[idx], 0.0, None)
    total = scores.sum()
    if total > 0:
        probs[idx] = scores / total
    else:
        probs[idx] = 1.0 / len(idx)
    return probs


def split_evenly(cohort_size: int, n_doses: int) -> np.ndarray:
    """Split a cohort over all doses; the remainder goes to the lowest doses."""
    counts = np.full(n_doses, cohort_size // n_doses, dtype=int)
    counts[:cohort_size % n_doses] += 1
    return counts


def apportion_cohort(probs: np.ndarray, cohort_size: int) -> np.ndarray:
    """
    Turn allocation probabilities into patient counts (largest remainder).

    Each dose first receives the integer part of ``probs * cohort_size``;
    the patients left over go one at a time to the doses with the largest
    fractional parts, lower dose first on ties. Doses with probability
    zero never receive patients.

    Parameters
    ----------
    probs : np.ndarray
        Allocation probabilities summing to 1
    cohort_size : int
        Patients to enrol

    Returns
    -------
    np.ndarray
        Integer counts summing to ``cohort_size``
    """
    probs = np.asarray(probs, dtype=float)
    total = probs.sum()
    if total <= 0:
        raise ValueError("allocation probabilities must have a positive sum")

    quotas = probs / total * cohort_size
    counts = np.floor(quotas).astype(int)
    remainder = cohort_size - counts.sum()
    if remainder > 0:
        fractions = np.where(probs > 0, quotas - counts, -np.inf)
        order = np.argsort(-fractions, kind='stable')
        counts[order[:remainder]] += 1
    return counts
