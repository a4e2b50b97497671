"""
Expected utility of each dose.

Toxicity and efficacy are treated as conditionally independent given the
immune response, so

    U(d) = (1 - pI) * sum_{e,t} w[e,t,0] Pe(e|I=0) Pt(t|I=0)
         +      pI  * sum_{e,t} w[e,t,1] Pe(e|I=1) Pt(t|I=1)
"""

from dataclasses import dataclass
import numpy as np

from .config import UtilityTable
from .posterior import PosteriorState


def expected_utilities(p_immune: np.ndarray, p_toxicity: np.ndarray,
                       p_efficacy: np.ndarray, utility_table: UtilityTable) -> np.ndarray:
    """
    Expected utility for every dose.

    Parameters
    ----------
    p_immune : np.ndarray
        Immune response probability per dose, shape (J,)
    p_toxicity : np.ndarray
        Toxicity probability given immune group, shape (J, 2)
    p_efficacy : np.ndarray
        Efficacy probability given immune group, shape (J, 2)
    utility_table : UtilityTable
        Utilities indexed [e, t, i]

    Returns
    -------
    np.ndarray
        Utilities, shape (J,)
    """
    p_immune = np.asarray(p_immune, dtype=float)
    p_toxicity = np.asarray(p_toxicity, dtype=float)
    p_efficacy = np.asarray(p_efficacy, dtype=float)

    # (J, 2 outcomes, 2 groups)
    pe = np.stack([1 - p_efficacy, p_efficacy], axis=1)
    pt = np.stack([1 - p_toxicity, p_toxicity], axis=1)
    by_group = np.einsum('eti,jei,jti->ji', utility_table.values, pe, pt)
    return (1 - p_immune) * by_group[:, 0] + p_immune * by_group[:, 1]


def dose_utilities(posterior: PosteriorState, utility_table: UtilityTable) -> np.ndarray:
    """Expected utility of every dose from the adjusted posterior means."""
    return expected_utilities(
        posterior.immune.adjusted_mean,
        posterior.toxicity.adjusted_mean,
        posterior.efficacy.adjusted_mean,
        utility_table,
    )


def expected_utility(dose: int, posterior: PosteriorState,
                     utility_table: UtilityTable) -> float:
    """Expected utility of a single dose (1-based)."""
    return float(dose_utilities(posterior, utility_table)[dose - 1])


@dataclass
class UtilityBreakdown:
    """Intermediate terms of the utility calculation for one dose."""
    dose: int
    pi_I: float
    pi_T_given_I0: float
    pi_T_given_I1: float
    pi_E_given_I0: float
    pi_E_given_I1: float
    utility_I0: float
    utility_I1: float
    total_utility: float

    @property
    def p_T_given_I0(self) -> np.ndarray:
        return np.array([1 - self.pi_T_given_I0, self.pi_T_given_I0])

    @property
    def p_T_given_I1(self) -> np.ndarray:
        return np.array([1 - self.pi_T_given_I1, self.pi_T_given_I1])

    @property
    def p_E_given_I0(self) -> np.ndarray:
        return np.array([1 - self.pi_E_given_I0, self.pi_E_given_I0])

    @property
    def p_E_given_I1(self) -> np.ndarray:
        return np.array([1 - self.pi_E_given_I1, self.pi_E_given_I1])


def expected_utility_detailed(dose: int, posterior: PosteriorState,
                              utility_table: UtilityTable) -> UtilityBreakdown:
    """
    Expected utility of one dose with every intermediate term.

    Parameters
    ----------
    dose : int
        Dose level (1-based)
    posterior : PosteriorState
        Current posterior
    utility_table : UtilityTable
        Outcome utilities

    Returns
    -------
    UtilityBreakdown
    """
    j = dose - 1
    pi_I = float(posterior.immune.adjusted_mean[j])
    tox = posterior.toxicity.adjusted_mean[j]
    eff = posterior.efficacy.adjusted_mean[j]

    group_utilities = []
    for g in (0, 1):
        pe = np.array([1 - eff[g], eff[g]])
        pt = np.array([1 - tox[g], tox[g]])
        group_utilities.append(float(np.sum(utility_table.stratum(g) * np.outer(pe, pt))))

    total = (1 - pi_I) * group_utilities[0] + pi_I * group_utilities[1]
    return UtilityBreakdown(
        dose=dose,
        pi_I=pi_I,
        pi_T_given_I0=float(tox[0]),
        pi_T_given_I1=float(tox[1]),
        pi_E_given_I0=float(eff[0]),
        pi_E_given_I1=float(eff[1]),
        utility_I0=group_utilities[0],
        utility_I1=group_utilities[1],
        total_utility=total,
    )
