"""
Early termination and PoC-gated final dose selection.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence
import logging
import numpy as np

from .config import TrialConfiguration
from .posterior import PosteriorState
from .utility import dose_utilities

logger = logging.getLogger(__name__)

EMPTY_ADMISSIBLE_SET = "empty admissible set"
NO_ADMISSIBLE_DOSES = "no admissible doses"
POC_MET = "PoC threshold met"
POC_NOT_MET = "PoC threshold not met"


def check_early_termination(admissible: Sequence[int],
                            config: TrialConfiguration) -> bool:
    """True when early termination is enabled and no dose is admissible."""
    return bool(config.enable_early_termination and len(admissible) == 0)


def combined_efficacy_samples(dose: int, posterior: PosteriorState) -> np.ndarray:
    """
    Draws of the immune-weighted efficacy of one dose.

    Pi(d) = pI(d) * Pe(d | I=1) + (1 - pI(d)) * Pe(d | I=0), evaluated per
    draw with the monotone immune response draws and the unadjusted
    conditional efficacy draws.

    Parameters
    ----------
    dose : int
        Dose level (1-based)
    posterior : PosteriorState
        Current posterior

    Returns
    -------
    np.ndarray
        Shape (n_samples,)
    """
    j = dose - 1
    p_immune = posterior.immune.adjusted_samples[:, j]
    eff = posterior.efficacy.samples[:, j, :]
    return p_immune * eff[:, 1] + (1 - p_immune) * eff[:, 0]


@dataclass
class PoCResult:
    """
    Probability of correct selection.

    Attributes
    ----------
    best_dose : int
        Admissible dose (1-based) with the highest utility
    best_utility : float
        Its expected utility
    pairwise : dict
        Competitor dose -> Pr(Pi(competitor) < delta * Pi(best))
    poc : float
        Minimum over competitors, 1.0 with no competitor
    """
    best_dose: int
    best_utility: float
    pairwise: Dict[int, float] = field(default_factory=dict)
    poc: float = 1.0


def calculate_poc(admissible: Sequence[int], posterior: PosteriorState,
                  config: TrialConfiguration,
                  utilities: Optional[np.ndarray] = None) -> PoCResult:
    """
    Probability that the best-utility admissible dose is credibly better
    than every other admissible dose.

    Parameters
    ----------
    admissible : sequence of int
        Non-empty admissible set (1-based)
    posterior : PosteriorState
        Final posterior
    config : TrialConfiguration
        Design holding delta_poc and the utility table
    utilities : np.ndarray, optional
        Precomputed utilities of every dose

    Returns
    -------
    PoCResult
    """
    if len(admissible) == 0:
        raise ValueError("PoC requires at least one admissible dose")
    if utilities is None:
        utilities = dose_utilities(posterior, config.utility_table)

    admissible = [int(d) for d in admissible]
    # first maximum wins, so ties go to the lowest dose
    best = admissible[int(np.argmax([utilities[d - 1] for d in admissible]))]
    best_pi = combined_efficacy_samples(best, posterior)

    pairwise = {}
    for dose in admissible:
        if dose == best:
            continue
        pi = combined_efficacy_samples(dose, posterior)
        pairwise[dose] = float(np.mean(pi < config.delta_poc * best_pi))

    poc = min(pairwise.values()) if pairwise else 1.0
    return PoCResult(best_dose=best, best_utility=float(utilities[best - 1]),
                     pairwise=pairwise, poc=poc)


@dataclass
class FinalSelection:
    """
    Outcome of the final PoC gate.

    Attributes
    ----------
    dose : int, optional
        Selected dose (1-based), None when nothing is selected
    utility : float, optional
        Utility of the selected dose
    poc : PoCResult, optional
        PoC calculation; None when the admissible set was empty
    reason : str
        Why the selection was made or withheld
    """
    dose: Optional[int]
    utility: Optional[float]
    poc: Optional[PoCResult]
    reason: str

    @property
    def validated(self) -> bool:
        return self.dose is not None


def select_final_dose(admissible: Sequence[int], posterior: PosteriorState,
                      config: TrialConfiguration) -> FinalSelection:
    """
    Apply the PoC gate after the last stage.

    The best dose is selected only when PoC >= c_poc.
    """
    if len(admissible) == 0:
        logger.debug("Final selection: no admissible doses")
        return FinalSelection(dose=None, utility=None, poc=None, reason=NO_ADMISSIBLE_DOSES)

    result = calculate_poc(admissible, posterior, config)
    logger.debug("Final selection: best dose %d, PoC %.3f (cutoff %.3f)",
                 result.best_dose, result.poc, config.c_poc)
    if result.poc < config.c_poc:
        return FinalSelection(dose=None, utility=None, poc=result, reason=POC_NOT_MET)
    return FinalSelection(dose=result.best_dose, utility=result.best_utility,
                          poc=result, reason=POC_MET)
