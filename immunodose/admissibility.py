"""
Admissibility screening of doses at an interim analysis.
"""

from dataclasses import dataclass
from typing import Tuple
import numpy as np
import pandas as pd

from .config import TrialConfiguration
from .posterior import PosteriorState


@dataclass
class AdmissibilityReport:
    """
    Per-dose posterior probabilities behind an admissibility decision.

    Attributes
    ----------
    prob_safe : np.ndarray
        Pr(marginal toxicity < phi_T) per dose
    prob_efficacious : np.ndarray
        Pr(marginal efficacy > phi_E) per dose
    prob_active : np.ndarray
        Pr(adjusted immune response > phi_I) per dose
    safe, efficacious, active : np.ndarray
        Boolean criteria per dose
    """
    prob_safe: np.ndarray
    prob_efficacious: np.ndarray
    prob_active: np.ndarray
    safe: np.ndarray
    efficacious: np.ndarray
    active: np.ndarray

    @property
    def admissible_mask(self) -> np.ndarray:
        return self.safe & self.efficacious & self.active

    @property
    def admissible(self) -> Tuple[int, ...]:
        """Admissible dose levels (1-based), in dose order."""
        return tuple(int(j) + 1 for j in np.flatnonzero(self.admissible_mask))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'dose': np.arange(1, len(self.prob_safe) + 1),
            'prob_safe': self.prob_safe,
            'prob_efficacious': self.prob_efficacious,
            'prob_active': self.prob_active,
            'admissible': self.admissible_mask,
        })


def evaluate_admissibility(posterior: PosteriorState,
                           config: TrialConfiguration) -> AdmissibilityReport:
    """
    Evaluate the safety, efficacy and activity criteria for every dose.

    A dose is admissible when all three hold:

    - safety: Pr(toxicity marginal < phi_T) > c_T
    - efficacy: Pr(efficacy marginal > phi_E) > c_E
    - activity: Pr(adjusted immune response > phi_I) > c_I

    Probabilities are Monte-Carlo fractions over the posterior draws.

    Parameters
    ----------
    posterior : PosteriorState
        Current posterior
    config : TrialConfiguration
        Design holding the thresholds

    Returns
    -------
    AdmissibilityReport
    """
    prob_safe = np.mean(posterior.toxicity_marginal.samples < config.phi_T, axis=0)
    prob_efficacious = np.mean(posterior.efficacy_marginal.samples > config.phi_E, axis=0)
    prob_active = np.mean(posterior.immune.adjusted_samples > config.phi_I, axis=0)

    return AdmissibilityReport(
        prob_safe=prob_safe,
        prob_efficacious=prob_efficacious,
        prob_active=prob_active,
        safe=prob_safe > config.c_T,
        efficacious=prob_efficacious > config.c_E,
        active=prob_active > config.c_I,
    )


def get_admissible_set(posterior: PosteriorState,
                       config: TrialConfiguration) -> Tuple[int, ...]:
    """Admissible dose levels (1-based); possibly empty."""
    return evaluate_admissibility(posterior, config).admissible
