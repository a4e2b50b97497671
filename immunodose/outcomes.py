"""
Patient-level outcome generation.

Each patient at dose d first has an immune response drawn from
Bernoulli(p_I[d]). Within the resulting immune stratum, toxicity and
efficacy are drawn jointly from the four-cell distribution of a Gumbel
copula with the stratum's marginals and dependence parameter.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union
import warnings

import numpy as np
import pandas as pd

from .config import ScenarioParameters
from .exceptions import InvalidConfigurationError
from .utils import check_probabilities


OUTCOME_COLUMNS = ['patient', 'stage', 'dose', 'immune', 'toxicity', 'efficacy']

# Tolerance below which a negative copula cell is treated as rounding error
_CELL_TOLERANCE = 1e-12


def gumbel_cell_probabilities(p_tox: float, p_eff: float, rho: float) -> np.ndarray:
    """
    Joint (toxicity, efficacy) cell probabilities of a Gumbel copula.

    Parameters
    ----------
    p_tox : float
        Marginal toxicity probability
    p_eff : float
        Marginal efficacy probability
    rho : float
        Copula strength; 0 gives independence

    Returns
    -------
    np.ndarray
        Probabilities of the cells (T, E) = (0, 0), (0, 1), (1, 0), (1, 1)
    """
    t = float(check_probabilities(p_tox, 'p_tox'))
    e = float(check_probabilities(p_eff, 'p_eff'))
    k = t * e * (1 - t) * (1 - e) * (np.exp(rho) - 1) / (np.exp(rho) + 1)

    cells = np.array([
        (1 - t) * (1 - e) + k,
        (1 - t) * e - k,
        t * (1 - e) - k,
        t * e + k,
    ])

    if np.any(cells < -_CELL_TOLERANCE):
        warnings.warn(f"Gumbel copula with rho={rho} gives negative cell probabilities "
                      f"for p_tox={t}, p_eff={e}; clamping to zero")
    cells = np.clip(cells, 0.0, None)
    return cells / cells.sum()


def cell_probability_tables(scenario: ScenarioParameters) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cell probabilities for every dose and immune stratum.

    Returns
    -------
    tuple
        (table_I0, table_I1), each of shape (J, 4)
    """
    tables = []
    for stratum, rho in ((0, scenario.rho0), (1, scenario.rho1)):
        tables.append(np.array([
            gumbel_cell_probabilities(scenario.p_toxicity[j, stratum],
                                      scenario.p_efficacy[j, stratum], rho)
            for j in range(scenario.n_doses)
        ]))
    return tables[0], tables[1]


@dataclass
class SamplerDebugInfo:
    """
    Intermediate quantities of one sampling call.

    Attributes
    ----------
    cells_I0 : np.ndarray
        Cell probabilities (J, 4) in the no-immune-response stratum
    cells_I1 : np.ndarray
        Cell probabilities (J, 4) in the immune-response stratum
    n_per_dose : np.ndarray
        Patients drawn at each dose
    seed : int, optional
        Seed used for the draw
    """
    cells_I0: np.ndarray
    cells_I1: np.ndarray
    n_per_dose: np.ndarray
    seed: Optional[int]


class OutcomeSampler:
    """
    Draw (immune, toxicity, efficacy) outcomes for a cohort.

    Parameters
    ----------
    scenario : ScenarioParameters
        True outcome-generating probabilities
    """

    def __init__(self, scenario: ScenarioParameters):
        self.scenario = scenario
        self.cells_I0, self.cells_I1 = cell_probability_tables(scenario)

    @property
    def n_doses(self) -> int:
        return self.scenario.n_doses

    def sample(self, n_per_dose: Sequence[int],
               rng: Union[np.random.Generator, int, None] = None,
               stage: int = 1,
               first_patient: int = 1,
               return_debug: bool = False):
        """
        Simulate outcomes for a cohort.

        Patients are ordered by dose, then by draw order within dose.

        Parameters
        ----------
        n_per_dose : sequence of int
            Number of patients at each dose (length J)
        rng : np.random.Generator or int, optional
            Random generator or seed. With None, fresh entropy is used
        stage : int
            Stage number stored with each outcome
        first_patient : int
            Identifier of the first patient in this cohort
        return_debug : bool
            Also return a SamplerDebugInfo

        Returns
        -------
        pd.DataFrame or (pd.DataFrame, SamplerDebugInfo)
            Columns: patient, stage, dose, immune, toxicity, efficacy
        """
        counts = np.asarray(n_per_dose)
        if counts.shape != (self.n_doses,):
            raise InvalidConfigurationError(
                f"n_per_dose must have length {self.n_doses}, got {counts.shape}"
            )
        if np.any(counts < 0) or not np.all(np.equal(np.mod(counts, 1), 0)):
            raise InvalidConfigurationError("n_per_dose must be non-negative integers")
        counts = counts.astype(int)

        seed = rng if isinstance(rng, (int, np.integer)) else None
        if not isinstance(rng, np.random.Generator):
            rng = np.random.default_rng(rng)

        doses = np.repeat(np.arange(self.n_doses), counts)
        n_total = len(doses)

        immune = (rng.random(n_total) < self.scenario.p_immune[doses]).astype(int)

        cells = np.where(immune[:, None] == 1, self.cells_I1[doses], self.cells_I0[doses])
        cumulative = np.cumsum(cells, axis=1)
        u = rng.random(n_total)
        cell = np.minimum((u[:, None] >= cumulative).sum(axis=1), 3)

        data = pd.DataFrame({
            'patient': np.arange(first_patient, first_patient + n_total),
            'stage': np.full(n_total, stage, dtype=int),
            'dose': doses + 1,
            'immune': immune,
            'toxicity': cell // 2,
            'efficacy': cell % 2,
        }, columns=OUTCOME_COLUMNS)

        if return_debug:
            debug = SamplerDebugInfo(
                cells_I0=self.cells_I0.copy(),
                cells_I1=self.cells_I1.copy(),
                n_per_dose=counts.copy(),
                seed=seed,
            )
            return data, debug
        return data


def empty_outcomes() -> pd.DataFrame:
    """An outcome table with no patients."""
    return pd.DataFrame({col: pd.Series(dtype=int) for col in OUTCOME_COLUMNS})


@dataclass
class FlatScenarioCheck:
    """
    Empirical check of outcome data against flat target rates.

    Attributes
    ----------
    success : bool
        True if every observed rate is within tolerance of its target
    rates : pd.DataFrame
        Observed immune, efficacy and toxicity rates, one row per dose
    details : list of str
        One message per rate outside tolerance
    """
    success: bool
    rates: pd.DataFrame
    details: List[str] = field(default_factory=list)


def validate_flat_scenario(data: pd.DataFrame, phi_I: float, phi_E: float,
                           toxicity: float, tolerance: float = 0.1) -> FlatScenarioCheck:
    """
    Check that simulated outcomes look like a flat scenario.

    Every dose should show an immune response rate near ``phi_I``, a
    marginal efficacy rate near ``phi_E`` and a toxicity rate near
    ``toxicity``. Useful after ``ScenarioParameters.flat_from_marginal``,
    whose clamping can move the marginal efficacy off target.

    Parameters
    ----------
    data : pd.DataFrame
        Outcomes as returned by ``OutcomeSampler.sample``
    phi_I, phi_E, toxicity : float
        Target rates
    tolerance : float
        Largest accepted absolute difference

    Returns
    -------
    FlatScenarioCheck
    """
    if data.empty:
        raise InvalidConfigurationError("Cannot validate a scenario without outcomes")
    targets = {'immune': phi_I, 'efficacy': phi_E, 'toxicity': toxicity}
    rates = data.groupby('dose')[list(targets)].mean()

    details = []
    for dose, row in rates.iterrows():
        for endpoint, target in targets.items():
            diff = abs(row[endpoint] - target)
            if diff > tolerance:
                details.append(f"Dose {dose} {endpoint} rate {row[endpoint]:.3f} differs "
                               f"from expected {target} by {diff:.3f}")
    return FlatScenarioCheck(success=not details, rates=rates.reset_index(), details=details)
