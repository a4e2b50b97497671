"""
Trial design and outcome-generating scenario configuration.

A trial is described by two objects: a ``TrialConfiguration`` (the
design: doses, stages, cohorts, decision thresholds, utilities) and a
``ScenarioParameters`` (the "true" probabilities the outcomes are drawn
from). Both are frozen; use ``with_overrides`` to derive a modified copy.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple
import numpy as np

from .exceptions import InvalidConfigurationError
from .utils import check_probabilities


DEFAULT_UTILITIES = np.array([
    # indexed [efficacy, toxicity, immune]
    [[0.0, 10.0], [0.0, 0.0]],     # E=0: (T=0: I=0, I=1), (T=1: I=0, I=1)
    [[80.0, 100.0], [30.0, 40.0]],  # E=1
])


@dataclass(frozen=True)
class UtilityTable:
    """
    Utility of each (efficacy, toxicity, immune response) outcome.

    Attributes
    ----------
    values : np.ndarray
        Array of shape (2, 2, 2) indexed ``[e, t, i]``
    """
    values: np.ndarray = field(default_factory=lambda: DEFAULT_UTILITIES.copy())

    def __post_init__(self):
        values = np.array(self.values, dtype=float)
        if values.shape != (2, 2, 2):
            raise InvalidConfigurationError("utility table must have shape (2, 2, 2)")
        if not np.all(np.isfinite(values)):
            raise InvalidConfigurationError("utility table contains non-finite values")
        if np.any(values < 0):
            raise InvalidConfigurationError("utility table values must be non-negative")
        values.setflags(write=False)
        object.__setattr__(self, 'values', values)

    def __getitem__(self, key):
        return self.values[key]

    def stratum(self, immune: int) -> np.ndarray:
        """2x2 table ``[e, t]`` for one immune stratum."""
        return self.values[:, :, immune]

    def __eq__(self, other):
        if not isinstance(other, UtilityTable):
            return NotImplemented
        return np.array_equal(self.values, other.values)

    def __hash__(self):
        return hash(self.values.tobytes())


@dataclass(frozen=True)
class TrialConfiguration:
    """
    Multi-stage adaptive dose-finding design.

    Attributes
    ----------
    n_doses : int
        Number of dose levels J (doses are numbered 1..J)
    n_stages : int
        Number of stages N
    cohort_size : int
        Patients enrolled per stage
    phi_T, c_T : float
        Safety criterion Pr(toxicity < phi_T) > c_T
    phi_E, c_E : float
        Efficacy criterion Pr(efficacy > phi_E) > c_E
    phi_I, c_I : float
        Activity criterion Pr(immune response > phi_I) > c_I
    c_poc : float
        Credibility cutoff for the probability of correct selection
    delta_poc : float
        Margin in the PoC comparison Pr(Pi_d < delta * Pi_best)
    enable_early_termination : bool
        Stop the trial when no dose is admissible
    utility_table : UtilityTable
        Outcome utilities
    n_posterior_samples : int
        Posterior draws per dose (and immune group)
    prior_alpha, prior_beta : float
        Beta prior pseudo-counts
    seed : int, optional
        Base seed; stage k draws from seed + k
    dose_labels : tuple of str, optional
        Display labels for the doses
    """
    n_doses: int = 5
    n_stages: int = 5
    cohort_size: int = 15
    phi_T: float = 0.30
    c_T: float = 0.3
    phi_E: float = 0.20
    c_E: float = 0.3
    phi_I: float = 0.20
    c_I: float = 0.3
    c_poc: float = 0.9
    delta_poc: float = 0.8
    enable_early_termination: bool = True
    utility_table: UtilityTable = field(default_factory=UtilityTable)
    n_posterior_samples: int = 1000
    prior_alpha: float = 1.0
    prior_beta: float = 1.0
    seed: Optional[int] = None
    dose_labels: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        for name in ('n_doses', 'n_stages', 'cohort_size', 'n_posterior_samples'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise InvalidConfigurationError(f"{name} must be a positive integer")
        for name in ('phi_T', 'c_T', 'phi_E', 'c_E', 'phi_I', 'c_I', 'c_poc'):
            check_probabilities(getattr(self, name), name)
        if not np.isfinite(self.delta_poc) or self.delta_poc <= 0:
            raise InvalidConfigurationError("delta_poc must be positive")
        if self.prior_alpha <= 0 or self.prior_beta <= 0:
            raise InvalidConfigurationError("Beta prior parameters must be positive")
        if not isinstance(self.utility_table, UtilityTable):
            object.__setattr__(self, 'utility_table', UtilityTable(self.utility_table))
        if self.seed is not None and not isinstance(self.seed, (int, np.integer)):
            raise InvalidConfigurationError("seed must be an integer or None")
        if self.seed is not None and self.seed < 0:
            raise InvalidConfigurationError("seed must be non-negative")
        if self.dose_labels is not None:
            labels = tuple(str(label) for label in self.dose_labels)
            if len(labels) != self.n_doses:
                raise InvalidConfigurationError(
                    f"dose_labels has {len(labels)} entries but n_doses is {self.n_doses}"
                )
            object.__setattr__(self, 'dose_labels', labels)

    @property
    def doses(self) -> Tuple[int, ...]:
        """Dose levels 1..J."""
        return tuple(range(1, self.n_doses + 1))

    @property
    def max_sample_size(self) -> int:
        return self.n_stages * self.cohort_size

    def label(self, dose: int) -> str:
        if self.dose_labels is None:
            return str(dose)
        return self.dose_labels[dose - 1]

    def with_overrides(self, **changes) -> 'TrialConfiguration':
        """Return a validated copy with some fields replaced."""
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise InvalidConfigurationError(f"Unknown configuration fields: {sorted(unknown)}")
        return replace(self, **changes)

    @classmethod
    def relaxed_five_dose(cls, **changes) -> 'TrialConfiguration':
        """The 5-dose, 5-stage design used for null-scenario calibration."""
        return cls(**changes)

    @classmethod
    def tight_three_dose(cls, **changes) -> 'TrialConfiguration':
        """The earlier 3-dose, 3-stage design with strict credibility cutoffs."""
        params = dict(
            n_doses=3, n_stages=3, cohort_size=6,
            phi_T=0.3, c_T=0.9,
            phi_E=0.2, c_E=0.75,
            phi_I=0.1, c_I=0.65,
            c_poc=0.9, delta_poc=0.8,
        )
        params.update(changes)
        return cls(**params)


@dataclass(frozen=True, eq=False)
class ScenarioParameters:
    """
    True outcome-generating probabilities.

    Attributes
    ----------
    p_immune : np.ndarray
        Immune response probability per dose, shape (J,)
    p_toxicity : np.ndarray
        Toxicity probability given immune stratum, shape (J, 2)
        (column 0: no immune response, column 1: immune response)
    p_efficacy : np.ndarray
        Efficacy probability given immune stratum, shape (J, 2)
    rho0, rho1 : float
        Gumbel copula strength within the I=0 and I=1 strata
    name : str
        Scenario identifier
    """
    p_immune: np.ndarray
    p_toxicity: np.ndarray
    p_efficacy: np.ndarray
    rho0: float = 1.5
    rho1: float = 2.0
    name: str = "custom"

    def __post_init__(self):
        p_immune = check_probabilities(self.p_immune, 'p_immune')
        p_toxicity = check_probabilities(self.p_toxicity, 'p_toxicity')
        p_efficacy = check_probabilities(self.p_efficacy, 'p_efficacy')

        if p_immune.ndim != 1 or len(p_immune) == 0:
            raise InvalidConfigurationError("p_immune must be a non-empty vector")
        n_doses = len(p_immune)
        for name, arr in (('p_toxicity', p_toxicity), ('p_efficacy', p_efficacy)):
            if arr.shape != (n_doses, 2):
                raise InvalidConfigurationError(
                    f"{name} must have shape ({n_doses}, 2), got {arr.shape}"
                )
        for name in ('rho0', 'rho1'):
            if not np.isfinite(getattr(self, name)):
                raise InvalidConfigurationError(f"{name} must be finite")

        for name, arr in (('p_immune', p_immune), ('p_toxicity', p_toxicity),
                          ('p_efficacy', p_efficacy)):
            arr = arr.copy()
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def n_doses(self) -> int:
        return len(self.p_immune)

    def check_compatible(self, config: TrialConfiguration) -> None:
        """Raise if the scenario does not match the design's dose count."""
        if self.n_doses != config.n_doses:
            raise InvalidConfigurationError(
                f"Scenario has {self.n_doses} doses but configuration has {config.n_doses}"
            )

    def true_marginals(self) -> dict:
        """True marginal toxicity and efficacy probabilities per dose."""
        weights = np.column_stack([1 - self.p_immune, self.p_immune])
        return {
            'immune': self.p_immune.copy(),
            'toxicity': (weights * self.p_toxicity).sum(axis=1),
            'efficacy': (weights * self.p_efficacy).sum(axis=1),
        }

    def true_utilities(self, utility_table: Optional[UtilityTable] = None) -> np.ndarray:
        """Expected utility of each dose under the true probabilities."""
        from .utility import expected_utilities

        table = utility_table if utility_table is not None else UtilityTable()
        return expected_utilities(self.p_immune, self.p_toxicity, self.p_efficacy, table)

    def true_optimal_dose(self, utility_table: Optional[UtilityTable] = None) -> int:
        """Dose level (1-based) with the highest true expected utility."""
        return int(np.argmax(self.true_utilities(utility_table))) + 1

    def with_overrides(self, **changes) -> 'ScenarioParameters':
        return replace(self, **changes)

    @classmethod
    def null_flat(cls, n_doses: int = 5, phi_I: float = 0.2, phi_E: float = 0.25,
                  tox_flat: float = 0.05, rho0: float = 1.5,
                  rho1: float = 2.0) -> 'ScenarioParameters':
        """
        Null scenario in which all doses are indistinguishable.

        Both conditional efficacy probabilities equal ``phi_E``, so the
        marginal efficacy is ``phi_E`` at every dose.
        """
        return cls(
            p_immune=np.full(n_doses, phi_I),
            p_toxicity=np.full((n_doses, 2), tox_flat),
            p_efficacy=np.full((n_doses, 2), phi_E),
            rho0=rho0,
            rho1=rho1,
            name="null_flat",
        )

    @classmethod
    def flat_from_marginal(cls, n_doses: int, phi_I_lower: float, phi_E_lower: float,
                           toxicity_low: float = 0.05, rho0: float = 1.5,
                           rho1: float = 2.0) -> 'ScenarioParameters':
        """
        Flat scenario with a small efficacy advantage for immune responders.

        P(E|I=1) is set to ``phi_E_lower + 0.05`` and P(E|I=0) is solved
        from the total probability formula so the marginal efficacy stays at
        ``phi_E_lower`` (clamped to [0, 1]).
        """
        p_e1 = min(phi_E_lower + 0.05, 1.0)
        p_e0 = (phi_E_lower - phi_I_lower * p_e1) / (1 - phi_I_lower)
        p_e0 = max(0.0, min(p_e0, 1.0))
        return cls(
            p_immune=np.full(n_doses, phi_I_lower),
            p_toxicity=np.full((n_doses, 2), toxicity_low),
            p_efficacy=np.tile([p_e0, p_e1], (n_doses, 1)),
            rho0=rho0,
            rho1=rho1,
            name="flat_null",
        )

    @classmethod
    def unfavorable(cls, n_doses: int = 5, p_immune: float = 0.10,
                    toxicity: float = 0.80, efficacy: float = 0.10,
                    rho0: float = 1.5, rho1: float = 2.0) -> 'ScenarioParameters':
        """Scenario in which every dose is unsafe and inactive."""
        return cls(
            p_immune=np.full(n_doses, p_immune),
            p_toxicity=np.full((n_doses, 2), toxicity),
            p_efficacy=np.full((n_doses, 2), efficacy),
            rho0=rho0,
            rho1=rho1,
            name="unfavorable",
        )
