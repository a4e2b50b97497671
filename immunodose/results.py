"""
Results classes for trial simulation and calibration.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import numpy as np
import pandas as pd

from .admissibility import AdmissibilityReport
from .monitoring import PoCResult
from .posterior import PosteriorState


class TrialOutcome(Enum):
    """How a trial ended."""
    TERMINATED_EARLY = "terminated_early"
    COMPLETED_WITH_DOSE = "completed_with_dose"
    COMPLETED_WITHOUT_DOSE = "completed_without_dose"


@dataclass(eq=False)
class StageRecord:
    """
    Everything computed at one interim analysis.

    Attributes
    ----------
    stage : int
        Stage number (1-based)
    allocation : np.ndarray
        Probabilities used to enrol this stage
    n_per_dose : np.ndarray
        Patients enrolled at each dose in this stage
    posterior : PosteriorState
        Posterior after this stage's outcomes
    admissibility : AdmissibilityReport
        Screening result after this stage
    utilities : np.ndarray, optional
        Expected utilities; None when the trial stopped at this stage
    next_allocation : np.ndarray, optional
        Allocation for the following stage, if one follows
    """
    stage: int
    allocation: np.ndarray
    n_per_dose: np.ndarray
    posterior: PosteriorState
    admissibility: AdmissibilityReport
    utilities: Optional[np.ndarray] = None
    next_allocation: Optional[np.ndarray] = None

    @property
    def admissible(self) -> Tuple[int, ...]:
        return self.admissibility.admissible


@dataclass(eq=False)
class TrialResult:
    """
    Result of one simulated trial.

    Attributes
    ----------
    outcome : TrialOutcome
        Exactly one of terminated early, completed with a dose, or
        completed without a dose
    reason : str
        Explanation of the outcome
    final_dose : int, optional
        Selected dose (1-based)
    termination_stage : int, optional
        Stage at which the trial stopped early
    poc_validated : bool
        Whether a dose passed the PoC gate
    poc_probability : float
        PoC of the best dose (nan when PoC was not evaluated)
    poc : PoCResult, optional
        Full PoC calculation
    final_utility : float, optional
        Utility of the selected dose
    outcomes : pd.DataFrame
        All patient outcomes, in enrolment order
    allocation_history : dict
        Stage -> allocation probabilities used to enrol that stage
    stages : list of StageRecord
        Per-stage diagnostics
    seed : int, optional
        Base seed of the trial
    """
    outcome: TrialOutcome
    reason: str
    final_dose: Optional[int]
    termination_stage: Optional[int]
    poc_validated: bool
    poc_probability: float
    poc: Optional[PoCResult]
    final_utility: Optional[float]
    outcomes: pd.DataFrame
    allocation_history: Dict[int, np.ndarray]
    stages: List[StageRecord] = field(default_factory=list)
    seed: Optional[int] = None

    @property
    def terminated_early(self) -> bool:
        return self.outcome is TrialOutcome.TERMINATED_EARLY

    @property
    def final_posterior(self) -> Optional[PosteriorState]:
        return self.stages[-1].posterior if self.stages else None

    @property
    def sample_size(self) -> int:
        return len(self.outcomes)

    @property
    def n_stages_run(self) -> int:
        return len(self.stages)

    def patients_per_dose(self, n_doses: int) -> np.ndarray:
        return np.bincount(self.outcomes['dose'].to_numpy(dtype=int) - 1, minlength=n_doses)

    def allocation_frame(self) -> pd.DataFrame:
        """Allocation probabilities, one row per stage."""
        rows = {stage: probs for stage, probs in sorted(self.allocation_history.items())}
        frame = pd.DataFrame.from_dict(rows, orient='index')
        frame.columns = [f"dose_{j + 1}" for j in range(frame.shape[1])]
        frame.index.name = 'stage'
        return frame

    def summary(self) -> Dict:
        return {
            'outcome': self.outcome.value,
            'reason': self.reason,
            'final_dose': self.final_dose,
            'termination_stage': self.termination_stage,
            'poc_validated': self.poc_validated,
            'poc_probability': self.poc_probability,
            'sample_size': self.sample_size,
        }


@dataclass(eq=False)
class SimulationRecord:
    """
    Result-or-error of one simulation in a batch.

    Attributes
    ----------
    index : int
        Position of the run in its batch
    seed : int
        Seed the run used
    result : TrialResult, optional
        Trial result, None if the run failed
    error : str, optional
        Description of the failure
    """
    index: int
    seed: int
    result: Optional[TrialResult] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.result is None

    @property
    def detected(self) -> bool:
        """A dose passed the PoC gate. Failed runs count as not detected."""
        return not self.failed and self.result.poc_validated

    @property
    def terminated(self) -> bool:
        """Stopped early. Failed runs count as terminated."""
        return self.failed or self.result.terminated_early

    @property
    def completed(self) -> bool:
        return not self.terminated


@dataclass
class CalibrationPoint:
    """
    Rate observed for one threshold candidate.

    Attributes
    ----------
    candidate : float
        Threshold value
    rate : float
        Detection or termination rate
    ci_lower, ci_upper : float
        Exact binomial confidence interval of the rate
    completion_rate : float
        Fraction of runs that did not stop early
    n_simulations : int
        Runs performed
    n_failed : int
        Runs that failed and were counted conservatively
    """
    candidate: float
    rate: float
    ci_lower: float
    ci_upper: float
    completion_rate: float
    n_simulations: int
    n_failed: int = 0

    @property
    def confidence_interval(self) -> Tuple[float, float]:
        return self.ci_lower, self.ci_upper


@dataclass
class CalibrationResult:
    """
    Outcome of a threshold search.

    Attributes
    ----------
    parameter : str
        Name of the calibrated configuration field
    metric : str
        'poc_detection' or 'early_termination'
    target : float
        Target rate
    points : list of CalibrationPoint
        One entry per candidate, in the order tested
    selected : float
        Chosen threshold
    control_achieved : bool
        Whether the chosen threshold meets the target
    """
    parameter: str
    metric: str
    target: float
    points: List[CalibrationPoint]
    selected: float
    control_achieved: bool

    @property
    def selected_point(self) -> CalibrationPoint:
        for point in self.points:
            if point.candidate == self.selected:
                return point
        raise KeyError(self.selected)

    @property
    def rates(self) -> Dict[float, float]:
        return {p.candidate: p.rate for p in self.points}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            self.parameter: [p.candidate for p in self.points],
            'rate': [p.rate for p in self.points],
            'ci_lower': [p.ci_lower for p in self.points],
            'ci_upper': [p.ci_upper for p in self.points],
            'completion_rate': [p.completion_rate for p in self.points],
            'n_simulations': [p.n_simulations for p in self.points],
            'n_failed': [p.n_failed for p in self.points],
        })


@dataclass
class OperatingCharacteristics:
    """
    Summary of many simulated trials under one scenario.

    Attributes
    ----------
    n_simulations : int
    selection_rate : np.ndarray
        Fraction of runs selecting each dose
    no_selection_rate : float
        Fraction of runs selecting no dose (including failures)
    early_termination_rate : float
        Fraction of runs stopped early (including failures)
    termination_stage_rate : dict
        Stage -> fraction of runs stopping early at that stage
    poc_rate : float
        Fraction of runs passing the PoC gate
    mean_sample_size, sd_sample_size : float
        Over successful runs
    mean_patients_per_dose : np.ndarray
        Over successful runs
    n_failed : int
    correct_selection_rate : float
        Fraction of runs selecting the scenario's highest-utility dose
    true_optimal_dose : int
    """
    n_simulations: int
    selection_rate: np.ndarray
    no_selection_rate: float
    early_termination_rate: float
    termination_stage_rate: Dict[int, float]
    poc_rate: float
    mean_sample_size: float
    sd_sample_size: float
    mean_patients_per_dose: np.ndarray
    n_failed: int
    correct_selection_rate: float
    true_optimal_dose: int

    def to_frame(self) -> pd.DataFrame:
        """Per-dose summary."""
        n_doses = len(self.selection_rate)
        return pd.DataFrame({
            'dose': np.arange(1, n_doses + 1),
            'selection_rate': self.selection_rate,
            'mean_patients': self.mean_patients_per_dose,
            'true_optimal': np.arange(1, n_doses + 1) == self.true_optimal_dose,
        })
