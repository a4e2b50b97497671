"""
Monte-Carlo calibration of decision thresholds.

For each candidate value of a threshold, many trials are simulated under a
reference scenario and the rate of a binary event (a dose passing the PoC
gate, or the trial stopping early) is estimated with an exact binomial
confidence interval.
"""

from enum import Enum
from typing import Callable, Dict, Optional, Sequence
import logging
import warnings
import numpy as np

from .config import ScenarioParameters, TrialConfiguration
from .exceptions import InvalidConfigurationError
from .results import CalibrationPoint, CalibrationResult, SimulationRecord
from .simulation import run_simulations, simulation_seeds
from .utils import binomial_confidence_interval

logger = logging.getLogger(__name__)

POC_DETECTION = 'poc_detection'
EARLY_TERMINATION = 'early_termination'

METRICS: Dict[str, Callable[[SimulationRecord], bool]] = {
    POC_DETECTION: lambda record: record.detected,
    EARLY_TERMINATION: lambda record: record.terminated,
}

DEFAULT_C_POC_CANDIDATES = (0.5, 0.6, 0.7, 0.8, 0.85, 0.9, 0.95)
DEFAULT_TERMINATION_CANDIDATES = (0.7, 0.75, 0.8, 0.85, 0.9, 0.95, 0.99)


class RateBound(Enum):
    """Direction in which the target rate must be met."""
    AT_MOST = "at_most"
    AT_LEAST = "at_least"

    def satisfied(self, rate: float, target: float) -> bool:
        if self is RateBound.AT_MOST:
            return rate <= target
        return rate >= target


def evaluate_candidate(config: TrialConfiguration, scenario: ScenarioParameters,
                       parameter: str, value: float, metric: str, seeds: Sequence[int],
                       n_jobs: int = 1, confidence_level: float = 0.95) -> CalibrationPoint:
    """
    Estimate the event rate for one threshold value.

    Parameters
    ----------
    config : TrialConfiguration
        Base design; copied with ``parameter`` set to ``value``
    scenario : ScenarioParameters
        Reference scenario
    parameter : str
        Configuration field being calibrated
    value : float
        Candidate value
    metric : str
        'poc_detection' or 'early_termination'
    seeds : sequence of int
        One seed per simulated trial
    n_jobs : int
        Worker processes
    confidence_level : float
        Coverage of the binomial interval

    Returns
    -------
    CalibrationPoint
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric '{metric}', expected one of {sorted(METRICS)}")
    candidate_config = config.with_overrides(**{parameter: value})
    records = run_simulations(candidate_config, scenario, seeds, n_jobs=n_jobs)

    events = sum(METRICS[metric](r) for r in records)
    n = len(records)
    low, high = binomial_confidence_interval(events, n, confidence_level)
    return CalibrationPoint(
        candidate=float(value),
        rate=events / n,
        ci_lower=low,
        ci_upper=high,
        completion_rate=float(np.mean([r.completed for r in records])),
        n_simulations=n,
        n_failed=sum(r.failed for r in records),
    )


def select_candidate(points: Sequence[CalibrationPoint], target: float,
                     bound: RateBound = RateBound.AT_MOST,
                     higher_is_stricter: bool = True):
    """
    Pick the threshold from a set of calibration points.

    Among candidates whose rate meets the bound, the one with the rate
    closest to the target is chosen (ties go to the stricter candidate).
    A point whose simulations all failed never qualifies. If none
    qualifies, the strictest candidate is returned.

    Returns
    -------
    tuple
        (selected value, control achieved)
    """
    sign = 1 if higher_is_stricter else -1
    qualifying = [p for p in points
                  if p.n_failed < p.n_simulations and bound.satisfied(p.rate, target)]
    if qualifying:
        best = min(qualifying, key=lambda p: (abs(p.rate - target), -sign * p.candidate))
        return best.candidate, True
    strictest = max(points, key=lambda p: sign * p.candidate)
    return strictest.candidate, False


def calibrate(config: TrialConfiguration, scenario: ScenarioParameters, parameter: str,
              candidates: Sequence[float], metric: str, target: float, n_sim: int,
              seed: Optional[int] = None, bound: RateBound = RateBound.AT_MOST,
              higher_is_stricter: bool = True, common_random_numbers: bool = True,
              n_jobs: int = 1, confidence_level: float = 0.95) -> CalibrationResult:
    """
    Search candidate values of a threshold for one meeting a target rate.

    Parameters
    ----------
    config : TrialConfiguration
        Base design; never modified
    scenario : ScenarioParameters
        Reference scenario (flat for detection, unfavorable for termination)
    parameter : str
        Configuration field to calibrate, e.g. 'c_poc' or 'c_T'
    candidates : sequence of float
        Values to test
    metric : str
        'poc_detection' or 'early_termination'
    target : float
        Target rate
    n_sim : int
        Simulated trials per candidate
    seed : int, optional
        Base seed
    bound : RateBound
        Whether the rate must be at most or at least the target
    higher_is_stricter : bool
        Whether larger values of the parameter make the event rate move
        towards control (less detection, more termination)
    common_random_numbers : bool
        Reuse the same trial seeds for every candidate, which makes the
        rates of neighbouring candidates directly comparable. Otherwise
        every candidate gets its own seeds
    n_jobs : int
        Worker processes
    confidence_level : float
        Coverage of the binomial intervals

    Returns
    -------
    CalibrationResult
    """
    if parameter not in TrialConfiguration.__dataclass_fields__:
        raise InvalidConfigurationError(f"Unknown configuration field '{parameter}'")
    if len(candidates) == 0:
        raise ValueError("At least one candidate is required")
    if n_sim < 1:
        raise ValueError("n_sim must be at least 1")
    if seed is not None and seed < 0:
        raise InvalidConfigurationError("seed must be non-negative")

    if seed is None:
        seed = int(np.random.default_rng().integers(0, 2**31 - 1))
    block = n_sim * (config.n_stages + 1)

    points = []
    for i, value in enumerate(candidates):
        offset = 0 if common_random_numbers else i * block
        seeds = simulation_seeds(seed + offset, n_sim, config.n_stages)
        logger.info("Calibrating %s: candidate %d/%d (%s = %.3f)",
                    metric, i + 1, len(candidates), parameter, value)
        point = evaluate_candidate(config, scenario, parameter, value, metric, seeds,
                                   n_jobs=n_jobs, confidence_level=confidence_level)
        logger.info("  rate = %.3f (CI %.3f-%.3f)", point.rate, point.ci_lower, point.ci_upper)
        points.append(point)

    selected, achieved = select_candidate(points, target, bound, higher_is_stricter)
    if not achieved:
        warnings.warn(f"No {parameter} candidate achieved a {metric} rate "
                      f"{bound.value.replace('_', ' ')} {target}; "
                      f"using the strictest candidate {selected}")
    logger.info("Selected %s = %.3f (control achieved: %s)", parameter, selected, achieved)

    return CalibrationResult(parameter=parameter, metric=metric, target=target,
                             points=points, selected=selected, control_achieved=achieved)


def calibrate_c_poc(config: Optional[TrialConfiguration] = None,
                    scenario: Optional[ScenarioParameters] = None,
                    candidates: Sequence[float] = DEFAULT_C_POC_CANDIDATES,
                    target: float = 0.10, n_sim: int = 1000, seed: Optional[int] = None,
                    n_jobs: int = 1, **kwargs) -> CalibrationResult:
    """
    Calibrate c_poc so that a flat scenario rarely yields a selected dose.

    Parameters
    ----------
    config : TrialConfiguration, optional
        Design; defaults to ``TrialConfiguration.relaxed_five_dose()``
    scenario : ScenarioParameters, optional
        Flat scenario; defaults to ``ScenarioParameters.null_flat`` at the
        design's activity and efficacy thresholds
    candidates : sequence of float
        c_poc values to test
    target : float
        Largest acceptable detection rate
    n_sim : int
        Trials per candidate
    seed : int, optional
        Base seed
    n_jobs : int
        Worker processes

    Returns
    -------
    CalibrationResult
    """
    config = config if config is not None else TrialConfiguration.relaxed_five_dose()
    if scenario is None:
        scenario = ScenarioParameters.null_flat(n_doses=config.n_doses, phi_I=config.phi_I,
                                                phi_E=config.phi_E)
    return calibrate(config, scenario, 'c_poc', candidates, POC_DETECTION, target, n_sim,
                     seed=seed, bound=RateBound.AT_MOST, n_jobs=n_jobs, **kwargs)


def calibrate_early_termination(config: Optional[TrialConfiguration] = None,
                                scenario: Optional[ScenarioParameters] = None,
                                parameter: str = 'c_T',
                                candidates: Sequence[float] = DEFAULT_TERMINATION_CANDIDATES,
                                target: float = 0.80, n_sim: int = 1000,
                                seed: Optional[int] = None, n_jobs: int = 1,
                                **kwargs) -> CalibrationResult:
    """
    Calibrate a credibility cutoff so that an unfavorable scenario usually
    stops early.

    Parameters
    ----------
    config : TrialConfiguration, optional
        Design; defaults to ``TrialConfiguration.relaxed_five_dose()``.
        Early termination is switched on for the search
    scenario : ScenarioParameters, optional
        Defaults to ``ScenarioParameters.unfavorable``
    parameter : str
        One of 'c_T', 'c_E', 'c_I'
    candidates : sequence of float
        Values to test
    target : float
        Smallest acceptable termination rate
    n_sim : int
        Trials per candidate
    seed : int, optional
        Base seed
    n_jobs : int
        Worker processes

    Returns
    -------
    CalibrationResult
    """
    if parameter not in ('c_T', 'c_E', 'c_I'):
        raise InvalidConfigurationError(
            f"parameter must be one of 'c_T', 'c_E', 'c_I', got '{parameter}'"
        )
    config = config if config is not None else TrialConfiguration.relaxed_five_dose()
    config = config.with_overrides(enable_early_termination=True)
    if scenario is None:
        scenario = ScenarioParameters.unfavorable(n_doses=config.n_doses)
    return calibrate(config, scenario, parameter, candidates, EARLY_TERMINATION, target,
                     n_sim, seed=seed, bound=RateBound.AT_LEAST, n_jobs=n_jobs, **kwargs)


def validate_calibration(result: CalibrationResult, config: TrialConfiguration,
                         scenario: ScenarioParameters, n_sim: int = 1000,
                         seed: Optional[int] = None, n_jobs: int = 1,
                         confidence_level: float = 0.95) -> CalibrationPoint:
    """
    Re-estimate the rate of the selected threshold with new simulations.

    Parameters
    ----------
    result : CalibrationResult
        Output of a calibration search
    config : TrialConfiguration
        Base design used in the search
    scenario : ScenarioParameters
        Reference scenario
    n_sim : int
        Trials to run
    seed : int, optional
        Base seed; use one different from the search's to get fresh runs

    Returns
    -------
    CalibrationPoint
    """
    seeds = simulation_seeds(seed, n_sim, config.n_stages)
    point = evaluate_candidate(config, scenario, result.parameter, result.selected,
                               result.metric, seeds, n_jobs=n_jobs,
                               confidence_level=confidence_level)
    logger.info("Validation of %s = %.3f: rate %.3f (target %.3f)",
                result.parameter, result.selected, point.rate, result.target)
    return point
