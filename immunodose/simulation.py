"""
Repeated-trial simulation and operating characteristics.

Each simulation is an independent function of (config, scenario, seed),
so batches are mapped over a process pool when ``n_jobs > 1``.
"""

from multiprocessing import Pool, cpu_count
from typing import List, Optional, Sequence
import logging
import warnings
import numpy as np

from .config import ScenarioParameters, TrialConfiguration
from .exceptions import InvalidConfigurationError, NumericalFaultError
from .results import OperatingCharacteristics, SimulationRecord
from .trial import run_trial

logger = logging.getLogger(__name__)


def simulation_seeds(base_seed: Optional[int], n_sim: int, n_stages: int) -> List[int]:
    """
    Seeds for a batch of simulations.

    Run s uses base + s * (n_stages + 1), so the per-stage seeds
    (seed + 1 .. seed + n_stages) of different runs never overlap.
    """
    if base_seed is not None and base_seed < 0:
        raise InvalidConfigurationError("seed must be non-negative")
    if base_seed is None:
        base_seed = int(np.random.default_rng().integers(0, 2**31 - 1))
    step = n_stages + 1
    return [base_seed + s * step for s in range(n_sim)]


def run_single_simulation(config: TrialConfiguration, scenario: ScenarioParameters,
                          seed: int, index: int = 0) -> SimulationRecord:
    """
    Run one trial and capture numerical failures as a record.

    Only ``NumericalFaultError`` and floating-point faults are captured.
    Anything else, configuration errors included, is raised.

    Returns
    -------
    SimulationRecord
    """
    try:
        result = run_trial(config, scenario, seed=seed)
    except (NumericalFaultError, FloatingPointError) as e:
        logger.debug("Simulation %d (seed %d) failed: %s", index, seed, e)
        return SimulationRecord(index=index, seed=seed, error=f"{type(e).__name__}: {e}")
    return SimulationRecord(index=index, seed=seed, result=result)


def _run_task(args) -> SimulationRecord:
    config, scenario, seed, index = args
    return run_single_simulation(config, scenario, seed, index)


def run_simulations(config: TrialConfiguration, scenario: ScenarioParameters,
                    seeds: Sequence[int], n_jobs: int = 1) -> List[SimulationRecord]:
    """
    Run one trial per seed.

    Parameters
    ----------
    config : TrialConfiguration
        Trial design (shared read-only by all runs)
    scenario : ScenarioParameters
        True outcome probabilities
    seeds : sequence of int
        One seed per run
    n_jobs : int
        Worker processes; 1 runs serially, -1 uses all but one CPU

    Returns
    -------
    list of SimulationRecord
        In the order of ``seeds``
    """
    scenario.check_compatible(config)
    tasks = [(config, scenario, int(seed), i) for i, seed in enumerate(seeds)]

    if n_jobs == -1:
        n_jobs = max(1, cpu_count() - 1)
    if n_jobs <= 1 or len(tasks) <= 1:
        records = [_run_task(task) for task in tasks]
    else:
        with Pool(processes=n_jobs) as pool:
            records = pool.map(_run_task, tasks)

    n_failed = sum(r.failed for r in records)
    if n_failed > 0:
        warnings.warn(f"{n_failed} of {len(records)} simulations failed and were "
                      f"counted as terminated early without a selected dose")
    return records


def summarize(records: Sequence[SimulationRecord], config: TrialConfiguration,
              scenario: ScenarioParameters) -> OperatingCharacteristics:
    """Aggregate simulation records into operating characteristics."""
    n_sim = len(records)
    if n_sim == 0:
        raise ValueError("Cannot summarize an empty batch")
    n_doses = config.n_doses
    successful = [r.result for r in records if not r.failed]

    selected = np.zeros(n_doses)
    stage_counts = {stage: 0 for stage in range(1, config.n_stages + 1)}
    for result in successful:
        if result.final_dose is not None:
            selected[result.final_dose - 1] += 1
        if result.terminated_early:
            stage_counts[result.termination_stage] += 1

    n_failed = n_sim - len(successful)
    optimal = scenario.true_optimal_dose(config.utility_table)
    if successful:
        sizes = np.array([r.sample_size for r in successful], dtype=float)
        per_dose = np.mean([r.patients_per_dose(n_doses) for r in successful], axis=0)
        mean_size = float(sizes.mean())
        sd_size = float(sizes.std(ddof=1)) if len(sizes) > 1 else 0.0
    else:
        per_dose = np.full(n_doses, np.nan)
        mean_size = sd_size = np.nan

    return OperatingCharacteristics(
        n_simulations=n_sim,
        selection_rate=selected / n_sim,
        no_selection_rate=1.0 - selected.sum() / n_sim,
        early_termination_rate=float(np.mean([r.terminated for r in records])),
        termination_stage_rate={k: v / n_sim for k, v in stage_counts.items()},
        poc_rate=float(np.mean([r.detected for r in records])),
        mean_sample_size=mean_size,
        sd_sample_size=sd_size,
        mean_patients_per_dose=per_dose,
        n_failed=n_failed,
        correct_selection_rate=float(selected[optimal - 1] / n_sim),
        true_optimal_dose=optimal,
    )


def simulate(config: TrialConfiguration, scenario: ScenarioParameters, n_sim: int,
             seed: Optional[int] = None, n_jobs: int = 1) -> OperatingCharacteristics:
    """
    Operating characteristics of a design under a scenario.

    Parameters
    ----------
    config : TrialConfiguration
        Trial design
    scenario : ScenarioParameters
        True outcome probabilities
    n_sim : int
        Number of simulated trials
    seed : int, optional
        Base seed of the batch
    n_jobs : int
        Worker processes

    Returns
    -------
    OperatingCharacteristics
    """
    if n_sim < 1:
        raise ValueError("n_sim must be at least 1")
    seeds = simulation_seeds(seed, n_sim, config.n_stages)
    records = run_simulations(config, scenario, seeds, n_jobs=n_jobs)
    return summarize(records, config, scenario)
