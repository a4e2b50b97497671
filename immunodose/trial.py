"""
Stage-by-stage orchestration of one adaptive trial.

Each stage enrols a cohort, recomputes every posterior from the full
cumulative data, screens the doses, and then either stops (no admissible
dose), sets the next stage's allocation, or, after the last stage, hands
over to the PoC-gated final selection.
"""

from enum import Enum
from typing import List, Optional
import logging
import numpy as np
import pandas as pd

from .admissibility import evaluate_admissibility
from .allocation import adaptive_randomization, apportion_cohort, initial_allocation, split_evenly
from .config import ScenarioParameters, TrialConfiguration
from .exceptions import InvalidConfigurationError, NumericalFaultError, TrialOrderingError
from .monitoring import EMPTY_ADMISSIBLE_SET, check_early_termination, select_final_dose
from .outcomes import OutcomeSampler, empty_outcomes
from .posterior import compute_posterior_state
from .results import StageRecord, TrialOutcome, TrialResult
from .utility import dose_utilities

logger = logging.getLogger(__name__)


class TrialState(Enum):
    RUNNING = "running"
    TERMINATED_EARLY = "terminated_early"
    COMPLETED = "completed"


class AdaptiveTrial:
    """
    One simulated multi-stage trial.

    Parameters
    ----------
    config : TrialConfiguration
        Trial design
    scenario : ScenarioParameters
        True outcome probabilities
    seed : int, optional
        Base seed; defaults to ``config.seed``. Stage k uses seed + k for
        both its outcomes and its posterior draws
    sampler : optional
        Object with the ``OutcomeSampler.sample`` interface; defaults to an
        ``OutcomeSampler`` for ``scenario``

    Examples
    --------
    >>> trial = AdaptiveTrial(config, scenario, seed=42)
    >>> while trial.state is TrialState.RUNNING:
    ...     record = trial.step()
    >>> result = trial.finalize()
    """

    def __init__(self, config: TrialConfiguration, scenario: ScenarioParameters,
                 seed: Optional[int] = None, sampler=None):
        scenario.check_compatible(config)
        self.config = config
        self.scenario = scenario
        self.seed = seed if seed is not None else config.seed
        if self.seed is not None and self.seed < 0:
            raise InvalidConfigurationError("seed must be non-negative")
        self.sampler = sampler if sampler is not None else OutcomeSampler(scenario)

        self.state = TrialState.RUNNING
        self.stage = 0
        self.stages: List[StageRecord] = []
        self.allocation_history = {}
        self.termination_stage: Optional[int] = None
        self._cohorts: List[pd.DataFrame] = []
        self._next_allocation = initial_allocation(config.n_doses)
        self._result: Optional[TrialResult] = None

    @property
    def outcomes(self) -> pd.DataFrame:
        """All outcomes observed so far."""
        if not self._cohorts:
            return empty_outcomes()
        return pd.concat(self._cohorts, ignore_index=True)

    def _stage_rng(self, stage: int) -> np.random.Generator:
        if self.seed is None:
            return np.random.default_rng()
        return np.random.default_rng(self.seed + stage)

    def step(self) -> StageRecord:
        """
        Run the next stage.

        Returns
        -------
        StageRecord

        Raises
        ------
        TrialOrderingError
            If the trial has already stopped or completed
        NumericalFaultError
            If the posterior contains non-finite values
        """
        if self.state is not TrialState.RUNNING:
            raise TrialOrderingError(f"Cannot run another stage: trial is {self.state.value}")

        config = self.config
        k = self.stage + 1
        probs = self._next_allocation
        if k == 1:
            counts = split_evenly(config.cohort_size, config.n_doses)
        else:
            counts = apportion_cohort(probs, config.cohort_size)

        rng = self._stage_rng(k)
        n_enrolled = sum(len(c) for c in self._cohorts)
        cohort = self.sampler.sample(counts, rng=rng, stage=k, first_patient=n_enrolled + 1)
        self._cohorts.append(cohort)
        self.allocation_history[k] = probs
        self.stage = k

        posterior = compute_posterior_state(self.outcomes, config.n_doses,
                                            config.n_posterior_samples, rng,
                                            config.prior_alpha, config.prior_beta)
        if not posterior.is_finite():
            raise NumericalFaultError(f"Non-finite posterior values at stage {k}")

        report = evaluate_admissibility(posterior, config)
        admissible = report.admissible
        record = StageRecord(stage=k, allocation=probs, n_per_dose=counts,
                             posterior=posterior, admissibility=report)
        self.stages.append(record)
        logger.debug("Stage %d: enrolled %s, admissible %s", k, counts.tolist(), admissible)

        # The termination check must precede any randomization for the next stage
        if check_early_termination(admissible, config):
            self.state = TrialState.TERMINATED_EARLY
            self.termination_stage = k
            logger.debug("Stage %d: stopping early (%s)", k, EMPTY_ADMISSIBLE_SET)
            return record

        record.utilities = dose_utilities(posterior, config.utility_table)
        if k < config.n_stages:
            if admissible:
                next_probs = adaptive_randomization(admissible, record.utilities, config.n_doses)
            else:
                logger.debug("Stage %d: no admissible dose, allocating uniformly", k)
                next_probs = initial_allocation(config.n_doses)
            record.next_allocation = next_probs
            self._next_allocation = next_probs
            logger.debug("Stage %d: next allocation %s", k, np.round(next_probs, 3).tolist())
        else:
            self.state = TrialState.COMPLETED
        return record

    def finalize(self) -> TrialResult:
        """
        Build the trial result, running the PoC gate if the trial completed.

        Raises
        ------
        TrialOrderingError
            If stages remain or the trial was already finalized
        """
        if self.state is TrialState.RUNNING:
            raise TrialOrderingError(
                f"Final selection requested at stage {self.stage} of {self.config.n_stages}"
            )
        if self._result is not None:
            raise TrialOrderingError("Trial has already been finalized")

        common = dict(
            outcomes=self.outcomes,
            allocation_history=dict(self.allocation_history),
            stages=list(self.stages),
            seed=self.seed,
        )
        if self.state is TrialState.TERMINATED_EARLY:
            result = TrialResult(
                outcome=TrialOutcome.TERMINATED_EARLY,
                reason=EMPTY_ADMISSIBLE_SET,
                final_dose=None,
                termination_stage=self.termination_stage,
                poc_validated=False,
                poc_probability=np.nan,
                poc=None,
                final_utility=None,
                **common,
            )
        else:
            last = self.stages[-1]
            selection = select_final_dose(last.admissible, last.posterior, self.config)
            result = TrialResult(
                outcome=(TrialOutcome.COMPLETED_WITH_DOSE if selection.validated
                         else TrialOutcome.COMPLETED_WITHOUT_DOSE),
                reason=selection.reason,
                final_dose=selection.dose,
                termination_stage=None,
                poc_validated=selection.validated,
                poc_probability=selection.poc.poc if selection.poc is not None else np.nan,
                poc=selection.poc,
                final_utility=selection.utility,
                **common,
            )
        self._result = result
        return result

    def run(self) -> TrialResult:
        """Run all remaining stages and return the result."""
        while self.state is TrialState.RUNNING:
            self.step()
        return self.finalize()


def run_trial(config: TrialConfiguration, scenario: ScenarioParameters,
              seed: Optional[int] = None, sampler=None) -> TrialResult:
    """
    Simulate one trial.

    Parameters
    ----------
    config : TrialConfiguration
        Trial design
    scenario : ScenarioParameters
        True outcome probabilities
    seed : int, optional
        Base seed (defaults to ``config.seed``)
    sampler : optional
        Outcome sampler to use instead of the scenario's ``OutcomeSampler``

    Returns
    -------
    TrialResult
    """
    return AdaptiveTrial(config, scenario, seed=seed, sampler=sampler).run()
