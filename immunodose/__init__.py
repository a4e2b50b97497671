"""
Bayesian Adaptive Dose Finding with Immune Response, Toxicity and Efficacy

This Python package simulates multi-stage Bayesian adaptive dose-finding trials
in which each patient contributes three binary endpoints (immune response,
toxicity, efficacy). Doses are screened on monotone-constrained posterior
probabilities, patients are randomized in proportion to expected utility, and
the final dose must pass a probability-of-correct-selection (PoC) gate.
Decision thresholds can be calibrated by repeated simulation.
"""

__version__ = "1.0.0"

from .config import TrialConfiguration, ScenarioParameters, UtilityTable, DEFAULT_UTILITIES
from .exceptions import (
    ImmunodoseError, InvalidConfigurationError, NumericalFaultError, TrialOrderingError
)
from .outcomes import (
    FlatScenarioCheck, OutcomeSampler, SamplerDebugInfo, gumbel_cell_probabilities,
    validate_flat_scenario
)
from .isotonic import pava_batch, bivariate_isotonic
from .posterior import (
    PosteriorState, PosteriorSummary, MarginalSummary, aggregate, posterior_sample,
    enforce_monotone_univariate, enforce_monotone_bivariate, marginalize,
    compute_posterior_state
)
from .admissibility import AdmissibilityReport, evaluate_admissibility, get_admissible_set
from .utility import (
    UtilityBreakdown, expected_utilities, expected_utility, expected_utility_detailed,
    dose_utilities
)
from .allocation import adaptive_randomization, apportion_cohort, initial_allocation
from .monitoring import (
    PoCResult, FinalSelection, check_early_termination, calculate_poc, select_final_dose
)
from .results import (
    TrialOutcome, TrialResult, StageRecord, SimulationRecord, CalibrationPoint,
    CalibrationResult, OperatingCharacteristics
)
from .trial import AdaptiveTrial, TrialState, run_trial
from .simulation import simulate, run_simulations, run_single_simulation
from .calibration import (
    RateBound, calibrate, calibrate_c_poc, calibrate_early_termination, validate_calibration
)

__all__ = [
    # Configuration
    'TrialConfiguration', 'ScenarioParameters', 'UtilityTable', 'DEFAULT_UTILITIES',
    # Errors
    'ImmunodoseError', 'InvalidConfigurationError', 'NumericalFaultError',
    'TrialOrderingError',
    # Outcome sampling
    'OutcomeSampler', 'SamplerDebugInfo', 'gumbel_cell_probabilities',
    'FlatScenarioCheck', 'validate_flat_scenario',
    # Posterior
    'pava_batch', 'bivariate_isotonic',
    'PosteriorState', 'PosteriorSummary', 'MarginalSummary', 'aggregate',
    'posterior_sample', 'enforce_monotone_univariate', 'enforce_monotone_bivariate',
    'marginalize', 'compute_posterior_state',
    # Decisions
    'AdmissibilityReport', 'evaluate_admissibility', 'get_admissible_set',
    'UtilityBreakdown', 'expected_utilities', 'expected_utility',
    'expected_utility_detailed', 'dose_utilities',
    'adaptive_randomization', 'apportion_cohort', 'initial_allocation',
    'PoCResult', 'FinalSelection', 'check_early_termination', 'calculate_poc',
    'select_final_dose',
    # Trial
    'AdaptiveTrial', 'TrialState', 'run_trial',
    'TrialOutcome', 'TrialResult', 'StageRecord',
    # Simulation and calibration
    'simulate', 'run_simulations', 'run_single_simulation', 'SimulationRecord',
    'OperatingCharacteristics',
    'RateBound', 'calibrate', 'calibrate_c_poc', 'calibrate_early_termination',
    'validate_calibration', 'CalibrationPoint', 'CalibrationResult',
]
