"""
Tests for repeated simulation and threshold calibration.
"""

import pytest
import numpy as np

import immunodose.simulation as simulation_module
from immunodose import (
    RateBound, ScenarioParameters, TrialConfiguration, calibrate, calibrate_c_poc,
    calibrate_early_termination, run_simulations, simulate, validate_calibration
)
from immunodose.calibration import select_candidate
from immunodose.exceptions import InvalidConfigurationError, NumericalFaultError
from immunodose.results import CalibrationPoint
from immunodose.simulation import run_single_simulation, simulation_seeds
from immunodose.utils import binomial_confidence_interval


@pytest.fixture
def small_config():
    return TrialConfiguration(n_doses=3, n_stages=2, cohort_size=6, n_posterior_samples=100)


@pytest.fixture
def flat_scenario():
    return ScenarioParameters.null_flat(n_doses=3, phi_I=0.25, phi_E=0.30, tox_flat=0.05)


def point(candidate, rate):
    return CalibrationPoint(candidate=candidate, rate=rate, ci_lower=0.0, ci_upper=1.0,
                            completion_rate=1.0, n_simulations=100)


class TestSimulate:
    """Tests for operating characteristics."""

    def test_rates_consistent(self, small_config, flat_scenario):
        oc = simulate(small_config, flat_scenario, n_sim=6, seed=1)

        assert oc.n_simulations == 6
        assert oc.selection_rate.sum() + oc.no_selection_rate == pytest.approx(1.0)
        assert oc.poc_rate == pytest.approx(oc.selection_rate.sum())
        assert sum(oc.termination_stage_rate.values()) == pytest.approx(
            oc.early_termination_rate)
        assert 0 < oc.mean_sample_size <= small_config.max_sample_size
        assert oc.mean_patients_per_dose.sum() == pytest.approx(oc.mean_sample_size)
        assert oc.n_failed == 0
        assert len(oc.to_frame()) == 3

    def test_reproducible(self, small_config, flat_scenario):
        first = simulate(small_config, flat_scenario, n_sim=4, seed=9)
        second = simulate(small_config, flat_scenario, n_sim=4, seed=9)
        np.testing.assert_array_equal(first.selection_rate, second.selection_rate)
        assert first.mean_sample_size == second.mean_sample_size

    def test_parallel_matches_serial(self, small_config, flat_scenario):
        seeds = simulation_seeds(3, 4, small_config.n_stages)
        serial = run_simulations(small_config, flat_scenario, seeds, n_jobs=1)
        parallel = run_simulations(small_config, flat_scenario, seeds, n_jobs=2)
        for a, b in zip(serial, parallel):
            assert a.seed == b.seed
            assert a.result.final_dose == b.result.final_dose
            assert a.result.sample_size == b.result.sample_size

    def test_seeds_do_not_overlap(self):
        seeds = simulation_seeds(100, 3, n_stages=4)
        assert seeds == [100, 105, 110]

    def test_failed_run_is_recorded(self, small_config, flat_scenario, monkeypatch):
        def failing_trial(config, scenario, seed=None):
            raise NumericalFaultError("posterior is nan")

        monkeypatch.setattr(simulation_module, 'run_trial', failing_trial)
        record = run_single_simulation(small_config, flat_scenario, seed=1)
        assert record.failed
        assert record.terminated
        assert not record.detected
        assert "NumericalFaultError" in record.error

        with pytest.warns(UserWarning, match="2 of 2 simulations failed"):
            oc = simulate(small_config, flat_scenario, n_sim=2, seed=1)
        assert oc.n_failed == 2
        assert oc.early_termination_rate == 1.0
        assert oc.poc_rate == 0.0

    def test_configuration_errors_propagate(self, small_config, flat_scenario, monkeypatch):
        def invalid_trial(config, scenario, seed=None):
            raise InvalidConfigurationError("bad design")

        monkeypatch.setattr(simulation_module, 'run_trial', invalid_trial)
        with pytest.raises(InvalidConfigurationError, match="bad design"):
            run_single_simulation(small_config, flat_scenario, seed=1)

    def test_value_errors_propagate(self, small_config, flat_scenario, monkeypatch):
        def broken_trial(config, scenario, seed=None):
            raise ValueError("shape mismatch")

        monkeypatch.setattr(simulation_module, 'run_trial', broken_trial)
        with pytest.raises(ValueError, match="shape mismatch"):
            run_single_simulation(small_config, flat_scenario, seed=1)

    def test_negative_seed_rejected(self, small_config, flat_scenario):
        with pytest.raises(InvalidConfigurationError, match="non-negative"):
            simulation_seeds(-1, 3, n_stages=2)
        with pytest.raises(InvalidConfigurationError, match="non-negative"):
            simulate(small_config, flat_scenario, n_sim=2, seed=-7)


class TestSelectCandidate:
    """Tests for choosing a threshold from calibration points."""

    def test_closest_qualifying(self):
        points = [point(0.5, 0.30), point(0.7, 0.12), point(0.8, 0.08), point(0.9, 0.02)]
        assert select_candidate(points, 0.10) == (0.8, True)

    def test_none_qualifying_uses_strictest(self):
        points = [point(0.5, 0.30), point(0.9, 0.20)]
        assert select_candidate(points, 0.10) == (0.9, False)

    def test_at_least(self):
        points = [point(0.7, 0.50), point(0.8, 0.85), point(0.9, 0.95)]
        assert select_candidate(points, 0.80, RateBound.AT_LEAST) == (0.8, True)

    def test_tie_goes_to_stricter(self):
        points = [point(0.6, 0.05), point(0.8, 0.05)]
        assert select_candidate(points, 0.10) == (0.8, True)

    def test_all_failed_point_never_qualifies(self):
        failed = CalibrationPoint(candidate=0.6, rate=0.0, ci_lower=0.0, ci_upper=0.52,
                                  completion_rate=0.0, n_simulations=5, n_failed=5)
        assert select_candidate([failed, point(0.9, 0.20)], 0.10) == (0.9, False)

        # failed runs count as terminated, which would otherwise meet an at-least bound
        failed = CalibrationPoint(candidate=0.9, rate=1.0, ci_lower=0.48, ci_upper=1.0,
                                  completion_rate=0.0, n_simulations=5, n_failed=5)
        assert select_candidate([point(0.7, 0.50), failed], 0.80,
                                RateBound.AT_LEAST) == (0.9, False)

    def test_partially_failed_point_still_qualifies(self):
        partial = CalibrationPoint(candidate=0.8, rate=0.05, ci_lower=0.0, ci_upper=0.2,
                                   completion_rate=0.9, n_simulations=100, n_failed=3)
        assert select_candidate([point(0.5, 0.30), partial], 0.10) == (0.8, True)


class TestCalibrate:
    """Tests for the calibration search."""

    def test_detection_monotone_in_c_poc(self, small_config, flat_scenario):
        result = calibrate_c_poc(small_config, flat_scenario,
                                 candidates=(0.0, 0.3, 0.6, 0.9, 1.0),
                                 target=1.0, n_sim=8, seed=11)
        rates = [p.rate for p in result.points]

        assert all(a >= b for a, b in zip(rates, rates[1:]))
        assert result.parameter == 'c_poc'
        assert result.metric == 'poc_detection'
        assert result.selected in (0.0, 0.3, 0.6, 0.9, 1.0)
        assert result.control_achieved
        assert result.selected_point.rate == max(rates)

    def test_points_have_intervals(self, small_config, flat_scenario):
        result = calibrate_c_poc(small_config, flat_scenario, candidates=(0.8,),
                                 target=1.0, n_sim=5, seed=2)
        p = result.points[0]
        events = round(p.rate * p.n_simulations)
        assert (p.ci_lower, p.ci_upper) == pytest.approx(
            binomial_confidence_interval(events, 5))
        assert p.n_simulations == 5
        frame = result.to_frame()
        assert list(frame.columns[:2]) == ['c_poc', 'rate']

    def test_control_not_achieved_warns(self, small_config, flat_scenario):
        with pytest.warns(UserWarning, match="No c_poc candidate"):
            result = calibrate_c_poc(small_config, flat_scenario, candidates=(0.2, 0.4),
                                     target=-0.1, n_sim=3, seed=4)
        assert not result.control_achieved
        assert result.selected == 0.4

    def test_early_termination(self, small_config):
        result = calibrate_early_termination(small_config, parameter='c_T',
                                             candidates=(0.5, 1.0), target=0.8,
                                             n_sim=4, seed=6)
        rates = result.rates
        assert rates[1.0] == 1.0
        assert result.control_achieved
        assert result.metric == 'early_termination'

    def test_negative_seed_rejected(self, small_config, flat_scenario):
        with pytest.raises(InvalidConfigurationError, match="non-negative"):
            calibrate_c_poc(small_config, flat_scenario, candidates=(0.5, 0.9),
                            n_sim=2, seed=-1000)

    def test_all_failed_runs_do_not_achieve_control(self, small_config, monkeypatch):
        def failing_trial(config, scenario, seed=None):
            raise NumericalFaultError("posterior is nan")

        monkeypatch.setattr(simulation_module, 'run_trial', failing_trial)
        with pytest.warns(UserWarning, match="No c_T candidate"):
            result = calibrate_early_termination(small_config, candidates=(0.5, 0.9),
                                                 target=0.8, n_sim=2, seed=1)
        assert not result.control_achieved
        assert result.selected == 0.9
        assert all(p.n_failed == 2 for p in result.points)

    def test_early_termination_parameter_checked(self, small_config):
        with pytest.raises(InvalidConfigurationError, match="c_T"):
            calibrate_early_termination(small_config, parameter='c_poc', n_sim=1)

    def test_unknown_parameter(self, small_config, flat_scenario):
        with pytest.raises(InvalidConfigurationError, match="Unknown"):
            calibrate(small_config, flat_scenario, 'c_X', (0.5,), 'poc_detection', 0.1, 2)

    def test_unknown_metric(self, small_config, flat_scenario):
        with pytest.raises(ValueError, match="Unknown metric"):
            calibrate(small_config, flat_scenario, 'c_poc', (0.5,), 'power', 0.1, 2)

    def test_base_configuration_unchanged(self, small_config, flat_scenario):
        calibrate_c_poc(small_config, flat_scenario, candidates=(0.1, 0.2), n_sim=2, seed=1)
        assert small_config.c_poc == 0.9

    def test_validate_calibration(self, small_config, flat_scenario):
        result = calibrate_c_poc(small_config, flat_scenario, candidates=(0.5, 0.9),
                                 target=0.5, n_sim=4, seed=3)
        check = validate_calibration(result, small_config, flat_scenario, n_sim=3, seed=500)
        assert check.candidate == result.selected
        assert check.n_simulations == 3
        assert 0.0 <= check.rate <= 1.0


class TestOperatingScenarios:
    """Reduced-size runs of the reference scenarios."""

    @pytest.fixture
    def five_dose_config(self):
        return TrialConfiguration(n_posterior_samples=200)

    def test_increasing_scenario_favours_higher_doses(self, five_dose_config):
        scenario = ScenarioParameters(
            p_immune=[0.10, 0.30, 0.50, 0.60, 0.70],
            p_toxicity=np.full((5, 2), 0.05),
            p_efficacy=[[0.05, 0.10], [0.10, 0.25], [0.25, 0.45],
                        [0.35, 0.60], [0.45, 0.75]],
        )
        # no PoC gate, so every trial that runs to the end names a dose
        config = five_dose_config.with_overrides(c_poc=0.0)
        oc = simulate(config, scenario, n_sim=12, seed=2024)

        assert oc.true_optimal_dose == 5
        assert oc.selection_rate[2:].sum() >= 0.6
        assert oc.selection_rate[2:].sum() > oc.selection_rate[:2].sum()
        assert oc.mean_patients_per_dose[3:].sum() > oc.mean_patients_per_dose[:2].sum()

    def test_flat_scenario_detection_near_target(self, five_dose_config):
        flat = ScenarioParameters.null_flat(n_doses=5, phi_I=0.25, phi_E=0.30, tox_flat=0.05)
        result = calibrate_c_poc(five_dose_config, flat, candidates=(0.7, 0.9, 1.0),
                                 target=0.10, n_sim=20, seed=31)

        assert result.control_achieved
        assert result.selected_point.rate <= 0.10
        check = validate_calibration(result, five_dose_config, flat, n_sim=20, seed=7001)
        assert check.candidate == result.selected
        assert check.rate <= result.target + 0.2

    def test_unfavorable_scenario_mostly_stops(self, five_dose_config):
        result = calibrate_early_termination(five_dose_config, parameter='c_T',
                                             candidates=(0.7, 0.9), target=0.8,
                                             n_sim=10, seed=17)

        assert result.control_achieved
        assert result.selected in (0.7, 0.9)
        assert result.selected_point.rate >= 0.8
        assert all(p.n_failed == 0 for p in result.points)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
