"""
Tests for the posterior engine.
"""

import pytest
import numpy as np
import pandas as pd

from immunodose import OutcomeSampler, ScenarioParameters
from immunodose.isotonic import is_monotone
from immunodose.outcomes import empty_outcomes
from immunodose.posterior import (
    aggregate, compute_posterior_state, marginalize, posterior_sample
)


@pytest.fixture
def outcome_data():
    return pd.DataFrame({
        'patient': range(1, 9),
        'stage': [1] * 8,
        'dose': [1, 1, 1, 2, 2, 3, 3, 3],
        'immune': [0, 1, 0, 1, 1, 0, 1, 1],
        'toxicity': [0, 0, 1, 0, 1, 0, 0, 1],
        'efficacy': [1, 0, 0, 1, 1, 0, 1, 1],
    })


class TestAggregate:
    """Tests for count aggregation."""

    def test_univariate(self, outcome_data):
        successes, trials = aggregate(outcome_data, 'immune', n_doses=4)
        np.testing.assert_array_equal(successes, [1, 2, 2, 0])
        np.testing.assert_array_equal(trials, [3, 2, 3, 0])

    def test_bivariate(self, outcome_data):
        successes, trials = aggregate(outcome_data, 'toxicity', n_doses=3, group='immune')
        np.testing.assert_array_equal(trials, [[2, 1], [0, 2], [1, 2]])
        np.testing.assert_array_equal(successes, [[1, 0], [0, 1], [0, 1]])

    def test_empty(self):
        successes, trials = aggregate(empty_outcomes(), 'efficacy', n_doses=3, group='immune')
        assert successes.shape == (3, 2)
        assert trials.sum() == 0


class TestPosteriorSample:
    """Tests for conjugate Beta sampling."""

    def test_parameters(self):
        post = posterior_sample(np.array([2, 0]), np.array([5, 0]), 400,
                                np.random.default_rng(0))
        np.testing.assert_array_equal(post.alpha, [3, 1])
        np.testing.assert_array_equal(post.beta, [4, 1])
        np.testing.assert_allclose(post.mean, [3 / 7, 0.5])
        np.testing.assert_allclose(post.variance[1], 1 / 12)
        assert post.samples.shape == (400, 2)
        assert np.all((post.samples > 0) & (post.samples < 1))

    def test_prior(self):
        post = posterior_sample(np.zeros(3), np.zeros(3), 10, np.random.default_rng(0),
                                prior_alpha=2.0, prior_beta=3.0)
        np.testing.assert_allclose(post.mean, 0.4)

    def test_sample_mean(self):
        post = posterior_sample(np.array([30]), np.array([100]), 20000,
                                np.random.default_rng(1))
        assert post.samples.mean() == pytest.approx(post.mean[0], abs=0.005)


class TestMarginalize:
    """Tests for draw-wise mixing over immune response."""

    def test_mixing(self):
        group = np.array([[[0.1, 0.5], [0.2, 0.6]]])
        immune = np.array([[0.25, 0.5]])
        expected = [[0.75 * 0.1 + 0.25 * 0.5, 0.5 * 0.2 + 0.5 * 0.6]]
        np.testing.assert_allclose(marginalize(group, immune), expected)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="Dimension mismatch"):
            marginalize(np.zeros((10, 3, 2)), np.zeros((10, 4)))


class TestPosteriorState:
    """Tests for the full posterior recomputation."""

    @pytest.fixture
    def trial_data(self):
        scenario = ScenarioParameters(
            p_immune=[0.1, 0.3, 0.5, 0.6, 0.7],
            p_toxicity=np.tile([0.05, 0.10], (5, 1)),
            p_efficacy=[[0.1, 0.2], [0.15, 0.3], [0.2, 0.4], [0.25, 0.5], [0.3, 0.6]],
        )
        return OutcomeSampler(scenario).sample([6, 6, 6, 6, 6], rng=99)

    def test_shapes(self, trial_data):
        state = compute_posterior_state(trial_data, 5, 300, np.random.default_rng(0))

        assert state.n_doses == 5
        assert state.n_samples == 300
        assert state.immune.adjusted_samples.shape == (300, 5)
        assert state.toxicity.adjusted_samples.shape == (300, 5, 2)
        assert state.efficacy_marginal.samples.shape == (300, 5)
        assert state.is_finite()

    def test_adjusted_draws_monotone(self, trial_data):
        state = compute_posterior_state(trial_data, 5, 300, np.random.default_rng(0))

        assert is_monotone(state.immune.adjusted_samples, axis=1)
        for summary in (state.toxicity, state.efficacy):
            assert is_monotone(summary.adjusted_samples, axis=1)
            assert is_monotone(summary.adjusted_samples, axis=2)
        assert is_monotone(state.immune.adjusted_mean)

    def test_marginals_use_adjusted_draws(self, trial_data):
        state = compute_posterior_state(trial_data, 5, 200, np.random.default_rng(3))
        expected = marginalize(state.toxicity.adjusted_samples, state.immune.adjusted_samples)
        np.testing.assert_allclose(state.toxicity_marginal.samples, expected)

    def test_reproducible(self, trial_data):
        first = compute_posterior_state(trial_data, 5, 100, np.random.default_rng(5))
        second = compute_posterior_state(trial_data, 5, 100, np.random.default_rng(5))
        np.testing.assert_array_equal(first.efficacy.adjusted_samples,
                                      second.efficacy.adjusted_samples)

    def test_no_data_gives_prior_posterior(self):
        state = compute_posterior_state(empty_outcomes(), 3, 200, np.random.default_rng(0))

        assert state.is_finite()
        np.testing.assert_allclose(state.immune.mean, 0.5)
        np.testing.assert_array_equal(state.toxicity.trials, np.zeros((3, 2)))
        assert is_monotone(state.efficacy.adjusted_samples, axis=1)

    def test_frames(self, trial_data):
        state = compute_posterior_state(trial_data, 5, 100, np.random.default_rng(0))

        immune = state.immune.to_frame()
        assert len(immune) == 5
        assert 'pava_ci_upper' in immune.columns
        assert np.all(immune['pava_ci_lower'] <= immune['pava_ci_upper'])

        toxicity = state.toxicity.to_frame()
        assert len(toxicity) == 10
        assert toxicity['n'].sum() == len(trial_data)
        assert toxicity['r'].sum() == trial_data['toxicity'].sum()

        summary = state.summary_frame()
        assert list(summary['dose']) == [1, 2, 3, 4, 5]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
