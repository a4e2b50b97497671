"""
Beta-Binomial posterior engine with monotone (isotonic) adjustment.

All posteriors are recomputed from the full cumulative outcome table at
every interim analysis. Immune response is modelled per dose and adjusted
to be non-decreasing in dose. Toxicity and efficacy are modelled per
dose x immune group and adjusted to be non-decreasing along both axes.
Marginal toxicity/efficacy probabilities are obtained draw by draw by
mixing the two immune groups with the adjusted immune response draw.
"""

from dataclasses import dataclass
from typing import Optional
import numpy as np
import pandas as pd

from .isotonic import pava_batch, bivariate_isotonic
from .utils import column_quantiles


IMMUNE_GROUPS = (0, 1)


def aggregate(data: pd.DataFrame, outcome: str, n_doses: int,
              group: Optional[str] = None) -> tuple:
    """
    Success and trial counts per dose (and group).

    Parameters
    ----------
    data : pd.DataFrame
        Outcome table with a 'dose' column (1-based)
    outcome : str
        Binary outcome column
    n_doses : int
        Number of doses J; doses without patients get zero counts
    group : str, optional
        Binary grouping column (e.g. 'immune')

    Returns
    -------
    tuple
        (successes, trials) with shape (J,) or (J, 2)
    """
    dose_idx = data['dose'].to_numpy(dtype=int) - 1
    y = data[outcome].to_numpy(dtype=int)

    if group is None:
        trials = np.bincount(dose_idx, minlength=n_doses)
        successes = np.bincount(dose_idx, weights=y, minlength=n_doses)
        return successes.astype(int), trials.astype(int)

    g = data[group].to_numpy(dtype=int)
    n_groups = len(IMMUNE_GROUPS)
    cell = dose_idx * n_groups + g
    trials = np.bincount(cell, minlength=n_doses * n_groups).reshape(n_doses, n_groups)
    successes = np.bincount(cell, weights=y,
                            minlength=n_doses * n_groups).reshape(n_doses, n_groups)
    return successes.astype(int), trials.astype(int)


@dataclass
class BetaPosterior:
    """
    Conjugate Beta posterior for each cell.

    Attributes
    ----------
    successes, trials : np.ndarray
        Observed counts, shape (J,) or (J, G)
    alpha, beta : np.ndarray
        Posterior parameters r + a0 and n - r + b0
    samples : np.ndarray
        Posterior draws, shape (n_samples, J) or (n_samples, J, G)
    """
    successes: np.ndarray
    trials: np.ndarray
    alpha: np.ndarray
    beta: np.ndarray
    samples: np.ndarray

    @property
    def mean(self) -> np.ndarray:
        return self.alpha / (self.alpha + self.beta)

    @property
    def variance(self) -> np.ndarray:
        total = self.alpha + self.beta
        return (self.alpha * self.beta) / (total ** 2 * (total + 1))


def posterior_sample(successes: np.ndarray, trials: np.ndarray, n_samples: int,
                     rng: np.random.Generator,
                     prior_alpha: float = 1.0, prior_beta: float = 1.0) -> BetaPosterior:
    """
    Draw from the Beta(r + a0, n - r + b0) posterior of every cell.

    Returns
    -------
    BetaPosterior
    """
    successes = np.asarray(successes)
    trials = np.asarray(trials)
    alpha = successes + prior_alpha
    beta = trials - successes + prior_beta
    samples = rng.beta(alpha, beta, size=(n_samples,) + alpha.shape)
    return BetaPosterior(successes=successes, trials=trials, alpha=alpha,
                         beta=beta, samples=samples)


@dataclass
class PosteriorSummary:
    """
    Posterior of one outcome with its monotone adjustment.

    Univariate summaries have per-dose arrays of shape (J,); bivariate
    summaries have shape (J, 2) with column g the immune group.

    Attributes
    ----------
    outcome : str
        Outcome name
    posterior : BetaPosterior
        Unadjusted posterior
    adjusted_samples : np.ndarray
        Monotone-projected draws, same shape as ``posterior.samples``
    """
    outcome: str
    posterior: BetaPosterior
    adjusted_samples: np.ndarray

    @property
    def is_bivariate(self) -> bool:
        return self.posterior.alpha.ndim == 2

    @property
    def successes(self) -> np.ndarray:
        return self.posterior.successes

    @property
    def trials(self) -> np.ndarray:
        return self.posterior.trials

    @property
    def samples(self) -> np.ndarray:
        return self.posterior.samples

    @property
    def mean(self) -> np.ndarray:
        return self.posterior.mean

    @property
    def variance(self) -> np.ndarray:
        return self.posterior.variance

    @property
    def adjusted_mean(self) -> np.ndarray:
        return self.adjusted_samples.mean(axis=0)

    @property
    def adjusted_ci(self) -> np.ndarray:
        """2.5% and 97.5% quantiles of the adjusted draws, shape (2, ...)."""
        return column_quantiles(self.adjusted_samples)

    def to_frame(self) -> pd.DataFrame:
        """One row per dose (and immune group)."""
        ci = self.adjusted_ci
        n_doses = self.posterior.alpha.shape[0]
        columns = {}
        if self.is_bivariate:
            columns['dose'] = np.repeat(np.arange(1, n_doses + 1), len(IMMUNE_GROUPS))
            columns['immune'] = np.tile(IMMUNE_GROUPS, n_doses)
        else:
            columns['dose'] = np.arange(1, n_doses + 1)
        columns.update({
            'r': self.successes.ravel(),
            'n': self.trials.ravel(),
            'alpha_post': self.posterior.alpha.ravel(),
            'beta_post': self.posterior.beta.ravel(),
            'mean_post': self.mean.ravel(),
            'var_post': self.variance.ravel(),
            'pava_mean': self.adjusted_mean.ravel(),
            'pava_ci_lower': ci[0].ravel(),
            'pava_ci_upper': ci[1].ravel(),
        })
        return pd.DataFrame(columns)


@dataclass
class MarginalSummary:
    """
    Marginal (immune-mixed) probability of an outcome per dose.

    Attributes
    ----------
    outcome : str
        Outcome name
    samples : np.ndarray
        Draws of the marginal probability, shape (n_samples, J)
    """
    outcome: str
    samples: np.ndarray

    @property
    def mean(self) -> np.ndarray:
        return self.samples.mean(axis=0)

    @property
    def ci(self) -> np.ndarray:
        return column_quantiles(self.samples)


def enforce_monotone_univariate(samples: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """
    Project each posterior draw onto non-decreasing sequences in dose.

    Parameters
    ----------
    samples : np.ndarray
        Draws of shape (n_samples, J)
    variance : np.ndarray
        Posterior variance per dose; weights are 1 / variance

    Returns
    -------
    np.ndarray
        Adjusted draws, shape (n_samples, J)
    """
    weights = 1.0 / np.asarray(variance, dtype=float)
    return pava_batch(samples, weights)


def enforce_monotone_bivariate(samples: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """
    Project each posterior draw, viewed as a J x G matrix, onto matrices
    that are non-decreasing in both dose and immune group.

    Parameters
    ----------
    samples : np.ndarray
        Draws of shape (n_samples, J, G)
    variance : np.ndarray
        Posterior variance, shape (J, G); weights are 1 / variance

    Returns
    -------
    np.ndarray
        Adjusted draws, shape (n_samples, J, G)
    """
    weights = 1.0 / np.asarray(variance, dtype=float)
    return bivariate_isotonic(samples, weights)


def marginalize(group_samples: np.ndarray, immune_samples: np.ndarray) -> np.ndarray:
    """
    Mix group-conditional draws over the immune response draws.

    marginal = (1 - p_I) * P(outcome | I=0) + p_I * P(outcome | I=1),
    evaluated draw by draw.

    Parameters
    ----------
    group_samples : np.ndarray
        Conditional draws of shape (n_samples, J, 2)
    immune_samples : np.ndarray
        Immune response draws of shape (n_samples, J)

    Returns
    -------
    np.ndarray
        Marginal draws of shape (n_samples, J)
    """
    if group_samples.shape[:2] != immune_samples.shape:
        raise ValueError(f"Dimension mismatch in marginal probability calculation: "
                         f"group samples {group_samples.shape}, "
                         f"immune samples {immune_samples.shape}")
    return ((1 - immune_samples) * group_samples[..., 0] +
            immune_samples * group_samples[..., 1])


@dataclass
class PosteriorState:
    """
    Everything the decision rules need at one interim analysis.

    Attributes
    ----------
    immune : PosteriorSummary
        Immune response per dose (univariate)
    toxicity : PosteriorSummary
        Toxicity per dose x immune group (bivariate)
    efficacy : PosteriorSummary
        Efficacy per dose x immune group (bivariate)
    toxicity_marginal : MarginalSummary
    efficacy_marginal : MarginalSummary
    """
    immune: PosteriorSummary
    toxicity: PosteriorSummary
    efficacy: PosteriorSummary
    toxicity_marginal: MarginalSummary
    efficacy_marginal: MarginalSummary

    @property
    def n_doses(self) -> int:
        return self.immune.adjusted_samples.shape[1]

    @property
    def n_samples(self) -> int:
        return self.immune.adjusted_samples.shape[0]

    def is_finite(self) -> bool:
        arrays = (self.immune.adjusted_samples, self.toxicity.adjusted_samples,
                  self.efficacy.adjusted_samples, self.toxicity_marginal.samples,
                  self.efficacy_marginal.samples)
        return all(np.all(np.isfinite(a)) for a in arrays)

    def summary_frame(self) -> pd.DataFrame:
        """Per-dose posterior means used by the decision rules."""
        return pd.DataFrame({
            'dose': np.arange(1, self.n_doses + 1),
            'immune': self.immune.adjusted_mean,
            'toxicity_I0': self.toxicity.adjusted_mean[:, 0],
            'toxicity_I1': self.toxicity.adjusted_mean[:, 1],
            'efficacy_I0': self.efficacy.adjusted_mean[:, 0],
            'efficacy_I1': self.efficacy.adjusted_mean[:, 1],
            'toxicity_marginal': self.toxicity_marginal.mean,
            'efficacy_marginal': self.efficacy_marginal.mean,
        })


def compute_posterior_state(data: pd.DataFrame, n_doses: int, n_samples: int,
                            rng: np.random.Generator, prior_alpha: float = 1.0,
                            prior_beta: float = 1.0) -> PosteriorState:
    """
    Recompute all posteriors from the cumulative outcome table.

    Draws are taken in a fixed order (immune, toxicity, efficacy) so that a
    given generator state always gives the same result.

    Parameters
    ----------
    data : pd.DataFrame
        All outcomes observed so far
    n_doses : int
        Number of doses J
    n_samples : int
        Posterior draws per cell
    rng : np.random.Generator
        Random generator
    prior_alpha, prior_beta : float
        Beta prior pseudo-counts

    Returns
    -------
    PosteriorState
    """
    def fit(outcome, group=None):
        successes, trials = aggregate(data, outcome, n_doses, group)
        post = posterior_sample(successes, trials, n_samples, rng, prior_alpha, prior_beta)
        if group is None:
            adjusted = enforce_monotone_univariate(post.samples, post.variance)
        else:
            adjusted = enforce_monotone_bivariate(post.samples, post.variance)
        return PosteriorSummary(outcome=outcome, posterior=post, adjusted_samples=adjusted)

    immune = fit('immune')
    toxicity = fit('toxicity', group='immune')
    efficacy = fit('efficacy', group='immune')

    return PosteriorState(
        immune=immune,
        toxicity=toxicity,
        efficacy=efficacy,
        toxicity_marginal=MarginalSummary(
            'toxicity', marginalize(toxicity.adjusted_samples, immune.adjusted_samples)),
        efficacy_marginal=MarginalSummary(
            'efficacy', marginalize(efficacy.adjusted_samples, immune.adjusted_samples)),
    )
