"""
Weighted isotonic regression for batches of posterior draws.

The posterior engine needs a monotone projection of every posterior draw
(typically 1000 draws per analysis), so the solvers here work on whole
arrays at once instead of fitting draw by draw.
"""

import numpy as np


def pava_batch(y: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Weighted non-decreasing isotonic regression along the last axis.

    Computes the same solution as the pool-adjacent-violators algorithm
    through the max-min block average characterisation

        x_i = max_{s <= i} min_{t >= i} Avg_w(y[s..t])

    which only needs cumulative sums and vectorises across all leading
    axes. The cost is quadratic in the length of the last axis, which is
    the (small) number of dose levels.

    Parameters
    ----------
    y : np.ndarray
        Values of shape (..., L)
    weights : np.ndarray
        Positive weights broadcastable to ``y.shape``

    Returns
    -------
    np.ndarray
        Fitted non-decreasing values with the shape of ``y``
    """
    y = np.asarray(y, dtype=float)
    w = np.broadcast_to(np.asarray(weights, dtype=float), y.shape)
    if np.any(w <= 0) or not np.all(np.isfinite(w)):
        raise ValueError("isotonic regression weights must be positive and finite")

    length = y.shape[-1]
    if length <= 1:
        return y.copy()

    pad = [(0, 0)] * (y.ndim - 1) + [(1, 0)]
    cum_w = np.pad(np.cumsum(w, axis=-1), pad)
    cum_wy = np.pad(np.cumsum(w * y, axis=-1), pad)

    fitted = np.full(y.shape, -np.inf)
    for s in range(length):
        # avg[..., k] is the weighted mean of y[s..s+k]
        avg = ((cum_wy[..., s + 1:] - cum_wy[..., s:s + 1]) /
               (cum_w[..., s + 1:] - cum_w[..., s:s + 1]))
        suffix_min = np.minimum.accumulate(avg[..., ::-1], axis=-1)[..., ::-1]
        fitted[..., s:] = np.maximum(fitted[..., s:], suffix_min)
    return fitted


def isotonic_along_axis(y: np.ndarray, weights: np.ndarray, axis: int) -> np.ndarray:
    """Weighted isotonic regression of ``y`` along ``axis``."""
    y = np.asarray(y, dtype=float)
    w = np.broadcast_to(np.asarray(weights, dtype=float), y.shape)
    fitted = pava_batch(np.moveaxis(y, axis, -1), np.moveaxis(w, axis, -1))
    return np.moveaxis(fitted, -1, axis)


def _monotone_per_draw(x: np.ndarray, axis: int) -> np.ndarray:
    return np.all(np.diff(x, axis=axis) >= 0, axis=(-2, -1))


def _dykstra(y: np.ndarray, w: np.ndarray, max_iter: int, tol: float) -> np.ndarray:
    # y, w have shape (n, J, G); converged draws drop out of the active set
    x = y.copy()
    p = np.zeros_like(y)
    q = np.zeros_like(y)
    active = np.arange(len(y))
    for _ in range(max_iter):
        x_old, w_active = x[active], w[active]
        rows = isotonic_along_axis(x_old + p[active], w_active, axis=-2)
        p[active] = x_old + p[active] - rows
        x_new = isotonic_along_axis(rows + q[active], w_active, axis=-1)
        q[active] = rows + q[active] - x_new
        change = np.maximum(np.abs(x_new - x_old).max(axis=(-2, -1)),
                            np.abs(x_new - rows).max(axis=(-2, -1)))
        x[active] = x_new
        active = active[change >= tol]
        if len(active) == 0:
            break
    return x


def bivariate_isotonic(y: np.ndarray, weights: np.ndarray,
                       max_iter: int = 500, tol: float = 1e-10) -> np.ndarray:
    """
    Weighted least-squares projection onto matrices that are non-decreasing
    along both of their last two axes.

    Most posterior draws are solved exactly by a single one-axis
    projection: if the isotonic fit along one axis is already monotone
    along the other, it is the projection onto the intersection. The
    remaining draws go through Dykstra's alternating projections between
    the two cones, each draw leaving the iteration as soon as its own
    change drops below ``tol``. A final cumulative maximum along both
    axes removes residual violations of order ``tol``.

    Parameters
    ----------
    y : np.ndarray
        Values of shape (..., J, G)
    weights : np.ndarray
        Positive weights broadcastable to ``y.shape`` (usually (J, G))
    max_iter : int
        Maximum number of Dykstra cycles
    tol : float
        Convergence tolerance on a draw's largest change between cycles

    Returns
    -------
    np.ndarray
        Fitted values with the shape of ``y``
    """
    y = np.asarray(y, dtype=float)
    if y.ndim < 2:
        raise ValueError("bivariate_isotonic needs at least two axes")
    shape = y.shape
    w = np.broadcast_to(np.asarray(weights, dtype=float), shape).reshape((-1,) + shape[-2:])
    y = y.reshape(w.shape)

    x = isotonic_along_axis(y, w, axis=-2)
    pending = np.flatnonzero(~_monotone_per_draw(x, axis=-1))
    if len(pending):
        by_group = isotonic_along_axis(y[pending], w[pending], axis=-1)
        solved = _monotone_per_draw(by_group, axis=-2)
        x[pending[solved]] = by_group[solved]
        hard = pending[~solved]
        if len(hard):
            x[hard] = _dykstra(y[hard], w[hard], max_iter, tol)

    x = np.maximum.accumulate(x, axis=-1)
    x = np.maximum.accumulate(x, axis=-2)
    return x.reshape(shape)


def is_monotone(x: np.ndarray, axis: int = -1, atol: float = 0.0) -> bool:
    """True if ``x`` is non-decreasing along ``axis``."""
    return bool(np.all(np.diff(x, axis=axis) >= -atol))
