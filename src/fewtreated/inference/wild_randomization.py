"""
Randomization inference combined with the wild cluster bootstrap.

Builds the null distribution of the treatment coefficient and its
cluster-robust t-statistic from ``n + 1`` assignment worlds: world 0 keeps
the real treatment, and world ``j`` moves the treatment to the ``j``-th
never-treated cluster (a placebo). Within every world, ``B`` synthetic
outcomes are generated from the null model (treatment excluded)

    y*_ic = fitted_ic + s_c * resid_ic,    s_c in {-1, +1}

with one Rademacher sign per cluster, and the world's treatment indicator
is re-estimated against each synthetic outcome. The observed statistics are
compared with all ``(n + 1) * B`` draws.

All replications of a world are computed in one batch: the fixed effects
are absorbed once for the design, the synthetic outcomes are demeaned as a
matrix, and coefficients and cluster-robust variances come from
precomputed projection matrices and ``einsum`` contractions.

Notes
-----
Placebo clusters are enumerated in sorted order of their identifiers, so the
order in which the caller lists them does not change the draws.

A failed draw is never dropped. Any non-finite coefficient or t-statistic
raises :class:`~fewtreated.exceptions.EstimationError`, because the p-value
denominator must count every draw.

References
----------
MacKinnon, J. G. and Webb, M. D. (2020). Randomization Inference for
Difference-in-Differences with Few Treated Clusters. Journal of
Econometrics 218(2), 435-450.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple
import warnings

import numpy as np
import pandas as pd

from ..exceptions import (
    EstimationError,
    InvalidParameterError,
    MissingRequiredColumnError,
    NoControlUnitsError,
)
from ..regression import FixedEffectsAbsorber, fit_fe_ols, observation_weights
from ..warnings_categories import NumericalWarning, SmallSampleWarning


# Below this many placebo worlds the randomization distribution is coarse.
MIN_RECOMMENDED_WORLDS = 20

# Memory budget for the (chunk, N) float64 sign, outcome and residual matrices.
_MAX_BATCH_MEMORY_BYTES: int = 256 * 1024 * 1024


@dataclass
class RandomizationResult:
    """
    Result of wild-bootstrap randomization inference.

    Attributes
    ----------
    coef_obs : float
        Observed treatment coefficient.
    t_obs : float
        Observed cluster-robust t-statistic.
    p_value_coefficient : float
        Share of draws with ``|b*| > |coef_obs|``.
    p_value_tstat : float
        Share of draws with ``|t*| > |t_obs|``.
    world_clusters : list
        Treated cluster of each world; entry 0 is ``None`` (real assignment).
    n_reps : int
        Wild replications per world.
    coefficients : ndarray, shape (n_worlds, n_reps)
    t_stats : ndarray, shape (n_worlds, n_reps)
    """
    coef_obs: float
    t_obs: float
    p_value_coefficient: float
    p_value_tstat: float
    world_clusters: list
    n_reps: int
    coefficients: np.ndarray = field(repr=False)
    t_stats: np.ndarray = field(repr=False)

    @property
    def n_worlds(self) -> int:
        return len(self.world_clusters)

    @property
    def n_draws(self) -> int:
        return self.n_worlds * self.n_reps

    @property
    def pvalue_resolution(self) -> float:
        """Smallest nonzero p-value the draws can produce."""
        return 1.0 / self.n_draws

    def to_frame(self) -> pd.DataFrame:
        """Long table of every draw for diagnostic output."""
        n_worlds, n_reps = self.coefficients.shape
        return pd.DataFrame({
            'world_id': np.repeat(np.arange(n_worlds), n_reps),
            'placebo_cluster': np.repeat(
                np.array(self.world_clusters, dtype=object), n_reps
            ),
            'replication_id': np.tile(np.arange(n_reps), n_worlds),
            'coefficient': self.coefficients.ravel(),
            't_statistic': self.t_stats.ravel(),
        })


def _generate_rademacher_weights(
    rng: np.random.Generator, n_reps: int, n_clusters: int
) -> np.ndarray:
    """(B, G) matrix of independent cluster-level signs."""
    return rng.choice(np.array([-1.0, 1.0]), size=(n_reps, n_clusters))


def _precompute_projection(
    X_dm: np.ndarray,
    weights: np.ndarray,
    obs_cluster_idx: np.ndarray,
    n_clusters: int,
) -> dict:
    """
    Precompute the matrices shared by every replication of one world.

    Parameters
    ----------
    X_dm : ndarray, shape (N, k)
        Demeaned design; column 0 is the treatment indicator.
    weights : ndarray, shape (N,)
    obs_cluster_idx : ndarray, shape (N,)
        Cluster index of each observation.
    n_clusters : int

    Returns
    -------
    dict
        X : (N, k) design; P : (k, N) projection ``(X'WX)^-1 X'W``;
        XtWX_inv : (k, k); cluster_masks / cluster_X / cluster_w : per-cluster
        slices; G, N, k; correction : ``G/(G-1) * (N-1)/(N-k)``.

    Raises
    ------
    EstimationError
        If ``X'WX`` is singular.
    """
    N, k = X_dm.shape
    XtW = (X_dm * weights[:, np.newaxis]).T
    XtWX = XtW @ X_dm
    if np.linalg.matrix_rank(XtWX) < k:
        raise EstimationError(
            'Treatment indicator is collinear with the fixed effects or controls '
            'after absorption.'
        )
    cond = np.linalg.cond(XtWX)
    if cond > 1e10:
        warnings.warn(
            f"Design matrix condition number is large ({cond:.2e}). "
            f"Numerical accuracy may be reduced.",
            NumericalWarning,
            stacklevel=3,
        )
    XtWX_inv = np.linalg.inv(XtWX)

    cluster_masks = []
    cluster_X = []
    cluster_w = []
    for g in range(n_clusters):
        mask = obs_cluster_idx == g
        cluster_masks.append(mask)
        cluster_X.append(X_dm[mask])
        cluster_w.append(weights[mask])

    correction = (n_clusters / (n_clusters - 1)) * ((N - 1) / (N - k))

    return {
        'X': X_dm, 'P': XtWX_inv @ XtW, 'XtWX_inv': XtWX_inv,
        'cluster_masks': cluster_masks, 'cluster_X': cluster_X,
        'cluster_w': cluster_w,
        'G': n_clusters, 'N': N, 'k': k, 'correction': correction,
    }


def _batch_cluster_variance_00(Residuals: np.ndarray, precomp: dict) -> np.ndarray:
    """
    Cluster-robust variance of coefficient 0 for every replication.

    For each cluster ``g`` the weighted scores ``X_g' diag(w_g) e_g`` of all
    replications form a (k, B) block; their outer products accumulate into
    a (k, k, B) meat array that is contracted with row 0 of the bread.

    Parameters
    ----------
    Residuals : ndarray, shape (B, N)
    precomp : dict
        Output of :func:`_precompute_projection`.

    Returns
    -------
    ndarray, shape (B,)
    """
    B = Residuals.shape[0]
    k = precomp['k']
    a = precomp['XtWX_inv'][0, :]

    Meat = np.zeros((k, k, B))
    for mask, X_g, w_g in zip(
        precomp['cluster_masks'], precomp['cluster_X'], precomp['cluster_w']
    ):
        Scores_g = (X_g * w_g[:, np.newaxis]).T @ Residuals[:, mask].T
        Meat += np.einsum('ib,jb->ijb', Scores_g, Scores_g)

    return precomp['correction'] * np.einsum('i,ijb,j->b', a, Meat, a)


def _batch_fit(Y_dm: np.ndarray, precomp: dict) -> Tuple[np.ndarray, np.ndarray]:
    """
    Coefficients and t-statistics of the treatment for a batch of outcomes.

    Parameters
    ----------
    Y_dm : ndarray, shape (B, N)
        Demeaned synthetic outcomes, one replication per row.
    precomp : dict

    Returns
    -------
    coefficients : ndarray, shape (B,)
    t_stats : ndarray, shape (B,)
    """
    Beta = precomp['P'] @ Y_dm.T                       # (k, B)
    Residuals = Y_dm - (precomp['X'] @ Beta).T         # (B, N)
    var_00 = _batch_cluster_variance_00(Residuals, precomp)
    se = np.sqrt(np.where(var_00 > 0, var_00, np.nan))
    coefficients = Beta[0, :].copy()
    return coefficients, coefficients / se


def _world_draws(
    signs: np.ndarray,
    obs_cluster_idx: np.ndarray,
    fitted_dm: np.ndarray,
    residuals: np.ndarray,
    absorber: FixedEffectsAbsorber,
    precomp: dict,
    chunk_size: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Run all replications of one world in memory-bounded chunks."""
    coef_parts = []
    t_parts = []
    for start in range(0, signs.shape[0], chunk_size):
        chunk = signs[start:start + chunk_size]
        # (B, N) sign-flipped residuals; the fitted part is already demeaned
        E = chunk[:, obs_cluster_idx] * residuals[np.newaxis, :]
        Y_dm = fitted_dm[np.newaxis, :] + absorber.demean(E.T).T
        coef, t = _batch_fit(Y_dm, precomp)
        coef_parts.append(coef)
        t_parts.append(t)
    return np.concatenate(coef_parts), np.concatenate(t_parts)


def wild_randomization_inference(
    data: pd.DataFrame,
    fitted: np.ndarray,
    residuals: np.ndarray,
    treatment: str,
    cluster: str,
    post: str,
    placebo_clusters: Sequence,
    *,
    group: Optional[str] = None,
    fixed_effects: Sequence = (),
    controls: Sequence[str] = (),
    weight: Optional[str] = None,
    n_reps: int = 1000,
    rng: Optional[np.random.Generator] = None,
    coef_obs: Optional[float] = None,
    t_obs: Optional[float] = None,
) -> RandomizationResult:
    """
    Wild-bootstrap randomization inference for H0: treatment effect = 0.

    Parameters
    ----------
    data : pd.DataFrame
        Estimation sample.
    fitted, residuals : ndarray, shape (N,)
        Fitted values (fixed effects included) and residuals of the null
        model, which omits the treatment indicator.
    treatment : str
        Real treatment indicator column (world 0).
    cluster : str
        Cluster column; signs are drawn per cluster.
    post : str
        Post-treatment indicator used to build placebo indicators.
    placebo_clusters : sequence
        Never-treated clusters eligible as placebo-treated. Duplicates are
        ignored and the order does not matter.
    group : str, optional
        Group flag; placebo indicators are ``1[cluster == c] * post * group``.
    fixed_effects : sequence, default ()
        Absorbed fixed-effect keys.
    controls : sequence of str, default ()
        Additional regressors, kept in every world.
    weight : str, optional
        Weight column.
    n_reps : int, default 1000
        Wild replications per world.
    rng : numpy.random.Generator, optional
        Task-owned generator; a fresh unseeded one when omitted.
    coef_obs, t_obs : float, optional
        Observed statistics. Estimated from the real treatment when omitted.

    Returns
    -------
    RandomizationResult

    Raises
    ------
    InvalidParameterError
        If ``n_reps`` is not positive or inputs are misaligned.
    MissingRequiredColumnError
        If a named column is absent.
    NoControlUnitsError
        If no placebo cluster is available.
    EstimationError
        If any world is singular or any draw is not finite.
    """
    if n_reps is None or n_reps <= 0:
        raise InvalidParameterError(f'n_reps must be positive, got {n_reps}')
    controls = list(controls)
    needed = [treatment, cluster, post] + controls
    needed += [c for c in (group, weight) if c is not None]
    missing = [c for c in needed if c not in data.columns]
    if missing:
        raise MissingRequiredColumnError(
            f"Required column(s) not found in data: {missing}"
        )
    fitted = np.asarray(fitted, dtype=np.float64)
    residuals = np.asarray(residuals, dtype=np.float64)
    if fitted.shape != (len(data),) or residuals.shape != (len(data),):
        raise InvalidParameterError(
            'fitted and residuals must be 1-D arrays aligned with data'
        )
    if rng is None:
        rng = np.random.default_rng()

    cluster_values = data[cluster].to_numpy()
    unique_clusters, obs_cluster_idx = np.unique(cluster_values, return_inverse=True)
    obs_cluster_idx = obs_cluster_idx.ravel()
    G = len(unique_clusters)

    placebos = np.unique(np.asarray(list(placebo_clusters), dtype=unique_clusters.dtype))
    unknown = np.setdiff1d(placebos, unique_clusters)
    if len(unknown) > 0:
        raise InvalidParameterError(
            f"Placebo cluster(s) not present in data: {list(unknown)[:5]}"
        )
    if len(placebos) == 0:
        raise NoControlUnitsError(
            'Randomization inference requires at least one never-treated cluster'
        )
    if len(placebos) < MIN_RECOMMENDED_WORLDS:
        warnings.warn(
            f"Only {len(placebos)} placebo cluster(s) available; the randomization "
            f"distribution mixes few assignments and may be poorly sized.",
            SmallSampleWarning,
            stacklevel=2,
        )

    w = observation_weights(data, weight)
    absorber = FixedEffectsAbsorber.from_frame(data, fixed_effects, w)

    if coef_obs is None or t_obs is None:
        # the null model reproduces the outcome exactly: y = fitted + resid
        observed = fit_fe_ols(
            data.assign(_y_observed=fitted + residuals), '_y_observed',
            [treatment] + controls, fixed_effects, weight, cluster,
            absorber=absorber,
        )
        coef_obs = observed.coefficient if coef_obs is None else coef_obs
        t_obs = observed.t_stat if t_obs is None else t_obs

    controls_dm = (
        absorber.demean(data[controls].to_numpy(dtype=np.float64))
        if controls else np.empty((len(data), 0))
    )
    fitted_dm = absorber.demean(fitted)
    base_indicator = data[post].to_numpy(dtype=np.float64)
    if group is not None:
        base_indicator = base_indicator * data[group].to_numpy(dtype=np.float64)

    world_clusters = [None] + list(placebos)
    indicators = [data[treatment].to_numpy(dtype=np.float64)]
    for c in placebos:
        indicators.append(base_indicator * (cluster_values == c))

    chunk_size = max(1, _MAX_BATCH_MEMORY_BYTES // (3 * len(data) * 8))
    coefficients = np.empty((len(world_clusters), n_reps))
    t_stats = np.empty((len(world_clusters), n_reps))
    for j, indicator in enumerate(indicators):
        if not np.any(indicator):
            raise EstimationError(
                f"Placebo indicator for cluster {world_clusters[j]!r} is all zero; "
                f"the cluster has no post-period observations in the treated group."
            )
        X_dm = np.column_stack([absorber.demean(indicator), controls_dm])
        precomp = _precompute_projection(X_dm, w, obs_cluster_idx, G)
        signs = _generate_rademacher_weights(rng, n_reps, G)
        coefficients[j], t_stats[j] = _world_draws(
            signs, obs_cluster_idx, fitted_dm, residuals, absorber, precomp, chunk_size
        )

    bad = ~(np.isfinite(coefficients) & np.isfinite(t_stats))
    if bad.any():
        world, rep = np.argwhere(bad)[0]
        raise EstimationError(
            f"{int(bad.sum())} randomization draw(s) produced non-finite estimates "
            f"(first: world {world}, placebo cluster {world_clusters[world]!r}, "
            f"replication {rep}). Draws cannot be dropped without biasing the "
            f"p-value."
        )

    p_coef = float(np.mean(np.abs(coefficients) > abs(coef_obs)))
    p_t = float(np.mean(np.abs(t_stats) > abs(t_obs)))

    return RandomizationResult(
        coef_obs=float(coef_obs),
        t_obs=float(t_obs),
        p_value_coefficient=p_coef,
        p_value_tstat=p_t,
        world_clusters=world_clusters,
        n_reps=int(n_reps),
        coefficients=coefficients,
        t_stats=t_stats,
    )
