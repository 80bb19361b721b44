"""
Block bootstrap with heteroskedasticity correction (Ferman-Pinto).

Clusters are resampled with replacement from the pooled set of treated and
control clusters. The treated/control positions, their population weights
and their corrected variances stay fixed; only the contrast values move.
For replication ``b`` and position ``j`` with drawn cluster ``k = idx[b, j]``:

    unadjusted value  W[k]
    adjusted value    W[k] / sd[k] * sd[j]

and the statistic is the simple mean over treated positions minus the
population-weighted mean over control positions.

The engine only produces raw draws. P-values compare the squared draws
with the squared point estimate of the full model, which the caller
supplies through :meth:`BlockBootstrapResult.pvalues`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

from ..exceptions import InvalidParameterError, NoControlUnitsError, NoTreatedUnitsError


# Memory budget for the (chunk, N) index and value matrices (bytes).
_MAX_BATCH_MEMORY_BYTES: int = 256 * 1024 * 1024


@dataclass
class BlockBootstrapResult:
    """
    Raw block bootstrap draws.

    Attributes
    ----------
    unadjusted : ndarray, shape (B,)
        Treated-minus-control statistic from raw contrasts.
    adjusted : ndarray, shape (B,)
        Same statistic from variance-normalized contrasts rescaled to each
        position's corrected standard deviation.
    n_reps : int
    n_clusters : int
    n_treated : int
    """
    unadjusted: np.ndarray
    adjusted: np.ndarray
    n_reps: int
    n_clusters: int
    n_treated: int

    def pvalues(self, alpha_hat: float) -> Tuple[float, float]:
        """
        Share of replications whose squared statistic exceeds ``alpha_hat**2``.

        Parameters
        ----------
        alpha_hat : float
            Treatment coefficient of the full model.

        Returns
        -------
        (p_unadjusted, p_adjusted) : tuple of float
        """
        target = float(alpha_hat) ** 2
        p_unadj = float(np.mean(self.unadjusted ** 2 > target))
        p_adj = float(np.mean(self.adjusted ** 2 > target))
        return p_unadj, p_adj

    def to_frame(self) -> pd.DataFrame:
        """Per-replication draws for diagnostic output."""
        return pd.DataFrame({
            'replication_id': np.arange(self.n_reps),
            'unadjusted_statistic': self.unadjusted,
            'adjusted_statistic': self.adjusted,
        })


def _draw_cluster_indices(rng: np.random.Generator, n_reps: int, n_clusters: int) -> np.ndarray:
    """Uniform draws with replacement; row ``b`` is replication ``b``."""
    return rng.integers(0, n_clusters, size=(n_reps, n_clusters))


def _treated_minus_control(
    values: np.ndarray,
    treated: np.ndarray,
    control_weights: np.ndarray,
) -> np.ndarray:
    """
    Row-wise treated mean minus population-weighted control mean.

    Parameters
    ----------
    values : ndarray, shape (B, N)
    treated : ndarray of bool, shape (N,)
    control_weights : ndarray, shape (N_control,)
        Normalized to sum to one.
    """
    w1 = values[:, treated].mean(axis=1)
    w0 = values[:, ~treated] @ control_weights
    return w1 - w0


def _block_bootstrap_core(
    idx: np.ndarray,
    W: np.ndarray,
    W_normalized: np.ndarray,
    sd: np.ndarray,
    treated: np.ndarray,
    control_weights: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    unadjusted = _treated_minus_control(W[idx], treated, control_weights)
    adjusted = _treated_minus_control(
        W_normalized[idx] * sd[np.newaxis, :], treated, control_weights
    )
    return unadjusted, adjusted


def block_bootstrap(
    cluster_stats: pd.DataFrame,
    n_reps: int,
    rng: np.random.Generator,
) -> BlockBootstrapResult:
    """
    Run the Ferman-Pinto block bootstrap.

    Parameters
    ----------
    cluster_stats : pd.DataFrame
        One row per cluster with columns ``W``, ``W_normalized``,
        ``corrected_variance``, ``population`` and ``treated``.
    n_reps : int
        Number of replications ``B``.
    rng : numpy.random.Generator
        Task-owned generator.

    Returns
    -------
    BlockBootstrapResult

    Raises
    ------
    InvalidParameterError
        If ``n_reps`` is not positive or a required column is missing.
    NoTreatedUnitsError, NoControlUnitsError
        If either side of the comparison is empty.
    """
    if n_reps is None or n_reps <= 0:
        raise InvalidParameterError(f'n_reps must be positive, got {n_reps}')
    required = ['W', 'W_normalized', 'corrected_variance', 'population', 'treated']
    missing = [c for c in required if c not in cluster_stats.columns]
    if missing:
        raise InvalidParameterError(f'cluster_stats missing columns: {missing}')

    W = cluster_stats['W'].to_numpy(dtype=np.float64)
    W_normalized = cluster_stats['W_normalized'].to_numpy(dtype=np.float64)
    sd = np.sqrt(cluster_stats['corrected_variance'].to_numpy(dtype=np.float64))
    treated = cluster_stats['treated'].to_numpy(dtype=bool)
    population = cluster_stats['population'].to_numpy(dtype=np.float64)

    N = len(W)
    n_treated = int(treated.sum())
    if n_treated == 0:
        raise NoTreatedUnitsError('Block bootstrap requires at least one treated cluster')
    if n_treated == N:
        raise NoControlUnitsError('Block bootstrap requires at least one control cluster')
    control_weights = population[~treated] / population[~treated].sum()

    # index matrix plus two value matrices per chunk
    chunk_size = max(1, _MAX_BATCH_MEMORY_BYTES // (3 * N * 8))
    unadj_parts = []
    adj_parts = []
    for start in range(0, n_reps, chunk_size):
        size = min(chunk_size, n_reps - start)
        idx = _draw_cluster_indices(rng, size, N)
        unadj, adj = _block_bootstrap_core(
            idx, W, W_normalized, sd, treated, control_weights
        )
        unadj_parts.append(unadj)
        adj_parts.append(adj)

    return BlockBootstrapResult(
        unadjusted=np.concatenate(unadj_parts),
        adjusted=np.concatenate(adj_parts),
        n_reps=int(n_reps),
        n_clusters=N,
        n_treated=n_treated,
    )
