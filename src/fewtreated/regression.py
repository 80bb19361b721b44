"""
Linear fixed-effects regression with cluster-robust standard errors.

Implements the regression used by every inference stage: weighted least
squares of an outcome on a treatment indicator and optional controls, with
any number of high-dimensional fixed effects absorbed by weighted
alternating projections (the Frisch-Waugh-Lovell within transformation).
The final fit on the demeaned data uses statsmodels WLS with a
cluster-robust covariance, so the standard error carries the usual
small-sample factor ``G/(G-1) * (N-1)/(N-K)`` with ``K`` the number of
non-absorbed regressors.

The absorber is exposed separately because the randomization engine
re-demeans thousands of synthetic outcomes in batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence
import warnings

import numpy as np
import pandas as pd
import scipy.sparse as sp
import statsmodels.api as sm

from .exceptions import EstimationError, RegressionConvergenceError
from .warnings_categories import NumericalWarning


DEFAULT_TOL = 1e-10
DEFAULT_MAX_ITER = 1000


def fixed_effect_codes(data: pd.DataFrame, fixed_effects: Sequence) -> list:
    """
    Integer level codes for each fixed-effect key.

    Parameters
    ----------
    data : pd.DataFrame
        Estimation sample.
    fixed_effects : sequence
        Column names or tuples of column names (interacted).

    Returns
    -------
    list of ndarray
        One int64 code vector per key. An empty specification yields a
        single all-zero vector, i.e. a plain intercept.
    """
    codes = []
    for key in fixed_effects:
        cols = [key] if isinstance(key, str) else list(key)
        codes.append(
            data.groupby(cols, sort=True, dropna=False).ngroup().to_numpy(dtype=np.int64)
        )
    if not codes:
        codes.append(np.zeros(len(data), dtype=np.int64))
    return codes


class FixedEffectsAbsorber:
    """
    Weighted within-transformation for one or more fixed-effect dimensions.

    Each dimension is represented by a sparse N×L indicator matrix. One
    sweep subtracts, dimension by dimension, the weighted group means; sweeps
    repeat until the largest update falls below ``tol`` times the scale of
    the input. A single dimension converges in one sweep.

    Parameters
    ----------
    codes : list of ndarray
        Level codes from :func:`fixed_effect_codes`.
    weights : ndarray
        Non-negative observation weights.
    tol : float, default 1e-10
        Relative convergence tolerance.
    max_iter : int, default 1000
        Maximum number of sweeps.
    """

    def __init__(self, codes: list, weights: np.ndarray,
                 tol: float = DEFAULT_TOL, max_iter: int = DEFAULT_MAX_ITER):
        self.weights = np.asarray(weights, dtype=np.float64)
        self.n_obs = len(self.weights)
        self.tol = tol
        self.max_iter = max_iter
        self._indicators = []
        self._inv_group_weight = []
        for c in codes:
            n_levels = int(c.max()) + 1 if len(c) else 0
            S = sp.csr_matrix(
                (np.ones(self.n_obs), (np.arange(self.n_obs), c)),
                shape=(self.n_obs, n_levels),
            )
            group_w = np.asarray(S.T @ self.weights).ravel()
            # Zero-weight levels carry no information; their mean is set to 0.
            inv = np.divide(1.0, group_w, out=np.zeros_like(group_w), where=group_w > 0)
            self._indicators.append(S)
            self._inv_group_weight.append(inv)

    @property
    def n_levels(self) -> int:
        """Total number of absorbed levels across dimensions."""
        return sum(S.shape[1] for S in self._indicators)

    def demean(self, values: np.ndarray) -> np.ndarray:
        """
        Remove the fixed effects from a vector or from every column of a matrix.

        Parameters
        ----------
        values : ndarray, shape (N,) or (N, m)

        Returns
        -------
        ndarray
            Demeaned copy with the same shape.

        Raises
        ------
        RegressionConvergenceError
            If ``max_iter`` sweeps do not reach the tolerance.
        """
        A = np.array(values, dtype=np.float64, copy=True)
        is_vector = A.ndim == 1
        if is_vector:
            A = A[:, np.newaxis]
        if A.shape[0] != self.n_obs:
            raise ValueError(
                f"values has {A.shape[0]} rows, absorber was built for {self.n_obs}"
            )
        if A.shape[1] == 0:
            return A[:, 0] if is_vector else A

        scale = max(float(np.max(np.abs(A))), 1.0)
        w = self.weights[:, np.newaxis]
        for _ in range(self.max_iter):
            max_update = 0.0
            for S, inv in zip(self._indicators, self._inv_group_weight):
                means = (S.T @ (w * A)) * inv[:, np.newaxis]
                update = S @ means
                A -= update
                max_update = max(max_update, float(np.max(np.abs(update))))
            if max_update <= self.tol * scale:
                break
        else:
            raise RegressionConvergenceError(
                f"Fixed-effect absorption did not converge after {self.max_iter} "
                f"sweeps (last update {max_update:.3e}, tolerance "
                f"{self.tol * scale:.3e})."
            )
        return A[:, 0] if is_vector else A

    @classmethod
    def from_frame(cls, data: pd.DataFrame, fixed_effects: Sequence,
                   weights: np.ndarray, **kwargs) -> 'FixedEffectsAbsorber':
        return cls(fixed_effect_codes(data, fixed_effects), weights, **kwargs)


@dataclass
class FEOLSResult:
    """
    Result of one fixed-effects regression.

    Attributes
    ----------
    coefficient : float
        Coefficient on the first regressor (the treatment of interest);
        NaN for the null model without regressors.
    std_error : float
        Cluster-robust standard error of ``coefficient``.
    t_stat : float
        ``coefficient / std_error``.
    params : pd.Series
        All non-absorbed coefficients, indexed by regressor name.
    residuals : ndarray
        Residuals in the demeaned space (equal to the residuals of the full
        dummy-variable regression).
    fitted_values : ndarray
        ``y - residuals`` on the original outcome scale, fixed effects
        included.
    nobs : int
    n_clusters : int
    df_resid : int
        Residual degrees of freedom, absorbed levels included.
    """
    coefficient: float
    std_error: float
    t_stat: float
    params: pd.Series
    residuals: np.ndarray
    fitted_values: np.ndarray
    nobs: int
    n_clusters: int
    df_resid: int


def observation_weights(data: pd.DataFrame, weight: Optional[str]) -> np.ndarray:
    """Weight vector as float64; ones when no weight column is configured."""
    if weight is None:
        return np.ones(len(data), dtype=np.float64)
    return data[weight].to_numpy(dtype=np.float64)


def fit_fe_ols(
    data: pd.DataFrame,
    y: str,
    regressors: Sequence[str],
    fixed_effects: Sequence = (),
    weight: Optional[str] = None,
    cluster: Optional[str] = None,
    absorber: Optional[FixedEffectsAbsorber] = None,
) -> FEOLSResult:
    """
    Weighted least squares with absorbed fixed effects.

    Parameters
    ----------
    data : pd.DataFrame
        Estimation sample (complete cases).
    y : str
        Outcome column.
    regressors : sequence of str
        Non-absorbed regressors; the first one is the coefficient of
        interest. Pass an empty sequence for the null model.
    fixed_effects : sequence, default ()
        Fixed-effect keys, see :func:`fixed_effect_codes`.
    weight : str, optional
        Weight column.
    cluster : str, optional
        Cluster column for the robust covariance. Required when regressors
        are given.
    absorber : FixedEffectsAbsorber, optional
        Reuse an absorber built for the same sample and weights.

    Returns
    -------
    FEOLSResult

    Raises
    ------
    EstimationError
        If the demeaned design is rank deficient or the fit is not finite.
    RegressionConvergenceError
        If fixed-effect absorption does not converge.
    """
    regressors = list(regressors)
    w = observation_weights(data, weight)
    if absorber is None:
        absorber = FixedEffectsAbsorber.from_frame(data, fixed_effects, w)

    y_raw = data[y].to_numpy(dtype=np.float64)
    y_dm = absorber.demean(y_raw)
    nobs = len(y_raw)
    n_clusters = int(data[cluster].nunique()) if cluster is not None else 0
    df_resid = nobs - absorber.n_levels - len(regressors)

    if not regressors:
        return FEOLSResult(
            coefficient=np.nan,
            std_error=np.nan,
            t_stat=np.nan,
            params=pd.Series(dtype=float),
            residuals=y_dm,
            fitted_values=y_raw - y_dm,
            nobs=nobs,
            n_clusters=n_clusters,
            df_resid=df_resid,
        )

    if cluster is None:
        raise ValueError("cluster is required when regressors are given")

    X_raw = data[regressors].to_numpy(dtype=np.float64)
    X_dm = absorber.demean(X_raw)
    raw_norm = np.sqrt(w @ X_raw ** 2)
    dm_norm = np.sqrt(w @ X_dm ** 2)
    absorbed = [
        name for name, before, after in zip(regressors, raw_norm, dm_norm)
        if after <= 1e-8 * max(before, 1.0)
    ]
    if absorbed:
        raise EstimationError(
            f"Regressor(s) {absorbed} are absorbed by the fixed effects "
            f"{list(fixed_effects)}; nothing is left to estimate."
        )
    XtWX = X_dm.T @ (w[:, np.newaxis] * X_dm)
    if np.linalg.matrix_rank(XtWX) < len(regressors):
        raise EstimationError(
            f"Design is rank deficient after absorbing fixed effects: "
            f"regressors {regressors} are collinear with the fixed effects "
            f"or with each other."
        )
    cond = np.linalg.cond(XtWX)
    if cond > 1e10:
        warnings.warn(
            f"Demeaned design condition number is large ({cond:.2e}). "
            f"Numerical accuracy may be reduced.",
            NumericalWarning,
            stacklevel=2,
        )

    groups = pd.factorize(data[cluster])[0]
    results = sm.WLS(y_dm, X_dm, weights=w).fit(
        cov_type='cluster', cov_kwds={'groups': groups}
    )
    params = pd.Series(np.asarray(results.params), index=regressors)
    coefficient = float(params.iloc[0])
    std_error = float(np.asarray(results.bse)[0])
    if not np.isfinite(coefficient) or not np.isfinite(std_error) or std_error <= 0:
        raise EstimationError(
            f"Regression on '{regressors[0]}' produced a non-finite estimate "
            f"(coefficient={coefficient}, std_error={std_error})."
        )

    residuals = y_dm - X_dm @ params.to_numpy()
    return FEOLSResult(
        coefficient=coefficient,
        std_error=std_error,
        t_stat=coefficient / std_error,
        params=params,
        residuals=residuals,
        fitted_values=y_raw - residuals,
        nobs=nobs,
        n_clusters=n_clusters,
        df_resid=df_resid,
    )
