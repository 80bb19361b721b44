"""
Heteroskedasticity correction for cluster-level contrasts.

Ferman and Pinto (2019) model the variance of a cluster's contrast ``W`` as
a linear function of a precision proxy ``q`` (roughly the inverse of the
cluster's population). The model is fitted by weighted least squares of
``(W - mean(W))**2`` on ``[1, q]``; predicted values are the corrected
variances.

Small samples can produce non-positive predictions. The fallback rules are
applied in a fixed order and the two branches are not interchangeable:

1. non-positive minimum and negative slope -> constant variance 1
2. non-positive minimum and negative intercept -> variance ``q``
3. non-positive minimum otherwise (flat fit at zero) -> constant variance 1
4. otherwise keep the regression predictions
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional
import warnings

import numpy as np
import statsmodels.api as sm

from ..warnings_categories import NumericalWarning


@dataclass
class VarianceCorrection:
    """
    Corrected per-cluster variances and the fit that produced them.

    Attributes
    ----------
    variance : ndarray
        Strictly positive corrected variance per cluster.
    intercept, slope : float
        Coefficients of the variance regression.
    branch : {'regression', 'constant', 'precision_proxy'}
        Which rule produced ``variance``.
    """
    variance: np.ndarray
    intercept: float
    slope: float
    branch: Literal['regression', 'constant', 'precision_proxy']

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.variance)


def correct_variance(
    W: np.ndarray,
    q: np.ndarray,
    population: Optional[np.ndarray] = None,
) -> VarianceCorrection:
    """
    Fit the variance model and apply the ordered fallback rules.

    Parameters
    ----------
    W : array-like
        Cluster contrasts.
    q : array-like
        Strictly positive precision proxies.
    population : array-like, optional
        Regression weights (cluster population sizes); equal when omitted.

    Returns
    -------
    VarianceCorrection
    """
    W = np.asarray(W, dtype=np.float64)
    q = np.asarray(q, dtype=np.float64)
    if W.shape != q.shape:
        raise ValueError(f"W and q shapes differ: {W.shape} vs {q.shape}")
    if np.any(~np.isfinite(q)) or np.any(q <= 0):
        raise ValueError("precision proxy q must be finite and strictly positive")
    weights = (
        np.ones_like(W) if population is None
        else np.asarray(population, dtype=np.float64)
    )

    dev_sq = (W - W.mean()) ** 2
    X = sm.add_constant(q, has_constant='add')
    fit = sm.WLS(dev_sq, X, weights=weights).fit()
    intercept, slope = (float(v) for v in np.asarray(fit.params))
    predicted = intercept + slope * q

    if predicted.min() > 0:
        return VarianceCorrection(predicted, intercept, slope, 'regression')

    if slope < 0:
        variance, branch = np.ones_like(q), 'constant'
    elif intercept < 0:
        variance, branch = q.copy(), 'precision_proxy'
    else:
        variance, branch = np.ones_like(q), 'constant'

    warnings.warn(
        f"Variance regression predicted a non-positive variance "
        f"(min={predicted.min():.4g}, intercept={intercept:.4g}, "
        f"slope={slope:.4g}); using the '{branch}' fallback.",
        NumericalWarning,
        stacklevel=2,
    )
    return VarianceCorrection(variance, intercept, slope, branch)
