"""
Tests for the Ferman-Pinto variance regression and its fallback rules.

The two non-positive fallbacks are checked with hand-computed data:

- q = [1, 1, 5, 5, 10, 10], W = [4, -4, 0, 0, 0, 0]: slope ~ -1.71,
  intercept ~ 14.4, prediction at q = 10 is negative -> constant variance.
- q = [1, 1, 5, 5, 10, 10], W = [0, 0, 0, 0, 4, -4]: slope ~ 1.84,
  intercept ~ -4.46, prediction at q = 1 is negative -> variance q.
"""

import warnings

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from fewtreated.inference import VarianceCorrection, correct_variance
from fewtreated.warnings_categories import NumericalWarning


Q = np.array([1.0, 1.0, 5.0, 5.0, 10.0, 10.0])


class TestRegressionBranch:

    def test_predictions_match_linear_fit(self):
        W = np.array([1.0, -1.0, 2.0, -2.0, 3.0, -3.0])
        q = np.array([1.0, 1.0, 5.0, 5.0, 10.0, 10.0])
        with warnings.catch_warnings():
            warnings.simplefilter('error', NumericalWarning)
            result = correct_variance(W, q)
        slope, intercept = np.polyfit(q, W ** 2, 1)
        assert result.branch == 'regression'
        assert result.slope == pytest.approx(slope)
        assert result.intercept == pytest.approx(intercept)
        np.testing.assert_allclose(result.variance, intercept + slope * q)
        np.testing.assert_allclose(result.std, np.sqrt(result.variance))

    def test_population_weights(self):
        W = np.array([1.0, -1.0, 2.0, -2.0, 3.0, -3.0])
        pop = np.array([100.0, 300.0, 50.0, 80.0, 20.0, 10.0])
        result = correct_variance(W, Q, population=pop)
        # polyfit weights multiply residuals, so pass sqrt of WLS weights
        slope, intercept = np.polyfit(Q, W ** 2, 1, w=np.sqrt(pop))
        assert result.slope == pytest.approx(slope)
        assert result.intercept == pytest.approx(intercept)

    def test_deviations_taken_from_mean(self):
        W = np.array([1.0, -1.0, 2.0, -2.0, 3.0, -3.0])
        a = correct_variance(W, Q)
        b = correct_variance(W + 5.0, Q)
        np.testing.assert_allclose(a.variance, b.variance)


class TestFallbackBranches:

    def test_negative_slope_gives_constant(self):
        W = np.array([4.0, -4.0, 0.0, 0.0, 0.0, 0.0])
        with pytest.warns(NumericalWarning, match="'constant'"):
            result = correct_variance(W, Q)
        assert result.slope < 0
        assert result.branch == 'constant'
        np.testing.assert_array_equal(result.variance, np.ones(6))

    def test_negative_intercept_gives_precision_proxy(self):
        W = np.array([0.0, 0.0, 0.0, 0.0, 4.0, -4.0])
        with pytest.warns(NumericalWarning, match="'precision_proxy'"):
            result = correct_variance(W, Q)
        assert result.slope > 0
        assert result.intercept < 0
        assert result.branch == 'precision_proxy'
        np.testing.assert_array_equal(result.variance, Q)

    def test_flat_zero_fit_gives_constant(self):
        with pytest.warns(NumericalWarning):
            result = correct_variance(np.zeros(6), Q)
        assert result.branch == 'constant'
        np.testing.assert_array_equal(result.variance, np.ones(6))


class TestInputErrors:

    @pytest.mark.parametrize("bad", [0.0, -1.0, np.nan, np.inf])
    def test_invalid_precision_proxy(self, bad):
        q = Q.copy()
        q[2] = bad
        with pytest.raises(ValueError, match='precision proxy'):
            correct_variance(np.ones(6), q)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match='shapes'):
            correct_variance(np.ones(5), Q)


class TestPositivityProperty:

    @given(
        n=st.integers(min_value=3, max_value=60),
        scale=st.floats(min_value=1e-3, max_value=1e3),
        seed=st.integers(min_value=0, max_value=10000),
    )
    @settings(max_examples=100, deadline=None)
    def test_variance_always_positive(self, n, scale, seed):
        """Whatever branch is taken, every corrected variance is positive and finite."""
        rng = np.random.default_rng(seed)
        q = rng.uniform(0.01, 2.0, size=n)
        W = rng.normal(scale=scale, size=n) * np.sqrt(q)
        pop = rng.integers(1, 1000, size=n).astype(float)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NumericalWarning)
            result = correct_variance(W, q, population=pop)
        assert isinstance(result, VarianceCorrection)
        assert result.variance.shape == (n,)
        assert np.all(np.isfinite(result.variance))
        assert np.all(result.variance > 0)
