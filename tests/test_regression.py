"""
Tests for the fixed-effects regression.

The absorbed regression is checked against an explicit dummy-variable
regression: coefficients and residuals must coincide (Frisch-Waugh-Lovell)
and the clustered standard error must differ only by the degrees-of-freedom
factor for the absorbed dummies.
"""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from fewtreated.exceptions import EstimationError, RegressionConvergenceError
from fewtreated.regression import (
    FixedEffectsAbsorber,
    fit_fe_ols,
    fixed_effect_codes,
    observation_weights,
)


@pytest.fixture
def did_panel(panel_factory):
    data = panel_factory(n_control=6, with_group=False, seed=5)
    data['treat'] = data['california'] * data['post']
    return data


def _dummy_design(data, regressors):
    state = pd.get_dummies(data['state'], prefix='s', drop_first=True, dtype=float)
    year = pd.get_dummies(data['year'], prefix='y', drop_first=True, dtype=float)
    X = pd.concat([data[regressors].astype(float), state, year], axis=1)
    return sm.add_constant(X, has_constant='add')


class TestFixedEffectsAbsorber:

    def test_single_dimension_matches_groupby(self, did_panel):
        w = did_panel['perwt'].to_numpy()
        absorber = FixedEffectsAbsorber.from_frame(did_panel, ['state'], w)
        y = did_panel['employed']
        weighted_mean = (
            (y * did_panel['perwt']).groupby(did_panel['state']).transform('sum')
            / did_panel['perwt'].groupby(did_panel['state']).transform('sum')
        )
        np.testing.assert_allclose(absorber.demean(y.to_numpy()), y - weighted_mean, atol=1e-10)

    def test_matrix_columns_demeaned_independently(self, did_panel):
        w = did_panel['perwt'].to_numpy()
        absorber = FixedEffectsAbsorber.from_frame(did_panel, ['state', 'year'], w)
        A = did_panel[['employed', 'age']].to_numpy()
        both = absorber.demean(A)
        np.testing.assert_allclose(both[:, 0], absorber.demean(A[:, 0]), atol=1e-10)
        np.testing.assert_allclose(both[:, 1], absorber.demean(A[:, 1]), atol=1e-10)

    def test_demeaned_values_orthogonal_to_levels(self, did_panel):
        w = did_panel['perwt'].to_numpy()
        absorber = FixedEffectsAbsorber.from_frame(did_panel, ['state', 'year'], w)
        e = absorber.demean(did_panel['employed'].to_numpy())
        for col in ('state', 'year'):
            sums = pd.Series(w * e).groupby(did_panel[col].to_numpy()).sum()
            np.testing.assert_allclose(sums.to_numpy(), 0.0, atol=1e-6)

    def test_non_convergence_raises(self, did_panel):
        w = did_panel['perwt'].to_numpy()
        absorber = FixedEffectsAbsorber.from_frame(
            did_panel, ['state', 'year'], w, max_iter=1
        )
        with pytest.raises(RegressionConvergenceError, match='did not converge'):
            absorber.demean(did_panel['employed'].to_numpy())

    def test_row_mismatch(self, did_panel):
        absorber = FixedEffectsAbsorber.from_frame(
            did_panel, ['state'], np.ones(len(did_panel))
        )
        with pytest.raises(ValueError, match='rows'):
            absorber.demean(np.zeros(3))

    def test_interacted_key_levels(self, panel):
        codes = fixed_effect_codes(panel, [('state', 'kids')])
        assert codes[0].max() + 1 == panel['state'].nunique() * 2

    def test_empty_specification_is_intercept(self, did_panel):
        codes = fixed_effect_codes(did_panel, [])
        assert len(codes) == 1
        assert np.all(codes[0] == 0)


class TestFitFEOLS:

    def test_matches_dummy_variable_regression(self, did_panel):
        regressors = ['treat', 'age']
        res = fit_fe_ols(
            did_panel, 'employed', regressors, fixed_effects=['state', 'year'],
            weight='perwt', cluster='state',
        )
        X = _dummy_design(did_panel, regressors)
        full = sm.WLS(did_panel['employed'], X, weights=did_panel['perwt']).fit(
            cov_type='cluster', cov_kwds={'groups': did_panel['state'].to_numpy()}
        )
        assert res.coefficient == pytest.approx(full.params['treat'], rel=1e-6)
        assert res.params['age'] == pytest.approx(full.params['age'], rel=1e-6)
        np.testing.assert_allclose(res.residuals, full.resid.to_numpy(), atol=1e-6)

        # same sandwich, different K in the small-sample factor
        N = len(did_panel)
        factor = np.sqrt((N - X.shape[1]) / (N - len(regressors)))
        assert res.std_error == pytest.approx(full.bse['treat'] * factor, rel=1e-5)

    def test_fitted_plus_residuals_is_outcome(self, did_panel):
        res = fit_fe_ols(
            did_panel, 'employed', ['treat'], fixed_effects=['state', 'year'],
            weight='perwt', cluster='state',
        )
        np.testing.assert_allclose(
            res.fitted_values + res.residuals, did_panel['employed'].to_numpy()
        )
        assert res.t_stat == pytest.approx(res.coefficient / res.std_error)
        assert res.n_clusters == did_panel['state'].nunique()
        assert res.nobs == len(did_panel)

    def test_null_model(self, did_panel):
        res = fit_fe_ols(
            did_panel, 'employed', [], fixed_effects=['state'], weight='perwt',
        )
        assert np.isnan(res.coefficient)
        assert res.params.empty
        w = did_panel['perwt'].to_numpy()
        sums = pd.Series(w * res.residuals).groupby(did_panel['state'].to_numpy()).sum()
        np.testing.assert_allclose(sums.to_numpy(), 0.0, atol=1e-6)

    def test_regressor_absorbed_by_fixed_effects(self, panel):
        with pytest.raises(EstimationError, match='absorbed'):
            fit_fe_ols(
                panel, 'employed', ['california'],
                fixed_effects=[('state', 'kids'), ('year', 'kids')],
                weight='perwt', cluster='state',
            )

    def test_collinear_regressors(self, did_panel):
        did_panel['treat_copy'] = did_panel['treat']
        with pytest.raises(EstimationError, match='rank deficient'):
            fit_fe_ols(
                did_panel, 'employed', ['treat', 'treat_copy'],
                fixed_effects=['state', 'year'], cluster='state',
            )

    def test_cluster_required_with_regressors(self, did_panel):
        with pytest.raises(ValueError, match='cluster'):
            fit_fe_ols(did_panel, 'employed', ['treat'], fixed_effects=['state'])

    def test_unweighted_equals_unit_weights(self, did_panel):
        did_panel['one'] = 1.0
        a = fit_fe_ols(did_panel, 'employed', ['treat'], ['state', 'year'], cluster='state')
        b = fit_fe_ols(
            did_panel, 'employed', ['treat'], ['state', 'year'],
            weight='one', cluster='state',
        )
        assert a.coefficient == pytest.approx(b.coefficient)
        assert a.std_error == pytest.approx(b.std_error)
        np.testing.assert_array_equal(observation_weights(did_panel, None), 1.0)
