"""Tests for the heteroskedasticity-corrected block bootstrap."""

import numpy as np
import pandas as pd
import pytest
from hypothesis import given, settings, strategies as st

from fewtreated.exceptions import (
    InvalidParameterError,
    NoControlUnitsError,
    NoTreatedUnitsError,
)
from fewtreated.inference import BlockBootstrapResult, block_bootstrap
from fewtreated.inference.block_bootstrap import (
    _block_bootstrap_core,
    _draw_cluster_indices,
)


@pytest.fixture
def cluster_stats():
    rng = np.random.default_rng(8)
    n = 21
    variance = rng.uniform(0.5, 3.0, size=n)
    W = rng.normal(size=n) * np.sqrt(variance)
    return pd.DataFrame({
        'W': W,
        'W_normalized': W / np.sqrt(variance),
        'corrected_variance': variance,
        'population': rng.integers(100, 1000, size=n).astype(float),
        'treated': [True] + [False] * (n - 1),
    }, index=pd.Index(range(100, 100 + n), name='cluster'))


class TestBlockBootstrap:

    def test_shapes_and_counts(self, cluster_stats):
        result = block_bootstrap(cluster_stats, 250, np.random.default_rng(1))
        assert isinstance(result, BlockBootstrapResult)
        assert result.unadjusted.shape == (250,)
        assert result.adjusted.shape == (250,)
        assert result.n_reps == 250
        assert result.n_clusters == 21
        assert result.n_treated == 1

    def test_reproducible_with_same_generator_seed(self, cluster_stats):
        a = block_bootstrap(cluster_stats, 300, np.random.default_rng(42))
        b = block_bootstrap(cluster_stats, 300, np.random.default_rng(42))
        np.testing.assert_array_equal(a.unadjusted, b.unadjusted)
        np.testing.assert_array_equal(a.adjusted, b.adjusted)

    def test_draws_match_manual_computation(self, cluster_stats):
        B = 5
        result = block_bootstrap(cluster_stats, B, np.random.default_rng(3))
        idx = _draw_cluster_indices(np.random.default_rng(3), B, len(cluster_stats))

        W = cluster_stats['W'].to_numpy()
        Wn = cluster_stats['W_normalized'].to_numpy()
        sd = np.sqrt(cluster_stats['corrected_variance'].to_numpy())
        pop = cluster_stats['population'].to_numpy()
        for b in range(B):
            drawn = W[idx[b]]
            adj = Wn[idx[b]] * sd
            unadj_expected = drawn[0] - np.average(drawn[1:], weights=pop[1:])
            adj_expected = adj[0] - np.average(adj[1:], weights=pop[1:])
            assert result.unadjusted[b] == pytest.approx(unadj_expected)
            assert result.adjusted[b] == pytest.approx(adj_expected)

    def test_unit_variance_makes_adjustment_neutral(self, cluster_stats):
        cluster_stats['corrected_variance'] = 1.0
        cluster_stats['W_normalized'] = cluster_stats['W']
        result = block_bootstrap(cluster_stats, 200, np.random.default_rng(0))
        np.testing.assert_allclose(result.unadjusted, result.adjusted)

    def test_treated_mean_over_several_treated(self, cluster_stats):
        cluster_stats['treated'] = [True, True, True] + [False] * 18
        idx = np.tile(np.arange(21), (1, 1))
        W = cluster_stats['W'].to_numpy()
        control_w = cluster_stats['population'].to_numpy()[3:]
        control_w = control_w / control_w.sum()
        unadj, _ = _block_bootstrap_core(
            idx, W, W, np.ones(21), cluster_stats['treated'].to_numpy(), control_w
        )
        assert unadj[0] == pytest.approx(W[:3].mean() - W[3:] @ control_w)


class TestPValues:

    def test_pvalues_in_unit_interval(self, cluster_stats):
        result = block_bootstrap(cluster_stats, 500, np.random.default_rng(9))
        for alpha in (0.0, 0.5, 2.0, 100.0):
            p_unadj, p_adj = result.pvalues(alpha)
            assert 0.0 <= p_unadj <= 1.0
            assert 0.0 <= p_adj <= 1.0

    def test_strict_comparison(self):
        result = BlockBootstrapResult(
            unadjusted=np.array([-2.0, 1.0, 2.0, 3.0]),
            adjusted=np.array([0.5, -0.5, 4.0, 2.0]),
            n_reps=4, n_clusters=3, n_treated=1,
        )
        p_unadj, p_adj = result.pvalues(-2.0)
        assert p_unadj == pytest.approx(0.25)
        assert p_adj == pytest.approx(0.25)
        assert result.pvalues(0.0) == (1.0, 1.0)
        assert result.pvalues(10.0) == (0.0, 0.0)

    def test_to_frame(self, cluster_stats):
        frame = block_bootstrap(cluster_stats, 30, np.random.default_rng(2)).to_frame()
        assert list(frame.columns) == [
            'replication_id', 'unadjusted_statistic', 'adjusted_statistic',
        ]
        assert len(frame) == 30
        assert frame['replication_id'].tolist() == list(range(30))


class TestErrors:

    @pytest.mark.parametrize("n_reps", [0, -1])
    def test_non_positive_reps(self, cluster_stats, n_reps):
        with pytest.raises(InvalidParameterError, match='n_reps'):
            block_bootstrap(cluster_stats, n_reps, np.random.default_rng(0))

    def test_missing_column(self, cluster_stats):
        with pytest.raises(InvalidParameterError, match='W_normalized'):
            block_bootstrap(
                cluster_stats.drop(columns='W_normalized'), 10, np.random.default_rng(0)
            )

    def test_no_treated(self, cluster_stats):
        cluster_stats['treated'] = False
        with pytest.raises(NoTreatedUnitsError):
            block_bootstrap(cluster_stats, 10, np.random.default_rng(0))

    def test_no_control(self, cluster_stats):
        cluster_stats['treated'] = True
        with pytest.raises(NoControlUnitsError):
            block_bootstrap(cluster_stats, 10, np.random.default_rng(0))


class TestClusterDraws:

    @given(
        n_reps=st.integers(min_value=1, max_value=300),
        n_clusters=st.integers(min_value=2, max_value=80),
        seed=st.integers(min_value=0, max_value=10000),
    )
    @settings(max_examples=100, deadline=None)
    def test_one_draw_per_cluster_in_every_replication(self, n_reps, n_clusters, seed):
        """Each replication resamples exactly N cluster indices from [0, N)."""
        idx = _draw_cluster_indices(np.random.default_rng(seed), n_reps, n_clusters)
        assert idx.shape == (n_reps, n_clusters)
        assert np.issubdtype(idx.dtype, np.integer)
        assert idx.min() >= 0
        assert idx.max() < n_clusters
