"""
Pytest configuration file providing shared fixtures and helper functions.

The simulated panels mimic an aggregated state×year×group layout: one
treated state (id 0), ``n_control`` never-treated states, a binary group
flag (e.g. has qualifying children) and population weights that differ
across states, which is the heteroskedasticity the Ferman-Pinto correction
targets.
"""
from itertools import product

import numpy as np
import pandas as pd
import pytest

from fewtreated import InferenceConfig, ModelSpecification


DDD_FIXED_EFFECTS = (('state', 'kids'), ('year', 'kids'))


def simulate_panel(
    n_control=50,
    n_periods=6,
    n_post=3,
    effect=0.0,
    seed=0,
    with_group=True,
    sigma=1.0,
):
    """
    Simulate a cluster×period×group panel with one treated cluster.

    The outcome is a sum of state×group and year×group effects, a
    state×year shock common to both groups, cell noise whose variance
    shrinks with the cell population, and ``effect`` on treated-state,
    post-period, group-1 cells.
    """
    rng = np.random.default_rng(seed)
    n_clusters = n_control + 1
    groups = (0, 1) if with_group else (1,)
    df = pd.DataFrame(
        list(product(range(n_clusters), range(n_periods), groups)),
        columns=['state', 'year', 'kids'],
    )
    df['year'] = df['year'] + 2010
    df['post'] = (df['year'] >= 2010 + n_periods - n_post).astype(int)
    df['california'] = (df['state'] == 0).astype(int)

    population = rng.integers(200, 5000, size=n_clusters)
    df['perwt'] = population[df['state']] * rng.uniform(0.8, 1.2, size=len(df))

    state_group = rng.normal(size=(n_clusters, 2))
    year_group = rng.normal(size=(n_periods, 2))
    state_year = rng.normal(scale=0.3, size=(n_clusters, n_periods))
    s = df['state'].to_numpy()
    t = (df['year'] - 2010).to_numpy()
    g = df['kids'].to_numpy()
    noise = rng.normal(size=len(df)) * sigma / np.sqrt(df['perwt'].to_numpy() / 1000)
    treat = df['california'] * df['post'] * df['kids']
    df['employed'] = (
        state_group[s, g] + year_group[t, g] + state_year[s, t] + noise
        + effect * treat
    )
    df['age'] = rng.normal(40, 5, size=len(df))
    if not with_group:
        df = df.drop(columns='kids')
    return df


def make_config(**overrides):
    """Default triple-difference configuration with small replication counts."""
    settings = dict(
        outcome='employed',
        specification=ModelSpecification('ddd', fixed_effects=DDD_FIXED_EFFECTS),
        cluster='state',
        period='year',
        post='post',
        treated='california',
        group='kids',
        weight='perwt',
        block_reps=199,
        ri_reps=49,
        seed=2026,
    )
    settings.update(overrides)
    return InferenceConfig(**settings)


@pytest.fixture
def panel():
    """51-state, 6-year, 2-group panel with no treatment effect."""
    return simulate_panel(n_control=50, seed=11)


@pytest.fixture
def small_panel():
    """Panel with 8 control states for fast kernel tests."""
    return simulate_panel(n_control=8, seed=3)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def panel_factory():
    """Factory fixture exposing :func:`simulate_panel`."""
    return simulate_panel


@pytest.fixture
def config_factory():
    """Factory fixture exposing :func:`make_config`."""
    return make_config
