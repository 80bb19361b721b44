"""
Aggregation of null-model residuals to cluster-level contrasts.

Collapses observation-level residuals to cluster×period×group cells and
combines the cells into one signed difference-in-differences (or
triple-difference) contrast ``W`` per cluster, together with the precision
proxy ``q`` used by the heteroskedasticity correction of Ferman and Pinto
(2019).

For a cell with weights ``w_i`` and residuals ``e_i``:

    resid_mean = sum(w_i * e_i) / sum(w_i)
    q_cell     = sum(w_i ** 2) / sum(w_i) ** 2

Cell contrast coefficients are ``sign(post) * sign(group) / n_cells`` with
``sign(1) = +1``, ``sign(0) = -1`` and ``n_cells`` the number of periods the
cluster has on that side of treatment for that group. Without a group
column the group factor is ``+1``. Then per cluster

    W = sum(c * resid_mean)
    q = sum(c ** 2 * q_cell)

so ``q`` is proportional to the sampling variance of ``W`` under
independent, homoskedastic micro-level errors.

References
----------
Ferman, B. and Pinto, C. (2019). Inference in Differences-in-Differences
with Few Treated Groups and Heteroskedasticity. Review of Economics and
Statistics 101(3), 452-467.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from .exceptions import StructuralDataError

# Column names of the cell table
CELL_COLUMNS = [
    'cluster', 'period', 'group', 'post', 'n_obs',
    'sum_weight', 'sum_weight_sq', 'resid_mean', 'q_cell',
]


def aggregate_cells(
    data: pd.DataFrame,
    residuals: np.ndarray,
    cluster: str,
    period: str,
    post: str,
    group: Optional[str] = None,
    weight: Optional[str] = None,
) -> pd.DataFrame:
    """
    Collapse residuals to cluster×period×group cells.

    Parameters
    ----------
    data : pd.DataFrame
        Estimation sample, aligned row by row with ``residuals``.
    residuals : ndarray
        Null-model residuals (treatment excluded).
    cluster, period, post : str
        Cluster, period and post-indicator columns.
    group : str, optional
        Binary group column. Without it every row belongs to group 1.
    weight : str, optional
        Weight column; equal weights when omitted.

    Returns
    -------
    pd.DataFrame
        One row per cell with columns :data:`CELL_COLUMNS`. Cells with zero
        total weight keep ``resid_mean = NaN`` and ``q_cell = NaN``.
    """
    residuals = np.asarray(residuals, dtype=np.float64)
    if len(residuals) != len(data):
        raise ValueError(
            f"residuals has length {len(residuals)}, data has {len(data)} rows"
        )

    w = (
        data[weight].to_numpy(dtype=np.float64)
        if weight is not None else np.ones(len(data))
    )
    work = pd.DataFrame({
        'cluster': data[cluster].to_numpy(),
        'period': data[period].to_numpy(),
        'group': data[group].to_numpy(dtype=np.int64) if group is not None else 1,
        'post': data[post].to_numpy(dtype=np.int64),
        'w': w,
        'we': w * residuals,
        'w2': w ** 2,
    })

    cells = (
        work.groupby(['cluster', 'period', 'group'], sort=True)
        .agg(
            post=('post', 'first'),
            n_obs=('w', 'size'),
            sum_weight=('w', 'sum'),
            sum_weight_sq=('w2', 'sum'),
            sum_we=('we', 'sum'),
        )
        .reset_index()
    )

    positive = cells['sum_weight'] > 0
    cells['resid_mean'] = np.where(
        positive, cells['sum_we'] / cells['sum_weight'].where(positive), np.nan
    )
    cells['q_cell'] = np.where(
        positive, cells['sum_weight_sq'] / cells['sum_weight'].where(positive) ** 2, np.nan
    )
    return cells[CELL_COLUMNS]


def contrast_coefficients(cells: pd.DataFrame) -> pd.Series:
    """
    Signed weight of each cell in its cluster's contrast ``W``.

    Only cells with positive weight enter; the others get coefficient 0.
    """
    usable = cells['sum_weight'] > 0
    side_sign = np.where(cells['post'] == 1, 1.0, -1.0)
    group_sign = np.where(cells['group'] == 1, 1.0, -1.0)
    n_cells = (
        usable.groupby([cells['cluster'], cells['post'], cells['group']])
        .transform('sum')
        .to_numpy(dtype=np.float64)
    )
    coef = np.divide(
        side_sign * group_sign, n_cells,
        out=np.zeros(len(cells)), where=usable.to_numpy() & (n_cells > 0),
    )
    return pd.Series(coef, index=cells.index, name='contrast')


def _check_required_cells(cells: pd.DataFrame, has_group: bool) -> None:
    usable = cells[cells['sum_weight'] > 0]
    groups = (0, 1) if has_group else (1,)
    required = pd.MultiIndex.from_product(
        [np.unique(cells['cluster']), (0, 1), groups],
        names=['cluster', 'post', 'group'],
    )
    present = pd.MultiIndex.from_frame(
        usable[['cluster', 'post', 'group']].drop_duplicates()
    )
    missing = required.difference(present)
    if len(missing) > 0:
        examples = [
            f"(cluster={c}, {'post' if p == 1 else 'pre'}, group={g})"
            for c, p, g in list(missing)[:5]
        ]
        raise StructuralDataError(
            f"{len(missing)} required cluster×period×group cell(s) are missing "
            f"or have zero total weight, so the cluster contrast cannot be "
            f"formed. First missing: {', '.join(examples)}"
        )


def build_cluster_statistics(
    cells: pd.DataFrame,
    treated: pd.Series,
    has_group: bool = True,
) -> pd.DataFrame:
    """
    Combine cells into one contrast row per cluster.

    Parameters
    ----------
    cells : pd.DataFrame
        Output of :func:`aggregate_cells`.
    treated : pd.Series
        Ever-treated flag indexed by cluster id.
    has_group : bool, default True
        Whether the cells carry a real group dimension. When False every
        cell has ``group == 1`` and only (pre, post) are required.

    Returns
    -------
    pd.DataFrame
        Indexed by cluster (sorted), columns ``W``, ``q``, ``population``
        (total weight) and ``treated`` (bool).

    Raises
    ------
    StructuralDataError
        If a cluster lacks positive weight in any required (pre/post) × group
        combination.
    """
    _check_required_cells(cells, has_group)

    coef = contrast_coefficients(cells)
    usable = cells['sum_weight'] > 0
    parts = pd.DataFrame({
        'cluster': cells['cluster'],
        'W': np.where(usable, coef * cells['resid_mean'].fillna(0.0), 0.0),
        'q': np.where(usable, coef ** 2 * cells['q_cell'].fillna(0.0), 0.0),
        'population': cells['sum_weight'],
    })
    stats = parts.groupby('cluster', sort=True)[['W', 'q', 'population']].sum()

    missing_flags = stats.index.difference(treated.index)
    if len(missing_flags) > 0:
        raise StructuralDataError(
            f"No treated flag for cluster(s): {list(missing_flags)[:5]}"
        )
    stats['treated'] = treated.reindex(stats.index).astype(bool).to_numpy()
    return stats
