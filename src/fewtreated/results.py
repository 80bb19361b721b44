"""
Results Container Module

Defines the InferenceResult class holding the terminal output of one
(outcome, specification) inference task, and the report layout shared by
batch runs.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import pandas as pd


# Column order of the final report (one row per task)
REPORT_COLUMNS = [
    'outcome',
    'specification',
    'coefficient',
    'std_error',
    'p_crve',
    'p_block_unadjusted',
    'p_block_adjusted',
    'p_randomization_coefficient',
    'p_randomization_tstat',
]


def _stars(p: float) -> str:
    return "***" if p < 0.01 else "**" if p < 0.05 else "*" if p < 0.1 else ""


@dataclass(frozen=True)
class InferenceResult:
    """
    Inference summary for one task.

    Attributes
    ----------
    outcome : str
        Outcome variable.
    specification : str
        Specification id.
    coefficient : float
        Treatment coefficient of the full model (``alpha_hat``).
    std_error : float
        Cluster-robust standard error.
    t_stat : float
        Cluster-robust t-statistic.
    p_crve : float
        Conventional cluster-robust p-value (t distribution, G-1 df). Not
        reliable with one treated cluster; reported for comparison.
    p_block_unadjusted : float
        Block bootstrap p-value without heteroskedasticity correction.
    p_block_adjusted : float
        Block bootstrap p-value with the Ferman-Pinto correction.
    p_randomization_coefficient : float
        Randomization-inference p-value based on coefficients.
    p_randomization_tstat : float
        Randomization-inference p-value based on t-statistics.
    nobs : int
    n_clusters : int
    n_treated_clusters : int
    n_placebo_worlds : int
        Placebo assignments, excluding the real one.
    block_reps : int
    ri_reps : int
    variance_branch : str
        Variance-correction rule used ('regression', 'constant' or
        'precision_proxy').
    seed_entropy : int
        Root entropy of the task's random streams.
    """
    outcome: str
    specification: str
    coefficient: float
    std_error: float
    t_stat: float
    p_crve: float
    p_block_unadjusted: float
    p_block_adjusted: float
    p_randomization_coefficient: float
    p_randomization_tstat: float
    nobs: int
    n_clusters: int
    n_treated_clusters: int
    n_placebo_worlds: int
    block_reps: int
    ri_reps: int
    variance_branch: str
    seed_entropy: Optional[int] = None

    @property
    def task_id(self) -> str:
        return f"{self.outcome}:{self.specification}"

    def to_dict(self) -> Dict[str, Any]:
        """All fields as a plain dictionary."""
        return asdict(self)

    def report_row(self) -> Dict[str, Any]:
        """Fields of the final report, in :data:`REPORT_COLUMNS` order."""
        d = self.to_dict()
        return {col: d[col] for col in REPORT_COLUMNS}

    def summary(self) -> str:
        """
        Formatted results summary

        Returns
        -------
        str
        """
        sep_line = "=" * 70
        sub_line = "-" * 70
        output = [
            sep_line,
            "              Few-Treated-Cluster Inference Results",
            sep_line,
            f"Outcome: {self.outcome}",
            f"Specification: {self.specification}",
            f"Number of observations: {self.nobs}",
            f"Number of clusters: {self.n_clusters} "
            f"(treated: {self.n_treated_clusters}, placebo worlds: {self.n_placebo_worlds})",
            "",
            sub_line,
            f"Coefficient:  {self.coefficient:>10.4f}",
            f"Std. Err.:    {self.std_error:>10.4f}  (cluster-robust)",
            f"t-stat:       {self.t_stat:>10.2f}",
            sub_line,
            "P-values",
            f"  Cluster-robust (G-1 df):        {self.p_crve:>7.3f} {_stars(self.p_crve)}",
            f"  Block bootstrap, unadjusted:    {self.p_block_unadjusted:>7.3f} "
            f"{_stars(self.p_block_unadjusted)}",
            f"  Block bootstrap, adjusted:      {self.p_block_adjusted:>7.3f} "
            f"{_stars(self.p_block_adjusted)}",
            f"  Randomization (coefficient):    {self.p_randomization_coefficient:>7.3f} "
            f"{_stars(self.p_randomization_coefficient)}",
            f"  Randomization (t-statistic):    {self.p_randomization_tstat:>7.3f} "
            f"{_stars(self.p_randomization_tstat)}",
            "",
            f"Block reps: {self.block_reps}, wild reps per world: {self.ri_reps}, "
            f"variance correction: {self.variance_branch}",
            sep_line,
        ]
        return "\n".join(output)

    def __repr__(self) -> str:
        return (
            f"InferenceResult(task='{self.task_id}', coefficient={self.coefficient:.4f}, "
            f"p_block_adjusted={self.p_block_adjusted:.4f}, "
            f"p_randomization_tstat={self.p_randomization_tstat:.4f})"
        )


def results_to_frame(results) -> pd.DataFrame:
    """Stack task results into the final report DataFrame."""
    rows = [r.report_row() for r in results]
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)
