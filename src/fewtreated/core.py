"""
Inference orchestration for difference-in-differences with few treated clusters.

Runs, for one (outcome, specification) task, the full model and the null
model, the Ferman-Pinto block bootstrap on aggregated residual contrasts,
the wild-bootstrap randomization inference over placebo assignments, and a
conventional cluster-robust p-value for comparison. Batches of tasks are
independent and can run in separate processes.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Union
import logging
import re

import numpy as np
import pandas as pd
from scipy import stats

from .aggregation import aggregate_cells, build_cluster_statistics
from .config import InferenceConfig, ModelSpecification, TaskContext
from .exceptions import (
    FewTreatedError,
    InvalidParameterError,
    InvalidSpecificationError,
    MissingRequiredColumnError,
    TaskFailedError,
)
from .inference import (
    block_bootstrap,
    correct_variance,
    wild_randomization_inference,
)
from .regression import FixedEffectsAbsorber, fit_fe_ols, observation_weights
from .results import InferenceResult, results_to_frame
from .validation import TREATMENT_COLUMN, validate_inference_data

# Configure logging
logger = logging.getLogger('fewtreated')

# Columns of the task specification table
TASK_COLUMNS = ['outcome', 'specification']


@contextmanager
def _stage(task_id: str, name: str) -> Iterator[None]:
    """Re-raise any failure inside a stage as TaskFailedError."""
    logger.debug("[%s] stage '%s' started", task_id, name)
    try:
        yield
    except TaskFailedError:
        raise
    except (FewTreatedError, ValueError, TypeError, KeyError,
            np.linalg.LinAlgError) as exc:
        raise TaskFailedError(task_id, name, f"{type(exc).__name__}: {exc}") from exc


def _diagnostics_stem(task_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', task_id)


def write_diagnostics(
    directory: Union[str, Path],
    task_id: str,
    block_draws: pd.DataFrame,
    randomization_draws: pd.DataFrame,
) -> List[Path]:
    """
    Write the raw per-replication draws of one task as CSV files.

    Returns
    -------
    list of Path
        ``<task>_block_bootstrap.csv`` and ``<task>_randomization.csv``.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    stem = _diagnostics_stem(task_id)
    block_path = directory / f"{stem}_block_bootstrap.csv"
    ri_path = directory / f"{stem}_randomization.csv"
    block_draws.to_csv(block_path, index=False)
    randomization_draws.to_csv(ri_path, index=False)
    return [block_path, ri_path]


def run_inference(data: pd.DataFrame, config: InferenceConfig) -> InferenceResult:
    """
    Run every inference procedure for one (outcome, specification) task.

    Parameters
    ----------
    data : pd.DataFrame
        Panel in long format with the columns named by ``config``.
    config : InferenceConfig
        Task configuration. ``config.seed`` fixes both random streams.

    Returns
    -------
    InferenceResult

    Raises
    ------
    TaskFailedError
        Any failure, naming the task and the stage. The underlying
        exception is available as ``__cause__``. No partial result is
        returned.

    Notes
    -----
    Stages run in order: validation, full model, null model, aggregation,
    variance correction, block bootstrap, randomization, report. The block
    bootstrap p-values compare squared bootstrap statistics with the square
    of the full-model coefficient; the randomization p-values compare
    absolute coefficients and t-statistics over all ``(n + 1) * B`` draws.

    Examples
    --------
    >>> spec = ModelSpecification('ddd', fixed_effects=[('state', 'kids'), ('year', 'kids')])
    >>> config = InferenceConfig(
    ...     outcome='employed', specification=spec, cluster='state',
    ...     period='year', post='post', treated='california', group='kids',
    ...     weight='perwt', seed=20260117,
    ... )
    >>> result = run_inference(panel, config)  # doctest: +SKIP
    >>> print(result.summary())  # doctest: +SKIP
    """
    task_id = config.task_id
    spec = config.specification
    fe = spec.fixed_effects
    controls = list(spec.controls)

    with _stage(task_id, 'validation'):
        ctx = TaskContext.create(config)
        logger.info("[%s] starting inference (seed entropy %d)", task_id, ctx.entropy)
        sample, treated_flags = validate_inference_data(data, config)
        n_clusters = len(treated_flags)
        placebo_clusters = treated_flags.index[~treated_flags.to_numpy()].tolist()
        absorber = FixedEffectsAbsorber.from_frame(
            sample, fe, observation_weights(sample, config.weight)
        )

    with _stage(task_id, 'full_model'):
        full = fit_fe_ols(
            sample, config.outcome, [TREATMENT_COLUMN] + controls,
            fe, config.weight, config.cluster, absorber=absorber,
        )
        p_crve = float(2 * stats.t.sf(abs(full.t_stat), n_clusters - 1))
        logger.info(
            "[%s] coefficient %.6g (se %.6g, t %.3f)",
            task_id, full.coefficient, full.std_error, full.t_stat,
        )

    with _stage(task_id, 'null_model'):
        null = fit_fe_ols(
            sample, config.outcome, controls, fe, config.weight, config.cluster,
            absorber=absorber,
        )

    with _stage(task_id, 'aggregation'):
        cells = aggregate_cells(
            sample, null.residuals, config.cluster, config.period, config.post,
            group=config.group, weight=config.weight,
        )
        cluster_stats = build_cluster_statistics(
            cells, treated_flags, has_group=config.group is not None
        )

    with _stage(task_id, 'variance_correction'):
        correction = correct_variance(
            cluster_stats['W'], cluster_stats['q'], cluster_stats['population']
        )
        cluster_stats['corrected_variance'] = correction.variance
        cluster_stats['W_normalized'] = cluster_stats['W'] / correction.std
        logger.debug("[%s] variance correction branch: %s", task_id, correction.branch)

    with _stage(task_id, 'block_bootstrap'):
        block = block_bootstrap(cluster_stats, config.block_reps, ctx.block_rng)
        p_block_unadj, p_block_adj = block.pvalues(full.coefficient)

    with _stage(task_id, 'randomization'):
        ri = wild_randomization_inference(
            sample, null.fitted_values, null.residuals, TREATMENT_COLUMN,
            config.cluster, config.post, placebo_clusters,
            group=config.group, fixed_effects=fe, controls=controls,
            weight=config.weight, n_reps=config.ri_reps,
            rng=ctx.randomization_rng,
            coef_obs=full.coefficient, t_obs=full.t_stat,
        )

    with _stage(task_id, 'report'):
        if config.diagnostics_dir is not None:
            paths = write_diagnostics(
                config.diagnostics_dir, task_id, block.to_frame(), ri.to_frame()
            )
            logger.info("[%s] wrote diagnostics to %s", task_id, [str(p) for p in paths])
        result = InferenceResult(
            outcome=config.outcome,
            specification=spec.spec_id,
            coefficient=full.coefficient,
            std_error=full.std_error,
            t_stat=full.t_stat,
            p_crve=p_crve,
            p_block_unadjusted=p_block_unadj,
            p_block_adjusted=p_block_adj,
            p_randomization_coefficient=ri.p_value_coefficient,
            p_randomization_tstat=ri.p_value_tstat,
            nobs=full.nobs,
            n_clusters=n_clusters,
            n_treated_clusters=int(treated_flags.sum()),
            n_placebo_worlds=ri.n_worlds - 1,
            block_reps=config.block_reps,
            ri_reps=config.ri_reps,
            variance_branch=correction.branch,
            seed_entropy=ctx.entropy,
        )
    logger.info("[%s] finished: %r", task_id, result)
    return result


def load_task_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a task specification table from CSV.

    The file must hold ``outcome`` and ``specification`` columns; extra
    columns are ignored. Duplicate tasks are removed, keeping the first.
    """
    tasks = pd.read_csv(path, dtype=str)
    missing = [c for c in TASK_COLUMNS if c not in tasks.columns]
    if missing:
        raise MissingRequiredColumnError(
            f"Task table {path} is missing column(s): {missing}"
        )
    return tasks[TASK_COLUMNS].drop_duplicates().reset_index(drop=True)


def build_task_configs(
    data: pd.DataFrame,
    tasks: pd.DataFrame,
    specifications: Mapping[str, ModelSpecification],
    template: InferenceConfig,
) -> List[InferenceConfig]:
    """
    Expand a task table into one configuration per task.

    Each configuration copies ``template`` with the task's outcome and
    specification. With a template seed ``s``, task ``i`` gets seed
    ``s + i`` so every task has its own reproducible stream.

    Raises
    ------
    InvalidSpecificationError
        If a task names an unknown specification id or an outcome that is
        not a column of ``data``.
    """
    missing = [c for c in TASK_COLUMNS if c not in tasks.columns]
    if missing:
        raise MissingRequiredColumnError(f"Task table is missing column(s): {missing}")

    unknown_specs = sorted(set(tasks['specification']) - set(specifications))
    if unknown_specs:
        raise InvalidSpecificationError(
            f"Unknown specification id(s): {unknown_specs}. "
            f"Declared: {sorted(specifications)}"
        )
    unknown_outcomes = sorted(set(tasks['outcome']) - set(data.columns))
    if unknown_outcomes:
        raise InvalidSpecificationError(
            f"Unknown outcome(s), not columns of data: {unknown_outcomes}"
        )

    configs = []
    for i, (outcome, spec_id) in enumerate(
        tasks[TASK_COLUMNS].itertuples(index=False, name=None)
    ):
        seed = None if template.seed is None else template.seed + i
        configs.append(replace(
            template, outcome=outcome, specification=specifications[spec_id], seed=seed
        ))
    return configs


def run_batch(
    data: pd.DataFrame,
    tasks: pd.DataFrame,
    specifications: Mapping[str, ModelSpecification],
    template: InferenceConfig,
    n_jobs: int = 1,
    errors: str = 'raise',
) -> pd.DataFrame:
    """
    Run every task of a task table and assemble the final report.

    Parameters
    ----------
    data : pd.DataFrame
        Panel shared read-only by all tasks.
    tasks : pd.DataFrame
        Task table with ``outcome`` and ``specification`` columns.
    specifications : mapping
        Declared specifications keyed by id.
    template : InferenceConfig
        Settings shared by all tasks (columns, replication counts, base
        seed, diagnostics directory). Its outcome and specification are
        replaced per task.
    n_jobs : int, default 1
        Worker processes. ``1`` runs tasks serially in this process.
    errors : {'raise', 'skip'}, default 'raise'
        ``'raise'`` re-raises the first failed task after all tasks have
        finished; ``'skip'`` omits failed tasks from the report and lists
        them in ``report.attrs['failures']``.

    Returns
    -------
    pd.DataFrame
        One row per successful task with columns
        :data:`~fewtreated.results.REPORT_COLUMNS`.
    """
    if errors not in ('raise', 'skip'):
        raise InvalidParameterError(f"errors must be 'raise' or 'skip', got {errors!r}")
    if n_jobs is None or n_jobs < 1:
        raise InvalidParameterError(f"n_jobs must be a positive integer, got {n_jobs}")

    configs = build_task_configs(data, tasks, specifications, template)
    logger.info("running %d task(s) with n_jobs=%d", len(configs), n_jobs)

    outcomes: List[Optional[Union[InferenceResult, TaskFailedError]]] = [None] * len(configs)
    if n_jobs == 1:
        for i, cfg in enumerate(configs):
            try:
                outcomes[i] = run_inference(data, cfg)
            except TaskFailedError as exc:
                outcomes[i] = exc
    else:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            futures = [executor.submit(run_inference, data, cfg) for cfg in configs]
            for i, future in enumerate(futures):
                try:
                    outcomes[i] = future.result()
                except TaskFailedError as exc:
                    outcomes[i] = exc

    failures = [o for o in outcomes if isinstance(o, TaskFailedError)]
    for exc in failures:
        logger.error("%s", exc)
    if failures and errors == 'raise':
        raise failures[0]

    report = results_to_frame([o for o in outcomes if isinstance(o, InferenceResult)])
    report.attrs['failures'] = [
        {'task_id': exc.task_id, 'stage': exc.stage, 'message': str(exc)}
        for exc in failures
    ]
    return report
