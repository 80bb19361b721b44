"""
fewtreated: Resampling Inference for Difference-in-Differences with Few Treated Clusters
========================================================================================

Finite-sample p-values for a treatment coefficient estimated from a panel
difference-in-differences (or triple-difference) regression when only one
or a handful of clusters are treated, a setting in which conventional
cluster-robust standard errors over-reject.

Key Features
------------
- Linear fixed-effects regression: weighted least squares with any number
  of absorbed fixed effects and cluster-robust standard errors
- Block bootstrap with the Ferman and Pinto (2019) heteroskedasticity
  correction, computed on cluster×period×group residual contrasts
- Randomization inference with wild cluster bootstrap draws over every
  placebo reassignment of treatment (MacKinnon and Webb 2020)
- Vectorized replications: all bootstrap draws of a task are computed as
  batch array operations
- Task-scoped, seedable random streams for exact reproducibility
- Batch execution of (outcome, specification) task tables across processes

Main Components
---------------
run_inference : function
    Run all procedures for one task. See ``help(run_inference)``.
run_batch : function
    Run a task table and return the final report.
InferenceConfig, ModelSpecification : classes
    Task configuration.
InferenceResult : class
    Per-task results with ``summary()``.

Quick Start
-----------
>>> from fewtreated import InferenceConfig, ModelSpecification, run_inference
>>> spec = ModelSpecification(
...     'ddd', fixed_effects=[('state', 'kids'), ('year', 'kids'), ('state', 'year')]
... )
>>> config = InferenceConfig(
...     outcome='employed', specification=spec, cluster='state', period='year',
...     post='post', treated='california', group='kids', weight='perwt',
...     block_reps=1000, ri_reps=1000, seed=12345,
... )
>>> result = run_inference(panel, config)  # doctest: +SKIP
>>> print(result.summary())  # doctest: +SKIP

References
----------
Ferman, B. and Pinto, C. (2019). Inference in Differences-in-Differences
with Few Treated Groups and Heteroskedasticity. Review of Economics and
Statistics 101(3), 452-467.

MacKinnon, J. G. and Webb, M. D. (2020). Randomization Inference for
Difference-in-Differences with Few Treated Clusters. Journal of
Econometrics 218(2), 435-450.
"""

from .core import load_task_table, run_batch, run_inference

from .config import InferenceConfig, ModelSpecification, TaskContext

from .results import REPORT_COLUMNS, InferenceResult

from .exceptions import (
    EstimationError,
    FewTreatedError,
    InsufficientDataError,
    InvalidParameterError,
    InvalidSpecificationError,
    MissingRequiredColumnError,
    NoControlUnitsError,
    NoTreatedUnitsError,
    RegressionConvergenceError,
    StructuralDataError,
    TaskFailedError,
)

from .warnings_categories import (
    DataWarning,
    FewTreatedWarning,
    NumericalWarning,
    SmallSampleWarning,
)

__version__ = '0.1.0'

__all__ = [
    # Main functions
    'run_inference',
    'run_batch',
    'load_task_table',
    # Configuration and results
    'InferenceConfig',
    'ModelSpecification',
    'TaskContext',
    'InferenceResult',
    'REPORT_COLUMNS',
    # Exception classes
    'FewTreatedError',
    'InvalidParameterError',
    'InvalidSpecificationError',
    'MissingRequiredColumnError',
    'InsufficientDataError',
    'NoTreatedUnitsError',
    'NoControlUnitsError',
    'StructuralDataError',
    'EstimationError',
    'RegressionConvergenceError',
    'TaskFailedError',
    # Warning classes
    'FewTreatedWarning',
    'SmallSampleWarning',
    'NumericalWarning',
    'DataWarning',
]
