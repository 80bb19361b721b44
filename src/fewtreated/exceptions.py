"""
Exception Classes Module

Defines the exception hierarchy for the fewtreated package.
"""


class FewTreatedError(Exception):
    """
    Base exception class for all fewtreated package errors.

    All custom exceptions in the package inherit from this class, allowing
    callers to catch any fewtreated-specific error with:

        try:
            result = run_inference(data, config)
        except FewTreatedError as e:
            print(f"fewtreated error: {e}")
    """
    pass


class InvalidParameterError(FewTreatedError):
    """
    Exception raised when input parameter validation fails.

    Common triggers include:

    - Non-positive or non-integer replication counts
    - Negative, infinite or all-zero observation weights
    - Post, group or treated indicators that are not binary

    See Also
    --------
    InvalidSpecificationError : For unknown outcome/specification task ids.
    """
    pass


class InvalidSpecificationError(InvalidParameterError):
    """
    Exception raised when a task names an outcome or specification id that
    is not part of the declared valid set.

    Examples
    --------
    >>> run_batch(data, tasks, {'baseline': spec})  # doctest: +SKIP
    InvalidSpecificationError: Unknown specification id(s): ['controls_v2']
    """
    pass


class MissingRequiredColumnError(FewTreatedError):
    """
    Exception raised when the input DataFrame is missing required columns.

    Required columns are the outcome, cluster, period, post and treated
    columns, plus the group, weight, fixed-effect and control columns when
    the configuration names them.
    """
    pass


class InsufficientDataError(FewTreatedError):
    """
    Exception raised when the sample cannot support the inference procedure.

    See Also
    --------
    NoTreatedUnitsError : No cluster carries the ever-treated flag.
    NoControlUnitsError : Every cluster carries the ever-treated flag.
    """
    pass


class NoTreatedUnitsError(InsufficientDataError):
    """
    Exception raised when no cluster is flagged as treated.
    """
    pass


class NoControlUnitsError(InsufficientDataError):
    """
    Exception raised when no never-treated cluster is available.

    Both the block bootstrap (control-group mean) and the randomization
    engine (placebo worlds) require at least one control cluster.
    """
    pass


class StructuralDataError(FewTreatedError):
    """
    Exception raised when a structurally required cluster×period×group cell
    is missing or carries zero total weight.

    Every cluster must contribute positive weight to each combination of
    (pre/post) × group; otherwise the cluster-level contrast ``W`` cannot be
    formed and the block bootstrap cannot run.

    See Also
    --------
    fewtreated.aggregation.build_cluster_statistics : Raises this error.
    """
    pass


class EstimationError(FewTreatedError):
    """
    Exception raised when a regression fit fails.

    Triggered by a singular design (for example a placebo indicator that is
    fully absorbed by the fixed effects) or by non-finite coefficients or
    standard errors in any randomization draw. Draws are never dropped, so
    one failed fit fails the whole task.
    """
    pass


class RegressionConvergenceError(EstimationError):
    """
    Exception raised when fixed-effect absorption does not converge.

    The alternating-projections demeaning stops after ``max_iter`` sweeps;
    if the last sweep still moved the data by more than ``tol`` the fit is
    rejected.

    See Also
    --------
    fewtreated.regression.FixedEffectsAbsorber : Performs the demeaning.
    """
    pass


class TaskFailedError(FewTreatedError):
    """
    Exception raised when one inference task fails.

    Wraps the underlying error and names the task and the failing stage so
    batch runs fail loudly and traceably. The original exception is kept as
    ``__cause__``.

    Attributes
    ----------
    task_id : str
        Identifier of the failed task (``'<outcome>:<specification>'``).
    stage : str
        Name of the orchestration stage that raised.
    """

    def __init__(self, task_id: str, stage: str, message: str):
        self.task_id = task_id
        self.stage = stage
        self.message = message
        super().__init__(f"Task '{task_id}' failed during stage '{stage}': {message}")

    def __reduce__(self):
        # keep task_id/stage when sent back from worker processes
        return (self.__class__, (self.task_id, self.stage, self.message))
