"""
Warning category hierarchy for the fewtreated package.

Provides structured warning categories so callers can filter selectively
via Python's standard ``warnings.filterwarnings()`` mechanism. All warning
classes inherit from :class:`FewTreatedWarning`, which itself inherits from
:class:`UserWarning`.

Examples
--------
Silence only the coarse-randomization-distribution warning:

>>> import warnings
>>> from fewtreated import SmallSampleWarning
>>> warnings.filterwarnings('ignore', category=SmallSampleWarning)
"""


class FewTreatedWarning(UserWarning):
    """
    Base warning class for all fewtreated package warnings.
    """
    pass


class SmallSampleWarning(FewTreatedWarning):
    """
    Warning raised when the number of placebo worlds is small.

    With few never-treated clusters the randomization distribution mixes
    only a handful of assignments, so the wild draws dominate and the test
    can be badly sized.
    """
    pass


class NumericalWarning(FewTreatedWarning):
    """
    Warning raised when numerical degeneracy is detected and recovered.

    Triggered by the variance-correction fallback rules (non-positive
    predicted variances) and by ill-conditioned design matrices.
    """
    pass


class DataWarning(FewTreatedWarning):
    """
    Warning raised for data quality issues.

    Triggered when incomplete rows are dropped from the estimation sample.
    """
    pass
