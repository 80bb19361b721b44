"""
Task configuration and task-scoped execution context.

An inference task is one (outcome, model specification) pair. Its settings
live in a frozen :class:`InferenceConfig` that is passed by value into every
component, and its pseudo-random streams live in a :class:`TaskContext`
built once per task. Nothing here touches numpy's global random state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from .exceptions import InvalidParameterError

# A fixed-effect key is a column name or a tuple of columns whose
# interaction defines the fixed-effect levels.
FixedEffectKey = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class ModelSpecification:
    """
    Right-hand side of the difference-in-differences regression.

    Attributes
    ----------
    spec_id : str
        Identifier used in task tables and reports.
    fixed_effects : tuple
        Fixed-effect keys absorbed by the regression. Each key is a column
        name or a tuple of column names (interacted). Empty means a plain
        intercept.
    controls : tuple of str
        Additional regressors, including any interaction terms.
    """
    spec_id: str
    fixed_effects: Tuple[FixedEffectKey, ...] = ()
    controls: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'fixed_effects', tuple(
            tuple(k) if isinstance(k, (list, tuple)) else k
            for k in self.fixed_effects
        ))
        object.__setattr__(self, 'controls', tuple(self.controls))

    def fe_columns(self) -> list:
        """Flat list of every column referenced by the fixed effects."""
        cols = []
        for key in self.fixed_effects:
            for col in ((key,) if isinstance(key, str) else key):
                if col not in cols:
                    cols.append(col)
        return cols


@dataclass(frozen=True)
class InferenceConfig:
    """
    Complete configuration of one inference task.

    The treatment indicator is not a column of the input: it is built as
    ``treated * post * group`` (``treated * post`` without a group column),
    and the same rule with a single placebo cluster switched on builds the
    randomization-inference placebo indicators.

    Attributes
    ----------
    outcome : str
        Outcome column.
    specification : ModelSpecification
        Fixed effects and controls.
    cluster : str
        Cluster column (assignment and error-correlation unit, e.g. state).
    period : str
        Period column (e.g. year).
    post : str
        Binary post-treatment indicator, constant within period.
    treated : str
        Binary ever-treated indicator, constant within cluster.
    group : str, optional
        Binary group flag (e.g. has qualifying children). When given, the
        design is a triple difference.
    weight : str, optional
        Observation weights. Equal weights when omitted.
    block_reps : int, default 1000
        Block bootstrap replications.
    ri_reps : int, default 1000
        Wild bootstrap replications per placebo world.
    seed : int, optional
        Task seed. ``None`` draws fresh OS entropy.
    diagnostics_dir : str or Path, optional
        Directory receiving the raw per-replication draws as CSV.
    """
    outcome: str
    specification: ModelSpecification
    cluster: str
    period: str
    post: str
    treated: str
    group: Optional[str] = None
    weight: Optional[str] = None
    block_reps: int = 1000
    ri_reps: int = 1000
    seed: Optional[int] = None
    diagnostics_dir: Union[str, Path, None] = None

    def __post_init__(self):
        for name in ('block_reps', 'ri_reps'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise InvalidParameterError(
                    f"{name} must be a positive integer, got {value!r}"
                )
        seed = self.seed
        if seed is not None and (
            isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) or seed < 0
        ):
            raise InvalidParameterError(
                f"seed must be None or a non-negative integer, got {seed!r}"
            )

    @property
    def task_id(self) -> str:
        return f"{self.outcome}:{self.specification.spec_id}"

    def required_columns(self) -> list:
        cols = [self.outcome, self.cluster, self.period, self.post, self.treated]
        for optional in (self.group, self.weight):
            if optional is not None:
                cols.append(optional)
        cols.extend(self.specification.fe_columns())
        cols.extend(self.specification.controls)
        seen = []
        for col in cols:
            if col not in seen:
                seen.append(col)
        return seen


@dataclass
class TaskContext:
    """
    Task-scoped state: the configuration plus isolated random generators.

    The block bootstrap and the randomization engine receive independent
    child streams spawned from the task seed, so changing the number of
    replications of one engine leaves the other's draws untouched.

    Attributes
    ----------
    config : InferenceConfig
    entropy : int
        Root entropy of the task's seed sequence; re-running with
        ``seed=entropy`` reproduces the task exactly.
    block_rng : numpy.random.Generator
    randomization_rng : numpy.random.Generator
    """
    config: InferenceConfig
    entropy: int
    block_rng: np.random.Generator = field(repr=False)
    randomization_rng: np.random.Generator = field(repr=False)

    @classmethod
    def create(cls, config: InferenceConfig) -> 'TaskContext':
        seed_seq = np.random.SeedSequence(config.seed)
        block_seq, ri_seq = seed_seq.spawn(2)
        return cls(
            config=config,
            entropy=int(seed_seq.entropy),
            block_rng=np.random.default_rng(block_seq),
            randomization_rng=np.random.default_rng(ri_seq),
        )

    @property
    def task_id(self) -> str:
        return self.config.task_id
