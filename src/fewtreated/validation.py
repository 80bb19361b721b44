"""
Input validation for inference tasks.

Checks the estimation sample against an :class:`InferenceConfig` before
any model is fitted, drops incomplete rows, and derives the treatment
indicator and the per-cluster treated flags.
"""

from __future__ import annotations

from typing import Tuple
import warnings

import numpy as np
import pandas as pd

from .config import InferenceConfig
from .exceptions import (
    InvalidParameterError,
    MissingRequiredColumnError,
    NoControlUnitsError,
    NoTreatedUnitsError,
)
from .warnings_categories import DataWarning

# Column added to the validated sample; must not clash with user columns.
TREATMENT_COLUMN = '_treatment'


def _validate_required_columns(data: pd.DataFrame, config: InferenceConfig) -> None:
    """
    Validate existence of required columns
    """
    missing_cols = [col for col in config.required_columns() if col not in data.columns]
    if missing_cols:
        raise MissingRequiredColumnError(
            f"Required column(s) not found in data: {missing_cols}. "
            f"Available columns: {list(data.columns)}"
        )
    if TREATMENT_COLUMN in data.columns:
        raise InvalidParameterError(
            f"Input data contains the reserved column name '{TREATMENT_COLUMN}'. "
            f"Please rename it before running inference."
        )


def _validate_numeric(data: pd.DataFrame, columns: list, role: str) -> None:
    for col in columns:
        if not pd.api.types.is_numeric_dtype(data[col].dtype):
            raise InvalidParameterError(
                f"{role} '{col}' must be numeric. Found dtype: '{data[col].dtype}'. "
                f"Convert it first, e.g. data['{col}'] = pd.to_numeric(data['{col}'])."
            )


def _validate_binary(data: pd.DataFrame, col: str) -> None:
    values = pd.unique(data[col])
    if not set(np.asarray(values, dtype=np.float64).tolist()) <= {0.0, 1.0}:
        raise InvalidParameterError(
            f"Column '{col}' must be a 0/1 indicator. Found values: "
            f"{sorted(values.tolist())[:10]}"
        )


def _validate_constant_within(data: pd.DataFrame, col: str, by: str) -> None:
    n_distinct = data.groupby(by)[col].nunique()
    varying = n_distinct[n_distinct > 1]
    if len(varying) > 0:
        raise InvalidParameterError(
            f"Column '{col}' must be constant within each '{by}'. "
            f"It varies within: {list(varying.index)[:5]}"
        )


def _validate_weights(data: pd.DataFrame, weight: str) -> None:
    w = data[weight].to_numpy(dtype=np.float64)
    if np.any(~np.isfinite(w)) or np.any(w < 0):
        raise InvalidParameterError(
            f"Weights in '{weight}' must be finite and non-negative."
        )
    if w.sum() <= 0:
        raise InvalidParameterError(f"Weights in '{weight}' sum to zero.")


def validate_inference_data(
    data: pd.DataFrame,
    config: InferenceConfig,
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Validate and prepare the estimation sample for one task.

    Parameters
    ----------
    data : pd.DataFrame
        Panel in long format, one row per unit×period (cluster×period×group
        cells or finer).
    config : InferenceConfig

    Returns
    -------
    sample : pd.DataFrame
        Complete-case copy with a fresh RangeIndex and an added
        ``_treatment`` column equal to ``treated * post (* group)``.
    treated_flags : pd.Series
        Ever-treated flag (bool) indexed by cluster, sorted.

    Raises
    ------
    TypeError
        If ``data`` is not a DataFrame.
    MissingRequiredColumnError
        If a configured column is absent.
    InvalidParameterError
        For non-numeric outcomes or controls, non-binary indicators,
        indicators that vary where they must be constant, or invalid weights.
    NoTreatedUnitsError, NoControlUnitsError
        If the sample has no treated or no control cluster.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError(f"data must be a pandas DataFrame, got {type(data).__name__}")

    _validate_required_columns(data, config)
    columns = config.required_columns()
    _validate_numeric(data, [config.outcome], 'Outcome variable')
    _validate_numeric(data, list(config.specification.controls), 'Control variable')

    complete = data[columns].notna().all(axis=1)
    n_dropped = int((~complete).sum())
    if n_dropped > 0:
        warnings.warn(
            f"Dropped {n_dropped} of {len(data)} row(s) with missing values in "
            f"{columns}.",
            DataWarning,
            stacklevel=3,
        )
    sample = data.loc[complete, columns].reset_index(drop=True)
    if len(sample) == 0:
        raise InvalidParameterError('No complete rows remain after dropping missing values.')

    indicators = [config.post, config.treated]
    if config.group is not None:
        indicators.append(config.group)
    _validate_numeric(sample, indicators, 'Indicator')
    for col in indicators:
        _validate_binary(sample, col)
    _validate_constant_within(sample, config.post, config.period)
    _validate_constant_within(sample, config.treated, config.cluster)
    if config.weight is not None:
        _validate_weights(sample, config.weight)

    treated_flags = (
        sample.groupby(config.cluster, sort=True)[config.treated].first().astype(bool)
    )
    n_treated = int(treated_flags.sum())
    if n_treated == 0:
        raise NoTreatedUnitsError(
            f"No cluster has {config.treated}=1; at least one treated cluster is required."
        )
    if n_treated == len(treated_flags):
        raise NoControlUnitsError(
            f"Every cluster has {config.treated}=1; at least one never-treated "
            f"cluster is required."
        )

    treatment = sample[config.treated].astype(np.float64) * sample[config.post].astype(np.float64)
    if config.group is not None:
        treatment = treatment * sample[config.group].astype(np.float64)
    sample[TREATMENT_COLUMN] = treatment
    return sample, treated_flags
