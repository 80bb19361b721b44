"""
Resampling inference methods for few treated clusters.

Modules
-------
variance_correction
    Ferman-Pinto heteroskedasticity correction with ordered fallbacks.
block_bootstrap
    Cluster block bootstrap on aggregated residual contrasts.
wild_randomization
    Randomization inference over placebo worlds with wild cluster draws.
"""

from .variance_correction import (
    correct_variance,
    VarianceCorrection,
)
from .block_bootstrap import (
    block_bootstrap,
    BlockBootstrapResult,
)
from .wild_randomization import (
    wild_randomization_inference,
    RandomizationResult,
)

__all__ = [
    'correct_variance',
    'VarianceCorrection',
    'block_bootstrap',
    'BlockBootstrapResult',
    'wild_randomization_inference',
    'RandomizationResult',
]
