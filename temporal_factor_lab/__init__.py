"""
temporal_factor_lab - Latent Factor Models with Temporal Smoothness
"""

__version__ = "0.1.0"

# =============================================================================
# CORE TYPES
# =============================================================================
from .types import (
    TemporalData,
    TrainingOptions,
    ConvergenceInfo,
    ConvergenceMode,
    SeedStrategy,
    Direction,
    TrainingState,
    Factor,
    TrainedModel,
)

# =============================================================================
# ERRORS
# =============================================================================
from .exceptions import (
    TemporalFactorError,
    MissingCovariateError,
    InsufficientSamplesError,
    InvalidFactorIndexError,
    NonConvergenceWarning,
)

# =============================================================================
# DATA
# =============================================================================
from .data import (
    prepare_data,
    from_dataframe,
)

# =============================================================================
# MODEL & INFERENCE
# =============================================================================
from .gp import (
    SmoothPrior,
    squared_exponential,
)
from .model import FactorModel, signal_rank
from .inference import (
    InferenceEngine,
    train,
)

# =============================================================================
# INTERPRETATION
# =============================================================================
from .ranking import (
    RankedFeatureList,
    rank_features,
    top_features,
)
from .reports import (
    variance_explained_table,
    smoothness_table,
    ranking_table,
    factor_scores_table,
)

# =============================================================================
# SIMULATION
# =============================================================================
from .simulation import (
    SimulatedTimeCourse,
    simulate_time_course,
)

# PUBLIC API
# =============================================================================
__all__ = [
    "__version__",
    "TemporalData",
    "TrainingOptions",
    "ConvergenceInfo",
    "ConvergenceMode",
    "SeedStrategy",
    "Direction",
    "TrainingState",
    "Factor",
    "TrainedModel",
    "TemporalFactorError",
    "MissingCovariateError",
    "InsufficientSamplesError",
    "InvalidFactorIndexError",
    "NonConvergenceWarning",
    "prepare_data",
    "from_dataframe",
    "SmoothPrior",
    "squared_exponential",
    "FactorModel",
    "signal_rank",
    "InferenceEngine",
    "train",
    "RankedFeatureList",
    "rank_features",
    "top_features",
    "variance_explained_table",
    "smoothness_table",
    "ranking_table",
    "factor_scores_table",
    "SimulatedTimeCourse",
    "simulate_time_course",
]
