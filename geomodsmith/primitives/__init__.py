"""Layer 2: Primitives - Algorithm interfaces and pure operations.

This layer defines the numerical core of implicit modeling: covariance
structures, the sparse indicator Gaussian process, the multi-class model,
covariance fitting and joint prediction. It imports numpy, pandas and scipy.
No file I/O or plotting.
"""

from geomodsmith.primitives.base import BaseObject, BaseSpatialModel, IndicatorModel
from geomodsmith.primitives.covariance import (
    CORRELATION_FUNCTIONS,
    STRUCTURE_BLOCK,
    CovarianceModel,
    CovarianceStructure,
    StructureType,
    rotation_matrix,
)
from geomodsmith.primitives.sparse_gp import GPResult, SparseIndicatorGP, joint_covariance
from geomodsmith.primitives.geomodel import (
    UNKNOWN_LABEL,
    MultiClassModel,
    compute_indicators,
    find_categories,
    find_contacts,
    prepare_labels,
)
from geomodsmith.primitives.fitting import (
    CovarianceFitter,
    DifferentialEvolutionOptimizer,
    FitFlags,
    FitResult,
    GlobalOptimizer,
    LogLikelihoodObjective,
    OptimizationResult,
    OptimizerConfig,
    ParameterRanges,
    build_bounds,
    clamp_start,
    fit_covariance,
)
from geomodsmith.primitives.prediction import (
    GeoModelPrediction,
    Predictor,
    assign_labels,
    class_probabilities,
    normalized_entropy,
)

__all__ = [
    # Base
    "BaseObject",
    "BaseSpatialModel",
    "IndicatorModel",
    # Covariance
    "CORRELATION_FUNCTIONS",
    "STRUCTURE_BLOCK",
    "CovarianceModel",
    "CovarianceStructure",
    "StructureType",
    "rotation_matrix",
    # Sparse GP
    "GPResult",
    "SparseIndicatorGP",
    "joint_covariance",
    # Multi-class model
    "UNKNOWN_LABEL",
    "MultiClassModel",
    "compute_indicators",
    "find_categories",
    "find_contacts",
    "prepare_labels",
    # Fitting
    "CovarianceFitter",
    "DifferentialEvolutionOptimizer",
    "FitFlags",
    "FitResult",
    "GlobalOptimizer",
    "LogLikelihoodObjective",
    "OptimizationResult",
    "OptimizerConfig",
    "ParameterRanges",
    "build_bounds",
    "clamp_start",
    "fit_covariance",
    # Prediction
    "GeoModelPrediction",
    "Predictor",
    "assign_labels",
    "class_probabilities",
    "normalized_entropy",
]
