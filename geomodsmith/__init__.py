"""GeoModSmith: implicit 3D geological modeling with sparse Gaussian processes.

Layers:
    objects: immutable data containers (PointSet, DirectionSet)
    primitives: covariance structures, sparse indicator GP, multi-class
        model, covariance fitting and prediction
    tasks: DataFrame-level workflows (GeoModelTask)
    utils: error taxonomy
"""

from geomodsmith.objects import DirectionSet, PointSet
from geomodsmith.primitives import (
    CovarianceFitter,
    CovarianceModel,
    CovarianceStructure,
    FitFlags,
    FitResult,
    GeoModelPrediction,
    MultiClassModel,
    OptimizerConfig,
    Predictor,
    SparseIndicatorGP,
    StructureType,
    fit_covariance,
)
from geomodsmith.tasks import GeoModelTask

__version__ = "0.1.0"

__all__ = [
    "CovarianceFitter",
    "CovarianceModel",
    "CovarianceStructure",
    "DirectionSet",
    "FitFlags",
    "FitResult",
    "GeoModelPrediction",
    "GeoModelTask",
    "MultiClassModel",
    "OptimizerConfig",
    "PointSet",
    "Predictor",
    "SparseIndicatorGP",
    "StructureType",
    "fit_covariance",
]
