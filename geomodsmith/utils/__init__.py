"""Utility modules for GeoModSmith."""

from geomodsmith.utils.errors import (
    BoundsError,
    DataValidationError,
    GeoModSmithError,
    InsufficientClassesError,
    ModelConstructionError,
    NumericalError,
    ParameterError,
    PseudoInputError,
    RegularizationLengthError,
    format_parameter_error,
    format_validation_error,
    raise_parameter_error,
    raise_validation_error,
)

__all__ = [
    "GeoModSmithError",
    "DataValidationError",
    "ParameterError",
    "InsufficientClassesError",
    "RegularizationLengthError",
    "PseudoInputError",
    "BoundsError",
    "NumericalError",
    "ModelConstructionError",
    "format_validation_error",
    "format_parameter_error",
    "raise_validation_error",
    "raise_parameter_error",
]
