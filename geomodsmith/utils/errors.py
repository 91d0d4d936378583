"""Standardized errors for GeoModSmith.

Configuration errors (bad labels, bounds, pseudo-inputs, regularization) each
have their own class so callers can tell them apart. They are all raised
before any optimization work starts.
"""

from typing import Any, Optional


class GeoModSmithError(Exception):
    """Base exception for GeoModSmith errors."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize GeoModSmith error.

        Args:
            message: Primary error message.
            suggestion: Optional suggestion for fixing the error.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}

    def __str__(self) -> str:
        """Format error message with suggestion if available."""
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message


class DataValidationError(GeoModSmithError):
    """Error raised when data validation fails."""

    pass


class ParameterError(GeoModSmithError):
    """Error raised when parameters are invalid."""

    pass


class InsufficientClassesError(DataValidationError):
    """Fewer than two geological classes in the label columns."""

    pass


class RegularizationLengthError(DataValidationError):
    """Regularization vector length does not match the observation count."""

    pass


class PseudoInputError(ParameterError):
    """Pseudo-input request cannot be satisfied by the data."""

    pass


class BoundsError(ParameterError):
    """Optimizer bounds are inconsistent (min > max)."""

    pass


class NumericalError(GeoModSmithError):
    """Covariance matrix factorization failed or produced non-finite values."""

    pass


class ModelConstructionError(GeoModSmithError):
    """No candidate model could be built during covariance fitting."""

    pass


def format_validation_error(
    message: str,
    expected: Optional[str] = None,
    received: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> str:
    """Format a standardized validation error message.

    Args:
        message: Primary error message.
        expected: What was expected (optional).
        received: What was received (optional).
        suggestion: How to fix the error (optional).

    Returns:
        Formatted error message string.
    """
    parts = [message]
    if expected and received:
        parts.append(f"Expected: {expected}, Received: {received}")
    elif expected:
        parts.append(f"Expected: {expected}")
    elif received:
        parts.append(f"Received: {received}")
    if suggestion:
        parts.append(f"Suggestion: {suggestion}")
    return "\n".join(parts)


def format_parameter_error(
    parameter_name: str,
    value: Any,
    valid_values: Optional[list[str]] = None,
    constraint: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> str:
    """Format a standardized parameter error message.

    Args:
        parameter_name: Name of the invalid parameter.
        value: Invalid value that was provided.
        valid_values: List of valid values (optional).
        constraint: Constraint that was violated (optional).
        suggestion: How to fix the error (optional).

    Returns:
        Formatted error message string.
    """
    parts = [f"Invalid value for parameter '{parameter_name}': {value}"]
    if valid_values:
        parts.append(f"Valid values: {', '.join(map(str, valid_values))}")
    if constraint:
        parts.append(f"Constraint: {constraint}")
    if suggestion:
        parts.append(f"Suggestion: {suggestion}")
    return "\n".join(parts)


def raise_validation_error(
    message: str,
    expected: Optional[str] = None,
    received: Optional[str] = None,
    suggestion: Optional[str] = None,
    error_class: type[DataValidationError] = DataValidationError,
) -> None:
    """Raise a standardized validation error.

    Args:
        message: Primary error message.
        expected: What was expected (optional).
        received: What was received (optional).
        suggestion: How to fix the error (optional).
        error_class: DataValidationError subclass to raise.

    Raises:
        DataValidationError: Always raises this exception (or the subclass).
    """
    error_msg = format_validation_error(message, expected, received, suggestion)
    raise error_class(error_msg, suggestion=suggestion)


def raise_parameter_error(
    parameter_name: str,
    value: Any,
    valid_values: Optional[list[str]] = None,
    constraint: Optional[str] = None,
    suggestion: Optional[str] = None,
    error_class: type[ParameterError] = ParameterError,
) -> None:
    """Raise a standardized parameter error.

    Args:
        parameter_name: Name of the invalid parameter.
        value: Invalid value that was provided.
        valid_values: List of valid values (optional).
        constraint: Constraint that was violated (optional).
        suggestion: How to fix the error (optional).
        error_class: ParameterError subclass to raise.

    Raises:
        ParameterError: Always raises this exception (or the subclass).
    """
    error_msg = format_parameter_error(
        parameter_name, value, valid_values, constraint, suggestion
    )
    raise error_class(error_msg, suggestion=suggestion)
