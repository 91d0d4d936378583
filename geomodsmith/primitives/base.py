"""Base classes for spatial models.

Every per-class potential model implements the same small capability
interface: it is built from data on construction, reports its marginal
log-likelihood and predicts at new locations. Multi-class models hold a
collection of such objects instead of inheriting from them.
"""

from abc import ABC, abstractmethod
from typing import Any

from geomodsmith.objects.pointset import PointSet


class BaseObject:
    """Base class carrying capability tags."""

    def __init__(self) -> None:
        self.tags: dict[str, Any] = {}

    def get_tag(self, name: str, default: Any = None) -> Any:
        return self.tags.get(name, default)


class BaseSpatialModel(BaseObject):
    """Base class for models that predict at point locations."""

    def __init__(self) -> None:
        super().__init__()
        self._fitted = False

    @property
    def is_fitted(self) -> bool:
        """Whether the model is ready for prediction."""
        return self._fitted


class IndicatorModel(BaseSpatialModel, ABC):
    """Interface shared by single-class potential models."""

    @abstractmethod
    def log_likelihood(self) -> float:
        """Marginal log-likelihood of the training data."""

    @abstractmethod
    def predict(self, points: PointSet, return_variance: bool = True) -> Any:
        """Predict the potential at target locations."""
