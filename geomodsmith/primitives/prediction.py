"""Joint prediction and classification with a multi-class model.

Every class GP is evaluated independently at the targets. The resulting
potentials are combined into:

- a label: the class with the highest potential if that potential exceeds
  the unknown_threshold, otherwise "Unknown";
- probabilities over the C classes plus an implicit Unknown outcome: a
  softmax of [potentials, baseline] / temperature, where the baseline is the
  background level -1/C that every potential relaxes to away from data;
- a normalized entropy in [0, 1] of those probabilities.

Far from the data all C potentials and the Unknown entry are equal, so the
probabilities are uniform, the entropy is 1 and the label is Unknown.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd

from geomodsmith.objects.pointset import PointSet
from geomodsmith.primitives.geomodel import UNKNOWN_LABEL, MultiClassModel, map_classes
from geomodsmith.utils.errors import raise_parameter_error

logger = logging.getLogger(__name__)


@dataclass
class GeoModelPrediction:
    """Per-location prediction of a multi-class model.

    Attributes:
        labels: Class labels (n_classes,), without Unknown.
        potentials: Potential of each class (n_targets, n_classes).
        probabilities: Class probabilities, last column Unknown
            (n_targets, n_classes + 1).
        predicted: Predicted label per target (object array).
        entropy: Normalized entropy per target, in [0, 1].
        variances: Optional predictive variances (n_targets, n_classes).
    """

    labels: list[str]
    potentials: np.ndarray
    probabilities: np.ndarray
    predicted: np.ndarray
    entropy: np.ndarray
    variances: Optional[np.ndarray] = None

    @property
    def n_targets(self) -> int:
        return self.potentials.shape[0]

    def to_frame(self, name: str = "geomod", index: Optional[pd.Index] = None) -> pd.DataFrame:
        """Tabular output with one row per target.

        Columns: ``{name}`` (categorical label), ``{name}_{label}`` potentials,
        ``{name}_{label}_var`` variances (if computed), ``{name}_prob_{label}``
        probabilities including Unknown, and ``{name}_entropy``.
        """
        columns: dict[str, object] = {
            name: pd.Categorical(
                self.predicted, categories=self.labels + [UNKNOWN_LABEL]
            )
        }
        for k, label in enumerate(self.labels):
            columns[f"{name}_{label}"] = self.potentials[:, k]
        if self.variances is not None:
            for k, label in enumerate(self.labels):
                columns[f"{name}_{label}_var"] = self.variances[:, k]
        for k, label in enumerate(self.labels + [UNKNOWN_LABEL]):
            columns[f"{name}_prob_{label}"] = self.probabilities[:, k]
        columns[f"{name}_entropy"] = self.entropy
        return pd.DataFrame(columns, index=index)

    def __repr__(self) -> str:
        """String representation."""
        n_unknown = int(np.sum(self.predicted == UNKNOWN_LABEL))
        return (
            f"GeoModelPrediction(n_targets={self.n_targets}, "
            f"n_classes={len(self.labels)}, n_unknown={n_unknown}, "
            f"mean_entropy={self.entropy.mean():.4f})"
        )


def class_probabilities(
    potentials: np.ndarray, baseline: float, temperature: float
) -> np.ndarray:
    """Softmax over the class potentials plus an Unknown entry at the baseline."""
    scores = np.column_stack(
        [potentials, np.full(potentials.shape[0], baseline)]
    ) / temperature
    scores -= scores.max(axis=1, keepdims=True)
    weights = np.exp(scores)
    return weights / weights.sum(axis=1, keepdims=True)


def normalized_entropy(probabilities: np.ndarray) -> np.ndarray:
    """Shannon entropy divided by its maximum, log(n_outcomes)."""
    p = np.clip(probabilities, 1e-300, 1.0)
    ent = -np.sum(np.where(probabilities > 0, probabilities * np.log(p), 0.0), axis=1)
    return ent / np.log(probabilities.shape[1])


def assign_labels(
    potentials: np.ndarray, labels: list[str], threshold: float
) -> np.ndarray:
    """Arg-max class where its potential exceeds threshold, else Unknown."""
    best = np.argmax(potentials, axis=1)
    best_value = potentials[np.arange(potentials.shape[0]), best]
    names = np.array(labels, dtype=object)[best]
    names[~(best_value > threshold)] = UNKNOWN_LABEL
    return names


class Predictor:
    """Evaluate a MultiClassModel at target locations.

    Attributes:
        model: Fitted MultiClassModel.
        unknown_threshold: Minimum winning potential for a real class label.
            The default 0 is the level at which geological boundaries are
            drawn.
        temperature: Softness of the probability transform.
        n_jobs: Number of threads used to evaluate the class GPs.
    """

    def __init__(
        self,
        model: MultiClassModel,
        unknown_threshold: float = 0.0,
        temperature: float = 0.25,
        n_jobs: int = 1,
    ):
        if temperature <= 0:
            raise_parameter_error("temperature", temperature, constraint="must be positive")
        self.model = model
        self.unknown_threshold = float(unknown_threshold)
        self.temperature = float(temperature)
        self.n_jobs = n_jobs

    def predict(
        self,
        points: Union[PointSet, np.ndarray],
        return_variance: bool = False,
    ) -> GeoModelPrediction:
        """Predict potentials, labels, probabilities and entropy.

        Args:
            points: PointSet or (n, 3) array of target coordinates.
            return_variance: Whether to compute per-class variances.

        Returns:
            GeoModelPrediction for every target.
        """
        labels = self.model.labels
        results = map_classes(
            lambda gp: gp.predict(points, return_variance=return_variance),
            list(self.model.gps.values()),
            self.n_jobs,
        )
        potentials = np.column_stack([r.mean for r in results])
        variances = (
            np.column_stack([r.variance for r in results]) if return_variance else None
        )

        probabilities = class_probabilities(
            potentials, self.model.baseline, self.temperature
        )
        predicted = assign_labels(potentials, labels, self.unknown_threshold)
        entropy = normalized_entropy(probabilities)

        logger.info(
            f"Predicted {potentials.shape[0]} locations; "
            f"{int(np.sum(predicted == UNKNOWN_LABEL))} labeled {UNKNOWN_LABEL}"
        )
        return GeoModelPrediction(
            labels=labels,
            potentials=potentials,
            probabilities=probabilities,
            predicted=predicted,
            entropy=entropy,
            variances=variances,
        )
