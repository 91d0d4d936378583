"""Multi-class implicit geological model.

One sparse indicator GP is built per geological class. Labels come from two
columns so that points lying on a boundary between two classes (contacts)
can be recognized: where both labels are equal the point is inside a class,
where they differ the point sits exactly on the contact.

Indicator per class and per label column is +1 where the label equals the
class and -1/C otherwise (C classes). The two columns are averaged, so

- both labels match:  +1
- one label matches:  (1 - 1/C) / 2   (contact signature)
- no label matches:   -1/C            (compositional baseline)

Each GP uses the baseline -1/C as its mean, so far from data every potential
relaxes towards the same background level.

Reference:
    Gonçalves IG, Kumaira S, Guadagnin F. A machine learning approach to the
    potential-field method for implicit modeling of geological structures.
    Comput Geosci 2017;103:173-82.
"""

import logging
from multiprocessing.pool import ThreadPool
from typing import Any, Optional, Sequence, Union

import numpy as np
import pandas as pd

from geomodsmith.objects.directionset import DirectionSet
from geomodsmith.objects.pointset import PointSet
from geomodsmith.primitives.base import BaseSpatialModel
from geomodsmith.primitives.covariance import CovarianceModel
from geomodsmith.primitives.sparse_gp import SparseIndicatorGP
from geomodsmith.utils.errors import (
    InsufficientClassesError,
    PseudoInputError,
    raise_parameter_error,
    raise_validation_error,
)

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"


def _label_array(values: Any) -> np.ndarray:
    series = pd.Series(values, dtype=object)
    out = series.to_numpy(dtype=object, copy=True)
    out[pd.isna(series).to_numpy()] = None
    return out


def prepare_labels(
    value1: Sequence[Any], value2: Optional[Sequence[Any]] = None
) -> tuple[np.ndarray, np.ndarray]:
    """Align the two label columns, filling a missing label from the other.

    Raises:
        DataValidationError: If lengths differ or a point has no label at all.
    """
    v1 = _label_array(value1)
    v2 = v1.copy() if value2 is None else _label_array(value2)
    if len(v1) != len(v2):
        raise_validation_error(
            "Label columns must have the same length",
            expected=str(len(v1)),
            received=str(len(v2)),
        )

    missing1 = np.array([v is None for v in v1], dtype=bool)
    missing2 = np.array([v is None for v in v2], dtype=bool)
    both = missing1 & missing2
    if np.any(both):
        raise_validation_error(
            f"{int(both.sum())} point(s) have no label in either column",
            received=f"indices {np.flatnonzero(both)[:10].tolist()}",
            suggestion="Drop unlabeled points before building the model",
        )
    v1[missing1] = v2[missing1]
    v2[missing2] = v1[missing2]
    return v1, v2


def find_categories(value1: np.ndarray, value2: np.ndarray) -> list[Any]:
    """Sorted unique non-missing labels of both columns.

    Raises:
        DataValidationError: If distinct labels have the same string form.
        InsufficientClassesError: If fewer than 2 classes are present.
    """
    labels = pd.unique(pd.Series(np.concatenate([value1, value2]), dtype=object).dropna())
    try:
        categories = sorted(labels)
    except TypeError:
        categories = sorted(labels, key=str)
    # Class GPs are keyed by str(label)
    names = pd.Series([str(c) for c in categories])
    if names.duplicated().any():
        colliding = [c for c, dup in zip(categories, names.duplicated(keep=False)) if dup]
        raise_validation_error(
            "Distinct labels share the same text form",
            expected="labels with unique string representations",
            received=", ".join(repr(c) for c in colliding),
            suggestion="Convert the label column to a single type",
        )
    if len(categories) < 2:
        raise_validation_error(
            "At least 2 geological classes are required",
            expected=">= 2 distinct labels",
            received=f"{len(categories)}: {categories}",
            error_class=InsufficientClassesError,
        )
    return categories


def compute_indicators(
    value1: np.ndarray, value2: np.ndarray, categories: Sequence[Any]
) -> np.ndarray:
    """Indicator matrix (n_points, n_classes) from the two label columns."""
    n_cat = len(categories)
    cats = np.empty(n_cat, dtype=object)
    cats[:] = list(categories)
    negative = -1.0 / n_cat
    ind1 = np.where(value1[:, None] == cats[None, :], 1.0, negative)
    ind2 = np.where(value2[:, None] == cats[None, :], 1.0, negative)
    return (ind1 + ind2) / 2.0


def find_contacts(value1: np.ndarray, value2: np.ndarray, category: Any) -> np.ndarray:
    """Indices where exactly one of the two labels equals the category.

    These are the points whose indicator equals (1 - 1/C) / 2.
    """
    return np.flatnonzero((value1 == category) != (value2 == category))


def resolve_pseudo_inputs(
    data: PointSet,
    pseudo_inputs: Union[int, np.ndarray, PointSet, None],
    rng: np.random.Generator,
) -> np.ndarray:
    """Pseudo-input coordinates from a count (sampled from the data) or array."""
    if pseudo_inputs is None:
        return data.coordinates.copy()
    if isinstance(pseudo_inputs, PointSet):
        return pseudo_inputs.coordinates.copy()
    if np.isscalar(pseudo_inputs):
        n = int(pseudo_inputs)
        if n < 1 or n > data.n_points:
            raise_parameter_error(
                "pseudo_inputs",
                n,
                constraint=f"must be between 1 and the number of data points "
                f"({data.n_points})",
                error_class=PseudoInputError,
            )
        idx = np.sort(rng.choice(data.n_points, size=n, replace=False))
        return data.coordinates[idx].copy()

    coords = np.atleast_2d(np.asarray(pseudo_inputs, dtype=float))
    if coords.ndim != 2 or coords.shape[1] != 3 or coords.shape[0] == 0:
        raise_parameter_error(
            "pseudo_inputs",
            coords.shape,
            constraint="coordinates must have shape (n_pseudo, 3)",
            error_class=PseudoInputError,
        )
    return coords.copy()


def resolve_pseudo_tangents(
    tangents: Optional[DirectionSet],
    pseudo_tangents: Union[int, DirectionSet, None],
    rng: np.random.Generator,
) -> Optional[DirectionSet]:
    """Pseudo-tangents from a count (sampled from the tangents) or DirectionSet."""
    if pseudo_tangents is None or isinstance(pseudo_tangents, DirectionSet):
        return pseudo_tangents
    n = int(pseudo_tangents)
    if n == 0:
        return None
    n_available = 0 if tangents is None else tangents.n_directions
    if n < 0 or n > n_available:
        raise_parameter_error(
            "pseudo_tangents",
            n,
            constraint=f"must be between 0 and the number of tangents ({n_available})",
            error_class=PseudoInputError,
        )
    idx = np.sort(rng.choice(n_available, size=n, replace=False))
    return tangents.subset(idx)  # type: ignore[union-attr]


class MultiClassModel(BaseSpatialModel):
    """Collection of per-class sparse indicator GPs sharing one covariance model.

    Attributes:
        gps: Mapping from class label to its SparseIndicatorGP.
        params: Modeling parameters (reg_v, reg_t, nugget, enforce_contacts).
    """

    def __init__(self, gps: dict[str, SparseIndicatorGP], params: Optional[dict] = None):
        super().__init__()
        if len(gps) < 2:
            raise_validation_error(
                "At least 2 geological classes are required",
                received=str(len(gps)),
                error_class=InsufficientClassesError,
            )
        self.gps = dict(gps)
        self.params = dict(params or {})
        self.tags["supports_3d"] = True
        self._loglik: Optional[float] = None
        self._fitted = True

    @classmethod
    def from_data(
        cls,
        data: PointSet,
        value1: str,
        value2: Optional[str] = None,
        model: CovarianceModel = None,  # type: ignore[assignment]
        nugget: Optional[float] = None,
        tangents: Optional[DirectionSet] = None,
        pseudo_inputs: Union[int, np.ndarray, PointSet, None] = None,
        pseudo_tangents: Union[int, DirectionSet, None] = None,
        enforce_contacts: bool = False,
        reg_v: Union[float, np.ndarray] = 1e-9,
        reg_t: Union[float, np.ndarray] = 1e-9,
        variational: bool = True,
        seed: Optional[int] = None,
        n_jobs: int = 1,
    ) -> "MultiClassModel":
        """Build one sparse indicator GP per geological class.

        Args:
            data: PointSet whose attributes hold the label columns.
            value1: Column with the geological class labels.
            value2: Second label column; differs from value1 at contacts.
                Defaults to value1 (no contacts).
            model: Covariance model shared by all classes.
            nugget: Nugget override; defaults to the model's nugget.
            tangents: Optional structural data.
            pseudo_inputs: Number of pseudo-inputs sampled from the data, or
                their coordinates. Defaults to all data points.
            pseudo_tangents: Number of pseudo-tangents sampled from the
                tangents, or a DirectionSet.
            enforce_contacts: Force the potentials through the contact points.
            reg_v: Value-data regularization (scalar or one per data point).
            reg_t: Tangent regularization (scalar or one per tangent).
            variational: Use the variational approximation instead of FITC.
            seed: Seed for sampling pseudo-inputs and pseudo-tangents.
            n_jobs: Number of threads used to build the class GPs.

        Returns:
            MultiClassModel with one GP per class.

        Raises:
            InsufficientClassesError: If fewer than 2 classes are present.
            PseudoInputError: If more pseudo-inputs are requested than data.
            RegularizationLengthError: If a regularization vector has the
                wrong length.
        """
        if model is None:
            raise_parameter_error("model", None, constraint="a CovarianceModel is required")
        if nugget is not None:
            model = model.with_nugget(nugget)
        if data.attributes is None:
            raise_validation_error(
                "Data must carry an attribute table with the label columns"
            )
        for column in (value1, value2 or value1):
            if column not in data.attributes.columns:
                raise_validation_error(
                    f"Label column '{column}' not found",
                    received=f"available columns: {list(data.attributes.columns)}",
                )

        v1, v2 = prepare_labels(
            data.attributes[value1],
            None if value2 is None else data.attributes[value2],
        )
        categories = find_categories(v1, v2)
        n_cat = len(categories)
        indicators = compute_indicators(v1, v2, categories)
        logger.info(f"Building model for {n_cat} classes: {categories}")

        rng = np.random.default_rng(seed)
        pseudo_coords = resolve_pseudo_inputs(data, pseudo_inputs, rng)
        pseudo_dirs = resolve_pseudo_tangents(tangents, pseudo_tangents, rng)

        contacts = [find_contacts(v1, v2, cat) for cat in categories]
        n_contacts = int(np.sum(v1 != v2))
        logger.info(
            f"Detected {n_contacts} contact point(s); "
            f"enforced: {bool(enforce_contacts)}"
        )

        def build(i: int) -> SparseIndicatorGP:
            interpolate = contacts[i] if enforce_contacts else np.zeros(0, dtype=int)
            return SparseIndicatorGP(
                data=data,
                values=indicators[:, i],
                model=model,
                mean=-1.0 / n_cat,
                tangents=tangents,
                interpolate=interpolate,
                pseudo_inputs=pseudo_coords.copy(),
                pseudo_tangents=pseudo_dirs,
                reg_v=reg_v,
                reg_t=reg_t,
                variational=variational,
            )

        gps_list = map_classes(build, range(n_cat), n_jobs)
        gps = {str(cat): gp for cat, gp in zip(categories, gps_list)}

        params = {
            "reg_v": reg_v,
            "reg_t": reg_t,
            "nugget": model.nugget,
            "enforce_contacts": bool(enforce_contacts),
            "variational": bool(variational),
        }
        return cls(gps, params)

    def rebuild(self, model: CovarianceModel, n_jobs: int = 1) -> "MultiClassModel":
        """New model with the same per-class state and another covariance model."""
        gps_list = map_classes(lambda gp: gp.rebuild(model), list(self.gps.values()), n_jobs)
        params = dict(self.params)
        params["nugget"] = model.nugget
        return MultiClassModel(dict(zip(self.gps.keys(), gps_list)), params)

    @property
    def labels(self) -> list[str]:
        return list(self.gps.keys())

    @property
    def n_classes(self) -> int:
        return len(self.gps)

    @property
    def _first(self) -> SparseIndicatorGP:
        return next(iter(self.gps.values()))

    @property
    def model(self) -> CovarianceModel:
        """Covariance model shared by the classes."""
        return self._first.model

    @property
    def data(self) -> PointSet:
        return self._first.data

    @property
    def baseline(self) -> float:
        """Compositional baseline (-1/C), the mean of every class GP."""
        return -1.0 / self.n_classes

    @property
    def n_data(self) -> int:
        return self._first.n_data

    @property
    def n_pseudo_inputs(self) -> int:
        return self._first.n_pseudo_inputs

    @property
    def n_tangents(self) -> int:
        return self._first.n_tangents

    @property
    def n_pseudo_tangents(self) -> int:
        return self._first.n_pseudo_tangents

    def class_log_likelihoods(self) -> dict[str, float]:
        return {label: gp.log_likelihood() for label, gp in self.gps.items()}

    def log_likelihood(self) -> float:
        """Total log-likelihood: the sum of the per-class log-likelihoods."""
        if self._loglik is None:
            self._loglik = float(sum(self.class_log_likelihoods().values()))
        return self._loglik

    def _header(self) -> list[str]:
        return [
            f"Object of class {type(self).__name__}",
            f"Data points: {self.n_data}",
            f"Pseudo-inputs: {self.n_pseudo_inputs}",
            f"Tangent points: {self.n_tangents}",
            f"Pseudo-tangents: {self.n_pseudo_tangents}",
            f"Number of classes: {self.n_classes}",
        ]

    def show(self) -> str:
        """Short description: counts, log-likelihood and class labels."""
        lines = self._header()
        lines.append(f"Log-likelihood: {self.log_likelihood():.4f}")
        lines.append("Class labels:")
        lines.extend(f"   {label}" for label in self.labels)
        return "\n".join(lines)

    def summary(self) -> str:
        """Long description with one section per class."""
        lines = self._header()
        lines.append(f"Total Log-likelihood: {self.log_likelihood():.4f}")
        lines.append("")
        for label, gp in self.gps.items():
            lines.append(f"* Class label: {label}")
            lines.append(gp.summary())
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.show()

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"MultiClassModel(n_classes={self.n_classes}, n_data={self.n_data}, "
            f"n_pseudo_inputs={self.n_pseudo_inputs}, "
            f"loglik={self.log_likelihood():.4f})"
        )


def map_classes(func, items, n_jobs: int) -> list:
    """Apply func to every class item, on a thread pool when n_jobs > 1."""
    items = list(items)
    if n_jobs is None or n_jobs <= 1 or len(items) <= 1:
        return [func(item) for item in items]
    with ThreadPool(min(n_jobs, len(items))) as pool:
        return pool.map(func, items)
