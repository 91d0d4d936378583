"""Implicit geological modeling task.

Layer 3: Tasks - User intent translation.

Translates DataFrames of labeled drillhole samples, structural measurements
and target locations into objects, builds a multi-class model, fits its
covariance and classifies the targets.
"""

import logging
from typing import Optional, Sequence, Union

import pandas as pd

from geomodsmith.objects.directionset import DirectionSet
from geomodsmith.objects.pointset import PointSet
from geomodsmith.primitives.covariance import (
    CovarianceModel,
    CovarianceStructure,
    StructureType,
)
from geomodsmith.primitives.fitting import (
    CovarianceFitter,
    FitFlags,
    FitResult,
    OptimizerConfig,
    ParameterRanges,
)
from geomodsmith.primitives.geomodel import MultiClassModel
from geomodsmith.primitives.prediction import Predictor
from geomodsmith.utils.errors import (
    DataValidationError,
    format_validation_error,
    raise_validation_error,
)

logger = logging.getLogger(__name__)


def _to_pointset(
    data: Union[pd.DataFrame, PointSet], coordinate_columns: Sequence[str]
) -> PointSet:
    if isinstance(data, PointSet):
        return data
    if not isinstance(data, pd.DataFrame):
        raise_validation_error(
            "Expected a pandas DataFrame or PointSet",
            received=type(data).__name__,
        )
    try:
        return PointSet.from_dataframe(data, coordinate_columns=coordinate_columns)
    except ValueError as e:
        raise DataValidationError(
            format_validation_error(str(e), expected=f"columns {list(coordinate_columns)}")
        ) from e


def _to_directionset(
    tangents: Union[pd.DataFrame, DirectionSet, None],
    coordinate_columns: Sequence[str],
    direction_columns: Sequence[str],
) -> Optional[DirectionSet]:
    if tangents is None or isinstance(tangents, DirectionSet):
        return tangents
    missing = [
        c for c in list(coordinate_columns) + list(direction_columns)
        if c not in tangents.columns
    ]
    if missing:
        raise_validation_error(
            f"Tangent columns {missing} not found",
            received=f"available columns: {list(tangents.columns)}",
        )
    try:
        return DirectionSet(
            coordinates=tangents[list(coordinate_columns)].to_numpy(dtype=float),
            directions=tangents[list(direction_columns)].to_numpy(dtype=float),
        )
    except ValueError as e:
        suggestion = "Drop zero-length direction vectors"
        raise DataValidationError(
            format_validation_error(str(e), suggestion=suggestion), suggestion=suggestion
        ) from e


class GeoModelTask:
    """Task for implicit 3D modeling of geological classes.

    Builds one sparse indicator Gaussian process per class from labeled
    samples, fits the shared covariance model by maximizing the total
    log-likelihood, and classifies target locations.

    Example:
        >>> from geomodsmith.tasks import GeoModelTask
        >>>
        >>> task = GeoModelTask(coordinate_columns=("X", "Y", "Z"))
        >>> model = task.build_model(samples, "rock", pseudo_inputs=200, seed=1)
        >>> fit = task.fit_model(model, maxiter=30, seed=1)
        >>> grid = task.predict(fit.model, grid, name="lith")
    """

    def __init__(
        self,
        coordinate_columns: Sequence[str] = ("X", "Y", "Z"),
        direction_columns: Sequence[str] = ("dX", "dY", "dZ"),
        n_jobs: int = 1,
    ):
        """Initialize GeoModelTask.

        Args:
            coordinate_columns: Names of the X, Y and Z columns.
            direction_columns: Names of the tangent direction columns.
            n_jobs: Number of threads used over the classes.
        """
        if len(coordinate_columns) != 3 or len(direction_columns) != 3:
            raise_validation_error(
                "Exactly three coordinate and three direction columns are required",
                received=f"{list(coordinate_columns)}, {list(direction_columns)}",
            )
        self.coordinate_columns = tuple(coordinate_columns)
        self.direction_columns = tuple(direction_columns)
        self.n_jobs = n_jobs

    def default_covariance(
        self,
        data: Union[pd.DataFrame, PointSet],
        structure_type: Union[str, StructureType] = StructureType.MATERN2,
        range_fraction: float = 0.5,
        nugget: float = 0.01,
    ) -> CovarianceModel:
        """Single isotropic structure scaled to the data bounding box.

        Args:
            data: Samples whose bounding box sets the range.
            structure_type: Structure kind; the default is differentiable so
                that tangent data can be used.
            range_fraction: Range as a fraction of the bounding-box diagonal.
            nugget: Nugget effect.

        Returns:
            CovarianceModel with one structure of unit contribution.
        """
        points = _to_pointset(data, self.coordinate_columns)
        diag = points.diagonal()
        if diag <= 0:
            raise_validation_error(
                "Data points must span a non-degenerate bounding box",
                received=f"diagonal {diag}",
            )
        structure = CovarianceStructure(
            type=StructureType.parse(structure_type),
            contribution=1.0,
            maxrange=diag * range_fraction,
        )
        return CovarianceModel(structures=(structure,), nugget=nugget)

    def build_model(
        self,
        data: Union[pd.DataFrame, PointSet],
        value1: str,
        value2: Optional[str] = None,
        model: Optional[CovarianceModel] = None,
        tangents: Union[pd.DataFrame, DirectionSet, None] = None,
        **kwargs,
    ) -> MultiClassModel:
        """Build a multi-class model from labeled samples.

        Args:
            data: Samples with coordinate and label columns.
            value1: Label column.
            value2: Optional second label column marking contacts.
            model: Covariance model; defaults to default_covariance(data).
            tangents: Structural measurements, as a DirectionSet or a
                DataFrame with coordinate and direction columns.
            **kwargs: Passed to MultiClassModel.from_data (pseudo_inputs,
                pseudo_tangents, enforce_contacts, reg_v, reg_t, nugget,
                variational, seed).

        Returns:
            MultiClassModel with one GP per class.
        """
        points = _to_pointset(data, self.coordinate_columns)
        if model is None:
            model = self.default_covariance(points)
            logger.info(f"Using default covariance model {model!r}")
        directions = _to_directionset(
            tangents, self.coordinate_columns, self.direction_columns
        )
        return MultiClassModel.from_data(
            points,
            value1,
            value2,
            model=model,
            tangents=directions,
            n_jobs=self.n_jobs,
            **kwargs,
        )

    def fit_model(
        self,
        model: MultiClassModel,
        flags: Optional[FitFlags] = None,
        ranges: Optional[ParameterRanges] = None,
        **optimizer_kwargs,
    ) -> FitResult:
        """Fit the shared covariance model.

        Args:
            model: MultiClassModel to fit.
            flags: Hyperparameter groups to search; defaults to maxrange
                and contributions only.
            ranges: Search ranges for the free hyperparameters.
            **optimizer_kwargs: OptimizerConfig fields (popsize, maxiter,
                tol, seed, workers, timeout, ...).

        Returns:
            FitResult holding the fitted model and the search diagnostics.
        """
        fitter = CovarianceFitter(
            model,
            flags=flags,
            config=OptimizerConfig(**optimizer_kwargs),
            ranges=ranges,
            n_jobs=self.n_jobs,
        )
        return fitter.fit()

    def predict(
        self,
        model: MultiClassModel,
        targets: Union[pd.DataFrame, PointSet],
        name: str = "geomod",
        unknown_threshold: float = 0.0,
        temperature: float = 0.25,
        return_variance: bool = False,
    ) -> pd.DataFrame:
        """Classify target locations.

        Args:
            model: Fitted MultiClassModel.
            targets: Target locations as a DataFrame or PointSet.
            name: Prefix of the output columns.
            unknown_threshold: Minimum winning potential for a class label.
            temperature: Softness of the probability transform.
            return_variance: Whether to add per-class variance columns.

        Returns:
            The targets as a DataFrame (same rows and index) with the
            prediction columns appended.
        """
        points = _to_pointset(targets, self.coordinate_columns)
        predictor = Predictor(
            model,
            unknown_threshold=unknown_threshold,
            temperature=temperature,
            n_jobs=self.n_jobs,
        )
        prediction = predictor.predict(points, return_variance=return_variance)

        if isinstance(targets, pd.DataFrame):
            base = targets.copy()
        else:
            base = pd.DataFrame(
                points.coordinates, columns=list(self.coordinate_columns)
            )
            if points.attributes is not None:
                base = pd.concat([base, points.attributes], axis=1)

        frame = prediction.to_frame(name=name, index=base.index)
        overlap = [c for c in frame.columns if c in base.columns]
        if overlap:
            logger.warning(f"Overwriting existing columns {overlap}")
            base = base.drop(columns=overlap)
        return pd.concat([base, frame], axis=1)

    def classify_counts(self, predictions: pd.DataFrame, name: str = "geomod") -> pd.Series:
        """Number of targets assigned to each label, Unknown included."""
        if name not in predictions.columns:
            raise_validation_error(
                f"Prediction column '{name}' not found",
                received=f"available columns: {list(predictions.columns)}",
            )
        return predictions[name].value_counts(sort=False)
