"""Sparse (pseudo-input) Gaussian process for one indicator variable.

The GP regresses a scalar potential on 3D coordinates with a constant mean.
Structural data enter as tangent observations: the directional derivative
of the potential along each tangent is observed to be zero.

The full covariance matrix is replaced by a low-rank approximation through
an inducing set made of the pseudo-inputs, the pseudo-tangents and the data
points that must be interpolated exactly. Two approximations are available:

- variational free energy (Titsias, 2009), the default;
- FITC (Snelson & Ghahramani, 2006).

The system is factorized once on construction; the object is immutable
afterwards and a new covariance model requires a new object (see rebuild).
"""

import logging
from dataclasses import dataclass
from typing import NamedTuple, Optional, Union

import numpy as np
from scipy.linalg import cholesky, solve_triangular

from geomodsmith.objects.directionset import DirectionSet
from geomodsmith.objects.pointset import PointSet
from geomodsmith.primitives.base import IndicatorModel
from geomodsmith.primitives.covariance import CovarianceModel
from geomodsmith.utils.errors import (
    NumericalError,
    ParameterError,
    RegularizationLengthError,
    raise_validation_error,
)

logger = logging.getLogger(__name__)

_LOG_2PI = np.log(2.0 * np.pi)


@dataclass
class GPResult:
    """Container for GP predictions.

    Attributes:
        mean: Predictive mean at target locations.
        variance: Predictive variance of the latent potential.
    """

    mean: np.ndarray
    variance: np.ndarray

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"GPResult(n_predictions={len(self.mean)}, "
            f"mean_prediction={self.mean.mean():.4f}, "
            f"mean_variance={self.variance.mean():.4f})"
        )


class _Locations(NamedTuple):
    """Value locations plus directional-derivative locations."""

    values: np.ndarray
    tangent_coords: np.ndarray
    tangent_dirs: np.ndarray

    @property
    def size(self) -> int:
        return self.values.shape[0] + self.tangent_coords.shape[0]


def _empty() -> np.ndarray:
    return np.zeros((0, 3))


def joint_covariance(
    model: CovarianceModel, a: _Locations, b: _Locations
) -> np.ndarray:
    """Covariance matrix between two mixed sets of values and derivatives."""
    na_v, na_t = a.values.shape[0], a.tangent_coords.shape[0]
    nb_v, nb_t = b.values.shape[0], b.tangent_coords.shape[0]
    out = np.zeros((na_v + na_t, nb_v + nb_t))

    if na_v and nb_v:
        out[:na_v, :nb_v] = model.covariance(a.values, b.values)
    if na_v and nb_t:
        out[:na_v, nb_v:] = model.covariance_value_derivative(
            a.values, b.tangent_coords, b.tangent_dirs
        )
    if na_t and nb_v:
        out[na_v:, :nb_v] = model.covariance_value_derivative(
            b.values, a.tangent_coords, a.tangent_dirs
        ).T
    if na_t and nb_t:
        out[na_v:, nb_v:] = model.covariance_derivative(
            a.tangent_coords, a.tangent_dirs, b.tangent_coords, b.tangent_dirs
        )
    return out


def _as_regularization(
    reg: Union[float, np.ndarray], n: int, name: str
) -> np.ndarray:
    reg = np.atleast_1d(np.asarray(reg, dtype=float))
    if reg.size == 1:
        reg = np.full(n, reg[0])
    elif reg.shape != (n,):
        raise_validation_error(
            f"Regularization '{name}' has the wrong length",
            expected=f"a scalar or {n} values",
            received=f"{reg.size} values",
            error_class=RegularizationLengthError,
        )
    if np.any(reg < 0) or not np.all(np.isfinite(reg)):
        raise ParameterError(f"Regularization '{name}' must be finite and non-negative")
    return reg


class SparseIndicatorGP(IndicatorModel):
    """Pseudo-input GP for one indicator (potential) variable.

    Attributes:
        data: PointSet with the data locations.
        values: Indicator values at the data locations.
        model: Covariance model.
        mean: Constant mean of the potential.
        tangents: Optional structural directions (zero directional derivative).
        interpolate: Indices of data points interpolated without nugget.
        pseudo_inputs: Pseudo-input coordinates (n_pseudo, 3).
        pseudo_tangents: Optional pseudo-tangent DirectionSet.
        reg_v: Per-point regularization of value data.
        reg_t: Per-tangent regularization.
        variational: Use the variational bound (True) or FITC (False).
    """

    def __init__(
        self,
        data: PointSet,
        values: np.ndarray,
        model: CovarianceModel,
        mean: float = 0.0,
        tangents: Optional[DirectionSet] = None,
        interpolate: Optional[np.ndarray] = None,
        pseudo_inputs: Optional[np.ndarray] = None,
        pseudo_tangents: Optional[DirectionSet] = None,
        reg_v: Union[float, np.ndarray] = 1e-9,
        reg_t: Union[float, np.ndarray] = 1e-9,
        variational: bool = True,
        jitter: float = 1e-8,
    ):
        """Initialize and factorize the sparse GP.

        Args:
            data: PointSet with the data locations.
            values: Indicator values (n_data,).
            model: Covariance model shared by all classes.
            mean: Constant mean (background level) of the potential.
            tangents: Optional DirectionSet with structural data.
            interpolate: Indices (or boolean mask) of points to interpolate.
            pseudo_inputs: Pseudo-input coordinates. Defaults to the data.
            pseudo_tangents: Optional DirectionSet of pseudo-tangents.
            reg_v: Value-data regularization, scalar or one value per point.
            reg_t: Tangent regularization, scalar or one value per tangent.
            variational: Use the variational approximation instead of FITC.
            jitter: Relative diagonal jitter for the inducing covariance.

        Raises:
            DataValidationError: If values do not match the data.
            RegularizationLengthError: If a regularization vector has the
                wrong length.
            ParameterError: If tangents are given with a non-differentiable
                covariance model.
            NumericalError: If the covariance matrices cannot be factorized.
        """
        super().__init__()
        values = np.asarray(values, dtype=float).ravel()
        if len(values) != data.n_points:
            raise_validation_error(
                "Indicator values must match the number of data points",
                expected=str(data.n_points),
                received=str(len(values)),
            )
        if not np.all(np.isfinite(values)):
            raise_validation_error("Indicator values must be finite")

        if tangents is not None and tangents.n_directions == 0:
            tangents = None
        if pseudo_tangents is not None and pseudo_tangents.n_directions == 0:
            pseudo_tangents = None
        if (tangents is not None or pseudo_tangents is not None) and (
            not model.differentiable
        ):
            raise ParameterError(
                "Tangent data require a differentiable covariance model, got "
                f"{[t.value for t in model.types]}",
                suggestion="Use gaussian, cubic, matern1, matern2 or cauchy structures",
            )

        if interpolate is None:
            interpolate = np.zeros(0, dtype=int)
        interpolate = np.asarray(interpolate)
        if interpolate.dtype == bool:
            if interpolate.shape != (data.n_points,):
                raise_validation_error(
                    "Interpolation mask must match the number of data points",
                    expected=str(data.n_points),
                    received=str(interpolate.shape),
                )
            interpolate = np.flatnonzero(interpolate)
        interpolate = np.unique(interpolate.astype(int))
        if interpolate.size and (
            interpolate.min() < 0 or interpolate.max() >= data.n_points
        ):
            raise_validation_error("Interpolation indices out of range")

        if pseudo_inputs is None:
            pseudo_inputs = data.coordinates
        if isinstance(pseudo_inputs, PointSet):
            pseudo_inputs = pseudo_inputs.coordinates
        pseudo_inputs = np.atleast_2d(np.asarray(pseudo_inputs, dtype=float))
        if pseudo_inputs.shape[1] != 3:
            raise_validation_error(
                "Pseudo-inputs must be 3D coordinates",
                expected="(n_pseudo, 3)",
                received=str(pseudo_inputs.shape),
            )

        n_tangents = 0 if tangents is None else tangents.n_directions

        self.data = data
        self.values = values
        self.model = model
        self.mean = float(mean)
        self.tangents = tangents
        self.interpolate = interpolate
        self.pseudo_inputs = pseudo_inputs.copy()
        self.pseudo_tangents = pseudo_tangents
        self.reg_v = _as_regularization(reg_v, data.n_points, "reg_v")
        self.reg_t = _as_regularization(reg_t, n_tangents, "reg_t")
        self.variational = bool(variational)
        self.jitter = float(jitter)

        self.tags["supports_3d"] = True
        self.tags["supports_tangents"] = True

        self._factorize()
        self._fitted = True

    @property
    def n_data(self) -> int:
        return self.data.n_points

    @property
    def n_pseudo_inputs(self) -> int:
        return self.pseudo_inputs.shape[0]

    @property
    def n_tangents(self) -> int:
        return 0 if self.tangents is None else self.tangents.n_directions

    @property
    def n_pseudo_tangents(self) -> int:
        return 0 if self.pseudo_tangents is None else self.pseudo_tangents.n_directions

    def _training_locations(self) -> _Locations:
        if self.tangents is None:
            return _Locations(self.data.coordinates, _empty(), _empty())
        return _Locations(
            self.data.coordinates, self.tangents.coordinates, self.tangents.directions
        )

    def _inducing_locations(self) -> _Locations:
        extra = self.data.coordinates[self.interpolate]
        if extra.size:
            # Constrained points already among the pseudo-inputs are not repeated
            duplicate = np.any(
                np.all(extra[:, None, :] == self.pseudo_inputs[None, :, :], axis=2),
                axis=1,
            )
            extra = extra[~duplicate]
        values = np.vstack([self.pseudo_inputs, extra])
        if self.pseudo_tangents is None:
            return _Locations(values, _empty(), _empty())
        return _Locations(
            values, self.pseudo_tangents.coordinates, self.pseudo_tangents.directions
        )

    def _factorize(self) -> None:
        model = self.model
        train = self._training_locations()
        self._inducing = self._inducing_locations()
        if self._inducing.size == 0:
            raise ParameterError("At least one pseudo-input is required")

        # Prior variances of the training observations
        kff = np.concatenate(
            [
                np.full(self.n_data, model.sill),
                model.derivative_variance(train.tangent_dirs)
                if self.n_tangents
                else np.zeros(0),
            ]
        )

        noise_v = model.nugget + self.reg_v
        noise_v[self.interpolate] = self.reg_v[self.interpolate]
        noise = np.concatenate([noise_v, self.reg_t])

        # Residuals: the derivative of a constant mean is zero
        residual = np.concatenate([self.values - self.mean, np.zeros(self.n_tangents)])

        kuu = joint_covariance(model, self._inducing, self._inducing)
        kuu[np.diag_indices_from(kuu)] += self.jitter * max(model.sill, 1e-12)
        kuf = joint_covariance(model, self._inducing, train)

        try:
            lm = cholesky(kuu, lower=True)
            v = solve_triangular(lm, kuf, lower=True)
            qff = np.sum(v**2, axis=0)
            correction = np.maximum(kff - qff, 0.0)

            lam = noise if self.variational else noise + correction
            if np.any(lam <= 0):
                raise NumericalError(
                    "Zero noise variance in the sparse approximation",
                    suggestion="Use a positive nugget or regularization",
                )

            v_scaled = v / np.sqrt(lam)
            b = np.eye(v.shape[0]) + v_scaled @ v_scaled.T
            lb = cholesky(b, lower=True)
        except (np.linalg.LinAlgError, ValueError) as e:
            logger.debug(f"Factorization failed for {self.model!r}: {e}")
            raise NumericalError(f"Covariance factorization failed: {e}") from e

        c = solve_triangular(lb, v @ (residual / lam), lower=True)

        logdet = np.sum(np.log(lam)) + 2.0 * np.sum(np.log(np.diag(lb)))
        quad = np.sum(residual**2 / lam) - c @ c
        loglik = -0.5 * (quad + logdet + residual.size * _LOG_2PI)
        if self.variational:
            loglik -= 0.5 * np.sum(correction / lam)

        if not np.isfinite(loglik):
            raise NumericalError("Log-likelihood is not finite")

        self._lm = lm
        self._lb = lb
        self._weights = solve_triangular(
            lm.T, solve_triangular(lb.T, c, lower=False), lower=False
        )
        self._loglik = float(loglik)

    def log_likelihood(self) -> float:
        """Marginal log-likelihood (variational bound when variational=True)."""
        return self._loglik

    def predict(
        self,
        points: Union[PointSet, np.ndarray],
        return_variance: bool = True,
        batch_size: int = 5000,
    ) -> GPResult:
        """Predict the potential at target locations.

        Args:
            points: PointSet or (n, 3) array of target coordinates.
            return_variance: Whether to compute the predictive variance.
            batch_size: Number of targets evaluated at once.

        Returns:
            GPResult with mean and variance (zeros if not requested).
        """
        if not self.is_fitted:
            raise ValueError("Model not fitted.")

        coords = points.coordinates if isinstance(points, PointSet) else points
        coords = np.atleast_2d(np.asarray(coords, dtype=float))
        n_targets = coords.shape[0]

        mean = np.empty(n_targets)
        variance = np.zeros(n_targets)

        for start in range(0, n_targets, batch_size):
            chunk = coords[start:start + batch_size]
            target = _Locations(chunk, _empty(), _empty())
            ksu = joint_covariance(self.model, target, self._inducing)
            mean[start:start + len(chunk)] = self.mean + ksu @ self._weights

            if return_variance:
                a = solve_triangular(self._lm, ksu.T, lower=True)
                b = solve_triangular(self._lb, a, lower=True)
                var = self.model.sill - np.sum(a**2, axis=0) + np.sum(b**2, axis=0)
                variance[start:start + len(chunk)] = np.maximum(var, 0.0)

        return GPResult(mean=mean, variance=variance)

    def rebuild(self, model: CovarianceModel) -> "SparseIndicatorGP":
        """Return a new GP with the same data and a different covariance model."""
        return SparseIndicatorGP(
            data=self.data,
            values=self.values,
            model=model,
            mean=self.mean,
            tangents=self.tangents,
            interpolate=self.interpolate,
            pseudo_inputs=self.pseudo_inputs,
            pseudo_tangents=self.pseudo_tangents,
            reg_v=self.reg_v,
            reg_t=self.reg_t,
            variational=self.variational,
            jitter=self.jitter,
        )

    def summary(self) -> str:
        """Human-readable description of the GP."""
        lines = [
            f"Sparse GP ({'variational' if self.variational else 'FITC'})",
            f"  Data points: {self.n_data}",
            f"  Pseudo-inputs: {self.n_pseudo_inputs}",
            f"  Tangent points: {self.n_tangents}",
            f"  Pseudo-tangents: {self.n_pseudo_tangents}",
            f"  Interpolated points: {len(self.interpolate)}",
            f"  Mean: {self.mean:.4f}",
            f"  Covariance model: {self.model!r}",
            f"  Log-likelihood: {self._loglik:.4f}",
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"SparseIndicatorGP(n_data={self.n_data}, "
            f"n_pseudo_inputs={self.n_pseudo_inputs}, "
            f"n_tangents={self.n_tangents}, loglik={self._loglik:.4f})"
        )
