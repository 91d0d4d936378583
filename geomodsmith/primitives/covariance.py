"""Anisotropic 3D covariance models.

A covariance model is a weighted sum of structures plus a nugget. Each
structure evaluates a correlation function of the scaled distance

    r = sqrt((x - y)^T M (x - y))

where the metric M combines the three ranges with the azimuth/dip/rake
rotation. Smooth structure kinds also provide the terms needed for
covariances involving directional derivatives of the field, which is how
tangent (structural) data enter the model.

Writing f(r) for the correlation, every derivative covariance is expressed
with g(r) = f'(r) / r and h(r) = g'(r) / r:

    cov(Z(x), dZ(y)/dv)       = -g(r) (M d).v
    cov(dZ(x)/du, dZ(y)/dv)   = -h(r) (M d).u (M d).v - g(r) u^T M v
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence, Union

import numpy as np

from geomodsmith.utils.errors import (
    ParameterError,
    format_parameter_error,
    raise_parameter_error,
)

# Number of scalars describing one structure in a hyperparameter vector
STRUCTURE_BLOCK = 8

# Practical-range constants for the Matern family (correlation ~0.05 at r = 1)
_MATERN1_SCALE = 4.744
_MATERN2_SCALE = 5.92


class StructureType(str, Enum):
    """Closed set of covariance structure kinds."""

    GAUSSIAN = "gaussian"
    EXPONENTIAL = "exponential"
    SPHERICAL = "spherical"
    CUBIC = "cubic"
    MATERN1 = "matern1"
    MATERN2 = "matern2"
    CAUCHY = "cauchy"
    POWER_EXPONENTIAL = "power_exponential"

    @property
    def differentiable(self) -> bool:
        """Whether the field is mean-square differentiable under this kind."""
        return self in _DERIVATIVES

    @classmethod
    def parse(cls, value: Union[str, "StructureType"]) -> "StructureType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            pass
        raise ParameterError(
            format_parameter_error("type", value, valid_values=[t.value for t in cls])
        )


def _gaussian(r: np.ndarray, power: float) -> np.ndarray:
    return np.exp(-3.0 * r**2)


def _gaussian_g(r: np.ndarray, power: float) -> np.ndarray:
    return -6.0 * np.exp(-3.0 * r**2)


def _gaussian_h(r: np.ndarray, power: float) -> np.ndarray:
    return 36.0 * np.exp(-3.0 * r**2)


def _exponential(r: np.ndarray, power: float) -> np.ndarray:
    return np.exp(-3.0 * r)


def _spherical(r: np.ndarray, power: float) -> np.ndarray:
    return np.where(r < 1.0, 1.0 - 1.5 * r + 0.5 * r**3, 0.0)


def _cubic(r: np.ndarray, power: float) -> np.ndarray:
    return np.where(
        r < 1.0,
        1.0 - 7.0 * r**2 + 8.75 * r**3 - 3.5 * r**5 + 0.75 * r**7,
        0.0,
    )


def _cubic_g(r: np.ndarray, power: float) -> np.ndarray:
    return np.where(
        r < 1.0, -14.0 + 26.25 * r - 17.5 * r**3 + 5.25 * r**5, 0.0
    )


def _cubic_h(r: np.ndarray, power: float) -> np.ndarray:
    # Singular at r = 0; callers mask the origin where the product term vanishes
    r_safe = np.where(r > 0, r, 1.0)
    h = 26.25 * (1.0 - r_safe**2) ** 2 / r_safe
    return np.where((r > 0) & (r < 1.0), h, 0.0)


def _matern1(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN1_SCALE
    return (1.0 + a * r) * np.exp(-a * r)


def _matern1_g(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN1_SCALE
    return -(a**2) * np.exp(-a * r)


def _matern1_h(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN1_SCALE
    r_safe = np.where(r > 0, r, 1.0)
    return np.where(r > 0, a**3 * np.exp(-a * r_safe) / r_safe, 0.0)


def _matern2(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN2_SCALE
    return (1.0 + a * r + (a * r) ** 2 / 3.0) * np.exp(-a * r)


def _matern2_g(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN2_SCALE
    return -(a**2 / 3.0) * (1.0 + a * r) * np.exp(-a * r)


def _matern2_h(r: np.ndarray, power: float) -> np.ndarray:
    a = _MATERN2_SCALE
    return (a**4 / 3.0) * np.exp(-a * r)


def _cauchy(r: np.ndarray, power: float) -> np.ndarray:
    return (1.0 + r**2) ** (-power)


def _cauchy_g(r: np.ndarray, power: float) -> np.ndarray:
    return -2.0 * power * (1.0 + r**2) ** (-power - 1.0)


def _cauchy_h(r: np.ndarray, power: float) -> np.ndarray:
    return 4.0 * power * (power + 1.0) * (1.0 + r**2) ** (-power - 2.0)


def _power_exponential(r: np.ndarray, power: float) -> np.ndarray:
    return np.exp(-3.0 * r**power)


# Model registry
CORRELATION_FUNCTIONS: dict[StructureType, Callable] = {
    StructureType.GAUSSIAN: _gaussian,
    StructureType.EXPONENTIAL: _exponential,
    StructureType.SPHERICAL: _spherical,
    StructureType.CUBIC: _cubic,
    StructureType.MATERN1: _matern1,
    StructureType.MATERN2: _matern2,
    StructureType.CAUCHY: _cauchy,
    StructureType.POWER_EXPONENTIAL: _power_exponential,
}

_DERIVATIVES: dict[StructureType, tuple[Callable, Callable]] = {
    StructureType.GAUSSIAN: (_gaussian_g, _gaussian_h),
    StructureType.CUBIC: (_cubic_g, _cubic_h),
    StructureType.MATERN1: (_matern1_g, _matern1_h),
    StructureType.MATERN2: (_matern2_g, _matern2_h),
    StructureType.CAUCHY: (_cauchy_g, _cauchy_h),
}


def rotation_matrix(azimuth: float, dip: float, rake: float) -> np.ndarray:
    """Columns are the major, intermediate and minor axes.

    Azimuth is measured clockwise from north (+Y), dip downwards from the
    horizontal along the major axis, and rake is a rotation about the
    dipping major axis. All angles are in degrees.
    """
    az, dp, rk = np.radians([azimuth, dip, rake])

    rot_z = np.array(
        [
            [np.cos(-az), -np.sin(-az), 0.0],
            [np.sin(-az), np.cos(-az), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )
    rot_x = np.array(
        [
            [1.0, 0.0, 0.0],
            [0.0, np.cos(-dp), -np.sin(-dp)],
            [0.0, np.sin(-dp), np.cos(-dp)],
        ]
    )
    rot_y = np.array(
        [
            [np.cos(rk), 0.0, np.sin(rk)],
            [0.0, 1.0, 0.0],
            [-np.sin(rk), 0.0, np.cos(rk)],
        ]
    )
    # Reference frame: major = north, intermediate = east, minor = up
    axes = np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]).T
    return rot_z @ rot_x @ rot_y @ axes


@dataclass(frozen=True)
class CovarianceStructure:
    """One anisotropic covariance structure.

    Attributes:
        type: Structure kind.
        contribution: Partial sill of the structure.
        maxrange: Range along the major axis.
        midrange: Range along the intermediate axis (<= maxrange).
        minrange: Range along the minor axis (<= midrange).
        azimuth: Azimuth of the major axis in degrees.
        dip: Dip of the major axis in degrees.
        rake: Rotation about the major axis in degrees.
        power: Shape exponent used by the cauchy and power_exponential kinds.
    """

    type: StructureType
    contribution: float = 1.0
    maxrange: float = 1.0
    midrange: float = None  # type: ignore[assignment]
    minrange: float = None  # type: ignore[assignment]
    azimuth: float = 0.0
    dip: float = 0.0
    rake: float = 0.0
    power: float = 1.0
    _metric: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Validate CovarianceStructure parameters."""
        object.__setattr__(self, "type", StructureType.parse(self.type))
        if self.midrange is None:
            object.__setattr__(self, "midrange", self.maxrange)
        if self.minrange is None:
            object.__setattr__(self, "minrange", self.midrange)

        for name in ("contribution", "maxrange", "midrange", "minrange",
                     "azimuth", "dip", "rake", "power"):
            value = float(getattr(self, name))
            if not np.isfinite(value):
                raise_parameter_error(name, value, constraint="must be finite")
            object.__setattr__(self, name, value)

        if self.contribution < 0:
            raise_parameter_error(
                "contribution", self.contribution, constraint="must be non-negative"
            )
        if min(self.maxrange, self.midrange, self.minrange) <= 0:
            raise_parameter_error(
                "range",
                (self.maxrange, self.midrange, self.minrange),
                constraint="all ranges must be positive",
            )
        tol = 1e-12
        if self.midrange > self.maxrange * (1 + tol) or (
            self.minrange > self.midrange * (1 + tol)
        ):
            raise_parameter_error(
                "range",
                (self.maxrange, self.midrange, self.minrange),
                constraint="maxrange >= midrange >= minrange",
            )
        if self.power <= 0:
            raise_parameter_error("power", self.power, constraint="must be positive")

        axes = rotation_matrix(self.azimuth, self.dip, self.rake)
        scale = np.diag(1.0 / np.array([self.maxrange, self.midrange, self.minrange]))
        transform = scale @ axes.T
        object.__setattr__(self, "_metric", transform.T @ transform)

    @property
    def metric(self) -> np.ndarray:
        """Anisotropy metric M (3, 3) such that r^2 = d^T M d."""
        return self._metric

    def _scaled(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        d = x[:, None, :] - y[None, :, :]
        md = d @ self._metric
        r2 = np.einsum("ijk,ijk->ij", d, md)
        return np.sqrt(np.maximum(r2, 0.0)), md

    def _require_derivatives(self) -> tuple[Callable, Callable]:
        if not self.type.differentiable:
            raise ParameterError(
                f"Structure type '{self.type.value}' is not differentiable and "
                f"cannot be used with tangent data",
                suggestion="Use one of: "
                + ", ".join(t.value for t in _DERIVATIVES),
            )
        return _DERIVATIVES[self.type]

    def correlation(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        r, _ = self._scaled(x, y)
        return CORRELATION_FUNCTIONS[self.type](r, self.power)

    def correlation_value_derivative(
        self, x: np.ndarray, y: np.ndarray, dirs_y: np.ndarray
    ) -> np.ndarray:
        g_func, _ = self._require_derivatives()
        r, md = self._scaled(x, y)
        return -g_func(r, self.power) * np.einsum("ijk,jk->ij", md, dirs_y)

    def correlation_derivative(
        self,
        x: np.ndarray,
        dirs_x: np.ndarray,
        y: np.ndarray,
        dirs_y: np.ndarray,
    ) -> np.ndarray:
        g_func, h_func = self._require_derivatives()
        r, md = self._scaled(x, y)
        mdu = np.einsum("ijk,ik->ij", md, dirs_x)
        mdv = np.einsum("ijk,jk->ij", md, dirs_y)
        umv = dirs_x @ self._metric @ dirs_y.T
        return -h_func(r, self.power) * mdu * mdv - g_func(r, self.power) * umv

    def derivative_variance(self, dirs: np.ndarray) -> np.ndarray:
        g_func, _ = self._require_derivatives()
        g0 = float(g_func(np.zeros(1), self.power)[0])
        return -g0 * np.einsum("ij,jk,ik->i", dirs, self._metric, dirs)

    def to_vector(self) -> np.ndarray:
        """Block of 8 scalars; mid/min ranges are stored as fractions."""
        return np.array(
            [
                self.contribution,
                self.maxrange,
                self.midrange / self.maxrange,
                self.minrange / self.midrange,
                self.azimuth,
                self.dip,
                self.rake,
                self.power,
            ]
        )

    @classmethod
    def from_vector(
        cls, structure_type: Union[str, StructureType], block: Sequence[float]
    ) -> "CovarianceStructure":
        block = np.asarray(block, dtype=float)
        if block.shape != (STRUCTURE_BLOCK,):
            raise_parameter_error(
                "block",
                block.shape,
                constraint=f"must hold exactly {STRUCTURE_BLOCK} values",
            )
        maxrange = block[1]
        midrange = maxrange * block[2]
        minrange = midrange * block[3]
        return cls(
            type=structure_type,
            contribution=block[0],
            maxrange=maxrange,
            midrange=midrange,
            minrange=minrange,
            azimuth=block[4],
            dip=block[5],
            rake=block[6],
            power=block[7],
        )


@dataclass(frozen=True)
class CovarianceModel:
    """Weighted sum of covariance structures plus a nugget.

    Attributes:
        structures: One or more CovarianceStructure objects.
        nugget: Nugget effect (noise variance of value data).
    """

    structures: tuple[CovarianceStructure, ...]
    nugget: float = 0.0

    def __post_init__(self) -> None:
        """Validate CovarianceModel parameters."""
        structures = self.structures
        if isinstance(structures, CovarianceStructure):
            structures = (structures,)
        structures = tuple(structures)
        if len(structures) == 0:
            raise_parameter_error(
                "structures", structures, constraint="at least one structure required"
            )
        if not all(isinstance(s, CovarianceStructure) for s in structures):
            raise ParameterError("structures must be CovarianceStructure objects")
        object.__setattr__(self, "structures", structures)

        nugget = float(self.nugget)
        if not np.isfinite(nugget) or nugget < 0:
            raise_parameter_error("nugget", nugget, constraint="must be >= 0")
        object.__setattr__(self, "nugget", nugget)

    @property
    def types(self) -> tuple[StructureType, ...]:
        return tuple(s.type for s in self.structures)

    @property
    def sill(self) -> float:
        """Sum of structure contributions (nugget excluded)."""
        return float(sum(s.contribution for s in self.structures))

    @property
    def differentiable(self) -> bool:
        return all(s.type.differentiable for s in self.structures)

    def covariance(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Covariance matrix between value locations (nugget excluded)."""
        x, y = np.atleast_2d(x), np.atleast_2d(y)
        out = np.zeros((x.shape[0], y.shape[0]))
        for s in self.structures:
            out += s.contribution * s.correlation(x, y)
        return out

    def covariance_value_derivative(
        self, x: np.ndarray, y: np.ndarray, dirs_y: np.ndarray
    ) -> np.ndarray:
        """Covariance between values at x and directional derivatives at y."""
        x, y = np.atleast_2d(x), np.atleast_2d(y)
        out = np.zeros((x.shape[0], y.shape[0]))
        for s in self.structures:
            out += s.contribution * s.correlation_value_derivative(x, y, dirs_y)
        return out

    def covariance_derivative(
        self,
        x: np.ndarray,
        dirs_x: np.ndarray,
        y: np.ndarray,
        dirs_y: np.ndarray,
    ) -> np.ndarray:
        """Covariance between directional derivatives at x and at y."""
        x, y = np.atleast_2d(x), np.atleast_2d(y)
        out = np.zeros((x.shape[0], y.shape[0]))
        for s in self.structures:
            out += s.contribution * s.correlation_derivative(x, dirs_x, y, dirs_y)
        return out

    def derivative_variance(self, dirs: np.ndarray) -> np.ndarray:
        out = np.zeros(np.atleast_2d(dirs).shape[0])
        for s in self.structures:
            out += s.contribution * s.derivative_variance(np.atleast_2d(dirs))
        return out

    def to_vector(self) -> np.ndarray:
        """Flatten to the 8 * n_structures + 1 hyperparameter layout."""
        blocks = [s.to_vector() for s in self.structures]
        return np.concatenate(blocks + [np.array([self.nugget])])

    @classmethod
    def from_vector(
        cls,
        vector: Sequence[float],
        types: Sequence[Union[str, StructureType]],
    ) -> "CovarianceModel":
        """Rebuild a model from a hyperparameter vector and structure kinds."""
        vector = np.asarray(vector, dtype=float)
        n_struct = len(types)
        expected = STRUCTURE_BLOCK * n_struct + 1
        if vector.shape != (expected,):
            raise_parameter_error(
                "vector",
                vector.shape,
                constraint=f"length must be {expected} for {n_struct} structure(s)",
            )
        structures = tuple(
            CovarianceStructure.from_vector(
                t, vector[i * STRUCTURE_BLOCK:(i + 1) * STRUCTURE_BLOCK]
            )
            for i, t in enumerate(types)
        )
        return cls(structures=structures, nugget=vector[-1])

    def with_nugget(self, nugget: float) -> "CovarianceModel":
        return CovarianceModel(structures=self.structures, nugget=nugget)

    def __repr__(self) -> str:
        """String representation."""
        parts = ", ".join(
            f"{s.type.value}(c={s.contribution:.4g}, r=({s.maxrange:.4g}, "
            f"{s.midrange:.4g}, {s.minrange:.4g}))"
            for s in self.structures
        )
        return f"CovarianceModel([{parts}], nugget={self.nugget:.4g})"
