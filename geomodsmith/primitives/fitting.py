"""Covariance hyperparameter fitting for multi-class models.

All class GPs share one covariance model. Its hyperparameters are flattened
into a vector of 8 values per structure plus a trailing nugget:

    [contribution, maxrange, midrange / maxrange, minrange / midrange,
     azimuth, dip, rake, power] * n_structures + [nugget]

A population-based, bound-constrained global optimizer searches this vector.
Every candidate is turned into a brand new MultiClassModel (nothing is
mutated), and its fitness is the total log-likelihood over all classes.

The optimizer MINIMIZES, so the objective returns the negated total
log-likelihood. Candidates that fail numerically score +inf.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union

import numpy as np
from scipy.optimize import differential_evolution

from geomodsmith.primitives.covariance import (
    STRUCTURE_BLOCK,
    CovarianceModel,
    StructureType,
)
from geomodsmith.primitives.geomodel import MultiClassModel
from geomodsmith.utils.errors import (
    BoundsError,
    ModelConstructionError,
    NumericalError,
    ParameterError,
    raise_parameter_error,
)

logger = logging.getLogger(__name__)


@dataclass
class FitFlags:
    """Which hyperparameter groups are searched (True) or kept fixed (False).

    Contributions are always searched.
    """

    maxrange: bool = True
    midrange: bool = False
    minrange: bool = False
    azimuth: bool = False
    dip: bool = False
    rake: bool = False
    power: bool = False
    nugget: bool = False


@dataclass
class ParameterRanges:
    """Search ranges used for free hyperparameters.

    maxrange is expressed as multiples of the data bounding-box diagonal.
    """

    contribution: tuple[float, float] = (0.1, 5.0)
    maxrange: tuple[float, float] = (1e-3, 5.0)
    midrange: tuple[float, float] = (0.01, 1.0)
    minrange: tuple[float, float] = (0.01, 1.0)
    azimuth: tuple[float, float] = (0.0, 360.0)
    dip: tuple[float, float] = (0.0, 90.0)
    rake: tuple[float, float] = (0.0, 90.0)
    power: tuple[float, float] = (0.1, 3.0)
    nugget: tuple[float, float] = (1e-6, 2.0)


@dataclass
class OptimizerConfig:
    """Settings of the evolutionary search.

    Attributes:
        popsize: Population size multiplier (per free parameter).
        maxiter: Maximum number of generations.
        tol: Relative convergence tolerance on the population scores.
        atol: Absolute convergence tolerance.
        seed: Random seed; the search is deterministic for a fixed seed.
        mutation: Mutation constant or (min, max) dithering range.
        recombination: Crossover probability.
        workers: Number of processes evaluating the population.
        timeout: Wall-clock limit in seconds, checked between generations.
    """

    popsize: int = 15
    maxiter: int = 100
    tol: float = 0.01
    atol: float = 0.0
    seed: Optional[int] = None
    mutation: Union[float, tuple[float, float]] = (0.5, 1.0)
    recombination: float = 0.7
    workers: int = 1
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate OptimizerConfig parameters."""
        if self.popsize < 1:
            raise_parameter_error("popsize", self.popsize, constraint="must be >= 1")
        if self.maxiter < 1:
            raise_parameter_error("maxiter", self.maxiter, constraint="must be >= 1")
        if self.tol < 0 or self.atol < 0:
            raise_parameter_error(
                "tol", (self.tol, self.atol), constraint="must be non-negative"
            )
        if not 0 <= self.recombination <= 1:
            raise_parameter_error(
                "recombination", self.recombination, constraint="must be in [0, 1]"
            )
        if self.workers < 1:
            raise_parameter_error("workers", self.workers, constraint="must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise_parameter_error("timeout", self.timeout, constraint="must be positive")


@dataclass
class OptimizationResult:
    """Outcome of a bound-constrained minimization.

    Attributes:
        x: Best vector found (full length, fixed entries included).
        fun: Objective value at x (the minimized quantity).
        history: Best objective value after the seed and after every generation.
        converged: Whether the convergence tolerance was met.
        n_evaluations: Number of objective evaluations.
        message: Optimizer termination message.
        timed_out: Whether the search stopped on the timeout.
    """

    x: np.ndarray
    fun: float
    history: list[float] = field(default_factory=list)
    converged: bool = False
    n_evaluations: int = 0
    message: str = ""
    timed_out: bool = False


class GlobalOptimizer(ABC):
    """Interface for population-based bound-constrained minimizers."""

    @abstractmethod
    def minimize(
        self,
        objective: Callable[[np.ndarray], float],
        lower: np.ndarray,
        upper: np.ndarray,
        x0: np.ndarray,
    ) -> OptimizationResult:
        """Minimize objective within [lower, upper], seeded with x0."""


class _ReducedObjective:
    """Objective over the free entries only; fixed entries are re-inserted."""

    def __init__(self, objective: Callable, template: np.ndarray, free: np.ndarray):
        self.objective = objective
        self.template = template
        self.free = free

    def __call__(self, x_free: np.ndarray) -> float:
        x = self.template.copy()
        x[self.free] = x_free
        return self.objective(x)


class DifferentialEvolutionOptimizer(GlobalOptimizer):
    """Evolutionary search backed by scipy's differential evolution.

    Parameters whose lower and upper bounds coincide are held fixed and
    removed from the search space.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None):
        self.config = config or OptimizerConfig()

    def minimize(
        self,
        objective: Callable[[np.ndarray], float],
        lower: np.ndarray,
        upper: np.ndarray,
        x0: np.ndarray,
    ) -> OptimizationResult:
        cfg = self.config
        lower = np.asarray(lower, dtype=float)
        upper = np.asarray(upper, dtype=float)
        x0 = np.clip(np.asarray(x0, dtype=float), lower, upper)

        seed_score = float(objective(x0))
        history = [seed_score]
        free = upper > lower
        if not np.any(free):
            return OptimizationResult(
                x=x0, fun=seed_score, history=history, converged=True,
                n_evaluations=1, message="No free parameters",
            )

        template = x0.copy()
        template[~free] = lower[~free]
        reduced = _ReducedObjective(objective, template, free)

        start = time.monotonic()
        timed_out = False

        def callback(intermediate_result) -> bool:
            nonlocal timed_out
            history.append(float(min(intermediate_result.fun, history[-1])))
            logger.debug(
                f"Generation {len(history) - 1}: best objective {history[-1]:.6g}"
            )
            if cfg.timeout is not None and time.monotonic() - start > cfg.timeout:
                timed_out = True
                return True
            return False

        result = differential_evolution(
            reduced,
            bounds=list(zip(lower[free], upper[free])),
            x0=x0[free],
            seed=cfg.seed,
            popsize=cfg.popsize,
            maxiter=cfg.maxiter,
            tol=cfg.tol,
            atol=cfg.atol,
            mutation=cfg.mutation,
            recombination=cfg.recombination,
            polish=False,
            workers=cfg.workers,
            updating="deferred" if cfg.workers > 1 else "immediate",
            callback=callback,
        )

        x_best = template.copy()
        x_best[free] = result.x
        fun = float(result.fun)
        if not fun < seed_score:
            x_best, fun = x0, seed_score

        return OptimizationResult(
            x=x_best,
            fun=fun,
            history=history,
            converged=bool(result.success) and not timed_out,
            n_evaluations=int(result.nfev) + 1,
            message=str(result.message),
            timed_out=timed_out,
        )


def build_bounds(
    model: CovarianceModel,
    flags: FitFlags,
    basis_diag: float,
    ranges: Optional[ParameterRanges] = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Optimizer bounds and starting point for a covariance model.

    Disabled groups are fixed to the model's current value (min == max).
    Free groups get the search ranges; maxrange is scaled by basis_diag.

    Args:
        model: Current covariance model.
        flags: Which hyperparameter groups are free.
        basis_diag: Length of the data bounding-box diagonal.
        ranges: Search ranges for free parameters.

    Returns:
        Tuple of (opt_min, opt_max, xstart); xstart is clamped into bounds.

    Raises:
        BoundsError: If basis_diag is not positive or any min > max.
    """
    ranges = ranges or ParameterRanges()
    if not np.isfinite(basis_diag) or basis_diag <= 0:
        raise_parameter_error(
            "basis_diag",
            basis_diag,
            constraint="data bounding box must have a positive diagonal",
            error_class=BoundsError,
        )

    current = model.to_vector()
    opt_min = current.copy()
    opt_max = current.copy()

    # Slot order within a block matches CovarianceStructure.to_vector
    slots = [
        ("contribution", True, 1.0),
        ("maxrange", flags.maxrange, basis_diag),
        ("midrange", flags.midrange, 1.0),
        ("minrange", flags.minrange, 1.0),
        ("azimuth", flags.azimuth, 1.0),
        ("dip", flags.dip, 1.0),
        ("rake", flags.rake, 1.0),
        ("power", flags.power, 1.0),
    ]
    for i in range(len(model.structures)):
        for j, (name, is_free, scale) in enumerate(slots):
            if is_free:
                lo, hi = getattr(ranges, name)
                opt_min[i * STRUCTURE_BLOCK + j] = lo * scale
                opt_max[i * STRUCTURE_BLOCK + j] = hi * scale

    if flags.nugget:
        opt_min[-1], opt_max[-1] = ranges.nugget

    bad = np.flatnonzero(opt_min > opt_max)
    if bad.size:
        raise_parameter_error(
            "bounds",
            [(float(opt_min[k]), float(opt_max[k])) for k in bad],
            constraint=f"min > max at vector positions {bad.tolist()}",
            error_class=BoundsError,
        )

    return opt_min, opt_max, clamp_start(current, opt_min, opt_max)


def clamp_start(
    xstart: np.ndarray, opt_min: np.ndarray, opt_max: np.ndarray
) -> np.ndarray:
    """Raise entries below their minimum and lower entries above their maximum."""
    xstart = np.asarray(xstart, dtype=float).copy()
    low = xstart < opt_min
    xstart[low] = opt_min[low]
    high = xstart > opt_max
    xstart[high] = opt_max[high]
    return xstart


class LogLikelihoodObjective:
    """Negated total log-likelihood of the model rebuilt from a vector.

    Picklable so that the population can be evaluated in worker processes.
    """

    def __init__(
        self,
        template: MultiClassModel,
        types: Sequence[StructureType],
        n_jobs: int = 1,
    ):
        self.template = template
        self.types = tuple(types)
        self.n_jobs = n_jobs

    def build(self, vector: np.ndarray) -> MultiClassModel:
        model = CovarianceModel.from_vector(vector, self.types)
        return self.template.rebuild(model, n_jobs=self.n_jobs)

    def __call__(self, vector: np.ndarray) -> float:
        try:
            loglik = self.build(vector).log_likelihood()
        except (NumericalError, ParameterError, np.linalg.LinAlgError) as e:
            logger.debug(f"Candidate rejected: {e}")
            return np.inf
        if not np.isfinite(loglik):
            return np.inf
        return -loglik


@dataclass
class FitResult:
    """Result of a covariance fit.

    Attributes:
        model: MultiClassModel rebuilt from the best vector.
        log_likelihood: Total log-likelihood of model (the maximized score).
        vector: Best hyperparameter vector.
        history: Best log-likelihood after the seed and after every generation.
        converged: Whether the optimizer met its convergence tolerance.
        improved: Whether the search improved on the starting model.
        n_evaluations: Number of candidate models evaluated.
        message: Optimizer termination message.
        timed_out: Whether the search stopped on the timeout.
    """

    model: MultiClassModel
    log_likelihood: float
    vector: np.ndarray
    history: list[float]
    converged: bool
    improved: bool
    n_evaluations: int
    message: str
    timed_out: bool = False

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"FitResult(loglik={self.log_likelihood:.4f}, "
            f"converged={self.converged}, improved={self.improved}, "
            f"n_evaluations={self.n_evaluations})"
        )


class CovarianceFitter:
    """Fit the shared covariance model of a MultiClassModel.

    Bounds are computed on construction so that configuration errors are
    raised before any optimization work.

    Example:
        >>> fitter = CovarianceFitter(model, FitFlags(maxrange=True),
        ...                           OptimizerConfig(maxiter=20, seed=1))
        >>> result = fitter.fit()
        >>> fitted = result.model
    """

    def __init__(
        self,
        model: MultiClassModel,
        flags: Optional[FitFlags] = None,
        config: Optional[OptimizerConfig] = None,
        optimizer: Optional[GlobalOptimizer] = None,
        ranges: Optional[ParameterRanges] = None,
        n_jobs: int = 1,
    ):
        self.model = model
        self.flags = flags or FitFlags()
        self.config = config or OptimizerConfig()
        self.optimizer = optimizer or DifferentialEvolutionOptimizer(self.config)
        self.n_jobs = n_jobs

        self.basis_diag = model.data.diagonal()
        self.opt_min, self.opt_max, self.xstart = build_bounds(
            model.model, self.flags, self.basis_diag, ranges
        )
        self.objective = LogLikelihoodObjective(model, model.model.types, n_jobs)

    def fit(self) -> FitResult:
        """Run the search and rebuild the model from the best vector.

        Returns:
            FitResult holding the fitted model and the search diagnostics.

        Raises:
            ModelConstructionError: If no candidate model could be built.
        """
        n_free = int(np.sum(self.opt_max > self.opt_min))
        logger.info(
            f"Fitting covariance of {self.model.n_classes} classes: "
            f"{n_free} free of {len(self.xstart)} parameters"
        )

        opt = self.optimizer.minimize(
            self.objective, self.opt_min, self.opt_max, self.xstart
        )
        if not np.isfinite(opt.fun):
            raise ModelConstructionError(
                "No candidate covariance model produced a finite log-likelihood",
                suggestion="Check the data, increase regularization or narrow the ranges",
            )

        history = [-h for h in opt.history]
        improved = opt.fun < opt.history[0]
        if not improved:
            logger.warning("Optimization did not improve on the starting model")
        if opt.timed_out:
            logger.warning("Optimization stopped on timeout; returning best so far")

        fitted = self.objective.build(opt.x)
        loglik = fitted.log_likelihood()
        logger.info(
            f"Best log-likelihood {loglik:.4f} after {opt.n_evaluations} evaluations "
            f"({opt.message})"
        )

        return FitResult(
            model=fitted,
            log_likelihood=loglik,
            vector=np.asarray(opt.x, dtype=float),
            history=history,
            converged=opt.converged,
            improved=bool(improved),
            n_evaluations=opt.n_evaluations,
            message=opt.message,
            timed_out=opt.timed_out,
        )


def fit_covariance(
    model: MultiClassModel,
    maxrange: bool = True,
    midrange: bool = False,
    minrange: bool = False,
    azimuth: bool = False,
    dip: bool = False,
    rake: bool = False,
    power: bool = False,
    nugget: bool = False,
    **optimizer_kwargs,
) -> MultiClassModel:
    """Fit the covariance hyperparameters and return the fitted model.

    Args:
        model: MultiClassModel to fit.
        maxrange, midrange, minrange, azimuth, dip, rake, power, nugget:
            Whether each hyperparameter group is searched.
        **optimizer_kwargs: OptimizerConfig fields (popsize, maxiter, tol,
            seed, workers, timeout, ...).

    Returns:
        MultiClassModel rebuilt from the best hyperparameters.
    """
    flags = FitFlags(
        maxrange=maxrange, midrange=midrange, minrange=minrange,
        azimuth=azimuth, dip=dip, rake=rake, power=power, nugget=nugget,
    )
    return CovarianceFitter(model, flags, OptimizerConfig(**optimizer_kwargs)).fit().model
