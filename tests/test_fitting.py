"""Tests for covariance hyperparameter fitting."""

import numpy as np
import pandas as pd
import pytest

from geomodsmith.objects import PointSet
from geomodsmith.primitives.covariance import (
    STRUCTURE_BLOCK,
    CovarianceModel,
    CovarianceStructure,
    StructureType,
)
from geomodsmith.primitives.fitting import (
    CovarianceFitter,
    DifferentialEvolutionOptimizer,
    FitFlags,
    GlobalOptimizer,
    LogLikelihoodObjective,
    OptimizationResult,
    OptimizerConfig,
    ParameterRanges,
    build_bounds,
    clamp_start,
    fit_covariance,
)
from geomodsmith.primitives.geomodel import MultiClassModel
from geomodsmith.utils.errors import (
    BoundsError,
    ModelConstructionError,
    NumericalError,
    ParameterError,
)


def shifted_quadratic(x):
    """Minimum 0 at x = (1, 2, 3, ...)."""
    return float(np.sum((x - np.arange(1, len(x) + 1)) ** 2))


def constant(x):
    return 1.0


@pytest.fixture
def layered_data():
    """Random points in two horizontal layers."""
    np.random.seed(42)
    coords = np.random.rand(30, 3) * np.array([100.0, 100.0, 50.0])
    rock = np.where(coords[:, 2] < 25, "lower", "upper")
    return PointSet(coordinates=coords, attributes=pd.DataFrame({"rock": rock}))


@pytest.fixture
def start_model():
    """Anisotropic gaussian start model with a deliberately poor range."""
    return CovarianceModel(
        structures=(
            CovarianceStructure(
                type="gaussian", contribution=1.0, maxrange=400, midrange=200,
                azimuth=45,
            ),
        ),
        nugget=0.05,
    )


@pytest.fixture
def multiclass(layered_data, start_model):
    return MultiClassModel.from_data(
        layered_data, "rock", model=start_model, pseudo_inputs=15, seed=0
    )


class TestBounds:
    """Tests for build_bounds and clamp_start."""

    def test_disabled_parameters_fixed_to_current(self, start_model):
        opt_min, opt_max, xstart = build_bounds(
            start_model, FitFlags(maxrange=False), basis_diag=100.0
        )
        current = start_model.to_vector()
        fixed = np.arange(1, STRUCTURE_BLOCK + 1)
        np.testing.assert_array_equal(opt_min[fixed], current[fixed])
        np.testing.assert_array_equal(opt_max[fixed], current[fixed])

    def test_contribution_always_free(self, start_model):
        opt_min, opt_max, _ = build_bounds(
            start_model, FitFlags(maxrange=False), basis_diag=100.0
        )
        assert opt_min[0] < opt_max[0]

    def test_maxrange_scaled_by_diagonal(self, start_model):
        opt_min, opt_max, xstart = build_bounds(start_model, FitFlags(), basis_diag=100.0)
        assert opt_min[1] == pytest.approx(0.1)
        assert opt_max[1] == pytest.approx(500.0)
        assert xstart[1] == pytest.approx(400.0)

    def test_start_clamped_into_bounds(self, start_model):
        _, opt_max, xstart = build_bounds(start_model, FitFlags(), basis_diag=10.0)
        assert opt_max[1] == pytest.approx(50.0)
        assert xstart[1] == pytest.approx(50.0)

    def test_free_nugget(self, start_model):
        opt_min, opt_max, xstart = build_bounds(
            start_model, FitFlags(nugget=True), basis_diag=100.0
        )
        assert (opt_min[-1], opt_max[-1]) == pytest.approx((1e-6, 2.0))
        assert xstart[-1] == pytest.approx(0.05)

    def test_free_angles(self, start_model):
        opt_min, opt_max, _ = build_bounds(
            start_model, FitFlags(azimuth=True, dip=True), basis_diag=100.0
        )
        assert (opt_min[4], opt_max[4]) == (0.0, 360.0)
        assert (opt_min[5], opt_max[5]) == (0.0, 90.0)
        assert opt_min[6] == opt_max[6]

    def test_nonpositive_diagonal(self, start_model):
        with pytest.raises(BoundsError):
            build_bounds(start_model, FitFlags(), basis_diag=0.0)

    def test_inverted_range(self, start_model):
        with pytest.raises(BoundsError, match="min > max"):
            build_bounds(
                start_model, FitFlags(), basis_diag=100.0,
                ranges=ParameterRanges(maxrange=(5.0, 1.0)),
            )

    def test_clamp_start(self):
        clamped = clamp_start(
            np.array([-1.0, 0.5, 7.0]), np.zeros(3), np.array([1.0, 1.0, 5.0])
        )
        np.testing.assert_array_equal(clamped, [0.0, 0.5, 5.0])


class TestOptimizerConfig:
    """Tests for OptimizerConfig validation."""

    def test_defaults(self):
        cfg = OptimizerConfig()
        assert cfg.popsize == 15
        assert cfg.workers == 1
        assert cfg.timeout is None

    @pytest.mark.parametrize(
        "kwargs",
        [{"popsize": 0}, {"maxiter": 0}, {"tol": -1}, {"recombination": 1.5},
         {"workers": 0}, {"timeout": 0}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ParameterError):
            OptimizerConfig(**kwargs)


class TestDifferentialEvolutionOptimizer:
    """Tests for the evolutionary optimizer on analytic objectives."""

    def test_finds_minimum(self):
        opt = DifferentialEvolutionOptimizer(OptimizerConfig(seed=1, maxiter=200))
        result = opt.minimize(
            shifted_quadratic, np.full(2, -5.0), np.full(2, 5.0), np.zeros(2)
        )
        np.testing.assert_allclose(result.x, [1.0, 2.0], atol=0.05)
        assert result.fun < 1e-2

    def test_fixed_dimensions_untouched(self):
        opt = DifferentialEvolutionOptimizer(OptimizerConfig(seed=1, maxiter=50))
        lower = np.array([-5.0, 0.5, -5.0])
        upper = np.array([5.0, 0.5, 5.0])
        result = opt.minimize(shifted_quadratic, lower, upper, np.array([0.0, 0.5, 0.0]))
        assert result.x[1] == 0.5

    def test_history_monotone(self):
        opt = DifferentialEvolutionOptimizer(OptimizerConfig(seed=3, maxiter=30))
        result = opt.minimize(
            shifted_quadratic, np.full(3, -10.0), np.full(3, 10.0), np.zeros(3)
        )
        assert len(result.history) >= 2
        assert np.all(np.diff(result.history) <= 0)
        assert result.history[-1] == pytest.approx(result.fun)

    def test_deterministic_with_seed(self):
        runs = [
            DifferentialEvolutionOptimizer(OptimizerConfig(seed=11, maxiter=20)).minimize(
                shifted_quadratic, np.full(2, -5.0), np.full(2, 5.0), np.zeros(2)
            )
            for _ in range(2)
        ]
        np.testing.assert_array_equal(runs[0].x, runs[1].x)
        assert runs[0].history == runs[1].history

    def test_plateau_returns_seed(self):
        opt = DifferentialEvolutionOptimizer(OptimizerConfig(seed=0, maxiter=5))
        x0 = np.array([0.3, -0.2])
        result = opt.minimize(constant, np.full(2, -1.0), np.full(2, 1.0), x0)
        np.testing.assert_array_equal(result.x, x0)
        assert result.fun == 1.0

    def test_all_fixed(self):
        opt = DifferentialEvolutionOptimizer()
        x = np.array([1.0, 2.0])
        result = opt.minimize(shifted_quadratic, x, x, x)
        assert result.fun == 0.0
        assert result.n_evaluations == 1

    def test_timeout_stops_search(self):
        opt = DifferentialEvolutionOptimizer(
            OptimizerConfig(seed=0, maxiter=1000, tol=0, timeout=1e-9)
        )
        result = opt.minimize(
            shifted_quadratic, np.full(4, -10.0), np.full(4, 10.0), np.zeros(4)
        )
        assert result.timed_out
        assert not result.converged
        assert len(result.history) == 2


class TestLogLikelihoodObjective:
    """Tests for the fitness function."""

    def test_negated_log_likelihood(self, multiclass):
        objective = LogLikelihoodObjective(multiclass, multiclass.model.types)
        value = objective(multiclass.model.to_vector())
        assert value == pytest.approx(-multiclass.log_likelihood())

    def test_invalid_candidate_scores_infinity(self, multiclass):
        objective = LogLikelihoodObjective(multiclass, multiclass.model.types)
        vector = multiclass.model.to_vector()
        vector[1] = -1.0
        assert objective(vector) == np.inf

    @pytest.mark.parametrize("kind", list(StructureType))
    def test_vector_round_trip_through_model(self, layered_data, kind):
        start = CovarianceModel(
            structures=(
                CovarianceStructure(
                    type=kind, contribution=0.8, maxrange=60, midrange=30,
                    minrange=15, azimuth=20, dip=10, rake=5, power=1.2,
                ),
            ),
            nugget=0.1,
        )
        mc = MultiClassModel.from_data(layered_data, "rock", model=start)
        objective = LogLikelihoodObjective(mc, mc.model.types)
        vector = np.array([0.5, 70.0, 0.4, 0.5, 100.0, 30.0, 15.0, 1.5, 0.2])
        rebuilt = objective.build(vector)
        np.testing.assert_allclose(rebuilt.model.to_vector(), vector)
        assert rebuilt.params["nugget"] == pytest.approx(0.2)

    def test_failed_factorization_scores_infinity(self, layered_data, start_model):
        mc = MultiClassModel.from_data(
            layered_data, "rock", model=start_model, pseudo_inputs=15, seed=0, reg_v=0.0
        )
        objective = LogLikelihoodObjective(mc, mc.model.types)
        vector = mc.model.to_vector()
        vector[-1] = 0.0
        with pytest.raises(NumericalError):
            objective.build(vector)
        assert objective(vector) == np.inf

    def test_build_returns_new_model(self, multiclass):
        objective = LogLikelihoodObjective(multiclass, multiclass.model.types)
        vector = multiclass.model.to_vector()
        vector[1] = 80.0
        built = objective.build(vector)
        assert built is not multiclass
        assert built.model.structures[0].maxrange == pytest.approx(80.0)
        assert multiclass.model.structures[0].maxrange == pytest.approx(400.0)


class _FailingOptimizer(GlobalOptimizer):
    def minimize(self, objective, lower, upper, x0):
        return OptimizationResult(x=x0, fun=np.inf, history=[np.inf])


class TestCovarianceFitter:
    """Tests for CovarianceFitter on a small two-class model."""

    def test_fit_improves_and_keeps_fixed(self, multiclass):
        start = multiclass.log_likelihood()
        fitter = CovarianceFitter(
            multiclass,
            FitFlags(maxrange=True),
            OptimizerConfig(popsize=5, maxiter=10, seed=42),
        )
        result = fitter.fit()
        assert result.log_likelihood >= start
        assert result.history[0] == pytest.approx(start)
        assert np.all(np.diff(result.history) >= 0)
        fitted = result.model.model.structures[0]
        assert fitted.azimuth == pytest.approx(45.0)
        assert fitted.midrange / fitted.maxrange == pytest.approx(0.5)
        assert result.model.model.nugget == pytest.approx(0.05)
        assert result.model.labels == multiclass.labels

    def test_input_model_unchanged(self, multiclass):
        before = multiclass.model.to_vector()
        CovarianceFitter(
            multiclass, config=OptimizerConfig(popsize=3, maxiter=3, seed=0)
        ).fit()
        np.testing.assert_array_equal(multiclass.model.to_vector(), before)

    def test_bounds_error_raised_on_construction(self, multiclass):
        with pytest.raises(BoundsError):
            CovarianceFitter(multiclass, ranges=ParameterRanges(dip=(90.0, 0.0)),
                             flags=FitFlags(dip=True))

    def test_no_finite_candidate(self, multiclass):
        fitter = CovarianceFitter(multiclass, optimizer=_FailingOptimizer())
        with pytest.raises(ModelConstructionError):
            fitter.fit()

    def test_fit_continues_past_failed_candidates(self, layered_data, start_model):
        mc = MultiClassModel.from_data(
            layered_data, "rock", model=start_model, pseudo_inputs=15, seed=0, reg_v=0.0
        )
        fitter = CovarianceFitter(
            mc,
            FitFlags(nugget=True),
            OptimizerConfig(popsize=4, maxiter=5, seed=0),
            ranges=ParameterRanges(nugget=(0.0, 0.5)),
        )
        # Start from a nugget of zero, which cannot be factorized without regularization
        fitter.xstart[-1] = 0.0
        assert fitter.objective(fitter.xstart) == np.inf
        result = fitter.fit()
        assert np.isfinite(result.log_likelihood)
        assert result.improved
        assert result.model.model.nugget > 0.0

    def test_parallel_workers(self, multiclass):
        config = OptimizerConfig(popsize=3, maxiter=3, seed=0, workers=2)
        result = CovarianceFitter(multiclass, config=config).fit()
        assert np.isfinite(result.log_likelihood)
        assert result.log_likelihood >= multiclass.log_likelihood() - 1e-9

    def test_fit_covariance_returns_model(self, multiclass):
        fitted = fit_covariance(multiclass, popsize=3, maxiter=3, seed=0)
        assert isinstance(fitted, MultiClassModel)
        assert fitted.log_likelihood() >= multiclass.log_likelihood() - 1e-9
