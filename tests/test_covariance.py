"""Tests for covariance structures and models."""

import numpy as np
import pytest

from geomodsmith.primitives.covariance import (
    CORRELATION_FUNCTIONS,
    STRUCTURE_BLOCK,
    CovarianceModel,
    CovarianceStructure,
    StructureType,
    rotation_matrix,
)
from geomodsmith.utils.errors import ParameterError


@pytest.fixture
def random_points():
    """Random 3D points in a 100 m cube."""
    np.random.seed(42)
    return np.random.rand(30, 3) * 100


@pytest.fixture
def anisotropic_model():
    """Two-structure anisotropic model."""
    return CovarianceModel(
        structures=(
            CovarianceStructure(
                type="gaussian", contribution=0.7, maxrange=80, midrange=40,
                minrange=20, azimuth=30, dip=10, rake=5,
            ),
            CovarianceStructure(type="cubic", contribution=0.3, maxrange=150),
        ),
        nugget=0.05,
    )


class TestStructureType:
    """Tests for the structure kind enumeration."""

    def test_registry_covers_every_kind(self):
        assert set(CORRELATION_FUNCTIONS) == set(StructureType)

    def test_parse_is_case_insensitive(self):
        assert StructureType.parse("Gaussian") is StructureType.GAUSSIAN
        assert StructureType.parse(StructureType.CAUCHY) is StructureType.CAUCHY

    def test_parse_unknown_kind(self):
        with pytest.raises(ParameterError, match="Valid values"):
            StructureType.parse("bessel")

    def test_differentiable_kinds(self):
        differentiable = {t for t in StructureType if t.differentiable}
        assert differentiable == {
            StructureType.GAUSSIAN,
            StructureType.CUBIC,
            StructureType.MATERN1,
            StructureType.MATERN2,
            StructureType.CAUCHY,
        }


class TestCorrelationFunctions:
    """Correlation functions are 1 at the origin and decay with distance."""

    @pytest.mark.parametrize("kind", list(StructureType))
    def test_unit_at_origin(self, kind):
        value = CORRELATION_FUNCTIONS[kind](np.zeros(1), 1.0)
        assert value[0] == pytest.approx(1.0)

    @pytest.mark.parametrize("kind", list(StructureType))
    def test_decreasing(self, kind):
        r = np.linspace(0, 3, 50)
        values = CORRELATION_FUNCTIONS[kind](r, 1.0)
        assert np.all(np.diff(values) <= 1e-12)

    @pytest.mark.parametrize("kind", ["spherical", "cubic"])
    def test_compact_support(self, kind):
        values = CORRELATION_FUNCTIONS[StructureType(kind)](np.array([1.0, 2.0]), 1.0)
        np.testing.assert_allclose(values, 0.0, atol=1e-12)


class TestRotation:
    """Tests for the anisotropy rotation."""

    def test_orthonormal(self):
        rot = rotation_matrix(37, 21, 13)
        np.testing.assert_allclose(rot.T @ rot, np.eye(3), atol=1e-12)

    def test_zero_angles_major_axis_north(self):
        rot = rotation_matrix(0, 0, 0)
        np.testing.assert_allclose(rot[:, 0], [0, 1, 0], atol=1e-12)

    def test_azimuth_90_major_axis_east(self):
        rot = rotation_matrix(90, 0, 0)
        np.testing.assert_allclose(rot[:, 0], [1, 0, 0], atol=1e-12)


class TestCovarianceStructure:
    """Tests for CovarianceStructure."""

    def test_default_ranges_isotropic(self):
        s = CovarianceStructure(type="gaussian", maxrange=50)
        assert s.midrange == 50
        assert s.minrange == 50
        np.testing.assert_allclose(s.metric, np.eye(3) / 2500, atol=1e-15)

    def test_range_order_enforced(self):
        with pytest.raises(ParameterError, match="maxrange >= midrange >= minrange"):
            CovarianceStructure(type="gaussian", maxrange=10, midrange=20)

    def test_nonpositive_range(self):
        with pytest.raises(ParameterError):
            CovarianceStructure(type="gaussian", maxrange=0)

    def test_correlation_one_range_away(self):
        s = CovarianceStructure(type="spherical", maxrange=10)
        x = np.zeros((1, 3))
        y = np.array([[0.0, 10.0, 0.0]])
        assert s.correlation(x, y)[0, 0] == pytest.approx(0.0, abs=1e-12)

    def test_anisotropy_follows_major_axis(self):
        s = CovarianceStructure(
            type="gaussian", maxrange=100, midrange=10, minrange=10, azimuth=90
        )
        x = np.zeros((1, 3))
        east = np.array([[20.0, 0.0, 0.0]])
        north = np.array([[0.0, 20.0, 0.0]])
        assert s.correlation(x, east)[0, 0] > s.correlation(x, north)[0, 0]

    def test_derivatives_rejected_for_nondifferentiable(self):
        s = CovarianceStructure(type="exponential", maxrange=10)
        x = np.zeros((1, 3))
        with pytest.raises(ParameterError, match="not differentiable"):
            s.correlation_value_derivative(x, x, np.array([[1.0, 0.0, 0.0]]))

    def test_value_derivative_matches_finite_difference(self):
        s = CovarianceStructure(type="matern2", maxrange=30, midrange=20, azimuth=40)
        x = np.array([[3.0, -2.0, 1.0]])
        y = np.array([[10.0, 5.0, -4.0]])
        u = np.array([[0.6, 0.0, 0.8]])
        eps = 1e-5
        numeric = (
            s.correlation(x, y + eps * u) - s.correlation(x, y - eps * u)
        ) / (2 * eps)
        analytic = s.correlation_value_derivative(x, y, u)
        np.testing.assert_allclose(analytic, numeric, rtol=1e-5, atol=1e-10)

    def test_derivative_variance_is_limit_of_derivative_covariance(self):
        s = CovarianceStructure(type="gaussian", maxrange=25)
        x = np.array([[1.0, 2.0, 3.0]])
        u = np.array([[1.0, 0.0, 0.0]])
        near = s.correlation_derivative(x, u, x + 1e-9, u)[0, 0]
        assert s.derivative_variance(u)[0] == pytest.approx(near, rel=1e-6)

    @pytest.mark.parametrize("kind", list(StructureType))
    def test_vector_round_trip(self, kind):
        s = CovarianceStructure(
            type=kind, contribution=0.4, maxrange=90, midrange=45, minrange=9,
            azimuth=120, dip=30, rake=15, power=1.5,
        )
        block = s.to_vector()
        assert block.shape == (STRUCTURE_BLOCK,)
        rebuilt = CovarianceStructure.from_vector(kind, block)
        assert rebuilt.type is StructureType(kind)
        np.testing.assert_allclose(rebuilt.to_vector(), block)
        assert rebuilt.minrange == pytest.approx(9.0)


class TestCovarianceModel:
    """Tests for CovarianceModel."""

    def test_vector_layout(self, anisotropic_model):
        vector = anisotropic_model.to_vector()
        assert vector.shape == (2 * STRUCTURE_BLOCK + 1,)
        assert vector[-1] == pytest.approx(0.05)
        assert vector[0] == pytest.approx(0.7)
        assert vector[2] == pytest.approx(0.5)
        assert vector[3] == pytest.approx(0.5)

    def test_from_vector_round_trip(self, anisotropic_model):
        rebuilt = CovarianceModel.from_vector(
            anisotropic_model.to_vector(), anisotropic_model.types
        )
        assert rebuilt.types == anisotropic_model.types
        np.testing.assert_allclose(rebuilt.to_vector(), anisotropic_model.to_vector())

    def test_from_vector_wrong_length(self, anisotropic_model):
        with pytest.raises(ParameterError, match="length must be"):
            CovarianceModel.from_vector(np.ones(9), anisotropic_model.types)

    def test_sill(self, anisotropic_model):
        assert anisotropic_model.sill == pytest.approx(1.0)

    def test_symmetric_positive_semidefinite(self, anisotropic_model, random_points):
        k = anisotropic_model.covariance(random_points, random_points)
        np.testing.assert_allclose(k, k.T, atol=1e-12)
        assert np.linalg.eigvalsh(k).min() > -1e-8
        np.testing.assert_allclose(np.diag(k), anisotropic_model.sill)

    def test_joint_derivative_covariance_symmetric(self, anisotropic_model, random_points):
        rng = np.random.default_rng(0)
        dirs = rng.normal(size=random_points.shape)
        dirs /= np.linalg.norm(dirs, axis=1, keepdims=True)
        k = anisotropic_model.covariance_derivative(random_points, dirs, random_points, dirs)
        np.testing.assert_allclose(k, k.T, atol=1e-12)
        np.testing.assert_allclose(
            np.diag(k), anisotropic_model.derivative_variance(dirs), rtol=1e-10
        )

    def test_negative_nugget(self):
        s = CovarianceStructure(type="gaussian", maxrange=10)
        with pytest.raises(ParameterError):
            CovarianceModel(structures=(s,), nugget=-0.1)

    def test_differentiable(self, anisotropic_model):
        assert anisotropic_model.differentiable
        mixed = CovarianceModel(
            structures=(CovarianceStructure(type="spherical", maxrange=5),)
        )
        assert not mixed.differentiable

    def test_with_nugget(self, anisotropic_model):
        changed = anisotropic_model.with_nugget(0.2)
        assert changed.nugget == 0.2
        assert changed.structures == anisotropic_model.structures
