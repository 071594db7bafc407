"""Tests for quadrature and hierarchical shape functions.

Run with: pytest tests/test_basis.py -v
"""

import numpy as np
import pytest

from hpFEM.basis import (
    gauss_legendre,
    lobatto,
    num_shape_functions,
    points_for_order,
    tensor_gauss,
    tensor_lobatto,
)


class TestQuadrature:
    """Gauss-Legendre rules."""

    def test_weights_sum(self):
        """Weights should sum to 2 (length of [-1,1])."""
        for n in [1, 2, 5, 9]:
            _, w = gauss_legendre(n)
            assert np.isclose(np.sum(w), 2.0)

    def test_exactness(self):
        """n points integrate x^k exactly for k <= 2n - 1."""
        n = 4
        x, w = gauss_legendre(n)
        for k in range(2 * n):
            exact = 2.0 / (k + 1) if k % 2 == 0 else 0.0
            assert np.isclose(np.sum(w * x**k), exact, atol=1e-13), f"Failed for k={k}"

    def test_points_for_order(self):
        for order in range(12):
            n = points_for_order(order)
            assert 2 * n - 1 >= order

    def test_tensor_rule_area(self):
        pts, wts = tensor_gauss(3, 2)
        assert pts.shape == (9, 2)
        assert np.isclose(np.sum(wts), 4.0)
        assert np.isclose(np.sum(wts * pts[:, 0] ** 2 * pts[:, 1] ** 2), 4.0 / 9.0)


class TestLobatto:
    """Hierarchical Lobatto shape functions."""

    def test_vertex_functions(self):
        vals, _ = lobatto(np.array([-1.0, 1.0]), 1)
        assert np.allclose(vals, [[1.0, 0.0], [0.0, 1.0]])

    def test_bubbles_vanish_at_endpoints(self):
        vals, _ = lobatto(np.array([-1.0, 1.0]), 8)
        assert np.allclose(vals[:, 2:], 0.0, atol=1e-13)

    def test_derivatives_match_finite_differences(self):
        x = np.linspace(-0.9, 0.9, 7)
        eps = 1e-6
        _, ders = lobatto(x, 6)
        plus, _ = lobatto(x + eps, 6)
        minus, _ = lobatto(x - eps, 6)
        assert np.allclose(ders, (plus - minus) / (2 * eps), atol=1e-7)

    def test_bubble_derivatives_orthonormal(self):
        """Derivatives of the bubbles are orthonormal in L2(-1, 1)."""
        x, w = gauss_legendre(10)
        _, ders = lobatto(x, 7)
        gram = ders[:, 2:].T @ (w[:, None] * ders[:, 2:])
        assert np.allclose(gram, np.eye(6), atol=1e-12)


class TestTensorBasis:
    """Tensor-product basis on the reference square."""

    def test_shapes(self):
        xi, _ = tensor_gauss(3, 2)
        vals, grads = tensor_lobatto(xi, (2, 3))
        assert vals.shape == (9, 12)
        assert grads.shape == (9, 12, 2)
        assert num_shape_functions((2, 3)) == 12

    def test_vertex_partition_of_unity(self):
        xi = np.array([[-0.3, 0.7], [0.1, -0.9], [0.5, 0.5]])
        degrees = (3, 2)
        vals, grads = tensor_lobatto(xi, degrees)
        vertex = [a * (degrees[1] + 1) + b for a in (0, 1) for b in (0, 1)]
        assert np.allclose(vals[:, vertex].sum(axis=1), 1.0)
        assert np.allclose(grads[:, vertex, :].sum(axis=1), 0.0)

    @pytest.mark.parametrize("degrees", [(1,), (4,)])
    def test_one_dimensional_matches_lobatto(self, degrees):
        x = np.linspace(-1, 1, 5)
        vals, grads = tensor_lobatto(x[:, None], degrees)
        ref_vals, ref_ders = lobatto(x, degrees[0])
        assert np.allclose(vals, ref_vals)
        assert np.allclose(grads[:, :, 0], ref_ders)
