"""Hierarchical shape functions and Gauss quadrature on the reference box [-1, 1]^d."""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss, legvander
from numpy.typing import NDArray


@lru_cache(maxsize=None)
def gauss_legendre(n_points: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Gauss-Legendre points and weights on [-1, 1] (exact up to degree 2n-1)."""
    x, w = leggauss(max(1, int(n_points)))
    x.setflags(write=False)
    w.setflags(write=False)
    return x, w


def points_for_order(order: int) -> int:
    """Number of Gauss points integrating polynomials of the given degree exactly."""
    return max(1, int(order) // 2 + 1)


def tensor_gauss(n_points: int | tuple[int, ...], dim: int) -> tuple[NDArray, NDArray]:
    """Tensor-product Gauss rule on [-1, 1]^dim.

    Returns points of shape (N, dim) and weights of shape (N,).
    """
    if np.isscalar(n_points):
        n_points = (int(n_points),) * dim
    rules = [gauss_legendre(n) for n in n_points]
    grids = np.meshgrid(*[r[0] for r in rules], indexing="ij")
    wgrids = np.meshgrid(*[r[1] for r in rules], indexing="ij")
    pts = np.column_stack([g.ravel() for g in grids])
    wts = np.prod(np.column_stack([g.ravel() for g in wgrids]), axis=1)
    return pts, wts


def lobatto(x: NDArray[np.float64], p: int) -> tuple[NDArray, NDArray]:
    """Lobatto shape functions l_0..l_p and their derivatives at x.

    l_0 = (1 - x)/2 and l_1 = (1 + x)/2 are the vertex functions, l_k for k >= 2
    are the integrated Legendre bubbles (P_k - P_{k-2}) / sqrt(2(2k - 1)),
    which vanish at both endpoints.
    """
    x = np.asarray(x, dtype=np.float64)
    P = legvander(x, max(p, 1))
    vals = np.empty(x.shape + (p + 1,))
    ders = np.empty_like(vals)
    vals[..., 0] = 0.5 * (1.0 - x)
    ders[..., 0] = -0.5
    vals[..., 1] = 0.5 * (1.0 + x)
    ders[..., 1] = 0.5
    for k in range(2, p + 1):
        vals[..., k] = (P[..., k] - P[..., k - 2]) / np.sqrt(2.0 * (2 * k - 1))
        ders[..., k] = np.sqrt((2 * k - 1) / 2.0) * P[..., k - 1]
    return vals, ders


def tensor_lobatto(xi: NDArray[np.float64], degrees: tuple[int, ...]) -> tuple[NDArray, NDArray]:
    """Tensor-product Lobatto basis at reference points xi of shape (N, dim).

    Basis index runs over the C-ordered multi-index (a_0, ..., a_{dim-1}), so
    coefficients stored as an array of shape ``tuple(p + 1 for p in degrees)``
    match after ``ravel()``. Returns values (N, nb) and reference gradients
    (N, nb, dim).
    """
    xi = np.asarray(xi, dtype=np.float64)
    n_pts, dim = xi.shape
    vals1d, ders1d = zip(*(lobatto(xi[:, d], degrees[d]) for d in range(dim)))

    def outer(factors):
        out = factors[0]
        for f in factors[1:]:
            out = (out[:, :, None] * f[:, None, :]).reshape(n_pts, -1)
        return out

    vals = outer(vals1d)
    grads = np.empty(vals.shape + (dim,))
    for axis in range(dim):
        factors = [ders1d[d] if d == axis else vals1d[d] for d in range(dim)]
        grads[..., axis] = outer(factors)
    return vals, grads


def num_shape_functions(degrees: tuple[int, ...]) -> int:
    return int(np.prod([p + 1 for p in degrees]))
