"""Weak forms as capability sets.

Every form supplies a ``value`` function (the integral over one integration
piece, evaluated with all shape functions at once) and an ``ord`` function
(the polynomial degree of the integrand, which selects the quadrature).
The assembly never looks at the physics behind them.

Signatures
----------
matrix volume form  value(wt, u, v, e, ext) -> (n_v, n_u)
vector volume form  value(wt, v, e, ext) -> (n_v,)
surface forms       same, evaluated at a boundary point with wt = [1.0]
order functions     ord(u_order, v_order, ext_orders) / ord(v_order, ext_orders)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from numpy.typing import NDArray

# Extra degree assumed for non-polynomial data (loads, coefficients given as callables)
DATA_ORDER = 4


@dataclass
class Func:
    """Values and x-derivatives at quadrature points.

    Shape functions carry one column per function, (n_pts, n_basis); external
    solutions carry (n_pts,).
    """

    val: NDArray[np.float64]
    dx: NDArray[np.float64]


@dataclass
class Geom:
    """Integration point geometry."""

    x: NDArray[np.float64]
    marker: str = ""
    time: float = 0.0


def _matrix_ord(u_order, v_order, ext_orders):
    return u_order + v_order


def _vector_ord(v_order, ext_orders):
    return v_order + max(ext_orders, default=0) + DATA_ORDER


@dataclass
class MatrixFormVol:
    i: int
    j: int
    value: Callable
    ord: Callable = _matrix_ord
    area: str | None = None


@dataclass
class VectorFormVol:
    i: int
    value: Callable
    ord: Callable = _vector_ord
    area: str | None = None


@dataclass
class MatrixFormSurf:
    i: int
    j: int
    value: Callable
    boundary: str = ""


@dataclass
class VectorFormSurf:
    i: int
    value: Callable
    boundary: str = ""


@dataclass
class WeakForm:
    """Collection of forms for a system of ``neq`` equations.

    ``ext`` holds external solutions (e.g. the previous time level) that are
    evaluated at every integration point and passed to the forms.
    """

    neq: int = 1
    mfvol: list[MatrixFormVol] = field(default_factory=list)
    vfvol: list[VectorFormVol] = field(default_factory=list)
    mfsurf: list[MatrixFormSurf] = field(default_factory=list)
    vfsurf: list[VectorFormSurf] = field(default_factory=list)
    ext: list = field(default_factory=list)
    current_time: float = 0.0

    def add_matrix_form(self, form: MatrixFormVol) -> None:
        self._check_index(form.i, form.j)
        self.mfvol.append(form)

    def add_vector_form(self, form: VectorFormVol) -> None:
        self._check_index(form.i)
        self.vfvol.append(form)

    def add_matrix_form_surf(self, form: MatrixFormSurf) -> None:
        self._check_index(form.i, form.j)
        self.mfsurf.append(form)

    def add_vector_form_surf(self, form: VectorFormSurf) -> None:
        self._check_index(form.i)
        self.vfsurf.append(form)

    def set_ext(self, ext) -> None:
        self.ext = list(ext)

    def _check_index(self, *indices: int) -> None:
        for idx in indices:
            if not 0 <= idx < self.neq:
                raise ValueError(f"Form index {idx} out of range for {self.neq} equation(s)")


# ============================================================================
# Integrals
# ============================================================================


def coefficient(c, e: Geom) -> NDArray[np.float64] | float:
    """Evaluate a constant or a callable c(x, t) coefficient at the points of e."""
    if callable(c):
        return np.asarray(c(e.x, e.time), dtype=np.float64)
    return c


def int_u_v(wt, u: Func, v: Func, coeff=1.0) -> NDArray[np.float64]:
    return np.einsum("q,qi,qj->ij", wt * coeff, v.val, u.val)


def int_grad_u_grad_v(wt, u: Func, v: Func, coeff=1.0) -> NDArray[np.float64]:
    return np.einsum("q,qi,qj->ij", wt * coeff, v.dx, u.dx)


def int_F_v(wt, F, v: Func) -> NDArray[np.float64]:
    return (wt * F) @ v.val


def int_grad_F_grad_v(wt, dF, v: Func) -> NDArray[np.float64]:
    return (wt * dF) @ v.dx


# ============================================================================
# Default forms
# ============================================================================


def diffusion_form(i: int, j: int, coeff=1.0, area: str | None = None) -> MatrixFormVol:
    """coeff * int u' v'."""

    def value(wt, u, v, e, ext):
        return int_grad_u_grad_v(wt, u, v, coefficient(coeff, e))

    order = _matrix_ord if not callable(coeff) else (lambda pu, pv, pe: pu + pv + DATA_ORDER)
    return MatrixFormVol(i, j, value, order, area)


def mass_form(i: int, j: int, coeff=1.0, area: str | None = None) -> MatrixFormVol:
    """coeff * int u v."""

    def value(wt, u, v, e, ext):
        return int_u_v(wt, u, v, coefficient(coeff, e))

    order = _matrix_ord if not callable(coeff) else (lambda pu, pv, pe: pu + pv + DATA_ORDER)
    return MatrixFormVol(i, j, value, order, area)


def load_form(i: int, f, area: str | None = None, data_order: int = DATA_ORDER) -> VectorFormVol:
    """int f v for a constant or callable f(x, t).

    ``data_order`` is the degree assumed for f when it is a callable.
    """

    def value(wt, v, e, ext):
        return int_F_v(wt, coefficient(f, e), v)

    def order(v_order, ext_orders):
        return v_order + (data_order if callable(f) else 0)

    return VectorFormVol(i, value, order, area)


def surface_matrix_form(i: int, coeff, boundary: str) -> MatrixFormSurf:
    """coeff * u v at a boundary point (Newton / Robin term)."""

    def value(wt, u, v, e, ext):
        return int_u_v(wt, u, v, coefficient(coeff, e))

    return MatrixFormSurf(i, i, value, boundary)


def surface_vector_form(i: int, g, boundary: str) -> VectorFormSurf:
    """g * v at a boundary point (flux)."""

    def value(wt, v, e, ext):
        return int_F_v(wt, coefficient(g, e), v)

    return VectorFormSurf(i, value, boundary)
