"""Linear solve on reference spaces and global orthogonal projection."""

from __future__ import annotations

import logging
import warnings
from typing import Callable

import numpy as np
import scipy.sparse.linalg as spla
from numpy.typing import NDArray
from scipy.sparse.linalg import MatrixRankWarning

from .assembly import DiscreteProblem
from .exceptions import FatalSolverFailure
from .forms import (
    MatrixFormVol,
    VectorFormVol,
    WeakForm,
    int_F_v,
    int_grad_F_grad_v,
    int_grad_u_grad_v,
    int_u_v,
)
from .solution import Solution
from .space import Space

log = logging.getLogger(__name__)


def solve_linear(A, b: NDArray[np.float64]) -> NDArray[np.float64]:
    """Direct sparse solve; any failure is fatal for the adaptivity run."""
    if A.shape[0] == 0:
        return np.zeros(0)
    with warnings.catch_warnings():
        warnings.simplefilter("error", MatrixRankWarning)
        try:
            x = spla.spsolve(A.tocsc(), b)
        except (MatrixRankWarning, RuntimeError, ValueError) as exc:
            raise FatalSolverFailure(f"Matrix solver failed: {exc}") from exc
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    if not np.all(np.isfinite(x)):
        raise FatalSolverFailure("Matrix solver returned non-finite values (singular system?)")
    return x


class LinearProblem:
    """Solve a linear weak form on a list of spaces.

    Instances are callables ``spaces -> list[Solution]`` and can be handed to
    :class:`hpFEM.amr.HPAdaptivity` directly.
    """

    def __init__(self, wf: WeakForm, solver: Callable = solve_linear):
        self.wf = wf
        self.solver = solver

    def solve(self, spaces: list[Space]) -> list[Solution]:
        dp = DiscreteProblem(self.wf, spaces)
        A, b = dp.assemble()
        log.debug(f"Solving linear system with {dp.ndof} DOFs, nnz={A.nnz}")
        return dp.vector_to_solutions(self.solver(A, b))

    __call__ = solve


def projection_form(slns: list[Solution], norm: str = "h1") -> WeakForm:
    """Weak form of the orthogonal projection of slns in the given norm."""
    if norm not in ("h1", "l2"):
        raise ValueError(f"Unknown projection norm: {norm!r}")
    h1 = norm == "h1"
    wf = WeakForm(neq=len(slns))

    def matrix_value(wt, u, v, e, ext):
        K = int_u_v(wt, u, v)
        return K + int_grad_u_grad_v(wt, u, v) if h1 else K

    def matrix_ord(pu, pv, pe):
        return pu + pv

    for i in range(len(slns)):

        def vector_value(wt, v, e, ext, i=i):
            F = int_F_v(wt, ext[i].val, v)
            return F + int_grad_F_grad_v(wt, ext[i].dx, v) if h1 else F

        def vector_ord(pv, pe, i=i):
            return pv + pe[i]

        wf.add_matrix_form(MatrixFormVol(i, i, matrix_value, matrix_ord))
        wf.add_vector_form(VectorFormVol(i, vector_value, vector_ord))
    wf.set_ext(slns)
    return wf


def project_global(
    spaces: list[Space],
    slns: list[Solution],
    norm: str = "h1",
    solver: Callable = solve_linear,
) -> list[Solution]:
    """Orthogonal projection of each solution onto the matching space.

    Essential values of the target spaces are kept. Quadrature is exact for
    the polynomial integrands, so projecting a solution onto its own space
    reproduces it.
    """
    if len(spaces) != len(slns):
        raise ValueError("project_global needs one solution per space")
    return LinearProblem(projection_form(slns, norm), solver).solve(spaces)
