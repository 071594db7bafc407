"""Reference-solution based error estimation."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from numba import njit
from numpy.typing import NDArray

from .basis import points_for_order, tensor_gauss
from .datastructures import ZERO_NORM_TOL, ErrorCombination, ErrorEstimate
from .solution import Solution

log = logging.getLogger(__name__)


@njit
def _sum_by_parent(fine_values, parent_map, n_coarse):
    """Accumulate fine element contributions into their coarse parents."""
    out = np.zeros(n_coarse)
    for i in range(fine_values.shape[0]):
        out[parent_map[i]] += fine_values[i]
    return out


def _integrand(vals, grads, norm):
    if norm == "h1":
        return vals**2 + np.sum(grads**2, axis=1)
    return vals**2


def element_errors(
    sln: Solution, ref_sln: Solution, norm: str = "h1"
) -> tuple[NDArray[np.int64], NDArray[np.float64], float]:
    """Squared error of sln against ref_sln on every active coarse element.

    Each coarse element K is integrated over the active elements of the
    reference mesh descending from K, where both functions are polynomials.
    Returns the coarse ids, their squared errors, and the squared norm of
    ref_sln.
    """
    mesh, ref_mesh = sln.mesh, ref_sln.mesh
    coarse_ids = np.array(mesh.active_ids(), dtype=np.int64)

    fine_ids, parents = [], []
    for k, eid in enumerate(coarse_ids):
        for d in ref_mesh.active_descendants(int(eid)):
            fine_ids.append(d)
            parents.append(k)

    fine_err = np.empty(len(fine_ids))
    fine_norm = np.empty(len(fine_ids))
    for n, (d, k) in enumerate(zip(fine_ids, parents)):
        coarse = mesh.elements[int(coarse_ids[k])]
        fine = ref_mesh.elements[d]
        p = max(max(ref_sln.get_element_order(d)), max(sln.get_element_order(coarse.id)))
        xi, w = tensor_gauss(points_for_order(2 * p), mesh.dim)
        ref_vals, ref_grads = ref_sln.eval_element(d, xi)
        if fine is coarse:
            vals, grads = sln.eval_element(coarse.id, xi)
        else:
            vals, grads = sln.eval_element(coarse.id, coarse.to_reference(fine.to_physical(xi)))
        jac = np.prod(0.5 * fine.size)
        fine_err[n] = jac * np.sum(w * _integrand(ref_vals - vals, ref_grads - grads, norm))
        fine_norm[n] = jac * np.sum(w * _integrand(ref_vals, ref_grads, norm))

    err_sq = _sum_by_parent(fine_err, np.array(parents, dtype=np.int64), len(coarse_ids))
    return coarse_ids, err_sq, float(np.sum(fine_norm))


def calc_err_est(
    slns: list[Solution],
    ref_slns: list[Solution],
    combination: ErrorCombination = ErrorCombination.EUCLIDEAN,
    norm: str = "h1",
) -> ErrorEstimate:
    """Estimate the error of the coarse solutions against the reference solutions.

    Parameters
    ----------
    slns, ref_slns : list of Solution
        Coarse and reference solution of each component
    combination : ErrorCombination
        EUCLIDEAN: 100 * sqrt(sum_c rel_c^2);
        ENERGY: 100 * sqrt(sum_c err_c^2 / sum_c norm_c^2)
    norm : str
        "h1" or "l2"

    Returns
    -------
    ErrorEstimate
        Element contributions are squared element errors divided by the
        squared reference norm of their component.
    """
    if len(slns) != len(ref_slns):
        raise ValueError("calc_err_est needs one reference solution per coarse solution")

    ids_all, contrib_all = [], []
    errors_sq = np.zeros(len(slns))
    norms_sq = np.zeros(len(slns))
    rel = np.zeros(len(slns))
    for c, (sln, ref) in enumerate(zip(slns, ref_slns)):
        ids, err_sq, norm_sq = element_errors(sln, ref, norm)
        if norm_sq < ZERO_NORM_TOL:
            log.warning(f"Component {c}: reference solution has zero norm, relative error set to 0")
            contrib = np.zeros(len(ids))
        else:
            errors_sq[c] = err_sq.sum()
            norms_sq[c] = norm_sq
            rel[c] = np.sqrt(errors_sq[c] / norm_sq)
            contrib = err_sq / norm_sq
        ids_all.append(ids)
        contrib_all.append(contrib)

    combination = ErrorCombination(combination)
    if combination == ErrorCombination.EUCLIDEAN:
        total = 100.0 * float(np.sqrt(np.sum(rel**2)))
    else:
        denom = norms_sq.sum()
        total = 100.0 * float(np.sqrt(errors_sq.sum() / denom)) if denom > 0 else 0.0

    return ErrorEstimate(
        element_ids=ids_all,
        element_errors=contrib_all,
        errors_sq=errors_sq,
        norms_sq=norms_sq,
        rel_errors=rel,
        total=total,
    )


def calc_err_exact(
    sln: Solution,
    exact: Callable[[NDArray[np.float64]], NDArray[np.float64]],
    exact_grad: Callable[[NDArray[np.float64]], NDArray[np.float64]] | None = None,
    extra_order: int = 6,
) -> float:
    """Relative error of sln against an exact solution, in percent.

    H1 norm when exact_grad is given (returning shape (N, dim)), L2 otherwise.
    Both callables receive physical points of shape (N, dim).
    """
    err_sq, norm_sq = 0.0, 0.0
    for eid in sln.mesh.active_ids():
        elem = sln.mesh.elements[eid]
        xi, w = tensor_gauss(points_for_order(2 * max(sln.get_element_order(eid)) + extra_order), sln.mesh.dim)
        x = elem.to_physical(xi)
        vals, grads = sln.eval_element(eid, xi)
        u = np.asarray(exact(x), dtype=np.float64).reshape(len(x))
        jac = np.prod(0.5 * elem.size)
        err_sq += jac * np.sum(w * (vals - u) ** 2)
        norm_sq += jac * np.sum(w * u**2)
        if exact_grad is not None:
            du = np.asarray(exact_grad(x), dtype=np.float64).reshape(len(x), sln.mesh.dim)
            err_sq += jac * np.sum(w * np.sum((grads - du) ** 2, axis=1))
            norm_sq += jac * np.sum(w * np.sum(du**2, axis=1))
    if norm_sq < ZERO_NORM_TOL:
        return 100.0 * float(np.sqrt(err_sq))
    return 100.0 * float(np.sqrt(err_sq / norm_sq))
