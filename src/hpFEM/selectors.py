"""Projection-based selection of element refinements.

For a flagged element the reference solution is projected onto the local
space of every candidate (split pattern plus son degrees). The projection
error predicts the error of the candidate, the son layout gives its DOF
count, and the candidate with the best error decrease per added DOF wins.
"""

from __future__ import annotations

import itertools
import logging

import numpy as np
from numpy.typing import NDArray

from .basis import points_for_order, tensor_gauss, tensor_lobatto
from .datastructures import (
    MAX_ORDER,
    SPLIT_ISO,
    SPLIT_NONE,
    SPLIT_X,
    SPLIT_Y,
    Candidate,
    CandList,
    _as_enum,
)
from .mesh import Element, son_boxes, split_axes
from .solution import Solution

log = logging.getLogger(__name__)

# Relative floor of predicted errors (exactly representable reference solutions)
ERROR_FLOOR = 1e-12

# Relative tolerance for two scores to count as equal
SCORE_TOL = 1e-12


def layout_dofs(boxes, orders, dim: int) -> int:
    """DOFs of a son layout of one isolated element.

    Counts vertex functions of the son grid, one edge function per degree
    above 1 on every edge (edge degree = minimum over the touching sons) and
    the bubble functions of each son.
    """
    if dim == 1:
        return len(boxes) + 1 + sum(q[0] - 1 for q in orders)
    corners = set()
    edges: dict[tuple, int] = {}
    bubbles = 0
    for (lo, hi), q in zip(boxes, orders):
        corners.update((float(x), float(y)) for x in (lo[0], hi[0]) for y in (lo[1], hi[1]))
        for axis in range(2):
            t = 1 - axis
            for const in (lo[axis], hi[axis]):
                key = (axis, float(const), float(lo[t]), float(hi[t]))
                edges[key] = min(edges.get(key, q[t]), q[t])
        bubbles += (q[0] - 1) * (q[1] - 1)
    return len(corners) + sum(p - 1 for p in edges.values()) + bubbles


class ProjBasedSelector:
    """Chooses the refinement of single elements from a candidate list.

    Parameters
    ----------
    cand_list : CandList
        Which candidates are generated
    conv_exp : float
        Exponent of the DOF increase in the score; larger values favour
        cheap candidates
    max_order : int
        Upper bound of all candidate degrees
    norm : str
        "h1" or "l2", norm of the local projections
    error_weights : (float, float, float)
        Multipliers of the predicted error of h, p and anisotropic candidates
    """

    def __init__(
        self,
        cand_list: CandList = CandList.HP_ANISO,
        conv_exp: float = 1.0,
        max_order: int = MAX_ORDER,
        norm: str = "h1",
        error_weights: tuple[float, float, float] = (1.0, 1.0, 1.0),
    ):
        self.cand_list = _as_enum(CandList, cand_list)
        self.conv_exp = float(conv_exp)
        self.max_order = int(max_order)
        self.norm = norm
        self.error_weights = tuple(float(w) for w in error_weights)

    # ------------------------------------------------------------------
    # Candidate enumeration
    # ------------------------------------------------------------------

    def generate_candidates(self, order: tuple[int, ...], dim: int) -> list[Candidate]:
        """All admissible candidates for an element of degree ``order``, in enumeration order."""
        cl = self.cand_list
        p = tuple(int(v) for v in order)
        raw: list[tuple[int, tuple]] = []

        if cl.has_p:
            for inc in (1, 2):
                raw.append((SPLIT_NONE, (tuple(q + inc for q in p),)))
            if cl.aniso_p and dim == 2:
                for i, j in itertools.product(range(3), repeat=2):
                    if i or j:
                        raw.append((SPLIT_NONE, ((p[0] + i, p[1] + j),)))

        if cl.has_h:
            splits = [SPLIT_ISO] + ([SPLIT_X, SPLIT_Y] if cl.aniso_h and dim == 2 else [])
            for split in splits:
                axes = split_axes(split, dim)
                n_sons = 2 ** len(axes)
                raw.append((split, (p,) * n_sons))
                if not cl.has_p:
                    continue
                base = tuple(max(1, (p[a] + 1) // 2) if a in axes else p[a] for a in range(dim))
                if cl.aniso_p and dim == 2:
                    son_options = list(itertools.product(*[(b, b + 1) for b in base]))
                else:
                    son_options = [tuple(b + k for b in base) for k in (0, 1)]
                for orders in itertools.product(son_options, repeat=n_sons):
                    raw.append((split, orders))

        seen = set()
        cands = []
        for split, orders in raw:
            if (split, orders) in seen or max(max(q) for q in orders) > self.max_order:
                continue
            seen.add((split, orders))
            cands.append(Candidate(split=split, orders=orders))
        return cands

    def _weight(self, cand: Candidate, dim: int) -> float:
        w_h, w_p, w_aniso = self.error_weights
        weight = w_p if cand.split == SPLIT_NONE else w_h
        if cand.split in (SPLIT_X, SPLIT_Y) or (dim == 2 and any(q[0] != q[1] for q in cand.orders)):
            weight *= w_aniso
        return weight

    # ------------------------------------------------------------------
    # Local projections
    # ------------------------------------------------------------------

    def _projection_error_sq(
        self,
        elem: Element,
        ref_sln: Solution,
        descendants: list[Element],
        box_lo: NDArray[np.float64],
        box_hi: NDArray[np.float64],
        q: tuple[int, ...],
    ) -> float:
        """Squared error of the projection of ref_sln onto degree q on a son box.

        The box is given in reference coordinates of elem; it is integrated
        piece by piece over its intersections with the reference elements.
        """
        dim = len(q)
        h1 = self.norm == "h1"
        box_size = box_hi - box_lo
        d_scale = 2.0 / (0.5 * box_size * elem.size)
        nb = int(np.prod([v + 1 for v in q]))
        M = np.zeros((nb, nb))
        rhs = np.zeros(nb)
        pieces = []
        for d in descendants:
            d_lo = elem.to_reference(d.lo)
            d_hi = elem.to_reference(d.hi)
            lo = np.maximum(box_lo, d_lo)
            hi = np.minimum(box_hi, d_hi)
            if np.any(hi - lo <= 1e-12):
                continue
            p_ref = max(ref_sln.get_element_order(d.id))
            xi, w = tensor_gauss(points_for_order(2 * max(max(q), p_ref)), dim)
            s_K = lo + 0.5 * (xi + 1.0) * (hi - lo)
            x = elem.to_physical(s_K)
            ww = w * np.prod(0.25 * (hi - lo) * elem.size)
            f, df = ref_sln.eval_element(d.id, d.to_reference(x))
            phi, dphi = tensor_lobatto(2.0 * (s_K - box_lo) / box_size - 1.0, q)
            dphi = dphi * d_scale
            M += phi.T @ (ww[:, None] * phi)
            rhs += phi.T @ (ww * f)
            if h1:
                M += np.einsum("n,nad,nbd->ab", ww, dphi, dphi)
                rhs += np.einsum("n,nad,nd->a", ww, dphi, df)
            pieces.append((ww, f, df, phi, dphi))

        c = np.linalg.solve(M, rhs)
        err = 0.0
        for ww, f, df, phi, dphi in pieces:
            integrand = (f - phi @ c) ** 2
            if h1:
                integrand = integrand + np.sum((df - np.einsum("nbd,b->nd", dphi, c)) ** 2, axis=1)
            err += float(np.sum(ww * integrand))
        return err

    def _norm_sq(self, elem: Element, ref_sln: Solution, descendants: list[Element]) -> float:
        total = 0.0
        for d in descendants:
            xi, w = tensor_gauss(points_for_order(2 * max(ref_sln.get_element_order(d.id))), elem.lo.size)
            f, df = ref_sln.eval_element(d.id, xi)
            integrand = f**2 + (np.sum(df**2, axis=1) if self.norm == "h1" else 0.0)
            total += float(np.prod(0.5 * d.size) * np.sum(w * integrand))
        return total

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def evaluate_candidates(
        self, eid: int, order: tuple[int, ...], ref_sln: Solution
    ) -> tuple[Candidate, list[Candidate]]:
        """Predicted error and DOFs of the unchanged element and of every candidate."""
        ref_mesh = ref_sln.mesh
        elem = ref_mesh.elements[eid]
        dim = ref_mesh.dim
        descendants = [ref_mesh.elements[d] for d in ref_mesh.active_descendants(eid)]
        cache: dict[tuple, float] = {}

        def error_sq(box, q):
            key = (tuple(box[0]), tuple(box[1]), q)
            if key not in cache:
                cache[key] = self._projection_error_sq(elem, ref_sln, descendants, box[0], box[1], q)
            return cache[key]

        floor = ERROR_FLOOR * np.sqrt(self._norm_sq(elem, ref_sln, descendants)) + 1e-300
        order = tuple(int(v) for v in order)

        boxes = son_boxes(SPLIT_NONE, dim)
        unrefined = Candidate(split=SPLIT_NONE, orders=(order,))
        unrefined.error = max(np.sqrt(error_sq(boxes[0], order)), floor)
        unrefined.dofs = layout_dofs(boxes, unrefined.orders, dim)

        cands = self.generate_candidates(order, dim)
        for cand in cands:
            boxes = son_boxes(cand.split, dim)
            err = np.sqrt(sum(error_sq(box, q) for box, q in zip(boxes, cand.orders)))
            cand.error = max(err * self._weight(cand, dim), floor)
            cand.dofs = layout_dofs(boxes, cand.orders, dim)
            if cand.error < unrefined.error and cand.dofs > unrefined.dofs:
                cand.score = (np.log10(unrefined.error) - np.log10(cand.error)) / (
                    cand.dofs - unrefined.dofs
                ) ** self.conv_exp
            else:
                cand.score = 0.0
        return unrefined, cands

    def select_refinement(
        self, eid: int, order: tuple[int, ...], ref_sln: Solution
    ) -> Candidate | None:
        """Best candidate for element eid, or None if no candidate improves on it.

        Highest score wins; equal scores go to the smaller DOF increase, then
        to the earlier candidate.
        """
        unrefined, cands = self.evaluate_candidates(eid, order, ref_sln)
        best = None
        for cand in cands:
            if cand.score <= 0.0:
                continue
            if best is None:
                best = cand
                continue
            tol = SCORE_TOL * abs(best.score)
            if cand.score > best.score + tol or (
                abs(cand.score - best.score) <= tol and cand.dofs < best.dofs
            ):
                best = cand
        if best is None:
            log.debug(f"Element {eid}: no improving candidate (error {unrefined.error:.3e})")
        else:
            log.debug(f"Element {eid}: {best}")
        return best
