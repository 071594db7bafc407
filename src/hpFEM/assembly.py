"""Sparse assembly of weak forms over one or more 1D spaces.

Spaces (and external solutions) may live on different refinements of the
same initial mesh. Integration runs over the union mesh, the common
refinement of all of them, so every integrand is a polynomial on each piece.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import coo_matrix, csr_matrix

from .basis import gauss_legendre, lobatto, points_for_order
from .forms import Func, Geom, MatrixFormSurf, WeakForm
from .solution import Solution
from .space import Space

log = logging.getLogger(__name__)


class DiscreteProblem:
    """Linear system of a weak form on a list of spaces.

    Parameters
    ----------
    wf : WeakForm
        Forms; ``wf.ext`` are evaluated at every integration point
    spaces : list of Space
        One space per equation, all on 1D meshes
    """

    def __init__(self, wf: WeakForm, spaces: list[Space]):
        if len(spaces) != wf.neq:
            raise ValueError(f"Weak form has {wf.neq} equation(s) but {len(spaces)} space(s) given")
        if any(s.dim != 1 for s in spaces):
            raise NotImplementedError("Assembly is implemented for 1D meshes only")
        self.wf = wf
        self.spaces = list(spaces)
        self.ext = list(wf.ext)
        self.dof_maps = [s.dof_map() for s in self.spaces]
        self.offsets = np.cumsum([0] + [d.ndof for d in self.dof_maps])
        self.ndof = int(self.offsets[-1])

    def union_breakpoints(self) -> NDArray[np.float64]:
        meshes = [s.mesh for s in self.spaces] + [e.mesh for e in self.ext]
        pts = np.sort(np.concatenate([m.vertices() for m in meshes]))
        tol = self.spaces[0].mesh.tol
        keep = np.concatenate([[True], np.diff(pts) > tol])
        return pts[keep]

    # ------------------------------------------------------------------
    # Local evaluation
    # ------------------------------------------------------------------

    def _shape_functions(self, i: int, eid: int, x: NDArray[np.float64]) -> Func:
        elem = self.spaces[i].mesh.elements[eid]
        p = self.spaces[i].get_element_order(eid)[0]
        xi = 2.0 * (x - elem.lo[0]) / elem.size[0] - 1.0
        vals, ders = lobatto(xi, p)
        return Func(vals, ders * (2.0 / elem.size[0]))

    def _ext_functions(self, owners: list[int], x: NDArray[np.float64]) -> list[Func]:
        out = []
        for sln, eid in zip(self.ext, owners):
            elem = sln.mesh.elements[eid]
            vals, grads = sln.eval_element(eid, elem.to_reference(x[:, None]))
            out.append(Func(vals, grads[:, 0]))
        return out

    # ------------------------------------------------------------------
    # Scatter
    # ------------------------------------------------------------------

    def _add_matrix(self, i, ei, j, ej, K, rows, cols, vals, b) -> None:
        gi = self.dof_maps[i].l2g[ei]
        gj = self.dof_maps[j].l2g[ej]
        ri = gi >= 0
        cj = gj >= 0
        rr, cc = np.meshgrid(gi[ri] + self.offsets[i], gj[cj] + self.offsets[j], indexing="ij")
        rows.append(rr.ravel())
        cols.append(cc.ravel())
        vals.append(K[np.ix_(ri, cj)].ravel())
        if not np.all(cj):
            lift = self.dof_maps[j].lift[ej][~cj]
            b[gi[ri] + self.offsets[i]] -= K[np.ix_(ri, ~cj)] @ lift

    def _add_vector(self, i, ei, F, b) -> None:
        gi = self.dof_maps[i].l2g[ei]
        ri = gi >= 0
        b[gi[ri] + self.offsets[i]] += F[ri]

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(self) -> tuple[csr_matrix, NDArray[np.float64]]:
        """Assemble the global matrix and right-hand side (essential values lifted)."""
        wf = self.wf
        rows, cols, vals = [], [], []
        b = np.zeros(self.ndof)

        breaks = self.union_breakpoints()
        mids = 0.5 * (breaks[:-1] + breaks[1:])
        owners = [s.mesh.find_elements(mids) for s in self.spaces]
        ext_owners = [e.mesh.find_elements(mids) for e in self.ext]

        for k in range(len(mids)):
            a, c = breaks[k], breaks[k + 1]
            elems = [int(o[k]) for o in owners]
            ext_elems = [int(o[k]) for o in ext_owners]
            orders = [s.get_element_order(e)[0] for s, e in zip(self.spaces, elems)]
            ext_orders = [e.get_element_order(eid)[0] for e, eid in zip(self.ext, ext_elems)]
            marker = self.spaces[0].mesh.elements[elems[0]].marker
            quad = {}

            def rule(order):
                n = points_for_order(order)
                if n not in quad:
                    t, w = gauss_legendre(n)
                    x = a + 0.5 * (t + 1.0) * (c - a)
                    quad[n] = (x, w * 0.5 * (c - a), self._ext_functions(ext_elems, x))
                return quad[n]

            for form in wf.mfvol:
                if form.area is not None and form.area != marker:
                    continue
                i, j = form.i, form.j
                x, wt, ext = rule(form.ord(orders[j], orders[i], ext_orders))
                u = self._shape_functions(j, elems[j], x)
                v = self._shape_functions(i, elems[i], x)
                K = form.value(wt, u, v, Geom(x, marker, wf.current_time), ext)
                self._add_matrix(i, elems[i], j, elems[j], K, rows, cols, vals, b)

            for form in wf.vfvol:
                if form.area is not None and form.area != marker:
                    continue
                i = form.i
                x, wt, ext = rule(form.ord(orders[i], ext_orders))
                v = self._shape_functions(i, elems[i], x)
                F = form.value(wt, v, Geom(x, marker, wf.current_time), ext)
                self._add_vector(i, elems[i], F, b)

        self._assemble_surface(rows, cols, vals, b)

        if rows:
            A = coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(self.ndof, self.ndof),
            ).tocsr()
        else:
            A = csr_matrix((self.ndof, self.ndof))
        log.debug(f"Assembled {self.ndof} DOFs over {len(mids)} union elements")
        return A, b

    def _boundary_point(self, name: str):
        """Coordinate and side of a named boundary point."""
        mesh = self.spaces[0].mesh
        for (axis, side), bname in mesh.boundary_names.items():
            if bname == name:
                x = mesh.domain_hi if side else mesh.domain_lo
                return np.array([x[0]]), side
        return None, None

    def _assemble_surface(self, rows, cols, vals, b) -> None:
        wf = self.wf
        if not (wf.mfsurf or wf.vfsurf):
            return
        wt = np.ones(1)
        for form in list(wf.mfsurf) + list(wf.vfsurf):
            x, side = self._boundary_point(form.boundary)
            if x is None:
                log.warning(f"Boundary {form.boundary!r} not found, surface form skipped")
                continue
            elems = [int(s.mesh.active_ids()[-1 if side else 0]) for s in self.spaces]
            ext_elems = [int(e.mesh.active_ids()[-1 if side else 0]) for e in self.ext]
            marker = self.spaces[0].mesh.elements[elems[0]].marker
            e = Geom(x, marker, wf.current_time)
            ext = self._ext_functions(ext_elems, x)
            i = form.i
            v = self._shape_functions(i, elems[i], x)
            if isinstance(form, MatrixFormSurf):
                j = form.j
                u = self._shape_functions(j, elems[j], x)
                K = form.value(wt, u, v, e, ext)
                self._add_matrix(i, elems[i], j, elems[j], K, rows, cols, vals, b)
            else:
                self._add_vector(i, elems[i], form.value(wt, v, e, ext), b)

    def vector_to_solutions(self, vec: NDArray[np.float64]) -> list[Solution]:
        return [
            Solution.from_vector(space, vec, dof_map, int(offset))
            for space, dof_map, offset in zip(self.spaces, self.dof_maps, self.offsets[:-1])
        ]
