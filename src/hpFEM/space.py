"""H1 discretizations: polynomial degrees on a mesh plus essential boundary conditions."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from .datastructures import MAX_ORDER, SPLIT_ISO
from .mesh import Mesh

log = logging.getLogger(__name__)


@dataclass
class EssentialBC:
    """Prescribed value on the boundary segments named in ``markers``."""

    markers: tuple[str, ...] | str
    value: float | Callable[[NDArray[np.float64]], NDArray[np.float64]] = 0.0

    def __post_init__(self) -> None:
        if isinstance(self.markers, str):
            self.markers = (self.markers,)
        self.markers = tuple(self.markers)

    def evaluate(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        x = np.atleast_2d(np.asarray(x, dtype=np.float64))
        if callable(self.value):
            return np.asarray(self.value(x), dtype=np.float64).reshape(len(x))
        return np.full(len(x), float(self.value))


@dataclass
class DofMap:
    """Global numbering of a 1D space.

    ``l2g[eid]`` maps local shape functions (left vertex, right vertex,
    bubbles) to global DOFs, -1 marking constrained vertex functions whose
    values are stored in ``lift[eid]``.
    """

    element_ids: list[int]
    l2g: dict[int, NDArray[np.int64]]
    lift: dict[int, NDArray[np.float64]]
    ndof: int


@dataclass
class Space:
    """Continuous H1 space on a mesh with per-element polynomial degrees.

    Elements without an explicit degree inherit the degree of their nearest
    ancestor, so refinements made by another space sharing the mesh (single
    mesh mode) or forced by mesh regularity need no bookkeeping here.

    Parameters
    ----------
    mesh : Mesh
        Mesh of this field (may be shared with other spaces)
    p_init : int or tuple of int
        Initial degree of all elements (per axis if a tuple)
    bcs : list of EssentialBC
        Essential boundary conditions
    """

    mesh: Mesh
    p_init: int | tuple[int, ...] = 1
    bcs: list[EssentialBC] = field(default_factory=list)
    orders: dict[int, tuple[int, ...]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        p = self.p_init
        self.p_init = tuple(int(v) for v in p) if np.ndim(p) else (int(p),) * self.mesh.dim
        if len(self.p_init) != self.mesh.dim or min(self.p_init) < 1:
            raise ValueError(f"Invalid initial degree {self.p_init} for a {self.mesh.dim}D mesh")
        self._bc_by_marker = {m: bc for bc in self.bcs for m in bc.markers}

    @property
    def dim(self) -> int:
        return self.mesh.dim

    def get_element_order(self, eid: int) -> tuple[int, ...]:
        while eid >= 0:
            if eid in self.orders:
                return self.orders[eid]
            eid = self.mesh.elements[eid].parent
        return self.p_init

    def set_element_order(self, eid: int, order) -> None:
        if np.isscalar(order):
            order = (int(order),) * self.dim
        order = tuple(min(max(int(p), 1), MAX_ORDER) for p in order)
        self.orders[eid] = order

    def set_uniform_order(self, order) -> None:
        for eid in self.mesh.active_ids():
            self.set_element_order(eid, order)

    def copy(self, mesh: Mesh | None = None) -> Space:
        """Copy with the same degrees, optionally on another mesh with the same ids."""
        return Space(
            mesh=self.mesh if mesh is None else mesh,
            p_init=self.p_init,
            bcs=list(self.bcs),
            orders=dict(self.orders),
        )

    def essential_bc(self, name: str) -> EssentialBC | None:
        return self._bc_by_marker.get(name)

    def _face_is_essential(self, axis: int, side: int) -> bool:
        return self.mesh.boundary_names.get((axis, side)) in self._bc_by_marker

    # ------------------------------------------------------------------
    # DOF counting
    # ------------------------------------------------------------------

    def get_num_dofs(self) -> int:
        """Number of unconstrained DOFs (vertex + edge + bubble functions)."""
        if self.dim == 1:
            return self.dof_map().ndof
        if self.dim == 2:
            return self._count_dofs_2d()
        raise NotImplementedError(f"{self.dim}D spaces are not supported")

    def dof_map(self) -> DofMap:
        """Assign global DOFs of a 1D space: vertices left to right, then bubbles."""
        if self.dim != 1:
            raise NotImplementedError("Global DOF numbering is only available in 1D")
        mesh = self.mesh
        ids = mesh.active_ids()
        xv = mesh.vertices()
        n_vert = len(xv)

        vertex_dof = np.arange(n_vert, dtype=np.int64)
        vertex_val = np.zeros(n_vert)
        for vertex, side in ((0, 0), (n_vert - 1, 1)):
            bc = self.essential_bc(mesh.boundary_names.get((0, side), ""))
            if bc is not None:
                vertex_dof[vertex] = -1
                vertex_val[vertex] = bc.evaluate(xv[vertex : vertex + 1])[0]
        free = vertex_dof >= 0
        vertex_dof[free] = np.arange(np.count_nonzero(free))
        ndof = int(np.count_nonzero(free))

        l2g, lift = {}, {}
        for k, eid in enumerate(ids):
            p = self.get_element_order(eid)[0]
            dofs = np.empty(p + 1, dtype=np.int64)
            dofs[0], dofs[1] = vertex_dof[k], vertex_dof[k + 1]
            dofs[2:] = np.arange(ndof, ndof + p - 1)
            ndof += p - 1
            values = np.zeros(p + 1)
            values[0] = vertex_val[k] if dofs[0] < 0 else 0.0
            values[1] = vertex_val[k + 1] if dofs[1] < 0 else 0.0
            l2g[eid] = dofs
            lift[eid] = values
        return DofMap(element_ids=ids, l2g=l2g, lift=lift, ndof=ndof)

    def _count_dofs_2d(self) -> int:
        """Count DOFs of a 2D space with hanging nodes.

        Edges lying inside a longer edge are constrained and carry no DOFs;
        the degree of an unconstrained edge is the minimum tangential degree
        of all elements touching it. Hanging vertices carry no DOFs.
        """
        mesh = self.mesh
        ids, lo, hi = mesh.active_bounds()
        orders = np.array([self.get_element_order(e) for e in ids], dtype=np.int64).reshape(-1, 2)
        ndof = int(np.sum((orders[:, 0] - 1) * (orders[:, 1] - 1)))
        tol = mesh.tol

        # Edges grouped by (normal axis, coordinate): segment -> minimal tangential degree
        groups: dict[tuple[int, float], dict[tuple[float, float], int]] = defaultdict(dict)
        for k in range(len(ids)):
            for axis in range(2):
                t = 1 - axis
                for const in (lo[k, axis], hi[k, axis]):
                    key = (axis, float(const))
                    seg = (float(lo[k, t]), float(hi[k, t]))
                    p = int(orders[k, t])
                    groups[key][seg] = min(groups[key].get(seg, p), p)

        def essential(axis: int, const: float) -> bool:
            if abs(const - mesh.domain_lo[axis]) <= tol:
                return self._face_is_essential(axis, 0)
            if abs(const - mesh.domain_hi[axis]) <= tol:
                return self._face_is_essential(axis, 1)
            return False

        for (axis, const), segs in groups.items():
            if essential(axis, const):
                continue
            for (a, b), p in segs.items():
                container = [
                    (c, d) for (c, d) in segs if c <= a + tol and b <= d + tol and (d - c) > (b - a) + tol
                ]
                if container:
                    continue
                p_edge = min(
                    [p] + [q for (c, d), q in segs.items() if a - tol <= c and d <= b + tol]
                )
                ndof += p_edge - 1

        corners = {
            (float(x), float(y))
            for k in range(len(ids))
            for x in (lo[k, 0], hi[k, 0])
            for y in (lo[k, 1], hi[k, 1])
        }
        for x, y in corners:
            if essential(0, x) or essential(1, y):
                continue
            hanging = any(
                a + tol < y < b - tol for (a, b) in groups.get((0, x), {})
            ) or any(a + tol < x < b - tol for (a, b) in groups.get((1, y), {}))
            if not hanging:
                ndof += 1
        return ndof


def construct_refined_spaces(spaces: list[Space], order_increase: int = 1) -> list[Space]:
    """Reference spaces: every element split isotropically, degrees raised.

    Spaces sharing a mesh get refined copies sharing one refined mesh.
    """
    refined_meshes: dict[int, Mesh] = {}
    ref_spaces = []
    for space in spaces:
        key = id(space.mesh)
        if key not in refined_meshes:
            ref_mesh = space.mesh.copy()
            ref_mesh.refine_all_elements(SPLIT_ISO)
            refined_meshes[key] = ref_mesh
        ref_mesh = refined_meshes[key]
        ref_space = Space(mesh=ref_mesh, p_init=space.p_init, bcs=list(space.bcs))
        for eid in space.mesh.active_ids():
            order = space.get_element_order(eid)
            for son in ref_mesh.elements[eid].sons:
                ref_space.set_element_order(son, tuple(p + order_increase for p in order))
        ref_spaces.append(ref_space)
    return ref_spaces


def get_num_dofs(spaces) -> int:
    """Total number of DOFs of one space or a list of spaces."""
    if isinstance(spaces, Space):
        return spaces.get_num_dofs()
    return sum(s.get_num_dofs() for s in spaces)
