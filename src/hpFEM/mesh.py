from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from .datastructures import SPLIT_ISO, SPLIT_NONE, SPLIT_X, SPLIT_Y

# Default names of the faces of a box domain, keyed by (axis, side)
BOX_BOUNDARY_NAMES = {(0, 0): "left", (0, 1): "right", (1, 0): "bottom", (1, 1): "top"}


def split_axes(split: int, dim: int) -> tuple[int, ...]:
    """Axes halved by a split."""
    if split == SPLIT_NONE:
        return ()
    if split == SPLIT_ISO:
        return tuple(range(dim))
    if split == SPLIT_X:
        return (0,)
    if split == SPLIT_Y:
        if dim < 2:
            raise ValueError("SPLIT_Y needs a 2D mesh")
        return (1,)
    raise ValueError(f"Unknown split type: {split}")


def son_boxes(split: int, dim: int, lo=None, hi=None) -> list[tuple[NDArray, NDArray]]:
    """Boxes of the sons of [lo, hi] (default the reference box) for a split.

    Sons are ordered lexicographically over the halved axes, first axis slowest.
    """
    lo = -np.ones(dim) if lo is None else np.asarray(lo, dtype=np.float64)
    hi = np.ones(dim) if hi is None else np.asarray(hi, dtype=np.float64)
    axes = split_axes(split, dim)
    mid = 0.5 * (lo + hi)
    boxes = []
    for halves in itertools.product((0, 1), repeat=len(axes)):
        son_lo, son_hi = lo.copy(), hi.copy()
        for axis, half in zip(axes, halves):
            if half == 0:
                son_hi[axis] = mid[axis]
            else:
                son_lo[axis] = mid[axis]
        boxes.append((son_lo, son_hi))
    return boxes


@dataclass
class Element:
    """Axis-parallel box element of a refinement tree."""

    id: int
    lo: NDArray[np.float64]
    hi: NDArray[np.float64]
    level: NDArray[np.int64]  # number of halvings per axis
    parent: int = -1
    sons: list[int] = field(default_factory=list)
    split: int = SPLIT_NONE
    marker: str = ""

    @property
    def active(self) -> bool:
        return not self.sons

    @property
    def size(self) -> NDArray[np.float64]:
        return self.hi - self.lo

    @property
    def center(self) -> NDArray[np.float64]:
        return 0.5 * (self.lo + self.hi)

    def to_reference(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map physical points (N, dim) to reference coordinates in [-1, 1]^dim."""
        return 2.0 * (x - self.lo) / self.size - 1.0

    def to_physical(self, xi: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.lo + 0.5 * (xi + 1.0) * self.size


@dataclass
class Mesh:
    """Mesh of intervals (1D) or rectangles (2D) with a refinement tree.

    Element ids are stable: refinement appends sons and :meth:`copy` keeps ids,
    so an element of a coarse mesh is an ancestor of its counterparts in any
    refined copy.

    Attributes
    ----------
    dim : int
        Spatial dimension (1 or 2)
    elements : list of Element
        All elements ever created, active or not
    domain_lo, domain_hi : ndarray (dim,)
        Bounding box of the domain
    boundary_names : dict
        Boundary segment name for each (axis, side) of the bounding box
    """

    dim: int
    elements: list[Element]
    domain_lo: NDArray[np.float64]
    domain_hi: NDArray[np.float64]
    boundary_names: dict[tuple[int, int], str] = field(default_factory=dict)

    @property
    def noelms(self) -> int:
        """Number of active elements."""
        return sum(1 for e in self.elements if e.active)

    @property
    def tol(self) -> float:
        return 1e-12 * float(np.max(self.domain_hi - self.domain_lo))

    def active_ids(self) -> list[int]:
        """Active element ids; sorted by position in 1D, by id otherwise."""
        ids = [e.id for e in self.elements if e.active]
        if self.dim == 1:
            ids.sort(key=lambda i: self.elements[i].lo[0])
        return ids

    def active_bounds(self) -> tuple[NDArray[np.int64], NDArray, NDArray]:
        ids = np.array(self.active_ids(), dtype=np.int64)
        lo = np.array([self.elements[i].lo for i in ids]).reshape(-1, self.dim)
        hi = np.array([self.elements[i].hi for i in ids]).reshape(-1, self.dim)
        return ids, lo, hi

    def vertices(self) -> NDArray[np.float64]:
        """Sorted vertex coordinates of a 1D mesh."""
        if self.dim != 1:
            raise ValueError("vertices() is only defined for 1D meshes")
        ids = self.active_ids()
        return np.array([self.elements[ids[0]].lo[0]] + [self.elements[i].hi[0] for i in ids])

    def copy(self) -> Mesh:
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def refine_element(self, eid: int, split: int = SPLIT_ISO) -> list[int]:
        """Split an active element and return the ids of its sons."""
        elem = self.elements[eid]
        if not elem.active:
            raise ValueError(f"Element {eid} is not active")
        if split == SPLIT_NONE:
            return [eid]
        axes = split_axes(split, self.dim)
        sons = []
        for son_lo, son_hi in son_boxes(split, self.dim, elem.lo, elem.hi):
            level = elem.level.copy()
            level[list(axes)] += 1
            son = Element(
                id=len(self.elements),
                lo=son_lo,
                hi=son_hi,
                level=level,
                parent=eid,
                marker=elem.marker,
            )
            self.elements.append(son)
            sons.append(son.id)
        elem.sons = sons
        elem.split = split
        return sons

    def refine_all_elements(self, split: int = SPLIT_ISO) -> None:
        for eid in self.active_ids():
            self.refine_element(eid, split)

    def active_descendants(self, eid: int) -> list[int]:
        """Active elements inside element eid (eid itself if active)."""
        stack, out = [eid], []
        while stack:
            elem = self.elements[stack.pop()]
            if elem.active:
                out.append(elem.id)
            else:
                stack.extend(reversed(elem.sons))
        return out

    def ancestors(self, eid: int) -> list[int]:
        out = []
        parent = self.elements[eid].parent
        while parent >= 0:
            out.append(parent)
            parent = self.elements[parent].parent
        return out

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def neighbors(self, eid: int) -> list[tuple[int, int, int]]:
        """Active neighbours of an active element as (id, axis, side).

        A neighbour shares a part of positive measure of the face of eid
        normal to ``axis`` (side 0 = low face, 1 = high face).
        """
        elem = self.elements[eid]
        ids, lo, hi = self.active_bounds()
        tol = self.tol
        out = []
        for axis in range(self.dim):
            others = [b for b in range(self.dim) if b != axis]
            overlap = np.ones(len(ids), dtype=bool)
            for b in others:
                overlap &= (np.minimum(hi[:, b], elem.hi[b]) - np.maximum(lo[:, b], elem.lo[b])) > tol
            for side, (mine, theirs) in enumerate(((elem.lo, hi), (elem.hi, lo))):
                touching = np.abs(theirs[:, axis] - mine[axis]) <= tol
                for nid in ids[touching & overlap]:
                    if nid != eid:
                        out.append((int(nid), axis, side))
        return out

    def boundary_faces(self, eid: int) -> list[tuple[int, int, str]]:
        """Faces of eid on the domain boundary as (axis, side, name)."""
        elem = self.elements[eid]
        out = []
        for axis in range(self.dim):
            if abs(elem.lo[axis] - self.domain_lo[axis]) <= self.tol:
                out.append((axis, 0, self.boundary_names.get((axis, 0), "")))
            if abs(elem.hi[axis] - self.domain_hi[axis]) <= self.tol:
                out.append((axis, 1, self.boundary_names.get((axis, 1), "")))
        return out

    def hanging_node_level(self) -> int:
        """Largest refinement-level jump across any face (0 = conforming)."""
        worst = 0
        for eid in self.active_ids():
            elem = self.elements[eid]
            for nid, axis, _ in self.neighbors(eid):
                other = self.elements[nid]
                for b in range(self.dim):
                    if b != axis:
                        worst = max(worst, int(elem.level[b] - other.level[b]))
        return worst

    def enforce_regularity(self, max_level: int) -> list[int]:
        """Split neighbours until no face carries more than max_level hanging nodes.

        A neighbour that is too coarse along the face is halved along that
        direction only. Returns the ids of the elements split here.
        """
        if max_level < 0 or self.dim == 1:
            return []
        refined = []
        changed = True
        while changed:
            changed = False
            for eid in self.active_ids():
                elem = self.elements[eid]
                if not elem.active:
                    continue
                for nid, axis, _ in self.neighbors(eid):
                    other = self.elements[nid]
                    if not other.active:
                        continue
                    for b in range(self.dim):
                        if b != axis and elem.level[b] - other.level[b] > max_level:
                            self.refine_element(nid, SPLIT_X if b == 0 else SPLIT_Y)
                            refined.append(nid)
                            changed = True
                            break
        return refined

    def find_elements(self, x: NDArray[np.float64]) -> NDArray[np.int64]:
        """Active element containing each point of x (shape (N, dim) or (N,) in 1D)."""
        x = np.asarray(x, dtype=np.float64).reshape(-1, self.dim)
        ids, lo, hi = self.active_bounds()
        if self.dim == 1:
            pos = np.searchsorted(lo[:, 0], x[:, 0], side="right") - 1
            return ids[np.clip(pos, 0, len(ids) - 1)]
        out = np.full(len(x), -1, dtype=np.int64)
        tol = self.tol
        for k in range(len(ids)):
            inside = np.all((x >= lo[k] - tol) & (x <= hi[k] + tol), axis=1) & (out < 0)
            out[inside] = ids[k]
        if np.any(out < 0):
            raise ValueError("Points outside of the mesh")
        return out


def line_mesh(
    breakpoints,
    n_elem,
    materials=None,
    boundary_names: tuple[str, str] = ("left", "right"),
) -> Mesh:
    """Create a 1D mesh from segment breakpoints.

    Parameters
    ----------
    breakpoints : sequence of float
        Segment endpoints x_0 < x_1 < ... < x_m, or a single length L for [0, L]
    n_elem : int or sequence of int
        Elements per segment
    materials : sequence of str, optional
        Material marker of each segment
    boundary_names : (str, str)
        Names of the left and right boundary points
    """
    if np.isscalar(breakpoints):
        breakpoints = [0.0, float(breakpoints)]
    breakpoints = np.asarray(breakpoints, dtype=np.float64)
    n_seg = len(breakpoints) - 1
    if np.isscalar(n_elem):
        n_elem = [int(n_elem)] * n_seg
    if materials is None:
        materials = [""] * n_seg
    if len(n_elem) != n_seg or len(materials) != n_seg:
        raise ValueError("n_elem and materials need one entry per segment")

    elements = []
    for seg in range(n_seg):
        nodes = np.linspace(breakpoints[seg], breakpoints[seg + 1], n_elem[seg] + 1)
        for a, b in zip(nodes[:-1], nodes[1:]):
            elements.append(
                Element(
                    id=len(elements),
                    lo=np.array([a]),
                    hi=np.array([b]),
                    level=np.zeros(1, dtype=np.int64),
                    marker=materials[seg],
                )
            )
    return Mesh(
        dim=1,
        elements=elements,
        domain_lo=breakpoints[:1].copy(),
        domain_hi=breakpoints[-1:].copy(),
        boundary_names={(0, 0): boundary_names[0], (0, 1): boundary_names[1]},
    )


def rect_mesh(
    x0: float,
    y0: float,
    L1: float,
    L2: float,
    noelms1: int,
    noelms2: int,
    marker: str = "",
    boundary_names: dict[tuple[int, int], str] | None = None,
) -> Mesh:
    """Create a structured mesh of noelms1 x noelms2 rectangles on [x0, x0+L1] x [y0, y0+L2]."""
    xs = np.linspace(x0, x0 + L1, noelms1 + 1)
    ys = np.linspace(y0, y0 + L2, noelms2 + 1)
    elements = []
    for i in range(noelms1):
        for j in range(noelms2):
            elements.append(
                Element(
                    id=len(elements),
                    lo=np.array([xs[i], ys[j]]),
                    hi=np.array([xs[i + 1], ys[j + 1]]),
                    level=np.zeros(2, dtype=np.int64),
                    marker=marker,
                )
            )
    return Mesh(
        dim=2,
        elements=elements,
        domain_lo=np.array([x0, y0], dtype=np.float64),
        domain_hi=np.array([x0 + L1, y0 + L2], dtype=np.float64),
        boundary_names=dict(BOX_BOUNDARY_NAMES if boundary_names is None else boundary_names),
    )
