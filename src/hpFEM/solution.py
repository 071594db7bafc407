from __future__ import annotations

from typing import Callable

import numpy as np
from numpy.typing import NDArray

from .basis import points_for_order, tensor_gauss, tensor_lobatto
from .space import DofMap, Space


class Solution:
    """Finite element function: Lobatto coefficients per active element.

    ``coeffs[eid]`` has shape ``tuple(p + 1 for p in order)`` for the degree
    tuple of element eid in ``space``. The solution stays tied to the space
    (and mesh) snapshot it was computed on.
    """

    def __init__(self, space: Space, coeffs: dict[int, NDArray[np.float64]]):
        self.space = space
        self.mesh = space.mesh
        self.coeffs = coeffs

    def __repr__(self) -> str:
        return f"Solution(dim={self.mesh.dim}, noelms={len(self.coeffs)})"

    @classmethod
    def zero(cls, space: Space) -> Solution:
        return cls(
            space,
            {
                eid: np.zeros(tuple(p + 1 for p in space.get_element_order(eid)))
                for eid in space.mesh.active_ids()
            },
        )

    @classmethod
    def from_vector(
        cls,
        space: Space,
        vec: NDArray[np.float64],
        dof_map: DofMap | None = None,
        offset: int = 0,
    ) -> Solution:
        """Build a 1D solution from a global coefficient vector."""
        dof_map = space.dof_map() if dof_map is None else dof_map
        coeffs = {}
        for eid in dof_map.element_ids:
            dofs = dof_map.l2g[eid]
            c = dof_map.lift[eid].copy()
            free = dofs >= 0
            c[free] = vec[offset + dofs[free]]
            coeffs[eid] = c
        return cls(space, coeffs)

    @classmethod
    def from_function(
        cls,
        space: Space,
        func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
    ) -> Solution:
        """Element-wise L2 projection of func (called with points of shape (N, dim))."""
        coeffs = {}
        for eid in space.mesh.active_ids():
            elem = space.mesh.elements[eid]
            order = space.get_element_order(eid)
            xi, w = tensor_gauss(points_for_order(2 * max(order) + 4), space.dim)
            phi, _ = tensor_lobatto(xi, order)
            f = np.asarray(func(elem.to_physical(xi)), dtype=np.float64).reshape(len(xi))
            M = phi.T @ (w[:, None] * phi)
            rhs = phi.T @ (w * f)
            coeffs[eid] = np.linalg.solve(M, rhs).reshape(tuple(p + 1 for p in order))
        return cls(space, coeffs)

    def copy(self) -> Solution:
        return Solution(self.space, {k: v.copy() for k, v in self.coeffs.items()})

    def get_element_order(self, eid: int) -> tuple[int, ...]:
        return tuple(n - 1 for n in self.coeffs[eid].shape)

    def eval_element(self, eid: int, xi: NDArray[np.float64]) -> tuple[NDArray, NDArray]:
        """Values (N,) and physical gradients (N, dim) on element eid at reference points xi."""
        c = self.coeffs[eid]
        phi, dphi = tensor_lobatto(xi, tuple(n - 1 for n in c.shape))
        scale = 2.0 / self.mesh.elements[eid].size
        flat = c.ravel()
        vals = phi @ flat
        grads = np.einsum("nbd,b->nd", dphi, flat) * scale
        return vals, grads

    def eval(self, x: NDArray[np.float64]) -> tuple[NDArray, NDArray]:
        """Values and gradients at physical points x (shape (N, dim), or (N,) in 1D)."""
        x = np.asarray(x, dtype=np.float64).reshape(-1, self.mesh.dim)
        owners = self.mesh.find_elements(x)
        vals = np.empty(len(x))
        grads = np.empty((len(x), self.mesh.dim))
        for eid in np.unique(owners):
            sel = owners == eid
            xi = self.mesh.elements[eid].to_reference(x[sel])
            vals[sel], grads[sel] = self.eval_element(int(eid), xi)
        return vals, grads

    def __call__(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.eval(x)[0]

    def norm(self, kind: str = "h1") -> float:
        """L2 or H1 norm."""
        total = 0.0
        for eid, c in self.coeffs.items():
            elem = self.mesh.elements[eid]
            xi, w = tensor_gauss(points_for_order(2 * (max(c.shape) - 1)), self.mesh.dim)
            vals, grads = self.eval_element(eid, xi)
            integrand = vals**2
            if kind == "h1":
                integrand = integrand + np.sum(grads**2, axis=1)
            total += np.prod(0.5 * elem.size) * np.sum(w * integrand)
        return float(np.sqrt(total))
