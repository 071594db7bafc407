"""Two displacement components of a bar on an elastic foundation.

    -(lambda + 2 mu) u1'' + k (u1 - u2) = 0
    -mu u2''              + k (u2 - u1) = rho * g1

clamped (u1 = u2 = 0) at the left end, traction free at the right end.
Own weight loads the second component only; the foundation stiffness k
couples the two. Each component has its own initial degree and, in
multimesh mode, its own mesh.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..datastructures import AdaptParameters
from ..forms import WeakForm, diffusion_form, load_form, mass_form
from ..mesh import Mesh, line_mesh
from ..space import EssentialBC, Space
from .base import Problem


@dataclass
class ElasticityProblem(Problem):
    name: str = "elasticity"
    field_names: list[str] = field(default_factory=lambda: ["u1", "u2"])

    E: float = 200e9  # Young modulus
    nu: float = 0.3  # Poisson ratio
    rho: float = 8000.0  # density
    g1: float = -9.81  # gravitational acceleration
    k_foundation: float = 3.0e13
    length: float = 1.0
    n_elem: int = 4
    p_init_u1: int = 2
    p_init_u2: int = 2

    @property
    def lame_lambda(self) -> float:
        return (self.E * self.nu) / ((1 + self.nu) * (1 - 2 * self.nu))

    @property
    def lame_mu(self) -> float:
        return self.E / (2 * (1 + self.nu))

    def initial_mesh(self) -> Mesh:
        return line_mesh(self.length, self.n_elem, boundary_names=("left", "right"))

    def create_spaces(self, params: AdaptParameters) -> list[Space]:
        u1_mesh = self.refined_initial_mesh()
        u2_mesh = u1_mesh.copy() if params.multimesh else u1_mesh
        bc = EssentialBC("left", 0.0)
        return [
            Space(u1_mesh, p_init=self.p_init_u1, bcs=[bc]),
            Space(u2_mesh, p_init=self.p_init_u2, bcs=[bc]),
        ]

    def weak_form(self) -> WeakForm:
        k = self.k_foundation
        wf = WeakForm(neq=2)
        wf.add_matrix_form(diffusion_form(0, 0, self.lame_lambda + 2 * self.lame_mu))
        wf.add_matrix_form(mass_form(0, 0, k))
        wf.add_matrix_form(mass_form(0, 1, -k))
        wf.add_matrix_form(mass_form(1, 0, -k))
        wf.add_matrix_form(diffusion_form(1, 1, self.lame_mu))
        wf.add_matrix_form(mass_form(1, 1, k))
        wf.add_vector_form(load_form(1, self.rho * self.g1))
        return wf
