"""Electrostatic potential across two dielectrics.

    -(eps u')' = rho   on (0, length)
    u = voltage on the stator, u = 0 on the outer boundary

The permittivity jumps from eps_1 to eps_2 at ``interface``; the space
charge rho is a Gaussian of amplitude ``charge`` centred at ``charge_center``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..datastructures import AdaptParameters
from ..forms import WeakForm, diffusion_form, load_form
from ..mesh import Mesh, line_mesh
from ..space import EssentialBC, Space
from .base import Problem


@dataclass
class ElectrostaticsProblem(Problem):
    name: str = "electrostatics"
    field_names: list[str] = field(default_factory=lambda: ["potential"])

    eps_1: float = 1.0
    eps_2: float = 10.0
    voltage: float = 50.0
    length: float = 1.0
    interface: float = 0.4
    n_elem: tuple[int, int] = (2, 3)
    p_init: int = 2
    charge: float = 2.0e4
    charge_center: float = 0.7
    charge_width: float = 0.03

    def initial_mesh(self) -> Mesh:
        return line_mesh(
            [0.0, self.interface, self.length],
            list(self.n_elem),
            materials=["Material_1", "Material_2"],
            boundary_names=("stator", "outer"),
        )

    def create_spaces(self, params: AdaptParameters) -> list[Space]:
        bcs = [EssentialBC("outer", 0.0), EssentialBC("stator", self.voltage)]
        return [Space(self.refined_initial_mesh(), p_init=self.p_init, bcs=bcs)]

    def charge_density(self, x, t=0.0):
        return self.charge * np.exp(-(((x - self.charge_center) / self.charge_width) ** 2))

    def weak_form(self) -> WeakForm:
        wf = WeakForm(neq=1)
        wf.add_matrix_form(diffusion_form(0, 0, self.eps_1, area="Material_1"))
        wf.add_matrix_form(diffusion_form(0, 0, self.eps_2, area="Material_2"))
        if self.charge != 0.0:
            wf.add_vector_form(load_form(0, self.charge_density, data_order=12))
        return wf
