from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..amr import HPAdaptivity
from ..datastructures import SPLIT_ISO, AdaptParameters, AdaptResult
from ..forms import WeakForm
from ..mesh import Mesh
from ..output import ConvergenceGraph
from ..solvers import LinearProblem
from ..space import Space

log = logging.getLogger(__name__)


@dataclass
class Problem:
    """Stationary linear problem solved by the hp-adaptivity loop.

    Subclasses provide the initial mesh, the spaces and the weak form.
    """

    name: str = ""
    init_ref_num: int = 0
    field_names: list[str] = field(default_factory=lambda: ["u"])

    def initial_mesh(self) -> Mesh:
        raise NotImplementedError

    def create_spaces(self, params: AdaptParameters) -> list[Space]:
        raise NotImplementedError

    def weak_form(self) -> WeakForm:
        raise NotImplementedError

    def refined_initial_mesh(self) -> Mesh:
        mesh = self.initial_mesh()
        for _ in range(self.init_ref_num):
            mesh.refine_all_elements(SPLIT_ISO)
        return mesh

    def run(
        self,
        params: AdaptParameters,
        graph: ConvergenceGraph | None = None,
        callback=None,
    ) -> AdaptResult:
        spaces = self.create_spaces(params)
        solver = LinearProblem(self.weak_form())
        log.info(f"{self.name}: {len(spaces)} field(s), initial mesh {spaces[0].mesh.noelms} elements")
        return HPAdaptivity(spaces, solver, params, graph=graph, callback=callback).run()
