"""Transient heat conduction, implicit Euler in time.

    heatcap * rho * (u - u_prev) / tau - lambda u'' = 0
    u = temp_init on the ground, lambda u' = alpha (T_ext(t) - u) in the air

with exterior temperature T_ext(t) = temp_init + 10 sin(2 pi t / t_final).
Every time step runs the hp-adaptivity loop; its reference solution becomes
the previous time level of the next step.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from ..amr import HPAdaptivity
from ..datastructures import AdaptParameters, AdaptResult
from ..forms import (
    MatrixFormVol,
    VectorFormVol,
    WeakForm,
    int_F_v,
    int_grad_u_grad_v,
    int_u_v,
    load_form,
    surface_matrix_form,
    surface_vector_form,
)
from ..mesh import Mesh, line_mesh
from ..output import ConvergenceGraph
from ..solution import Solution
from ..solvers import LinearProblem
from ..space import EssentialBC, Space
from .base import Problem

log = logging.getLogger(__name__)


@dataclass
class HeatProblem(Problem):
    name: str = "heat"
    field_names: list[str] = field(default_factory=lambda: ["temperature"])

    alpha: float = 10.0  # heat transfer coefficient on the air boundary
    lambda_: float = 1e2  # thermal conductivity
    heatcap: float = 1e2  # heat capacity
    rho: float = 3000.0  # density
    temp_init: float = 10.0
    time_step: float = 300.0
    t_final: float = 86400.0
    n_steps: int | None = None  # defaults to t_final / time_step
    unref_freq: int = 1  # reset to the initial mesh every unref_freq steps
    length: float = 10.0
    n_elem: int = 4
    p_init: int = 2

    def __post_init__(self) -> None:
        self.current_time = 0.0
        self.results: list[AdaptResult] = []

    def temp_ext(self, t: float) -> float:
        return self.temp_init + 10.0 * np.sin(2 * np.pi * t / self.t_final)

    def initial_mesh(self) -> Mesh:
        return line_mesh(self.length, self.n_elem, boundary_names=("ground", "air"))

    def create_spaces(self, params: AdaptParameters) -> list[Space]:
        bcs = [EssentialBC("ground", self.temp_init)]
        return [Space(self.refined_initial_mesh(), p_init=self.p_init, bcs=bcs)]

    def weak_form(self, prev: Solution | None = None) -> WeakForm:
        """Implicit Euler step; without prev the previous level is uniformly temp_init."""
        c = self.heatcap * self.rho / self.time_step
        wf = WeakForm(neq=1)

        def matrix_value(wt, u, v, e, ext):
            return c * int_u_v(wt, u, v) + self.lambda_ * int_grad_u_grad_v(wt, u, v)

        def vector_value(wt, v, e, ext):
            return c * int_F_v(wt, ext[0].val, v)

        def vector_ord(v_order, ext_orders):
            return v_order + ext_orders[0]

        wf.add_matrix_form(MatrixFormVol(0, 0, matrix_value))
        if prev is None:
            # uniform initial temperature as the previous time level
            wf.add_vector_form(load_form(0, c * self.temp_init))
        else:
            wf.add_vector_form(VectorFormVol(0, vector_value, vector_ord))
            wf.set_ext([prev])
        wf.add_matrix_form_surf(surface_matrix_form(0, self.alpha, "air"))
        wf.add_vector_form_surf(
            surface_vector_form(0, lambda x, t: self.alpha * self.temp_ext(t), "air")
        )
        wf.current_time = self.current_time
        return wf

    def step(
        self,
        spaces: list[Space],
        prev: Solution,
        params: AdaptParameters,
        graph: ConvergenceGraph | None = None,
    ) -> AdaptResult:
        """Advance one time step with hp-adaptivity."""
        self.current_time += self.time_step
        solver = LinearProblem(self.weak_form(prev))
        return HPAdaptivity(spaces, solver, params, graph=graph).run()

    def run(self, params: AdaptParameters, graph: ConvergenceGraph | None = None, callback=None) -> AdaptResult:
        """Run all time steps and return the result of the last one.

        Results of every step are kept in ``self.results``.
        """
        n_steps = self.n_steps or int(round(self.t_final / self.time_step))
        self.current_time = 0.0
        self.results = []
        spaces = self.create_spaces(params)
        prev = Solution.from_function(spaces[0], lambda x: np.full(len(x), self.temp_init))
        for ts in range(1, n_steps + 1):
            if ts > 1 and self.unref_freq > 0 and (ts - 1) % self.unref_freq == 0:
                spaces = self.create_spaces(params)
            step_params = params
            if params.output_dir is not None:
                step_params = dataclasses.replace(
                    params, output_dir=str(Path(params.output_dir) / f"step_{ts:04d}")
                )
            result = self.step(spaces, prev, step_params, graph=graph)
            prev = result.ref_slns[0]
            self.results.append(result)
            log.info(
                f"Time step {ts}/{n_steps}, t = {self.current_time:.1f} s, "
                f"T_ext = {self.temp_ext(self.current_time):.3f}, err_est_rel = {result.final_error:.4f}%"
            )
            if callback is not None:
                callback(self, result)
        return self.results[-1]
