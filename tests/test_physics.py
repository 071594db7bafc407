"""End-to-end adaptivity runs of the bundled problems."""

import numpy as np
import pytest

from hpFEM.datastructures import AdaptParameters, StopReason
from hpFEM.output import ConvergenceGraph
from hpFEM.physics import PROBLEMS, ElasticityProblem, ElectrostaticsProblem, HeatProblem
from hpFEM.solution import Solution
from hpFEM.solvers import LinearProblem


@pytest.fixture
def params():
    return AdaptParameters(
        threshold=0.3,
        cand_list="HP_ISO",
        err_stop=1.0,
        ndof_stop=2000,
        max_iterations=30,
    )


class TestElectrostatics:
    """Two dielectrics with a concentrated space charge."""

    def test_converges_below_tolerance(self, params):
        result = ElectrostaticsProblem().run(params)
        history = result.history
        assert result.done
        assert result.stop_reason == StopReason.TOLERANCE
        assert result.final_error < params.err_stop
        assert history.err_est_rel[-1] < history.err_est_rel[0]
        assert np.all(np.diff(history.ndof_coarse) >= 0)
        assert len(history) == result.iterations

    def test_boundary_values(self, params):
        params.max_iterations = 2
        result = ElectrostaticsProblem().run(params)
        (ref,) = result.ref_slns
        assert np.allclose(ref(np.array([0.0, 1.0])), [50.0, 0.0])
        (sln,) = result.slns
        assert np.allclose(sln(np.array([0.0, 1.0])), [50.0, 0.0])

    def test_refinement_near_charge(self, params):
        params.max_iterations = 4
        result = ElectrostaticsProblem().run(params)
        mesh = result.spaces[0].mesh
        ids, lo, hi = mesh.active_bounds()
        sizes = (hi - lo)[:, 0]
        near = (lo[:, 0] <= 0.7) & (hi[:, 0] >= 0.7)
        orders = np.array([result.spaces[0].get_element_order(e)[0] for e in ids])
        # the element holding the charge peak is refined in h or p
        assert np.any(sizes[near] < 0.2) or np.any(orders[near] > 2)

    def test_callback(self, params):
        params.max_iterations = 2
        steps = []
        ElectrostaticsProblem().run(params, callback=lambda ctrl: steps.append(ctrl.iteration))
        assert steps[0] == 1


class TestElasticity:
    """Coupled two-component system."""

    def test_multimesh(self, params):
        params.max_iterations = 4
        result = ElasticityProblem().run(params)
        assert result.spaces[0].mesh is not result.spaces[1].mesh
        for ref in result.ref_slns:
            assert np.isclose(ref(np.array([0.0]))[0], 0.0)
        assert len(result.history.err_est_components[0]) == 2

    def test_single_mesh(self, params):
        params.max_iterations = 3
        params.multimesh = False
        result = ElasticityProblem().run(params)
        assert result.spaces[0].mesh is result.spaces[1].mesh

    def test_gravity_bends_second_component(self, params):
        params.max_iterations = 2
        result = ElasticityProblem().run(params)
        u1, u2 = result.ref_slns
        tip = np.array([1.0])
        assert u2(tip)[0] < 0.0
        assert u1(tip)[0] < 0.0


class TestHeat:
    """Time stepping with adaptivity in every step."""

    def test_two_steps(self, params):
        problem = HeatProblem(n_steps=2)
        result = problem.run(params)
        assert len(problem.results) == 2
        assert result is problem.results[-1]
        assert np.isclose(problem.current_time, 600.0)
        (ref,) = result.ref_slns
        assert np.isclose(ref(np.array([0.0]))[0], 10.0)

    def test_weak_form_without_previous_level(self):
        """At t = 0 the uniform initial temperature is the steady state."""
        problem = HeatProblem()
        (space,) = problem.create_spaces(AdaptParameters(cand_list="HP_ISO"))
        (sln,) = LinearProblem(problem.weak_form()).solve([space])
        x = np.linspace(0.0, problem.length, 9)
        assert np.allclose(sln(x), problem.temp_init)

    def test_uniform_previous_level_matches_default(self):
        problem = HeatProblem()
        problem.current_time = problem.time_step
        (space,) = problem.create_spaces(AdaptParameters(cand_list="HP_ISO"))
        prev = Solution.from_function(space, lambda x: np.full(len(x), problem.temp_init))
        (with_prev,) = LinearProblem(problem.weak_form(prev)).solve([space])
        (default,) = LinearProblem(problem.weak_form()).solve([space])
        x = np.linspace(0.0, problem.length, 9)
        assert np.allclose(with_prev(x), default(x))

    def test_exterior_temperature(self):
        problem = HeatProblem()
        assert np.isclose(problem.temp_ext(0.0), 10.0)
        assert np.isclose(problem.temp_ext(problem.t_final / 4), 20.0)

    def test_per_step_output(self, params, tmp_path):
        params.output_dir = str(tmp_path)
        HeatProblem(n_steps=2).run(params)
        assert (tmp_path / "step_0001" / "conv_dof_est.dat").exists()
        assert (tmp_path / "step_0002" / "conv_dof_est.dat").exists()

    def test_every_step_keeps_its_log(self, params, tmp_path):
        params.output_dir = str(tmp_path)
        problem = HeatProblem(n_steps=2)
        problem.run(params, graph=None)
        graphs = ConvergenceGraph.collect(tmp_path)
        assert [g.output_dir.name for g in graphs] == ["step_0001", "step_0002"]
        for graph, result in zip(graphs, problem.results):
            df_dof, _ = graph.read()
            assert list(df_dof["ndof"]) == result.history.ndof_coarse


def test_registry():
    assert set(PROBLEMS) == {"electrostatics", "elasticity", "heat"}
