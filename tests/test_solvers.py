"""Tests for weak forms, assembly, linear solve and projection."""

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from hpFEM.assembly import DiscreteProblem
from hpFEM.exceptions import FatalSolverFailure
from hpFEM.forms import (
    WeakForm,
    diffusion_form,
    load_form,
    mass_form,
    surface_matrix_form,
    surface_vector_form,
)
from hpFEM.mesh import line_mesh, rect_mesh
from hpFEM.solution import Solution
from hpFEM.solvers import LinearProblem, project_global, solve_linear
from hpFEM.space import EssentialBC, Space, construct_refined_spaces


def poisson_form(f=1.0):
    wf = WeakForm(neq=1)
    wf.add_matrix_form(diffusion_form(0, 0))
    wf.add_vector_form(load_form(0, f))
    return wf


class TestLinearProblem:
    """Solving small 1D problems with known solutions."""

    def test_poisson_quadratic_exact(self):
        """-u'' = 1, u(0) = u(1) = 0 is reproduced exactly by p = 2."""
        space = Space(line_mesh(1.0, 3), p_init=2, bcs=[EssentialBC(("left", "right"))])
        (sln,) = LinearProblem(poisson_form()).solve([space])
        x = np.linspace(0.0, 1.0, 13)
        assert np.allclose(sln(x), 0.5 * x * (1.0 - x), atol=1e-12)

    def test_nonhomogeneous_dirichlet(self):
        bcs = [EssentialBC("left", 1.0), EssentialBC("right", 3.0)]
        space = Space(line_mesh(1.0, 4), p_init=1, bcs=bcs)
        (sln,) = LinearProblem(poisson_form(0.0)).solve([space])
        x = np.linspace(0.0, 1.0, 9)
        assert np.allclose(sln(x), 1.0 + 2.0 * x)

    def test_newton_boundary(self):
        """-u'' = 0, u(0) = 0, u'(1) = alpha (T - u(1)) gives u = alpha T / (1 + alpha) x."""
        alpha, temp = 1.0, 2.0
        wf = WeakForm(neq=1)
        wf.add_matrix_form(diffusion_form(0, 0))
        wf.add_matrix_form_surf(surface_matrix_form(0, alpha, "right"))
        wf.add_vector_form_surf(surface_vector_form(0, alpha * temp, "right"))
        space = Space(line_mesh(1.0, 2), p_init=2, bcs=[EssentialBC("left")])
        (sln,) = LinearProblem(wf).solve([space])
        assert np.isclose(sln(np.array([1.0]))[0], 1.0)

    def test_material_areas(self):
        """Piecewise permittivity: flux continuity across the interface."""
        mesh = line_mesh([0.0, 0.5, 1.0], [2, 2], materials=["m1", "m2"])
        wf = WeakForm(neq=1)
        wf.add_matrix_form(diffusion_form(0, 0, 1.0, area="m1"))
        wf.add_matrix_form(diffusion_form(0, 0, 3.0, area="m2"))
        bcs = [EssentialBC("left", 0.0), EssentialBC("right", 4.0)]
        (sln,) = LinearProblem(wf).solve([Space(mesh, p_init=1, bcs=bcs)])
        # u' = 6 on (0, 0.5) and 2 on (0.5, 1)
        assert np.isclose(sln(np.array([0.5]))[0], 3.0)

    def test_coupled_multimesh_system(self):
        """u - v coupling on two different meshes."""
        mesh = line_mesh(1.0, 2)
        other = mesh.copy()
        other.refine_element(1)
        wf = WeakForm(neq=2)
        wf.add_matrix_form(mass_form(0, 0))
        wf.add_matrix_form(mass_form(1, 1))
        wf.add_matrix_form(mass_form(1, 0, -1.0))
        wf.add_vector_form(load_form(0, 2.0))
        spaces = [Space(mesh, p_init=1), Space(other, p_init=2)]
        dp = DiscreteProblem(wf, spaces)
        assert len(dp.union_breakpoints()) == 4
        u, v = LinearProblem(wf).solve(spaces)
        x = np.linspace(0.0, 1.0, 7)
        assert np.allclose(u(x), 2.0)
        assert np.allclose(v(x), 2.0)

    def test_form_index_checked(self):
        wf = WeakForm(neq=1)
        with pytest.raises(ValueError):
            wf.add_matrix_form(diffusion_form(0, 1))

    def test_assembly_is_1d_only(self):
        space = Space(rect_mesh(0.0, 0.0, 1.0, 1.0, 1, 1), p_init=1)
        with pytest.raises(NotImplementedError):
            DiscreteProblem(poisson_form(), [space])


class TestSolverFailure:
    """Solver failures are fatal."""

    def test_singular_matrix(self):
        A = csr_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))
        with pytest.raises(FatalSolverFailure):
            solve_linear(A, np.ones(2))

    def test_pure_neumann_problem_is_singular(self):
        space = Space(line_mesh(1.0, 4), p_init=1)
        wf = WeakForm(neq=1)
        wf.add_matrix_form(diffusion_form(0, 0))
        with pytest.raises(FatalSolverFailure):
            LinearProblem(wf).solve([space])


class TestProjection:
    """Global orthogonal projection."""

    def test_idempotent(self):
        space = Space(line_mesh(1.0, 3), p_init=3, bcs=[EssentialBC(("left", "right"))])
        sln = Solution.from_function(space, lambda x: x[:, 0] ** 3 - x[:, 0])
        (once,) = project_global([space], [sln])
        (twice,) = project_global([space], [once])
        x = np.linspace(0.0, 1.0, 17)
        assert np.allclose(once(x), sln(x), atol=1e-12)
        assert np.allclose(twice(x), once(x), atol=1e-12)

    def test_reference_to_coarse(self):
        """A function representable on the coarse space survives the projection."""
        space = Space(line_mesh(1.0, 2), p_init=2)
        (ref_space,) = construct_refined_spaces([space])
        ref = Solution.from_function(ref_space, lambda x: x[:, 0] ** 2)
        (coarse,) = project_global([space], [ref])
        x = np.linspace(0.0, 1.0, 9)
        assert np.allclose(coarse(x), x**2, atol=1e-12)

    def test_l2_projection(self):
        space = Space(line_mesh(1.0, 2), p_init=1)
        (ref_space,) = construct_refined_spaces([space])
        ref = Solution.from_function(ref_space, lambda x: x[:, 0] ** 2)
        (h1,) = project_global([space], [ref], norm="h1")
        (l2,) = project_global([space], [ref], norm="l2")
        assert not np.allclose(h1.coeffs[0], l2.coeffs[0])
        with pytest.raises(ValueError):
            project_global([space], [ref], norm="hcurl")
