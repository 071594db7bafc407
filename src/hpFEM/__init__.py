"""hpFEM package for automatic hp-adaptivity.

This package drives the hp-adaptive solution of linear boundary-value
problems: reference spaces, solve, projection, error estimation,
projection-based candidate selection and refinement of 1D and 2D box meshes.

Main components:
- Mesh, Space, Solution: element tree, per-element degrees, FE functions
- WeakForm, DiscreteProblem, LinearProblem: 1D assembly and solve
- calc_err_est, ProjBasedSelector: error estimate and refinement selection
- Adapt, HPAdaptivity: one refinement pass and the adaptivity loop
"""

from .amr import Adapt, AdaptState, HPAdaptivity, mark_elements
from .assembly import DiscreteProblem
from .datastructures import (
    MAX_ORDER,
    SPLIT_ISO,
    SPLIT_NONE,
    SPLIT_X,
    SPLIT_Y,
    AdaptParameters,
    AdaptResult,
    Candidate,
    CandList,
    ConvergenceHistory,
    ErrorCombination,
    ErrorEstimate,
    MarkingStrategy,
    StopReason,
)
from .error import calc_err_est, calc_err_exact
from .exceptions import ConfigurationError, FatalSolverFailure, HPError
from .forms import WeakForm
from .mesh import Mesh, line_mesh, rect_mesh
from .output import ConvergenceGraph, plot_convergence, save_solution_vtk
from .selectors import ProjBasedSelector
from .solution import Solution
from .solvers import LinearProblem, project_global, solve_linear
from .space import EssentialBC, Space, construct_refined_spaces, get_num_dofs

__all__ = [
    # Mesh and spaces
    "Mesh",
    "line_mesh",
    "rect_mesh",
    "Space",
    "EssentialBC",
    "Solution",
    "construct_refined_spaces",
    "get_num_dofs",
    "SPLIT_NONE",
    "SPLIT_ISO",
    "SPLIT_X",
    "SPLIT_Y",
    "MAX_ORDER",
    # Forms and solvers
    "WeakForm",
    "DiscreteProblem",
    "LinearProblem",
    "solve_linear",
    "project_global",
    # Adaptivity
    "calc_err_est",
    "calc_err_exact",
    "ProjBasedSelector",
    "mark_elements",
    "Adapt",
    "AdaptState",
    "HPAdaptivity",
    # Data structures
    "AdaptParameters",
    "AdaptResult",
    "Candidate",
    "CandList",
    "ConvergenceHistory",
    "ErrorCombination",
    "ErrorEstimate",
    "MarkingStrategy",
    "StopReason",
    # Output
    "ConvergenceGraph",
    "save_solution_vtk",
    "plot_convergence",
    # Errors
    "HPError",
    "FatalSolverFailure",
    "ConfigurationError",
]
