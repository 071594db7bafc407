"""Ready-made problems for the hp-adaptivity loop."""

from .base import Problem
from .elasticity import ElasticityProblem
from .electrostatics import ElectrostaticsProblem
from .heat import HeatProblem

PROBLEMS = {
    "electrostatics": ElectrostaticsProblem,
    "elasticity": ElasticityProblem,
    "heat": HeatProblem,
}

__all__ = [
    "Problem",
    "ElectrostaticsProblem",
    "ElasticityProblem",
    "HeatProblem",
    "PROBLEMS",
]
