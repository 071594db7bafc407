"""Exceptions raised by the hp-adaptivity loop.

Only unrecoverable conditions are exceptions. Degenerate components and
elements without an improving candidate are handled where they are found.
"""


class HPError(Exception):
    """Base class for all errors raised by hpFEM."""


class FatalSolverFailure(HPError):
    """The linear solver could not produce a solution (singular or non-finite)."""


class ConfigurationError(HPError, ValueError):
    """Invalid combination of adaptivity options, detected before the loop starts."""
