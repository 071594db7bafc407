"""Data structures for adaptivity configuration and results.

Architecture: Params vs Results

             Params (input/config)         Results (output)
             ─────────────────────         ────────────────
Global       AdaptParameters               AdaptResult
             threshold, strategy, ...      stop_reason, final solutions...

Per step     -                             ConvergenceHistory
                                           ndof[], err_est_rel[], cpu_time[]

Per element  -                             ErrorEstimate, Candidate
                                           element errors, refinement choices
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, List

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from .exceptions import ConfigurationError

# Element split types
SPLIT_NONE, SPLIT_ISO, SPLIT_X, SPLIT_Y = 0, 1, 2, 3
SPLIT_NAMES = {SPLIT_NONE: "none", SPLIT_ISO: "iso", SPLIT_X: "x", SPLIT_Y: "y"}

# Highest polynomial degree an element may receive
MAX_ORDER = 10

# Squared reference norms below this are treated as zero
ZERO_NORM_TOL = 1e-24

# Relative tolerance under which two element errors count as tied (strategy 0)
TIE_TOL = 1e-3


class MarkingStrategy(IntEnum):
    """Which elements get flagged for refinement."""

    CUMULATIVE_FRACTION = 0  # until sqrt(threshold) of the total error is processed
    RELATIVE_TO_MAX = 1  # error > threshold * max error
    ABSOLUTE_THRESHOLD = 2  # error > threshold


class CandList(IntEnum):
    """Predefined lists of element refinement candidates."""

    P_ISO = 0
    P_ANISO = 1
    H_ISO = 2
    H_ANISO = 3
    HP_ISO = 4
    HP_ANISO_H = 5
    HP_ANISO_P = 6
    HP_ANISO = 7

    @property
    def has_h(self) -> bool:
        return self not in (CandList.P_ISO, CandList.P_ANISO)

    @property
    def has_p(self) -> bool:
        return self not in (CandList.H_ISO, CandList.H_ANISO)

    @property
    def aniso_h(self) -> bool:
        return self in (CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO)

    @property
    def aniso_p(self) -> bool:
        return self in (CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO)

    @property
    def is_aniso(self) -> bool:
        return self.aniso_h or self.aniso_p


class ErrorCombination(str, Enum):
    """How per-component relative errors combine into the total."""

    EUCLIDEAN = "euclidean"  # sqrt(sum_c rel_c^2)
    ENERGY = "energy"  # sqrt(sum_c err_c^2 / sum_c norm_c^2)


class StopReason(str, Enum):
    TOLERANCE = "tolerance"
    NDOF_LIMIT = "ndof_limit"
    MAX_ITERATIONS = "max_iterations"
    NO_REFINEMENT = "no_refinement"


def _as_enum(enum_cls, value):
    """Accept enum members, their names or their values."""
    if isinstance(value, enum_cls):
        return value
    try:
        if isinstance(value, str) and value.upper() in enum_cls.__members__:
            return enum_cls[value.upper()]
        return enum_cls(value)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown {enum_cls.__name__}: {value!r}") from exc


# ============================================================================
# Parameters (Input Configuration) - logged to MLflow as params
# ============================================================================


@dataclass
class AdaptParameters:
    """Options of the hp-adaptivity loop."""

    threshold: float = 0.3
    strategy: MarkingStrategy = MarkingStrategy.CUMULATIVE_FRACTION
    cand_list: CandList = CandList.HP_ANISO
    mesh_regularity: int = -1  # -1 = arbitrary-level hanging nodes
    conv_exp: float = 1.0
    err_stop: float = 1.0  # percent
    ndof_stop: int = 60000
    max_iterations: int | None = None
    order_increase: int = 1
    multimesh: bool = True
    max_order: int = MAX_ORDER
    error_weights: tuple[float, float, float] = (1.0, 1.0, 1.0)  # h, p, aniso
    error_combination: ErrorCombination = ErrorCombination.EUCLIDEAN
    projection_norm: str = "h1"
    n_workers: int = 1
    output_dir: str | None = None

    def __post_init__(self) -> None:
        self.strategy = _as_enum(MarkingStrategy, self.strategy)
        self.cand_list = _as_enum(CandList, self.cand_list)
        self.error_combination = _as_enum(ErrorCombination, self.error_combination)
        self.error_weights = tuple(float(w) for w in self.error_weights)

    @classmethod
    def from_config(cls, cfg: Any) -> AdaptParameters:
        """Build parameters from a mapping or an OmegaConf node."""
        from omegaconf import DictConfig, OmegaConf

        if isinstance(cfg, DictConfig):
            cfg = OmegaConf.to_container(cfg, resolve=True)
        known = set(cls.__dataclass_fields__)
        unknown = set(cfg) - known
        if unknown:
            raise ConfigurationError(f"Unknown adaptivity options: {sorted(unknown)}")
        return cls(**cfg)

    def validate(self, dim: int | None = None) -> None:
        """Reject invalid option combinations before the loop starts."""
        if self.threshold <= 0:
            raise ConfigurationError(f"threshold must be positive, got {self.threshold}")
        if self.mesh_regularity < -1:
            raise ConfigurationError(f"mesh_regularity must be >= -1, got {self.mesh_regularity}")
        if self.mesh_regularity == 0 and self.cand_list.has_h:
            raise ConfigurationError(
                "Regular meshes (mesh_regularity=0) cannot be combined with "
                f"h-refinement candidates ({self.cand_list.name})"
            )
        if dim == 1 and self.cand_list.is_aniso:
            raise ConfigurationError(
                f"Anisotropic candidate list {self.cand_list.name} needs a 2D mesh"
            )
        if self.conv_exp <= 0:
            raise ConfigurationError(f"conv_exp must be positive, got {self.conv_exp}")
        if self.err_stop < 0:
            raise ConfigurationError(f"err_stop must be non-negative, got {self.err_stop}")
        if self.ndof_stop <= 0:
            raise ConfigurationError(f"ndof_stop must be positive, got {self.ndof_stop}")
        if self.max_iterations is not None and self.max_iterations <= 0:
            raise ConfigurationError("max_iterations must be positive or None")
        if self.order_increase < 0:
            raise ConfigurationError("order_increase must be non-negative")
        if not 1 <= self.max_order <= MAX_ORDER:
            raise ConfigurationError(f"max_order must lie in [1, {MAX_ORDER}]")
        if len(self.error_weights) != 3 or min(self.error_weights) <= 0:
            raise ConfigurationError("error_weights must be three positive numbers (h, p, aniso)")
        if self.projection_norm not in ("h1", "l2"):
            raise ConfigurationError(f"Unknown projection norm: {self.projection_norm!r}")
        if self.n_workers < 1:
            raise ConfigurationError("n_workers must be at least 1")

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible params dict."""
        out = {}
        for k, v in self.__dict__.items():
            if isinstance(v, Enum):
                v = v.name if isinstance(v, IntEnum) else v.value
            elif isinstance(v, bool):
                v = int(v)
            elif isinstance(v, tuple):
                v = ",".join(str(x) for x in v)
            out[k] = v
        return out

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_mlflow()])


# ============================================================================
# Per-element data
# ============================================================================


@dataclass
class ErrorEstimate:
    """Error estimate of all components for one adaptivity step.

    ``element_errors[c]`` holds the squared error of each active coarse element
    of component ``c`` divided by the squared reference norm of that component.
    """

    element_ids: List[NDArray[np.int64]]
    element_errors: List[NDArray[np.float64]]
    errors_sq: NDArray[np.float64]
    norms_sq: NDArray[np.float64]
    rel_errors: NDArray[np.float64]
    total: float  # percent

    @property
    def num_components(self) -> int:
        return len(self.element_errors)

    @property
    def rel_errors_percent(self) -> NDArray[np.float64]:
        return 100.0 * self.rel_errors

    def pooled(self) -> tuple[NDArray[np.int64], NDArray[np.int64], NDArray[np.float64]]:
        """Return (component, element id, error) over all components."""
        comps = [np.full(len(ids), c, dtype=np.int64) for c, ids in enumerate(self.element_ids)]
        if not comps:
            empty = np.array([], dtype=np.int64)
            return empty, empty, np.array([], dtype=np.float64)
        return (
            np.concatenate(comps),
            np.concatenate(self.element_ids).astype(np.int64),
            np.concatenate(self.element_errors),
        )


@dataclass
class Candidate:
    """One admissible refinement of a single element."""

    split: int
    orders: tuple[tuple[int, ...], ...]  # one degree tuple per son
    error: float = float("inf")
    dofs: int = 0
    score: float = 0.0

    @property
    def is_p_only(self) -> bool:
        return self.split == SPLIT_NONE

    def __repr__(self) -> str:
        return (
            f"Candidate(split={SPLIT_NAMES[self.split]}, orders={self.orders}, "
            f"error={self.error:.3e}, dofs={self.dofs}, score={self.score:.3e})"
        )


# ============================================================================
# ConvergenceHistory (one row per adaptivity step) - logged as step metrics
# ============================================================================


@dataclass
class ConvergenceHistory:
    """Convergence history (one value per completed adaptivity step)."""

    iteration: List[int] = field(default_factory=list)
    ndof_coarse: List[int] = field(default_factory=list)
    ndof_ref: List[int] = field(default_factory=list)
    err_est_rel: List[float] = field(default_factory=list)  # percent
    cpu_time: List[float] = field(default_factory=list)  # cumulative seconds
    err_est_components: List[List[float]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.iteration)

    def append(self, iteration, ndof_coarse, ndof_ref, err_est_rel, cpu_time, components):
        self.iteration.append(int(iteration))
        self.ndof_coarse.append(int(ndof_coarse))
        self.ndof_ref.append(int(ndof_ref))
        self.err_est_rel.append(float(err_est_rel))
        self.cpu_time.append(float(cpu_time))
        self.err_est_components.append([float(c) for c in components])

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per adaptivity step."""
        df = pd.DataFrame(
            {
                "iteration": self.iteration,
                "ndof_coarse": self.ndof_coarse,
                "ndof_ref": self.ndof_ref,
                "err_est_rel": self.err_est_rel,
                "cpu_time": self.cpu_time,
            }
        )
        if self.err_est_components:
            comps = np.array(self.err_est_components)
            for c in range(comps.shape[1]):
                df[f"err_est_rel_{c}"] = comps[:, c]
        return df

    def to_mlflow_batch(self) -> list:
        """Convert history to MLflow Metric objects for batch logging."""
        from mlflow.entities import Metric

        series = {
            "ndof_coarse": self.ndof_coarse,
            "ndof_ref": self.ndof_ref,
            "err_est_rel": self.err_est_rel,
            "cpu_time": self.cpu_time,
        }
        return [
            Metric(key=name, value=float(value), timestamp=0, step=step)
            for name, values in series.items()
            for step, value in zip(self.iteration, values)
        ]


@dataclass
class AdaptResult:
    """Outcome of an adaptivity run.

    ``ref_slns`` are the last reference solutions (the returned result),
    ``slns`` their projections on the final working spaces.
    """

    ref_slns: list
    slns: list
    spaces: list
    history: ConvergenceHistory
    stop_reason: StopReason
    iterations: int
    wall_time_seconds: float = 0.0

    @property
    def done(self) -> bool:
        return self.stop_reason is not None

    @property
    def converged(self) -> bool:
        return self.stop_reason in (StopReason.TOLERANCE, StopReason.NO_REFINEMENT)

    @property
    def final_error(self) -> float:
        return self.history.err_est_rel[-1] if len(self.history) else float("inf")

    def to_mlflow(self) -> dict:
        """Summary metrics (bools as int)."""
        return {
            "iterations": self.iterations,
            "converged": int(self.converged),
            "final_err_est_rel": self.final_error,
            "final_ndof": self.history.ndof_coarse[-1] if len(self.history) else 0,
            "wall_time_seconds": self.wall_time_seconds,
        }
