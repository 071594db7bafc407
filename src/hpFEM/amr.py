"""hp-adaptivity: element marking, refinement, and the adaptivity loop."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable

import numpy as np
from numba import njit
from numpy.typing import NDArray

from .datastructures import (
    SPLIT_ISO,
    SPLIT_NONE,
    TIE_TOL,
    AdaptParameters,
    AdaptResult,
    Candidate,
    ConvergenceHistory,
    ErrorEstimate,
    MarkingStrategy,
    StopReason,
    _as_enum,
)
from .error import calc_err_est
from .mesh import son_boxes
from .output import ConvergenceGraph
from .selectors import ProjBasedSelector
from .solution import Solution
from .solvers import project_global
from .space import Space, construct_refined_spaces, get_num_dofs

log = logging.getLogger(__name__)


# ============================================================================
# Marking strategies: (errors, threshold) -> flagged indices
# ============================================================================


@njit
def _tie_extended_prefix(sorted_errors, target, tie_tol):
    """Length of the shortest prefix whose sum exceeds target, extended over ties."""
    n_total = sorted_errors.shape[0]
    processed = 0.0
    n = 0
    while n < n_total:
        processed += sorted_errors[n]
        n += 1
        if processed > target:
            break
    last = sorted_errors[n - 1]
    while n < n_total and abs(sorted_errors[n] - last) <= tie_tol * last:
        n += 1
    return n


def _mark_cumulative_fraction(errors: NDArray[np.float64], threshold: float) -> NDArray[np.int64]:
    order = np.argsort(-errors, kind="stable")
    order = order[errors[order] > 0.0]
    if len(order) == 0:
        return order
    target = np.sqrt(threshold) * errors.sum()
    n = _tie_extended_prefix(errors[order], target, TIE_TOL)
    return order[:n]


def _mark_relative_to_max(errors: NDArray[np.float64], threshold: float) -> NDArray[np.int64]:
    order = np.argsort(-errors, kind="stable")
    if len(order) == 0:
        return order
    limit = threshold * errors[order[0]]
    return order[(errors[order] > limit) & (errors[order] > 0.0)]


def _mark_absolute(errors: NDArray[np.float64], threshold: float) -> NDArray[np.int64]:
    order = np.argsort(-errors, kind="stable")
    return order[(errors[order] > threshold) & (errors[order] > 0.0)]


MARKERS: dict[MarkingStrategy, Callable] = {
    MarkingStrategy.CUMULATIVE_FRACTION: _mark_cumulative_fraction,
    MarkingStrategy.RELATIVE_TO_MAX: _mark_relative_to_max,
    MarkingStrategy.ABSOLUTE_THRESHOLD: _mark_absolute,
}


def mark_elements(
    errors: NDArray[np.float64],
    threshold: float,
    strategy: MarkingStrategy | int = MarkingStrategy.CUMULATIVE_FRACTION,
) -> NDArray[np.int64]:
    """Return indices of the elements to refine, largest error first.

    Elements with zero error are never flagged.
    """
    errors = np.asarray(errors, dtype=np.float64)
    return MARKERS[_as_enum(MarkingStrategy, strategy)](errors, threshold).astype(np.int64)


# ============================================================================
# One refinement pass
# ============================================================================


def son_orders_for(split: int, cand: Candidate, dim: int) -> list[tuple[int, ...]]:
    """Son degrees of cand transferred to the sons of another split.

    Each son of ``split`` takes the degree of the candidate son containing
    its centre.
    """
    cand_boxes = son_boxes(cand.split, dim)
    out = []
    for lo, hi in son_boxes(split, dim):
        center = 0.5 * (lo + hi)
        for (c_lo, c_hi), q in zip(cand_boxes, cand.orders):
            if np.all(center >= c_lo) and np.all(center <= c_hi):
                out.append(q)
                break
    return out


class Adapt:
    """Error estimation and one refinement pass over a list of spaces.

    Spaces sharing a mesh (single-mesh mode) are refined consistently: if
    their components choose different splits for the same element, it is
    split isotropically and each component keeps the degrees of its own
    candidate.
    """

    def __init__(
        self,
        spaces: list[Space],
        params: AdaptParameters | None = None,
        selector: ProjBasedSelector | None = None,
    ):
        self.spaces = spaces
        self.params = params if params is not None else AdaptParameters()
        self.selector = selector or ProjBasedSelector(
            cand_list=self.params.cand_list,
            conv_exp=self.params.conv_exp,
            max_order=self.params.max_order,
            norm=self.params.projection_norm,
            error_weights=self.params.error_weights,
        )
        self.estimate: ErrorEstimate | None = None

    def calc_err_est(self, slns: list[Solution], ref_slns: list[Solution]) -> ErrorEstimate:
        self.estimate = calc_err_est(
            slns, ref_slns, self.params.error_combination, self.params.projection_norm
        )
        return self.estimate

    def _select(self, job: tuple[int, int], ref_slns: list[Solution]) -> Candidate | None:
        comp, eid = job
        return self.selector.select_refinement(
            eid, self.spaces[comp].get_element_order(eid), ref_slns[comp]
        )

    def adapt(self, ref_slns: list[Solution], estimate: ErrorEstimate | None = None) -> bool:
        """Flag elements, select their refinements and apply them.

        Returns True when nothing was refined (no flagged element or no
        improving candidate), which ends the adaptivity loop.
        """
        estimate = estimate if estimate is not None else self.estimate
        if estimate is None:
            raise RuntimeError("adapt() called before calc_err_est()")
        params = self.params

        comps, eids, errors = estimate.pooled()
        marked = mark_elements(errors, params.threshold, params.strategy)
        if len(marked) == 0:
            log.info("No element flagged for refinement")
            return True
        jobs = [(int(comps[k]), int(eids[k])) for k in marked]

        if params.n_workers > 1:
            with ThreadPoolExecutor(max_workers=params.n_workers) as pool:
                cands = list(pool.map(lambda job: self._select(job, ref_slns), jobs))
        else:
            cands = [self._select(job, ref_slns) for job in jobs]

        decisions: dict[tuple[int, int], list[tuple[int, Candidate]]] = {}
        for (comp, eid), cand in zip(jobs, cands):
            if cand is None:
                continue
            decisions.setdefault((id(self.spaces[comp].mesh), eid), []).append((comp, cand))
        log.debug(f"{len(jobs)} flagged, {sum(len(v) for v in decisions.values())} improving")
        if not decisions:
            log.info("No flagged element has an improving candidate")
            return True

        for (_, eid), items in decisions.items():
            self._apply(eid, items)

        if params.mesh_regularity >= 0:
            meshes = {id(s.mesh): s.mesh for s in self.spaces}
            for mesh in meshes.values():
                forced = mesh.enforce_regularity(params.mesh_regularity)
                if forced:
                    log.debug(f"Mesh regularity: {len(forced)} extra splits")
        return False

    def _apply(self, eid: int, items: list[tuple[int, Candidate]]) -> None:
        mesh = self.spaces[items[0][0]].mesh
        dim = mesh.dim
        splits = {cand.split for _, cand in items}
        if splits == {SPLIT_NONE}:
            for comp, cand in items:
                self.spaces[comp].set_element_order(eid, cand.orders[0])
            return
        split = splits.pop() if len(splits) == 1 else SPLIT_ISO
        # Components not flagged here keep the parent degree through inheritance
        sons = mesh.refine_element(eid, split)
        for comp, cand in items:
            for son, q in zip(sons, son_orders_for(split, cand, dim)):
                self.spaces[comp].set_element_order(son, q)


# ============================================================================
# Adaptivity loop
# ============================================================================


class AdaptState(Enum):
    START = "start"
    BUILD_REFERENCE = "build_reference"
    SOLVE = "solve"
    PROJECT = "project"
    ESTIMATE = "estimate"
    CHECK_STOP = "check_stop"
    MARK_AND_REFINE = "mark_and_refine"
    DONE = "done"


class HPAdaptivity:
    """Automatic hp-adaptivity loop.

    Every iteration builds the reference spaces, solves on them, projects the
    reference solutions onto the working spaces, estimates the error and
    either stops or refines the working spaces.

    Parameters
    ----------
    spaces : list of Space
        Working spaces, mutated in place by accepted refinements
    solve_fn : callable
        ref_spaces -> list of reference Solution; may raise FatalSolverFailure
    params : AdaptParameters
        Loop options, validated before the first iteration
    project_fn : callable, optional
        (spaces, ref_slns) -> list of coarse Solution; defaults to project_global
    estimate_fn : callable, optional
        (slns, ref_slns) -> ErrorEstimate; defaults to Adapt.calc_err_est
    refine_fn : callable, optional
        (ref_slns, estimate) -> bool (True = nothing refined); defaults to Adapt.adapt
    graph : ConvergenceGraph, optional
        Convergence logs; created in params.output_dir when that is set
    callback : callable, optional
        Called as callback(controller) after every estimate
    """

    def __init__(
        self,
        spaces: list[Space],
        solve_fn: Callable[[list[Space]], list[Solution]],
        params: AdaptParameters | None = None,
        project_fn: Callable | None = None,
        estimate_fn: Callable | None = None,
        refine_fn: Callable | None = None,
        graph: ConvergenceGraph | None = None,
        callback: Callable | None = None,
    ):
        self.params = params if params is not None else AdaptParameters()
        self.params.validate(dim=spaces[0].dim)
        self.spaces = list(spaces)
        self.solve_fn = solve_fn
        self.adaptivity = Adapt(self.spaces, self.params)
        self.project_fn = project_fn or (
            lambda sp, ref: project_global(sp, ref, self.params.projection_norm)
        )
        self.estimate_fn = estimate_fn or self.adaptivity.calc_err_est
        self.refine_fn = refine_fn or self.adaptivity.adapt
        if graph is None and self.params.output_dir is not None:
            graph = ConvergenceGraph(self.params.output_dir)
        self.graph = graph
        self.callback = callback

        self.state = AdaptState.START
        self.history = ConvergenceHistory()
        self.iteration = 0
        self.stop_reason: StopReason | None = None
        self.ref_spaces: list[Space] = []
        self.ref_slns: list[Solution] = []
        self.slns: list[Solution] = []
        self.estimate: ErrorEstimate | None = None

    @property
    def done(self) -> bool:
        return self.state == AdaptState.DONE

    def run(self) -> AdaptResult:
        """Iterate until a stopping criterion holds; solver failures propagate."""
        self.state = AdaptState.START
        t_wall = time.perf_counter()
        while self.state != AdaptState.DONE:
            self.state = getattr(self, f"_{self.state.value}")()
        return AdaptResult(
            ref_slns=self.ref_slns,
            slns=self.slns,
            spaces=self.spaces,
            history=self.history,
            stop_reason=self.stop_reason,
            iterations=self.iteration,
            wall_time_seconds=time.perf_counter() - t_wall,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _start(self) -> AdaptState:
        self.iteration = 0
        self.stop_reason = None
        self.history = ConvergenceHistory()
        self._cpu_start = time.process_time()
        if self.graph is not None:
            self.graph.reset()
        return AdaptState.BUILD_REFERENCE

    def _build_reference(self) -> AdaptState:
        self.iteration += 1
        log.info(f"---- Adaptivity step {self.iteration}:")
        self.ref_spaces = construct_refined_spaces(self.spaces, self.params.order_increase)
        return AdaptState.SOLVE

    def _solve(self) -> AdaptState:
        log.info("Solving on reference mesh.")
        self.ref_slns = list(self.solve_fn(self.ref_spaces))
        if len(self.ref_slns) != len(self.spaces):
            raise ValueError(
                f"solve_fn returned {len(self.ref_slns)} solution(s) for {len(self.spaces)} space(s)"
            )
        return AdaptState.PROJECT

    def _project(self) -> AdaptState:
        log.info("Projecting reference solution on coarse mesh.")
        self.slns = list(self.project_fn(self.spaces, self.ref_slns))
        return AdaptState.ESTIMATE

    def _estimate(self) -> AdaptState:
        log.info("Calculating error estimate.")
        self.estimate = self.estimate_fn(self.slns, self.ref_slns)
        ndof = get_num_dofs(self.spaces)
        ndof_ref = get_num_dofs(self.ref_spaces)
        cpu = time.process_time() - self._cpu_start
        total = self.estimate.total
        log.info(f"ndof_coarse: {ndof}, ndof_fine: {ndof_ref}, err_est_rel: {total:.6g}%")
        self.history.append(
            self.iteration, ndof, ndof_ref, total, cpu, self.estimate.rel_errors_percent
        )
        if self.graph is not None:
            self.graph.add_values(ndof, cpu, total)
        if self.callback is not None:
            self.callback(self)
        return AdaptState.CHECK_STOP

    def _check_stop(self) -> AdaptState:
        params = self.params
        if self.estimate.total < params.err_stop:
            self.stop_reason = StopReason.TOLERANCE
        elif params.max_iterations is not None and self.iteration >= params.max_iterations:
            self.stop_reason = StopReason.MAX_ITERATIONS
        else:
            return AdaptState.MARK_AND_REFINE
        log.info(f"Adaptivity finished after {self.iteration} step(s): {self.stop_reason.value}")
        return AdaptState.DONE

    def _mark_and_refine(self) -> AdaptState:
        log.info("Adapting coarse mesh.")
        if self.refine_fn(self.ref_slns, self.estimate):
            self.stop_reason = StopReason.NO_REFINEMENT
            log.info(f"Adaptivity finished after {self.iteration} step(s): no refinement possible")
            return AdaptState.DONE
        # DOF ceiling applies to the refined working spaces
        ndof = get_num_dofs(self.spaces)
        if ndof >= self.params.ndof_stop:
            self.stop_reason = StopReason.NDOF_LIMIT
            log.info(
                f"Adaptivity finished after {self.iteration} step(s): "
                f"{ndof} DOFs reached ndof_stop={self.params.ndof_stop}"
            )
            return AdaptState.DONE
        return AdaptState.BUILD_REFERENCE
