"""Convergence logs, VTK export and convergence plots."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)


class ConvergenceGraph:
    """Two append-only convergence tables of one run.

    ``conv_dof_est.dat`` holds rows ``ndof err_est_rel`` and
    ``conv_cpu_est.dat`` rows ``cpu_time err_est_rel``, one row per completed
    adaptivity step, whitespace separated.
    """

    def __init__(
        self,
        output_dir: str | Path,
        dof_name: str = "conv_dof_est.dat",
        cpu_name: str = "conv_cpu_est.dat",
    ):
        self.output_dir = Path(output_dir)
        self.dof_path = self.output_dir / dof_name
        self.cpu_path = self.output_dir / cpu_name

    def reset(self) -> None:
        """Start a new run with empty tables."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for path in (self.dof_path, self.cpu_path):
            path.write_text("")

    def add_values(self, ndof: int, cpu_time: float, err_est_rel: float) -> None:
        for path, x in ((self.dof_path, ndof), (self.cpu_path, cpu_time)):
            pd.DataFrame([[x, err_est_rel]]).to_csv(
                path, mode="a", sep=" ", header=False, index=False
            )

    def read(self) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Read both tables back as DataFrames."""
        out = []
        for path, x in ((self.dof_path, "ndof"), (self.cpu_path, "cpu_time")):
            if path.exists() and path.stat().st_size > 0:
                out.append(pd.read_csv(path, sep=" ", header=None, names=[x, "err_est_rel"]))
            else:
                out.append(pd.DataFrame(columns=[x, "err_est_rel"]))
        return out[0], out[1]

    @classmethod
    def collect(cls, root: str | Path) -> list["ConvergenceGraph"]:
        """All convergence logs under ``root``, including per-step subdirectories."""
        root = Path(root)
        dirs = sorted({p.parent for p in root.rglob("conv_dof_est.dat")})
        return [cls(d) for d in dirs]


def save_solution_vtk(slns, path: str | Path, names: list[str] | None = None) -> Path:
    """Write solutions sharing one mesh to a VTK file.

    1D solutions are sampled at p + 1 equidistant points per element and
    written as line cells; 2D solutions are written per element at the
    corners of the active rectangles.
    """
    import meshio

    names = names or [f"u{c}" for c in range(len(slns))]
    mesh = slns[0].mesh
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if mesh.dim == 1:
        pts = []
        for eid in mesh.active_ids():
            elem = mesh.elements[eid]
            p = max(max(s.get_element_order(eid)) for s in slns if eid in s.coeffs)
            pts.append(np.linspace(elem.lo[0], elem.hi[0], p + 1)[:-1])
        x = np.append(np.concatenate(pts), mesh.domain_hi[0])
        points = np.column_stack([x, np.zeros_like(x), np.zeros_like(x)])
        cells = [("line", np.column_stack([np.arange(len(x) - 1), np.arange(1, len(x))]))]
        point_data = {name: s(x) for name, s in zip(names, slns)}
    else:
        ids, lo, hi = mesh.active_bounds()
        corners = np.stack(
            [lo, np.column_stack([hi[:, 0], lo[:, 1]]), hi, np.column_stack([lo[:, 0], hi[:, 1]])],
            axis=1,
        ).reshape(-1, 2)
        points = np.column_stack([corners, np.zeros(len(corners))])
        cells = [("quad", np.arange(len(corners)).reshape(-1, 4))]
        point_data = {}
        for name, s in zip(names, slns):
            vals = np.empty(len(corners))
            for k, eid in enumerate(ids):
                xi = mesh.elements[eid].to_reference(corners[4 * k : 4 * k + 4])
                vals[4 * k : 4 * k + 4] = s.eval_element(int(eid), xi)[0]
            point_data[name] = vals

    meshio.write(path, meshio.Mesh(points, cells, point_data=point_data))
    log.info(f"Saved {path}")
    return path


def plot_convergence(history, path: str | Path | None = None, title: str = ""):
    """Plot estimated error against DOFs and CPU time (log-log / semilog)."""
    import matplotlib.pyplot as plt

    df = history.to_dataframe()
    fig, (ax_dof, ax_cpu) = plt.subplots(1, 2, figsize=(10, 4))
    ax_dof.loglog(df["ndof_coarse"], df["err_est_rel"], "o-")
    ax_dof.set_xlabel("Degrees of freedom")
    ax_dof.set_ylabel("Error estimate [%]")
    ax_cpu.semilogy(df["cpu_time"], df["err_est_rel"], "o-")
    ax_cpu.set_xlabel("CPU time [s]")
    for ax in (ax_dof, ax_cpu):
        ax.grid(True, which="both", ls="-", alpha=0.5)
    if title:
        fig.suptitle(title)
    if path is not None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, bbox_inches="tight", dpi=150)
        log.info(f"Saved {path}")
    return fig
