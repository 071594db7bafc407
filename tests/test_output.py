"""Tests for convergence logs, VTK export, plots and result tables."""

import matplotlib

matplotlib.use("Agg")

import meshio
import numpy as np
import pytest

from hpFEM.datastructures import (
    AdaptParameters,
    AdaptResult,
    CandList,
    ConvergenceHistory,
    MarkingStrategy,
    StopReason,
)
from hpFEM.mesh import line_mesh, rect_mesh
from hpFEM.output import ConvergenceGraph, plot_convergence, save_solution_vtk
from hpFEM.solution import Solution
from hpFEM.space import Space


@pytest.fixture
def history():
    h = ConvergenceHistory()
    h.append(1, 50, 150, 12.0, 0.1, [12.0])
    h.append(2, 80, 230, 3.5, 0.3, [3.5])
    h.append(3, 120, 340, 0.8, 0.6, [0.8])
    return h


class TestConvergenceGraph:
    """The two .dat convergence tables."""

    def test_add_and_read(self, tmp_path):
        graph = ConvergenceGraph(tmp_path / "run")
        graph.reset()
        graph.add_values(50, 0.1, 12.0)
        graph.add_values(80, 0.3, 3.5)
        df_dof, df_cpu = graph.read()
        assert list(df_dof["ndof"]) == [50, 80]
        assert np.allclose(df_cpu["cpu_time"], [0.1, 0.3])
        assert np.allclose(df_dof["err_est_rel"], [12.0, 3.5])
        lines = (tmp_path / "run" / "conv_dof_est.dat").read_text().splitlines()
        assert lines[0].split() == ["50", "12.0"]

    def test_reset_truncates(self, tmp_path):
        graph = ConvergenceGraph(tmp_path)
        graph.reset()
        graph.add_values(10, 0.0, 1.0)
        graph.reset()
        df_dof, df_cpu = graph.read()
        assert len(df_dof) == 0
        assert len(df_cpu) == 0

    def test_collect_nested(self, tmp_path):
        for sub in ("step_0002", "step_0001"):
            graph = ConvergenceGraph(tmp_path / sub)
            graph.reset()
            graph.add_values(10, 0.0, 1.0)
        (tmp_path / "other").mkdir()
        graphs = ConvergenceGraph.collect(tmp_path)
        assert [g.output_dir.name for g in graphs] == ["step_0001", "step_0002"]


class TestVtk:
    """Solution export through meshio."""

    def test_1d(self, tmp_path):
        space = Space(line_mesh(1.0, 3), p_init=2)
        sln = Solution.from_function(space, lambda x: x[:, 0] ** 2)
        path = save_solution_vtk([sln], tmp_path / "u.vtu", names=["u"])
        mesh = meshio.read(path)
        assert len(mesh.points) == 7
        assert np.allclose(mesh.point_data["u"], mesh.points[:, 0] ** 2)

    def test_2d(self, tmp_path):
        space = Space(rect_mesh(0.0, 0.0, 1.0, 1.0, 2, 2), p_init=1)
        sln = Solution.from_function(space, lambda x: x[:, 0] + x[:, 1])
        path = save_solution_vtk([sln, sln], tmp_path / "u.vtu")
        mesh = meshio.read(path)
        assert mesh.cells_dict["quad"].shape == (4, 4)
        assert np.allclose(mesh.point_data["u1"], mesh.points[:, 0] + mesh.points[:, 1])


class TestPlot:
    def test_plot_convergence(self, history, tmp_path):
        fig = plot_convergence(history, tmp_path / "conv.png", title="test")
        assert (tmp_path / "conv.png").exists()
        assert len(fig.axes) == 2


class TestResultTables:
    """Parameter and history conversions for MLflow and pandas."""

    def test_params_to_mlflow(self):
        params = AdaptParameters(cand_list="hp_iso", strategy=1, multimesh=False)
        out = params.to_mlflow()
        assert out["cand_list"] == "HP_ISO"
        assert out["strategy"] == "RELATIVE_TO_MAX"
        assert out["multimesh"] == 0
        assert out["error_weights"] == "1.0,1.0,1.0"
        assert out["error_combination"] == "euclidean"
        assert len(params.to_dataframe()) == 1

    def test_from_config(self):
        from omegaconf import OmegaConf

        cfg = OmegaConf.create({"threshold": 0.2, "cand_list": "P_ISO", "strategy": 2})
        params = AdaptParameters.from_config(cfg)
        assert params.threshold == 0.2
        assert params.cand_list == CandList.P_ISO
        assert params.strategy == MarkingStrategy.ABSOLUTE_THRESHOLD

    def test_history_dataframe(self, history):
        df = history.to_dataframe()
        assert list(df["ndof_coarse"]) == [50, 80, 120]
        assert "err_est_rel_0" in df.columns

    def test_history_mlflow_batch(self, history):
        metrics = history.to_mlflow_batch()
        assert len(metrics) == 4 * 3
        err = [m for m in metrics if m.key == "err_est_rel"]
        assert [m.step for m in err] == [1, 2, 3]

    def test_result_summary(self, history):
        result = AdaptResult([], [], [], history, StopReason.TOLERANCE, iterations=3)
        summary = result.to_mlflow()
        assert summary["converged"] == 1
        assert summary["final_err_est_rel"] == 0.8
        assert summary["final_ndof"] == 120
