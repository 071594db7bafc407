"""hp-adaptivity driver - unified entry point.

Usage:
    python run_adapt.py
    python run_adapt.py problem=elasticity adapt.multimesh=false
    python run_adapt.py problem=heat problem.n_steps=4
    python run_adapt.py -m adapt.threshold=0.2,0.3,0.5
"""

import logging
import os
import tempfile
from pathlib import Path

import hydra
import mlflow
from dotenv import load_dotenv
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

from hpFEM import AdaptParameters, ConvergenceGraph, plot_convergence, save_solution_vtk

load_dotenv()

log = logging.getLogger(__name__)


def get_experiment_name(cfg: DictConfig) -> str:
    """Build full experiment name with optional prefix."""
    name = cfg.experiment_name
    prefix = cfg.mlflow.get("project_prefix", "")
    if prefix and not name.startswith("/"):
        return f"{prefix}/{name}"
    return name


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    if str(cfg.mlflow.get("mode", "")).lower() in ("files", "local"):
        os.environ.pop("MLFLOW_TRACKING_URI", None)
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)

    experiment_name = get_experiment_name(cfg)
    mlflow.set_experiment(experiment_name)
    return experiment_name


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> float:
    """Run one adaptivity computation and return the final error estimate (percent)."""
    output_dir = Path(hydra.core.hydra_config.HydraConfig.get().runtime.output_dir)
    params = AdaptParameters.from_config(cfg.adapt)
    if params.output_dir is None:
        params.output_dir = str(output_dir)

    problem = instantiate(cfg.problem, _convert_="all")
    log.info(f"Problem: {problem.name}, MLflow experiment: {setup_mlflow(cfg)}")

    parent_run_id = os.environ.get("MLFLOW_PARENT_RUN_ID")
    tags = {"problem": problem.name}
    if parent_run_id:
        tags.update({"mlflow.parentRunId": parent_run_id, "parent_run_id": parent_run_id, "sweep": "child"})

    run_name = f"{problem.name}_{params.cand_list.name}_thr{params.threshold}"
    with mlflow.start_run(run_name=run_name, tags=tags, nested=bool(parent_run_id)) as run:
        mlflow.log_params(params.to_mlflow())
        mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")

        # each run (each heat time step) keeps its own logs under output_dir
        result = problem.run(params, graph=None)

        mlflow.log_metrics(result.to_mlflow())
        batch = result.history.to_mlflow_batch()
        if batch:
            mlflow.tracking.MlflowClient().log_batch(run.info.run_id, metrics=batch)

        root = Path(params.output_dir)
        for graph in ConvergenceGraph.collect(root):
            rel = graph.output_dir.relative_to(root).as_posix()
            artifact_path = None if rel == "." else rel
            for path in (graph.dof_path, graph.cpu_path):
                if path.exists():
                    mlflow.log_artifact(str(path), artifact_path=artifact_path)

        if cfg.get("plot"):
            fig_path = output_dir / "convergence.png"
            plot_convergence(result.history, fig_path, title=problem.name)
            mlflow.log_artifact(str(fig_path))

        if cfg.get("save_vtk"):
            with tempfile.TemporaryDirectory() as tmpdir:
                vtk_path = save_solution_vtk(
                    result.ref_slns, Path(tmpdir) / "solution.vtu", names=problem.field_names
                )
                mlflow.log_artifact(str(vtk_path))

        log.info(
            f"Done: {result.iterations} steps, stop={result.stop_reason.value}, "
            f"converged={result.converged}, err_est_rel={result.final_error:.4f}%, "
            f"time={result.wall_time_seconds:.2f}s"
        )
    return result.final_error


if __name__ == "__main__":
    main()
