"""
monitoring.py

Build and evaluation metrics. Sent to Weights & Biases (wandb) when it is
installed and init_wandb was called, otherwise written through
logger.secure_log. Only aggregate numbers go out: never counts, rows or masks.
"""

from typing import Dict, Any, Optional
from . import logger
try:
    import wandb
    _WANDB_AVAILABLE = True
except ImportError:
    _WANDB_AVAILABLE = False

_run = None


def enabled() -> bool:
    return _WANDB_AVAILABLE and _run is not None


def init_wandb(project: str, name: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
    global _run
    if not _WANDB_AVAILABLE:
        logger.secure_log("info", "wandb not available; metrics go to the log", project=project, run_name=name)
        return
    _run = wandb.init(project=project, name=name, config=config)
    logger.secure_log("info", "wandb initialized", project=project, run_name=name)


def log_metrics(step: int, metrics: Dict[str, Any]):
    if enabled():
        wandb.log({"step": step, **metrics})
    else:
        logger.secure_log("debug", "metrics", step=step, metrics=metrics)


def log_split_search(step: int, depth: int, instances: int, candidates: int, best_gain_ratio: float):
    """One evaluated tree node."""
    log_metrics(step, {
        "split/depth": depth,
        "split/instances": instances,
        "split/candidates": candidates,
        "split/best_gain_ratio": best_gain_ratio,
    })


def log_tree_summary(nodes: int, leaves: int, depth: int, rounds: int):
    summary = {"tree/nodes": nodes, "tree/leaves": leaves, "tree/depth": depth, "tree/secure_rounds": rounds}
    if enabled():
        _run.summary.update(summary)
    logger.secure_log("info", "Tree summary", **{k.split("/", 1)[1]: v for k, v in summary.items()})


def log_evaluation(metrics: Dict[str, Any]):
    scalars = {f"eval/{k}": v for k, v in metrics.items() if isinstance(v, (int, float))}
    if enabled():
        wandb.log(scalars)
        _run.summary.update(scalars)
    else:
        logger.secure_log("debug", "evaluation metrics", metrics=scalars)


def finish():
    global _run
    if enabled():
        wandb.finish()
        _run = None
        logger.secure_log("info", "wandb finished")
