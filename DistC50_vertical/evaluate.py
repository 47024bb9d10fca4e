"""
evaluate.py

Score a tree on an encoded dataset and persist results.
"""

import json
from typing import Any, Dict

import numpy as np
from sklearn.metrics import accuracy_score, confusion_matrix, f1_score, precision_score, recall_score

from . import logger
from .data_loader import Dataset
from .tree import TreeNode, predict_rows


def evaluate_tree(tree: TreeNode, dataset: Dataset) -> Dict[str, Any]:
    """
    Returns accuracy, macro precision/recall/f1 and the confusion matrix.
    Rows with a missing class value are skipped.
    """
    labels = dataset.class_values
    keep = labels >= 0
    if not keep.any():
        logger.secure_log("warning", "No labelled rows to evaluate")
        nan = float("nan")
        return {"accuracy": nan, "precision": nan, "recall": nan, "f1": nan, "instances": 0, "confusion": []}

    rows = dataset.rows[keep]
    y_true = labels[keep]
    y_pred = np.asarray(predict_rows(tree, dataset.attribute_names, rows), dtype=np.int64)
    n_class = dataset.class_attribute.num_values
    metrics = {
        "accuracy": float(accuracy_score(y_true, y_pred)),
        "precision": float(precision_score(y_true, y_pred, average="macro", zero_division=0)),
        "recall": float(recall_score(y_true, y_pred, average="macro", zero_division=0)),
        "f1": float(f1_score(y_true, y_pred, average="macro", zero_division=0)),
        "instances": int(y_true.size),
        "confusion": confusion_matrix(y_true, y_pred, labels=list(range(n_class))).tolist(),
    }
    logger.secure_log("info", "Evaluation", accuracy=round(metrics["accuracy"], 4), f1=round(metrics["f1"], 4),
                      instances=metrics["instances"])
    return metrics


def save_results(path: str, results: Dict[str, Any]):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(results, f, indent=2)
