"""
secure_gain.py

Entropy-based split statistics computed from attribute x class count matrices
whose global values are obtained through the secure sum.

- local_counts(attribute_values, class_values, n_attr, n_class) -> int64 matrix
- information_gain(global_counts, total_instances) -> float (base 2)
- gain_ratio(gain, global_counts, total_instances) -> float
- SecureInformationGain: flattens a count matrix into one array secure sum so a
  whole matrix needs a single ring pass.

Out-of-range values (including MISSING_VALUE) are skipped when counting, the
same as the original tally; only a length mismatch or a non-positive
cardinality is reported as SchemaMismatch.
"""

from typing import List, Sequence, Tuple

import numpy as np

from .. import constants
from ..errors import SchemaMismatch
from .secure_sum import SecureSum, SecureSumArrayState


def local_counts(attribute_values, class_values, num_attr_values: int, num_class_values: int) -> np.ndarray:
    a = np.asarray(attribute_values, dtype=np.int64).ravel()
    c = np.asarray(class_values, dtype=np.int64).ravel()
    if a.shape[0] != c.shape[0]:
        raise SchemaMismatch(f"attribute column has {a.shape[0]} rows, class column has {c.shape[0]}")
    if num_attr_values <= 0 or num_class_values <= 0:
        raise SchemaMismatch(
            f"cardinalities must be positive (attribute={num_attr_values}, class={num_class_values})"
        )
    keep = (a >= 0) & (a < num_attr_values) & (c >= 0) & (c < num_class_values)
    flat = a[keep] * num_class_values + c[keep]
    counts = np.bincount(flat, minlength=num_attr_values * num_class_values)
    return counts.reshape(num_attr_values, num_class_values).astype(np.int64)


def class_counts(class_values, num_class_values: int) -> np.ndarray:
    c = np.asarray(class_values, dtype=np.int64).ravel()
    if num_class_values <= 0:
        raise SchemaMismatch("class cardinality must be positive")
    c = c[(c >= 0) & (c < num_class_values)]
    return np.bincount(c, minlength=num_class_values).astype(np.int64)


def _entropy_terms(counts: np.ndarray, total: float) -> float:
    """-sum p*log2(p) with p = counts/total and 0*log2(0) = 0."""
    counts = counts[counts > 0].astype(np.float64)
    if counts.size == 0 or total <= 0:
        return 0.0
    p = counts / float(total)
    return float(-(p * np.log2(p)).sum())


def information_gain(global_counts, total_instances: int) -> float:
    """gain = H(class) - sum_v (n_v/N) * H(class | attr = v)."""
    if total_instances == 0:
        return 0.0
    counts = np.asarray(global_counts, dtype=np.int64)
    if counts.ndim != 2 or counts.size == 0:
        raise SchemaMismatch(f"count matrix must be 2-D and non-empty, got shape {counts.shape}")

    class_entropy = _entropy_terms(counts.sum(axis=0), total_instances)

    conditional = 0.0
    for row in counts:
        n_v = int(row.sum())
        if n_v > 0:
            conditional += n_v / float(total_instances) * _entropy_terms(row, n_v)
    # rounding can leave -1e-17 on degenerate matrices
    return max(0.0, class_entropy - conditional)


def split_information(global_counts, total_instances: int) -> float:
    counts = np.asarray(global_counts, dtype=np.int64)
    if total_instances == 0:
        return 0.0
    return _entropy_terms(counts.sum(axis=1), total_instances)


def gain_ratio(gain: float, global_counts, total_instances: int) -> float:
    """gain / split information; 0.0 when split information < SPLIT_INFO_EPS."""
    if total_instances == 0:
        return 0.0
    split_info = split_information(global_counts, total_instances)
    if split_info < constants.DEFAULTS.get("SPLIT_INFO_EPS", 1e-10):
        return 0.0
    return gain / split_info


class SecureInformationGain:
    """
    Batched secure computation of global count matrices on top of SecureSum.

    Transport-agnostic: the orchestrator moves the returned states between ring
    members and calls finalize_counts at the initiator.
    """

    def __init__(self, engine: SecureSum):
        self.engine = engine

    def initiate_counts(self, counts: np.ndarray) -> SecureSumArrayState:
        return self.engine.initiate_array(np.asarray(counts, dtype=np.int64).ravel().tolist())

    def participate_counts(self, state: SecureSumArrayState, counts: np.ndarray) -> SecureSumArrayState:
        flat = np.asarray(counts, dtype=np.int64).ravel().tolist()
        if len(flat) != len(state.partial_sums):
            raise SchemaMismatch(f"count vector has {len(flat)} cells, round expects {len(state.partial_sums)}")
        return self.engine.participate_array(state, flat)

    def finalize_counts(self, state: SecureSumArrayState, shape: Tuple[int, ...]) -> np.ndarray:
        sums = self.engine.finalize_array(state)
        return np.asarray(sums, dtype=np.int64).reshape(shape)

    @staticmethod
    def evaluate(global_counts: np.ndarray, total_instances: int) -> Tuple[float, float]:
        """(information gain, gain ratio) for one attribute."""
        gain = information_gain(global_counts, total_instances)
        return gain, gain_ratio(gain, global_counts, total_instances)
