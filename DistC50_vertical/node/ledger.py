"""
ledger.py

Per-party bookkeeping of which rows sit at which tree node, plus the local
side of count rounds and split decisions.

Row positions are indices into the (row-aligned) dataset, so the same
position names the same record at every party.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .. import logger
from ..errors import ProtocolSequenceError, SchemaMismatch
from ..privacy import secure_gain
from ..schema import DataPartition

ROOT = "root"

CLASS_ROUND = "class"
ATTRIBUTE_ROUND = "attribute"


def class_holder(partitioning: Sequence[Tuple[str, Sequence[int]]], class_index: int) -> Optional[str]:
    """First party (partitioning order) holding the class column."""
    for party_id, indices in partitioning:
        if class_index in indices:
            return party_id
    return None


def attribute_owner(partitioning: Sequence[Tuple[str, Sequence[int]]], attribute_index: int,
                    class_index: Optional[int] = None) -> Optional[str]:
    """
    First party owning attribute_index. With class_index, only parties that
    also hold the class column qualify (they can build the attribute x class matrix).
    """
    for party_id, indices in partitioning:
        if attribute_index in indices and (class_index is None or class_index in indices):
            return party_id
    return None


class PartyLedger:
    def __init__(self, party_id: str, partition: DataPartition):
        self.party_id = party_id
        self.partition = partition
        self.node_rows: Dict[str, np.ndarray] = {}
        self.reset()

    def reset(self):
        self.node_rows = {ROOT: np.arange(self.partition.row_count, dtype=np.int64)}

    def rows(self, node_id: str) -> np.ndarray:
        try:
            return self.node_rows[node_id]
        except KeyError:
            raise ProtocolSequenceError(f"{self.party_id} has no rows registered for tree node {node_id!r}") from None

    # ---- count rounds ----
    def class_counts(self, node_id: str, num_class_values: int) -> np.ndarray:
        return secure_gain.class_counts(self.partition.class_column(self.rows(node_id)), num_class_values)

    def attribute_counts(self, node_id: str, attribute_index: int, num_attribute_values: int,
                         num_class_values: int) -> np.ndarray:
        attr = self.partition.attribute(attribute_index)
        if not attr.is_nominal or attr.num_values != num_attribute_values:
            raise SchemaMismatch(
                f"attribute {attribute_index} ({attr.name}) has {attr.num_values} values here, "
                f"round expects {num_attribute_values}"
            )
        rows = self.rows(node_id)
        return secure_gain.local_counts(
            self.partition.column(attribute_index, rows),
            self.partition.class_column(rows),
            num_attribute_values,
            num_class_values,
        )

    def contribution(self, node_id: str, kind: str, attribute_index: int, num_attribute_values: int,
                     num_class_values: int, contributor: str) -> List[int]:
        """Flattened local vector for one round; zeros unless this party is the contributor."""
        if kind == CLASS_ROUND:
            size = num_class_values
        elif kind == ATTRIBUTE_ROUND:
            size = num_attribute_values * num_class_values
        else:
            raise ProtocolSequenceError(f"unknown count round kind {kind!r}")
        if contributor != self.party_id:
            # still check the node is known so a stale round is caught at every hop
            self.rows(node_id)
            return [0] * size
        if kind == CLASS_ROUND:
            counts = self.class_counts(node_id, num_class_values)
        else:
            counts = self.attribute_counts(node_id, attribute_index, num_attribute_values, num_class_values)
        return counts.ravel().tolist()

    # ---- split decisions ----
    def compute_split(self, node_id: str, attribute_index: int, num_values: int) -> Tuple[List[List[int]], List[int]]:
        """Row positions per value of the split attribute, plus the unassigned ones."""
        rows = self.rows(node_id)
        col = self.partition.column(attribute_index, rows)
        assignments = [rows[col == v].tolist() for v in range(num_values)]
        unassigned = rows[(col < 0) | (col >= num_values)].tolist()
        return assignments, unassigned

    def apply_split(self, node_id: str, child_ids: Sequence[str], default_child_id: str,
                    assignments: Sequence[Sequence[int]], unassigned: Sequence[int]):
        rows = self.rows(node_id)
        if len(assignments) != len(child_ids):
            raise ProtocolSequenceError(f"{len(assignments)} assignments for {len(child_ids)} children")
        parts = [np.asarray(a, dtype=np.int64) for a in assignments]
        rest = np.asarray(unassigned, dtype=np.int64)
        routed = np.concatenate(parts + [rest]) if parts else rest
        if routed.size != rows.size or not np.array_equal(np.sort(routed), np.sort(rows)):
            raise ProtocolSequenceError(f"split of {node_id!r} does not cover the node's rows exactly once")
        for child_id, part in zip(child_ids, parts):
            self.node_rows[child_id] = part
        self.node_rows[default_child_id] = rest
        logger.secure_log("debug", "Applied split", party_id=self.party_id, node_id=node_id, children=len(child_ids))
