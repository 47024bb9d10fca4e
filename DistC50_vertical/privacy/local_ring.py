"""
local_ring.py

In-process CountSource: the coordinator engine and every party's ledger live
in one process, but counts still travel as masked secure-sum states through
the full ring (coordinator first, then the parties in partitioning order).
Useful for tests and for building without a network.
"""

from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .. import constants, logger
from ..builder import CountSource
from ..errors import ProtocolSequenceError, SchemaMismatch
from ..node.ledger import ATTRIBUTE_ROUND, CLASS_ROUND, PartyLedger, attribute_owner, class_holder
from ..schema import DataPartition
from .secure_gain import SecureInformationGain
from .secure_sum import SecureSum


class LocalRing(CountSource):
    def __init__(self, partitions: Mapping[str, DataPartition], class_index: int,
                 allow_two_party: bool = False, mask_bits: Optional[int] = None):
        """partitions: party id -> bound DataPartition, in ring order."""
        self.order: List[str] = list(partitions)
        self.class_index = class_index
        self.ledgers: Dict[str, PartyLedger] = OrderedDict(
            (pid, PartyLedger(pid, p)) for pid, p in partitions.items()
        )
        self.partitioning: List[Tuple[str, List[int]]] = [
            (pid, list(p.global_indices or [])) for pid, p in partitions.items()
        ]
        ring_size = 1 + len(self.order)
        coordinator_id = constants.DEFAULTS.get("COORDINATOR_ID", "coordinator")
        self.engine = SecureSum(coordinator_id, ring_size, mask_bits, allow_two_party)
        self.party_engines = {
            pid: SecureSum(pid, ring_size, mask_bits, allow_two_party) for pid in self.order
        }
        self.gain = SecureInformationGain(self.engine)
        self.rounds = 0
        # partial sums seen by each party, kept for inspection in tests
        self.observed: Dict[str, List[Tuple[int, ...]]] = {pid: [] for pid in self.order}

    def rows(self, party_id: str, node_id: str) -> np.ndarray:
        return self.ledgers[party_id].rows(node_id)

    def can_evaluate(self, attribute_index: int) -> bool:
        return attribute_owner(self.partitioning, attribute_index, self.class_index) is not None

    async def _ring_pass(self, node_id: str, kind: str, attribute_index: int, num_attr_values: int,
                         num_class_values: int, contributor: str, shape: Tuple[int, ...]) -> np.ndarray:
        size = int(np.prod(shape))
        state = self.gain.initiate_counts(np.zeros(size, dtype=np.int64))
        try:
            for pid in self.order:
                self.observed[pid].append(state.partial_sums)
                vec = self.ledgers[pid].contribution(
                    node_id, kind, attribute_index, num_attr_values, num_class_values, contributor
                )
                state = self.party_engines[pid].participate_array(state, vec)
        except Exception:
            self.engine.discard(state.session_id)
            raise
        self.rounds += 1
        return self.gain.finalize_counts(state, shape)

    async def class_distribution(self, node_id: str, num_class_values: int) -> np.ndarray:
        contributor = class_holder(self.partitioning, self.class_index)
        if contributor is None:
            raise SchemaMismatch("no party holds the class column")
        return await self._ring_pass(node_id, CLASS_ROUND, self.class_index, 0, num_class_values,
                                     contributor, (num_class_values,))

    async def attribute_counts(self, node_id: str, attribute_index: int, num_values: int,
                               num_class_values: int) -> np.ndarray:
        contributor = attribute_owner(self.partitioning, attribute_index, self.class_index)
        if contributor is None:
            raise SchemaMismatch(f"no party holds attribute {attribute_index} together with the class")
        return await self._ring_pass(node_id, ATTRIBUTE_ROUND, attribute_index, num_values, num_class_values,
                                     contributor, (num_values, num_class_values))

    async def partition(self, node_id: str, attribute_index: int, num_values: int,
                        child_ids: Sequence[str], default_child_id: str):
        owner = attribute_owner(self.partitioning, attribute_index)
        if owner is None:
            raise ProtocolSequenceError(f"no party owns attribute {attribute_index}")
        assignments, unassigned = self.ledgers[owner].compute_split(node_id, attribute_index, num_values)
        for ledger in self.ledgers.values():
            ledger.apply_split(node_id, child_ids, default_child_id, assignments, unassigned)
        logger.secure_log("debug", "Local ring partitioned", node_id=node_id, owner=owner)
