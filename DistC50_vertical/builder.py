"""
builder.py

Distributed top-down tree construction.

DistributedTreeBuilder grows the tree at the coordinator. It never sees rows:
every count it needs comes from a CountSource, which runs the secure-sum ring
(node/coordinator.py over TCP, privacy/local_ring.py in-process). Per tree node:

1. stop with a leaf when depth >= max_depth, rows < min_instances, the class
   distribution is pure, or every non-class attribute has been used
2. otherwise obtain the global attribute x class matrix of every unused,
   evaluable nominal attribute and compute its gain ratio
3. keep the best (strictly greater wins, so ties go to the earlier attribute);
   below min_gain_ratio -> leaf
4. tell the parties to partition on the winner and recurse per value; rows
   without a usable value land in a default child, the majority leaf of the node
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from . import constants, logger, monitoring
from .errors import DataFormatError, ProtocolSequenceError, SchemaMismatch
from .privacy.secure_gain import gain_ratio, information_gain
from .schema import AttributeMetadata
from .tree import InternalNode, LeafNode, TreeNode


def _parse_bool(value: str) -> bool:
    v = str(value).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise DataFormatError(f"not a boolean: {value!r}")


@dataclass
class BuildConfig:
    max_depth: int = 10
    min_instances: int = 5
    min_gain_ratio: float = 0.01
    class_index: Optional[int] = None
    allow_two_party: bool = False
    concurrent_rounds: bool = False

    @classmethod
    def defaults(cls) -> "BuildConfig":
        return cls(
            max_depth=constants.DEFAULTS.get("MAX_TREE_DEPTH", 10),
            min_instances=constants.DEFAULTS.get("MIN_INSTANCES_PER_LEAF", 5),
            min_gain_ratio=constants.DEFAULTS.get("MIN_GAIN_THRESHOLD", 0.01),
        )

    @classmethod
    def from_configuration(cls, configuration: Mapping[str, str]) -> "BuildConfig":
        """Parse the Initiation configuration map; unknown keys are ignored."""
        cfg = cls.defaults()
        parsers = {
            "maxDepth": ("max_depth", int),
            "minInstances": ("min_instances", int),
            "minGainRatio": ("min_gain_ratio", float),
            "classIndex": ("class_index", int),
            "allowTwoPartyRing": ("allow_two_party", _parse_bool),
            "concurrentRounds": ("concurrent_rounds", _parse_bool),
        }
        for key, raw in (configuration or {}).items():
            if key not in parsers:
                continue
            attr, parse = parsers[key]
            try:
                setattr(cfg, attr, parse(raw))
            except (TypeError, ValueError) as e:
                raise DataFormatError(f"bad value for {key}: {raw!r}") from e
        if cfg.max_depth < 0 or cfg.min_instances < 0:
            raise DataFormatError("maxDepth and minInstances must be non-negative")
        return cfg

    def to_configuration(self) -> Dict[str, str]:
        conf = {
            "maxDepth": str(self.max_depth),
            "minInstances": str(self.min_instances),
            "minGainRatio": repr(float(self.min_gain_ratio)),
            "allowTwoPartyRing": "true" if self.allow_two_party else "false",
            "concurrentRounds": "true" if self.concurrent_rounds else "false",
        }
        if self.class_index is not None:
            conf["classIndex"] = str(self.class_index)
        return conf


class CountSource(ABC):
    """Where the builder gets global counts and how it pushes split decisions."""

    def can_evaluate(self, attribute_index: int) -> bool:
        return True

    @abstractmethod
    async def class_distribution(self, node_id: str, num_class_values: int) -> np.ndarray:
        """Global class tally over the rows at node_id."""

    @abstractmethod
    async def attribute_counts(self, node_id: str, attribute_index: int, num_values: int,
                               num_class_values: int) -> np.ndarray:
        """Global attribute x class matrix over the rows at node_id."""

    @abstractmethod
    async def partition(self, node_id: str, attribute_index: int, num_values: int,
                        child_ids: Sequence[str], default_child_id: str):
        """Make every party route the rows of node_id to the child ids."""


@dataclass
class SplitCandidate:
    attribute_index: int
    counts: np.ndarray
    gain: float
    gain_ratio: float


def evaluate_candidate(attribute_index: int, counts: np.ndarray, node_total: int) -> SplitCandidate:
    """
    Gain is computed over the rows whose attribute value is known and scaled by
    the known fraction of the node, so attributes with missing values are
    penalised the way C4.5 does it.
    """
    counts = np.asarray(counts, dtype=np.int64)
    known = int(counts.sum())
    gain = information_gain(counts, known)
    if node_total > 0 and known < node_total:
        gain *= known / float(node_total)
    return SplitCandidate(attribute_index, counts, gain, gain_ratio(gain, counts, known))


def select_best(candidates: Sequence[SplitCandidate]) -> Optional[SplitCandidate]:
    best = None
    for c in candidates:
        if best is None or c.gain_ratio > best.gain_ratio:
            best = c
    return best


def majority_class(distribution: Sequence[int]) -> int:
    return int(np.argmax(np.asarray(distribution))) if len(distribution) else 0


class DistributedTreeBuilder:
    def __init__(self, source: CountSource, config: Optional[BuildConfig] = None):
        self.source = source
        self.config = config or BuildConfig.defaults()
        self.nodes_evaluated = 0
        self._attributes: Dict[int, AttributeMetadata] = {}
        self._class_index = -1

    async def build(self, attributes: Union[Sequence[AttributeMetadata], Mapping[int, AttributeMetadata]],
                    class_index: int) -> TreeNode:
        """
        attributes: joint schema, either a list (position = global index) or a
        mapping global index -> metadata.
        """
        if not isinstance(attributes, Mapping):
            attributes = dict(enumerate(attributes))
        if class_index not in attributes or not attributes[class_index].is_nominal:
            raise DataFormatError(f"class attribute {class_index} must be a nominal attribute of the schema")
        self._attributes = dict(attributes)
        self._class_index = class_index
        self.nodes_evaluated = 0

        n_class = self._attributes[class_index].num_values
        root_dist = np.asarray(await self.source.class_distribution("root", n_class), dtype=np.int64)
        logger.secure_log("info", "Building tree", attributes=len(self._attributes), instances=int(root_dist.sum()))
        tree = await self._grow("root", root_dist, frozenset(), 0)
        logger.secure_log("info", "Tree complete", nodes_evaluated=self.nodes_evaluated)
        return tree

    # ---- recursion ----
    def _leaf(self, node_id: str, distribution, class_idx: Optional[int] = None) -> LeafNode:
        dist = [int(x) for x in distribution]
        idx = majority_class(dist) if class_idx is None else class_idx
        labels = self._attributes[self._class_index].nominal_values
        return LeafNode(class_index=idx, class_distribution=dist,
                        class_label=labels[idx] if idx < len(labels) else str(idx), node_id=node_id)

    def _stop_reason(self, distribution: np.ndarray, used: FrozenSet[int], depth: int) -> Optional[str]:
        if depth >= self.config.max_depth:
            return "max_depth"
        if int(distribution.sum()) < self.config.min_instances:
            return "min_instances"
        if np.count_nonzero(distribution) <= 1:
            return "homogeneous"
        if len(used) >= len(self._attributes) - 1:
            return "attributes_exhausted"
        return None

    def _candidates(self, used: FrozenSet[int]) -> List[int]:
        return [
            idx for idx in sorted(self._attributes)
            if idx != self._class_index
            and idx not in used
            and self._attributes[idx].is_nominal
            and self._attributes[idx].num_values > 0
            and self.source.can_evaluate(idx)
        ]

    async def _grow(self, node_id: str, distribution: np.ndarray, used: FrozenSet[int], depth: int) -> TreeNode:
        reason = self._stop_reason(distribution, used, depth)
        if reason is not None:
            logger.secure_log("debug", "Leaf", node_id=node_id, reason=reason)
            return self._leaf(node_id, distribution)

        try:
            best, n_candidates = await self._find_best_split(node_id, distribution, used)
        except ProtocolSequenceError as e:
            logger.secure_log("warning", "Split search aborted, making leaf", node_id=node_id, error=str(e))
            return self._leaf(node_id, distribution)

        self.nodes_evaluated += 1
        monitoring.log_split_search(self.nodes_evaluated, depth, int(distribution.sum()), n_candidates,
                                    best.gain_ratio if best else 0.0)
        if best is None or best.gain_ratio < self.config.min_gain_ratio:
            logger.secure_log("debug", "Leaf", node_id=node_id, reason="min_gain")
            return self._leaf(node_id, distribution)

        attr = self._attributes[best.attribute_index]
        num_values = attr.num_values
        child_ids = [f"{node_id}.{v}" for v in range(num_values)]
        default_id = f"{node_id}.default"
        try:
            await self.source.partition(node_id, best.attribute_index, num_values, child_ids, default_id)
        except (ProtocolSequenceError, SchemaMismatch) as e:
            logger.secure_log("warning", "Split decision rejected, making leaf", node_id=node_id, error=str(e))
            return self._leaf(node_id, distribution)
        logger.secure_log("info", "Split", node_id=node_id, attribute=attr.name,
                          gain_ratio=round(best.gain_ratio, 6), depth=depth)

        parent_majority = majority_class(distribution)
        child_used = used | {best.attribute_index}
        children: List[TreeNode] = []
        for v, child_id in enumerate(child_ids):
            child_dist = best.counts[v]
            if int(child_dist.sum()) == 0:
                children.append(self._leaf(child_id, child_dist, parent_majority))
            else:
                children.append(await self._grow(child_id, child_dist, child_used, depth + 1))

        return InternalNode(
            split_attribute=attr.name,
            attribute_index=best.attribute_index,
            children=children,
            default_child=self._leaf(default_id, distribution),
            value_labels=attr.nominal_values,
            node_id=node_id,
        )

    async def _find_best_split(self, node_id: str, distribution: np.ndarray,
                               used: FrozenSet[int]) -> Tuple[Optional[SplitCandidate], int]:
        indices = self._candidates(used)
        n_class = self._attributes[self._class_index].num_values

        def fetch(idx):
            return self.source.attribute_counts(node_id, idx, self._attributes[idx].num_values, n_class)

        if self.config.concurrent_rounds:
            results = await asyncio.gather(*(fetch(idx) for idx in indices), return_exceptions=True)
        else:
            results = []
            for idx in indices:
                try:
                    results.append(await fetch(idx))
                except SchemaMismatch as e:
                    results.append(e)

        node_total = int(distribution.sum())
        candidates = []
        for idx, res in zip(indices, results):
            if isinstance(res, SchemaMismatch):
                logger.secure_log("warning", "Attribute excluded", node_id=node_id, attribute=idx, error=str(res))
                continue
            if isinstance(res, BaseException):
                raise res
            candidates.append(evaluate_candidate(idx, res, node_total))
        return select_best(candidates), len(indices)
