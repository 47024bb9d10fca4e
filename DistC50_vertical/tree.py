"""
tree.py

Decision-tree node model held by the coordinator, its JSON round trip, a text
rendering and prediction by recursive descent.

A tree is either a LeafNode or an InternalNode. Nominal internal nodes carry
one child per attribute value plus a default child for missing or unindexed
values; numeric internal nodes carry a left (value <= threshold) and a right
child plus an optional default child. The builder only emits nominal splits,
numeric ones exist so saved trees from other sources can still be traversed.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from . import logger
from .errors import DataFormatError


@dataclass
class LeafNode:
    class_index: int
    class_distribution: List[int]
    class_label: str = ""
    node_id: str = "root"

    @property
    def is_leaf(self) -> bool:
        return True

    @property
    def instance_count(self) -> int:
        return int(sum(self.class_distribution))


@dataclass
class InternalNode:
    split_attribute: str
    attribute_index: int
    is_numeric: bool = False
    threshold: Optional[float] = None
    children: List["TreeNode"] = field(default_factory=list)
    left: Optional["TreeNode"] = None
    right: Optional["TreeNode"] = None
    default_child: Optional["TreeNode"] = None
    value_labels: Tuple[str, ...] = ()
    node_id: str = "root"

    def __post_init__(self):
        self.value_labels = tuple(self.value_labels)
        if self.is_numeric:
            if self.left is None or self.right is None or self.threshold is None:
                raise DataFormatError(f"numeric split {self.node_id!r} needs a threshold and left/right children")
            if self.children:
                raise DataFormatError(f"numeric split {self.node_id!r} cannot have indexed children")
        else:
            if not self.children:
                raise DataFormatError(f"nominal split {self.node_id!r} needs one child per value")
            if self.left is not None or self.right is not None or self.threshold is not None:
                raise DataFormatError(f"nominal split {self.node_id!r} cannot have numeric fields")
            if self.value_labels and len(self.value_labels) != len(self.children):
                raise DataFormatError(
                    f"split {self.node_id!r} has {len(self.children)} children for {len(self.value_labels)} values"
                )

    @property
    def is_leaf(self) -> bool:
        return False

    def child_for(self, value) -> Optional["TreeNode"]:
        try:
            if self.is_numeric:
                return self.left if float(value) <= self.threshold else self.right
            idx = int(round(float(value)))
        except (TypeError, ValueError, OverflowError) as e:
            raise DataFormatError(f"value {value!r} of {self.split_attribute!r} cannot be routed: {e}") from e
        if 0 <= idx < len(self.children):
            return self.children[idx]
        return None


TreeNode = Union[LeafNode, InternalNode]


# ---- JSON round trip ----
def to_dict(node: TreeNode) -> Dict[str, Any]:
    if isinstance(node, LeafNode):
        return {
            "type": "leaf",
            "nodeId": node.node_id,
            "classIndex": int(node.class_index),
            "classLabel": node.class_label,
            "classDistribution": [int(x) for x in node.class_distribution],
        }
    d = {
        "type": "internal",
        "nodeId": node.node_id,
        "splitAttribute": node.split_attribute,
        "attributeIndex": int(node.attribute_index),
        "isNumeric": bool(node.is_numeric),
        "defaultChild": to_dict(node.default_child) if node.default_child is not None else None,
    }
    if node.is_numeric:
        d.update(threshold=float(node.threshold), left=to_dict(node.left), right=to_dict(node.right))
    else:
        d.update(children=[to_dict(c) for c in node.children], valueLabels=list(node.value_labels))
    return d


def from_dict(d: Dict[str, Any]) -> TreeNode:
    try:
        if d["type"] == "leaf":
            return LeafNode(
                class_index=int(d["classIndex"]),
                class_distribution=[int(x) for x in d["classDistribution"]],
                class_label=str(d.get("classLabel", "")),
                node_id=str(d.get("nodeId", "root")),
            )
        if d["type"] != "internal":
            raise DataFormatError(f"unknown tree node type {d['type']!r}")
        default = from_dict(d["defaultChild"]) if d.get("defaultChild") is not None else None
        common = dict(
            split_attribute=str(d["splitAttribute"]),
            attribute_index=int(d["attributeIndex"]),
            default_child=default,
            node_id=str(d.get("nodeId", "root")),
        )
        if d.get("isNumeric"):
            return InternalNode(is_numeric=True, threshold=float(d["threshold"]),
                                left=from_dict(d["left"]), right=from_dict(d["right"]), **common)
        return InternalNode(children=[from_dict(c) for c in d["children"]],
                            value_labels=tuple(d.get("valueLabels", ())), **common)
    except (KeyError, TypeError, ValueError) as e:
        raise DataFormatError(f"malformed tree: {e}") from e


# ---- inspection ----
def children_of(node: TreeNode) -> List[TreeNode]:
    if isinstance(node, LeafNode):
        return []
    kids = [node.left, node.right] if node.is_numeric else list(node.children)
    if node.default_child is not None:
        kids.append(node.default_child)
    return kids


def iter_nodes(node: TreeNode):
    yield node
    for k in children_of(node):
        yield from iter_nodes(k)


def depth(node: TreeNode) -> int:
    kids = children_of(node)
    return 1 + max(depth(k) for k in kids) if kids else 0


def render_tree(node: TreeNode, indent: str = "") -> str:
    """Indented text dump, one line per node."""
    lines: List[str] = []
    _render(node, indent, "", lines)
    return "\n".join(lines)


def _render(node: TreeNode, indent: str, edge: str, lines: List[str]):
    prefix = indent + (edge + ": " if edge else "")
    if isinstance(node, LeafNode):
        label = node.class_label or str(node.class_index)
        lines.append(f"{prefix}{label} {node.class_distribution}")
        return
    lines.append(f"{prefix}[{node.split_attribute}]")
    sub = indent + "    "
    if node.is_numeric:
        _render(node.left, sub, f"<= {node.threshold:g}", lines)
        _render(node.right, sub, f"> {node.threshold:g}", lines)
    else:
        for i, child in enumerate(node.children):
            edge_label = node.value_labels[i] if node.value_labels else str(i)
            _render(child, sub, f"{node.split_attribute} = {edge_label}", lines)
    if node.default_child is not None:
        _render(node.default_child, sub, "default", lines)


# ---- prediction ----
def _feature_value(node: InternalNode, raw):
    if isinstance(raw, str) and not node.is_numeric:
        if raw in node.value_labels:
            return node.value_labels.index(raw)
        try:
            raw = float(raw)
        except ValueError:
            return None
    # nan / inf count as missing
    if isinstance(raw, float) and not math.isfinite(raw):
        return None
    return raw


def find_leaf(node: TreeNode, features: Mapping[str, Any]) -> LeafNode:
    while isinstance(node, InternalNode):
        raw = features.get(node.split_attribute)
        value = _feature_value(node, raw) if raw is not None else None
        nxt = node.child_for(value) if value is not None else None
        if nxt is None:
            if raw is None:
                logger.secure_log("warning", "Feature missing, using default branch", feature=node.split_attribute)
            nxt = node.default_child
        if nxt is None:
            raise DataFormatError(f"no branch of {node.split_attribute!r} matches and there is no default branch")
        node = nxt
    return node


def predict(node: TreeNode, features: Mapping[str, Any]) -> str:
    """Class label (or class index as text when the tree carries no labels)."""
    leaf = find_leaf(node, features)
    return leaf.class_label or str(leaf.class_index)


def predict_index(node: TreeNode, features: Mapping[str, Any]) -> int:
    return find_leaf(node, features).class_index


def predict_rows(node: TreeNode, attribute_names: Sequence[str], rows) -> List[int]:
    """Class index for every encoded row; MISSING_VALUE (-1) columns are treated as absent."""
    out = []
    for row in rows:
        features = {name: int(v) for name, v in zip(attribute_names, row) if int(v) >= 0}
        out.append(predict_index(node, features))
    return out
