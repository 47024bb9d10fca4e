"""
schema.py

Attribute metadata, vertically partitioned row storage and the
"<csv-indices>:<partyId>" attribute partitioning strings.

Rows are pre-discretised small integers: nominal category index or numeric
bucket. MISSING_VALUE (-1) marks an absent value.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DataFormatError, SchemaMismatch


class AttributeKind(str, Enum):
    NUMERIC = "numeric"
    NOMINAL = "nominal"


@dataclass(frozen=True)
class AttributeMetadata:
    name: str
    kind: AttributeKind
    nominal_values: Tuple[str, ...] = ()

    def __post_init__(self):
        # accept plain strings / lists from JSON and loaders
        object.__setattr__(self, "kind", AttributeKind(self.kind))
        object.__setattr__(self, "nominal_values", tuple(self.nominal_values))
        if self.kind is AttributeKind.NUMERIC and self.nominal_values:
            raise DataFormatError(f"numeric attribute {self.name!r} cannot carry nominal values")

    @property
    def is_nominal(self) -> bool:
        return self.kind is AttributeKind.NOMINAL

    @property
    def num_values(self) -> int:
        """Number of values if nominal, else 0."""
        return len(self.nominal_values)

    def value_index(self, label: str) -> int:
        try:
            return self.nominal_values.index(label)
        except ValueError:
            raise DataFormatError(f"{label!r} is not a value of attribute {self.name!r}") from None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value, "nominal_values": list(self.nominal_values)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AttributeMetadata":
        try:
            return cls(name=str(d["name"]), kind=AttributeKind(d["kind"]), nominal_values=tuple(d.get("nominal_values", ())))
        except (KeyError, ValueError) as e:
            raise DataFormatError(f"bad attribute metadata: {d!r}") from e


@dataclass
class DataPartition:
    """
    The rows one data party holds: one column per locally-held attribute.

    global_indices maps local column -> index in the joint schema; it is fixed
    when the party learns the attribute partitioning (see bind). class_index is
    the joint index of the class column.
    """
    attributes: List[AttributeMetadata]
    rows: np.ndarray
    global_indices: Optional[List[int]] = None
    class_index: Optional[int] = None
    _positions: Dict[int, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self.rows = np.asarray(self.rows, dtype=np.int64)
        if self.rows.ndim == 1 and self.rows.size == 0:
            self.rows = self.rows.reshape(0, len(self.attributes))
        if self.rows.ndim != 2 or self.rows.shape[1] != len(self.attributes):
            raise SchemaMismatch(
                f"row width {self.rows.shape[-1] if self.rows.ndim else 0} does not match "
                f"{len(self.attributes)} attributes"
            )
        if self.global_indices is not None:
            if len(self.global_indices) != len(self.attributes):
                raise SchemaMismatch(
                    f"partitioning assigns {len(self.global_indices)} columns, partition holds {len(self.attributes)}"
                )
            self._positions = {int(g): i for i, g in enumerate(self.global_indices)}

    @property
    def row_count(self) -> int:
        return int(self.rows.shape[0])

    @property
    def holds_class(self) -> bool:
        return self.class_index is not None and self.class_index in self._positions

    def owns(self, global_index: int) -> bool:
        return global_index in self._positions

    def bind(self, global_indices: Sequence[int], class_index: int) -> "DataPartition":
        """Attach the joint-schema indices learned from the Initiation message."""
        return DataPartition(
            attributes=list(self.attributes),
            rows=self.rows,
            global_indices=[int(g) for g in global_indices],
            class_index=int(class_index),
        )

    def attribute(self, global_index: int) -> AttributeMetadata:
        return self.attributes[self._position(global_index)]

    def column(self, global_index: int, row_positions: Optional[np.ndarray] = None) -> np.ndarray:
        col = self.rows[:, self._position(global_index)]
        if row_positions is not None:
            col = col[row_positions]
        return col

    def class_column(self, row_positions: Optional[np.ndarray] = None) -> np.ndarray:
        if not self.holds_class:
            raise SchemaMismatch("this partition does not hold the class column")
        return self.column(self.class_index, row_positions)

    def _position(self, global_index: int) -> int:
        if self.global_indices is None:
            raise SchemaMismatch("partition is not bound to a joint schema yet")
        try:
            return self._positions[int(global_index)]
        except KeyError:
            raise SchemaMismatch(f"attribute {global_index} is not held by this partition") from None


def parse_partitioning(entries: Sequence[str]) -> List[Tuple[str, List[int]]]:
    """
    Parse ["0,1,2:party1", "3,4:party2"] into [("party1", [0, 1, 2]), ("party2", [3, 4])].
    Order is preserved; it is the ring order of the data parties.
    """
    parsed: List[Tuple[str, List[int]]] = []
    seen = set()
    for entry in entries:
        indices_part, sep, party_id = str(entry).rpartition(":")
        party_id = party_id.strip()
        if not sep or not party_id or not indices_part.strip():
            raise DataFormatError(f"bad partitioning entry {entry!r}; expected '<csv-indices>:<partyId>'")
        if party_id in seen:
            raise DataFormatError(f"party {party_id!r} appears twice in the partitioning")
        seen.add(party_id)
        try:
            indices = [int(tok) for tok in indices_part.split(",") if tok.strip()]
        except ValueError as e:
            raise DataFormatError(f"bad attribute index in {entry!r}") from e
        if any(i < 0 for i in indices):
            raise DataFormatError(f"negative attribute index in {entry!r}")
        parsed.append((party_id, indices))
    return parsed


def format_partitioning(assignment: Sequence[Tuple[str, Sequence[int]]]) -> List[str]:
    return [",".join(str(i) for i in indices) + ":" + party_id for party_id, indices in assignment]
