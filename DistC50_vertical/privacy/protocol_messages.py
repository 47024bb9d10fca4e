"""
protocol_messages.py

Message types exchanged between the coordinator and the data parties.

Every frame is a Message envelope {sourceId, destinationId, type, payload}.
The set of payloads is closed: PAYLOAD_TYPES maps each MessageType to exactly
one dataclass, and decoding rejects anything else. Payload fields are snake_case
in Python and camelCase on the wire.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ProtocolSequenceError
from .secure_sum import SecureSumArrayState


class MessageType(str, Enum):
    REGISTER = "Register"
    INITIATION = "Initiation"
    COUNT_ROUND = "CountRound"
    SPLIT_DECISION = "SplitDecision"
    ACK = "Ack"
    ERROR = "Error"
    SHUTDOWN = "Shutdown"


@dataclass
class Register:
    party_id: str
    host: str
    port: int


@dataclass
class InitiationMessage:
    request_id: str
    coordinator_id: str
    participating_nodes: List[str]
    dataset_name: str
    attribute_partitioning: List[str]  # "<csv-indices>:<partyId>"
    configuration: Dict[str, str]
    node_addresses: Dict[str, List[Any]] = field(default_factory=dict)  # partyId -> [host, port]


@dataclass
class CountRoundMessage:
    """
    One secure-sum pass for a tree node. kind is "class" (class distribution)
    or "attribute" (flattened attribute x class matrix of attribute_index).
    The secure-sum state rides along in session_id/initiator/round/partial_sums.
    """
    round_id: str
    node_id: str
    kind: str
    attribute_index: int
    contributor: str
    num_attribute_values: int
    num_class_values: int
    ring: List[str]
    session_id: str
    initiator: str
    round: int
    partial_sums: List[int]

    def state(self) -> SecureSumArrayState:
        try:
            return SecureSumArrayState(
                session_id=str(self.session_id),
                initiator=str(self.initiator),
                round=int(self.round),
                partial_sums=tuple(int(x) for x in self.partial_sums),
            )
        except (TypeError, ValueError, OverflowError) as e:
            raise ProtocolSequenceError(f"count round {self.round_id} carries a malformed state: {e}") from e

    def with_state(self, state: SecureSumArrayState) -> "CountRoundMessage":
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d.update(session_id=state.session_id, initiator=state.initiator,
                 round=state.round, partial_sums=list(state.partial_sums))
        return CountRoundMessage(**d)

    def shape(self):
        if self.kind == "class":
            return (self.num_class_values,)
        return (self.num_attribute_values, self.num_class_values)


@dataclass
class SplitDecisionMessage:
    """
    Split of tree node node_id on attribute_index. Sent first to the owner of
    the attribute without assignments; the owner answers with the row positions
    per child, which are then forwarded to every other party.
    """
    request_id: str
    node_id: str
    attribute_index: int
    num_values: int
    child_ids: List[str]
    default_child_id: str
    assignments: Optional[List[List[int]]] = None
    unassigned: Optional[List[int]] = None


@dataclass
class AckMessage:
    in_reply_to: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorMessage:
    in_reply_to: str
    kind: str
    detail: str = ""


@dataclass
class ShutdownMessage:
    reason: str = ""


PAYLOAD_TYPES = {
    MessageType.REGISTER: Register,
    MessageType.INITIATION: InitiationMessage,
    MessageType.COUNT_ROUND: CountRoundMessage,
    MessageType.SPLIT_DECISION: SplitDecisionMessage,
    MessageType.ACK: AckMessage,
    MessageType.ERROR: ErrorMessage,
    MessageType.SHUTDOWN: ShutdownMessage,
}
_TYPE_OF_PAYLOAD = {cls: t for t, cls in PAYLOAD_TYPES.items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def payload_to_dict(payload) -> Dict[str, Any]:
    return {_camel(f.name): getattr(payload, f.name) for f in fields(payload)}


def payload_from_dict(msg_type: "MessageType", d: Dict[str, Any]):
    cls = PAYLOAD_TYPES[msg_type]
    if not isinstance(d, dict):
        raise ProtocolSequenceError(f"{msg_type.value} payload must be an object")
    kwargs = {}
    for f in fields(cls):
        key = _camel(f.name)
        if key in d:
            kwargs[f.name] = d[key]
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ProtocolSequenceError(f"malformed {msg_type.value} payload: {e}") from e


@dataclass
class Message:
    source_id: str
    destination_id: str
    type: MessageType
    payload: Any

    def __post_init__(self):
        self.type = MessageType(self.type)
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise ProtocolSequenceError(
                f"{self.type.value} message cannot carry a {type(self.payload).__name__} payload"
            )

    @classmethod
    def wrap(cls, source_id: str, destination_id: str, payload) -> "Message":
        try:
            msg_type = _TYPE_OF_PAYLOAD[type(payload)]
        except KeyError:
            raise ProtocolSequenceError(f"unknown payload type {type(payload).__name__}") from None
        return cls(source_id=source_id, destination_id=destination_id, type=msg_type, payload=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "destinationId": self.destination_id,
            "type": self.type.value,
            "payload": payload_to_dict(self.payload),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        if not isinstance(d, dict):
            raise ProtocolSequenceError("message must be a JSON object")
        try:
            msg_type = MessageType(d["type"])
            source, destination = str(d["sourceId"]), str(d["destinationId"])
        except (KeyError, ValueError) as e:
            raise ProtocolSequenceError(f"malformed message envelope: {e}") from e
        payload = payload_from_dict(msg_type, d.get("payload", {}))
        return cls(source_id=source, destination_id=destination, type=msg_type, payload=payload)
