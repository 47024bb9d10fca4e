"""
state.py

Lifecycle state machine shared by the coordinator and the data parties.

    CREATED -> LISTENING -> CONNECTING -> CONNECTED_TO_ALL_PARTIES
            -> ROUND_ACTIVE (<-> ROUND_ACTIVE) -> TREE_COMPLETE -> STOPPED

Every state up to TREE_COMPLETE may go straight to STOPPED, and every state from
LISTENING through ROUND_ACTIVE may go to FAILED. A data party never reaches
CONNECTED_TO_ALL_PARTIES, it moves from CONNECTING to ROUND_ACTIVE once the
Initiation message arrives.
"""

from enum import Enum
from typing import Dict, FrozenSet

from .. import logger
from ..errors import ProtocolStateError


class NodeState(str, Enum):
    CREATED = "CREATED"
    LISTENING = "LISTENING"
    CONNECTING = "CONNECTING"
    CONNECTED_TO_ALL_PARTIES = "CONNECTED_TO_ALL_PARTIES"
    ROUND_ACTIVE = "ROUND_ACTIVE"
    TREE_COMPLETE = "TREE_COMPLETE"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


_S = NodeState
TRANSITIONS: Dict[NodeState, FrozenSet[NodeState]] = {
    _S.CREATED: frozenset({_S.LISTENING, _S.STOPPED}),
    _S.LISTENING: frozenset({_S.CONNECTING, _S.STOPPED, _S.FAILED}),
    _S.CONNECTING: frozenset({_S.CONNECTED_TO_ALL_PARTIES, _S.ROUND_ACTIVE, _S.STOPPED, _S.FAILED}),
    _S.CONNECTED_TO_ALL_PARTIES: frozenset({_S.ROUND_ACTIVE, _S.STOPPED, _S.FAILED}),
    _S.ROUND_ACTIVE: frozenset({_S.ROUND_ACTIVE, _S.TREE_COMPLETE, _S.STOPPED, _S.FAILED}),
    # a finished party can be initiated again for another tree
    _S.TREE_COMPLETE: frozenset({_S.ROUND_ACTIVE, _S.STOPPED}),
    _S.FAILED: frozenset({_S.STOPPED}),
    _S.STOPPED: frozenset(),
}


class NodeStateMachine:
    def __init__(self, node_id: str):
        self.node_id = node_id
        self.state = NodeState.CREATED

    def transition(self, new_state: NodeState):
        new_state = NodeState(new_state)
        if new_state not in TRANSITIONS[self.state]:
            raise ProtocolStateError(f"{self.node_id}: illegal transition {self.state.value} -> {new_state.value}")
        if new_state is not self.state:
            logger.secure_log("debug", "State change", node_id=self.node_id,
                              old=self.state.value, new=new_state.value)
        self.state = new_state

    def can(self, new_state: NodeState) -> bool:
        return NodeState(new_state) in TRANSITIONS[self.state]

    @property
    def running(self) -> bool:
        return self.state not in (NodeState.CREATED, NodeState.STOPPED, NodeState.FAILED)
