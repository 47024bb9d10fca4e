"""
secure_sum.py

Additive-masking secure sum over a ring of parties.

The initiator draws a random mask r, hands (v_1 + r) to the next party, every
other party adds its own value exactly once in ring order, and only the
initiator, who kept r, can subtract it again:

    state = engine.initiate(v_1)            # round 1, mask stays inside engine
    state = other.participate(state, v_2)   # round 2
    ...
    total = engine.finalize(state)          # round must equal ring size

Design notes:
- The mask never leaves the initiating engine. States carry a session id, the
  initiator id, the round counter and the partial sum(s) only, so a state can be
  serialised and forwarded as-is.
- With a ring of two, the non-initiating party learns v_initiator = sum - v_self.
  Such rings are refused unless allow_two_party=True is passed explicitly.
- The array variant masks every position independently so a whole count
  matrix (flattened) needs a single pass around the ring.
"""

import os
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple

from .. import constants, logger
from ..errors import ProtocolStateError


@dataclass(frozen=True)
class SecureSumState:
    session_id: str
    initiator: str
    round: int
    partial_sum: int


@dataclass(frozen=True)
class SecureSumArrayState:
    session_id: str
    initiator: str
    round: int
    partial_sums: Tuple[int, ...]


def _random_mask(bits: int) -> int:
    n_bytes = (bits + 7) // 8
    return int.from_bytes(os.urandom(n_bytes), "big") >> (n_bytes * 8 - bits)


def _check_value(value) -> int:
    v = int(value)
    if v != value or v < 0:
        raise ValueError(f"secure sum inputs must be non-negative integers, got {value!r}")
    return v


class SecureSum:
    def __init__(self, node_id: str, num_parties: int, mask_bits: int = None, allow_two_party: bool = False):
        """
        node_id: id of the ring member owning this engine
        num_parties: ring size, initiator included
        mask_bits: random bits per mask (constants MASK_BITS by default, at least MIN_MASK_BITS)
        allow_two_party: accept a 2-member ring, which gives no privacy
        """
        if num_parties < 2:
            raise ValueError("secure sum needs a ring of at least 2 parties")
        if num_parties == 2:
            if not allow_two_party:
                raise ProtocolStateError(
                    "a 2-party ring reveals the initiator's value to the other party; "
                    "use at least 3 parties or pass allow_two_party=True"
                )
            logger.secure_log("warning", "Secure sum running on a 2-party ring: no privacy", node_id=node_id)
        if mask_bits is None:
            mask_bits = constants.DEFAULTS.get("MASK_BITS", 64)
        min_bits = constants.DEFAULTS.get("MIN_MASK_BITS", 32)
        if mask_bits < min_bits:
            raise ValueError(f"mask_bits must be at least {min_bits}")
        self.node_id = str(node_id)
        self.num_parties = int(num_parties)
        self.mask_bits = int(mask_bits)
        # session_id -> mask (int) or masks (tuple); only ever populated at the initiator
        self._masks: Dict[str, object] = {}

    def pending_sessions(self) -> List[str]:
        return list(self._masks.keys())

    def discard(self, session_id: str):
        """Forget the mask of an abandoned session (e.g. the ring failed)."""
        self._masks.pop(session_id, None)

    # ---- scalar ----
    def initiate(self, local_value: int) -> SecureSumState:
        v = _check_value(local_value)
        session_id = uuid.uuid4().hex
        mask = _random_mask(self.mask_bits)
        self._masks[session_id] = mask
        return SecureSumState(session_id=session_id, initiator=self.node_id, round=1, partial_sum=v + mask)

    def participate(self, state: SecureSumState, local_value: int) -> SecureSumState:
        v = _check_value(local_value)
        self._check_open(state.round)
        return replace(state, round=state.round + 1, partial_sum=state.partial_sum + v)

    def finalize(self, state: SecureSumState) -> int:
        mask = self._take_mask(state.session_id, state.initiator, state.round)
        if isinstance(mask, tuple):
            raise ProtocolStateError("session was initiated as an array sum")
        return state.partial_sum - mask

    # ---- array ----
    def initiate_array(self, local_values: Sequence[int]) -> SecureSumArrayState:
        values = [_check_value(v) for v in local_values]
        session_id = uuid.uuid4().hex
        masks = tuple(_random_mask(self.mask_bits) for _ in values)
        self._masks[session_id] = masks
        return SecureSumArrayState(
            session_id=session_id,
            initiator=self.node_id,
            round=1,
            partial_sums=tuple(v + m for v, m in zip(values, masks)),
        )

    def participate_array(self, state: SecureSumArrayState, local_values: Sequence[int]) -> SecureSumArrayState:
        values = [_check_value(v) for v in local_values]
        if len(values) != len(state.partial_sums):
            raise ValueError(f"expected {len(state.partial_sums)} values, got {len(values)}")
        self._check_open(state.round)
        return replace(
            state,
            round=state.round + 1,
            partial_sums=tuple(s + v for s, v in zip(state.partial_sums, values)),
        )

    def finalize_array(self, state: SecureSumArrayState) -> List[int]:
        masks = self._take_mask(state.session_id, state.initiator, state.round)
        if not isinstance(masks, tuple) or len(masks) != len(state.partial_sums):
            raise ProtocolStateError("session mask does not match the array state")
        return [s - m for s, m in zip(state.partial_sums, masks)]

    # ---- internals ----
    def _check_open(self, round_no: int):
        if round_no < 1 or round_no >= self.num_parties:
            raise ProtocolStateError(
                f"secure sum state at round {round_no} cannot take another contribution "
                f"in a ring of {self.num_parties}"
            )

    def _take_mask(self, session_id: str, initiator: str, round_no: int):
        if initiator != self.node_id or session_id not in self._masks:
            raise ProtocolStateError(f"{self.node_id} did not initiate session {session_id}; only the initiator may finalize")
        if round_no != self.num_parties:
            raise ProtocolStateError(
                f"ring incomplete: state at round {round_no}, ring has {self.num_parties} members"
            )
        return self._masks.pop(session_id)
