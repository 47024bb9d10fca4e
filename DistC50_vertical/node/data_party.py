"""
data_party.py

Data party node. Holds one vertical partition, registers with the coordinator
and serves three kinds of work over that link and over ring links from its
predecessor:

- Initiation: bind the local columns to their joint-schema indices, reset the
  row ledger, answer with row count and attribute metadata
- CountRound: add the local contribution to the masked state and pass it on to
  the ring successor (or back to the coordinator when last)
- SplitDecision: route the rows of a tree node to its children

Failures while handling a message are reported to the coordinator as Error
messages carrying the error kind; the party keeps serving.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from .. import constants, logger
from ..builder import BuildConfig
from ..errors import C50Error, ConnectivityError, ProtocolSequenceError, SchemaMismatch, error_kind
from ..privacy import protocol_messages as msg
from ..privacy.secure_sum import SecureSum
from ..schema import DataPartition, parse_partitioning
from .ledger import PartyLedger
from .state import NodeState, NodeStateMachine
from .transport import Connection, ConnectionRegistry, connect_with_retries


class DataParty:
    def __init__(self, party_id: str, host: Optional[str], port: int,
                 coordinator_host: str, coordinator_port: int, partition: DataPartition):
        self.party_id = party_id
        self.host = host or constants.DEFAULTS.get("DEFAULT_HOST", "127.0.0.1")
        self.port = port
        self.coordinator_host = coordinator_host
        self.coordinator_port = coordinator_port
        self.partition = partition
        self.machine = NodeStateMachine(party_id)

        self.coordinator: Optional[Connection] = None
        self.coordinator_id = constants.DEFAULTS.get("COORDINATOR_ID", "coordinator")
        self.peers = ConnectionRegistry()      # outgoing ring links, by successor id
        self.inbound = ConnectionRegistry()    # incoming ring links, by predecessor id
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks = set()
        self._dial_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._stopping = False

        # set by Initiation
        self.ledger: Optional[PartyLedger] = None
        self.engine: Optional[SecureSum] = None
        self.ring: List[str] = []
        self.node_addresses: Dict[str, Tuple[str, int]] = {}

    @property
    def state(self) -> NodeState:
        return self.machine.state

    # ---- lifecycle ----
    async def start(self) -> int:
        try:
            self._server = await asyncio.start_server(self._handle_peer, self.host, self.port)
        except OSError as e:
            self.machine.transition(NodeState.STOPPED)
            raise ConnectivityError(f"{self.party_id} cannot bind {self.host}:{self.port}: {e}") from e
        self.port = self._server.sockets[0].getsockname()[1]
        self.machine.transition(NodeState.LISTENING)
        logger.secure_log("info", "Data party listening", party_id=self.party_id, host=self.host, port=self.port)

        self.machine.transition(NodeState.CONNECTING)
        try:
            self.coordinator = await connect_with_retries(self.coordinator_host, self.coordinator_port,
                                                          self.coordinator_id)
            await self.coordinator.send(msg.Message.wrap(
                self.party_id, self.coordinator_id, msg.Register(self.party_id, self.host, self.port)))
        except ConnectivityError:
            self.machine.transition(NodeState.FAILED)
            await self.stop()
            raise
        self._spawn(self._read_coordinator())
        return self.port

    async def serve_forever(self):
        await self._stopped.wait()

    async def stop(self):
        if self._stopping:
            await self._stopped.wait()
            return
        if self.state is NodeState.STOPPED:
            return
        self._stopping = True
        if self._server is not None:
            self._server.close()
        if self.coordinator is not None:
            await self.coordinator.close()
        await self.peers.close_all()
        await self.inbound.close_all()
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
        self.machine.transition(NodeState.STOPPED)
        self._stopped.set()
        logger.secure_log("info", "Data party stopped", party_id=self.party_id)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ---- connections ----
    async def _read_coordinator(self):
        try:
            while True:
                message = await self.coordinator.receive()
                if message.type is msg.MessageType.SHUTDOWN:
                    logger.secure_log("info", "Shutdown requested", party_id=self.party_id,
                                      reason=message.payload.reason)
                    break
                await self._dispatch(message)
        except (ConnectivityError, ProtocolSequenceError) as e:
            if not self._stopping:
                logger.secure_log("error", "Lost coordinator connection", party_id=self.party_id, error=str(e))
                if self.machine.can(NodeState.FAILED):
                    self.machine.transition(NodeState.FAILED)
        except Exception as e:
            logger.secure_log("error", "Coordinator reader crashed", party_id=self.party_id,
                              error=f"{type(e).__name__}: {e}")
            if self.machine.can(NodeState.FAILED):
                self.machine.transition(NodeState.FAILED)
        finally:
            if not self._stopping:
                self._spawn(self.stop())

    async def _handle_peer(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        conn = Connection(None, reader, writer)
        try:
            hello = await conn.receive(timeout=float(constants.DEFAULTS.get("SOCKET_TIMEOUT", 30.0)))
            if hello.type is not msg.MessageType.REGISTER:
                raise ProtocolSequenceError(f"expected Register from ring peer, got {hello.type.value}")
            conn.peer_id = hello.payload.party_id
            await self.inbound.add(conn.peer_id, conn)
            while True:
                await self._dispatch(await conn.receive())
        except (ConnectivityError, ProtocolSequenceError) as e:
            logger.secure_log("debug", "Ring link closed", party_id=self.party_id, peer=conn.peer_id, error=str(e))
        finally:
            self._tasks.discard(task)
            if conn.peer_id is not None:
                await self.inbound.remove(conn.peer_id, conn)
            await conn.close()

    async def _successor(self, peer_id: str) -> Connection:
        async with self._dial_lock:
            conn = await self.peers.get(peer_id)
            if conn is not None and not conn.closed:
                return conn
            try:
                host, port = self.node_addresses[peer_id]
            except KeyError:
                raise ConnectivityError(f"no address known for ring peer {peer_id}") from None
            conn = await connect_with_retries(host, int(port), peer_id)
            await conn.send(msg.Message.wrap(self.party_id, peer_id, msg.Register(self.party_id, self.host, self.port)))
            await self.peers.add(peer_id, conn)
            return conn

    async def _reply(self, payload):
        await self.coordinator.send(msg.Message.wrap(self.party_id, self.coordinator_id, payload))

    # ---- dispatch ----
    async def _dispatch(self, message: msg.Message):
        p = message.payload
        request = getattr(p, "request_id", None) or getattr(p, "round_id", "")
        try:
            if message.destination_id != self.party_id:
                raise ProtocolSequenceError(
                    f"{self.party_id} received a message for {message.destination_id} from {message.source_id}"
                )
            if message.type is msg.MessageType.INITIATION:
                await self._on_initiation(p)
            elif message.type is msg.MessageType.COUNT_ROUND:
                await self._on_count_round(message.source_id, p)
            elif message.type is msg.MessageType.SPLIT_DECISION:
                await self._on_split(p)
            else:
                raise ProtocolSequenceError(f"{self.party_id} cannot handle {message.type.value} here")
        except C50Error as e:
            logger.secure_log("warning", "Request failed", party_id=self.party_id,
                              type=message.type.value, kind=error_kind(e), error=str(e))
            await self._reply(msg.ErrorMessage(in_reply_to=request, kind=error_kind(e), detail=str(e)))

    async def _on_initiation(self, p: msg.InitiationMessage):
        config = BuildConfig.from_configuration(p.configuration)
        assignment = dict(parse_partitioning(p.attribute_partitioning))
        if self.party_id not in assignment:
            raise SchemaMismatch(f"partitioning assigns no attributes to {self.party_id}")
        class_index = config.class_index
        if class_index is None:
            class_index = max(i for idx in assignment.values() for i in idx)
        bound = self.partition.bind(assignment[self.party_id], class_index)

        self.coordinator_id = p.coordinator_id
        self.ring = [p.coordinator_id] + list(p.participating_nodes)
        if self.party_id not in self.ring:
            raise ProtocolSequenceError(f"{self.party_id} is not a participating node")
        self.node_addresses = {pid: (addr[0], int(addr[1])) for pid, addr in p.node_addresses.items()}
        self.engine = SecureSum(self.party_id, len(self.ring), allow_two_party=config.allow_two_party)
        self.ledger = PartyLedger(self.party_id, bound)
        self.machine.transition(NodeState.ROUND_ACTIVE)

        attributes = [dict(index=g, **a.to_dict()) for g, a in zip(bound.global_indices, bound.attributes)]
        await self._reply(msg.AckMessage(in_reply_to=p.request_id, details={
            "rowCount": bound.row_count,
            "attributes": attributes,
            "holdsClass": bound.holds_class,
        }))
        logger.secure_log("info", "Initiated", party_id=self.party_id, dataset=p.dataset_name,
                          attributes=len(attributes), instances=bound.row_count)

    async def _on_count_round(self, source_id: str, p: msg.CountRoundMessage):
        if self.ledger is None:
            raise ProtocolSequenceError(f"{self.party_id} received a count round before Initiation")
        incoming = p.state()
        if not isinstance(p.ring, list) or p.ring != self.ring:
            raise ProtocolSequenceError(f"count round {p.round_id} uses a different ring")
        r = incoming.round
        if not 1 <= r < len(self.ring) or self.ring[r] != self.party_id or self.ring[r - 1] != source_id:
            raise ProtocolSequenceError(
                f"count round {p.round_id} reached {self.party_id} out of order (round {r} from {source_id})"
            )
        values = self.ledger.contribution(p.node_id, p.kind, p.attribute_index, p.num_attribute_values,
                                          p.num_class_values, p.contributor)
        state = self.engine.participate_array(incoming, values)
        forwarded = p.with_state(state)
        if state.round == len(self.ring):
            await self._reply(forwarded)
        else:
            successor = self.ring[state.round]
            conn = await self._successor(successor)
            await conn.send(msg.Message.wrap(self.party_id, successor, forwarded))

    async def _on_split(self, p: msg.SplitDecisionMessage):
        if self.ledger is None:
            raise ProtocolSequenceError(f"{self.party_id} received a split decision before Initiation")
        if p.assignments is None:
            assignments, unassigned = self.ledger.compute_split(p.node_id, p.attribute_index, p.num_values)
        else:
            assignments, unassigned = p.assignments, p.unassigned or []
        self.ledger.apply_split(p.node_id, p.child_ids, p.default_child_id, assignments, unassigned)
        details = {"assignments": assignments, "unassigned": unassigned} if p.assignments is None else {}
        await self._reply(msg.AckMessage(in_reply_to=p.request_id, details=details))
