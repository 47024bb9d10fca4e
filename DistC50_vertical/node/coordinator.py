"""
coordinator.py

Coordinator node: accepts party registrations, broadcasts the Initiation
message, drives every count round around the ring (coordinator -> parties in
partitioning order -> coordinator), finalizes the secure sums, runs the tree
builder on the revealed counts and broadcasts split decisions.

Flow of one run:
    await coord.start()
    tree = await coord.run("dataset", ["0,1:party1", "2,3:party2"], {"maxDepth": "5"})
    await coord.shutdown_parties()
    await coord.stop()

The coordinator is the secure-sum initiator (local value 0, it holds no rows),
so the masks of every round stay inside this process.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .. import constants, logger, monitoring
from ..builder import BuildConfig, CountSource, DistributedTreeBuilder
from ..errors import (C50Error, ConnectivityError, DataFormatError, ProtocolSequenceError,
                      SchemaMismatch, error_from_kind)
from ..privacy import protocol_messages as msg
from ..privacy.secure_gain import SecureInformationGain
from ..privacy.secure_sum import SecureSum
from ..schema import AttributeMetadata, parse_partitioning
from ..tree import LeafNode, TreeNode, depth, iter_nodes
from .ledger import ATTRIBUTE_ROUND, CLASS_ROUND, attribute_owner, class_holder
from .state import NodeState, NodeStateMachine
from .transport import Connection, ConnectionRegistry


class Coordinator(CountSource):
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, node_id: Optional[str] = None):
        self.node_id = node_id or constants.DEFAULTS.get("COORDINATOR_ID", "coordinator")
        self.host = host or constants.DEFAULTS.get("DEFAULT_HOST", "127.0.0.1")
        self.port = constants.DEFAULTS.get("DEFAULT_COORDINATOR_PORT", 9000) if port is None else port
        self.machine = NodeStateMachine(self.node_id)
        self.connections = ConnectionRegistry()
        self.addresses: Dict[str, Tuple[str, int]] = {}
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks = set()
        self._registered = asyncio.Event()
        self._pending: Dict[str, asyncio.Future] = {}
        self._unreachable = set()
        self._closing = False

        # per-run state
        self.partitioning: List[Tuple[str, List[int]]] = []
        self.ring: List[str] = []
        self.class_index: int = -1
        self.schema: Dict[int, AttributeMetadata] = {}
        self.row_count = 0
        self.config = BuildConfig.defaults()
        self.gain: Optional[SecureInformationGain] = None
        self.rounds_completed = 0

    @property
    def state(self) -> NodeState:
        return self.machine.state

    # ---- lifecycle ----
    async def start(self) -> int:
        """Bind and listen; returns the bound port (useful with port 0)."""
        try:
            self._server = await asyncio.start_server(self._handle_party, self.host, self.port)
        except OSError as e:
            self.machine.transition(NodeState.STOPPED)
            raise ConnectivityError(f"coordinator cannot bind {self.host}:{self.port}: {e}") from e
        self.port = self._server.sockets[0].getsockname()[1]
        self.machine.transition(NodeState.LISTENING)
        logger.secure_log("info", "Coordinator listening", host=self.host, port=self.port)
        return self.port

    async def stop(self):
        if self.state is NodeState.STOPPED:
            return
        self._closing = True
        if self._server is not None:
            self._server.close()
        await self.connections.close_all()
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
        self._fail_pending(ConnectivityError("coordinator stopped"))
        self.machine.transition(NodeState.STOPPED)
        logger.secure_log("info", "Coordinator stopped")

    async def wait_for_parties(self, party_ids: Sequence[str], timeout: Optional[float] = None):
        if timeout is None:
            timeout = float(constants.DEFAULTS.get("REGISTRATION_TIMEOUT", 60.0))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            self._registered.clear()
            registered = set(await self.connections.ids())
            missing = [p for p in party_ids if p not in registered]
            if not missing:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConnectivityError(f"parties did not register in time: {missing}")
            try:
                await asyncio.wait_for(self._registered.wait(), remaining)
            except asyncio.TimeoutError:
                continue

    async def shutdown_parties(self, reason: str = "tree complete"):
        for pid in await self.connections.ids():
            conn = await self.connections.get(pid)
            if conn is None:
                continue
            try:
                await conn.send(msg.Message.wrap(self.node_id, pid, msg.ShutdownMessage(reason)))
            except ConnectivityError as e:
                logger.secure_log("warning", "Shutdown not delivered", party_id=pid, error=str(e))

    # ---- run ----
    async def run(self, dataset_name: str, attribute_partitioning: Sequence[str],
                  configuration: Optional[Dict[str, str]] = None,
                  wait_timeout: Optional[float] = None) -> TreeNode:
        try:
            await self.prepare(dataset_name, attribute_partitioning, configuration, wait_timeout)
            tree = await DistributedTreeBuilder(self, self.config).build(self.schema, self.class_index)
        except (C50Error, ValueError):
            if self.machine.can(NodeState.FAILED):
                self.machine.transition(NodeState.FAILED)
            raise
        self.machine.transition(NodeState.TREE_COMPLETE)
        nodes = list(iter_nodes(tree))
        monitoring.log_tree_summary(len(nodes), sum(isinstance(n, LeafNode) for n in nodes), depth(tree),
                                    self.rounds_completed)
        logger.secure_log("info", "Run complete", dataset=dataset_name, rounds=self.rounds_completed)
        return tree

    async def prepare(self, dataset_name: str, attribute_partitioning: Sequence[str],
                      configuration: Optional[Dict[str, str]] = None,
                      wait_timeout: Optional[float] = None):
        """Wait for the parties and run Initiation; count rounds can be driven afterwards."""
        configuration = dict(configuration or {})
        self.config = BuildConfig.from_configuration(configuration)
        self.partitioning = parse_partitioning(attribute_partitioning)
        party_ids = [pid for pid, _ in self.partitioning]
        if not party_ids:
            raise DataFormatError("attribute partitioning names no parties")
        self.class_index = (self.config.class_index if self.config.class_index is not None
                            else max(i for _, idx in self.partitioning for i in idx))
        configuration["classIndex"] = str(self.class_index)

        if self.state is NodeState.LISTENING:
            self.machine.transition(NodeState.CONNECTING)
            await self.wait_for_parties(party_ids, wait_timeout)
            self.machine.transition(NodeState.CONNECTED_TO_ALL_PARTIES)
        else:
            await self.wait_for_parties(party_ids, wait_timeout)
        self.ring = [self.node_id] + party_ids
        engine = SecureSum(self.node_id, len(self.ring), allow_two_party=self.config.allow_two_party)
        self.gain = SecureInformationGain(engine)
        self._unreachable.clear()

        self.machine.transition(NodeState.ROUND_ACTIVE)
        await self._initiate(dataset_name, attribute_partitioning, configuration)

    async def _initiate(self, dataset_name: str, partitioning: Sequence[str], configuration: Dict[str, str]):
        request_id = uuid.uuid4().hex
        payload = msg.InitiationMessage(
            request_id=request_id,
            coordinator_id=self.node_id,
            participating_nodes=self.ring[1:],
            dataset_name=dataset_name,
            attribute_partitioning=list(partitioning),
            configuration=configuration,
            node_addresses={pid: list(self.addresses[pid]) for pid in self.ring[1:]},
        )
        replies = await self._broadcast(payload, request_id, self.ring[1:])

        schema: Dict[int, AttributeMetadata] = {}
        row_counts = {}
        for pid, details in replies.items():
            row_counts[pid] = int(details.get("rowCount", -1))
            for entry in details.get("attributes", []):
                idx = int(entry["index"])
                attr = AttributeMetadata.from_dict(entry)
                if idx in schema and schema[idx] != attr:
                    raise DataFormatError(f"parties disagree on the metadata of attribute {idx}")
                schema[idx] = attr
        if len(set(row_counts.values())) != 1:
            raise DataFormatError(f"parties hold different row counts: {row_counts}")
        missing = sorted({i for _, idx in self.partitioning for i in idx} - set(schema))
        if missing:
            raise DataFormatError(f"no party reported attributes {missing}")
        if class_holder(self.partitioning, self.class_index) is None:
            raise DataFormatError(f"no party holds the class attribute {self.class_index}")

        self.schema = schema
        self.row_count = next(iter(row_counts.values()))
        excluded = [
            schema[i].name for i in sorted(schema)
            if i != self.class_index and schema[i].is_nominal and not self.can_evaluate(i)
        ]
        if excluded:
            logger.secure_log("warning", "Attributes whose owner holds no class column are not evaluated",
                              attributes=excluded)
        logger.secure_log("info", "Initiation acknowledged", parties=len(replies), instances=self.row_count)

    # ---- CountSource ----
    def can_evaluate(self, attribute_index: int) -> bool:
        return attribute_owner(self.partitioning, attribute_index, self.class_index) is not None

    async def class_distribution(self, node_id: str, num_class_values: int) -> np.ndarray:
        contributor = class_holder(self.partitioning, self.class_index)
        return await self._count_round(node_id, CLASS_ROUND, self.class_index, 0, num_class_values,
                                       contributor, (num_class_values,))

    async def attribute_counts(self, node_id: str, attribute_index: int, num_values: int,
                               num_class_values: int) -> np.ndarray:
        contributor = attribute_owner(self.partitioning, attribute_index, self.class_index)
        if contributor is None:
            raise SchemaMismatch(f"attribute {attribute_index} cannot be counted against the class")
        return await self._count_round(node_id, ATTRIBUTE_ROUND, attribute_index, num_values, num_class_values,
                                       contributor, (num_values, num_class_values))

    async def partition(self, node_id: str, attribute_index: int, num_values: int,
                        child_ids: Sequence[str], default_child_id: str):
        owner = attribute_owner(self.partitioning, attribute_index)
        request_id = uuid.uuid4().hex
        decision = msg.SplitDecisionMessage(
            request_id=request_id, node_id=node_id, attribute_index=attribute_index,
            num_values=num_values, child_ids=list(child_ids), default_child_id=default_child_id,
        )
        details = (await self._broadcast(decision, request_id, [owner]))[owner]
        try:
            assignments = [[int(r) for r in part] for part in details["assignments"]]
            unassigned = [int(r) for r in details["unassigned"]]
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolSequenceError(f"split owner {owner} sent a malformed Ack") from e

        others = [pid for pid in self.ring[1:] if pid != owner]
        if others:
            request_id = uuid.uuid4().hex
            routed = msg.SplitDecisionMessage(
                request_id=request_id, node_id=node_id, attribute_index=attribute_index,
                num_values=num_values, child_ids=list(child_ids), default_child_id=default_child_id,
                assignments=assignments, unassigned=unassigned,
            )
            await self._broadcast(routed, request_id, others)

    # ---- rounds ----
    async def _count_round(self, node_id: str, kind: str, attribute_index: int, num_attr_values: int,
                           num_class_values: int, contributor: str, shape: Tuple[int, ...]) -> np.ndarray:
        if self._unreachable:
            raise ConnectivityError(f"parties unreachable: {sorted(self._unreachable)}")
        round_id = uuid.uuid4().hex
        size = int(np.prod(shape))
        state = self.gain.initiate_counts(np.zeros(size, dtype=np.int64))
        payload = msg.CountRoundMessage(
            round_id=round_id, node_id=node_id, kind=kind, attribute_index=attribute_index,
            contributor=contributor, num_attribute_values=num_attr_values,
            num_class_values=num_class_values, ring=list(self.ring), session_id=state.session_id,
            initiator=state.initiator, round=state.round, partial_sums=list(state.partial_sums),
        )
        fut = self._expect(round_id)
        timeout = float(constants.DEFAULTS.get("SOCKET_TIMEOUT", 30.0)) * len(self.ring)
        try:
            await self._send(self.ring[1], payload)
            reply: msg.CountRoundMessage = await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError as e:
            self.gain.engine.discard(state.session_id)
            raise ConnectivityError(f"count round {round_id} did not return within {timeout}s") from e
        except BaseException:
            self.gain.engine.discard(state.session_id)
            raise
        finally:
            self._pending.pop(round_id, None)
        counts = self.gain.finalize_counts(reply.state(), shape)
        self.rounds_completed += 1
        logger.secure_log("debug", "Count round finalized", node_id=node_id, kind=kind, attribute=attribute_index)
        return counts

    async def _broadcast(self, payload, request_id: str, party_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Send payload to each party and wait for every Ack; the first Error is raised."""
        futures = {pid: self._expect(f"{request_id}@{pid}") for pid in party_ids}
        timeout = float(constants.DEFAULTS.get("SOCKET_TIMEOUT", 30.0))
        try:
            for pid in party_ids:
                await self._send(pid, payload)
            acks = await asyncio.wait_for(asyncio.gather(*futures.values()), timeout)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"no Ack for {type(payload).__name__} within {timeout}s") from e
        finally:
            for pid in party_ids:
                self._pending.pop(f"{request_id}@{pid}", None)
        return {pid: ack.details for pid, ack in zip(party_ids, acks)}

    def _expect(self, key: str) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._pending[key] = fut
        return fut

    def _resolve(self, key: str, result=None, exc: Optional[BaseException] = None) -> bool:
        fut = self._pending.get(key)
        if fut is None or fut.done():
            return False
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
        return True

    def _fail_pending(self, exc: BaseException):
        for key, fut in list(self._pending.items()):
            if not fut.done():
                fut.set_exception(exc)

    async def _send(self, party_id: str, payload):
        conn = await self.connections.get(party_id)
        if conn is None:
            raise ConnectivityError(f"party {party_id} is not connected")
        await conn.send(msg.Message.wrap(self.node_id, party_id, payload))

    # ---- inbound ----
    async def _handle_party(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        conn = Connection(None, reader, writer)
        party_id = None
        try:
            hello = await conn.receive(timeout=float(constants.DEFAULTS.get("SOCKET_TIMEOUT", 30.0)))
            if hello.type is not msg.MessageType.REGISTER:
                raise ProtocolSequenceError(f"expected Register, got {hello.type.value}")
            party_id = hello.payload.party_id
            conn.peer_id = party_id
            peer_host = writer.get_extra_info("peername")[0]
            self.addresses[party_id] = (hello.payload.host or peer_host, int(hello.payload.port))
            await self.connections.add(party_id, conn)
            self._unreachable.discard(party_id)
            self._registered.set()
            logger.secure_log("info", "Party registered", party_id=party_id, address=self.addresses[party_id])
            while True:
                self._dispatch(await conn.receive())
        except ConnectivityError as e:
            if party_id is not None and not self._closing:
                logger.secure_log("warning", "Party connection lost", party_id=party_id, error=str(e))
        except ProtocolSequenceError as e:
            logger.secure_log("warning", "Dropping connection after bad frame", party_id=party_id, error=str(e))
        finally:
            self._tasks.discard(task)
            if party_id is not None and await self.connections.remove(party_id, conn) is not None:
                self._unreachable.add(party_id)
                self._fail_pending(ConnectivityError(f"party {party_id} disconnected"))
            await conn.close()

    def _dispatch(self, message: msg.Message):
        if message.destination_id != self.node_id:
            logger.secure_log("warning", "Message not addressed to coordinator",
                              source=message.source_id, destination=message.destination_id)
            return
        p = message.payload
        if message.type is msg.MessageType.ACK:
            if not self._resolve(f"{p.in_reply_to}@{message.source_id}", p):
                logger.secure_log("warning", "Unexpected Ack", source=message.source_id)
        elif message.type is msg.MessageType.ERROR:
            exc = error_from_kind(p.kind, f"{message.source_id}: {p.detail}")
            if not (self._resolve(f"{p.in_reply_to}@{message.source_id}", exc=exc)
                    or self._resolve(p.in_reply_to, exc=exc)):
                logger.secure_log("warning", "Error reported outside any request",
                                  source=message.source_id, kind=p.kind, detail=p.detail)
        elif message.type is msg.MessageType.COUNT_ROUND:
            if p.round != len(self.ring) or message.source_id != self.ring[-1]:
                exc = ProtocolSequenceError(f"round {p.round_id} returned from {message.source_id} at round {p.round}")
                if not self._resolve(p.round_id, exc=exc):
                    logger.secure_log("warning", str(exc))
            elif not self._resolve(p.round_id, p):
                logger.secure_log("warning", "Count round not pending", source=message.source_id)
        else:
            logger.secure_log("warning", "Unexpected message type", source=message.source_id, type=message.type.value)
