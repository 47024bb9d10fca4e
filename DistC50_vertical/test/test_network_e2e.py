import asyncio

import numpy as np
import pytest
from DistC50_vertical import constants
from DistC50_vertical.builder import BuildConfig, DistributedTreeBuilder
from DistC50_vertical.data_loader import Dataset, create_vertical_partition, partition_dataset
from DistC50_vertical.node.cluster import party_ids, run_cluster, run_partitions
from DistC50_vertical.node.coordinator import Coordinator
from DistC50_vertical.node.data_party import DataParty
from DistC50_vertical.node.ledger import CLASS_ROUND
from DistC50_vertical.node.state import NodeState, NodeStateMachine
from DistC50_vertical.privacy import protocol_messages as msg
from DistC50_vertical.privacy.local_ring import LocalRing
from DistC50_vertical.schema import AttributeKind, AttributeMetadata
from DistC50_vertical.tree import InternalNode, LeafNode, to_dict
from DistC50_vertical.errors import (ConnectivityError, DataFormatError, ProtocolSequenceError,
                                     ProtocolStateError, SchemaMismatch)


def nominal(name, *values):
    return AttributeMetadata(name, AttributeKind.NOMINAL, values)


def random_dataset(n=150, seed=11):
    gen = np.random.default_rng(seed)
    attrs = [nominal(f"a{i}", "l", "m", "h") for i in range(4)] + [nominal("class", "no", "yes")]
    x = gen.integers(0, 3, size=(n, 4))
    y = ((x[:, 0] == 1) ^ (x[:, 2] == 2)).astype(np.int64)
    x[gen.random((n, 4)) < 0.03] = -1
    return Dataset("rand", attrs, np.column_stack([x, y]), 4)


def small_dataset():
    attrs = [nominal("A", "x", "y"), nominal("B", "p", "q"), nominal("class", "0", "1")]
    return Dataset("small", attrs, [[0, 0, 0], [0, 1, 1], [1, 0, 1], [1, 1, 1]], 2)


@pytest.fixture
def fast_network(monkeypatch):
    monkeypatch.setitem(constants.DEFAULTS, "SOCKET_TIMEOUT", 5.0)
    monkeypatch.setitem(constants.DEFAULTS, "MAX_CONNECTION_RETRIES", 2)
    monkeypatch.setitem(constants.DEFAULTS, "CONNECTION_RETRY_DELAY", 0.01)


@pytest.mark.asyncio
async def test_network_tree_matches_in_process_ring(fast_network):
    ds = random_dataset()
    config = {"maxDepth": "4", "minInstances": "3", "minGainRatio": "0.01"}
    tree = await run_cluster(ds, 3, config)

    _, partitions = partition_dataset(ds, party_ids(3))
    ring = LocalRing(partitions, ds.class_index)
    cfg = BuildConfig.from_configuration({**config, "classIndex": str(ds.class_index)})
    local = await DistributedTreeBuilder(ring, cfg).build(ds.attributes, ds.class_index)

    assert isinstance(tree, InternalNode)
    assert to_dict(tree) == to_dict(local)


@pytest.mark.asyncio
async def test_concurrent_rounds_over_sockets(fast_network):
    ds = random_dataset()
    sequential = await run_cluster(ds, 2, {"minInstances": "3"})
    concurrent = await run_cluster(ds, 2, {"minInstances": "3", "concurrentRounds": "true"})
    assert to_dict(sequential) == to_dict(concurrent)


@pytest.mark.asyncio
async def test_split_owner_without_class(fast_network):
    ds = small_dataset()
    partitions = {
        "party1": create_vertical_partition(ds, [0]),
        "party2": create_vertical_partition(ds, [1, 2]),
    }
    tree, coordinator = await run_partitions("small", ["0:party1", "1,2:party2"], partitions,
                                             {"minInstances": "1"})
    assert tree.split_attribute == "B"
    assert [c.class_distribution for c in tree.children] == [[1, 1], [0, 2]]
    assert coordinator.state is NodeState.STOPPED
    assert coordinator.row_count == 4
    # one class round plus one attribute round for B at the root
    assert coordinator.rounds_completed == 2


@pytest.mark.asyncio
async def test_class_on_every_party(fast_network):
    ds = small_dataset()
    partitions = {
        "party1": create_vertical_partition(ds, [0, 2]),
        "party2": create_vertical_partition(ds, [1, 2]),
    }
    tree, _ = await run_partitions("small", ["0,2:party1", "1,2:party2"], partitions, {"minInstances": "1"})
    assert tree.split_attribute == "A"
    assert tree.children[0].split_attribute == "B"
    assert isinstance(tree.children[1], LeafNode)


@pytest.mark.asyncio
async def test_two_member_ring_needs_opt_in(fast_network):
    ds = small_dataset()
    partitions = {"party1": create_vertical_partition(ds, [0, 1, 2])}
    with pytest.raises(ProtocolStateError):
        await run_partitions("small", ["0,1,2:party1"], partitions, {"minInstances": "1"})

    tree, _ = await run_partitions("small", ["0,1,2:party1"], partitions,
                                   {"minInstances": "1", "allowTwoPartyRing": "true"})
    assert tree.split_attribute == "A"


@pytest.mark.asyncio
async def test_row_count_mismatch_is_rejected(fast_network):
    ds = small_dataset()
    partitions = {
        "party1": create_vertical_partition(ds.subset([0, 1, 2]), [0, 2]),
        "party2": create_vertical_partition(ds, [1, 2]),
    }
    with pytest.raises(DataFormatError):
        await run_partitions("small", ["0,2:party1", "1,2:party2"], partitions)


@pytest.mark.asyncio
async def test_party_errors_come_back_typed(fast_network):
    ds = small_dataset()
    # party1 is told it holds two columns but only has one
    partitions = {
        "party1": create_vertical_partition(ds, [0]),
        "party2": create_vertical_partition(ds, [1, 2]),
    }
    with pytest.raises(SchemaMismatch):
        await run_partitions("small", ["0,2:party1", "1,2:party2"], partitions)


@pytest.mark.asyncio
async def test_registration_timeout(fast_network):
    coordinator = Coordinator("127.0.0.1", 0)
    await coordinator.start()
    try:
        with pytest.raises(ConnectivityError):
            await coordinator.run("x", ["0:party1", "1:party2"], wait_timeout=0.2)
        assert coordinator.state is NodeState.FAILED
    finally:
        await coordinator.stop()
    assert coordinator.state is NodeState.STOPPED


@pytest.mark.asyncio
async def test_party_gives_up_when_coordinator_is_unreachable(fast_network):
    closed = Coordinator("127.0.0.1", 0)
    port = await closed.start()
    await closed.stop()

    ds = small_dataset()
    party = DataParty("party1", "127.0.0.1", 0, "127.0.0.1", port, create_vertical_partition(ds, [0, 2]))
    with pytest.raises(ConnectivityError):
        await party.start()
    assert party.state is NodeState.STOPPED


def test_state_machine_rejects_illegal_transitions():
    m = NodeStateMachine("n")
    with pytest.raises(ProtocolStateError):
        m.transition(NodeState.ROUND_ACTIVE)
    for s in (NodeState.LISTENING, NodeState.CONNECTING, NodeState.CONNECTED_TO_ALL_PARTIES,
              NodeState.ROUND_ACTIVE, NodeState.ROUND_ACTIVE, NodeState.TREE_COMPLETE):
        m.transition(s)
    assert m.running
    with pytest.raises(ProtocolStateError):
        m.transition(NodeState.FAILED)
    m.transition(NodeState.STOPPED)
    assert not m.running
    for s in NodeState:
        assert not m.can(s)

    party = NodeStateMachine("p")
    party.transition(NodeState.LISTENING)
    party.transition(NodeState.CONNECTING)
    party.transition(NodeState.ROUND_ACTIVE)
    party.transition(NodeState.FAILED)
    with pytest.raises(ProtocolStateError):
        party.transition(NodeState.ROUND_ACTIVE)


SMALL_PARTITIONING = ["0,2:party1", "1,2:party2"]


async def initiated_cluster():
    """Coordinator and two parties past Initiation, no rounds run yet."""
    ds = small_dataset()
    coordinator = Coordinator("127.0.0.1", 0)
    await coordinator.start()
    parties = [
        DataParty("party1", "127.0.0.1", 0, "127.0.0.1", coordinator.port, create_vertical_partition(ds, [0, 2])),
        DataParty("party2", "127.0.0.1", 0, "127.0.0.1", coordinator.port, create_vertical_partition(ds, [1, 2])),
    ]
    for p in parties:
        await p.start()
    await coordinator.prepare("small", SMALL_PARTITIONING, {"minInstances": "1"})
    return coordinator, parties


async def stop_cluster(coordinator, parties):
    for p in parties:
        await p.stop()
    await coordinator.stop()


def class_round(coordinator, round_id, round_no, partial_sums=None):
    state = coordinator.gain.initiate_counts(np.zeros(2, dtype=np.int64))
    return msg.CountRoundMessage(
        round_id=round_id, node_id="root", kind=CLASS_ROUND, attribute_index=2, contributor="party1",
        num_attribute_values=0, num_class_values=2, ring=list(coordinator.ring), session_id=state.session_id,
        initiator=state.initiator, round=round_no,
        partial_sums=list(state.partial_sums) if partial_sums is None else partial_sums,
    )


@pytest.mark.asyncio
async def test_party_rejects_out_of_order_and_misaddressed_rounds(fast_network):
    coordinator, parties = await initiated_cluster()
    try:
        # round 2 belongs to party2, party1 must refuse it
        pending = coordinator._expect("early")
        await coordinator._send("party1", class_round(coordinator, "early", 2))
        with pytest.raises(ProtocolSequenceError, match="out of order"):
            await asyncio.wait_for(pending, 5)

        # correct round number, but the envelope names party2
        pending = coordinator._expect("misrouted")
        conn = await coordinator.connections.get("party1")
        await conn.send(msg.Message.wrap(coordinator.node_id, "party2", class_round(coordinator, "misrouted", 1)))
        with pytest.raises(ProtocolSequenceError, match="for party2"):
            await asyncio.wait_for(pending, 5)

        # the party keeps serving after rejecting both
        assert parties[0].state is NodeState.ROUND_ACTIVE
        counts = await coordinator.class_distribution("root", 2)
        assert counts.tolist() == [1, 3]
    finally:
        await stop_cluster(coordinator, parties)


@pytest.mark.asyncio
async def test_malformed_round_state_is_reported_not_fatal(fast_network):
    coordinator, parties = await initiated_cluster()
    try:
        pending = coordinator._expect("garbled")
        await coordinator._send("party1", class_round(coordinator, "garbled", 1, partial_sums=["x", "y"]))
        with pytest.raises(ProtocolSequenceError, match="malformed state"):
            await asyncio.wait_for(pending, 5)
        assert parties[0].state is NodeState.ROUND_ACTIVE
        counts = await coordinator.attribute_counts("root", 1, 2, 2)
        assert counts.tolist() == [[1, 1], [0, 2]]
    finally:
        await stop_cluster(coordinator, parties)


@pytest.mark.asyncio
async def test_lost_party_fails_the_branch_without_retrying(fast_network):
    coordinator, parties = await initiated_cluster()
    try:
        await parties[1].stop()
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(ConnectivityError):
            await asyncio.wait_for(coordinator.attribute_counts("root", 1, 2, 2), 5)
        # well under the round timeout of SOCKET_TIMEOUT * ring size
        assert loop.time() - started < 5
        assert coordinator.rounds_completed == 0

        # once the loss is known, further rounds fail straight away
        for _ in range(50):
            if coordinator._unreachable:
                break
            await asyncio.sleep(0.01)
        assert coordinator._unreachable == {"party2"}
        with pytest.raises(ConnectivityError, match="unreachable"):
            await coordinator.class_distribution("root", 2)
    finally:
        await stop_cluster(coordinator, parties)
