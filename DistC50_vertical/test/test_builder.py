import numpy as np
import pytest
from DistC50_vertical.builder import BuildConfig, DistributedTreeBuilder
from DistC50_vertical.data_loader import Dataset, create_vertical_partition, partition_dataset
from DistC50_vertical.privacy.local_ring import LocalRing
from DistC50_vertical.privacy.secure_gain import gain_ratio, information_gain
from DistC50_vertical.schema import AttributeKind, AttributeMetadata
from DistC50_vertical.tree import InternalNode, LeafNode, iter_nodes, predict_rows, to_dict
from DistC50_vertical.errors import DataFormatError, ProtocolSequenceError, SchemaMismatch


def nominal(name, *values):
    return AttributeMetadata(name, AttributeKind.NOMINAL, values)


def small_dataset():
    attrs = [nominal("A", "x", "y"), nominal("B", "p", "q"), nominal("class", "0", "1")]
    rows = [[0, 0, 0], [0, 1, 1], [1, 0, 1], [1, 1, 1]]
    return Dataset("small", attrs, rows, 2)


def random_dataset(n=240, seed=3, missing=0.05):
    gen = np.random.default_rng(seed)
    attrs = [nominal(f"a{i}", "l", "m", "h") for i in range(5)] + [nominal("class", "no", "yes")]
    x = gen.integers(0, 3, size=(n, 5))
    y = ((x[:, 0] == 2) | ((x[:, 1] == 0) & (x[:, 3] != 1))).astype(np.int64)
    flip = gen.random(n) < 0.05
    y[flip] = 1 - y[flip]
    x[gen.random((n, 5)) < missing] = -1
    return Dataset("rand", attrs, np.column_stack([x, y]), 5)


def ring_for(dataset, split, **kw):
    partitions = {pid: create_vertical_partition(dataset, idx) for pid, idx in split}
    return LocalRing(partitions, dataset.class_index, **kw)


async def build(ring, dataset, **cfg):
    config = BuildConfig(**{"min_instances": 1, **cfg})
    return await DistributedTreeBuilder(ring, config).build(dataset.attributes, dataset.class_index)


@pytest.mark.asyncio
async def test_homogeneous_dataset_gives_single_leaf():
    attrs = [nominal("A", "x", "y"), nominal("B", "p", "q"), nominal("class", "0", "1")]
    rows = [[i % 2, (i // 2) % 2, 1] for i in range(20)]
    ds = Dataset("pure", attrs, rows, 2)
    ring = ring_for(ds, [("party1", [0, 2]), ("party2", [1, 2])])

    for depth in (0, 1, 10):
        ring.ledgers["party1"].reset()
        ring.ledgers["party2"].reset()
        tree = await build(ring, ds, max_depth=depth)
        assert isinstance(tree, LeafNode)
        assert tree.class_label == "1"
        assert tree.class_distribution == [0, 20]


@pytest.mark.asyncio
async def test_root_split_when_only_b_is_countable():
    # A lives with party1, which has no class column, so only B can be scored
    ds = small_dataset()
    ring = ring_for(ds, [("party1", [0]), ("party2", [1, 2])])
    assert not ring.can_evaluate(0)

    tree = await build(ring, ds)

    assert isinstance(tree, InternalNode)
    assert tree.split_attribute == "B"
    assert tree.children[0].class_distribution == [1, 1]
    assert tree.children[1].class_label == "1"


@pytest.mark.asyncio
async def test_ties_go_to_the_first_attribute_in_scan_order():
    ds = small_dataset()
    ring = ring_for(ds, [("party1", [0, 2]), ("party2", [1, 2])])
    tree = await build(ring, ds)
    assert tree.split_attribute == "A"
    # x branch needs B to separate, y branch is pure
    assert tree.children[0].split_attribute == "B"
    assert isinstance(tree.children[1], LeafNode)


@pytest.mark.asyncio
async def test_gain_ratio_of_chosen_split_matches_manual_computation():
    ds = random_dataset(missing=0.0)
    ring = ring_for(ds, [("party1", [0, 1, 2, 5]), ("party2", [3, 4, 5])])
    tree = await build(ring, ds, max_depth=1)

    y = ds.class_values
    best_attr, best_ratio = None, -1.0
    for j in range(5):
        counts = np.zeros((3, 2), dtype=np.int64)
        np.add.at(counts, (ds.rows[:, j], y), 1)
        g = information_gain(counts, ds.num_instances)
        r = gain_ratio(g, counts, ds.num_instances)
        if r > best_ratio:
            best_attr, best_ratio = j, r
    assert tree.attribute_index == best_attr


@pytest.mark.asyncio
async def test_partition_completeness_with_missing_values():
    ds = random_dataset()
    ring = ring_for(ds, [("party1", [0, 1, 5]), ("party2", [2, 3, 5]), ("party3", [4, 5])])
    tree = await build(ring, ds, min_instances=5)

    internal = [n for n in iter_nodes(tree) if isinstance(n, InternalNode)]
    assert internal
    for node in internal:
        for pid in ring.order:
            parent = ring.rows(pid, node.node_id)
            routed = [ring.rows(pid, c.node_id) for c in node.children]
            routed.append(ring.rows(pid, node.default_child.node_id))
            merged = np.concatenate(routed)
            assert merged.size == parent.size
            assert np.array_equal(np.sort(merged), np.sort(parent))
        # every party agrees on the routing
        first = [ring.rows(ring.order[0], c.node_id).tolist() for c in node.children]
        for pid in ring.order[1:]:
            assert [ring.rows(pid, c.node_id).tolist() for c in node.children] == first


@pytest.mark.asyncio
async def test_training_rows_in_pure_leaves_are_predicted_correctly():
    ds = random_dataset(missing=0.0)
    ring = ring_for(ds, [("party1", [0, 1, 2, 5]), ("party2", [3, 4, 5])])
    tree = await build(ring, ds)

    preds = predict_rows(tree, ds.attribute_names, ds.rows)
    checked = 0
    for leaf in iter_nodes(tree):
        if not isinstance(leaf, LeafNode) or np.count_nonzero(leaf.class_distribution) != 1:
            continue
        for pos in ring.rows("party1", leaf.node_id):
            assert preds[pos] == ds.class_values[pos]
            checked += 1
    assert checked > 0


@pytest.mark.asyncio
async def test_concurrent_rounds_build_the_same_tree():
    ds = random_dataset()
    split = [("party1", [0, 1, 5]), ("party2", [2, 3, 4, 5])]
    seq = await build(ring_for(ds, split), ds, min_instances=5)
    conc = await build(ring_for(ds, split), ds, min_instances=5, concurrent_rounds=True)
    assert to_dict(seq) == to_dict(conc)


@pytest.mark.asyncio
async def test_stopping_rules():
    ds = random_dataset()
    split = [("party1", [0, 1, 5]), ("party2", [2, 3, 4, 5])]

    leaf = await build(ring_for(ds, split), ds, max_depth=0)
    assert isinstance(leaf, LeafNode)
    assert sum(leaf.class_distribution) == ds.num_instances

    leaf = await build(ring_for(ds, split), ds, min_instances=ds.num_instances + 1)
    assert isinstance(leaf, LeafNode)

    leaf = await build(ring_for(ds, split), ds, min_gain_ratio=10.0)
    assert isinstance(leaf, LeafNode)


@pytest.mark.asyncio
async def test_default_child_is_majority_leaf_of_the_node():
    ds = random_dataset()
    ring = ring_for(ds, [("party1", [0, 1, 5]), ("party2", [2, 3, 4, 5])])
    tree = await build(ring, ds, max_depth=1)
    assert isinstance(tree, InternalNode)
    default = tree.default_child
    assert isinstance(default, LeafNode)
    total = np.bincount(ds.class_values, minlength=2)
    assert default.class_distribution == total.tolist()
    assert default.class_index == int(np.argmax(total))


class FlakyRing(LocalRing):
    def __init__(self, *args, fail=None, fail_split=None, **kw):
        super().__init__(*args, **kw)
        self.fail = fail or {}
        self.fail_split = fail_split or {}

    async def attribute_counts(self, node_id, attribute_index, num_values, num_class_values):
        if attribute_index in self.fail:
            raise self.fail[attribute_index]
        return await super().attribute_counts(node_id, attribute_index, num_values, num_class_values)

    async def partition(self, node_id, attribute_index, num_values, child_ids, default_child_id):
        if node_id in self.fail_split:
            raise self.fail_split[node_id]
        return await super().partition(node_id, attribute_index, num_values, child_ids, default_child_id)


@pytest.mark.asyncio
async def test_schema_mismatch_excludes_only_that_attribute():
    ds = small_dataset()
    partitions = {pid: create_vertical_partition(ds, idx) for pid, idx in [("party1", [0, 2]), ("party2", [1, 2])]}
    ring = FlakyRing(partitions, 2, fail={0: SchemaMismatch("bad cardinality")})
    tree = await build(ring, ds)
    assert tree.split_attribute == "B"


@pytest.mark.asyncio
async def test_sequence_error_turns_node_into_leaf():
    ds = small_dataset()
    partitions = {pid: create_vertical_partition(ds, idx) for pid, idx in [("party1", [0, 2]), ("party2", [1, 2])]}
    ring = FlakyRing(partitions, 2, fail={1: ProtocolSequenceError("out of order")})
    tree = await build(ring, ds)
    assert isinstance(tree, LeafNode)
    assert tree.class_distribution == [1, 3]


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [SchemaMismatch("owner lost the column"), ProtocolSequenceError("stale node")])
async def test_rejected_split_decision_turns_only_that_node_into_leaf(exc):
    ds = small_dataset()
    partitions = {pid: create_vertical_partition(ds, idx) for pid, idx in [("party1", [0, 2]), ("party2", [1, 2])]}
    ring = FlakyRing(partitions, 2, fail_split={"root.0": exc})
    tree = await build(ring, ds)
    assert tree.split_attribute == "A"
    assert isinstance(tree.children[0], LeafNode)
    assert tree.children[0].class_distribution == [1, 1]

    ring = FlakyRing(partitions, 2, fail_split={"root": exc})
    tree = await build(ring, ds)
    assert isinstance(tree, LeafNode)
    assert tree.class_distribution == [1, 3]


@pytest.mark.asyncio
async def test_secure_rounds_hide_partial_sums_from_parties():
    ds = small_dataset()
    ring = ring_for(ds, [("party1", [0, 2]), ("party2", [1, 2])])
    await build(ring, ds)
    assert ring.rounds > 0
    # what the parties saw in transit is masked, never the plain counts (all <= 4)
    for pid, seen in ring.observed.items():
        assert seen
        assert all(max(vec) > 4 for vec in seen)


def test_build_config_from_configuration():
    cfg = BuildConfig.from_configuration({"maxDepth": "3", "minInstances": "2", "minGainRatio": "0.2",
                                          "classIndex": "4", "concurrentRounds": "true", "color": "red"})
    assert (cfg.max_depth, cfg.min_instances, cfg.min_gain_ratio) == (3, 2, 0.2)
    assert cfg.class_index == 4 and cfg.concurrent_rounds and not cfg.allow_two_party
    assert BuildConfig.from_configuration(cfg.to_configuration()) == cfg
    with pytest.raises(DataFormatError):
        BuildConfig.from_configuration({"maxDepth": "deep"})
    with pytest.raises(DataFormatError):
        BuildConfig.from_configuration({"allowTwoPartyRing": "maybe"})


@pytest.mark.asyncio
async def test_partition_dataset_without_class_on_all_parties():
    ds = random_dataset()
    partitioning, partitions = partition_dataset(ds, ["party1", "party2"], include_class=False)
    assert partitioning == ["0,1,2:party1", "3,4,5:party2"]
    ring = LocalRing(partitions, ds.class_index)
    # party1 has no class column, so its attributes are never scored
    assert [ring.can_evaluate(i) for i in range(5)] == [False, False, False, True, True]
    tree = await build(ring, ds, min_instances=5)
    assert all(n.attribute_index in (3, 4) for n in iter_nodes(tree) if isinstance(n, InternalNode))
