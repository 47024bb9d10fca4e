import json
import pytest
from DistC50_vertical.data_loader import Dataset
from DistC50_vertical.evaluate import evaluate_tree, save_results
from DistC50_vertical.schema import AttributeKind, AttributeMetadata
from DistC50_vertical.tree import (InternalNode, LeafNode, depth, find_leaf, from_dict, iter_nodes, predict,
                                   predict_index, render_tree, to_dict)
from DistC50_vertical.errors import DataFormatError


def outlook_tree():
    """outlook = sunny -> [humidity], overcast -> yes, rainy -> no; default -> yes."""
    humidity = InternalNode(
        split_attribute="humidity", attribute_index=1,
        children=[LeafNode(0, [3, 0], "yes", "root.0.0"), LeafNode(1, [0, 2], "no", "root.0.1")],
        default_child=LeafNode(0, [3, 2], "yes", "root.0.default"),
        value_labels=("normal", "high"), node_id="root.0",
    )
    return InternalNode(
        split_attribute="outlook", attribute_index=0,
        children=[humidity, LeafNode(0, [4, 0], "yes", "root.1"), LeafNode(1, [1, 4], "no", "root.2")],
        default_child=LeafNode(0, [8, 6], "yes", "root.default"),
        value_labels=("sunny", "overcast", "rainy"),
    )


def test_predict_by_label_and_index():
    tree = outlook_tree()
    assert predict(tree, {"outlook": "sunny", "humidity": "high"}) == "no"
    assert predict(tree, {"outlook": 0, "humidity": 0}) == "yes"
    assert predict(tree, {"outlook": "overcast"}) == "yes"
    assert predict_index(tree, {"outlook": 2.0}) == 1


def test_missing_or_unknown_values_take_the_default_branch():
    tree = outlook_tree()
    assert find_leaf(tree, {}).node_id == "root.default"
    assert find_leaf(tree, {"outlook": "foggy"}).node_id == "root.default"
    assert find_leaf(tree, {"outlook": 7}).node_id == "root.default"
    assert find_leaf(tree, {"outlook": "sunny"}).node_id == "root.0.default"


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), "nan", "inf"])
def test_non_finite_values_take_the_default_branch(value):
    assert find_leaf(outlook_tree(), {"outlook": value}).node_id == "root.default"
    numeric = InternalNode("temp", 2, is_numeric=True, threshold=0.5, left=LeafNode(0, [2, 0], "cold"),
                           right=LeafNode(1, [0, 3], "hot"), default_child=LeafNode(0, [2, 3], "cold", "d"))
    assert find_leaf(numeric, {"temp": float(value)}).node_id == "d"


def test_unroutable_values_raise_data_format_error():
    numeric = InternalNode("temp", 2, is_numeric=True, threshold=0.5,
                           left=LeafNode(0, [2, 0], "cold"), right=LeafNode(1, [0, 3], "hot"))
    with pytest.raises(DataFormatError):
        predict(numeric, {"temp": "warm"})
    with pytest.raises(DataFormatError):
        outlook_tree().child_for(float("nan"))
    with pytest.raises(DataFormatError):
        outlook_tree().child_for(object())


def test_no_default_branch_is_an_error():
    tree = InternalNode("a", 0, children=[LeafNode(0, [1, 0])])
    with pytest.raises(DataFormatError):
        predict(tree, {"a": 3})


def test_numeric_split():
    tree = InternalNode("temp", 2, is_numeric=True, threshold=0.5,
                        left=LeafNode(0, [2, 0], "cold"), right=LeafNode(1, [0, 3], "hot"))
    assert predict(tree, {"temp": 0.5}) == "cold"
    assert predict(tree, {"temp": 0.51}) == "hot"
    again = from_dict(json.loads(json.dumps(to_dict(tree))))
    assert again == tree


def test_json_round_trip():
    tree = outlook_tree()
    d = json.loads(json.dumps(to_dict(tree)))
    assert d["type"] == "internal" and d["splitAttribute"] == "outlook"
    assert d["children"][1] == {"type": "leaf", "nodeId": "root.1", "classIndex": 0,
                                "classLabel": "yes", "classDistribution": [4, 0]}
    assert from_dict(d) == tree


def test_malformed_tree_dicts():
    with pytest.raises(DataFormatError):
        from_dict({"type": "branch"})
    with pytest.raises(DataFormatError):
        from_dict({"type": "leaf", "classIndex": 0})
    with pytest.raises(DataFormatError):
        from_dict({"type": "internal", "splitAttribute": "a", "attributeIndex": 0, "children": []})


def test_node_invariants():
    with pytest.raises(DataFormatError):
        InternalNode("a", 0)
    with pytest.raises(DataFormatError):
        InternalNode("a", 0, children=[LeafNode(0, [1])], value_labels=("x", "y"))
    with pytest.raises(DataFormatError):
        InternalNode("a", 0, is_numeric=True, threshold=1.0, left=LeafNode(0, [1]))
    with pytest.raises(DataFormatError):
        InternalNode("a", 0, children=[LeafNode(0, [1])], threshold=0.3)


def test_inspection_helpers():
    tree = outlook_tree()
    assert depth(tree) == 2
    assert depth(LeafNode(0, [1])) == 0
    assert len(list(iter_nodes(tree))) == 8
    text = render_tree(tree)
    assert text.splitlines()[0] == "[outlook]"
    assert "    outlook = sunny: [humidity]" in text
    assert "        humidity = high: no [0, 2]" in text
    assert "    default: yes [8, 6]" in text


def test_evaluate_tree(tmp_path):
    attrs = [
        AttributeMetadata("outlook", AttributeKind.NOMINAL, ("sunny", "overcast", "rainy")),
        AttributeMetadata("humidity", AttributeKind.NOMINAL, ("normal", "high")),
        AttributeMetadata("play", AttributeKind.NOMINAL, ("yes", "no")),
    ]
    rows = [
        [0, 0, 0],   # right
        [0, 1, 1],   # right
        [1, 1, 0],   # right
        [2, 0, 0],   # predicted no
        [-1, 0, 0],  # default -> yes, right
        [0, 0, -1],  # unlabelled, skipped
    ]
    results = evaluate_tree(outlook_tree(), Dataset("golf", attrs, rows, 2))
    assert results["instances"] == 5
    assert results["accuracy"] == pytest.approx(0.8)
    assert results["confusion"] == [[3, 1], [0, 1]]

    out = tmp_path / "results.json"
    save_results(str(out), results)
    assert json.loads(out.read_text())["instances"] == 5
