import io
import json
import os
from pathlib import Path

import numpy as np
import pytest

from anomaly_detection.errors import CorruptModelError
from anomaly_detection.isolation import TrainingParams, dumps, load, loads, save, train
from anomaly_detection.isolation import codec
from anomaly_detection.isolation.codec import (
    FEATURE_INDEX,
    IS_LEAF,
    LEAF_SIZE,
    LEFT_CHILD_ID,
    NODE_COLUMNS,
    SPLIT_VALUE,
)


def _rewrite(data: bytes, **changes) -> bytes:
    """Re-pack a serialized model with some members replaced (or dropped when None)."""
    with np.load(io.BytesIO(data)) as archive:
        arrays = {name: archive[name] for name in archive.files}
    for name, value in changes.items():
        if value is None:
            arrays.pop(name)
        else:
            arrays[name] = value
    buffer = io.BytesIO()
    np.savez(buffer, **arrays)
    return buffer.getvalue()


def _metadata(data: bytes) -> dict:
    with np.load(io.BytesIO(data)) as archive:
        return json.loads(str(archive["metadata"]))


def _table(data: bytes, name: str = "tree_0") -> np.ndarray:
    with np.load(io.BytesIO(data)) as archive:
        return archive[name].copy()


def _assert_same_forest(a, b) -> None:
    assert a.params == b.params
    assert a.max_samples == b.max_samples
    assert a.max_features == b.max_features
    assert a.n_features == b.n_features
    assert a.threshold == b.threshold
    assert a.num_estimators == b.num_estimators
    for tree_a, tree_b in zip(a.trees, b.trees):
        assert tree_a.max_depth == tree_b.max_depth
        for attr in ("feature", "threshold", "left", "right", "leaf_size", "depth"):
            np.testing.assert_array_equal(getattr(tree_a, attr), getattr(tree_b, attr))


def test_round_trip_is_exact(small_forest, cluster_data) -> None:
    restored = loads(dumps(small_forest))
    _assert_same_forest(small_forest, restored)
    np.testing.assert_array_equal(small_forest.scores(cluster_data), restored.scores(cluster_data))
    np.testing.assert_array_equal(small_forest.predict(cluster_data), restored.predict(cluster_data))


def test_round_trip_keeps_infinite_threshold(cluster_data) -> None:
    forest = train(cluster_data, TrainingParams(num_estimators=3, max_samples=0.25, max_features=0.7, bootstrap=True))
    restored = loads(dumps(forest))
    assert restored.threshold == np.inf
    assert restored.params == forest.params
    assert restored.max_samples == 100
    assert restored.max_features == 2


def test_layout(small_forest) -> None:
    data = dumps(small_forest)
    metadata = _metadata(data)
    assert metadata["num_estimators"] == 15
    assert metadata["max_samples"] == 64
    assert metadata["max_features"] == 3
    assert metadata["n_features"] == 3
    assert metadata["threshold"] == small_forest.threshold

    table = _table(data)
    tree = small_forest.trees[0]
    assert table.shape == (tree.n_nodes, len(NODE_COLUMNS))
    assert table[0, 0] == 0
    leaves = table[:, 1] == 1
    assert np.all(np.isnan(table[leaves, 2:6]))
    assert np.all(np.isnan(table[~leaves, LEAF_SIZE]))


def test_rows_in_any_order_load_identically(small_forest) -> None:
    data = dumps(small_forest)
    shuffled = _table(data)[::-1]
    restored = loads(_rewrite(data, tree_0=shuffled))
    _assert_same_forest(small_forest, restored)


def test_save_and_load(tmp_path: Path, small_forest, cluster_data) -> None:
    path = tmp_path / "forest.npz"
    save(small_forest, path)
    restored = load(path)
    np.testing.assert_array_equal(small_forest.scores(cluster_data), restored.scores(cluster_data))
    assert os.listdir(tmp_path) == ["forest.npz"]


def test_failed_save_leaves_previous_model(tmp_path: Path, small_forest, cluster_data, monkeypatch) -> None:
    path = tmp_path / "forest.npz"
    save(small_forest, path)
    before = path.read_bytes()

    other = train(cluster_data, TrainingParams(num_estimators=2, max_samples=16))

    def fail(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(codec.os, "replace", fail)
    with pytest.raises(OSError, match="disk full"):
        save(other, path)

    assert path.read_bytes() == before
    assert os.listdir(tmp_path) == ["forest.npz"]


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load(tmp_path / "missing.npz")


@pytest.mark.parametrize("data", [b"", b"not a model", b"PK\x03\x04truncated"])
def test_garbage_is_corrupt(data) -> None:
    with pytest.raises(CorruptModelError):
        loads(data)


def test_truncated_model_is_corrupt(small_forest) -> None:
    data = dumps(small_forest)
    with pytest.raises(CorruptModelError):
        loads(data[: len(data) // 2])


@pytest.mark.parametrize("field", ["threshold", "n_features", "max_samples", "bootstrap", "max_depths"])
def test_missing_metadata_field(small_forest, field) -> None:
    data = dumps(small_forest)
    metadata = _metadata(data)
    del metadata[field]
    with pytest.raises(CorruptModelError, match=field):
        loads(_rewrite(data, metadata=np.array(json.dumps(metadata))))


def test_ill_typed_metadata(small_forest) -> None:
    data = dumps(small_forest)
    metadata = _metadata(data)
    metadata["num_estimators"] = "fifteen"
    with pytest.raises(CorruptModelError):
        loads(_rewrite(data, metadata=np.array(json.dumps(metadata))))


def test_missing_metadata(small_forest) -> None:
    with pytest.raises(CorruptModelError):
        loads(_rewrite(dumps(small_forest), metadata=None))


def test_missing_tree_table(small_forest) -> None:
    with pytest.raises(CorruptModelError, match="tree_3"):
        loads(_rewrite(dumps(small_forest), tree_3=None))


def test_dangling_child_reference(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, LEFT_CHILD_ID] = table.shape[0] + 5
    with pytest.raises(CorruptModelError, match="missing node"):
        loads(_rewrite(data, tree_0=table))


def test_cyclic_reference(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, LEFT_CHILD_ID] = 0
    with pytest.raises(CorruptModelError):
        loads(_rewrite(data, tree_0=table))


def test_shared_child(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, LEFT_CHILD_ID + 1] = table[0, LEFT_CHILD_ID]
    with pytest.raises(CorruptModelError):
        loads(_rewrite(data, tree_0=table))


def test_duplicate_node_ids(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[1, 0] = 0
    with pytest.raises(CorruptModelError, match="node ids"):
        loads(_rewrite(data, tree_0=table))


def test_empty_leaf(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    leaf = np.flatnonzero(table[:, 1] == 1)[0]
    table[leaf, LEAF_SIZE] = 0
    with pytest.raises(CorruptModelError, match="size"):
        loads(_rewrite(data, tree_0=table))


def test_wrong_column_count(small_forest) -> None:
    data = dumps(small_forest)
    with pytest.raises(CorruptModelError, match="columns"):
        loads(_rewrite(data, tree_0=_table(data)[:, :5]))


def _first_leaf(table: np.ndarray) -> int:
    return int(np.flatnonzero(table[:, IS_LEAF] == 1)[0])


def _with_metadata(data: bytes, **changes) -> bytes:
    metadata = _metadata(data)
    metadata.update(changes)
    return _rewrite(data, metadata=np.array(json.dumps(metadata)))


def test_huge_leaf_size(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[_first_leaf(table), LEAF_SIZE] = 1e300
    with pytest.raises(CorruptModelError, match="size"):
        loads(_rewrite(data, tree_0=table))


def test_huge_feature_index(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, FEATURE_INDEX] = 1e300
    with pytest.raises(CorruptModelError, match="splits on feature"):
        loads(_rewrite(data, tree_0=table))


def test_unsupported_format_version(small_forest) -> None:
    with pytest.raises(CorruptModelError, match="format version"):
        loads(_with_metadata(dumps(small_forest), format_version=2))


def test_is_leaf_must_be_a_flag(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, IS_LEAF] = 2
    with pytest.raises(CorruptModelError, match="is_leaf"):
        loads(_rewrite(data, tree_0=table))


def test_feature_index_out_of_range(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, FEATURE_INDEX] = small_forest.n_features
    with pytest.raises(CorruptModelError, match="splits on feature"):
        loads(_rewrite(data, tree_0=table))


@pytest.mark.parametrize("value", [np.inf, -np.inf, np.nan])
def test_split_value_must_be_finite(small_forest, value) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, SPLIT_VALUE] = value
    with pytest.raises(CorruptModelError, match="split value"):
        loads(_rewrite(data, tree_0=table))


def test_root_turned_into_leaf_orphans_the_rest(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, [FEATURE_INDEX, SPLIT_VALUE, LEFT_CHILD_ID, LEFT_CHILD_ID + 1]] = np.nan
    table[0, IS_LEAF] = 1
    table[0, LEAF_SIZE] = 5
    with pytest.raises(CorruptModelError, match="not reachable"):
        loads(_rewrite(data, tree_0=table))


def test_tree_deeper_than_its_limit(small_forest) -> None:
    data = dumps(small_forest)
    max_depths = _metadata(data)["max_depths"]
    max_depths[0] = 0
    with pytest.raises(CorruptModelError, match="exceeds its limit"):
        loads(_with_metadata(data, max_depths=max_depths))


def test_max_features_above_n_features(small_forest) -> None:
    data = dumps(small_forest)
    with pytest.raises(CorruptModelError, match="exceeds n_features"):
        loads(_with_metadata(data, max_features=small_forest.n_features + 1))


def test_nan_threshold(small_forest) -> None:
    with pytest.raises(CorruptModelError, match="not finite"):
        loads(_with_metadata(dumps(small_forest), threshold=float("nan")))


def test_finite_threshold_without_contamination(small_forest) -> None:
    assert np.isfinite(small_forest.threshold)
    with pytest.raises(CorruptModelError, match="contamination is 0"):
        loads(_with_metadata(dumps(small_forest), contamination=0.0))


def test_leaf_with_split_cells(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[_first_leaf(table), FEATURE_INDEX] = 0
    with pytest.raises(CorruptModelError, match="split cells set"):
        loads(_rewrite(data, tree_0=table))


def test_internal_node_with_leaf_size(small_forest) -> None:
    data = dumps(small_forest)
    table = _table(data)
    table[0, LEAF_SIZE] = 3
    with pytest.raises(CorruptModelError, match="leaf_size set"):
        loads(_rewrite(data, tree_0=table))


def test_extra_tree_table(small_forest) -> None:
    data = dumps(small_forest)
    extra = f"tree_{small_forest.num_estimators}"
    with pytest.raises(CorruptModelError, match="unexpected members"):
        loads(_rewrite(data, **{extra: _table(data)}))
