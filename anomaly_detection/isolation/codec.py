"""
Serialization of a trained IsolationForest.

A model is a numpy .npz archive (no pickled objects) holding:
- "metadata": a JSON document with the forest hyperparameters, the
  threshold, the feature dimensionality and the depth limit of each tree.
- "tree_<t>": one float64 node table per estimator, one row per node with the
  columns of NODE_COLUMNS. Unset cells are NaN. The root is node 0.
"""

from __future__ import annotations

import io
import json
import numbers
import os
import tempfile
import zipfile
from typing import Any

import numpy as np
import numpy.typing as npt

from ..errors import CorruptModelError, InvalidParameterError
from ..utils import logger
from .forest import IsolationForest
from .params import TrainingParams
from .tree import IsolationTree

FORMAT_VERSION = 1

NODE_COLUMNS = (
    "node_id",
    "is_leaf",
    "feature_index",
    "split_value",
    "left_child_id",
    "right_child_id",
    "leaf_size",
)
NODE_ID, IS_LEAF, FEATURE_INDEX, SPLIT_VALUE, LEFT_CHILD_ID, RIGHT_CHILD_ID, LEAF_SIZE = range(len(NODE_COLUMNS))

METADATA_FIELDS = {
    "format_version": int,
    "num_estimators": int,
    "max_samples": int,
    "max_features": int,
    "bootstrap": bool,
    "random_seed": int,
    "contamination": float,
    "threshold": float,
    "n_features": int,
    "max_depths": list,
}


def tree_to_table(tree: IsolationTree) -> npt.NDArray[np.floating[Any]]:
    """
    Args:
        tree: Tree to flatten.
    Returns:
        Node table of shape (n_nodes, len(NODE_COLUMNS)).
    """
    table = np.full((tree.n_nodes, len(NODE_COLUMNS)), np.nan)
    table[:, NODE_ID] = np.arange(tree.n_nodes)
    table[:, IS_LEAF] = tree.is_leaf

    internal = ~tree.is_leaf
    table[internal, FEATURE_INDEX] = tree.feature[internal]
    table[internal, SPLIT_VALUE] = tree.threshold[internal]
    table[internal, LEFT_CHILD_ID] = tree.left[internal]
    table[internal, RIGHT_CHILD_ID] = tree.right[internal]
    table[tree.is_leaf, LEAF_SIZE] = tree.leaf_size[tree.is_leaf]
    return table


MAX_LEAF_SIZE = 2 ** 53
LEAF_ONLY_COLUMNS = (LEAF_SIZE,)
INTERNAL_ONLY_COLUMNS = (FEATURE_INDEX, SPLIT_VALUE, LEFT_CHILD_ID, RIGHT_CHILD_ID)


def _as_int(value: float, what: str) -> int:
    if not np.isfinite(value) or value != int(value):
        raise CorruptModelError(f"{what} is not an integer: {value!r}")
    return int(value)


def table_to_tree(
    table: npt.NDArray[np.floating[Any]],
    max_depth: int,
    n_features: int,
) -> IsolationTree:
    """
    Rebuild a tree from its node table, rejecting any structural defect.
    Args:
        table: Node table as written by tree_to_table.
        max_depth: Depth limit recorded for the tree.
        n_features: Dimensionality of the forest.
    Returns:
        The reconstructed IsolationTree.
    """
    if table.ndim != 2 or table.shape[1] != len(NODE_COLUMNS):
        raise CorruptModelError(f"node table must have {len(NODE_COLUMNS)} columns, got shape {table.shape}")
    n_nodes = table.shape[0]
    if n_nodes == 0:
        raise CorruptModelError("node table is empty")

    # Rows may be stored in any order; node ids must be exactly 0..n_nodes-1.
    node_ids = [_as_int(value, "node_id") for value in table[:, NODE_ID]]
    if sorted(node_ids) != list(range(n_nodes)):
        raise CorruptModelError("node ids must be unique and contiguous from 0")
    table = table[np.argsort(node_ids)]

    feature = np.full(n_nodes, -1, dtype=np.intp)
    threshold = np.full(n_nodes, np.nan)
    left = np.full(n_nodes, -1, dtype=np.intp)
    right = np.full(n_nodes, -1, dtype=np.intp)
    leaf_size = np.full(n_nodes, -1, dtype=np.int64)

    # Values are range-checked as Python ints before they reach the fixed-width arrays.
    for node_id, row in enumerate(table):
        is_leaf = row[IS_LEAF]
        if is_leaf == 1:
            if not np.all(np.isnan(row[list(INTERNAL_ONLY_COLUMNS)])):
                raise CorruptModelError(f"leaf {node_id} has split cells set")
            size = _as_int(row[LEAF_SIZE], f"leaf_size of node {node_id}")
            if not 1 <= size <= MAX_LEAF_SIZE:
                raise CorruptModelError(f"leaf {node_id} has size {size}")
            leaf_size[node_id] = size
        elif is_leaf == 0:
            if not np.all(np.isnan(row[list(LEAF_ONLY_COLUMNS)])):
                raise CorruptModelError(f"internal node {node_id} has leaf_size set")
            idx_feature = _as_int(row[FEATURE_INDEX], f"feature_index of node {node_id}")
            if not 0 <= idx_feature < n_features:
                raise CorruptModelError(f"node {node_id} splits on feature {idx_feature} of {n_features}")
            feature[node_id] = idx_feature
            if not np.isfinite(row[SPLIT_VALUE]):
                raise CorruptModelError(f"node {node_id} has split value {row[SPLIT_VALUE]!r}")
            threshold[node_id] = row[SPLIT_VALUE]
            for column, children in ((LEFT_CHILD_ID, left), (RIGHT_CHILD_ID, right)):
                child = _as_int(row[column], f"child of node {node_id}")
                if not 0 <= child < n_nodes:
                    raise CorruptModelError(f"node {node_id} references missing node {child}")
                children[node_id] = child
        else:
            raise CorruptModelError(f"node {node_id} has is_leaf={is_leaf!r}")

    # Walk from the root: every node must be reached exactly once.
    depth = np.full(n_nodes, -1, dtype=np.intp)
    depth[0] = 0
    stack = [0]
    while stack:
        node_id = stack.pop()
        if left[node_id] < 0:
            continue
        for child in (left[node_id], right[node_id]):
            if child == 0 or depth[child] >= 0:
                raise CorruptModelError(f"node {child} is referenced more than once or forms a cycle")
            depth[child] = depth[node_id] + 1
            stack.append(child)

    if np.any(depth < 0):
        unreachable = np.flatnonzero(depth < 0).tolist()
        raise CorruptModelError(f"nodes {unreachable} are not reachable from the root")
    if depth.max() > max_depth:
        raise CorruptModelError(f"tree depth {depth.max()} exceeds its limit {max_depth}")

    return IsolationTree(
        feature=feature,
        threshold=threshold,
        left=left,
        right=right,
        leaf_size=leaf_size,
        depth=depth,
        max_depth=max_depth,
        n_features=n_features,
    )


def _plain_number(value: Any) -> int | float:
    # numpy scalars are not JSON serializable
    return int(value) if isinstance(value, numbers.Integral) else float(value)


def _export_metadata(forest: IsolationForest) -> dict[str, Any]:
    params = forest.params
    return {
        "format_version": FORMAT_VERSION,
        "num_estimators": forest.num_estimators,
        "max_samples": forest.max_samples,
        "max_features": forest.max_features,
        "bootstrap": bool(params.bootstrap),
        "random_seed": int(params.random_seed),
        "contamination": float(params.contamination),
        "threshold": forest.threshold,
        "n_features": forest.n_features,
        "max_depths": [tree.max_depth for tree in forest.trees],
        # Requested values, kept so the exact TrainingParams can be restored.
        "requested_max_samples": _plain_number(params.max_samples),
        "requested_max_features": _plain_number(params.max_features),
    }


def _check_metadata(metadata: Any) -> dict[str, Any]:
    if not isinstance(metadata, dict):
        raise CorruptModelError("metadata is not a JSON object")
    for name, kind in METADATA_FIELDS.items():
        if name not in metadata:
            raise CorruptModelError(f"metadata field '{name}' is missing")
        value = metadata[name]
        if kind is float:
            valid = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif kind is int:
            valid = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid = isinstance(value, kind)
        if not valid:
            raise CorruptModelError(f"metadata field '{name}' has invalid value {value!r}")

    if metadata["format_version"] != FORMAT_VERSION:
        raise CorruptModelError(f"unsupported format version {metadata['format_version']}")
    if metadata["num_estimators"] < 1 or len(metadata["max_depths"]) != metadata["num_estimators"]:
        raise CorruptModelError("metadata num_estimators does not match max_depths")
    if not all(isinstance(d, int) and not isinstance(d, bool) and d >= 0 for d in metadata["max_depths"]):
        raise CorruptModelError(f"metadata max_depths is invalid: {metadata['max_depths']!r}")
    if metadata["max_samples"] < 2 or metadata["max_features"] < 1:
        raise CorruptModelError("metadata max_samples or max_features is out of range")
    if metadata["n_features"] < 1:
        raise CorruptModelError(f"metadata n_features is {metadata['n_features']}")
    if metadata["max_features"] > metadata["n_features"]:
        raise CorruptModelError(
            f"metadata max_features {metadata['max_features']} exceeds n_features {metadata['n_features']}"
        )
    threshold = metadata["threshold"]
    if metadata["contamination"] == 0:
        if threshold != np.inf:
            raise CorruptModelError(f"threshold {threshold!r} is set although contamination is 0")
    elif not np.isfinite(threshold):
        raise CorruptModelError(f"threshold {threshold!r} is not finite")
    return metadata


def dumps(forest: IsolationForest) -> bytes:
    """
    Args:
        forest: Trained forest.
    Returns:
        The serialized model.
    """
    arrays = {
        "metadata": np.array(json.dumps(_export_metadata(forest))),
    }
    for tree_idx, tree in enumerate(forest.trees):
        arrays[f"tree_{tree_idx}"] = tree_to_table(tree)

    buffer = io.BytesIO()
    np.savez_compressed(buffer, **arrays)
    return buffer.getvalue()


def loads(data: bytes) -> IsolationForest:
    """
    Args:
        data: Bytes produced by dumps.
    Returns:
        The reconstructed forest, identical to the one serialized.
    """
    try:
        archive = np.load(io.BytesIO(data), allow_pickle=False)
    except (EOFError, OSError, ValueError, zipfile.BadZipFile) as exc:
        raise CorruptModelError(f"not a model archive: {exc}") from exc
    if not isinstance(archive, np.lib.npyio.NpzFile):
        raise CorruptModelError("not a model archive: expected an .npz file")

    with archive:
        if "metadata" not in archive.files:
            raise CorruptModelError("model archive has no metadata")
        try:
            document = json.loads(str(archive["metadata"]))
        except (ValueError, zipfile.BadZipFile) as exc:
            raise CorruptModelError(f"unreadable metadata: {exc}") from exc
        metadata = _check_metadata(document)

        expected = {"metadata"} | {f"tree_{tree_idx}" for tree_idx in range(metadata["num_estimators"])}
        unexpected = sorted(set(archive.files) - expected)
        if unexpected:
            raise CorruptModelError(f"unexpected members in model archive: {', '.join(unexpected)}")

        try:
            params = TrainingParams(
                num_estimators=metadata["num_estimators"],
                max_samples=metadata.get("requested_max_samples", metadata["max_samples"]),
                contamination=metadata["contamination"],
                max_features=metadata.get("requested_max_features", metadata["max_features"]),
                bootstrap=metadata["bootstrap"],
                random_seed=metadata["random_seed"],
            )
        except InvalidParameterError as exc:
            raise CorruptModelError(f"invalid hyperparameters in metadata: {exc}") from exc

        trees = []
        for tree_idx, max_depth in enumerate(metadata["max_depths"]):
            name = f"tree_{tree_idx}"
            if name not in archive.files:
                raise CorruptModelError(f"table '{name}' is missing")
            try:
                table = np.asarray(archive[name], dtype=np.float64)
            except (ValueError, zipfile.BadZipFile) as exc:
                raise CorruptModelError(f"unreadable table '{name}': {exc}") from exc
            trees.append(table_to_tree(table, max_depth, metadata["n_features"]))

    return IsolationForest(
        trees=trees,
        params=params,
        max_samples=metadata["max_samples"],
        max_features=metadata["max_features"],
        n_features=metadata["n_features"],
        threshold=metadata["threshold"],
    )


def save(forest: IsolationForest, path: str | os.PathLike[str]) -> None:
    """
    Write the model to path atomically: the file either holds the complete
    model or is left untouched. I/O errors propagate unchanged.
    Args:
        forest: Trained forest.
        path: Destination file.
    """
    data = dumps(forest)
    path = os.fspath(path)
    directory = os.path.dirname(os.path.abspath(path))

    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".npz", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    logger.info(f"Saved Isolation Forest ({forest.num_estimators} trees) to {path}")


def load(path: str | os.PathLike[str]) -> IsolationForest:
    """
    Args:
        path: File written by save.
    Returns:
        The reconstructed forest.
    """
    with open(path, "rb") as f:
        data = f.read()
    forest = loads(data)
    logger.info(f"Loaded Isolation Forest ({forest.num_estimators} trees) from {os.fspath(path)}")
    return forest
