"""
Named-tensor store and checkpoint helpers shared by every layer of the network tree.

This module handles:
1. Building checkpoint keys in the native dialect ("model/inputConv/w") and in the
   Keras dialect ("layer_with_weights-3/kernel/.ATTRIBUTES/VARIABLE_VALUE")
2. Holding named float32 tensors in memory and persisting them to disk
3. Reporting per-tensor load outcomes without aborting the whole load
4. Writing and reading native checkpoints for any layer tree
"""
import enum
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import torch

LAYER_WITH_WEIGHTS = "layer_with_weights-{layer}/{value}/.ATTRIBUTES/VARIABLE_VALUE"


class CheckpointError(Exception):
    """Raised when a checkpoint cannot be used as a whole."""


class StoreUnreadableError(CheckpointError):
    """Raised when the backing file of a tensor store cannot be opened or parsed."""


def native_key(scope, role):
    """Join a parent scope and a child role into a native checkpoint key."""
    if not scope:
        return role
    return f"{scope}/{role}"


def stack_scope(scope, index):
    """Scope of the block at `index` inside a repeated block stack."""
    return native_key(scope, f"blocks/h{index}")


def foreign_key(number, attribute, prefix=""):
    """Key of a Keras variable, e.g. ``layer_with_weights-3/kernel/.ATTRIBUTES/VARIABLE_VALUE``."""
    return prefix + LAYER_WITH_WEIGHTS.format(layer=number, value=attribute)


def foreign_prefix(number):
    """Prefix under which a nested Keras model stores its own layers."""
    return f"layer_with_weights-{number}/"


@dataclass
class LayerCounter:
    """Running index of Keras layers that own weights.

    A single counter is threaded through a whole traversal; it is never reset per branch.
    """
    value: int = 0

    def advance(self):
        self.value += 1
        return self.value


class LoadStatus(enum.Enum):
    LOADED = "loaded"
    SHAPE_MISMATCH = "shape mismatch"
    NOT_FOUND = "not found"


@dataclass(frozen=True)
class LoadRecord:
    """Outcome of loading one tensor of one layer."""
    layer: str
    candidates: tuple
    status: LoadStatus
    key: str = None
    expected_shape: tuple = ()
    found_shape: tuple = None

    def __str__(self):
        if self.status is LoadStatus.LOADED:
            return f"{self.layer}: {self.key} - loaded {list(self.expected_shape)}"
        if self.status is LoadStatus.SHAPE_MISMATCH:
            return (f"{self.layer}: {self.key} - shape mismatch: "
                    f"{list(self.expected_shape)} != {list(self.found_shape)}")
        return f"{self.layer}: {list(self.candidates)} - not found in checkpoint"


@dataclass
class LoadReport:
    """Ordered collection of `LoadRecord`s produced by one checkpoint traversal."""
    records: list = field(default_factory=list)

    def append(self, record):
        self.records.append(record)

    def extend(self, other):
        self.records.extend(other.records if isinstance(other, LoadReport) else other)
        return self

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)

    def with_status(self, status):
        return [record for record in self.records if record.status is status]

    @property
    def loaded(self):
        return self.with_status(LoadStatus.LOADED)

    @property
    def mismatched(self):
        return self.with_status(LoadStatus.SHAPE_MISMATCH)

    @property
    def missing(self):
        return self.with_status(LoadStatus.NOT_FOUND)

    @property
    def ok(self):
        return len(self.loaded) == len(self.records)

    def summary_line(self):
        return (f"{len(self.loaded)} loaded, {len(self.mismatched)} shape mismatches, "
                f"{len(self.missing)} not found")


class TensorStore(MutableMapping):
    """In-memory mapping from checkpoint key to float32 tensor.

    The store also carries a free-form ``metadata`` dictionary (model configuration,
    class mapping) that is persisted next to the tensors.
    """

    def __init__(self, tensors=None, metadata=None):
        self._tensors = {}
        self.metadata = dict(metadata or {})
        for key, value in (tensors or {}).items():
            self[key] = value

    def __getitem__(self, key):
        return self._tensors[key]

    def __setitem__(self, key, value):
        if isinstance(value, np.ndarray):
            value = torch.from_numpy(np.ascontiguousarray(value))
        # Later writes to an existing key silently replace the earlier tensor
        self._tensors[key] = value.detach().to(device="cpu", dtype=torch.float32).clone()

    def __delitem__(self, key):
        del self._tensors[key]

    def __iter__(self):
        return iter(self._tensors)

    def __len__(self):
        return len(self._tensors)

    def __repr__(self):
        return f"TensorStore({len(self)} tensors)"

    def shapes(self):
        return {key: tuple(value.shape) for key, value in self._tensors.items()}

    def save(self, path):
        """
        Persist the store with torch.save.

        Args:
            path (str | Path): Destination file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save({"tensors": dict(self._tensors), "metadata": self.metadata}, path)

    @classmethod
    def load(cls, path):
        """
        Load a store from disk.

        Supported formats:
            - files written by `TensorStore.save` (or a bare ``{key: tensor}`` dict saved with torch.save)
            - ``.npz`` archives of named arrays
            - TensorFlow checkpoint prefixes (``cp.ckpt`` next to ``cp.ckpt.index``), requires tensorflow

        Args:
            path (str | Path): Checkpoint file or TensorFlow checkpoint prefix

        Returns:
            TensorStore: The loaded store

        Raises:
            StoreUnreadableError: If the checkpoint does not exist or cannot be parsed
        """
        path = Path(path)
        if path.suffix == ".npz" and path.is_file():
            return cls._load_npz(path)
        if path.is_file():
            return cls._load_torch(path)
        if Path(f"{path}.index").is_file():
            return cls._load_tensorflow(path)
        raise StoreUnreadableError(f"No checkpoint found at {path}")

    @classmethod
    def _load_torch(cls, path):
        try:
            payload = torch.load(path, map_location="cpu", weights_only=True)
        except Exception as e:
            raise StoreUnreadableError(f"Could not read checkpoint {path}: {e}") from e

        if not isinstance(payload, dict):
            raise StoreUnreadableError(f"Checkpoint {path} does not contain a tensor dictionary")
        if "tensors" in payload:
            tensors, metadata = payload["tensors"], payload.get("metadata", {})
        else:
            tensors, metadata = payload, {}
        if not all(isinstance(value, torch.Tensor) for value in tensors.values()):
            raise StoreUnreadableError(f"Checkpoint {path} contains non-tensor entries")
        return cls(tensors, metadata)

    @classmethod
    def _load_npz(cls, path):
        try:
            with np.load(path, allow_pickle=False) as archive:
                tensors = {key: archive[key].astype(np.float32) for key in archive.files}
        except Exception as e:
            raise StoreUnreadableError(f"Could not read numpy archive {path}: {e}") from e
        return cls(tensors)

    @classmethod
    def _load_tensorflow(cls, prefix):
        try:
            import tensorflow as tf

            reader = tf.train.load_checkpoint(str(prefix))
            tensors = {
                key: reader.get_tensor(key).astype(np.float32)
                for key, dtype in reader.get_variable_to_dtype_map().items()
                if dtype.is_floating
            }
        except Exception as e:
            raise StoreUnreadableError(f"Could not read TensorFlow checkpoint {prefix}: {e}") from e
        return cls(tensors)


def load_tensor(store, candidates, target, layer, check_shape=True):
    """
    Copy the first present candidate key of `store` into `target`.

    Args:
        store (TensorStore): Source of named tensors
        candidates (list): Keys to try, in order
        target (torch.Tensor): Parameter or buffer to overwrite in place
        layer (str): Name of the owning layer type, used in the record
        check_shape (bool): Refuse tensors whose shape differs from `target`

    Returns:
        LoadRecord: What happened to this tensor
    """
    candidates = tuple(candidates)
    expected = tuple(target.shape)
    for key in candidates:
        if key not in store:
            continue
        value = store[key]
        found = tuple(value.shape)
        if check_shape and found != expected:
            return LoadRecord(layer, candidates, LoadStatus.SHAPE_MISMATCH, key, expected, found)
        assign_tensor(target, value)
        return LoadRecord(layer, candidates, LoadStatus.LOADED, key, expected, found)
    return LoadRecord(layer, candidates, LoadStatus.NOT_FOUND, None, expected)


def assign_tensor(target, value):
    """
    Overwrite `target` with `value`.

    Only running statistics are loaded without a shape check, so only they can have
    their storage replaced by a tensor of another shape.
    """
    value = value.to(device=target.device, dtype=target.dtype)
    with torch.no_grad():
        if target.shape == value.shape:
            target.copy_(value)
        elif isinstance(target, torch.nn.Parameter):
            raise ValueError(f"Cannot assign a {list(value.shape)} tensor to a {list(target.shape)} parameter")
        else:
            target.data = value.clone()


def collect_tensors(model, scope):
    """Walk `model` in declaration order and gather its native-dialect tensors into a new store."""
    store = TensorStore()
    for key, tensor in model.visit_for_save(scope):
        store[key] = tensor
    return store


def write_checkpoint(model, path, scope="model", metadata=None):
    """
    Save every parameter of `model` under native-dialect keys.

    Args:
        model (Layer): Root of the layer tree
        path (str | Path): Destination file
        scope (str): Root scope of every key
        metadata (dict): Extra information stored with the tensors

    Returns:
        TensorStore: The store that was written
    """
    store = collect_tensors(model, scope)
    store.metadata.update(metadata or {})
    store.save(path)
    return store


def read_checkpoint(model, source, scope="model"):
    """
    Load native-dialect tensors into `model`.

    Args:
        model (Layer): Root of the layer tree, already built with the right shapes
        source (TensorStore | str | Path): Store or checkpoint path
        scope (str): Root scope of every key

    Returns:
        LoadReport: Per-tensor outcomes

    Raises:
        StoreUnreadableError: If `source` is a path that cannot be read
    """
    store = source if isinstance(source, TensorStore) else TensorStore.load(source)
    return model.visit_for_load(scope, store)
