# tests/conftest.py
# pytest fixtures: small networks and a temporary posture image tree
import numpy as np
import pytest
import torch
from PIL import Image

from checkpoint import LayerCounter, TensorStore
from model import MobileNetV2, PostureNetV2


@pytest.fixture(autouse=True)
def seeded():
    torch.manual_seed(0)


@pytest.fixture()
def small_mobilenet():
    return MobileNetV2(class_count=3, width_multiplier=0.35).eval()


@pytest.fixture()
def small_posturenet():
    return PostureNetV2(class_count=2, alpha=0.35).eval()


@pytest.fixture()
def foreign_keys():
    """
    Return the Keras keys a model asks for, with the shapes it expects.

    Loading from an empty store visits every key without touching the model.
    """
    def _keys(model):
        if hasattr(model, "load_python_weights"):
            report, _ = model.load_python_weights(TensorStore())
        else:
            report = model.visit_for_foreign_load("", TensorStore(), LayerCounter())
        return [(record.candidates[0], record.expected_shape) for record in report]
    return _keys


@pytest.fixture()
def posture_tree(tmp_path):
    """
    Build ``<tmp>/data/imageposture-150/{train,val}/{bad,good}/*.png``.

    Returns:
        Path: The dataset directory to pass as `directory`
    """
    directory = tmp_path / "data"
    root = directory / "imageposture-150"
    counts = {"train": {"good": 3, "bad": 2}, "val": {"good": 1, "bad": 1}}
    rng = np.random.default_rng(0)
    for split, classes in counts.items():
        for label, count in classes.items():
            class_dir = root / split / label
            class_dir.mkdir(parents=True)
            for i in range(count):
                pixels = rng.integers(0, 255, size=(40, 30, 3), dtype=np.uint8)
                Image.fromarray(pixels).save(class_dir / f"{label}_{i}.png")
    # hidden entries are ignored
    (root / "train" / "good" / ".DS_Store").write_bytes(b"")
    return directory
