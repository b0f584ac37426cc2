import pytest
import torch
import torch.nn.functional as F

from checkpoint import collect_tensors
from data import ImagePostureSize, create_data_loaders
from layers import BatchNorm, Dense, DepthwiseConv2D
from model import (
    MobileNetV2,
    PostureNetV2,
    create_model,
    last_block_filter_count,
    load_model,
    model_config,
    read_model_checkpoint,
    save_model,
    train_model,
)


def test_last_block_keeps_1280_filters_below_unit_width():
    assert last_block_filter_count(0.35) == 1280
    assert last_block_filter_count(1.0) == 1280
    assert last_block_filter_count(1.4) == 1792


def test_mobilenet_forward_shape(small_mobilenet):
    with torch.no_grad():
        out = small_mobilenet(torch.randn(2, 3, 64, 64))
    assert out.shape == (2, 3)


def test_posturenet_forward_shape(small_posturenet):
    with torch.no_grad():
        out = small_posturenet(torch.randn(2, 3, 64, 64))
    assert out.shape == (2, 2)


def test_posturenet_block_layout(small_posturenet):
    blocks = small_posturenet.inverted_blocks
    assert len(blocks) == 17
    assert [block.prefix for block in blocks[:3]] == ["expanded", "block_1", "block_2"]
    assert not blocks[0].expanded
    assert all(block.expanded for block in blocks[1:])
    assert blocks[2].add_res_layer and not blocks[1].add_res_layer
    assert small_posturenet.output_classifier.weight.shape == (1280, 2)


def test_posturenet_native_keys(small_posturenet):
    keys = set(collect_tensors(small_posturenet, "model"))
    assert "model/expanded/dConv/w" in keys
    assert "model/expanded/conv1/w" not in keys
    assert "model/block_1/conv1/w" in keys
    assert "model/block_16/conv2BN/v" in keys
    assert "model/outputClassifier/b" in keys


def test_create_model_rejects_unknown_architecture():
    with pytest.raises(ValueError):
        create_model(2, torch.device("cpu"), architecture="resnet50")


def test_model_config():
    model = create_model(4, torch.device("cpu"), architecture="mobilenetv2", width_multiplier=0.35)
    assert isinstance(model, MobileNetV2)
    assert model_config(model) == {"architecture": "mobilenetv2", "num_classes": 4, "width_multiplier": 0.35}


def test_save_and_load_model(tmp_path, small_posturenet):
    path = tmp_path / "checkpoints" / "model.ckpt"
    mapping = {"classes": ["bad", "good"], "class_to_idx": {"bad": 0, "good": 1}}
    save_model(small_posturenet, path, mapping)

    model, class_mapping, report = load_model(path, torch.device("cpu"))

    assert isinstance(model, PostureNetV2)
    assert model.width_multiplier == 0.35
    assert class_mapping == mapping
    assert report.ok
    x = torch.randn(1, 3, 64, 64)
    with torch.no_grad():
        assert torch.equal(model.eval()(x), small_posturenet(x))


def test_dense_uses_in_out_layout():
    dense = Dense(3, 2)
    x = torch.randn(4, 3)
    assert torch.allclose(dense(x), x @ dense.weight + dense.bias)


def test_depthwise_filters_each_channel():
    conv = DepthwiseConv2D((3, 3, 2, 1), padding="same")
    x = torch.randn(1, 2, 5, 5)
    out = conv(x)
    for channel in range(2):
        kernel = conv.filter[:, :, channel, 0].reshape(1, 1, 3, 3)
        expected = F.conv2d(x[:, channel:channel + 1], kernel, padding="same")
        assert torch.allclose(out[:, channel:channel + 1], expected, atol=1e-6)


def test_batch_norm_inference_uses_running_statistics():
    norm = BatchNorm(2, epsilon=0.001).eval()
    with torch.no_grad():
        norm.running_mean.copy_(torch.tensor([1.0, -1.0]))
        norm.running_variance.copy_(torch.tensor([4.0, 0.25]))
        norm.scale.copy_(torch.tensor([2.0, 1.0]))
        norm.offset.copy_(torch.tensor([0.5, 0.0]))
    x = torch.randn(3, 2, 4, 4)
    mean = norm.running_mean.view(1, 2, 1, 1)
    variance = norm.running_variance.view(1, 2, 1, 1)
    expected = (x - mean) / torch.sqrt(variance + 0.001) * norm.scale.view(1, 2, 1, 1) + norm.offset.view(1, 2, 1, 1)
    assert torch.allclose(norm(x), expected, atol=1e-5)


def test_batch_norm_training_updates_statistics_with_keras_momentum():
    norm = BatchNorm(1, momentum=0.99)
    x = torch.full((2, 1, 2, 2), 3.0)
    norm(x)
    assert torch.allclose(norm.running_mean, torch.tensor([0.03]))


def test_read_model_checkpoint_reports_mismatch(tmp_path, small_mobilenet, capsys):
    path = tmp_path / "model.ckpt"
    save_model(small_mobilenet, path)

    report = read_model_checkpoint(MobileNetV2(class_count=5, width_multiplier=0.35), path)

    assert [record.key for record in report.mismatched] == [
        "model/outputClassifier/w", "model/outputClassifier/b"]
    out = capsys.readouterr().out
    assert "shape mismatch: [1280, 5] != [1280, 3]" in out
    assert "2 shape mismatches" in out


def test_train_model_runs_one_epoch(posture_tree):
    train_loader, val_loader, _, num_classes = create_data_loaders(
        batch_size=2, input_size=ImagePostureSize.RESIZED150, output_size=64,
        directory=posture_tree, seed=0, download=False)
    model = create_model(num_classes, torch.device("cpu"), "mobilenetv2", 0.35)

    trained, history = train_model(model, train_loader, val_loader, torch.device("cpu"), num_epochs=1)

    assert trained is model
    assert len(history["train_loss"]) == 1
    assert 0.0 <= history["val_acc"][0] <= 100.0
