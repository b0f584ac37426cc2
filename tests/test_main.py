import numpy as np
import torch
from PIL import Image

import main
from data import create_data_loaders
from model import PostureNetV2, save_model
from predict import class_names_from_mapping, predict_pose, preprocess_image


def test_summary_mode(capsys):
    assert main.main(["summary", "--architecture", "mobilenetv2", "--width-multiplier", "0.35",
                      "--classes", "3"]) == 0
    out = capsys.readouterr().out
    assert "MobileNetV2" in out
    assert "model/outputClassifier" in out


def test_convert_mode(tmp_path, foreign_keys, monkeypatch):
    monkeypatch.setattr(main, "DEVICE", torch.device("cpu"))
    keys = foreign_keys(PostureNetV2(class_count=2, alpha=0.35))
    source = tmp_path / "cp.npz"
    np.savez(source, **{key: np.full(shape, 0.5, dtype=np.float32) for key, shape in keys})
    target = tmp_path / "model2.ckpt"

    assert main.main(["convert", "--width-multiplier", "0.35", "--python-checkpoint", str(source),
                      "--checkpoint", str(target)]) == 0
    assert target.is_file()


def test_convert_mode_reports_unreadable_checkpoint(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr(main, "DEVICE", torch.device("cpu"))
    assert main.main(["convert", "--width-multiplier", "0.35",
                      "--python-checkpoint", str(tmp_path / "absent.ckpt"),
                      "--checkpoint", str(tmp_path / "out.ckpt")]) == 1
    assert "No checkpoint found" in capsys.readouterr().out


def test_predict_mode(tmp_path, small_posturenet, monkeypatch, capsys):
    monkeypatch.setattr(main, "DEVICE", torch.device("cpu"))
    checkpoint = tmp_path / "model.ckpt"
    save_model(small_posturenet, checkpoint, {"classes": ["bad", "good"]})
    image = tmp_path / "person.png"
    Image.fromarray(np.zeros((50, 40, 3), dtype=np.uint8)).save(image)

    assert main.main(["predict", "--checkpoint", str(checkpoint), "--image", str(image)]) == 0
    out = capsys.readouterr().out
    assert "PREDICTION RESULTS" in out


def test_predict_mode_without_image(tmp_path):
    assert main.main(["predict", "--image", str(tmp_path / "missing.png")]) == 1


def test_predict_pose(tmp_path, small_posturenet):
    image = tmp_path / "person.png"
    Image.fromarray(np.full((30, 30, 3), 128, dtype=np.uint8)).save(image)
    tensor, original = preprocess_image(image, image_size=32)
    assert tensor.shape == (1, 3, 32, 32)
    assert original.size == (30, 30)

    predicted, confidence, probabilities = predict_pose(
        small_posturenet, tensor, {"classes": ["bad", "good"]}, torch.device("cpu"))
    assert predicted in ("bad", "good")
    assert 0.5 <= confidence <= 1.0
    assert np.isclose(probabilities.sum(), 1.0, atol=1e-5)


def test_class_names_from_mapping():
    assert class_names_from_mapping({"idx_to_class": {"0": "bad", "1": "good"}}, 2) == ["bad", "good"]
    assert class_names_from_mapping({}, 3) == ["0", "1", "2"]


def test_train_mode(tmp_path, posture_tree, monkeypatch, capsys):
    monkeypatch.setattr(main, "DEVICE", torch.device("cpu"))
    monkeypatch.setattr(main, "CLASS_MAPPING_PATH", str(tmp_path / "mappings" / "class_mapping.json"))
    monkeypatch.setattr(main, "create_data_loaders", lambda batch_size, input_size, output_size: create_data_loaders(
        batch_size=batch_size, input_size=input_size, output_size=64, directory=posture_tree, seed=0,
        download=False))
    checkpoint = tmp_path / "model.ckpt"

    assert main.main(["train", "--architecture", "mobilenetv2", "--width-multiplier", "0.35",
                      "--epochs", "1", "--batch-size", "2", "--checkpoint", str(checkpoint)]) == 0

    out = capsys.readouterr().out
    for banner in ("CREATING DATA LOADERS", "TRAINING MODEL", "SAVING MODEL"):
        assert f"---------- {banner} ----------" in out
    assert checkpoint.is_file()
    assert (tmp_path / "mappings" / "class_mapping.json").is_file()
