"""
Entry point for training, checkpoint conversion, prediction and model summaries.

Modes:
    train    - train on the posture set and write a native checkpoint
    convert  - read a Keras (python) checkpoint and write it as a native checkpoint
    predict  - classify one image with a native checkpoint
    summary  - print the layer summary of the configured architecture
"""
import argparse
import os
import sys

from config import (
    ARCHITECTURE,
    BATCH_SIZE,
    CHECKPOINT_PATH,
    CLASS_COUNT,
    CLASS_MAPPING_PATH,
    DEVICE,
    EPOCHS,
    IMAGE_SIZE,
    LEARNING_RATE,
    MOMENTUM,
    PATIENCE,
    PYTHON_CHECKPOINT_PATH,
    WIDTH_MULTIPLIER,
)
from checkpoint import CheckpointError
from data import ImagePostureSize, build_class_mapping, create_data_loaders, save_class_mapping
from model import create_model, load_model, read_python_checkpoint, save_model, train_model
from predict import predict_pose, preprocess_image, print_prediction, display_results
from summary import print_summary


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Posture classification with MobileNetV2-family networks")
    parser.add_argument("mode", choices=["train", "convert", "predict", "summary"])
    parser.add_argument("--architecture", default=ARCHITECTURE, choices=["posturenetv2", "mobilenetv2"])
    parser.add_argument("--classes", type=int, default=CLASS_COUNT)
    parser.add_argument("--width-multiplier", type=float, default=WIDTH_MULTIPLIER)
    parser.add_argument("--checkpoint", default=CHECKPOINT_PATH)
    parser.add_argument("--python-checkpoint", default=PYTHON_CHECKPOINT_PATH)
    parser.add_argument("--image", help="image to classify in predict mode")
    parser.add_argument("--epochs", type=int, default=EPOCHS)
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE)
    parser.add_argument("--show", action="store_true", help="plot the prediction")
    parser.add_argument("--verbose", action="store_true", help="list every loaded tensor")
    return parser.parse_args(argv)


def run_train(args):
    print("---------- CREATING DATA LOADERS ----------")
    train_loader, val_loader, class_names, num_classes = create_data_loaders(
        batch_size=args.batch_size, input_size=ImagePostureSize.RESIZED150, output_size=IMAGE_SIZE)

    model = create_model(num_classes, DEVICE, args.architecture, args.width_multiplier)
    print_summary(model)

    print("\n---------- TRAINING MODEL ----------")
    trained_model, _ = train_model(
        model=model,
        train_loader=train_loader,
        val_loader=val_loader,
        device=DEVICE,
        num_epochs=args.epochs,
        learning_rate=LEARNING_RATE,
        momentum=MOMENTUM,
        patience=PATIENCE,
    )

    print("\n---------- SAVING MODEL ----------")
    class_mapping = build_class_mapping(train_loader.dataset.class_to_idx)
    save_class_mapping(class_mapping, CLASS_MAPPING_PATH)
    save_model(trained_model, args.checkpoint, class_mapping)


def run_convert(args):
    model = create_model(args.classes, DEVICE, args.architecture, args.width_multiplier)
    print_summary(model)
    read_python_checkpoint(model, args.python_checkpoint, verbose=args.verbose)
    save_model(model, args.checkpoint)
    print(f"✅ Converted {args.python_checkpoint} to {args.checkpoint}")


def run_predict(args):
    if not args.image or not os.path.exists(args.image):
        print(f"❌ Image not found: {args.image}")
        return 1

    model, class_mapping, report = load_model(args.checkpoint, DEVICE)
    print(f"🤖 Model loaded: {report.summary_line()}")

    image_tensor, original_image = preprocess_image(args.image)
    predicted_class, confidence, all_probabilities = predict_pose(model, image_tensor, class_mapping, DEVICE)
    print_prediction(predicted_class, confidence, all_probabilities, class_mapping)
    if args.show:
        display_results(original_image, predicted_class, confidence, all_probabilities, class_mapping)
    return 0


def run_summary(args):
    model = create_model(args.classes, DEVICE, args.architecture, args.width_multiplier)
    print_summary(model)


def main(argv=None):
    args = parse_args(argv)
    print(f"---------- STARTING {args.mode.upper()} ----------")
    try:
        if args.mode == "train":
            run_train(args)
        elif args.mode == "convert":
            run_convert(args)
        elif args.mode == "predict":
            return run_predict(args)
        else:
            run_summary(args)
    except CheckpointError as e:
        print(f"❌ ERROR: {e}")
        return 1
    print(f"---------- ENDING {args.mode.upper()} ----------")
    return 0


if __name__ == "__main__":
    sys.exit(main())
