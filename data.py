"""
Data processing and loading utilities for the posture image set.

This module handles:
1. Downloading and unpacking the posture archive when it is not present locally
2. Exploring the train/val directories (one subdirectory per posture class)
3. Assigning label indices by sorting the class directory names
4. Creating PyTorch datasets and data loaders
5. Saving the class mapping and reporting dataset statistics

Expected directory layout:
    <DATASET_DIR>/<base><size suffix>/train/<class>/<image>
    <DATASET_DIR>/<base><size suffix>/val/<class>/<image>
"""
import enum
import json
import os
from pathlib import Path

import torch
from torch.utils.data import DataLoader
from torchvision import datasets, transforms
from torchvision.datasets.folder import IMG_EXTENSIONS, has_file_allowed_extension
from torchvision.datasets.utils import download_and_extract_archive

from config import (
    BATCH_SIZE,
    CLASS_MAPPING_PATH,
    DATASET_BASE,
    DATASET_DIR,
    DATASET_REMOTE_ROOT,
    IMAGE_SIZE,
    NORMALIZE_MEAN,
    NORMALIZE_STD,
    NUM_WORKERS,
)


class ImagePostureSize(enum.Enum):
    """Variants of the posture set, by the size of the source images."""
    FULL = "full"
    RESIZED150 = "resized150"
    RESIZED320 = "resized320"

    @property
    def suffix(self):
        return {"full": "", "resized150": "-150", "resized320": "-320"}[self.value]


def dataset_root(directory=DATASET_DIR, size=ImagePostureSize.RESIZED320, base=DATASET_BASE):
    return Path(directory) / f"{base}{size.suffix}"


def archive_url(size=ImagePostureSize.RESIZED320, base=DATASET_BASE, remote_root=DATASET_REMOTE_ROOT):
    """Location of the archive of one dataset variant."""
    return f"{remote_root.rstrip('/')}/{base}{size.suffix}.tgz"


def download_posture_if_not_present(directory=DATASET_DIR, size=ImagePostureSize.RESIZED320,
                                    base=DATASET_BASE, remote_root=DATASET_REMOTE_ROOT):
    """
    Download and unpack the posture archive unless its directory already has content.

    Args:
        directory (str): Local directory holding the dataset
        size (ImagePostureSize): Dataset variant
        base (str): Base name of the dataset directory and archive
        remote_root (str): URL of the directory holding the .tgz archives

    Returns:
        bool: True if the archive was downloaded
    """
    download_path = dataset_root(directory, size, base)
    if download_path.is_dir() and any(download_path.iterdir()):
        return False

    url = archive_url(size, base, remote_root)
    print(f"⬇️  Downloading posture dataset {url} to {directory}...")
    Path(directory).mkdir(parents=True, exist_ok=True)
    download_and_extract_archive(url, download_root=str(directory), filename=f"{base}{size.suffix}.tgz")
    return True


def explore_posture_directory(name, directory=DATASET_DIR, size=ImagePostureSize.RESIZED320,
                              base=DATASET_BASE, download=True):
    """
    Locate the directory of one split, downloading the dataset first if needed.

    Args:
        name (str): Split name, 'train' or 'val'
        directory (str): Local directory holding the dataset
        size (ImagePostureSize): Dataset variant
        base (str): Base name of the dataset directory
        download (bool): Fetch the archive first if the dataset is missing

    Returns:
        Path: Directory holding one subdirectory per class
    """
    if download:
        download_posture_if_not_present(directory, size, base)

    path = dataset_root(directory, size, base) / name
    if not path.is_dir():
        raise FileNotFoundError(f"Posture split directory {path} does not exist")
    return path


class PostureImageFolder(datasets.ImageFolder):
    """
    ImageFolder over one posture split.

    Hidden class directories are ignored. When `label_dict` is given (the training
    split's ``class_to_idx``), labels come from it and an unknown class raises KeyError.
    """

    def __init__(self, root, transform=None, label_dict=None):
        self.label_dict = dict(label_dict) if label_dict is not None else None
        super().__init__(str(root), transform=transform)

    def find_classes(self, directory):
        classes = sorted(entry.name for entry in os.scandir(directory)
                         if entry.is_dir() and not entry.name.startswith("."))
        if not classes:
            raise FileNotFoundError(f"Couldn't find any class folder in {directory}.")
        if self.label_dict is None:
            return classes, {class_name: index for index, class_name in enumerate(classes)}

        unknown = [class_name for class_name in classes if class_name not in self.label_dict]
        if unknown:
            raise KeyError(f"Classes {unknown} of {directory} are not known classes")
        return classes, {class_name: self.label_dict[class_name] for class_name in classes}


def load_posture_directory(name, directory=DATASET_DIR, size=ImagePostureSize.RESIZED320,
                           base=DATASET_BASE, label_dict=None, transform=None, download=True):
    """
    Load the labeled images of one split.

    Args:
        name (str): Split name, 'train' or 'val'
        label_dict (dict): Class name -> index; built from this split when omitted
        transform (callable): Image transform, `make_transform()` when omitted

    Returns:
        PostureImageFolder: Dataset whose ``class_to_idx`` is the label dictionary
    """
    path = explore_posture_directory(name, directory, size, base, download=download)
    return PostureImageFolder(path, transform=transform or make_transform(), label_dict=label_dict)


def make_transform(output_size=IMAGE_SIZE, mean=NORMALIZE_MEAN, std=NORMALIZE_STD):
    """Resize to a square image, scale pixels to [0, 1] and optionally normalise."""
    steps = [
        transforms.Resize((output_size, output_size)),
        transforms.ToTensor(),
    ]
    if mean is not None and std is not None:
        steps.append(transforms.Normalize(mean=mean, std=std))
    return transforms.Compose(steps)


def create_data_loaders(batch_size=BATCH_SIZE, input_size=ImagePostureSize.RESIZED320,
                        output_size=IMAGE_SIZE, directory=DATASET_DIR, base=DATASET_BASE,
                        num_workers=NUM_WORKERS, seed=None, download=True):
    """
    Create PyTorch data loaders for the training and validation splits.

    Validation labels use the label dictionary of the training split.

    Args:
        batch_size (int): Batch size for data loaders
        input_size (ImagePostureSize): Dataset variant to read
        output_size (int): Square width/height of the returned images
        directory (str): Local directory holding the dataset
        base (str): Base name of the dataset directory
        num_workers (int): Number of workers for data loading
        seed (int): Seed of the training shuffle, random when omitted
        download (bool): Fetch the archive first if the dataset is missing

    Returns:
        tuple: (train_loader, val_loader, class_names, num_classes)
    """
    print("🔄 Creating data loaders...")

    transform = make_transform(output_size)
    train_dataset = load_posture_directory(
        "train", directory, input_size, base, transform=transform, download=download)
    val_dataset = load_posture_directory(
        "val", directory, input_size, base, label_dict=train_dataset.class_to_idx,
        transform=transform, download=False)

    print(f"✅ Training dataset: {len(train_dataset)} images")
    print(f"✅ Validation dataset: {len(val_dataset)} images")

    class_names = train_dataset.classes
    num_classes = len(class_names)
    print(f"📊 Found {num_classes} classes: {class_names}")

    generator = torch.Generator().manual_seed(seed) if seed is not None else None
    train_loader = DataLoader(
        train_dataset,
        batch_size=batch_size,
        shuffle=True,
        num_workers=num_workers,
        pin_memory=torch.cuda.is_available(),
        generator=generator,
    )
    val_loader = DataLoader(
        val_dataset,
        batch_size=batch_size,
        shuffle=False,
        num_workers=num_workers,
        pin_memory=torch.cuda.is_available(),
    )

    print(f"📦 Training batches: {len(train_loader)}")
    print(f"📦 Validation batches: {len(val_loader)}")

    return train_loader, val_loader, class_names, num_classes


def build_class_mapping(class_to_idx):
    return {
        "class_to_idx": dict(class_to_idx),
        "idx_to_class": {str(idx): class_name for class_name, idx in class_to_idx.items()},
        "classes": sorted(class_to_idx, key=class_to_idx.get),
    }


def save_class_mapping(class_mapping, mapping_path=CLASS_MAPPING_PATH):
    path = Path(mapping_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(class_mapping, f, indent=2)
    print(f"💾 Class mapping saved to {mapping_path}")


def get_dataset_stats(directory=DATASET_DIR, size=ImagePostureSize.RESIZED320, base=DATASET_BASE):
    """
    Get statistics about the training and validation splits.

    Returns:
        dict: Dataset statistics
    """
    stats = {
        'training': {},
        'validation': {},
        'total_training': 0,
        'total_validation': 0,
        'classes': []
    }

    root = dataset_root(directory, size, base)
    for split, key in (("train", "training"), ("val", "validation")):
        split_path = root / split
        if not split_path.exists():
            continue
        for class_dir in sorted(split_path.iterdir()):
            if not class_dir.is_dir() or class_dir.name.startswith("."):
                continue
            image_count = sum(1 for item in class_dir.iterdir()
                              if item.is_file() and has_file_allowed_extension(item.name, IMG_EXTENSIONS))
            stats[key][class_dir.name] = image_count
            stats[f'total_{key}'] += image_count
            if class_dir.name not in stats['classes']:
                stats['classes'].append(class_dir.name)

    stats['classes'].sort()

    print(f"\n📈 Dataset Statistics:")
    print(f"🎯 Total training images: {stats['total_training']}")
    print(f"🎯 Total validation images: {stats['total_validation']}")
    print(f"🏷️  Number of classes: {len(stats['classes'])}")
    for class_name in stats['classes']:
        train_count = stats['training'].get(class_name, 0)
        val_count = stats['validation'].get(class_name, 0)
        print(f"  {class_name}: {train_count + val_count} total ({train_count} train, {val_count} val)")

    return stats
