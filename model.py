"""
Model definitions and utilities for posture classification.

Networks:
    MobileNetV2   - the reference ImageNet architecture, residual blocks grouped in stacks
    PostureNetV2  - the same backbone laid out like the Keras MobileNetV2 application,
                    with dropout and a small classifier head (first posture model)
"""
import time

import torch
import torch.nn as nn
import torch.nn.functional as F
import torch.optim as optim
from tqdm import tqdm

from blocks import (
    CompositeLayer,
    InitialInvertedBottleneckBlock,
    InvertedBottleneckBlock,
    InvertedBottleneckBlockStack,
    InvertedResNetBlock,
    make_divisible,
)
from checkpoint import (
    LayerCounter,
    LoadReport,
    LoadStatus,
    TensorStore,
    foreign_prefix,
    read_checkpoint,
    write_checkpoint,
)
from config import CHECKPOINT_SCOPE
from layers import BatchNorm, Conv2D, Dense, Dropout, GlobalAvgPool2D, ZeroPadding2D


def last_block_filter_count(width_multiplier):
    # paper: "One minor implementation difference, with [arxiv:1704.04861] is that for
    # multipliers less than one, we apply width multiplier to all layers except the very
    # last convolutional layer."
    if width_multiplier < 1:
        return 1280
    return make_divisible(1280, width_multiplier)


class MobileNetV2(CompositeLayer):
    def __init__(self, class_count=1000, width_multiplier=1.0):
        super().__init__()
        self.class_count = class_count
        self.width_multiplier = width_multiplier

        self.zero_pad = ZeroPadding2D(((0, 1), (0, 1)))
        self.input_conv = Conv2D((3, 3, 3, make_divisible(32, width_multiplier)),
                                 strides=(2, 2), padding="valid")
        self.input_conv_batch_norm = BatchNorm(make_divisible(32, width_multiplier))
        self.initial_inverted_bottleneck = InitialInvertedBottleneckBlock((32, 16), width_multiplier)

        self.residual_block_stack1 = InvertedBottleneckBlockStack((16, 24), width_multiplier, block_count=2)
        self.residual_block_stack2 = InvertedBottleneckBlockStack((24, 32), width_multiplier, block_count=3)
        self.residual_block_stack3 = InvertedBottleneckBlockStack((32, 64), width_multiplier, block_count=4)
        self.residual_block_stack4 = InvertedBottleneckBlockStack((64, 96), width_multiplier, block_count=3,
                                                                  initial_strides=(1, 1))
        self.residual_block_stack5 = InvertedBottleneckBlockStack((96, 160), width_multiplier, block_count=3)

        self.inverted_bottleneck_block16 = InvertedBottleneckBlock((160, 320), width_multiplier)

        last_filter_count = last_block_filter_count(width_multiplier)
        self.output_conv = Conv2D((1, 1, make_divisible(320, width_multiplier), last_filter_count),
                                  strides=(1, 1), padding="same")
        self.output_conv_batch_norm = BatchNorm(last_filter_count)
        self.avg_pool = GlobalAvgPool2D()
        self.output_classifier = Dense(last_filter_count, class_count)

    def checkpoint_children(self):
        return [
            ("inputConv", self.input_conv),
            ("inputConvBN", self.input_conv_batch_norm),
            ("initBottleneck", self.initial_inverted_bottleneck),
            ("residual1", self.residual_block_stack1),
            ("residual2", self.residual_block_stack2),
            ("residual3", self.residual_block_stack3),
            ("residual4", self.residual_block_stack4),
            ("residual5", self.residual_block_stack5),
            ("Bottleneck16", self.inverted_bottleneck_block16),
            ("outputConv", self.output_conv),
            ("outputConvBN", self.output_conv_batch_norm),
            ("outputClassifier", self.output_classifier),
        ]

    def summary_children(self):
        children = self.checkpoint_children()
        children.insert(0, ("inputPad", self.zero_pad))
        children.insert(-1, ("avgPool", self.avg_pool))
        return children

    def load_python_weights(self, store):
        """
        Load a flat Keras MobileNetV2 checkpoint, classifier included in the layer count.

        Returns:
            tuple: (LoadReport, number of Keras layers visited)
        """
        counter = LayerCounter()
        report = self.visit_for_foreign_load("", store, counter)
        return report, counter.value

    def forward(self, x):
        convolved = F.relu6(self.input_conv_batch_norm(self.input_conv(self.zero_pad(x))))
        x = self.initial_inverted_bottleneck(convolved)
        for stack in (self.residual_block_stack1, self.residual_block_stack2, self.residual_block_stack3,
                      self.residual_block_stack4, self.residual_block_stack5):
            x = stack(x)
        x = self.inverted_bottleneck_block16(x)
        x = F.relu6(self.output_conv_batch_norm(self.output_conv(x)))
        return self.output_classifier(self.avg_pool(x))


# (filters, expansion, strides) of every inverted residual block, as in the Keras application
POSTURE_BLOCKS = [
    ((32, 16), 1, (1, 1)),
    ((16, 24), 6, (2, 2)),
    ((24, 24), 6, (1, 1)),
    ((24, 32), 6, (2, 2)),
    ((32, 32), 6, (1, 1)),
    ((32, 32), 6, (1, 1)),
    ((32, 64), 6, (2, 2)),
    ((64, 64), 6, (1, 1)),
    ((64, 64), 6, (1, 1)),
    ((64, 64), 6, (1, 1)),
    ((64, 96), 6, (1, 1)),
    ((96, 96), 6, (1, 1)),
    ((96, 96), 6, (1, 1)),
    ((96, 160), 6, (2, 2)),
    ((160, 160), 6, (1, 1)),
    ((160, 160), 6, (1, 1)),
    ((160, 320), 6, (1, 1)),
]


class PostureNetV2(CompositeLayer):
    """MobileNetV2 backbone followed by dropout and a `class_count`-way dense classifier."""

    def __init__(self, class_count=2, alpha=1.0):
        super().__init__()
        self.class_count = class_count
        self.width_multiplier = alpha

        batch_norm = dict(momentum=0.999, epsilon=0.001)
        self.zero_pad = ZeroPadding2D(((0, 1), (0, 1)))
        self.input_conv = Conv2D((3, 3, 3, make_divisible(32, alpha)), strides=(2, 2), padding="valid")
        self.input_conv_batch_norm = BatchNorm(make_divisible(32, alpha), **batch_norm)

        self.inverted_blocks = nn.ModuleList([
            InvertedResNetBlock(filters, alpha, expansion=expansion, strides=strides, block_id=block_id)
            for block_id, (filters, expansion, strides) in enumerate(POSTURE_BLOCKS)
        ])

        last_filter_count = last_block_filter_count(alpha)
        self.output_conv = Conv2D((1, 1, make_divisible(320, alpha), last_filter_count),
                                  strides=(1, 1), padding="same")
        self.output_conv_batch_norm = BatchNorm(last_filter_count, **batch_norm)
        self.avg_pool = GlobalAvgPool2D()
        self.dropout_layer = Dropout(0.2)
        self.output_classifier = Dense(last_filter_count, class_count)

    def backbone_children(self):
        children = [
            ("inputConv", self.input_conv),
            ("inputConvBN", self.input_conv_batch_norm),
        ]
        children += [(block.prefix, block) for block in self.inverted_blocks]
        children += [
            ("outputConv", self.output_conv),
            ("outputConvBN", self.output_conv_batch_norm),
        ]
        return children

    def checkpoint_children(self):
        return self.backbone_children() + [("outputClassifier", self.output_classifier)]

    def summary_children(self):
        children = self.checkpoint_children()
        children.insert(0, ("inputPad", self.zero_pad))
        children.insert(-1, ("avgPool", self.avg_pool))
        return children

    def load_python_weights(self, store):
        """
        Load a checkpoint saved by Keras from ``Sequential([MobileNetV2 base, ..., Dense])``.

        The base model is the first outer layer with weights, so its layers live under
        ``layer_with_weights-0/`` and are numbered by their own counter. The classifier is
        the next outer layer and is numbered by a separate counter restarted at 0.

        Returns:
            tuple: (LoadReport, reported layer count)
        """
        report = LoadReport()
        number = LayerCounter()
        outer = LayerCounter()

        prefix = foreign_prefix(outer.value)
        for _, child in self.backbone_children():
            report.extend(child.visit_for_foreign_load(prefix, store, number))

        outer.advance()
        report.extend(self.output_classifier.visit_for_foreign_load("", store, outer))

        # Calibrated against the posture_v1 Keras checkpoint; informational only
        return report, number.value + outer.value - 2

    def forward(self, x):
        x = F.relu6(self.input_conv_batch_norm(self.input_conv(self.zero_pad(x))))
        for block in self.inverted_blocks:
            x = block(x)
        x = F.relu6(self.output_conv_batch_norm(self.output_conv(x)))
        x = self.dropout_layer(self.avg_pool(x))
        return self.output_classifier(x)


ARCHITECTURES = {
    "mobilenetv2": MobileNetV2,
    "posturenetv2": PostureNetV2,
}


def create_model(num_classes, device, architecture="posturenetv2", width_multiplier=1.0):
    """
    Create a posture classification network.

    Args:
        num_classes (int): Number of output classes
        device (torch.device): Device to move the model to
        architecture (str): Key of ARCHITECTURES
        width_multiplier (float): Width multiplier (alpha) applied to every layer

    Returns:
        CompositeLayer: Initialized model
    """
    if architecture not in ARCHITECTURES:
        raise ValueError(f"Unknown architecture {architecture!r}, expected one of {sorted(ARCHITECTURES)}")
    model = ARCHITECTURES[architecture](num_classes, width_multiplier)
    model = model.to(device)

    return model


def model_config(model):
    architecture = next(name for name, cls in ARCHITECTURES.items() if type(model) is cls)
    return {
        'architecture': architecture,
        'num_classes': model.class_count,
        'width_multiplier': model.width_multiplier,
    }


def print_load_report(report, verbose=False, show_missing=True):
    """Print a load report: every failed tensor, and every loaded one when `verbose`."""
    for record in report:
        if record.status is LoadStatus.NOT_FOUND and not (show_missing or verbose):
            continue
        if verbose or record.status is not LoadStatus.LOADED:
            print(f"   {record}")
    print(f"   {report.summary_line()}")


def save_model(model, checkpoint_path, class_mapping=None):
    """
    Save the model as a native checkpoint with its configuration and class mapping.

    Args:
        model (CompositeLayer): Trained model
        checkpoint_path (str): Path to save the checkpoint
        class_mapping (dict): Class mapping information

    Returns:
        TensorStore: The tensors that were written
    """
    metadata = {'model_config': model_config(model), 'class_mapping': class_mapping or {}}
    store = write_checkpoint(model, checkpoint_path, scope=CHECKPOINT_SCOPE, metadata=metadata)
    print(f"💾 Checkpoint saved to {checkpoint_path} ({len(store)} tensors)")
    return store


def load_model(checkpoint_path, device):
    """
    Load a complete native checkpoint.

    Args:
        checkpoint_path (str): Path to the checkpoint file
        device (torch.device): Device to load the model on

    Returns:
        tuple: (model, class_mapping, load_report)
    """
    store = TensorStore.load(checkpoint_path)
    config = store.metadata.get('model_config', {})
    model = create_model(
        config.get('num_classes', 2), device,
        architecture=config.get('architecture', 'posturenetv2'),
        width_multiplier=config.get('width_multiplier', 1.0),
    )
    report = read_checkpoint(model, store, scope=CHECKPOINT_SCOPE)

    return model, store.metadata.get('class_mapping', {}), report


def read_model_checkpoint(model, checkpoint_path, verbose=False):
    """
    Read a native checkpoint into an existing model.

    Returns:
        LoadReport: Per-tensor outcomes
    """
    print(f"📥 {type(model).__name__}: reading checkpoint {checkpoint_path}")
    report = read_checkpoint(model, checkpoint_path, scope=CHECKPOINT_SCOPE)
    print_load_report(report, verbose=verbose)
    return report


def read_python_checkpoint(model, checkpoint_path, verbose=False):
    """
    Read a checkpoint written by Keras into an existing model.

    Args:
        model (MobileNetV2 | PostureNetV2): Model to fill
        checkpoint_path (str): Keras checkpoint prefix, torch file or .npz archive

    Returns:
        tuple: (LoadReport, layer count)
    """
    print(f"📥 {type(model).__name__}: reading python checkpoint {checkpoint_path}")
    store = TensorStore.load(checkpoint_path)
    report, layer_count = model.load_python_weights(store)
    print_load_report(report, verbose=verbose, show_missing=False)
    print(f"✅ {type(model).__name__} loaded from python checkpoint: {layer_count} layers")
    return report, layer_count


def train_model(model, train_loader, val_loader, device, num_epochs=10, learning_rate=0.002,
                momentum=0.9, patience=7):
    """
    Train the posture classification model.

    Args:
        model: Network to train
        train_loader: Training data loader
        val_loader: Validation data loader
        device: Device to run training on
        num_epochs: Maximum number of epochs
        learning_rate: Learning rate for SGD
        momentum: Momentum for SGD
        patience: Early stopping patience

    Returns:
        Tuple of (trained_model, training_history)
    """
    print(f"🚀 Starting training on {device}")
    print(f"📊 Training samples: {len(train_loader.dataset)}")
    print(f"📊 Validation samples: {len(val_loader.dataset)}")
    print(f"🎯 Number of classes: {len(train_loader.dataset.classes)}")
    print(f"⚙️  Learning rate: {learning_rate}")
    print(f"🔄 Max epochs: {num_epochs}")

    criterion = nn.CrossEntropyLoss()
    optimizer = optim.SGD(model.parameters(), lr=learning_rate, momentum=momentum)

    history = {
        'train_loss': [],
        'train_acc': [],
        'val_loss': [],
        'val_acc': []
    }

    best_val_acc = 0.0
    epochs_without_improvement = 0

    print("\n" + "="*95)
    print(f"{'Epoch':<6} {'Train Loss':<12} {'Train Acc':<12} {'Val Loss':<12} {'Val Acc':<12} {'Time':<8} {'Status':<15}")
    print("="*95)

    def train_one_epoch(model, dataloader, criterion, optimizer, device, epoch_num):
        model.train()
        running_loss = 0.0
        correct = 0
        total = 0

        pbar = tqdm(dataloader, desc=f"Epoch {epoch_num+1} [Train]", leave=False, ncols=100)

        for batch_idx, (inputs, labels) in enumerate(pbar):
            inputs, labels = inputs.to(device), labels.to(device)

            optimizer.zero_grad()
            outputs = model(inputs)
            loss = criterion(outputs, labels)
            loss.backward()
            optimizer.step()

            running_loss += loss.item() * inputs.size(0)
            correct += (outputs.argmax(dim=1) == labels).sum().item()
            total += labels.size(0)

            if (batch_idx + 1) % 10 == 0 or batch_idx == len(dataloader) - 1:
                pbar.set_postfix_str(f"{running_loss / total:.4f}, Acc: {correct / total * 100:.1f}%")

        pbar.close()
        return running_loss / max(total, 1), correct / max(total, 1)

    def validate(model, dataloader, criterion, device, epoch_num):
        model.eval()
        running_loss = 0.0
        correct = 0
        total = 0

        pbar = tqdm(dataloader, desc=f"Epoch {epoch_num+1} [Valid]", leave=False, ncols=100)

        with torch.no_grad():
            for inputs, labels in pbar:
                inputs, labels = inputs.to(device), labels.to(device)
                outputs = model(inputs)
                loss = criterion(outputs, labels)

                running_loss += loss.item() * inputs.size(0)
                correct += (outputs.argmax(dim=1) == labels).sum().item()
                total += labels.size(0)

        pbar.close()
        return running_loss / max(total, 1), correct / max(total, 1)

    for epoch in range(num_epochs):
        epoch_start_time = time.time()

        train_loss, train_acc = train_one_epoch(model, train_loader, criterion, optimizer, device, epoch)
        val_loss, val_acc = validate(model, val_loader, criterion, device, epoch)

        history['train_loss'].append(train_loss)
        history['train_acc'].append(train_acc * 100)
        history['val_loss'].append(val_loss)
        history['val_acc'].append(val_acc * 100)

        epoch_time = time.time() - epoch_start_time

        if val_acc > best_val_acc:
            best_val_acc = val_acc
            epochs_without_improvement = 0
            status = "✓ Best Model"
        else:
            epochs_without_improvement += 1
            if epochs_without_improvement >= patience:
                status = "Early Stop"
            else:
                status = f"Wait {epochs_without_improvement}/{patience}"

        print(f"{epoch+1:<6} {train_loss:<12.4f} {train_acc*100:<11.1f}% {val_loss:<12.4f} {val_acc*100:<11.1f}% {epoch_time:<7.1f}s {status:<15}")

        if epochs_without_improvement >= patience:
            print(f"\n🛑 Early stopping triggered after {epoch + 1} epochs")
            break

    print("="*95)
    print(f"🏆 Best validation accuracy: {best_val_acc*100:.2f}%")

    return model, history
