"""
Composite layers: inverted bottleneck blocks and block stacks.

Original paper:
"MobileNetV2: Inverted Residuals and Linear Bottlenecks"
Mark Sandler, Andrew Howard, Menglong Zhu, Andrey Zhmoginov, Liang-Chieh Chen
https://arxiv.org/abs/1801.04381
"""
import math

import torch.nn as nn
import torch.nn.functional as F

from checkpoint import LoadReport, native_key, stack_scope
from layers import BatchNorm, Conv2D, DepthwiseConv2D, Layer, ZeroPadding2D
from summary import SummaryRecord


def make_divisible(filter, width_multiplier=1.0, divisor=8.0):
    """
    Return a filter count multiplied by width, evenly divisible by the divisor.

    The 90% floor is measured against the unscaled `filter`, truncated to an int.
    Checkpoint tensor shapes depend on this exact rounding.

    Args:
        filter (int): Nominal channel count
        width_multiplier (float): Fractional width multiplier (alpha)
        divisor (float): Channel counts are rounded to multiples of this

    Returns:
        int: Channel count
    """
    scaled = filter * width_multiplier
    rounded = math.floor((scaled + divisor / 2.0) / divisor) * divisor
    new_filter_count = max(1, int(rounded))
    if new_filter_count < int(0.9 * filter):
        new_filter_count += int(divisor)
    return new_filter_count


def round_filter_pair(filters, width_multiplier):
    return (
        make_divisible(filters[0], width_multiplier),
        make_divisible(filters[1], width_multiplier),
    )


class CompositeLayer(Layer):
    """A layer made of named child layers, visited in declaration order."""

    def checkpoint_children(self):
        """Return ``[(role, child), ...]`` of the children that own tensors."""
        raise NotImplementedError

    def summary_children(self):
        return self.checkpoint_children()

    def child_scope(self, scope, role):
        return native_key(scope, role)

    def summary_detail(self):
        return ""

    def visit_for_save(self, scope):
        tensors = []
        for role, child in self.checkpoint_children():
            tensors.extend(child.visit_for_save(self.child_scope(scope, role)))
        return tensors

    def visit_for_load(self, scope, store):
        report = LoadReport()
        for role, child in self.checkpoint_children():
            report.extend(child.visit_for_load(self.child_scope(scope, role), store))
        return report

    def visit_for_foreign_load(self, prefix, store, counter):
        # Keras numbers layers with one global counter, so children share the prefix
        report = LoadReport()
        for _, child in self.checkpoint_children():
            report.extend(child.visit_for_foreign_load(prefix, store, counter))
        return report

    def summarize(self, scope):
        records = [SummaryRecord(type(self).__name__, (), scope, composite=True,
                                 detail=self.summary_detail())]
        for role, child in self.summary_children():
            records.extend(child.summarize(self.child_scope(scope, role)))
        return records


class InitialInvertedBottleneckBlock(CompositeLayer):
    def __init__(self, filters, width_multiplier):
        super().__init__()
        filter_mult = round_filter_pair(filters, width_multiplier)
        self.d_conv = DepthwiseConv2D((3, 3, filter_mult[0], 1), strides=(1, 1), padding="same")
        self.batch_norm_d_conv = BatchNorm(filter_mult[0])
        self.conv2 = Conv2D((1, 1, filter_mult[0], filter_mult[1]), strides=(1, 1), padding="same")
        self.batch_norm_conv = BatchNorm(filter_mult[1])

    def checkpoint_children(self):
        return [
            ("dConv", self.d_conv),
            ("dConvBN", self.batch_norm_d_conv),
            ("conv2", self.conv2),
            ("convBN", self.batch_norm_conv),
        ]

    def forward(self, x):
        depthwise = F.relu6(self.batch_norm_d_conv(self.d_conv(x)))
        return self.batch_norm_conv(self.conv2(depthwise))


class InvertedBottleneckBlock(CompositeLayer):
    """Expand (1x1) -> depthwise (3x3) -> project (1x1), with a residual add when shapes allow."""

    def __init__(self, filters, width_multiplier, depth_multiplier=6, strides=(1, 1)):
        super().__init__()
        self.strides = tuple(strides)
        self.add_res_layer = filters[0] == filters[1] and self.strides == (1, 1)
        self.zero_pad = ZeroPadding2D(((0, 1), (0, 1)))

        filter_mult = round_filter_pair(filters, width_multiplier)
        hidden_dimension = filter_mult[0] * depth_multiplier
        self.conv1 = Conv2D((1, 1, filter_mult[0], hidden_dimension), strides=(1, 1), padding="same")
        self.batch_norm_conv1 = BatchNorm(hidden_dimension)
        self.d_conv = DepthwiseConv2D((3, 3, hidden_dimension, 1), strides=self.strides,
                                      padding="same" if self.strides == (1, 1) else "valid")
        self.batch_norm_d_conv = BatchNorm(hidden_dimension)
        self.conv2 = Conv2D((1, 1, hidden_dimension, filter_mult[1]), strides=(1, 1), padding="same")
        self.batch_norm_conv2 = BatchNorm(filter_mult[1])

    def checkpoint_children(self):
        return [
            ("conv1", self.conv1),
            ("conv1BN", self.batch_norm_conv1),
            ("dConv", self.d_conv),
            ("dConvBN", self.batch_norm_d_conv),
            ("conv2", self.conv2),
            ("conv2BN", self.batch_norm_conv2),
        ]

    def summary_children(self):
        children = self.checkpoint_children()
        if self.strides != (1, 1):
            children.insert(2, ("zeroPad", self.zero_pad))
        return children

    def forward(self, x):
        pointwise = F.relu6(self.batch_norm_conv1(self.conv1(x)))
        if self.strides != (1, 1):
            pointwise = self.zero_pad(pointwise)
        depthwise = F.relu6(self.batch_norm_d_conv(self.d_conv(pointwise)))
        pointwise_linear = self.batch_norm_conv2(self.conv2(depthwise))
        if self.add_res_layer:
            return x + pointwise_linear
        return pointwise_linear


class InvertedBottleneckBlockStack(CompositeLayer):
    """`block_count` bottleneck blocks; only the first one changes width and stride."""

    def __init__(self, filters, width_multiplier, block_count, initial_strides=(2, 2)):
        super().__init__()
        if block_count < 1:
            raise ValueError(f"block_count must be at least 1, got {block_count}")
        blocks = [InvertedBottleneckBlock((filters[0], filters[1]), width_multiplier,
                                          strides=initial_strides)]
        for _ in range(1, block_count):
            blocks.append(InvertedBottleneckBlock((filters[1], filters[1]), width_multiplier))
        self.blocks = nn.ModuleList(blocks)

    def checkpoint_children(self):
        return list(enumerate(self.blocks))

    def child_scope(self, scope, role):
        return stack_scope(scope, role)

    def summary_detail(self):
        return str(len(self.blocks))

    def forward(self, x):
        for block in self.blocks:
            x = block(x)
        return x


class InvertedResNetBlock(CompositeLayer):
    """
    Bottleneck block laid out like the blocks of the Keras MobileNetV2 application.

    The expansion convolution exists only when `expansion` is not 1. Blocks are named
    ``expanded`` (id 0) and ``block_<id>`` in native checkpoints.
    """

    def __init__(self, filters, alpha, expansion=6, strides=(1, 1), block_id=0):
        super().__init__()
        self.strides = tuple(strides)
        self.add_res_layer = filters[0] == filters[1] and self.strides == (1, 1)
        self.prefix = f"block_{block_id}" if block_id > 0 else "expanded"
        self.zero_pad = ZeroPadding2D(((0, 1), (0, 1)))

        filter_mult = round_filter_pair(filters, alpha)
        hidden_dimension = filter_mult[0] * expansion

        if expansion != 1:
            self.conv1 = Conv2D((1, 1, filter_mult[0], hidden_dimension), strides=(1, 1), padding="same")
            self.batch_norm_conv1 = BatchNorm(hidden_dimension, momentum=0.999, epsilon=0.001)
        else:
            self.conv1 = None
            self.batch_norm_conv1 = None

        self.d_conv = DepthwiseConv2D((3, 3, hidden_dimension, 1), strides=self.strides,
                                      padding="same" if self.strides == (1, 1) else "valid")
        self.batch_norm_d_conv = BatchNorm(hidden_dimension, momentum=0.999, epsilon=0.001)
        self.conv2 = Conv2D((1, 1, hidden_dimension, filter_mult[1]), strides=(1, 1), padding="same")
        self.batch_norm_conv2 = BatchNorm(filter_mult[1], momentum=0.999, epsilon=0.001)

    @property
    def expanded(self):
        return self.conv1 is not None

    def checkpoint_children(self):
        children = []
        if self.expanded:
            children += [("conv1", self.conv1), ("conv1BN", self.batch_norm_conv1)]
        children += [
            ("dConv", self.d_conv),
            ("dConvBN", self.batch_norm_d_conv),
            ("conv2", self.conv2),
            ("conv2BN", self.batch_norm_conv2),
        ]
        return children

    def summary_children(self):
        children = self.checkpoint_children()
        if self.strides != (1, 1):
            position = 2 if self.expanded else 0
            children.insert(position, ("zeroPad", self.zero_pad))
        return children

    def forward(self, x):
        pointwise = x
        if self.expanded:
            pointwise = F.relu6(self.batch_norm_conv1(self.conv1(x)))
        if self.strides != (1, 1):
            pointwise = self.zero_pad(pointwise)
        depthwise = F.relu6(self.batch_norm_d_conv(self.d_conv(pointwise)))
        pointwise_linear = self.batch_norm_conv2(self.conv2(depthwise))
        if self.add_res_layer:
            return x + pointwise_linear
        return pointwise_linear
