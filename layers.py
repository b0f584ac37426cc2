"""
Leaf layers of the network tree.

Convolution and dense weights are kept in TensorFlow layout (HWIO for filters,
(in, out) for dense weights) so that native and Keras checkpoints address the very
same tensors; the forward passes permute to the layouts torch expects.

Every layer takes part in four traversals:
    visit_for_save(scope)                           -> [(key, tensor), ...]
    visit_for_load(scope, store)                    -> LoadReport
    visit_for_foreign_load(prefix, store, counter)  -> LoadReport
    summarize(scope)                                -> [SummaryRecord, ...]
"""
import math
from dataclasses import dataclass

import torch
import torch.nn as nn
import torch.nn.functional as F

from checkpoint import LoadReport, foreign_key, load_tensor, native_key
from summary import SummaryRecord


@dataclass(frozen=True)
class TensorRole:
    """How one tensor of a layer is addressed in each checkpoint dialect."""
    attribute: str
    short: str
    legacy: tuple = ()
    foreign: str = None
    statistic: bool = False


class Layer(nn.Module):
    """Base class of every node in the network tree."""

    def visit_for_save(self, scope):
        raise NotImplementedError

    def visit_for_load(self, scope, store):
        raise NotImplementedError

    def visit_for_foreign_load(self, prefix, store, counter):
        raise NotImplementedError

    def summarize(self, scope):
        raise NotImplementedError


class ParametrizedLayer(Layer):
    """A layer owning named tensors described by `roles`."""
    roles = ()

    def tensor(self, role):
        return getattr(self, role.attribute)

    def visit_for_save(self, scope):
        return [(native_key(scope, role.short), self.tensor(role)) for role in self.roles]

    def visit_for_load(self, scope, store):
        report = LoadReport()
        name = type(self).__name__
        for role in self.roles:
            candidates = [native_key(scope, role.short)]
            candidates += [native_key(scope, legacy) for legacy in role.legacy]
            # Running statistics are taken as-is from the first key present
            report.append(load_tensor(store, candidates, self.tensor(role), name,
                                      check_shape=not role.statistic))
        return report

    def visit_for_foreign_load(self, prefix, store, counter):
        report = LoadReport()
        foreign_roles = [role for role in self.roles if role.foreign]
        if not foreign_roles:
            return report
        name = type(self).__name__
        for role in foreign_roles:
            key = foreign_key(counter.value, role.foreign, prefix)
            report.append(load_tensor(store, [key], self.tensor(role), name,
                                      check_shape=not role.statistic))
        counter.advance()
        return report

    def summarize(self, scope):
        shapes = tuple(tuple(self.tensor(role).shape) for role in self.roles if not role.statistic)
        return [SummaryRecord(type(self).__name__, shapes, scope)]


class StatelessLayer(Layer):
    """A layer without tensors: it is listed in summaries and skipped by checkpoints."""

    def visit_for_save(self, scope):
        return []

    def visit_for_load(self, scope, store):
        return LoadReport()

    def visit_for_foreign_load(self, prefix, store, counter):
        return LoadReport()

    def summarize(self, scope):
        return [SummaryRecord(type(self).__name__, (), scope)]


def glorot_uniform(shape, fan_in, fan_out):
    # nn.init.xavier_uniform_ reads fans from dims 0 and 1, which are kernel height/width in HWIO
    limit = math.sqrt(6.0 / (fan_in + fan_out))
    return nn.init.uniform_(torch.empty(shape), -limit, limit)


def check_padding(padding, strides):
    if padding not in ("same", "valid"):
        raise ValueError(f"Unknown padding {padding!r}, expected 'same' or 'valid'")
    if padding == "same" and tuple(strides) != (1, 1):
        raise ValueError("'same' padding is only supported with strides (1, 1)")


class Conv2D(ParametrizedLayer):
    roles = (
        TensorRole("filter", "w", ("filter",), foreign="kernel"),
        TensorRole("bias", "b", ("bias",)),
    )

    def __init__(self, filter_shape, strides=(1, 1), padding="valid"):
        """
        Args:
            filter_shape (tuple): (height, width, input channels, output channels)
            strides (tuple): Vertical and horizontal stride
            padding (str): 'same' or 'valid'
        """
        super().__init__()
        check_padding(padding, strides)
        height, width, in_channels, out_channels = filter_shape
        self.strides = tuple(strides)
        self.padding = padding
        self.filter = nn.Parameter(glorot_uniform(
            filter_shape, height * width * in_channels, height * width * out_channels))
        self.bias = nn.Parameter(torch.zeros(out_channels))

    def forward(self, x):
        return F.conv2d(x, self.filter.permute(3, 2, 0, 1), self.bias,
                        stride=self.strides, padding=self.padding)


class DepthwiseConv2D(ParametrizedLayer):
    roles = (
        TensorRole("filter", "w", ("filter",), foreign="depthwise_kernel"),
        TensorRole("bias", "b", ("bias",)),
    )

    def __init__(self, filter_shape, strides=(1, 1), padding="valid"):
        """
        Args:
            filter_shape (tuple): (height, width, channels, channel multiplier)
            strides (tuple): Vertical and horizontal stride
            padding (str): 'same' or 'valid'
        """
        super().__init__()
        check_padding(padding, strides)
        height, width, channels, multiplier = filter_shape
        self.strides = tuple(strides)
        self.padding = padding
        self.filter = nn.Parameter(glorot_uniform(
            filter_shape, height * width * channels, height * width * multiplier))
        self.bias = nn.Parameter(torch.zeros(channels * multiplier))

    def forward(self, x):
        height, width, channels, multiplier = self.filter.shape
        weight = self.filter.permute(2, 3, 0, 1).reshape(channels * multiplier, 1, height, width)
        return F.conv2d(x, weight, self.bias, stride=self.strides,
                        padding=self.padding, groups=channels)


class BatchNorm(ParametrizedLayer):
    roles = (
        TensorRole("scale", "w", ("scale",), foreign="gamma"),
        TensorRole("offset", "b", ("offset",), foreign="beta"),
        TensorRole("running_mean", "m", ("running_mean",), foreign="moving_mean", statistic=True),
        TensorRole("running_variance", "v", ("running_variance",), foreign="moving_variance",
                   statistic=True),
    )

    def __init__(self, feature_count, momentum=0.99, epsilon=0.001):
        super().__init__()
        # TensorFlow convention: running = momentum * running + (1 - momentum) * batch
        self.momentum = momentum
        self.epsilon = epsilon
        self.scale = nn.Parameter(torch.ones(feature_count))
        self.offset = nn.Parameter(torch.zeros(feature_count))
        self.register_buffer("running_mean", torch.zeros(feature_count))
        self.register_buffer("running_variance", torch.ones(feature_count))

    def forward(self, x):
        return F.batch_norm(x, self.running_mean, self.running_variance, self.scale, self.offset,
                            training=self.training, momentum=1.0 - self.momentum, eps=self.epsilon)


class LayerNorm(ParametrizedLayer):
    roles = (
        TensorRole("scale", "w", ("scale",), foreign="gamma"),
        TensorRole("offset", "b", ("offset",), foreign="beta"),
    )

    def __init__(self, feature_count, epsilon=0.001):
        super().__init__()
        self.epsilon = epsilon
        self.scale = nn.Parameter(torch.ones(feature_count))
        self.offset = nn.Parameter(torch.zeros(feature_count))

    def forward(self, x):
        return F.layer_norm(x, self.scale.shape, self.scale, self.offset, eps=self.epsilon)


class Dense(ParametrizedLayer):
    roles = (
        TensorRole("weight", "w", ("weight",), foreign="kernel"),
        TensorRole("bias", "b", ("bias",), foreign="bias"),
    )

    def __init__(self, input_size, output_size):
        super().__init__()
        self.weight = nn.Parameter(glorot_uniform((input_size, output_size), input_size, output_size))
        self.bias = nn.Parameter(torch.zeros(output_size))

    def forward(self, x):
        return F.linear(x, self.weight.t(), self.bias)


class ZeroPadding2D(StatelessLayer):
    def __init__(self, padding=((0, 1), (0, 1))):
        super().__init__()
        self.padding = padding

    def forward(self, x):
        (top, bottom), (left, right) = self.padding
        return F.pad(x, (left, right, top, bottom))


class GlobalAvgPool2D(StatelessLayer):
    def forward(self, x):
        return x.mean(dim=(2, 3))


class Dropout(StatelessLayer):
    def __init__(self, probability):
        super().__init__()
        self.probability = probability

    def forward(self, x):
        return F.dropout(x, self.probability, training=self.training)
