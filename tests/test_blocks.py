import pytest
import torch

from blocks import (
    InitialInvertedBottleneckBlock,
    InvertedBottleneckBlock,
    InvertedBottleneckBlockStack,
    InvertedResNetBlock,
    make_divisible,
    round_filter_pair,
)
from layers import Conv2D


def test_make_divisible_known_values():
    assert make_divisible(32) == 32
    assert make_divisible(32, 1.0) == 32
    assert make_divisible(32, 0.35) == 16
    assert make_divisible(320, 0.35) == 120
    assert make_divisible(1280, 1.4) == 1792
    assert round_filter_pair((32, 16), 0.35) == (16, 16)


def test_make_divisible_floor_uses_unscaled_filter():
    # 16 * 0.35 rounds to 8, which is below int(0.9 * 16)
    assert make_divisible(16, 0.35) == 16


def test_make_divisible_idempotent_at_unit_width():
    for filter_count in range(4, 1025):
        once = make_divisible(filter_count, 1.0)
        assert make_divisible(once, 1.0) == once


@pytest.mark.parametrize("width_multiplier", [1.0, 1.3, 1.4, 2.0])
def test_make_divisible_monotonic(width_multiplier):
    counts = [make_divisible(f, width_multiplier) for f in range(4, 1025)]
    assert counts == sorted(counts)


@pytest.mark.parametrize("filters, strides, expected", [
    ((24, 24), (1, 1), True),
    ((16, 24), (1, 1), False),
    ((16, 24), (2, 2), False),
    ((24, 24), (2, 2), False),
])
def test_residual_shortcut_rule(filters, strides, expected):
    block = InvertedBottleneckBlock(filters, 1.0, strides=strides)
    assert block.add_res_layer is expected


def test_residual_block_keeps_shape():
    block = InvertedBottleneckBlock((24, 24), 1.0).eval()
    x = torch.randn(2, 24, 9, 9)
    assert block(x).shape == x.shape


def test_strided_block_halves_spatial_size():
    block = InvertedBottleneckBlock((16, 24), 1.0, strides=(2, 2)).eval()
    out = block(torch.randn(1, 16, 16, 16))
    assert out.shape == (1, 24, 8, 8)


def test_initial_block_shapes():
    block = InitialInvertedBottleneckBlock((32, 16), 1.0)
    keys = [key for key, _ in block.visit_for_save("init")]
    assert keys == [
        "init/dConv/w", "init/dConv/b",
        "init/dConvBN/w", "init/dConvBN/b", "init/dConvBN/m", "init/dConvBN/v",
        "init/conv2/w", "init/conv2/b",
        "init/convBN/w", "init/convBN/b", "init/convBN/m", "init/convBN/v",
    ]
    assert block.eval()(torch.randn(1, 32, 8, 8)).shape == (1, 16, 8, 8)


def test_stack_keys_are_indexed():
    stack = InvertedBottleneckBlockStack((16, 24), 1.0, block_count=3)
    keys = [key for key, _ in stack.visit_for_save("model/residual1")]
    for i in range(3):
        assert f"model/residual1/blocks/h{i}/conv1/w" in keys
        assert f"model/residual1/blocks/h{i}/conv2BN/v" in keys
    assert not any("blocks/h3" in key for key in keys)
    assert len(keys) == 3 * 18


def test_stack_only_first_block_changes_shape():
    stack = InvertedBottleneckBlockStack((16, 24), 1.0, block_count=3)
    assert stack.blocks[0].strides == (2, 2)
    assert not stack.blocks[0].add_res_layer
    assert all(block.add_res_layer for block in stack.blocks[1:])


def test_stack_rejects_empty():
    with pytest.raises(ValueError):
        InvertedBottleneckBlockStack((16, 24), 1.0, block_count=0)


def test_same_padding_requires_unit_stride():
    with pytest.raises(ValueError):
        Conv2D((3, 3, 3, 8), strides=(2, 2), padding="same")
    with pytest.raises(ValueError):
        Conv2D((3, 3, 3, 8), padding="full")


def test_resnet_block_without_expansion_has_no_conv1():
    block = InvertedResNetBlock((32, 16), 1.0, expansion=1, block_id=0)
    assert not block.expanded
    assert block.prefix == "expanded"
    roles = [role for role, _ in block.checkpoint_children()]
    assert roles == ["dConv", "dConvBN", "conv2", "conv2BN"]


def test_resnet_block_with_expansion():
    block = InvertedResNetBlock((16, 24), 1.0, expansion=6, strides=(2, 2), block_id=1)
    assert block.expanded
    assert block.prefix == "block_1"
    assert block.conv1.filter.shape == (1, 1, 16, 96)
    assert block.d_conv.filter.shape == (3, 3, 96, 1)
    roles = [role for role, _ in block.summary_children()]
    assert roles[:3] == ["conv1", "conv1BN", "zeroPad"]
    assert block.eval()(torch.randn(1, 16, 16, 16)).shape == (1, 24, 8, 8)


def test_conv_filters_use_glorot_bounds_over_hwio_fans():
    conv = Conv2D((3, 3, 16, 8))
    limit = (6.0 / (3 * 3 * 16 + 3 * 3 * 8)) ** 0.5
    assert conv.filter.abs().max() <= limit
    assert conv.filter.std() > 0
    assert torch.equal(conv.bias, torch.zeros(8))
