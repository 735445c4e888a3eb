import pytest
import torch

from patchinfer.inference import TiledAxis, change_layout, layout_permutation
from patchinfer.inference.errors import ConfigurationError
from patchinfer.inference.layout import is_identity, tiled_axis_from_permutation


@pytest.mark.parametrize('current_layout, out_layout, expected', [
    ('NZYX', 'NZYX', (0, 1, 2, 3)),
    ('NZYX', 'NXYZ', (0, 3, 2, 1)),
    ('NZYX', 'NZXY', (0, 1, 3, 2)),
    ('NCHW', 'NHWC', (0, 2, 3, 1)),
])
def test_layout_permutation(current_layout, out_layout, expected):
    assert layout_permutation(current_layout, out_layout) == expected


def test_equal_layouts_give_identity():
    for layout in ['NZYX', 'NXZY', 'ABCD']:
        assert is_identity(layout_permutation(layout, layout))


@pytest.mark.parametrize('current_layout, out_layout', [
    ('NZYX', 'NZY'),
    ('NZYX', 'NZYW'),
    ('NZZX', 'NZXZ'),
])
def test_mismatching_layouts(current_layout, out_layout):
    with pytest.raises(ConfigurationError):
        layout_permutation(current_layout, out_layout)


def test_change_layout_same_layout_is_passthrough():
    t = torch.arange(24).reshape(1, 2, 3, 4)
    assert change_layout(t, 'NZYX', 'NZYX') is t


def test_change_layout_moves_data():
    t = torch.arange(24).reshape(1, 2, 3, 4)
    p = change_layout(t, 'NZYX', 'NXYZ')
    assert p.shape == (1, 4, 3, 2)
    for z in range(2):
        for y in range(3):
            for x in range(4):
                assert p[0, x, y, z] == t[0, z, y, x]
    # Back and forth is lossless
    assert torch.equal(change_layout(p, 'NXYZ', 'NZYX'), t)


def test_change_layout_dim_mismatch():
    with pytest.raises(ConfigurationError):
        change_layout(torch.zeros(2, 3, 4), 'NZYX', 'NXYZ')


@pytest.mark.parametrize('final_layout, expected', [
    ('NZYX', TiledAxis.PIXEL),
    ('NXYZ', TiledAxis.SLICE),
    ('NZXY', TiledAxis.LINE),
    ('NYXZ', TiledAxis.LINE),
])
def test_tiled_axis(final_layout, expected):
    permutation = layout_permutation('NZYX', final_layout)
    assert tiled_axis_from_permutation(permutation, 3) is expected


def test_tiled_axis_volume_dims():
    assert [a.volume_dim for a in (TiledAxis.SLICE, TiledAxis.LINE, TiledAxis.PIXEL)] == [0, 1, 2]


def test_tiled_batch_axis_is_an_invariant_violation():
    permutation = layout_permutation('NZYX', 'XZYN')
    with pytest.raises(AssertionError):
        tiled_axis_from_permutation(permutation, 3)
