import numpy as np
import pytest
import torch

from patchinfer.inference import PatchWindow, VolumeSize, copy_patch_to_output, plan_patches
from patchinfer.inference.errors import ConfigurationError, ModelExecutionError


def _patch_output(shape, offset=1000.):
    return np.arange(np.prod(shape), dtype=np.float32).reshape(shape) + offset


def test_volume_size():
    size = VolumeSize(x=10, y=3, z=2)
    assert size.numel == 60
    assert size.volume_shape == (2, 3, 10)


def test_copy_only_valid_region():
    output_size = VolumeSize(10, 3, 2)
    out_buffer = np.full(output_size.numel, -1, dtype=np.float32)
    window = PatchWindow(start_pixel=2, patch_size=4, start_pixel_valid=3, patch_size_valid=2)
    patch = _patch_output((1, 2, 3, 4))

    copy_patch_to_output(patch, out_buffer, 'NZYX', 'NZYX', output_size, window, 'X')

    volume = out_buffer.reshape(2, 3, 10)
    np.testing.assert_array_equal(volume[:, :, 3:5], patch[0, :, :, 1:3])
    assert np.all(volume[:, :, :3] == -1)
    assert np.all(volume[:, :, 5:] == -1)


def test_copy_into_permuted_layout():
    # The tiled X axis ends up as the slice axis of the final layout
    final_size = VolumeSize(x=2, y=3, z=10)  # (slice=X, line=Y, pixel=Z)
    out_buffer = np.full(final_size.numel, -1, dtype=np.float64)
    window = PatchWindow(start_pixel=4, patch_size=4, start_pixel_valid=5, patch_size_valid=2)
    patch = torch.from_numpy(_patch_output((1, 4, 3, 2)))  # Already in final layout NXYZ

    copy_patch_to_output(patch, out_buffer, 'NZYX', 'NXYZ', final_size, window, 'X')

    volume = out_buffer.reshape(10, 3, 2)
    np.testing.assert_array_equal(volume[5:7], patch.numpy()[0, 1:3])
    assert np.all(volume[:5] == -1)
    assert np.all(volume[7:] == -1)


def test_copy_into_line_axis():
    final_size = VolumeSize(x=3, y=8, z=2)  # (slice=Z, line=X, pixel=Y)
    out_buffer = np.zeros(final_size.numel, dtype=np.int32)
    window = PatchWindow(start_pixel=0, patch_size=5, start_pixel_valid=0, patch_size_valid=4)
    patch = _patch_output((1, 2, 5, 3), offset=0)

    copy_patch_to_output(patch, out_buffer, 'NZYX', 'NZXY', final_size, window, 'X')

    volume = out_buffer.reshape(2, 8, 3)
    np.testing.assert_array_equal(volume[:, :4], patch[0, :, :4].astype(np.int32))
    assert np.all(volume[:, 4:] == 0)


def test_values_are_clamped_to_buffer_type():
    output_size = VolumeSize(4, 1, 1)
    out_buffer = np.zeros(4, dtype=np.uint8)
    patch = np.array([-3.5, 12.9, 255.5, 1e6], dtype=np.float32).reshape(1, 1, 1, 4)

    copy_patch_to_output(patch, out_buffer, 'NZYX', 'NZYX', output_size, PatchWindow(0, 4, 0, 4), 'X')

    np.testing.assert_array_equal(out_buffer, [0, 12, 255, 255])


def test_stitched_patches_cover_output():
    num_pixels, y, z = 23, 2, 3
    output_size = VolumeSize(num_pixels, y, z)
    full = _patch_output((1, z, y, num_pixels), offset=0)
    out_buffer = np.full(output_size.numel, -1, dtype=np.float32)
    for window in plan_patches(num_pixels, 6, 2):
        patch = full[..., window.window_slice()]
        copy_patch_to_output(patch, out_buffer, 'NZYX', 'NZYX', output_size, window, 'X')
    np.testing.assert_array_equal(out_buffer, full.ravel())


def test_output_too_small():
    output_size = VolumeSize(10, 3, 2)
    out_buffer = np.zeros(output_size.numel, dtype=np.float32)
    window = PatchWindow(2, 4, 3, 2)
    with pytest.raises(ModelExecutionError):
        copy_patch_to_output(
            _patch_output((1, 2, 2, 4)), out_buffer, 'NZYX', 'NZYX', output_size, window, 'X',
            model_id='m'
        )
    with pytest.raises(ModelExecutionError):
        copy_patch_to_output(
            _patch_output((2, 2, 3, 4)), out_buffer, 'NZYX', 'NZYX', output_size, window, 'X'
        )


def test_invalid_out_buffer():
    output_size = VolumeSize(10, 3, 2)
    window = PatchWindow(2, 4, 3, 2)
    patch = _patch_output((1, 2, 3, 4))
    for buffer in [np.zeros(59, dtype=np.float32), np.zeros((2, 3, 10), dtype=np.float32)]:
        with pytest.raises(ConfigurationError):
            copy_patch_to_output(patch, buffer, 'NZYX', 'NZYX', output_size, window, 'X')


def test_tiling_the_batch_axis_is_rejected():
    output_size = VolumeSize(10, 3, 2)
    out_buffer = np.zeros(output_size.numel, dtype=np.float32)
    with pytest.raises(AssertionError):
        copy_patch_to_output(
            _patch_output((1, 2, 3, 4)), out_buffer, 'NZYX', 'NZYX', output_size,
            PatchWindow(2, 4, 3, 2), 'N'
        )
