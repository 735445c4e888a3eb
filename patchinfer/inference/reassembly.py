# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

from typing import NamedTuple, Optional, Sequence, Union

import numpy as np
import torch

from .dtypes import Converter, get_converter
from .errors import ConfigurationError, ModelExecutionError
from .layout import layout_permutation, tiled_axis_from_permutation
from .planner import PatchWindow


class VolumeSize(NamedTuple):
    """Extent of a volume along its pixel (x), line (y) and slice (z) axes."""
    x: int
    y: int
    z: int

    @property
    def numel(self) -> int:
        return self.x * self.y * self.z

    @property
    def volume_shape(self) -> tuple:
        """Shape of the row-major (slice, line, pixel) view of a buffer"""
        return self.z, self.y, self.x


def copy_patch_to_output(
        output: Union[np.ndarray, torch.Tensor],
        out_buffer: np.ndarray,
        model_output_layout: str,
        final_layout: str,
        output_size: Sequence[int],
        window: PatchWindow,
        tiled_axis_name: str,
        converter: Optional[Converter] = None,
        model_id: Optional[str] = None
) -> None:
    """Write the valid region of one model output patch into the output buffer.

    The model output has already been permuted to ``final_layout`` and
    covers the whole patch window along the tiled axis, so along that axis
    it is shifted by ``window.start_pixel`` w.r.t. the absolute output
    coordinates. Only ``[window.start_pixel_valid, window.valid_stop)`` is
    written; all other axes are copied completely.

    Args:
        output: Model output of one patch in ``final_layout``, with 4
            dimensions and batch size 1.
        out_buffer: Flat, C-contiguous buffer with ``output_size.numel``
            elements that receives the results. It is addressed as
            ``slice * Y * X + line * X + pixel``.
        model_output_layout: Layout in which the model produced ``output``.
        final_layout: Layout of ``output`` and of the output buffer.
        output_size: (x, y, z) extent of the output buffer.
        window: Patch window of ``output`` along the tiled axis.
        tiled_axis_name: Name of the axis along which patches were sliced.
        converter: Value conversion function from ``output.dtype`` to
            ``out_buffer.dtype``. If ``None``, it is looked up here.
        model_id: Only used for error messages.
    """
    if isinstance(output, torch.Tensor):
        output = output.detach().cpu().numpy()
    output_size = VolumeSize(*output_size)
    if out_buffer.ndim != 1 or not out_buffer.flags.c_contiguous or out_buffer.size != output_size.numel:
        raise ConfigurationError(
            f'out_buffer has to be a flat contiguous array of {output_size.numel} '
            f'elements, but has shape {out_buffer.shape}.'
        )

    # Determine which output dimension is affected by the patching
    permutation = layout_permutation(model_output_layout, final_layout)
    tiled_axis = tiled_axis_from_permutation(
        permutation, model_output_layout.index(tiled_axis_name)
    )
    if output.ndim != 4 or output.shape[0] != 1:
        raise ModelExecutionError(
            model_id, f'Expected model output of shape (1, ...) with 4 dims, got {output.shape}.'
        )

    # Default: full extent, no offset. Only the tiled axis is restricted to
    #  the valid region and shifted into the coordinates of the model output.
    out_ranges = [slice(0, n) for n in output_size.volume_shape]
    offsets = [0, 0, 0]
    out_ranges[tiled_axis.volume_dim] = window.valid_slice()
    offsets[tiled_axis.volume_dim] = window.start_pixel

    patch_slice = tuple(slice(r.start - o, r.stop - o) for r, o in zip(out_ranges, offsets))
    out_tile = output[(0, *patch_slice)]
    expected_shape = tuple(r.stop - r.start for r in out_ranges)
    if out_tile.shape != expected_shape:
        raise ModelExecutionError(
            model_id,
            f'Model output of shape {output.shape} does not cover the region '
            f'{patch_slice} of output patch {tuple(window)}.'
        )
    if converter is None:
        converter = get_converter(output.dtype, out_buffer.dtype)

    out_volume = out_buffer.reshape(output_size.volume_shape)  # View, since out_buffer is contiguous
    out_volume[tuple(out_ranges)] = converter(out_tile)
