# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

"""Axis layouts of tensors.

A layout is a string with one character per tensor dimension, naming the
axis that occupies that dimension, e.g. ``'NZYX'`` for a tensor of shape
(N, Z, Y, X). Layouts that are used together have to contain the same
axis names, just in a different order.
"""

import enum
from typing import Sequence, Tuple

import torch

from .errors import ConfigurationError


def _check_layouts(current_layout: str, out_layout: str) -> None:
    if len(current_layout) != len(out_layout):
        raise ConfigurationError(
            f'Layouts {current_layout!r} and {out_layout!r} have different '
            f'numbers of axes ({len(current_layout)} != {len(out_layout)}).'
        )
    if len(set(current_layout)) != len(current_layout):
        raise ConfigurationError(f'Layout {current_layout!r} contains duplicate axes.')
    if set(current_layout) != set(out_layout):
        raise ConfigurationError(
            f'Layouts {current_layout!r} and {out_layout!r} are not permutations '
            'of the same axes.'
        )


def layout_permutation(current_layout: str, out_layout: str) -> Tuple[int, ...]:
    """Compute the permutation that reorders ``current_layout`` into ``out_layout``.

    ``permutation[i]`` is the index in ``current_layout`` of the axis that
    sits at position ``i`` of ``out_layout``, so it can be passed directly
    to ``torch.Tensor.permute()``.

    >>> layout_permutation('NZYX', 'NXYZ')
    (0, 3, 2, 1)
    """
    _check_layouts(current_layout, out_layout)
    return tuple(current_layout.index(axis) for axis in out_layout)


def is_identity(permutation: Sequence[int]) -> bool:
    return tuple(permutation) == tuple(range(len(permutation)))


def change_layout(tensor: torch.Tensor, current_layout: str, out_layout: str) -> torch.Tensor:
    """Reorder the dimensions of ``tensor`` from ``current_layout`` to ``out_layout``.

    If both layouts are equal, ``tensor`` itself is returned without touching
    its data."""
    if tensor.dim() != len(current_layout):
        raise ConfigurationError(
            f'Layout {current_layout!r} has {len(current_layout)} axes, but the '
            f'tensor has {tensor.dim()} dimensions.'
        )
    permutation = layout_permutation(current_layout, out_layout)
    if is_identity(permutation):
        return tensor
    return tensor.permute(*permutation)


class TiledAxis(enum.Enum):
    """Axis of the (slice, line, pixel) output volume along which patches
    are stitched. Values are the positions in a 4-axis layout."""
    SLICE = 1
    LINE = 2
    PIXEL = 3

    @property
    def volume_dim(self) -> int:
        """Dimension index into the (slice, line, pixel) view of the output buffer"""
        return self.value - 1


def tiled_axis_from_permutation(permutation: Sequence[int], tiled_index: int) -> TiledAxis:
    """Find out which output axis holds the tiled axis.

    Args:
        permutation: Permutation from the model output layout to the final
            layout, as returned by :py:func:`layout_permutation`.
        tiled_index: Position of the tiled axis in the model output layout.

    Returns:
        The output axis that needs to be restricted to the valid region
        of a patch.
    """
    positions = [p for p, src in enumerate(permutation) if src == tiled_index]
    assert len(positions) == 1, f'Tiled axis {tiled_index} not uniquely found in {tuple(permutation)}'
    position = positions[0]
    assert position in (1, 2, 3), f'Tiled axis must not be the batch axis (permutation {tuple(permutation)})'
    return TiledAxis(position)
