# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

"""Partitioning of one axis into overlapping patches.

Each patch that is sent to the model is extended by ``patch_overlap`` pixels
on every side where it borders other data. The model output in these overlap
regions is affected by the truncated receptive field at the patch border and
is discarded, so only the *valid* region of each patch is used. The valid
regions of all patches tile the axis without gaps and without overlaps.

To understand the bookkeeping it helps to draw the 1d case on paper::

    num_pixels=10, patch_size=4, patch_overlap=1

    pixel      0 1 2 3 4 5 6 7 8 9
    patch 0   [V V V o)
    patch 1       [o V V o)
    patch 2           [o V V o)
    patch 3               [o V V V]

    (V: valid, o: overlap)
"""

from typing import Iterator, NamedTuple

from .errors import ConfigurationError


class PatchWindow(NamedTuple):
    """Position of one patch along the tiled axis.

    ``[start_pixel, start_pixel + patch_size)`` is the region that is passed
    to the model, ``[start_pixel_valid, start_pixel_valid + patch_size_valid)``
    the region whose results are written to the output.
    All coordinates are absolute."""
    start_pixel: int
    patch_size: int
    start_pixel_valid: int
    patch_size_valid: int

    @property
    def stop(self) -> int:
        return self.start_pixel + self.patch_size

    @property
    def valid_stop(self) -> int:
        return self.start_pixel_valid + self.patch_size_valid

    def window_slice(self) -> slice:
        return slice(self.start_pixel, self.stop)

    def valid_slice(self) -> slice:
        return slice(self.start_pixel_valid, self.valid_stop)


def check_patch_config(num_pixels: int, patch_size: int, patch_overlap: int) -> int:
    """Validate the patching parameters and return the effective patch size.

    A ``patch_size`` of 0 disables patching, so the whole axis is
    processed as one patch.

    Raises:
        ConfigurationError: If any of the sizes is negative or if
            ``patch_size <= 2 * patch_overlap`` (after replacing 0 by
            ``num_pixels``), in which case interior patches would have no
            valid pixels.
    """
    if num_pixels < 0 or patch_size < 0 or patch_overlap < 0:
        raise ConfigurationError(
            f'Sizes must not be negative (num_pixels={num_pixels}, '
            f'patch_size={patch_size}, patch_overlap={patch_overlap}).'
        )
    if patch_size == 0:
        patch_size = num_pixels
    if patch_size <= 2 * patch_overlap:
        raise ConfigurationError(
            f'patch_size ({patch_size}) has to be larger than twice the '
            f'patch_overlap ({patch_overlap}).'
        )
    return patch_size


def plan_patches(num_pixels: int, patch_size: int, patch_overlap: int) -> Iterator[PatchWindow]:
    """Split ``[0, num_pixels)`` into overlapping patches of at most ``patch_size`` pixels.

    Patches are generated lazily in increasing order. The valid region of
    each patch starts exactly where the valid region of the previous one
    ended.

    Args:
        num_pixels: Length of the axis that is tiled.
        patch_size: Maximum number of pixels that can be passed to the model
            at once. 0 means that the whole axis is passed at once.
        patch_overlap: Number of pixels by which patches are extended on
            each side that borders other data. Results for these pixels are
            discarded.

    Yields:
        :py:class:`PatchWindow` for each patch.

    Examples:
        >>> [tuple(w) for w in plan_patches(5, 8, 1)]
        [(0, 5, 0, 5)]
    """
    patch_size = check_patch_config(num_pixels, patch_size, patch_overlap)

    start_pixel_valid = 0
    while start_pixel_valid < num_pixels:
        if start_pixel_valid == 0 and num_pixels <= patch_size:
            # The whole axis fits into one patch. No patching necessary!
            start_pixel = 0
            size = num_pixels
            size_valid = size
        elif start_pixel_valid == 0:
            # The first patch only needs overlap at its end
            start_pixel = 0
            size = patch_size
            size_valid = size - patch_overlap
        elif num_pixels - (start_pixel_valid - patch_overlap) <= patch_size:
            # The last patch only needs overlap at its start
            start_pixel = start_pixel_valid - patch_overlap
            size = num_pixels - start_pixel
            size_valid = size - patch_overlap
        else:
            # Every patch in the middle has overlap on both sides
            start_pixel = start_pixel_valid - patch_overlap
            size = patch_size
            size_valid = size - 2 * patch_overlap
        assert size_valid > 0, f'No progress at pixel {start_pixel_valid}'
        yield PatchWindow(start_pixel, size, start_pixel_valid, size_valid)
        start_pixel_valid += size_valid
