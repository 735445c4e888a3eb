# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

import logging
import time
from typing import Any, Callable, Optional, Sequence, Union

import numpy as np
import torch
from torch import nn
from tqdm import tqdm

from patchinfer import floatX

from .dtypes import DataType, NumericKind, as_numpy_dtype, convert_data_type, get_converter, promote_half
from .errors import ConfigurationError, ModelExecutionError
from .layout import change_layout, layout_permutation
from .model import ModelExecutor, TorchScriptModel
from .planner import check_patch_config, plan_patches
from .reassembly import VolumeSize, copy_patch_to_output

logger = logging.getLogger('patchinferlog')


def patched_apply(
        func: Callable[[torch.Tensor], torch.Tensor],
        inp: Union[np.ndarray, torch.Tensor],
        input_size: Sequence[int],
        output_size: Sequence[int],
        current_layout: str,
        final_layout: str,
        model_input_dtype: Any,
        model_output_dtype: Any,
        model_input_layout: str,
        model_output_layout: str,
        patch_size: int,
        patch_overlap: int,
        out_dtype: Any = floatX,
        model_id: Optional[str] = None,
        verbose: bool = False
) -> np.ndarray:
    """Applies ``func`` on overlapping patches along the x axis of a volume
    and stitches the results together.

    The input volume of size ``input_size`` = (x, y, z) is viewed as a tensor
    of shape (1, z, y, x) in ``current_layout``. It is cut into patches of at
    most ``patch_size`` pixels along x (see
    :py:func:`patchinfer.inference.planner.plan_patches`). Each patch is
    converted to ``model_input_dtype`` and ``model_input_layout`` and passed
    to ``func``, whose output in ``model_output_layout`` is permuted to
    ``final_layout``. The valid (non-overlap) region of every output patch is
    written into the output buffer, converting values to ``out_dtype`` with
    saturation.

    Args:
        func: Function to be applied on input patches. Usually this is
            :py:meth:`ModelExecutor.execute`.
        inp: Input buffer with ``x * y * z`` elements.
        input_size: (x, y, z) extent of the input.
        output_size: (x, y, z) extent of the output. The model output of
            a patch in ``final_layout`` has to have the shape
            (1, z, y, x) of the output, with the tiled axis cut to the
            patch window.
        current_layout: Layout of the (1, z, y, x) input tensor, e.g. ``'NZYX'``.
            The tiled axis is the last one.
        final_layout: Layout in which results are written to the output.
        model_input_dtype: Numeric type that the model expects.
        model_output_dtype: Numeric type that the model produces.
            Half precision outputs are promoted to float32.
        model_input_layout: Layout that the model expects.
        model_output_layout: Layout that the model produces.
        patch_size: Maximum number of pixels along x per patch. 0 disables
            patching.
        patch_overlap: Number of pixels by which patches are extended at
            each side that borders other data.
        out_dtype: numpy dtype of the output buffer.
        model_id: Identifier of the model, used in error messages.
        verbose: If ``True``, a progress bar will be shown while iterating
            over the patches.

    Returns:
        Flat output buffer of ``x * y * z`` elements of the output size,
        addressed as ``slice * Y * X + line * X + pixel``.

    Raises:
        ConfigurationError: If the arguments don't fit together. Nothing is
            executed in this case.
        ModelExecutionError: If running ``func`` fails or produces unusable
            output.
    """
    input_size = VolumeSize(*input_size)
    output_size = VolumeSize(*output_size)
    # Check everything that can go wrong before running the first patch
    for src_layout, dst_layout in [
        (current_layout, model_input_layout),
        (model_output_layout, final_layout),
        (current_layout, final_layout),
    ]:
        layout_permutation(src_layout, dst_layout)
    if len(current_layout) != 4:
        raise ConfigurationError(f'Layouts need 4 axes (batch + 3), got {current_layout!r}.')
    model_input_dtype = DataType.from_any(model_input_dtype)
    model_output_dtype = DataType.from_any(model_output_dtype)
    out_dtype = as_numpy_dtype(out_dtype)
    NumericKind.of(out_dtype)
    num_pixels = input_size.x
    patch_size = check_patch_config(num_pixels, patch_size, patch_overlap)

    inp = torch.as_tensor(inp)
    if inp.numel() != input_size.numel:
        raise ConfigurationError(
            f'Input has {inp.numel()} elements, but input_size {tuple(input_size)} '
            f'requires {input_size.numel}.'
        )
    if inp.is_cuda:
        # Make sure the input data is ready before slicing the first patch
        torch.cuda.synchronize(inp.device)
    inp = inp.reshape(1, input_size.z, input_size.y, input_size.x)
    tiled_axis_name = current_layout[3]

    out_buffer = np.zeros(output_size.numel, dtype=out_dtype)

    pbar = tqdm(
        plan_patches(num_pixels, patch_size, patch_overlap), 'Predicting',
        disable=not verbose, dynamic_ncols=True
    )
    for window in pbar:
        # Slice the input and convert it to what the model expects
        inp_patch = inp[..., window.window_slice()]
        inp_patch = convert_data_type(inp_patch, model_input_dtype)
        inp_patch = change_layout(inp_patch, current_layout, model_input_layout)

        try:
            out_patch = func(inp_patch)
        except (AssertionError, ModelExecutionError):
            raise
        except Exception as e:
            raise ModelExecutionError(model_id, str(e)) from e
        if not isinstance(out_patch, torch.Tensor) or out_patch.dim() != len(model_output_layout):
            shape = tuple(out_patch.shape) if isinstance(out_patch, torch.Tensor) else type(out_patch).__name__
            raise ModelExecutionError(
                model_id,
                f'Model output {shape} does not match layout {model_output_layout!r}.'
            )

        out_patch = change_layout(out_patch, model_output_layout, final_layout)
        out_patch = promote_half(out_patch).cpu()

        # Type dispatch happens once per patch, not per element
        try:
            converter = get_converter(out_patch.dtype, out_dtype)
        except ConfigurationError as e:
            raise ModelExecutionError(model_id, str(e)) from e
        copy_patch_to_output(
            out_patch, out_buffer, model_output_layout, final_layout, output_size,
            window, tiled_axis_name, converter=converter, model_id=model_id
        )
        logger.debug(f'Patch {tuple(window)} done')

    return out_buffer


class PatchInference:
    """Run a model that only accepts limited input sizes on large volumes by
    processing them in overlapping patches along one axis.

    The results are numerically equivalent to running the model on the
    whole volume at once, as long as ``patch_overlap`` covers the model's
    receptive field. For details on the patching, see
    :py:func:`patchinfer.inference.inference.patched_apply`.

    Args:
        model: A :py:class:`ModelExecutor`, or anything that
            :py:class:`TorchScriptModel` accepts (``torch.nn.Module`` or path
            to a TorchScript / pickled model file).
        input_normalization: Input normalization for
            :py:class:`TorchScriptModel`. Ignored if ``model`` is a
            ``ModelExecutor``.
        output_denormalization: Output denormalization for
            :py:class:`TorchScriptModel`. Ignored if ``model`` is a
            ``ModelExecutor``.
        device: Device for :py:class:`TorchScriptModel`.
        out_dtype: numpy dtype of the produced output buffers. Model output
            values are clamped to its range.
        verbose: If ``True``, show a progress bar and report inference speed.

    Examples:
        >>> model = nn.Conv2d(4, 4, 3, padding=1)
        >>> inference = PatchInference(model, device='cpu')
        >>> inp = np.random.randn(4 * 5 * 32).astype(np.float32)
        >>> out = inference.process(
        ...     inp, (32, 5, 4), (32, 5, 4), 'NCHW', 'NCHW',
        ...     'float', 'float', 'NCHW', 'NCHW', patch_size=16, patch_overlap=2)
        >>> assert out.shape == (4 * 5 * 32,)
    """
    def __init__(
            self,
            model: Union[ModelExecutor, nn.Module, str],
            input_normalization=None,
            output_denormalization=None,
            device: Optional[Union[torch.device, str]] = None,
            out_dtype: Any = floatX,
            verbose: bool = False
    ):
        if isinstance(model, ModelExecutor):
            self.executor = model
        else:
            self.executor = TorchScriptModel(
                model,
                input_normalization=input_normalization,
                output_denormalization=output_denormalization,
                device=device
            )
        self.out_dtype = out_dtype
        self.verbose = verbose

    def _log_missing_modules(self) -> None:
        logger.error('PatchInference: Error no model loaded.')
        if getattr(self.executor, 'input_normalization', None) is None:
            logger.warning('PatchInference: No normalization module present.')
        if getattr(self.executor, 'output_denormalization', None) is None:
            logger.warning('PatchInference: No denormalization module present.')

    def process(
            self,
            inp: Union[np.ndarray, torch.Tensor],
            input_size: Sequence[int],
            output_size: Sequence[int],
            current_layout: str,
            final_layout: str,
            model_input_dtype: Any,
            model_output_dtype: Any,
            model_input_layout: str,
            model_output_layout: str,
            patch_size: int,
            patch_overlap: int
    ) -> Optional[np.ndarray]:
        """Run patched inference on one volume.

        See :py:func:`patched_apply` for the meaning of the arguments.

        Returns:
            Flat output buffer of dtype ``out_dtype``, or ``None`` if no
            model is loaded, the configuration is invalid or the model
            failed. Errors are reported to the log, never as partial results.
        """
        if self.executor is None or not self.executor.is_loaded:
            self._log_missing_modules()
            return None
        model_id = self.executor.model_id
        if self.verbose:
            start = time.time()
        try:
            out = patched_apply(
                self.executor.execute,
                inp,
                input_size=input_size,
                output_size=output_size,
                current_layout=current_layout,
                final_layout=final_layout,
                model_input_dtype=model_input_dtype,
                model_output_dtype=model_output_dtype,
                model_input_layout=model_input_layout,
                model_output_layout=model_output_layout,
                patch_size=patch_size,
                patch_overlap=patch_overlap,
                out_dtype=self.out_dtype,
                model_id=model_id,
                verbose=self.verbose
            )
        except ConfigurationError as e:
            logger.error(f"PatchInference: Invalid configuration for model '{model_id}'")
            logger.error(f'PatchInference: {e}')
            return None
        except ModelExecutionError as e:
            cause = type(e.__cause__).__name__ if e.__cause__ is not None else type(e).__name__
            logger.error(f"PatchInference: Error ({cause}) while running model '{e.model_id}'")
            logger.error(f'PatchInference: {e.msg}')
            return None
        if self.verbose:
            dtime = time.time() - start
            speed = out.size / dtime / 1e6
            logger.info(f'Inference speed: {speed:.2f} MVox/s, time: {dtime:.2f}.')
        return out
