# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

"""Execution of models on single patches."""

import abc
import logging
import os
import zipfile
from typing import Callable, Optional, Union

import torch
from torch import nn

from .errors import ConfigurationError, ModelExecutionError

logger = logging.getLogger('patchinferlog')

TensorFunc = Callable[[torch.Tensor], torch.Tensor]


class ModelExecutor(abc.ABC):
    """Anything that can map an input patch tensor to an output tensor.

    Implementations may run on any backend. Failures while executing a
    patch have to be raised as :py:class:`ModelExecutionError`."""
    model_id: Optional[str] = None

    @property
    @abc.abstractmethod
    def is_loaded(self) -> bool:
        ...

    @abc.abstractmethod
    def execute(self, inp: torch.Tensor) -> torch.Tensor:
        ...


def _load_model(model: Union[nn.Module, str], device: torch.device) -> nn.Module:
    if isinstance(model, str):
        path = os.path.expanduser(model)
        if not os.path.isfile(path):
            raise ConfigurationError(f'Model path {model} not found.')
        # TorchScript serialization can be identified by checking if
        #  it's a zip file. Pickled Python models are not zip files.
        #  See https://github.com/pytorch/pytorch/pull/15578/files
        if zipfile.is_zipfile(path):
            model = torch.jit.load(path, map_location=device)
        else:
            model = torch.load(path, map_location=device, weights_only=False)
    if not isinstance(model, nn.Module):
        raise ConfigurationError(f'Expected a torch.nn.Module, got {type(model).__name__}.')
    model.to(device)
    model.eval()
    return model


def _load_transform(src: Optional[Union[str, TensorFunc]], function_name: str) -> Optional[TensorFunc]:
    """Load a TorchScript function named ``function_name`` from a source file
    or source string. Python callables are used directly."""
    if src is None or callable(src):
        return src
    if os.path.isfile(os.path.expanduser(src)):
        with open(os.path.expanduser(src)) as f:
            source = f.read()
    else:
        source = src
    try:
        cu = torch.jit.CompilationUnit(source)
    except RuntimeError as e:
        raise ConfigurationError(f'Could not compile {function_name} function from {src!r}: {e}') from e
    func = cu.find_function(function_name)
    if func is None:
        raise ConfigurationError(f'No function "{function_name}" defined in {src!r}.')
    return func


def _as_tensor(result, model_id: Optional[str]) -> torch.Tensor:
    if isinstance(result, torch.Tensor):
        return result
    if isinstance(result, (tuple, list)) and len(result) > 0 and isinstance(result[0], torch.Tensor):
        return result[0]
    raise ModelExecutionError(model_id, f'Model returned {type(result).__name__}, which is not a tensor.')


class TorchScriptModel(ModelExecutor):
    """Run a PyTorch model, optionally surrounded by normalization of its
    inputs and denormalization of its outputs.

    Args:
        model: Network model to be used for inference.
            The model can be passed as an ``torch.nn.Module``, or as a path
            to a model file:

            - If ``model`` is a ``torch.nn.Module`` object (this includes
              ``torch.jit.ScriptModule``), it is used directly.
            - If ``model`` is a path (string) to a serialized TorchScript
              module (.pts), it is loaded from the file and mapped to the
              specified ``device``.
            - If ``model`` is a path (string) to a pickled PyTorch module (.pt)
              (**not** a pickled ``state_dict``), it is loaded from the file
              and mapped to the specified ``device`` as well.
        input_normalization: Applied to every input patch before it is passed
            to the model. Either a callable, or TorchScript source code
            (or a path to a file containing it) that defines a function
            ``normalize(x)``.
        output_denormalization: Applied to every model output. Either a
            callable, or TorchScript source code (or a path to a file
            containing it) that defines a function ``denormalize(x)``.
        device: Device to run the inference on. Can be a ``torch.device`` or
            a string like ``'cpu'``, ``'cuda:0'`` etc.
            If not specified (``None``), available GPUs are automatically used;
            the CPU is used as a fallback if no GPUs can be found.

    Examples:
        >>> model = nn.Conv2d(4, 4, 3, padding=1)
        >>> executor = TorchScriptModel(model, output_denormalization='def denormalize(x):\\n    return x * 2\\n')
        >>> out = executor.execute(torch.zeros(1, 4, 8, 8))
    """
    def __init__(
            self,
            model: Union[nn.Module, str],
            input_normalization: Optional[Union[str, TensorFunc]] = None,
            output_denormalization: Optional[Union[str, TensorFunc]] = None,
            device: Optional[Union[torch.device, str]] = None,
    ):
        if device is None:
            device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
            logger.info(f'Running on device {device}')
        elif isinstance(device, str):
            device = torch.device(device)
        self.device = device
        self.model_id = model if isinstance(model, str) else type(model).__name__
        self.model = _load_model(model, device)
        self.input_normalization = _load_transform(input_normalization, 'normalize')
        self.output_denormalization = _load_transform(output_denormalization, 'denormalize')
        logger.debug(f'Loaded model {self.model_id}')

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def unload(self) -> None:
        """Release the model. Subsequent inference calls will fail."""
        self.model = None

    @torch.no_grad()
    def execute(self, inp: torch.Tensor) -> torch.Tensor:
        """Run normalization, the model and denormalization on one patch."""
        if self.model is None:
            raise ConfigurationError('No model loaded.')
        try:
            inp = inp.to(self.device)
            if self.input_normalization is not None:
                inp = self.input_normalization(inp)
            result = self.model(inp)
            if self.output_denormalization is not None:
                result = self.output_denormalization(result)
        except AssertionError:
            raise
        except Exception as e:
            raise ModelExecutionError(self.model_id, str(e)) from e
        return _as_tensor(result, self.model_id)
