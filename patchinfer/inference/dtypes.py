# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

"""Numeric types of model inputs/outputs and saturating conversion between them.

Model outputs are written into output buffers of a possibly different numeric
type. Values that don't fit into the destination type are clamped to its
range instead of wrapping around, and floating point values are truncated
towards zero when written into integer buffers.
"""

import enum
from typing import Any, Callable, Optional, Union

import numpy as np
import torch

from .errors import ConfigurationError


Converter = Callable[[np.ndarray], np.ndarray]


class DataType(enum.Enum):
    """Numeric types that a model can consume or produce."""
    INT8 = 'int8'
    UINT8 = 'uint8'
    INT16 = 'int16'
    UINT16 = 'uint16'
    INT32 = 'int32'
    UINT32 = 'uint32'
    INT64 = 'int64'
    UINT64 = 'uint64'
    HALF = 'float16'
    FLOAT = 'float32'
    DOUBLE = 'float64'

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def torch_dtype(self) -> torch.dtype:
        # Unsigned types wider than 8 bit only exist in recent torch versions
        dtype = getattr(torch, self.value, None)
        if not isinstance(dtype, torch.dtype):
            raise ConfigurationError(f'{self} is not supported by torch {torch.__version__}.')
        return dtype

    @classmethod
    def from_any(cls, dtype: Any) -> 'DataType':
        """Look up the ``DataType`` of a name, numpy dtype or torch dtype."""
        if isinstance(dtype, cls):
            return dtype
        if isinstance(dtype, str) and dtype.upper() in cls.__members__:
            return cls[dtype.upper()]
        try:
            return cls(as_numpy_dtype(dtype).name)
        except ValueError:
            raise ConfigurationError(f'Unsupported data type {dtype!r}.') from None


_TORCH_TO_NUMPY = {
    torch.bool: np.dtype(np.bool_),
    torch.int8: np.dtype(np.int8),
    torch.uint8: np.dtype(np.uint8),
    torch.int16: np.dtype(np.int16),
    torch.int32: np.dtype(np.int32),
    torch.int64: np.dtype(np.int64),
    torch.float16: np.dtype(np.float16),
    torch.float32: np.dtype(np.float32),
    torch.float64: np.dtype(np.float64),
}
for _name in ('uint16', 'uint32', 'uint64'):
    if isinstance(getattr(torch, _name, None), torch.dtype):
        _TORCH_TO_NUMPY[getattr(torch, _name)] = np.dtype(_name)


def as_numpy_dtype(dtype: Any) -> np.dtype:
    if isinstance(dtype, DataType):
        return dtype.numpy_dtype
    if isinstance(dtype, torch.dtype):
        try:
            return _TORCH_TO_NUMPY[dtype]
        except KeyError:
            raise ConfigurationError(f'No numpy equivalent for {dtype}.') from None
    try:
        return np.dtype(dtype)
    except TypeError:
        raise ConfigurationError(f'Unsupported data type {dtype!r}.') from None


SUPPORTED_DTYPES = tuple(np.dtype(t) for t in (
    np.int8, np.uint8, np.int16, np.uint16, np.int32, np.uint32,
    np.int64, np.uint64, np.float32, np.float64
))


class NumericKind(enum.Enum):
    SIGNED = 'i'
    UNSIGNED = 'u'
    FLOAT = 'f'

    @classmethod
    def of(cls, dtype: Any) -> 'NumericKind':
        dtype = as_numpy_dtype(dtype)
        if dtype not in SUPPORTED_DTYPES:
            raise ConfigurationError(
                f'Data type {dtype} is not supported for output conversion. '
                f'Supported types: {", ".join(d.name for d in SUPPORTED_DTYPES)}.'
            )
        return cls(dtype.kind)


def _int_to_int(src: np.dtype, dst: np.dtype) -> Converter:
    si, di = np.iinfo(src), np.iinfo(dst)
    # Both bounds lie inside the source range, so clipping happens in src dtype
    lo = np.array(max(si.min, di.min), dtype=src)
    hi = np.array(min(si.max, di.max), dtype=src)

    def convert(values: np.ndarray) -> np.ndarray:
        return np.clip(values, lo, hi).astype(dst)
    return convert


def _float_to_int(src: np.dtype, dst: np.dtype) -> Converter:
    di = np.iinfo(dst)
    # float(di.max) rounds up for 64 bit types, so everything below it still
    #  fits into dst after truncation.
    hi, lo = float(di.max), float(di.min)

    def convert(values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        out = np.zeros(values.shape, dtype=dst)  # NaN -> 0
        high = values >= hi
        low = values <= lo
        inside = ~(high | low | np.isnan(values))
        out[high] = di.max
        out[low] = di.min
        out[inside] = np.trunc(values[inside]).astype(dst)
        return out
    return convert


def _float_to_float(src: np.dtype, dst: np.dtype) -> Converter:
    if dst.itemsize >= src.itemsize:
        return lambda values: np.asarray(values).astype(dst)
    fi = np.finfo(dst)
    lo, hi = np.array(fi.min, dtype=src), np.array(fi.max, dtype=src)

    def convert(values: np.ndarray) -> np.ndarray:
        return np.clip(values, lo, hi).astype(dst)
    return convert


def _int_to_float(src: np.dtype, dst: np.dtype) -> Converter:
    return lambda values: np.asarray(values).astype(dst)


_CONVERTER_FACTORIES = {
    (NumericKind.SIGNED, NumericKind.SIGNED): _int_to_int,
    (NumericKind.SIGNED, NumericKind.UNSIGNED): _int_to_int,
    (NumericKind.UNSIGNED, NumericKind.SIGNED): _int_to_int,
    (NumericKind.UNSIGNED, NumericKind.UNSIGNED): _int_to_int,
    (NumericKind.FLOAT, NumericKind.SIGNED): _float_to_int,
    (NumericKind.FLOAT, NumericKind.UNSIGNED): _float_to_int,
    (NumericKind.FLOAT, NumericKind.FLOAT): _float_to_float,
    (NumericKind.SIGNED, NumericKind.FLOAT): _int_to_float,
    (NumericKind.UNSIGNED, NumericKind.FLOAT): _int_to_float,
}


def get_converter(src_dtype: Any, dst_dtype: Any) -> Converter:
    """Get a function that converts arrays of ``src_dtype`` to ``dst_dtype``,
    saturating at the bounds of ``dst_dtype``.

    This should be called once per array (e.g. per model output patch) and
    the returned function applied to the whole array, so the type dispatch
    doesn't happen per element.

    Args:
        src_dtype: numpy/torch dtype or :py:class:`DataType` of the values.
        dst_dtype: numpy/torch dtype or :py:class:`DataType` of the result.
    """
    src, dst = as_numpy_dtype(src_dtype), as_numpy_dtype(dst_dtype)
    if src == np.float16:
        src = np.dtype(np.float32)
    factory = _CONVERTER_FACTORIES[NumericKind.of(src), NumericKind.of(dst)]
    return factory(src, dst)


def clamp_cast(value: Union[int, float, np.generic], dst_dtype: Any, src_dtype: Optional[Any] = None):
    """Convert a single scalar to ``dst_dtype`` with saturation.

    >>> int(clamp_cast(300, np.uint8))
    255
    >>> int(clamp_cast(-7.9, np.int8))
    -7
    """
    src = np.asarray(value).dtype if src_dtype is None else as_numpy_dtype(src_dtype)
    return get_converter(src, dst_dtype)(np.asarray(value, dtype=src))[()]


def convert_data_type(tensor: torch.Tensor, data_type: Any) -> torch.Tensor:
    """Cast ``tensor`` to the torch equivalent of ``data_type``."""
    dtype = DataType.from_any(data_type).torch_dtype
    if tensor.dtype == dtype:
        return tensor
    return tensor.to(dtype)


def promote_half(tensor: torch.Tensor) -> torch.Tensor:
    """Promote reduced-precision floats to float32.

    float16/bfloat16 are not well supported for CPU-side processing."""
    if tensor.dtype in (torch.float16, torch.bfloat16):
        return tensor.to(torch.float32)
    return tensor
