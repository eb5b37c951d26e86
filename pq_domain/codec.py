"""
Binary Codec Module

Fixed-width little-endian record encoding shared by every on-disk artifact:

    centroid file   -- count x width float32 values, no header
    quantized file  -- count x length uint16 values, no header
    vector file     -- count x dimension float32 values, no header

The layout is defined by these functions rather than by the in-memory layout of
numpy arrays, so a file written on one platform decodes identically on another.
"""

import os
import numpy as np
from pathlib import Path
from typing import Union

from .errors import DimensionMismatchError, VectorFormatError

FLOAT32 = np.dtype('<f4')
UINT16 = np.dtype('<u2')


def record_size(dtype: np.dtype, width: int) -> int:
    """Number of bytes of one record of ``width`` values"""
    return np.dtype(dtype).itemsize * width


def encode_records(records, dtype: np.dtype, width: int) -> bytes:
    """Encode a (count, width) array, or a single (width,) record, to bytes"""
    dtype = np.dtype(dtype)
    array = np.asarray(records)
    if array.ndim == 1:
        array = array.reshape(1, -1)
    if array.ndim != 2 or (array.size and array.shape[1] != width):
        raise DimensionMismatchError(f"Expected records of width {width}, got shape {array.shape}")

    if dtype.kind == 'u' and array.size and array.dtype != dtype:
        info = np.iinfo(dtype)
        if array.min() < info.min or array.max() > info.max:
            raise ValueError(f"Record values out of range for {dtype}")

    return np.ascontiguousarray(array, dtype=dtype).tobytes()


def decode_records(buffer: bytes, dtype: np.dtype, width: int, source: str = "buffer") -> np.ndarray:
    """Decode bytes into a writable (count, width) array in native byte order"""
    dtype = np.dtype(dtype)
    size = record_size(dtype, width)
    if len(buffer) % size != 0:
        raise VectorFormatError(
            f"{source}: {len(buffer)} bytes is not a multiple of the record size {size}")

    array = np.frombuffer(buffer, dtype=dtype).reshape(-1, width)
    return array.astype(dtype.newbyteorder('='), copy=True)


def read_records(path: Union[str, Path], dtype: np.dtype, width: int) -> np.ndarray:
    """Read a whole headerless record file"""
    file_size = os.path.getsize(path)
    size = record_size(dtype, width)
    if file_size % size != 0:
        raise VectorFormatError(
            f"{path}: file size {file_size} is not a multiple of the record size {size}")

    with open(path, 'rb') as f:
        buffer = f.read()
    return decode_records(buffer, dtype, width, source=str(path))


def write_records(path: Union[str, Path], records, dtype: np.dtype, width: int) -> None:
    """Write (replace) a headerless record file"""
    data = encode_records(records, dtype, width)
    with open(path, 'wb') as f:
        f.write(data)
