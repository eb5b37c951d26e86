"""
Vector File Module

Append-only file of fixed-width records (float32 embeddings or uint16 codes) with
sequential and random access.
"""

import os
import logging
import threading
import numpy as np
from pathlib import Path
from typing import Iterator, Optional, Union

from .codec import FLOAT32, decode_records, encode_records, record_size
from .errors import DimensionMismatchError, VectorFormatError, VectorIdOutOfRangeError


class VectorFile:
    """Append-only fixed-record vector file"""

    def __init__(self, path: Union[str, Path], width: int, dtype: np.dtype = FLOAT32,
                 num_vecs: int = 0):
        if width <= 0:
            raise ValueError(f"Record width must be positive, got {width}")
        self.logger = logging.getLogger(__name__)
        self.path = Path(path)
        self.width = width
        self.dtype = np.dtype(dtype)
        self.record_size = record_size(self.dtype, width)
        self._num_vecs = num_vecs
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Union[str, Path], width: int, dtype: np.dtype = FLOAT32) -> "VectorFile":
        """Open an existing vector file"""
        file_size = os.path.getsize(path)
        size = record_size(dtype, width)
        if file_size % size != 0:
            raise VectorFormatError(
                f"{path}: file size {file_size} is not a multiple of the record size {size}")
        return cls(path, width, dtype, file_size // size)

    @classmethod
    def open_create(cls, path: Union[str, Path], width: int,
                    dtype: np.dtype = FLOAT32) -> "VectorFile":
        """Open a vector file, creating an empty one if it does not exist"""
        if not os.path.exists(path):
            return cls.create(path, width, dtype)
        return cls.open(path, width, dtype)

    @classmethod
    def create(cls, path: Union[str, Path], width: int, dtype: np.dtype = FLOAT32) -> "VectorFile":
        """Create an empty vector file, replacing any existing one"""
        with open(path, 'wb'):
            pass
        return cls(path, width, dtype, 0)

    def num_vecs(self) -> int:
        return self._num_vecs

    def __len__(self) -> int:
        return self._num_vecs

    def append_vectors(self, records) -> int:
        """Append records and return the new record count"""
        data = encode_records(records, self.dtype, self.width)
        if not data:
            return self._num_vecs

        with self._lock:
            with open(self.path, 'ab') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            self._num_vecs += len(data) // self.record_size
            return self._num_vecs

    def append_vector_file(self, other: "VectorFile", chunk_size: int = 16_384) -> int:
        """Append every record of another vector file and return the new record count"""
        if other.width != self.width or other.dtype != self.dtype:
            raise DimensionMismatchError(
                f"Cannot append {other.path} ({other.width} x {other.dtype}) "
                f"to {self.path} ({self.width} x {self.dtype})")

        count = self._num_vecs
        for chunk in other.vector_chunks(chunk_size):
            count = self.append_vectors(chunk)
        return count

    def truncate(self, num_vecs: int) -> None:
        """Drop every record from ``num_vecs`` on"""
        with self._lock:
            if num_vecs < 0 or num_vecs > self._num_vecs:
                raise VectorIdOutOfRangeError(num_vecs, self._num_vecs)
            os.truncate(self.path, num_vecs * self.record_size)
            self._num_vecs = num_vecs

    def vec(self, index: int) -> np.ndarray:
        """Read one record"""
        count = self._num_vecs
        if index < 0 or index >= count:
            raise VectorIdOutOfRangeError(index, count)
        return self._read(index, index + 1)[0]

    def vector_range(self, start: int, end: int) -> np.ndarray:
        """Read records ``start`` (inclusive) to ``end`` (exclusive)"""
        count = self._num_vecs
        if start < 0 or start > end or end > count:
            raise VectorIdOutOfRangeError(end, count)
        return self._read(start, end)

    def all_vectors(self) -> np.ndarray:
        return self._read(0, self._num_vecs)

    def random_vectors(self, count: int, seed: Optional[int] = None) -> np.ndarray:
        """``count`` records sampled without replacement; every record if there are not more"""
        num_vecs = self._num_vecs
        if count >= num_vecs:
            return self._read(0, num_vecs)

        rng = np.random.default_rng(seed)
        indices = np.sort(rng.choice(num_vecs, size=count, replace=False))
        if len(indices) == 0:
            return self._read(0, 0)
        return np.stack([self.vec(int(i)) for i in indices])

    def vector_chunks(self, chunk_size: int = 16_384) -> Iterator[np.ndarray]:
        """Stream the records present at call time in chunks of at most ``chunk_size``"""
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        return self._iter_chunks(self._num_vecs, chunk_size)

    def _iter_chunks(self, count: int, chunk_size: int) -> Iterator[np.ndarray]:
        if count == 0:
            return
        with open(self.path, 'rb') as f:
            for start in range(0, count, chunk_size):
                end = min(start + chunk_size, count)
                buffer = f.read((end - start) * self.record_size)
                yield decode_records(buffer, self.dtype, self.width, source=str(self.path))

    def _read(self, start: int, end: int) -> np.ndarray:
        if start == end:
            return np.empty((0, self.width), dtype=self.dtype.newbyteorder('='))
        with open(self.path, 'rb') as f:
            f.seek(start * self.record_size)
            buffer = f.read((end - start) * self.record_size)
        return decode_records(buffer, self.dtype, self.width, source=str(self.path))
