"""
Quantized Comparator Module

Stores embeddings as sequences of centroid codes and compares them through the
partial distance table of the bound centroid comparator:

    distance(q1, q2) = sqrt(sum_k partial_distance(q1[k], q2[k]))

which is the Euclidean distance between the centroid reconstructions of the two
embeddings.
"""

import logging
import numpy as np
from pathlib import Path
from typing import Iterable, List, Union

from .centroid import CentroidComparator
from .codec import UINT16, read_records, write_records
from .comparator import Comparable, Comparator, ReadLockedHandle, VectorId, is_vector_id
from .errors import DimensionMismatchError, VectorFormatError, VectorIdOutOfRangeError
from .utils import ReadWriteLock, ensure_dir, load_json, save_json

CENTROIDS_FILENAME = "index"
VECTORS_FILENAME = "vectors"
METADATA_FILENAME = "metadata.json"


class QuantizedComparator(Comparator):
    """Comparator over quantized embeddings of one centroid vocabulary"""

    def __init__(self, centroids: CentroidComparator, quantized_length: int, records=None):
        if quantized_length <= 0:
            raise ValueError(f"Quantized length must be positive, got {quantized_length}")
        self.logger = logging.getLogger(__name__)
        self.centroid_comparator = centroids
        self.quantized_length = quantized_length
        self._lock = ReadWriteLock()
        self._buffer = np.empty((0, quantized_length), dtype=np.uint16)
        self._count = 0
        if records is not None:
            self.store(records)

    @property
    def centroid_width(self) -> int:
        return self.centroid_comparator.width

    def _records(self) -> np.ndarray:
        return self._buffer[:self._count]

    def _check_records(self, records) -> np.ndarray:
        if not isinstance(records, np.ndarray):
            records = list(records)
        array = np.asarray(records)
        if array.size == 0:
            return np.empty((0, self.quantized_length), dtype=np.uint16)
        if array.ndim != 2 or array.shape[1] != self.quantized_length:
            raise DimensionMismatchError(
                f"Expected quantized records of length {self.quantized_length}, got shape {array.shape}")
        return array.astype(np.uint16, copy=False)

    def num_vecs(self) -> int:
        return self._count

    def __len__(self) -> int:
        return self._count

    def records(self) -> np.ndarray:
        """Copy of every stored quantized record"""
        with self._lock.read():
            return self._records().copy()

    def lookup(self, vector_id: VectorId) -> ReadLockedHandle:
        return ReadLockedHandle(self._lock, self._records, vector_id)

    def compare(self, a: Comparable, b: Comparable) -> float:
        """Compare two records, resolving both ids under one shared lock hold.

        The lock is not reentrant and a waiting writer blocks new readers, so
        the ids must not be resolved through two nested lookups.
        """
        with self._lock.read():
            v1 = self._resolve(a)
            v2 = self._resolve(b)
            return self.compare_raw(v1, v2)

    def _resolve(self, value: Comparable) -> np.ndarray:
        if not is_vector_id(value):
            return np.asarray(value)
        records = self._records()
        if value < 0 or value >= len(records):
            raise VectorIdOutOfRangeError(int(value), len(records))
        return records[int(value)]

    def compare_raw(self, v1: np.ndarray, v2: np.ndarray) -> float:
        v1 = np.asarray(v1)
        v2 = np.asarray(v2)
        if v1.shape != (self.quantized_length,) or v2.shape != (self.quantized_length,):
            raise DimensionMismatchError(
                f"Expected quantized records of length {self.quantized_length}, "
                f"got {v1.shape} and {v2.shape}")
        distances = self.centroid_comparator.snapshot().distances
        partials = distances[v1.astype(np.intp), v2.astype(np.intp)]
        return float(np.sqrt(np.sum(partials, dtype=np.float64)))

    def partial_distance(self, i: int, j: int) -> float:
        return self.centroid_comparator.partial_distance(i, j)

    def store(self, records: Iterable[np.ndarray]) -> List[VectorId]:
        """Append quantized records and return their ids in insertion order"""
        new = self._check_records(records)
        with self._lock.write():
            first = self._count
            needed = first + len(new)
            if needed > len(self._buffer):
                capacity = max(needed, 2 * len(self._buffer), 1024)
                grown = np.empty((capacity, self.quantized_length), dtype=np.uint16)
                grown[:first] = self._buffer[:first]
                self._buffer = grown
            self._buffer[first:needed] = new
            self._count = needed
        return list(range(first, needed))

    def serialize(self, path: Union[str, Path]) -> None:
        """Write centroids, quantized records and metadata under one directory"""
        path = Path(path)
        ensure_dir(path)
        self.centroid_comparator.serialize(path / CENTROIDS_FILENAME)

        records = self.records()
        write_records(path / VECTORS_FILENAME, records, UINT16, self.quantized_length)
        save_json({
            "centroid_width": self.centroid_width,
            "quantized_length": self.quantized_length,
            "num_vecs": len(records),
        }, path / METADATA_FILENAME)
        self.logger.info(f"Serialized {len(records)} quantized vectors: {path}")

    @classmethod
    def deserialize(cls, path: Union[str, Path]) -> "QuantizedComparator":
        """Load a comparator written by ``serialize``"""
        path = Path(path)
        metadata_path = path / METADATA_FILENAME
        try:
            metadata = load_json(metadata_path)
            centroid_width = int(metadata["centroid_width"])
            quantized_length = int(metadata["quantized_length"])
            num_vecs = int(metadata["num_vecs"])
        except (ValueError, KeyError, TypeError) as e:
            raise VectorFormatError(f"Invalid quantized comparator metadata {metadata_path}: {e}")

        centroids = CentroidComparator.deserialize(path / CENTROIDS_FILENAME, centroid_width)
        records = read_records(path / VECTORS_FILENAME, UINT16, quantized_length)
        if len(records) != num_vecs:
            raise VectorFormatError(
                f"{path / VECTORS_FILENAME}: expected {num_vecs} records, found {len(records)}")
        return cls(centroids, quantized_length, records)


def quantized_length_for(dimension: int, centroid_width: int) -> int:
    """Number of chunks an embedding of ``dimension`` splits into"""
    if dimension % centroid_width != 0:
        raise DimensionMismatchError(
            f"Embedding dimension {dimension} is not divisible by centroid width {centroid_width}")
    return dimension // centroid_width
