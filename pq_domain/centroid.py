"""
Centroid Comparator Module

Owns the centroid vocabulary of one product-quantization sub-space together with
the memoized table of squared distances between every pair of centroids. The
table turns the per-chunk distance of two quantized embeddings into a single
lookup.

Updates are copy-on-write: an extension builds a new centroid array and a new
table, then publishes both as one immutable snapshot. Readers never block and
always see a table whose dimension matches the centroid count.
"""

import logging
import threading
import time
import numpy as np
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Union

from .codec import FLOAT32, read_records, write_records
from .comparator import Comparator, ReadHandle, VectorId
from .errors import DimensionMismatchError, VectorIdOutOfRangeError
from .utils import format_time

NARROW_CENTROID_WIDTH = 16
WIDE_CENTROID_WIDTH = 32
CENTROID_WIDTHS = (NARROW_CENTROID_WIDTH, WIDE_CENTROID_WIDTH)

# codes are stored as uint16
MAX_CENTROIDS = 1 << 16

# upper bound on the temporary difference array built per block of table rows
_TABLE_BLOCK_ELEMENTS = 1 << 22


class CentroidSnapshot(NamedTuple):
    centroids: np.ndarray
    distances: np.ndarray


def partial_distance_table(centroids: np.ndarray) -> np.ndarray:
    """Squared Euclidean distance between every pair of centroids.

    Every entry is computed from the element-wise differences of its own pair,
    so the table is exactly symmetric, has an exactly zero diagonal, and the
    entries of existing centroids do not change when more are appended.
    """
    count, width = centroids.shape
    table = np.empty((count, count), dtype=np.float32)
    if count == 0:
        return table

    block = max(1, _TABLE_BLOCK_ELEMENTS // (count * width))
    for start in range(0, count, block):
        end = min(start + block, count)
        diff = centroids[start:end, np.newaxis, :] - centroids[np.newaxis, :, :]
        table[start:end] = np.sum(diff * diff, axis=2)
    return table


def _frozen(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class CentroidComparator(Comparator):
    """Comparator over the centroids of one sub-space width"""

    def __init__(self, width: int, centroids: Optional[np.ndarray] = None):
        if width not in CENTROID_WIDTHS:
            raise ValueError(f"Unsupported centroid width: {width}. Supported: {CENTROID_WIDTHS}")
        self.logger = logging.getLogger(__name__)
        self.width = width
        self._write_lock = threading.Lock()

        if centroids is None:
            centroids = np.empty((0, width), dtype=np.float32)
        centroids = self._check_centroids(centroids)
        self._snapshot = self._build_snapshot(centroids)

    def _check_centroids(self, centroids) -> np.ndarray:
        centroids = np.asarray(centroids, dtype=np.float32)
        if centroids.ndim == 1 and centroids.size == 0:
            centroids = centroids.reshape(0, self.width)
        if centroids.ndim != 2 or centroids.shape[1] != self.width:
            raise DimensionMismatchError(
                f"Expected centroids of width {self.width}, got shape {centroids.shape}")
        return centroids

    def _build_snapshot(self, centroids: np.ndarray) -> CentroidSnapshot:
        if len(centroids) > MAX_CENTROIDS:
            raise ValueError(f"Too many centroids: {len(centroids)} (max {MAX_CENTROIDS})")
        start = time.time()
        centroids = _frozen(np.array(centroids, dtype=np.float32, copy=True))
        distances = _frozen(partial_distance_table(centroids))
        self.logger.debug(f"Built {len(centroids)}x{len(centroids)} partial distance table, "
                          f"time: {format_time(time.time() - start)}")
        return CentroidSnapshot(centroids, distances)

    def snapshot(self) -> CentroidSnapshot:
        """Current (centroids, distances) pair, consistent with each other"""
        return self._snapshot

    def centroids(self) -> np.ndarray:
        return self._snapshot.centroids

    def distance_table(self) -> np.ndarray:
        return self._snapshot.distances

    def num_vecs(self) -> int:
        return len(self._snapshot.centroids)

    def __len__(self) -> int:
        return self.num_vecs()

    def lookup(self, vector_id: VectorId) -> ReadHandle:
        centroids = self._snapshot.centroids
        if vector_id < 0 or vector_id >= len(centroids):
            raise VectorIdOutOfRangeError(vector_id, len(centroids))
        return ReadHandle(centroids[vector_id])

    def compare_raw(self, v1: np.ndarray, v2: np.ndarray) -> float:
        v1 = np.asarray(v1, dtype=np.float64)
        v2 = np.asarray(v2, dtype=np.float64)
        if v1.shape != (self.width,) or v2.shape != (self.width,):
            raise DimensionMismatchError(
                f"Expected centroids of width {self.width}, got {v1.shape} and {v2.shape}")
        diff = v1 - v2
        return float(np.sqrt(np.dot(diff, diff)))

    def partial_distance(self, i: int, j: int) -> float:
        """Memoized squared distance between centroids ``i`` and ``j``"""
        return float(self._snapshot.distances[i, j])

    def store(self, centroids: Iterable[np.ndarray]) -> List[VectorId]:
        """Append centroids and return their ids.

        Rebuilds the whole distance table; meant for training, not the query path.
        """
        if not isinstance(centroids, np.ndarray):
            centroids = list(centroids)
        new = self._check_centroids(centroids)
        with self._write_lock:
            current = self._snapshot.centroids
            first = len(current)
            self._snapshot = self._build_snapshot(np.concatenate([current, new]))
        self.logger.info(f"Stored {len(new)} centroids, vocabulary size now {first + len(new)}")
        return list(range(first, first + len(new)))

    def serialize(self, path: Union[str, Path]) -> None:
        """Write the centroids as headerless little-endian float32 records"""
        centroids = self._snapshot.centroids
        write_records(path, centroids, FLOAT32, self.width)
        self.logger.info(f"Serialized {len(centroids)} centroids of width {self.width}: {path}")

    @classmethod
    def deserialize(cls, path: Union[str, Path], width: int) -> "CentroidComparator":
        """Load centroids written by ``serialize`` and rebuild the distance table"""
        centroids = read_records(path, FLOAT32, width)
        return cls(width, centroids)
