"""
Comparator Module

The distance contract shared by raw embedding spaces and their compressed
(centroid / quantized) counterparts. A nearest-neighbour graph only ever talks to
a vector space through this interface.
"""

import numbers
from abc import ABC, abstractmethod
from typing import Union

import numpy as np

from .errors import VectorIdOutOfRangeError
from .utils import ReadWriteLock

VectorId = int


class ReadHandle:
    """Scoped access to one stored record.

    Use as a context manager; the record is only guaranteed valid inside the
    ``with`` block. Handles that pin a lock release it on exit.
    """

    def __init__(self, record: np.ndarray):
        self._record = record

    def __enter__(self) -> np.ndarray:
        return self._record

    def __exit__(self, exc_type, exc, tb):
        return False


class ReadLockedHandle(ReadHandle):
    """Read handle that holds the shared side of a ReadWriteLock while entered"""

    def __init__(self, lock: ReadWriteLock, records, vector_id: VectorId):
        self._lock = lock
        self._records = records
        self._vector_id = vector_id
        self._record = None

    def __enter__(self) -> np.ndarray:
        self._lock.acquire_read()
        try:
            records = self._records()
            if self._vector_id < 0 or self._vector_id >= len(records):
                raise VectorIdOutOfRangeError(self._vector_id, len(records))
            self._record = records[self._vector_id]
        except BaseException:
            self._lock.release_read()
            raise
        return self._record

    def __exit__(self, exc_type, exc, tb):
        self._record = None
        self._lock.release_read()
        return False


Comparable = Union[VectorId, np.ndarray]


class Comparator(ABC):
    """Abstract distance space over records of one type"""

    @abstractmethod
    def lookup(self, vector_id: VectorId) -> ReadHandle:
        """Return a scoped handle on the stored record ``vector_id``"""

    @abstractmethod
    def compare_raw(self, v1: np.ndarray, v2: np.ndarray) -> float:
        """Symmetric, non-negative dissimilarity of two records"""

    @abstractmethod
    def num_vecs(self) -> int:
        """Number of stored records"""

    def compare(self, a: Comparable, b: Comparable) -> float:
        """Compare two records, each given by VectorId or inline"""
        if is_vector_id(a):
            with self.lookup(int(a)) as v1:
                return self.compare(v1, b)
        if is_vector_id(b):
            with self.lookup(int(b)) as v2:
                return self.compare_raw(np.asarray(a), v2)
        return self.compare_raw(np.asarray(a), np.asarray(b))


def is_vector_id(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)
