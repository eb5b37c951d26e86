"""
Derived Domain Module

A derived domain is a secondary representation of a domain's vectors that is
extended in lockstep with it. The product-quantized derived domain stores one row
of centroid codes per source embedding.
"""

import logging
import threading
import numpy as np
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Type, Union

from .codec import UINT16
from .errors import VectorFormatError
from .quantized import QuantizedComparator
from .quantizer import HnswQuantizer
from .utils import ProgressTracker, load_json
from .vector_file import VectorFile

QUANTIZER_FILENAME = "quantizer"
VECTORS_FILENAME = "vectors"
METADATA_FILENAME = "metadata.json"


class Deriver(ABC):
    """Transform appended to in lockstep with its owning domain"""

    kind: str = ""
    chunk_size: int = 1_000

    @abstractmethod
    def concatenate_derived(self, chunks: Iterable[np.ndarray]) -> None:
        """Transform source chunks and append the results"""

    @abstractmethod
    def num_vecs(self) -> int:
        """Number of derived records"""

    @abstractmethod
    def truncate(self, num_vecs: int) -> None:
        """Drop derived records from ``num_vecs`` on"""

    @abstractmethod
    def catch_up(self, source: VectorFile, target: int) -> None:
        """Derive source records from the current length up to ``target``"""

    @classmethod
    @abstractmethod
    def load(cls, path: Union[str, Path], dimension: int) -> "Deriver":
        """Reopen a deriver persisted under ``path``"""


class NewDeriver(ABC):
    """Trains and persists a new deriver from a domain's vectors"""

    deriver_type: Type[Deriver] = Deriver

    @abstractmethod
    def new(self, path: Path, vectors: VectorFile) -> Deriver:
        """Create the deriver's artifacts under ``path`` and return it"""


class PqDerivedDomain(Deriver):
    """Product-quantized copy of a domain"""

    kind = "pq"

    def __init__(self, path: Union[str, Path], file: VectorFile, quantizer: HnswQuantizer,
                 chunk_size: int = 1_000):
        if file.width != quantizer.quantized_length:
            raise VectorFormatError(
                f"{file.path}: record width {file.width} does not match "
                f"quantized length {quantizer.quantized_length}")
        self.logger = logging.getLogger(__name__)
        self.path = Path(path)
        self.file = file
        self.quantizer = quantizer
        self.chunk_size = chunk_size
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Union[str, Path], dimension: int) -> "PqDerivedDomain":
        path = Path(path)
        metadata = load_json(path / METADATA_FILENAME)
        quantizer = HnswQuantizer.deserialize(path / QUANTIZER_FILENAME, dimension)
        file = VectorFile.open(path / VECTORS_FILENAME, quantizer.quantized_length, UINT16)
        return cls(path, file, quantizer, int(metadata.get("chunk_size", 1_000)))

    @property
    def centroid_width(self) -> int:
        return self.quantizer.centroid_width

    def num_vecs(self) -> int:
        return self.file.num_vecs()

    def quantize(self, vector: np.ndarray) -> np.ndarray:
        return self.quantizer.quantize(vector)

    def vec(self, index: int) -> np.ndarray:
        return self.file.vec(index)

    def all_vecs(self) -> np.ndarray:
        return self.file.all_vectors()

    def concatenate_derived(self, chunks: Iterable[np.ndarray]) -> None:
        with self._lock:
            appended = 0
            for chunk in chunks:
                codes = self.quantizer.quantize_batch(chunk)
                self.file.append_vectors(codes)
                appended += len(codes)
                self.logger.debug(f"Quantized {len(codes)} vectors into {self.path.name}")
            self.logger.info(f"Derived domain {self.path.name}: appended {appended} quantized vectors")

    def catch_up(self, source: VectorFile, target: int) -> None:
        """Quantize source records from the current length up to ``target``"""
        start = self.num_vecs()
        tracker = ProgressTracker(target - start, f"Deriving {self.path.name}")
        with self._lock:
            for begin in range(start, target, self.chunk_size):
                end = min(begin + self.chunk_size, target)
                self.file.append_vectors(self.quantizer.quantize_batch(source.vector_range(begin, end)))
                tracker.update(end - begin)
        tracker.finish()

    def truncate(self, num_vecs: int) -> None:
        with self._lock:
            self.file.truncate(num_vecs)

    def comparator(self) -> QuantizedComparator:
        """Quantized comparator over the records derived so far"""
        return QuantizedComparator(self.quantizer.centroid_comparator,
                                   self.quantizer.quantized_length,
                                   self.file.all_vectors())


DERIVER_TYPES: Dict[str, Type[Deriver]] = {
    PqDerivedDomain.kind: PqDerivedDomain,
}
