"""
Embedding Comparator Module

Full-precision cosine comparator over the raw embeddings of a domain. It is also
the sampling and streaming source used when training and bulk-deriving.
"""

import logging
import numpy as np
from pathlib import Path
from typing import Iterator, Union

from .comparator import Comparator, ReadHandle, VectorId
from .domain import Domain, VectorStore
from .errors import ComparatorMetadataError, DimensionMismatchError
from .utils import load_json, save_json

VECTOR_CHUNK_SIZE = 16_384


def normalized_cosine_distance(v1: np.ndarray, v2: np.ndarray) -> float:
    """1 - cosine similarity, normalizing both vectors first"""
    v1 = np.asarray(v1, dtype=np.float64)
    v2 = np.asarray(v2, dtype=np.float64)
    if v1.shape != v2.shape:
        raise DimensionMismatchError(f"Cannot compare vectors of shape {v1.shape} and {v2.shape}")

    norm = np.linalg.norm(v1) * np.linalg.norm(v2)
    if norm == 0.0:
        return 1.0
    similarity = float(np.dot(v1, v2) / norm)
    return min(max(1.0 - similarity, 0.0), 2.0)


class EmbeddingComparator(Comparator):
    """Cosine comparator over one raw domain"""

    def __init__(self, domain: Domain):
        self.logger = logging.getLogger(__name__)
        self.domain = domain

    def lookup(self, vector_id: VectorId) -> ReadHandle:
        return ReadHandle(self.domain.vec(vector_id))

    def compare_raw(self, v1: np.ndarray, v2: np.ndarray) -> float:
        return normalized_cosine_distance(v1, v2)

    def num_vecs(self) -> int:
        return self.domain.num_vecs()

    def selection(self, size: int) -> np.ndarray:
        """``size`` vectors sampled without replacement for training"""
        return self.domain.random_vectors(size)

    def vector_chunks(self) -> Iterator[np.ndarray]:
        """Stream the domain in batches of at most 16384 vectors"""
        return self.domain.vector_chunks(VECTOR_CHUNK_SIZE)

    def serialize(self, path: Union[str, Path]) -> None:
        """Write the metadata needed to re-bind this comparator to its domain"""
        save_json({
            "domain": self.domain.name,
            "dimension": self.domain.dimension,
            "size": self.domain.num_vecs(),
        }, path)
        self.logger.info(f"Comparator metadata saved: {path}")

    @classmethod
    def deserialize(cls, path: Union[str, Path], store: VectorStore) -> "EmbeddingComparator":
        try:
            metadata = load_json(path)
            name = metadata["domain"]
            dimension = int(metadata["dimension"])
            size = int(metadata["size"])
        except (ValueError, KeyError, TypeError) as e:
            raise ComparatorMetadataError(f"Invalid comparator metadata {path}: {e}")
        if not isinstance(name, str):
            raise ComparatorMetadataError(f"Invalid comparator metadata {path}: domain is not a string")

        domain = store.get_domain(name, dimension)
        if domain.num_vecs() < size:
            logging.getLogger(__name__).warning(
                f"Domain {name!r} has {domain.num_vecs()} vectors, comparator was saved with {size}")
        return cls(domain)
