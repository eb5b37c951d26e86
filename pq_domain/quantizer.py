"""
Quantizer Module

Maps raw embeddings to centroid codes chunk by chunk. The nearest centroid of a
chunk is found with a FAISS HNSW index built over the centroid vocabulary.
"""

import logging
import time
import numpy as np
import faiss
from pathlib import Path
from typing import Union

from .centroid import CentroidComparator
from .errors import DimensionMismatchError, VectorFormatError
from .quantized import quantized_length_for
from .utils import format_time


class HnswQuantizer:
    """Immutable product quantizer over one centroid vocabulary"""

    def __init__(self, centroids: CentroidComparator, index, dimension: int):
        if index.d != centroids.width:
            raise DimensionMismatchError(
                f"Index dimension {index.d} does not match centroid width {centroids.width}")
        if index.ntotal != centroids.num_vecs():
            raise VectorFormatError(
                f"Index holds {index.ntotal} vectors but vocabulary has {centroids.num_vecs()}")
        self.logger = logging.getLogger(__name__)
        self.centroid_comparator = centroids
        self.index = index
        self.dimension = dimension
        self.centroid_width = centroids.width
        self.quantized_length = quantized_length_for(dimension, centroids.width)

    @classmethod
    def build(cls, centroids: CentroidComparator, dimension: int, hnsw_m: int = 24,
              ef_construction: int = 40, ef_search: int = 64) -> "HnswQuantizer":
        """Build the HNSW nearest-centroid index over a centroid vocabulary"""
        logger = logging.getLogger(__name__)
        vocabulary = np.ascontiguousarray(centroids.centroids(), dtype=np.float32)

        start = time.time()
        index = faiss.IndexHNSWFlat(centroids.width, hnsw_m)
        index.hnsw.efConstruction = ef_construction
        index.hnsw.efSearch = ef_search
        index.add(vocabulary)
        logger.info(f"Created HNSW centroid index: width={centroids.width}, M={hnsw_m}, "
                    f"centroids={index.ntotal}, time: {format_time(time.time() - start)}")

        return cls(centroids, index, dimension)

    def quantize(self, vector: np.ndarray) -> np.ndarray:
        """Quantize one embedding to ``quantized_length`` centroid codes"""
        return self.quantize_batch(np.asarray(vector).reshape(1, -1))[0]

    def quantize_batch(self, vectors: np.ndarray) -> np.ndarray:
        """Quantize (n, dimension) embeddings to (n, quantized_length) codes"""
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise DimensionMismatchError(
                f"Expected embeddings of dimension {self.dimension}, got shape {vectors.shape}")
        if len(vectors) == 0:
            return np.empty((0, self.quantized_length), dtype=np.uint16)

        chunks = np.ascontiguousarray(vectors.reshape(-1, self.centroid_width))
        _, labels = self.index.search(chunks, 1)
        if (labels < 0).any():
            raise RuntimeError("Nearest-centroid search returned no result for some chunks")
        return labels.reshape(len(vectors), self.quantized_length).astype(np.uint16)

    def reconstruct(self, codes: np.ndarray) -> np.ndarray:
        """Approximate embedding(s) from codes"""
        codes = np.asarray(codes)
        centroids = self.centroid_comparator.centroids()
        return centroids[codes.astype(np.intp)].reshape(*codes.shape[:-1], self.dimension)

    def serialize(self, path: Union[str, Path]) -> None:
        """Write the HNSW index; the centroids are recovered from its flat storage"""
        faiss.write_index(self.index, str(path))
        self.logger.info(f"Quantizer saved: {path}")

    @classmethod
    def deserialize(cls, path: Union[str, Path], dimension: int) -> "HnswQuantizer":
        index = faiss.read_index(str(path))
        if index.ntotal:
            vocabulary = index.reconstruct_n(0, index.ntotal)
        else:
            vocabulary = np.empty((0, index.d), dtype=np.float32)
        centroids = CentroidComparator(index.d, vocabulary)
        return cls(centroids, index, dimension)
