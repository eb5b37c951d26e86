"""
PQ Training Module

One-time construction of a product-quantized derived domain: sample raw vectors,
cluster their chunks with FAISS k-means, build the centroid comparator and its
HNSW nearest-centroid index, and persist the result.
"""

import logging
import time
import numpy as np
import faiss
from pathlib import Path
from typing import Any, Dict, Optional

from .centroid import CENTROID_WIDTHS, WIDE_CENTROID_WIDTH, CentroidComparator
from .codec import UINT16
from .derived import (
    METADATA_FILENAME, QUANTIZER_FILENAME, VECTORS_FILENAME,
    NewDeriver, PqDerivedDomain,
)
from .errors import DimensionMismatchError, TrainingError
from .quantizer import HnswQuantizer
from .utils import format_time, load_config, save_json
from .vector_file import VectorFile


def cluster_chunks(chunks: np.ndarray, number_of_clusters: int, niter: int = 25,
                   seed: int = 42) -> np.ndarray:
    """Centroids of at most ``number_of_clusters`` clusters over the chunk population.

    When the population has no more distinct chunks than the cap, the distinct
    chunks themselves are the centroids.
    """
    logger = logging.getLogger(__name__)
    distinct = np.unique(chunks, axis=0)
    n_clusters = min(number_of_clusters, len(distinct))
    if n_clusters == len(distinct):
        logger.info(f"Sample has {len(distinct)} distinct chunks, using them as centroids")
        return distinct.astype(np.float32)

    logger.info(f"Running k-means: {len(chunks):,} chunks, {n_clusters} clusters, seed={seed}")
    kmeans = faiss.Kmeans(chunks.shape[1], n_clusters, niter=niter, seed=seed, verbose=False)
    kmeans.train(np.ascontiguousarray(chunks, dtype=np.float32))
    return np.asarray(kmeans.centroids, dtype=np.float32)


def train_quantizer(sample: np.ndarray, centroid_width: int = WIDE_CENTROID_WIDTH,
                    number_of_clusters: int = 1_000, kmeans_niter: int = 25, seed: int = 42,
                    hnsw_m: int = 24, ef_construction: int = 40,
                    ef_search: int = 64) -> HnswQuantizer:
    """Train a product quantizer on a sample of raw embeddings"""
    sample = np.asarray(sample, dtype=np.float32)
    if sample.ndim != 2 or len(sample) == 0:
        raise TrainingError(f"Cannot train a quantizer on a sample of shape {sample.shape}")
    if centroid_width not in CENTROID_WIDTHS:
        raise ValueError(f"Unsupported centroid width: {centroid_width}. Supported: {CENTROID_WIDTHS}")
    dimension = sample.shape[1]
    if dimension % centroid_width != 0:
        raise DimensionMismatchError(
            f"Embedding dimension {dimension} is not divisible by centroid width {centroid_width}")

    chunks = np.ascontiguousarray(sample.reshape(-1, centroid_width))
    try:
        centroids = cluster_chunks(chunks, number_of_clusters, kmeans_niter, seed)
        centroid_comparator = CentroidComparator(centroid_width, centroids)
        return HnswQuantizer.build(centroid_comparator, dimension, hnsw_m,
                                   ef_construction, ef_search)
    except Exception as e:
        raise TrainingError(f"Quantizer training failed: {e}") from e


class PqDerivedDomainInitializer(NewDeriver):
    """Trains a product-quantized derived domain"""

    deriver_type = PqDerivedDomain

    def __init__(self, centroid_width: int = WIDE_CENTROID_WIDTH, sample_size: int = 1_000,
                 number_of_clusters: int = 1_000, kmeans_niter: int = 25, seed: int = 42,
                 hnsw_m: int = 24, ef_construction: int = 40, ef_search: int = 64,
                 sample_seed: Optional[int] = None, chunk_size: int = 1_000):
        if centroid_width not in CENTROID_WIDTHS:
            raise ValueError(f"Unsupported centroid width: {centroid_width}. Supported: {CENTROID_WIDTHS}")
        if sample_size <= 0:
            raise ValueError(f"Sample size must be positive, got {sample_size}")
        if not 0 < number_of_clusters <= 1 << 16:
            raise ValueError(f"Invalid cluster count: {number_of_clusters}. Should be in range 1-65536")
        self.logger = logging.getLogger(__name__)
        self.centroid_width = centroid_width
        self.sample_size = sample_size
        self.number_of_clusters = number_of_clusters
        self.kmeans_niter = kmeans_niter
        self.seed = seed
        self.hnsw_m = hnsw_m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.sample_seed = sample_seed
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None,
                    **overrides) -> "PqDerivedDomainInitializer":
        """Build from the ``training`` and ``storage`` sections of a config"""
        if config is None:
            config = load_config()
        training = config.get('training', {})
        storage = config.get('storage', {})
        params = {
            "centroid_width": training.get('centroid_width', WIDE_CENTROID_WIDTH),
            "sample_size": training.get('sample_size', 1_000),
            "number_of_clusters": training.get('number_of_clusters', 1_000),
            "kmeans_niter": training.get('kmeans_niter', 25),
            "seed": training.get('seed', 42),
            "hnsw_m": training.get('hnsw_m', 24),
            "ef_construction": training.get('ef_construction', 40),
            "ef_search": training.get('ef_search', 64),
            "sample_seed": training.get('sample_seed'),
            "chunk_size": storage.get('derive_chunk_size', 1_000),
        }
        params.update(overrides)
        return cls(**params)

    def select_sample(self, vectors: VectorFile) -> np.ndarray:
        """Up to ``sample_size`` distinct records; all of them if the file is not larger"""
        return vectors.random_vectors(self.sample_size, self.sample_seed)

    def new(self, path: Path, vectors: VectorFile) -> PqDerivedDomain:
        path = Path(path)
        self.logger.info(f"Training PQ derived domain: {path}")
        start = time.time()

        sample = self.select_sample(vectors)
        self.logger.info(f"Selected {len(sample):,} of {vectors.num_vecs():,} vectors for training")

        quantizer = train_quantizer(
            sample, self.centroid_width, self.number_of_clusters, self.kmeans_niter,
            self.seed, self.hnsw_m, self.ef_construction, self.ef_search,
        )
        train_time = time.time() - start
        self.logger.info(f"Training completed, time: {format_time(train_time)}")

        quantizer.serialize(path / QUANTIZER_FILENAME)
        quantized_file = VectorFile.create(path / VECTORS_FILENAME, quantizer.quantized_length, UINT16)
        save_json({
            "type": PqDerivedDomain.kind,
            "dimension": quantizer.dimension,
            "centroid_width": quantizer.centroid_width,
            "quantized_length": quantizer.quantized_length,
            "num_centroids": quantizer.centroid_comparator.num_vecs(),
            "num_sample_vectors": len(sample),
            "seed": self.seed,
            "chunk_size": self.chunk_size,
            "train_time": train_time,
        }, path / METADATA_FILENAME)

        return PqDerivedDomain(path, quantized_file, quantizer, self.chunk_size)
