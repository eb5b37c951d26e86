"""
Shared fixtures for pq_domain tests.
"""

import numpy as np
import pytest

from pq_domain import Domain, PqDerivedDomainInitializer

DIMENSION = 64


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def embeddings(rng):
    """200 random embeddings of dimension 64"""
    return rng.standard_normal((200, DIMENSION)).astype(np.float32)


@pytest.fixture
def initializer():
    """Small narrow-width trainer so tests stay fast"""
    return PqDerivedDomainInitializer(
        centroid_width=16, sample_size=50, number_of_clusters=8,
        kmeans_niter=5, hnsw_m=8, ef_construction=40, ef_search=64,
        sample_seed=7, chunk_size=64,
    )


@pytest.fixture
def domain(tmp_path):
    return Domain.open(tmp_path / "store", "openai embeddings", DIMENSION)
