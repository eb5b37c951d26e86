"""
PQ Domain Core Module

Comparators, product quantization and lockstep derived domains for approximate
nearest neighbor search over file-backed embedding collections.

References:
    - Jegou, H., et al. (2011). Product quantization for nearest neighbor search. IEEE TPAMI.
    - Malkov, Y. A., & Yashunin, D. A. (2018). Efficient and robust approximate nearest
      neighbor search using Hierarchical Navigable Small World graphs. IEEE TPAMI.
"""

# Comparators
from .comparator import Comparator, ReadHandle, VectorId
from .centroid import (
    CentroidComparator, NARROW_CENTROID_WIDTH, WIDE_CENTROID_WIDTH,
)
from .quantized import QuantizedComparator
from .embedding import EmbeddingComparator, normalized_cosine_distance

# Quantization and domains
from .quantizer import HnswQuantizer
from .training import PqDerivedDomainInitializer, train_quantizer
from .derived import Deriver, NewDeriver, PqDerivedDomain
from .domain import Domain, VectorStore
from .vector_file import VectorFile

from .errors import (
    PQDomainError, VectorFormatError, ComparatorMetadataError, DimensionMismatchError,
    VectorIdOutOfRangeError, DerivedDomainExistsError, DerivedDomainNotFoundError,
    DerivedDomainTypeError, TrainingError,
)

# Utility functions
from .utils import load_config, setup_logging

__version__ = "1.0.0"

__all__ = [
    "Comparator",
    "ReadHandle",
    "VectorId",
    "CentroidComparator",
    "NARROW_CENTROID_WIDTH",
    "WIDE_CENTROID_WIDTH",
    "QuantizedComparator",
    "EmbeddingComparator",
    "normalized_cosine_distance",
    "HnswQuantizer",
    "PqDerivedDomainInitializer",
    "train_quantizer",
    "Deriver",
    "NewDeriver",
    "PqDerivedDomain",
    "Domain",
    "VectorStore",
    "VectorFile",
    "PQDomainError",
    "VectorFormatError",
    "ComparatorMetadataError",
    "DimensionMismatchError",
    "VectorIdOutOfRangeError",
    "DerivedDomainExistsError",
    "DerivedDomainNotFoundError",
    "DerivedDomainTypeError",
    "TrainingError",
    "load_config",
    "setup_logging",
]
