"""
Error Types Module

Failures raised by the comparator, quantization and domain layers. I/O failures are
not wrapped: they surface as the ``OSError`` raised by the file operation.
"""


class PQDomainError(Exception):
    """Base class for all errors raised by pq_domain"""


class VectorFormatError(PQDomainError, ValueError):
    """Persisted data does not match the expected record layout"""


class ComparatorMetadataError(VectorFormatError):
    """Comparator metadata sidecar is missing fields or does not parse"""


class DimensionMismatchError(PQDomainError, ValueError):
    """Two vectors (or a vector and its container) disagree on width"""


class VectorIdOutOfRangeError(PQDomainError, IndexError):
    """A VectorId does not address a record of the collection"""

    def __init__(self, vector_id: int, count: int):
        super().__init__(f"Vector id {vector_id} out of range for collection of {count} vectors")
        self.vector_id = vector_id
        self.count = count


class DerivedDomainExistsError(PQDomainError):
    """A derived domain with this name is already registered"""


class DerivedDomainNotFoundError(PQDomainError, KeyError):
    """No derived domain with this name is registered"""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class DerivedDomainTypeError(PQDomainError, TypeError):
    """The registered derived domain is not of the type the caller expected"""


class TrainingError(PQDomainError, RuntimeError):
    """Clustering or index construction failed while training a quantizer"""
