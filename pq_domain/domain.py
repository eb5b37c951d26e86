"""
Domain Module

A domain is a named, append-only file of raw embeddings together with the derived
domains that are kept in lockstep with it. Every append feeds the new records to
each derived domain first and only then extends the primary file, so no observer
ever sees more primary records than derived ones.
"""

import os
import shutil
import logging
import tempfile
import threading
import numpy as np
from pathlib import Path
from typing import Dict, Callable, Iterator, List, Optional, Type, TypeVar, Union
from urllib.parse import quote, unquote

from .codec import FLOAT32
from .derived import DERIVER_TYPES, METADATA_FILENAME, Deriver, NewDeriver
from .errors import (
    DerivedDomainExistsError, DerivedDomainNotFoundError, DerivedDomainTypeError,
    DimensionMismatchError, VectorFormatError,
)
from .utils import ReadWriteLock, ensure_dir, load_json, save_json
from .vector_file import VectorFile

DEFAULT_DIMENSION = 1536
VECTOR_FILE_SUFFIX = ".vecs"
DERIVED_SUFFIX = ".derived"
DOMAIN_METADATA_SUFFIX = ".json"
STAGING_SUFFIX = ".staging"

D = TypeVar("D", bound=Deriver)


def encode_name(name: str) -> str:
    """Percent-encode a logical name into a single filesystem-safe path component"""
    if not name:
        raise ValueError("Name must not be empty")
    encoded = quote(name, safe="")
    # quote leaves "." alone; a leading one would make a hidden (or "..") entry
    if encoded.startswith("."):
        encoded = "%2E" + encoded[1:]
    return encoded


def decode_name(encoded: str) -> str:
    return unquote(encoded)


def domain_file_name(name: str) -> str:
    return f"{encode_name(name)}{VECTOR_FILE_SUFFIX}"


class Domain:
    """Append-only embedding collection with lockstep derived domains"""

    def __init__(self, name: str, file: VectorFile):
        self.logger = logging.getLogger(__name__)
        self._name = name
        self._file = file
        self._append_lock = threading.Lock()
        self._registry_lock = ReadWriteLock()
        self._derived_domains: Dict[str, Deriver] = {}

    @classmethod
    def open(cls, directory: Union[str, Path], name: str,
             dimension: int = DEFAULT_DIMENSION) -> "Domain":
        """Open a domain, creating its file if needed, and reload its derived domains"""
        ensure_dir(directory)
        path = Path(directory) / domain_file_name(name)
        cls._check_dimension(path.with_suffix(DOMAIN_METADATA_SUFFIX), name, dimension)
        domain = cls(name, VectorFile.open_create(path, dimension, FLOAT32))
        domain._load_derived()
        domain.logger.info(f"Opened domain {name!r}: {domain.num_vecs():,} vectors, "
                           f"derived domains: {domain.derived_names()}")
        return domain

    @staticmethod
    def _check_dimension(metadata_path: Path, name: str, dimension: int) -> None:
        """Record the dimension of a new domain, or verify it against the recorded one"""
        if not metadata_path.exists():
            save_json({"name": name, "dimension": dimension}, metadata_path)
            return
        try:
            stored = int(load_json(metadata_path)["dimension"])
        except (ValueError, KeyError, TypeError) as e:
            raise VectorFormatError(f"Invalid domain metadata {metadata_path}: {e}")
        if stored != dimension:
            raise DimensionMismatchError(
                f"Domain {name!r} has dimension {stored}, requested {dimension}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def dimension(self) -> int:
        return self._file.width

    @property
    def path(self) -> Path:
        return self._file.path

    @property
    def derived_root(self) -> Path:
        return self._file.path.with_suffix(DERIVED_SUFFIX)

    def file(self) -> VectorFile:
        return self._file

    def num_vecs(self) -> int:
        return self._file.num_vecs()

    def vec(self, index: int) -> np.ndarray:
        return self._file.vec(index)

    def vec_range(self, start: int, end: int) -> np.ndarray:
        return self._file.vector_range(start, end)

    def all_vecs(self) -> np.ndarray:
        return self._file.all_vectors()

    def vector_chunks(self, chunk_size: int = 16_384) -> Iterator[np.ndarray]:
        return self._file.vector_chunks(chunk_size)

    def random_vectors(self, count: int, seed: Optional[int] = None) -> np.ndarray:
        return self._file.random_vectors(count, seed)

    def concatenate_file(self, path: Union[str, Path]) -> range:
        """Append every record of another vector file; returns the new ids"""
        source = VectorFile.open(path, self.dimension, FLOAT32)
        self.logger.info(f"Concatenating {source.num_vecs():,} vectors from {path} into {self._name!r}")
        return self._concatenate(source.vector_chunks,
                                 lambda: self._file.append_vector_file(source))

    def append_vectors(self, vectors: np.ndarray) -> range:
        """Append in-memory embeddings; returns the new ids"""
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise DimensionMismatchError(
                f"Expected embeddings of dimension {self.dimension}, got shape {vectors.shape}")

        def chunks(chunk_size: int) -> Iterator[np.ndarray]:
            for start in range(0, len(vectors), chunk_size):
                yield vectors[start:start + chunk_size]

        return self._concatenate(chunks, lambda: self._file.append_vectors(vectors))

    def _concatenate(self, chunks: Callable[[int], Iterator[np.ndarray]],
                     commit: Callable[[], int]) -> range:
        with self._append_lock:
            old_size = self.num_vecs()
            with self._registry_lock.read():
                derivers = list(self._derived_domains.items())

            checkpoints = []
            try:
                for derived_name, deriver in derivers:
                    checkpoints.append((derived_name, deriver, deriver.num_vecs()))
                    deriver.concatenate_derived(chunks(deriver.chunk_size))
                new_size = commit()
            except Exception:
                self.logger.error(f"Append to domain {self._name!r} failed, rolling back")
                self._rollback(old_size, checkpoints)
                raise

        self.logger.info(f"Domain {self._name!r}: appended vectors {old_size}..{new_size}")
        return range(old_size, new_size)

    def _rollback(self, old_size: int, checkpoints) -> None:
        for derived_name, deriver, length in checkpoints:
            if deriver.num_vecs() > length:
                deriver.truncate(length)
                self.logger.warning(f"Derived domain {derived_name!r} truncated to {length}")
        if self.num_vecs() > old_size:
            self._file.truncate(old_size)

    def create_derived(self, name: str, initializer: NewDeriver) -> Deriver:
        """Train and register a new derived domain.

        The deriver is built in a staging directory which only becomes visible under
        its final name once training succeeded and every existing vector has been
        derived. Any failure leaves both the registry and the disk unchanged.
        """
        with self._append_lock:
            with self._registry_lock.read():
                if name in self._derived_domains:
                    raise DerivedDomainExistsError(
                        f"Derived domain {name!r} already exists in domain {self._name!r}")

            root = self.derived_root
            final_path = root / encode_name(name)
            if final_path.exists():
                raise DerivedDomainExistsError(f"Derived domain directory already exists: {final_path}")

            ensure_dir(root)
            staging = Path(tempfile.mkdtemp(prefix=f".{encode_name(name)}.",
                                            suffix=STAGING_SUFFIX, dir=root))
            try:
                staged = initializer.new(staging, self._file)
                staged.catch_up(self._file, self.num_vecs())
                os.replace(staging, final_path)
                deriver = initializer.deriver_type.load(final_path, self.dimension)
            except Exception:
                self.logger.error(f"Creating derived domain {name!r} failed, removing its files")
                shutil.rmtree(staging, ignore_errors=True)
                shutil.rmtree(final_path, ignore_errors=True)
                raise

            with self._registry_lock.write():
                self._derived_domains[name] = deriver

        self.logger.info(f"Registered derived domain {name!r} on {self._name!r} "
                         f"({deriver.num_vecs():,} vectors)")
        return deriver

    def derived(self, name: str, expected_type: Type[D] = Deriver,
                centroid_width: Optional[int] = None) -> D:
        """Registered derived domain, checked against the caller's expected type"""
        with self._registry_lock.read():
            deriver = self._derived_domains.get(name)
        if deriver is None:
            raise DerivedDomainNotFoundError(f"No derived domain {name!r} in domain {self._name!r}")
        if not isinstance(deriver, expected_type):
            raise DerivedDomainTypeError(
                f"Derived domain {name!r} is a {type(deriver).__name__}, "
                f"not a {expected_type.__name__}")
        if centroid_width is not None and getattr(deriver, "centroid_width", None) != centroid_width:
            raise DerivedDomainTypeError(
                f"Derived domain {name!r} has centroid width "
                f"{getattr(deriver, 'centroid_width', None)}, not {centroid_width}")
        return deriver

    def derived_names(self) -> List[str]:
        with self._registry_lock.read():
            return sorted(self._derived_domains)

    def _load_derived(self) -> None:
        root = self.derived_root
        if not root.is_dir():
            return

        for entry in sorted(root.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name.startswith("."):
                self.logger.warning(f"Removing abandoned staging directory: {entry}")
                shutil.rmtree(entry)
                continue

            try:
                kind = load_json(entry / METADATA_FILENAME)["type"]
            except (ValueError, KeyError, TypeError) as e:
                raise VectorFormatError(f"Invalid derived domain metadata in {entry}: {e}")
            deriver_type = DERIVER_TYPES.get(kind)
            if deriver_type is None:
                raise VectorFormatError(f"Unknown derived domain type {kind!r} in {entry}")

            deriver = deriver_type.load(entry, self.dimension)
            self._reconcile(entry.name, deriver)
            self._derived_domains[decode_name(entry.name)] = deriver

    def _reconcile(self, derived_name: str, deriver: Deriver) -> None:
        primary = self.num_vecs()
        derived = deriver.num_vecs()
        if derived > primary:
            self.logger.warning(f"Derived domain {derived_name!r} is ahead of the primary "
                                f"({derived} > {primary}), truncating")
            deriver.truncate(primary)
        elif derived < primary:
            self.logger.warning(f"Derived domain {derived_name!r} is behind the primary "
                                f"({derived} < {primary}), catching up")
            deriver.catch_up(self._file, primary)


class VectorStore:
    """Owns the domains of one storage directory"""

    def __init__(self, directory: Union[str, Path]):
        self.logger = logging.getLogger(__name__)
        self.directory = Path(directory)
        ensure_dir(self.directory)
        self._domains: Dict[str, Domain] = {}
        self._lock = threading.Lock()

    def get_domain(self, name: str, dimension: int = DEFAULT_DIMENSION) -> Domain:
        """Open (once) and return the domain called ``name``"""
        with self._lock:
            domain = self._domains.get(name)
            if domain is None:
                domain = Domain.open(self.directory, name, dimension)
                self._domains[name] = domain
            elif domain.dimension != dimension:
                raise DimensionMismatchError(
                    f"Domain {name!r} has dimension {domain.dimension}, requested {dimension}")
            return domain

    def domains(self) -> List[str]:
        with self._lock:
            return sorted(self._domains)
