"""
Test cases for the append-only vector file.
"""

import numpy as np
import pytest

from pq_domain.codec import UINT16
from pq_domain.errors import DimensionMismatchError, VectorFormatError, VectorIdOutOfRangeError
from pq_domain.vector_file import VectorFile


def test_empty_file_has_no_vectors(tmp_path):
    vectors = VectorFile.open_create(tmp_path / "empty.vecs", 8)

    assert vectors.num_vecs() == 0
    assert list(vectors.vector_chunks()) == []
    assert vectors.all_vectors().shape == (0, 8)


def test_append_and_read_back(tmp_path, rng):
    data = rng.standard_normal((10, 8)).astype(np.float32)
    vectors = VectorFile.open_create(tmp_path / "v.vecs", 8)

    assert vectors.append_vectors(data[:4]) == 4
    assert vectors.append_vectors(data[4:]) == 10

    np.testing.assert_array_equal(vectors.vec(3), data[3])
    np.testing.assert_array_equal(vectors.vector_range(2, 7), data[2:7])
    np.testing.assert_array_equal(vectors.all_vectors(), data)


def test_reopen_counts_records(tmp_path, rng):
    path = tmp_path / "v.vecs"
    VectorFile.open_create(path, 8).append_vectors(rng.standard_normal((5, 8)))

    assert VectorFile.open(path, 8).num_vecs() == 5


def test_open_rejects_truncated_file(tmp_path):
    path = tmp_path / "broken.vecs"
    path.write_bytes(b"\x00" * 33)

    with pytest.raises(VectorFormatError):
        VectorFile.open(path, 8)


def test_vector_chunks_are_bounded_and_restartable(tmp_path, rng):
    data = rng.standard_normal((25, 4)).astype(np.float32)
    vectors = VectorFile.open_create(tmp_path / "v.vecs", 4)
    vectors.append_vectors(data)

    chunks = list(vectors.vector_chunks(10))
    again = list(vectors.vector_chunks(10))

    assert [len(c) for c in chunks] == [10, 10, 5]
    assert [len(c) for c in again] == [10, 10, 5]
    np.testing.assert_array_equal(np.concatenate(chunks), data)


def test_vector_chunks_see_records_present_at_call_time(tmp_path, rng):
    vectors = VectorFile.open_create(tmp_path / "v.vecs", 4)
    vectors.append_vectors(rng.standard_normal((3, 4)))

    chunks = vectors.vector_chunks(2)
    vectors.append_vectors(rng.standard_normal((3, 4)))

    assert sum(len(c) for c in chunks) == 3


def test_out_of_range_read(tmp_path):
    vectors = VectorFile.open_create(tmp_path / "v.vecs", 4)

    with pytest.raises(VectorIdOutOfRangeError):
        vectors.vec(0)


def test_truncate(tmp_path, rng):
    path = tmp_path / "codes"
    vectors = VectorFile.open_create(path, 3, UINT16)
    vectors.append_vectors(rng.integers(0, 100, (6, 3)))

    vectors.truncate(2)

    assert vectors.num_vecs() == 2
    assert path.stat().st_size == 2 * 3 * 2


def test_append_vector_file(tmp_path, rng):
    source = VectorFile.open_create(tmp_path / "a.vecs", 4)
    source.append_vectors(rng.standard_normal((7, 4)))
    target = VectorFile.open_create(tmp_path / "b.vecs", 4)
    target.append_vectors(rng.standard_normal((2, 4)))

    assert target.append_vector_file(source, chunk_size=3) == 9
    np.testing.assert_array_equal(target.vector_range(2, 9), source.all_vectors())


def test_append_vector_file_rejects_other_width(tmp_path):
    source = VectorFile.open_create(tmp_path / "a.vecs", 4)
    target = VectorFile.open_create(tmp_path / "b.vecs", 8)

    with pytest.raises(DimensionMismatchError):
        target.append_vector_file(source)


def test_random_vectors_without_replacement(tmp_path):
    data = np.arange(40, dtype=np.float32).reshape(20, 2)
    vectors = VectorFile.open_create(tmp_path / "v.vecs", 2)
    vectors.append_vectors(data)

    sample = vectors.random_vectors(5, seed=3)
    rows = {tuple(row) for row in sample}

    assert sample.shape == (5, 2)
    assert len(rows) == 5
    assert rows <= {tuple(row) for row in data}
    assert len(vectors.random_vectors(20)) == 20
    assert len(vectors.random_vectors(100)) == 20
