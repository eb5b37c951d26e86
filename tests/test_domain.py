"""
Test cases for domains, derived domains and the vector store.
"""

import threading

import numpy as np
import pytest

from pq_domain import Domain, PqDerivedDomain, VectorFile, VectorStore
from pq_domain.domain import decode_name, domain_file_name, encode_name
from pq_domain.errors import (
    DerivedDomainExistsError, DerivedDomainNotFoundError, DerivedDomainTypeError,
    DimensionMismatchError, TrainingError,
)

DIMENSION = 64


class OtherDeriver(PqDerivedDomain):
    kind = "other"


def test_names_are_percent_encoded():
    assert domain_file_name("a/b c") == "a%2Fb%20c.vecs"
    assert encode_name("..") == "%2E."
    assert decode_name(encode_name("../x y")) == "../x y"
    with pytest.raises(ValueError):
        encode_name("")


def test_open_creates_empty_domain(tmp_path):
    domain = Domain.open(tmp_path, "a/b c", DIMENSION)

    assert domain.num_vecs() == 0
    assert domain.path == tmp_path / "a%2Fb%20c.vecs"
    assert domain.path.is_file()
    assert domain.derived_names() == []


def test_open_is_idempotent(tmp_path, embeddings):
    Domain.open(tmp_path, "docs", DIMENSION).append_vectors(embeddings[:10])

    reopened = Domain.open(tmp_path, "docs", DIMENSION)

    assert reopened.num_vecs() == 10
    np.testing.assert_array_equal(reopened.vec(9), embeddings[9])


def test_append_returns_new_ids(domain, embeddings):
    assert domain.append_vectors(embeddings[:30]) == range(0, 30)
    assert domain.append_vectors(embeddings[30:45]) == range(30, 45)
    np.testing.assert_array_equal(domain.vec_range(30, 45), embeddings[30:45])


def test_append_rejects_wrong_dimension(domain):
    with pytest.raises(DimensionMismatchError):
        domain.append_vectors(np.zeros((2, 32), dtype=np.float32))
    assert domain.num_vecs() == 0


def test_concatenate_file(tmp_path, domain, embeddings):
    source = VectorFile.open_create(tmp_path / "batch.vecs", DIMENSION)
    source.append_vectors(embeddings[:25])
    domain.append_vectors(embeddings[25:30])

    assert domain.concatenate_file(tmp_path / "batch.vecs") == range(5, 30)
    np.testing.assert_array_equal(domain.vec_range(5, 30), embeddings[:25])


def test_create_derived_backfills_existing_vectors(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:120])

    deriver = domain.create_derived("pq16", initializer)

    assert deriver.num_vecs() == 120
    assert domain.derived_names() == ["pq16"]
    np.testing.assert_array_equal(deriver.all_vecs(), deriver.quantizer.quantize_batch(embeddings[:120]))


def test_appends_stay_in_lockstep(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:100])
    deriver = domain.create_derived("pq16", initializer)

    domain.append_vectors(embeddings[100:])

    assert deriver.num_vecs() == domain.num_vecs() == 200
    np.testing.assert_array_equal(deriver.vec(150), deriver.quantize(embeddings[150]))


def test_duplicate_derived_name_is_rejected(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:100])
    first = domain.create_derived("pq16", initializer)

    with pytest.raises(DerivedDomainExistsError):
        domain.create_derived("pq16", initializer)
    assert domain.derived("pq16") is first


def test_derived_lookup_errors(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:100])
    domain.create_derived("pq16", initializer)

    with pytest.raises(DerivedDomainNotFoundError):
        domain.derived("missing")
    with pytest.raises(DerivedDomainTypeError):
        domain.derived("pq16", OtherDeriver)
    with pytest.raises(DerivedDomainTypeError):
        domain.derived("pq16", PqDerivedDomain, centroid_width=32)
    assert domain.derived("pq16", PqDerivedDomain, centroid_width=16).centroid_width == 16


def test_failed_derivation_rolls_back_every_file(domain, embeddings, initializer, monkeypatch):
    domain.append_vectors(embeddings[:100])
    first = domain.create_derived("a", initializer)
    second = domain.create_derived("b", initializer)

    def fail(vectors):
        raise RuntimeError("quantization failed")

    monkeypatch.setattr(second.quantizer, "quantize_batch", fail)
    with pytest.raises(RuntimeError):
        domain.append_vectors(embeddings[100:])

    assert domain.num_vecs() == 100
    assert first.num_vecs() == 100
    assert second.num_vecs() == 100
    assert first.file.path.stat().st_size == 100 * 4 * 2


def test_failed_training_leaves_nothing_behind(domain, embeddings, initializer, monkeypatch):
    domain.append_vectors(embeddings[:100])

    def fail(*args, **kwargs):
        raise RuntimeError("k-means failed")

    monkeypatch.setattr("pq_domain.training.cluster_chunks", fail)
    with pytest.raises(TrainingError):
        domain.create_derived("pq16", initializer)

    assert domain.derived_names() == []
    assert list(domain.derived_root.iterdir()) == []


def test_training_on_empty_domain_fails(domain, initializer):
    with pytest.raises(TrainingError):
        domain.create_derived("pq16", initializer)
    assert domain.derived_names() == []


def test_reopen_reloads_derived_domains(tmp_path, embeddings, initializer):
    domain = Domain.open(tmp_path, "docs", DIMENSION)
    domain.append_vectors(embeddings[:100])
    deriver = domain.create_derived("pq/16", initializer)

    reopened = Domain.open(tmp_path, "docs", DIMENSION)
    loaded = reopened.derived("pq/16", PqDerivedDomain)

    assert reopened.derived_names() == ["pq/16"]
    assert loaded.num_vecs() == 100
    np.testing.assert_array_equal(loaded.all_vecs(), deriver.all_vecs())
    reopened.append_vectors(embeddings[100:110])
    assert loaded.num_vecs() == 110


def test_reopen_truncates_derived_domain_that_is_ahead(tmp_path, embeddings, initializer):
    domain = Domain.open(tmp_path, "docs", DIMENSION)
    domain.append_vectors(embeddings[:100])
    deriver = domain.create_derived("pq16", initializer)
    deriver.file.append_vectors(np.zeros((3, 4), dtype=np.uint16))

    reopened = Domain.open(tmp_path, "docs", DIMENSION)

    assert reopened.derived("pq16").num_vecs() == 100


def test_reopen_catches_up_derived_domain_that_is_behind(tmp_path, embeddings, initializer):
    domain = Domain.open(tmp_path, "docs", DIMENSION)
    domain.append_vectors(embeddings[:100])
    deriver = domain.create_derived("pq16", initializer)
    expected = deriver.all_vecs()
    deriver.truncate(40)

    reopened = Domain.open(tmp_path, "docs", DIMENSION)

    np.testing.assert_array_equal(reopened.derived("pq16").all_vecs(), expected)


def test_reopen_removes_abandoned_staging_directory(tmp_path, domain):
    staging = domain.derived_root / ".pq16.abc.staging"
    staging.mkdir(parents=True)

    Domain.open(domain.path.parent, domain.name, DIMENSION)

    assert not staging.exists()


def test_derived_never_behind_primary(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:50])
    deriver = domain.create_derived("pq16", initializer)
    violations = []
    done = threading.Event()

    def reader():
        while not done.is_set():
            primary = domain.num_vecs()
            if deriver.num_vecs() < primary:
                violations.append(primary)

    thread = threading.Thread(target=reader)
    thread.start()
    for start in range(50, 200, 10):
        domain.append_vectors(embeddings[start:start + 10])
    done.set()
    thread.join()

    assert not violations
    assert deriver.num_vecs() == 200


def test_derived_comparator(domain, embeddings, initializer):
    domain.append_vectors(embeddings[:100])
    deriver = domain.create_derived("pq16", initializer)

    comparator = deriver.comparator()

    assert comparator.num_vecs() == 100
    assert comparator.compare(5, 5) == 0.0
    reconstructed = deriver.quantizer.reconstruct(deriver.all_vecs()[[3, 8]])
    expected = np.linalg.norm(reconstructed[0].astype(np.float64) - reconstructed[1])
    assert comparator.compare(3, 8) == pytest.approx(expected, rel=1e-4)


def test_vector_store_caches_domains(tmp_path):
    store = VectorStore(tmp_path)

    domain = store.get_domain("docs", DIMENSION)

    assert store.get_domain("docs", DIMENSION) is domain
    assert store.domains() == ["docs"]
    with pytest.raises(DimensionMismatchError):
        store.get_domain("docs", 32)


def test_reopen_with_other_dimension_fails(tmp_path, embeddings):
    Domain.open(tmp_path, "docs", DIMENSION).append_vectors(embeddings[:2])

    with pytest.raises(DimensionMismatchError):
        Domain.open(tmp_path, "docs", 32)
    assert Domain.open(tmp_path, "docs", DIMENSION).num_vecs() == 2
