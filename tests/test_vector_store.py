"""
Unit tests for the vector store.

Tests:
- Batched build, retry schedule and pacing (recorded, never slept)
- Top-K search against a full sort
- JSON persistence and its error cases
- In-place append
"""

import json
import os
import threading
from datetime import datetime, timezone

import numpy as np
import pytest

from config.settings import BuildConfig
from ragcore.chunking import chunk_documents
from ragcore.embeddings import cosine_similarity
from ragcore.exceptions import (
    EmbeddingBatchError,
    MissingEmbedderError,
    NoChunksError,
    OperationCancelled,
    PersistenceError,
    StoreFormatError,
    StoreNotFoundError,
    StorePermissionError,
)
from ragcore.vector_store import (
    Metadata,
    VectorStore,
    build_vector_store,
    parse_timestamp,
    search,
)
from tests.conftest import (
    FailingEmbedder,
    FixedEmbedder,
    FlakyEmbedder,
    UnitVectorEmbedder,
    make_chunk,
)


def _chunks(count):
    return [make_chunk(i, text=f"text {i}") for i in range(count)]


class TestBuild:
    """Test batching and assignment of vectors."""

    def test_vectors_assigned_by_position(self, recording_sleep):
        embedder = UnitVectorEmbedder(dim=8)
        chunks = _chunks(5)

        store = build_vector_store(chunks, embedder, batch_size=2, sleep=recording_sleep)

        for chunk in store.chunks:
            assert chunk.embedding == embedder.vector_for(chunk.text)

    def test_batches_are_contiguous(self, recording_sleep):
        embedder = UnitVectorEmbedder()
        chunks = _chunks(35)

        build_vector_store(chunks, embedder, batch_size=16, sleep=recording_sleep)

        assert [len(call) for call in embedder.calls] == [16, 16, 3]
        assert embedder.calls[1][0] == "text 16"

    def test_non_positive_batch_size_uses_default(self, recording_sleep):
        embedder = UnitVectorEmbedder()
        build_vector_store(_chunks(20), embedder, batch_size=0, sleep=recording_sleep)
        assert [len(call) for call in embedder.calls] == [16, 4]

    def test_pause_between_batches_but_not_after_last(self, recording_sleep):
        build_vector_store(_chunks(5), UnitVectorEmbedder(), batch_size=2, sleep=recording_sleep)
        assert recording_sleep.delays == [1.0, 1.0]

    def test_batch_delay_is_configurable(self, recording_sleep):
        config = BuildConfig(batch_delay_seconds=0.25)
        build_vector_store(_chunks(3), UnitVectorEmbedder(), batch_size=1, config=config, sleep=recording_sleep)
        assert recording_sleep.delays == [0.25, 0.25]

    def test_input_chunks_are_not_mutated(self, recording_sleep):
        chunks = _chunks(3)
        store = build_vector_store(chunks, UnitVectorEmbedder(), sleep=recording_sleep)

        assert all(chunk.embedding is None for chunk in chunks)
        assert all(chunk.embedding is not None for chunk in store.chunks)

    def test_supplied_metadata_is_kept(self, recording_sleep):
        metadata = Metadata.for_run(7, 3, notes=["nightly"])
        store = build_vector_store(_chunks(3), UnitVectorEmbedder(), metadata=metadata, sleep=recording_sleep)
        assert store.metadata is metadata

    def test_metadata_derived_when_omitted(self, three_documents, recording_sleep):
        chunks = chunk_documents(three_documents, chunk_size=1200, chunk_overlap=200)
        store = build_vector_store(chunks, UnitVectorEmbedder(), sleep=recording_sleep)

        assert store.metadata.source_count == 3
        assert store.metadata.chunk_count == 5

    def test_missing_embedder(self):
        with pytest.raises(MissingEmbedderError):
            build_vector_store(_chunks(1), None)

    def test_no_chunks(self):
        with pytest.raises(NoChunksError):
            build_vector_store([], UnitVectorEmbedder())


class TestRetry:
    """Test the per-batch retry schedule."""

    def test_transient_failures_are_retried(self, recording_sleep):
        embedder = FlakyEmbedder(failures=2)

        store = build_vector_store(_chunks(2), embedder, sleep=recording_sleep)

        assert embedder.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert len(store) == 2

    def test_exhaustion_after_five_attempts(self, recording_sleep):
        embedder = FailingEmbedder()

        with pytest.raises(EmbeddingBatchError) as excinfo:
            build_vector_store(_chunks(20), embedder, batch_size=16, sleep=recording_sleep)

        assert embedder.attempts == 5
        assert recording_sleep.delays == [1.0, 2.0, 3.0, 4.0]
        assert recording_sleep.total == pytest.approx(10.0)
        error = excinfo.value
        assert (error.start, error.end, error.attempts) == (0, 16, 5)
        assert "[0:16] after 5 attempts" in str(error)
        assert "connection refused" in str(error)

    def test_failing_later_batch_names_its_range(self, recording_sleep):
        class FailsSecondBatch(UnitVectorEmbedder):
            def embed(self, texts):
                if texts[0] == "text 2":
                    raise ConnectionError("reset by peer")
                return super().embed(texts)

        with pytest.raises(EmbeddingBatchError, match=r"\[2:4\]"):
            build_vector_store(_chunks(4), FailsSecondBatch(), batch_size=2, sleep=recording_sleep)

    def test_mis_sized_response_is_retried_then_fails(self, recording_sleep):
        class ShortEmbedder:
            def embed(self, texts):
                return [[1.0, 0.0]]

        with pytest.raises(EmbeddingBatchError, match="returned 1 vectors for 2 texts"):
            build_vector_store(_chunks(2), ShortEmbedder(), sleep=recording_sleep)
        assert len(recording_sleep.delays) == 4

    def test_cancelled_build_stops_before_requests(self):
        cancel = threading.Event()
        cancel.set()
        embedder = UnitVectorEmbedder()

        with pytest.raises(OperationCancelled):
            build_vector_store(_chunks(3), embedder, cancel=cancel)
        assert embedder.calls == []


class TestSearch:
    """Test exact top-K search."""

    def test_best_match_first(self, small_store):
        results = small_store.search([1.0, 0.0, 0.0], top_k=3)

        assert [r.chunk.id for r in results] == ["doc-chunk-0", "doc-chunk-2", "doc-chunk-1"]
        assert results[0].score == pytest.approx(1.0)
        assert results[2].score == pytest.approx(0.0)

    def test_matches_full_sort(self):
        rng = np.random.default_rng(42)
        chunks = [make_chunk(i, rng.standard_normal(6).tolist()) for i in range(200)]
        store = VectorStore(chunks=chunks)
        query = rng.standard_normal(6).tolist()

        for k in (1, 5, 17, 200, 500):
            results = store.search(query, top_k=k)
            scores = [r.score for r in results]
            expected = sorted(
                (cosine_similarity(query, c.embedding) for c in chunks), reverse=True
            )[:k]

            assert len(results) == min(k, len(chunks))
            assert scores == sorted(scores, reverse=True)
            assert scores == pytest.approx(expected)

    def test_non_positive_top_k_defaults_to_four(self):
        store = VectorStore(chunks=[make_chunk(i, [1.0, float(i)]) for i in range(10)])
        assert len(store.search([1.0, 1.0], top_k=0)) == 4
        assert len(store.search([1.0, 1.0], top_k=-3)) == 4

    def test_empty_inputs_return_nothing(self, small_store):
        assert small_store.search([], top_k=3) == []
        assert VectorStore().search([1.0, 0.0], top_k=3) == []
        assert search(None, [1.0, 0.0]) == []

    def test_mismatched_dimensions_score_zero(self, small_store):
        results = small_store.search([1.0, 0.0], top_k=3)

        assert len(results) == 3
        assert all(r.score == 0.0 for r in results)

    def test_ties_keep_store_order(self):
        chunks = [make_chunk(i, [1.0, 0.0]) for i in range(6)]
        store = VectorStore(chunks=chunks)

        results = store.search([1.0, 0.0], top_k=3)

        assert [r.chunk.index for r in results] == [0, 1, 2]

    def test_end_to_end_scenario(self, three_documents, recording_sleep):
        chunks = chunk_documents(three_documents, chunk_size=1200, chunk_overlap=200)
        assert len(chunks) == 5

        store = build_vector_store(chunks, UnitVectorEmbedder(dim=8), sleep=recording_sleep)
        # alpha and gamma share text, so use the beta chunk which is unique
        target = store.chunks[2]

        results = store.search(target.embedding, top_k=3)

        assert len(results) == 3
        assert results[0].chunk.id == target.id
        assert results[0].score == pytest.approx(1.0)


class TestPersistence:
    """Test save/load and the distinct failure modes."""

    def test_round_trip(self, tmp_path, recording_sleep, three_documents):
        chunks = chunk_documents(three_documents, chunk_size=1200, chunk_overlap=200)
        store = build_vector_store(
            chunks,
            FixedEmbedder([0.1, 0.2, 0.3]),
            metadata=Metadata.for_run(3, 5, notes=["first run"]),
            sleep=recording_sleep,
        )
        path = tmp_path / "nested" / "index.json"

        store.save(str(path))
        loaded = VectorStore.load(str(path))

        assert loaded.metadata == store.metadata
        assert loaded.chunks == store.chunks
        assert loaded == store

    def test_field_named_format(self, tmp_path, small_store):
        path = tmp_path / "index.json"
        small_store.save(str(path))

        data = json.loads(path.read_text(encoding="utf-8"))

        assert list(data) == ["metadata", "chunks"]
        assert list(data["metadata"]) == ["generatedAt", "sourceCount", "chunkCount", "notes"]
        assert list(data["chunks"][0]) == ["id", "documentId", "source", "uri", "text", "index", "embedding"]
        assert data["metadata"]["generatedAt"].endswith("Z")

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_saved_index_is_world_readable(self, tmp_path, small_store):
        path = tmp_path / "index.json"
        small_store.save(str(path))
        assert path.stat().st_mode & 0o777 == 0o644

    def test_no_temporary_files_left(self, tmp_path, small_store):
        small_store.save(str(tmp_path / "index.json"))
        small_store.save(str(tmp_path / "index.json"))
        assert os.listdir(tmp_path) == ["index.json"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(StoreNotFoundError) as excinfo:
            VectorStore.load(str(tmp_path / "absent.json"))
        assert excinfo.value.path.endswith("absent.json")

    @pytest.mark.parametrize("content", [
        "{not json",
        "[]",
        '{"chunks": []}',
        '{"metadata": {"generatedAt": "yesterday", "sourceCount": 1, "chunkCount": 0}}',
        '{"metadata": {"generatedAt": "2024-01-01T00:00:00Z", "sourceCount": 1, "chunkCount": 1}, "chunks": [{"id": "x"}]}',
    ])
    def test_malformed_content(self, tmp_path, content):
        path = tmp_path / "index.json"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(StoreFormatError):
            VectorStore.load(str(path))

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs a non-root POSIX user")
    def test_unreadable_file(self, tmp_path, small_store):
        path = tmp_path / "index.json"
        small_store.save(str(path))
        path.chmod(0)
        try:
            with pytest.raises(StorePermissionError):
                VectorStore.load(str(path))
        finally:
            path.chmod(0o644)

    def test_parent_that_is_a_file(self, tmp_path, small_store):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")

        with pytest.raises(PersistenceError):
            small_store.save(str(blocker / "index.json"))

    def test_reads_nanosecond_timestamps(self):
        parsed = parse_timestamp("2024-05-01T12:30:00.123456789Z")
        assert parsed == datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value,micros", [
        ("2024-05-01T12:30:00.1Z", 100000),
        ("2024-05-01T12:30:00.12345Z", 123450),
        ("2024-05-01T12:30:00.000001Z", 1),
        ("2024-05-01T12:30:00Z", 0),
        ("2024-05-01T12:30:00.5+00:00", 500000),
    ])
    def test_reads_short_fractions(self, value, micros):
        assert parse_timestamp(value) == datetime(2024, 5, 1, 12, 30, 0, micros, tzinfo=timezone.utc)

    def test_null_embedding_survives(self, tmp_path):
        store = VectorStore(metadata=Metadata.for_run(1, 1), chunks=[make_chunk(0)])
        path = tmp_path / "index.json"
        store.save(str(path))
        assert VectorStore.load(str(path)).chunks[0].embedding is None


class TestAppend:
    """Test in-place growth of a loaded store."""

    def test_append_bumps_metadata(self, small_store):
        before = small_store.metadata
        new_chunks = [make_chunk(0, [0.0, 0.0, 1.0], document_id="extra")]

        small_store.append(new_chunks)

        assert len(small_store) == 4
        assert small_store.chunks[-1].id == "extra-chunk-0"
        assert small_store.metadata.source_count == before.source_count + 1
        assert small_store.metadata.chunk_count == before.chunk_count + 1
        assert small_store.metadata.generated_at >= before.generated_at

    def test_appended_chunks_are_searchable(self, small_store):
        small_store.append([make_chunk(0, [0.0, 0.0, 1.0], document_id="extra")])
        assert small_store.search([0.0, 0.0, 1.0], top_k=1)[0].chunk.id == "extra-chunk-0"
