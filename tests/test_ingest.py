"""End-to-end tests for the ingestion pipeline."""

from unittest.mock import patch

import openai
import pytest

from conftest import DIM, MODEL, RejectingClient, hash_service, make_pdf, openai_error
from stagevec.core.embed import EmbeddingService, HashEmbeddingClient
from stagevec.core.errors import ConfigurationError, ModelMismatchError, StoreUnavailableError
from stagevec.core.ingest import IngestionPipeline
from stagevec.core.reader import UNABLE_TO_EXTRACT, PdfReader


class PoisonClient(HashEmbeddingClient):
    """Hash embeddings that fail for any text containing ``poison``."""

    def embed(self, texts):
        if any("poison" in text for text in texts):
            raise ConnectionError("embedding endpoint rejected the batch")
        return super().embed(texts)


def test_long_document_becomes_three_chunks(pipeline, stage_dir, store):
    (stage_dir / "long.txt").write_text("abcdefghij" * 900)

    report = pipeline.run()

    assert [r.status for r in report.results] == ["ingested"]
    assert report.total_chunks == 3
    rows = store.rows()
    assert [len(text) for _, _, text, _ in rows] == [4000, 4000, 1800]
    assert all(len(vector) == DIM for _, _, _, vector in rows)
    assert all(size == 9000 for _, size, _, _ in rows)
    assert [(c.path, c.chunk_count) for c in store.count_chunks_per_document()] == [("long.txt", 3)]


def test_consecutive_chunks_overlap(pipeline, stage_dir, store):
    words = " ".join(f"word{i}" for i in range(2000))
    (stage_dir / "words.txt").write_text(words)

    pipeline.run()

    texts = [text for _, _, text, _ in store.rows()]
    assert len(texts) > 1
    assert all(len(text) <= 4000 for text in texts)
    for previous, current in zip(texts, texts[1:]):
        assert previous[-400:] == current[:400]


def test_rerun_skips_unchanged_and_force_reproduces(pipeline, stage_dir, store):
    (stage_dir / "a.txt").write_text("alpha " * 1000)
    (stage_dir / "b.md").write_text("# bravo\n\nsome notes")
    pipeline.run()
    before = store.rows()

    rerun = pipeline.run()
    assert [r.status for r in rerun.results] == ["skipped", "skipped"]

    forced = pipeline.run(force=True)
    assert [r.status for r in forced.results] == ["ingested", "ingested"]
    assert store.rows() == before


def test_changed_document_is_replaced(pipeline, stage_dir, store):
    doc = stage_dir / "a.txt"
    doc.write_text("abcdefghij" * 900)
    pipeline.run()

    doc.write_text("short now")
    report = pipeline.run()

    assert report.ingested[0].chunks == 1
    assert [text for _, _, text, _ in store.rows()] == ["short now"]


def test_empty_document_is_recorded_without_chunks(pipeline, stage_dir, store):
    (stage_dir / "empty.txt").write_text("")

    report = pipeline.run()

    assert report.ingested[0].chunks == 0
    assert [(c.path, c.chunk_count) for c in store.count_chunks_per_document()] == [("empty.txt", 0)]


def test_pdf_without_text_layer_stores_no_chunks(pipeline, stage_dir, store):
    make_pdf(stage_dir / "scan.pdf", ["", ""])

    report = pipeline.run()

    result = report.results[0]
    assert (result.status, result.pages, result.chunks) == ("ingested", 2, 0)
    assert store.rows() == []
    assert [(c.path, c.chunk_count) for c in store.count_chunks_per_document()] == [("scan.pdf", 0)]


def test_failed_page_is_replaced_by_sentinel(pipeline, stage_dir, store):
    make_pdf(stage_dir / "report.pdf", ["page one text", "page two text"])

    with patch.object(PdfReader, "extract_page", side_effect=[RuntimeError("bad page"), "page two text"]):
        report = pipeline.run()

    result = report.results[0]
    assert (result.status, result.pages, result.failed_pages) == ("ingested", 2, 1)
    assert report.failed_pages == 1
    assert [text for _, _, text, _ in store.rows()] == [f"{UNABLE_TO_EXTRACT} page two text"]


def test_unreadable_document_does_not_stop_the_run(pipeline, stage_dir, store):
    (stage_dir / "broken.pdf").write_bytes(b"this is not a pdf")
    (stage_dir / "good.txt").write_text("good content")

    report = pipeline.run()

    statuses = {r.path: r.status for r in report.results}
    assert statuses == {"broken.pdf": "failed", "good.txt": "ingested"}
    assert "broken.pdf" in report.failed[0].error
    assert [c.path for c in store.count_chunks_per_document()] == ["good.txt"]


def test_embedding_failure_is_isolated(config, stage, store, stage_dir):
    embedder = EmbeddingService(PoisonClient(MODEL, DIM), dimensions=DIM, max_attempts=1)
    pipeline = IngestionPipeline(config, stage, store, embedder)
    (stage_dir / "a.txt").write_text("fine text")
    (stage_dir / "b.txt").write_text("poison text")
    (stage_dir / "c.txt").write_text("more fine text")

    report = pipeline.run()

    assert [r.status for r in report.results] == ["ingested", "failed", "ingested"]
    assert "after 1 attempts" in report.failed[0].error
    assert [c.path for c in store.count_chunks_per_document()] == ["a.txt", "c.txt"]


def test_rejected_credentials_abort_the_run(config, stage, store, stage_dir):
    client = RejectingClient(openai_error(openai.AuthenticationError, 401))
    embedder = EmbeddingService(client, dimensions=DIM, max_attempts=3, backoff_min=0, backoff_max=0)
    pipeline = IngestionPipeline(config, stage, store, embedder)
    for name in ("a.txt", "b.txt", "c.txt"):
        (stage_dir / name).write_text(f"contents of {name}")

    with pytest.raises(ConfigurationError):
        pipeline.run()

    assert client.calls == 1
    assert store.count_chunks_per_document() == []


def test_parallel_run_aborts_on_rejected_credentials(config, stage, store, stage_dir):
    client = RejectingClient(openai_error(openai.AuthenticationError, 401))
    embedder = EmbeddingService(client, dimensions=DIM, max_attempts=3, backoff_min=0, backoff_max=0)
    pipeline = IngestionPipeline(config.merged({"max_workers": 2}), stage, store, embedder)
    for name in ("a.txt", "b.txt", "c.txt"):
        (stage_dir / name).write_text(f"contents of {name}")

    with pytest.raises(ConfigurationError):
        pipeline.run()


def test_run_starts_with_an_empty_embedding_cache(pipeline, stage_dir, embedder):
    embedder.embed_texts(["left over from an earlier run"])
    (stage_dir / "a.txt").write_text("alpha")

    pipeline.run()

    assert len(embedder._cache) == 1


def test_store_outage_aborts_the_run(pipeline, stage_dir, store):
    (stage_dir / "a.txt").write_text("alpha")
    (stage_dir / "b.txt").write_text("bravo")

    with patch.object(store, "replace_document", side_effect=StoreUnavailableError("database went away")):
        with pytest.raises(StoreUnavailableError):
            pipeline.run()


def test_model_switch_without_reembed_aborts(config, stage, store, stage_dir, pipeline):
    (stage_dir / "a.txt").write_text("alpha")
    pipeline.run()

    other = IngestionPipeline(config, stage, store, hash_service("hash-other"))
    with pytest.raises(ModelMismatchError):
        other.run()


def test_parallel_run_matches_sequential(config, tmp_path, stage, embedder, stage_dir):
    from stagevec.core.store import ChunkStore

    for i in range(6):
        (stage_dir / f"doc{i}.txt").write_text(f"document {i} " * (300 * (i + 1)))

    sequential_store = ChunkStore(f"sqlite:///{tmp_path / 'seq.db'}")
    parallel_store = ChunkStore(f"sqlite:///{tmp_path / 'par.db'}")
    sequential = IngestionPipeline(config, stage, sequential_store, embedder).run()
    parallel = IngestionPipeline(config.merged({"max_workers": 3}), stage, parallel_store, embedder).run()

    assert [(r.path, r.status, r.chunks) for r in parallel.results] == \
        [(r.path, r.status, r.chunks) for r in sequential.results]
    assert parallel_store.rows() == sequential_store.rows()
    sequential_store.close()
    parallel_store.close()


def test_distinct_chunks_get_distinct_vectors(pipeline, stage_dir, store):
    (stage_dir / "a.txt").write_text(" ".join(f"token{i}" for i in range(3000)))

    pipeline.run()

    vectors = [tuple(vector) for _, _, _, vector in store.rows()]
    assert len(vectors) > 1
    assert len(set(vectors)) == len(vectors)


def test_search_after_ingest(pipeline, stage_dir, embedder):
    (stage_dir / "a.txt").write_text("the quick brown fox")
    (stage_dir / "b.txt").write_text("a slow green turtle")
    pipeline.run()

    hits = pipeline.store.search(embedder.embed_query("a slow green turtle"), k=2)

    assert hits[0].path == "b.txt"


def test_reembed_switches_model(pipeline, stage_dir, store):
    (stage_dir / "a.txt").write_text("abcdefghij" * 900)
    pipeline.run()

    new_embedder = hash_service("hash-new")
    replaced = pipeline.reembed(new_embedder)

    assert replaced == 3
    assert store.pinned_model() == ("hash-new", DIM)
    assert pipeline.embedder is new_embedder
    assert [r.status for r in pipeline.run().results] == ["skipped"]
    hits = store.search(new_embedder.embed_query("abcdefghij" * 180), k=1)
    assert len(hits) == 1


def test_reembed_empty_store(pipeline):
    assert pipeline.reembed(hash_service("hash-new")) == 0
