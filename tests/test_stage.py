"""Tests for the file stage."""

import pytest

from stagevec.core.errors import DocumentReadError, ScopedUrlError
from stagevec.core.stage import FileStage, calculate_sha256


@pytest.fixture
def populated(stage_dir):
    (stage_dir / "b.txt").write_text("bravo")
    (stage_dir / "a.pdf").write_bytes(b"%PDF-1.4 fake")
    (stage_dir / "nested").mkdir()
    (stage_dir / "nested" / "c.md").write_text("charlie")
    (stage_dir / "image.png").write_bytes(b"\x89PNG")
    (stage_dir / ".hidden.txt").write_text("secret")
    return stage_dir


def test_list_files_filters_and_sorts(populated):
    stage = FileStage(populated, name="docs", signing_key="k")

    records = stage.list_files()

    assert [r.path for r in records] == ["a.pdf", "b.txt", "nested/c.md"]
    b = records[1]
    assert b.size == 5
    assert b.sha256 == calculate_sha256(populated / "b.txt")
    assert b.file_url == "stage://docs/b.txt"


def test_list_files_with_pattern(populated):
    stage = FileStage(populated)
    assert [r.path for r in stage.list_files("*.txt")] == ["b.txt"]


def test_missing_stage_lists_nothing(tmp_path):
    assert FileStage(tmp_path / "missing").list_files() == []


def test_read_bytes_and_path_escape(populated):
    stage = FileStage(populated)

    assert stage.read_bytes("b.txt") == b"bravo"
    with pytest.raises(DocumentReadError):
        stage.read_bytes("../outside.txt")
    with pytest.raises(DocumentReadError):
        stage.read_bytes("nope.txt")


def test_scoped_url_round_trip(populated):
    stage = FileStage(populated, name="docs", signing_key="k", url_ttl=60)

    url = stage.build_scoped_url("nested/c.md", now=1000)

    assert url.startswith("stage://docs/nested/c.md?expires=1060&signature=")
    assert stage.verify_scoped_url(url, now=1059) == "nested/c.md"


def test_scoped_url_expires(populated):
    stage = FileStage(populated, signing_key="k")
    url = stage.build_scoped_url("b.txt", expires_in=10, now=1000)

    with pytest.raises(ScopedUrlError, match="expired"):
        stage.verify_scoped_url(url, now=1011)


def test_scoped_url_rejects_tampering_and_other_keys(populated):
    stage = FileStage(populated, name="docs", signing_key="k")
    url = stage.build_scoped_url("b.txt", now=1000)

    with pytest.raises(ScopedUrlError):
        stage.verify_scoped_url(url.replace("b.txt", "a.pdf"), now=1000)
    with pytest.raises(ScopedUrlError):
        FileStage(populated, name="docs", signing_key="other").verify_scoped_url(url, now=1000)
    with pytest.raises(ScopedUrlError):
        FileStage(populated, name="archive", signing_key="k").verify_scoped_url(url, now=1000)
    with pytest.raises(ScopedUrlError):
        stage.verify_scoped_url("stage://docs/b.txt", now=1000)
