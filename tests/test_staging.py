import io
import logging

import pytest

from pdfstation.hashing import compute_output_hash, content_digest, partition_for_key
from pdfstation.jobs.models import Operation, ProtectParams
from pdfstation.logging_setup import job_logger
from pdfstation.staging import FileStaging, sanitize_filename


@pytest.fixture
def staging(tmp_path):
    return FileStaging(str(tmp_path / "uploads"), str(tmp_path / "outputs"))


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/My Report (final).PDF", "My-Report-final.pdf"),
            ("C:\\Users\\bob\\scan 01.pdf", "scan-01.pdf"),
            ("notes.txt", "notes.pdf"),
            (None, "document.pdf"),
            ("", "document.pdf"),
            ("%%%.pdf", "document.pdf"),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_filename(raw) == expected


class TestFileStaging:
    def test_stage_inputs_in_order(self, staging):
        staged = staging.stage_inputs(
            "job1", [("b.pdf", io.BytesIO(b"second")), ("a.pdf", io.BytesIO(b"first"))]
        )

        assert [p.rsplit("/", 1)[-1] for p in staged] == ["b.pdf", "a.pdf"]
        assert open(staged[0], "rb").read() == b"second"
        assert str(staging.input_dir("job1")) in staged[0]

    def test_duplicate_names_get_suffix(self, staging):
        staged = staging.stage_inputs(
            "job1",
            [
                ("scan.pdf", io.BytesIO(b"1")),
                ("scan.pdf", io.BytesIO(b"2")),
                ("scan.pdf", io.BytesIO(b"3")),
            ],
        )
        assert [p.rsplit("/", 1)[-1] for p in staged] == ["scan.pdf", "scan-2.pdf", "scan-3.pdf"]

    def test_discard_inputs(self, staging):
        staging.stage_inputs("job1", [("a.pdf", io.BytesIO(b"x"))])
        staging.discard_inputs("job1")
        assert not staging.input_dir("job1").exists()

    def test_stage_paths(self, staging, tmp_path):
        source = tmp_path / "local file.pdf"
        source.write_bytes(b"%PDF")
        staged = staging.stage_paths("job1", [str(source)])
        assert staged[0].endswith("local-file.pdf")

    @pytest.mark.parametrize(
        "operation, directory, suffix",
        [
            (Operation.COMPRESS, "compressed", "_compressed.pdf"),
            (Operation.MERGE, "merged", "_merged.pdf"),
            (Operation.SPLIT, "split", "_split.zip"),
            (Operation.PROTECT, "protected", "_protected.pdf"),
            (Operation.PDF_TO_WORD, "word", "_converted.docx"),
        ],
    )
    def test_output_layout(self, staging, operation, directory, suffix):
        path = staging.output_path("job1", operation)
        assert path.parent.name == directory
        assert path.name == f"job1{suffix}"
        assert path.parent.is_dir()

    def test_unprotect_output_suffix(self, staging):
        params = ProtectParams(action="REMOVE", password="pw")
        assert staging.output_path("job1", Operation.PROTECT, params).name == "job1_unprotected.pdf"

    def test_work_dir_is_fresh(self, staging):
        work = staging.work_dir("job1")
        (work / "leftover.pdf").write_bytes(b"x")

        again = staging.work_dir("job1")
        assert list(again.iterdir()) == []

        staging.cleanup_work("job1")
        assert not again.exists()


class TestHashing:
    def test_output_hash(self, tmp_path):
        path = tmp_path / "f.bin"
        path.write_bytes(b"abc")
        assert compute_output_hash(str(path)) == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_output_hash_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            compute_output_hash(str(tmp_path / "missing"))

    def test_content_digest_chunk_boundaries_matter(self):
        assert content_digest([b"ab", b"c"]) != content_digest([b"a", b"bc"])
        assert content_digest([b"ab", b"c"]) == content_digest([b"ab", b"c"])

    def test_partition_for_key_in_range_and_stable(self):
        partitions = {partition_for_key(f"job-{n}", 8) for n in range(200)}
        assert partitions <= set(range(8))
        assert len(partitions) > 1
        assert partition_for_key("job-1", 8) == partition_for_key("job-1", 8)


def test_job_logger_tags_records(caplog):
    log = job_logger("abc123", "MERGE")
    with caplog.at_level(logging.INFO, logger="pdfstation.jobs"):
        log.info("Merged %d files", 2)

    record = caplog.records[-1]
    assert record.job_id == "abc123"
    assert record.operation == "MERGE"
    assert record.getMessage() == "[job=abc123 op=MERGE] Merged 2 files"
