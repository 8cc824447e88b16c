import io
import sqlite3
from unittest.mock import patch

import pytest

from pdfstation.errors import InvalidJobRequestError, JobNotFoundError, JobNotReadyError
from pdfstation.jobs.models import JobStatus, Operation


def _upload(path, name=None):
    with open(path, "rb") as handle:
        return (name or path.rsplit("/", 1)[-1], io.BytesIO(handle.read()))


class TestSubmit:
    def test_submit_creates_job(self, station, make_text_pdf):
        job = station.submissions.submit(Operation.COMPRESS, [_upload(make_text_pdf())], {"quality": 0.4})

        assert job.status == JobStatus.CREATED
        assert job.params.quality == 0.4
        assert job.max_retries == station.config.processing.max_retries
        assert job.input_paths[0].startswith(station.config.storage.upload_dir)
        assert station.store.get_job(job.id) == job

    def test_events_published_after_commit(self, station, make_text_pdf):
        job = station.submissions.submit("MERGE", [_upload(make_text_pdf("a.pdf")), _upload(make_text_pdf("b.pdf"))])
        topics = station.config.exchange

        submitted = station.exchange.messages(topics.submitted_topic)
        assert [m.key for m in submitted] == [job.id]
        assert submitted[0].payload["operation"] == "MERGE"
        assert submitted[0].payload["primary_input_path"] == job.input_paths[0]

        status = station.exchange.messages(topics.status_topic)
        assert [m.payload["status"] for m in status] == ["CREATED"]
        assert station.store.pending_outbox() == []

    def test_relay_failure_keeps_events_in_outbox(self, station, make_text_pdf):
        with patch.object(station.exchange, "publish", side_effect=sqlite3.OperationalError("disk I/O error")):
            job = station.submissions.submit(Operation.PDF_TO_WORD, [_upload(make_text_pdf())])

        assert station.store.get_job(job.id).status == JobStatus.CREATED
        assert len(station.store.pending_outbox()) == 2
        assert station.exchange.messages(station.config.exchange.submitted_topic) == []

        assert station.relay.flush() == 2
        assert len(station.exchange.messages(station.config.exchange.submitted_topic)) == 1

    def test_submit_paths(self, station, make_text_pdf):
        source = make_text_pdf()
        with patch.object(station.staging, "stage_paths", wraps=station.staging.stage_paths) as stage_paths:
            job = station.submissions.submit_paths(
                Operation.SPLIT, [source], {"mode": "INTERVAL", "interval": 2}
            )

        stage_paths.assert_called_once_with(job.id, [source])
        assert job.params.interval == 2
        with open(source, "rb") as original, open(job.input_paths[0], "rb") as staged:
            assert staged.read() == original.read()

    def test_submit_paths_missing_file(self, station, tmp_path):
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit_paths(Operation.COMPRESS, [str(tmp_path / "nope.pdf")])


class TestRejectedSubmissions:
    def _assert_nothing_created(self, station):
        assert station.store.list_jobs() == []
        upload_root = station.staging.upload_root
        assert not upload_root.exists() or list(upload_root.iterdir()) == []

    def test_unknown_operation(self, station, make_text_pdf):
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit("ROTATE", [_upload(make_text_pdf())])
        self._assert_nothing_created(station)

    def test_merge_needs_two_files(self, station, make_text_pdf):
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit(Operation.MERGE, [_upload(make_text_pdf())])
        self._assert_nothing_created(station)

    def test_single_file_operations(self, station, make_text_pdf):
        files = [_upload(make_text_pdf("a.pdf")), _upload(make_text_pdf("b.pdf"))]
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit(Operation.COMPRESS, files)
        self._assert_nothing_created(station)

    def test_invalid_params(self, station, make_text_pdf):
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit(Operation.COMPRESS, [_upload(make_text_pdf())], {"quality": 2})
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit(Operation.SPLIT, [_upload(make_text_pdf())], {"mode": "PAGES"})
        self._assert_nothing_created(station)

    def test_empty_upload(self, station):
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit(Operation.COMPRESS, [("empty.pdf", io.BytesIO(b""))])
        self._assert_nothing_created(station)

    def test_empty_local_file(self, station, tmp_path):
        empty = tmp_path / "empty.pdf"
        empty.write_bytes(b"")
        with pytest.raises(InvalidJobRequestError):
            station.submissions.submit_paths(Operation.COMPRESS, [str(empty)])
        self._assert_nothing_created(station)


class TestLookup:
    def test_get_unknown_job(self, station):
        with pytest.raises(JobNotFoundError):
            station.submissions.get_job("missing")

    def test_output_not_ready(self, station, make_text_pdf):
        job = station.submissions.submit(Operation.PDF_TO_WORD, [_upload(make_text_pdf())])
        with pytest.raises(JobNotReadyError) as exc_info:
            station.submissions.resolve_output(job.id)
        assert exc_info.value.status == "CREATED"

    def test_list_jobs(self, station, make_text_pdf):
        job = station.submissions.submit(Operation.PDF_TO_WORD, [_upload(make_text_pdf())])
        assert [j.id for j in station.submissions.list_jobs()] == [job.id]
        assert station.submissions.list_jobs(JobStatus.COMPLETED) == []


class TestRelay:
    def test_republishing_after_lost_acknowledgement_is_deduplicated(self, station, make_text_pdf):
        # The exchange accepted the events but the outbox rows were never marked
        lost_ack = sqlite3.OperationalError("disk I/O error")
        with patch.object(station.store, "mark_outbox_published", side_effect=lost_ack):
            job = station.submissions.submit(Operation.PDF_TO_WORD, [_upload(make_text_pdf())])
        assert len(station.store.pending_outbox()) == 2

        station.relay.flush()

        submitted = station.exchange.messages(station.config.exchange.submitted_topic)
        assert [m.key for m in submitted] == [job.id]
        assert len(station.exchange.messages(station.config.exchange.status_topic)) == 1
        assert station.store.pending_outbox() == []
