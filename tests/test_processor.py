"""Tests for the job processor state machine.

Tests cover:
- Successful processing of every operation
- Transient failures retried through redelivery until the budget is spent
- Permanent failures sent straight to FAILED and the dead-letter channel
- Redelivery of finished jobs and events for unknown jobs
"""

import io
import zipfile
from unittest.mock import patch

import pytest
from pypdf import PdfReader

from pdfstation.adapters import merge_pdfs
from pdfstation.jobs.models import JobStatus, JobSubmitted, Operation
from pdfstation.jobs.processor import Outcome
from pdfstation.jobs.worker import drain


def _upload(path):
    with open(path, "rb") as handle:
        return (path.rsplit("/", 1)[-1], io.BytesIO(handle.read()))


def _flaky(real, failures):
    """Wrap `real` so its first `failures` calls raise a transient error."""
    calls = {"n": 0}

    def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise OSError(f"temporary failure {calls['n']}")
        return real(*args, **kwargs)

    return wrapper


def _fail_once(exchange, matches):
    """Make the first publish that `matches(topic, payload)` raise; later ones go through."""
    real = exchange.publish
    state = {"failed": False}

    def publish(topic, key, payload, dedup_key=None):
        if not state["failed"] and matches(topic, payload):
            state["failed"] = True
            raise OSError("exchange unavailable")
        return real(topic, key, payload, dedup_key=dedup_key)

    return publish


def _status_history(station, job_id):
    messages = station.exchange.messages(station.config.exchange.status_topic)
    return [m.payload["status"] for m in messages if m.key == job_id]


def _dead_letters(station):
    return station.exchange.messages(station.config.exchange.dead_letter_topic)


@pytest.fixture
def merge_job(station, make_text_pdf):
    files = [_upload(make_text_pdf("a.pdf", pages=("A",))), _upload(make_text_pdf("b.pdf", pages=("B",)))]
    return station.submissions.submit(Operation.MERGE, files)


class TestSuccess:
    def test_merge_completes(self, station, merge_job):
        results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.SUCCESS]
        job = station.store.get_job(merge_job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 0
        assert job.output_hash
        assert [p.extract_text().strip() for p in PdfReader(job.output_path).pages] == ["A", "B"]
        assert _status_history(station, job.id) == ["CREATED", "PROCESSING", "COMPLETED"]

    def test_merge_three_files_keeps_input_order(self, station, make_text_pdf):
        files = [
            _upload(make_text_pdf("a.pdf", pages=("a0",))),
            _upload(make_text_pdf("b.pdf", pages=("b0", "b1"))),
            _upload(make_text_pdf("c.pdf", pages=("c0", "c1", "c2"))),
        ]
        job = station.submissions.submit(Operation.MERGE, files)

        drain(station, show_progress=False)

        merged = PdfReader(station.store.get_job(job.id).output_path)
        assert len(merged.pages) == 6
        assert [p.extract_text().strip() for p in merged.pages] == ["a0", "b0", "b1", "c0", "c1", "c2"]

    def test_compress_uses_default_quality(self, station, make_text_pdf):
        job = station.submissions.submit(Operation.COMPRESS, [_upload(make_text_pdf())])

        with patch.object(station.engine, "compress", wraps=station.engine.compress) as compress:
            drain(station, show_progress=False)

        assert compress.call_args.args[2] == station.config.processing.default_quality
        done = station.store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.output_path.endswith(f"{job.id}_compressed.pdf")

    def test_split_output_is_zip(self, station, make_text_pdf):
        source = make_text_pdf(pages=("1", "2", "3"))
        job = station.submissions.submit(Operation.SPLIT, [_upload(source)], {"mode": "ALL"})

        drain(station, show_progress=False)

        done = station.store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert len(zipfile.ZipFile(done.output_path).namelist()) == 3
        assert not (station.staging.output_root / "work" / job.id).exists()

    def test_protect_and_unprotect(self, station, make_text_pdf):
        protect = station.submissions.submit(
            Operation.PROTECT, [_upload(make_text_pdf())], {"user_password": "pw"}
        )
        drain(station, show_progress=False)
        locked = station.store.get_job(protect.id)
        assert locked.status == JobStatus.COMPLETED
        assert PdfReader(locked.output_path).is_encrypted

        unprotect = station.submissions.submit(
            Operation.PROTECT, [_upload(locked.output_path)], {"action": "REMOVE", "password": "pw"}
        )
        drain(station, show_progress=False)
        opened = station.store.get_job(unprotect.id)
        assert opened.status == JobStatus.COMPLETED
        assert opened.output_path.endswith("_unprotected.pdf")
        assert not PdfReader(opened.output_path).is_encrypted

    def test_pdf_to_word(self, station, make_text_pdf):
        job = station.submissions.submit(Operation.PDF_TO_WORD, [_upload(make_text_pdf())])
        drain(station, show_progress=False)
        done = station.store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.output_path.endswith(".docx")


class TestRetries:
    @pytest.mark.parametrize("failures", [1, 2])
    def test_transient_failures_then_success(self, station, merge_job, failures):
        with patch("pdfstation.jobs.processor.merge_pdfs", _flaky(merge_pdfs, failures)):
            results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.RETRY] * failures + [Outcome.SUCCESS]
        job = station.store.get_job(merge_job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == failures
        assert _dead_letters(station) == []

    def test_budget_exhausted_goes_to_dead_letter(self, station, merge_job):
        with patch("pdfstation.jobs.processor.merge_pdfs", side_effect=OSError("disk full")):
            results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.RETRY, Outcome.RETRY, Outcome.TERMINAL]
        job = station.store.get_job(merge_job.id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == job.max_retries
        assert "disk full" in job.error_message

        dead = _dead_letters(station)
        assert [m.key for m in dead] == [job.id]
        assert dead[0].payload["job_id"] == job.id
        assert _status_history(station, job.id) == [
            "CREATED", "PROCESSING", "PROCESSING", "PROCESSING", "FAILED",
        ]

    def test_permanent_failure_skips_retries(self, station, corrupt_pdf):
        job = station.submissions.submit(Operation.COMPRESS, [_upload(corrupt_pdf)])

        results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.TERMINAL]
        failed = station.store.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == failed.max_retries
        assert failed.error_message.startswith("CompressionError")
        assert len(_dead_letters(station)) == 1

    def test_wrong_password_is_permanent(self, station, make_encrypted_pdf):
        job = station.submissions.submit(
            Operation.PROTECT,
            [_upload(make_encrypted_pdf(password="right"))],
            {"action": "REMOVE", "password": "wrong"},
        )
        results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.TERMINAL]
        assert station.store.get_job(job.id).error_message.startswith("WrongPasswordError")

    def test_audit_trail_is_monotonic(self, station, merge_job):
        with patch("pdfstation.jobs.processor.merge_pdfs", _flaky(merge_pdfs, 1)):
            drain(station, show_progress=False)

        transitions = station.store.get_transitions(merge_job.id)
        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "CREATED"),
            ("CREATED", "PROCESSING"),
            ("PROCESSING", "PROCESSING"),
            ("PROCESSING", "PROCESSING"),
            ("PROCESSING", "COMPLETED"),
        ]
        assert "temporary failure 1" in transitions[2].error_snippet


class TestIdempotency:
    def test_redelivery_of_completed_job(self, station, merge_job):
        drain(station, show_progress=False)
        event = JobSubmitted(job_id=merge_job.id, operation=Operation.MERGE)

        result = station.processor.handle(event)

        assert result.outcome == Outcome.ALREADY_HANDLED
        assert result.output_path == station.store.get_job(merge_job.id).output_path
        assert len(station.store.get_transitions(merge_job.id)) == 3

    def test_duplicate_message_in_channel(self, station, merge_job):
        drain(station, show_progress=False)
        topic = station.config.exchange.submitted_topic
        station.exchange.publish(topic, merge_job.id, station.exchange.messages(topic)[0].payload)

        results = drain(station, show_progress=False)
        assert [r.outcome for r in results] == [Outcome.ALREADY_HANDLED]

    def test_unknown_job_discarded(self, station):
        result = station.processor.handle(JobSubmitted(job_id="ghost", operation=Operation.COMPRESS))
        assert result.outcome == Outcome.DISCARDED

    def test_consume_raises_on_retry(self, station, merge_job):
        event = JobSubmitted(job_id=merge_job.id, operation=Operation.MERGE)
        with patch("pdfstation.jobs.processor.merge_pdfs", side_effect=OSError("flaky")):
            with pytest.raises(OSError):
                station.processor.consume(event)

        job = station.store.get_job(merge_job.id)
        assert job.status == JobStatus.PROCESSING
        assert job.retry_count == 1


class TestEventDurability:
    def test_dead_letter_survives_failed_publish(self, station, corrupt_pdf):
        job = station.submissions.submit(Operation.COMPRESS, [_upload(corrupt_pdf)])
        dlq = station.config.exchange.dead_letter_topic

        flaky_publish = _fail_once(station.exchange, lambda topic, _: topic == dlq)
        with patch.object(station.exchange, "publish", flaky_publish):
            results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.TERMINAL]
        assert station.store.get_job(job.id).status == JobStatus.FAILED
        assert [m.key for m in _dead_letters(station)] == [job.id]
        assert _status_history(station, job.id) == ["CREATED", "PROCESSING", "FAILED"]
        assert station.store.pending_outbox() == []

    def test_completed_status_survives_failed_publish(self, station, merge_job):
        def completed(topic, payload):
            return payload.get("status") == "COMPLETED"

        with patch.object(station.exchange, "publish", _fail_once(station.exchange, completed)):
            results = drain(station, show_progress=False)

        assert [r.outcome for r in results] == [Outcome.SUCCESS]
        assert _status_history(station, merge_job.id) == ["CREATED", "PROCESSING", "COMPLETED"]

    def test_events_left_in_outbox_are_relayed_on_redelivery(self, station, merge_job):
        with patch.object(station.relay, "flush", side_effect=OSError("exchange unavailable")):
            result = station.processor.handle(JobSubmitted(job_id=merge_job.id, operation=Operation.MERGE))
        assert result.outcome == Outcome.SUCCESS
        assert _status_history(station, merge_job.id) == ["CREATED"]

        again = station.processor.handle(JobSubmitted(job_id=merge_job.id, operation=Operation.MERGE))

        assert again.outcome == Outcome.ALREADY_HANDLED
        assert _status_history(station, merge_job.id) == ["CREATED", "PROCESSING", "COMPLETED"]
