import time
from datetime import timedelta

import pytest

from errors import ExtractionError, InvalidState, JobNotFound, SessionNotFound, SessionNotReady
from JobEngine import (
    ExtractionChannel,
    ExtractionEvent,
    Job,
    JobError,
    JobStage,
    JobStatus,
    JobStore,
)


class RecordingJobStore(JobStore):
    """Records the progress value after every accepted write."""

    def __init__(self):
        super().__init__()
        self.history = []

    def update(self, job_id, **fields):
        accepted = super().update(job_id, **fields)
        if accepted:
            self.history.append(self.snapshot(job_id).progress)
        return accepted


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached")


class TestSubmit:
    def test_three_chunk_upload_completes_with_extracted_text(
        self, session_manager, job_engine, wait_for_job
    ) -> None:
        session = session_manager.create_session("r.jpg", 3000, 1000)
        assert session.expected_chunk_count == 3

        receipts = [
            session_manager.ingest_chunk(session.id, i, 3, bytes([i]) * 1000) for i in range(3)
        ]
        assert [r.complete for r in receipts] == [False, False, True]

        job_id = job_engine.submit(session.id, correlation_id="rn-device-123")
        job = wait_for_job(job_engine, job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.result.extracted_text == "TEST"
        assert job.result.filename == "r.jpg"
        assert job.error is None
        assert job.progress == 1.0
        assert job.correlation_id == "rn-device-123"

    def test_returns_before_pipeline_finishes(
        self, completed_upload, make_engine, blocking_extractor, release_event
    ) -> None:
        engine = make_engine(extractor=blocking_extractor)

        job_id = engine.submit(completed_upload())

        assert engine.get_status(job_id).status in (JobStatus.PENDING, JobStatus.ACTIVE)
        release_event.set()

    def test_unknown_session(self, job_engine) -> None:
        with pytest.raises(SessionNotFound):
            job_engine.submit("missing")

    def test_incomplete_session(self, session_manager, job_engine) -> None:
        session = session_manager.create_session("r.jpg", 3000, 1000)
        session_manager.ingest_chunk(session.id, 0, 3, b"a" * 1000)

        with pytest.raises(SessionNotReady):
            job_engine.submit(session.id)

    def test_artifact_deleted_after_completion(
        self, session_manager, completed_upload, job_engine, wait_for_job
    ) -> None:
        session_id = completed_upload()
        artifact = session_manager.get_session(session_id).artifact_path
        assert artifact.exists()

        wait_for_job(job_engine, job_engine.submit(session_id))

        assert not artifact.exists()


class TestProgress:
    def test_progress_is_monotonic(self, completed_upload, make_engine, wait_for_job) -> None:
        store = RecordingJobStore()
        engine = make_engine(store=store)

        job = wait_for_job(engine, engine.submit(completed_upload()))

        assert job.status == JobStatus.COMPLETED
        assert store.history == sorted(store.history)
        assert store.history[0] == pytest.approx(0.1)
        assert any(p == pytest.approx(0.5) for p in store.history)
        assert store.history[-1] <= 1.0

    def test_store_never_lowers_progress(self) -> None:
        store = JobStore()
        store.create(Job(id="j1", session_id="s1"))

        store.update("j1", progress=0.6)
        store.update("j1", progress=0.2)

        assert store.snapshot("j1").progress == 0.6


class TestExtractionFailures:
    @pytest.mark.parametrize("text", ["", "   \n\t "])
    def test_empty_text_fails_job(
        self, completed_upload, make_engine, make_extractor, wait_for_job, text
    ) -> None:
        engine = make_engine(extractor=make_extractor(text=text))

        job = wait_for_job(engine, engine.submit(completed_upload()))

        assert job.status == JobStatus.FAILED
        assert job.error.code == "EXTRACTION_FAILED"
        assert job.result is None

    def test_extractor_error_fails_job(
        self, completed_upload, make_engine, wait_for_job
    ) -> None:
        class BrokenExtractor:
            def extract_text(self, image_path, on_progress=None):
                raise ExtractionError("tesseract crashed")

        engine = make_engine(extractor=BrokenExtractor())

        job = wait_for_job(engine, engine.submit(completed_upload()))

        assert job.status == JobStatus.FAILED
        assert job.error.code == "EXTRACTION_FAILED"
        assert "tesseract crashed" in job.error.message

    def test_unexpected_error_is_internal(
        self, completed_upload, make_engine, wait_for_job
    ) -> None:
        class ExplodingExtractor:
            def extract_text(self, image_path, on_progress=None):
                raise RuntimeError("boom")

        engine = make_engine(extractor=ExplodingExtractor())

        job = wait_for_job(engine, engine.submit(completed_upload()))

        assert job.status == JobStatus.FAILED
        assert job.error.code == "INTERNAL"

    def test_deadline_exceeded_is_timeout(
        self, completed_upload, make_engine, blocking_extractor, wait_for_job
    ) -> None:
        engine = make_engine(extractor=blocking_extractor, max_job_duration=1)

        job = wait_for_job(engine, engine.submit(completed_upload()), timeout=5.0)

        assert job.status == JobStatus.FAILED
        assert job.error.code == "TIMEOUT"


class TestClassificationFallback:
    def test_classifier_failure_still_completes(
        self, completed_upload, make_engine, failing_classifier, wait_for_job
    ) -> None:
        engine = make_engine(classifier=failing_classifier)

        job = wait_for_job(engine, engine.submit(completed_upload()))

        assert job.status == JobStatus.COMPLETED
        assert job.result.classification is not None
        assert job.result.classification["vendor_name"] == "Unknown Vendor"
        assert job.result.confidence <= 0.2
        assert job.result.degraded is True
        assert job.result.extracted_text == "TEST"


class TestCancel:
    def test_cancel_pending_job(
        self, completed_upload, make_engine, blocking_extractor, release_event, wait_for_job
    ) -> None:
        engine = make_engine(extractor=blocking_extractor, max_workers=1)
        first = engine.submit(completed_upload())
        second = engine.submit(completed_upload())
        assert engine.get_status(second).status == JobStatus.PENDING

        cancelled = engine.cancel(second)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.error.code == "CANCELLED"

        release_event.set()
        assert wait_for_job(engine, first).status == JobStatus.COMPLETED
        engine.shutdown(wait=True)
        after = engine.get_status(second)
        assert after.status == JobStatus.CANCELLED
        assert after.result is None

    def test_cancel_active_job_discards_result(
        self, completed_upload, make_engine, blocking_extractor, release_event
    ) -> None:
        engine = make_engine(extractor=blocking_extractor)
        job_id = engine.submit(completed_upload())
        _wait_until(lambda: engine.get_status(job_id).stage == JobStage.EXTRACTING)

        engine.cancel(job_id)
        release_event.set()
        engine.shutdown(wait=True)

        job = engine.get_status(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result is None
        assert blocking_extractor.calls

    def test_cancel_completed_job_is_invalid(
        self, completed_upload, job_engine, wait_for_job
    ) -> None:
        job = wait_for_job(job_engine, job_engine.submit(completed_upload()))

        with pytest.raises(InvalidState):
            job_engine.cancel(job.id)

        after = job_engine.get_status(job.id)
        assert after.status == JobStatus.COMPLETED
        assert after.result == job.result

    def test_cancel_unknown_job(self, job_engine) -> None:
        with pytest.raises(JobNotFound):
            job_engine.cancel("missing")


class TestQueries:
    def test_get_status_unknown(self, job_engine) -> None:
        with pytest.raises(JobNotFound):
            job_engine.get_status("missing")

    def test_snapshot_is_detached(self, completed_upload, job_engine, wait_for_job) -> None:
        job = wait_for_job(job_engine, job_engine.submit(completed_upload()))

        job.progress = 0.0

        assert job_engine.get_status(job.id).progress == 1.0

    def test_list_and_stats(self, completed_upload, job_engine, wait_for_job) -> None:
        ids = [job_engine.submit(completed_upload()) for _ in range(2)]
        for job_id in ids:
            wait_for_job(job_engine, job_id)

        assert len(job_engine.list_jobs(status=JobStatus.COMPLETED)) == 2
        assert job_engine.list_jobs(status=JobStatus.FAILED) == []
        stats = job_engine.stats()
        assert stats["total"] == 2
        assert stats["completed"] == 2

    def test_evict_finished(self, completed_upload, job_engine, wait_for_job) -> None:
        job = wait_for_job(job_engine, job_engine.submit(completed_upload()))

        assert job_engine.evict_finished(timedelta(hours=1)) == 0
        assert job_engine.evict_finished(timedelta(0)) == 1
        with pytest.raises(JobNotFound):
            job_engine.get_status(job.id)

    def test_to_dict(self, completed_upload, job_engine, wait_for_job) -> None:
        job = wait_for_job(job_engine, job_engine.submit(completed_upload()))

        data = job.to_dict()

        assert data["status"] == "completed"
        assert data["result"]["extracted_text"] == "TEST"
        assert data["error"] is None
        assert data["completed_at"] is not None


class TestJobStore:
    def test_terminal_state_is_immutable(self) -> None:
        store = JobStore()
        store.create(Job(id="j1", session_id="s1"))

        assert store.finish("j1", JobStatus.FAILED, error=JobError("INTERNAL", "x"))
        assert not store.update("j1", progress=0.9)
        assert not store.finish("j1", JobStatus.COMPLETED)
        assert store.snapshot("j1").status == JobStatus.FAILED

    def test_finish_requires_terminal_status(self) -> None:
        store = JobStore()
        store.create(Job(id="j1", session_id="s1"))

        with pytest.raises(ValueError):
            store.finish("j1", JobStatus.ACTIVE)


class TestExtractionChannel:
    def test_events_in_order_until_result(self) -> None:
        channel = ExtractionChannel()
        channel.progress(0.25)
        channel.progress(0.75)
        channel.result("TEXT")
        channel.progress(0.9)

        events = list(channel.events(timeout=1))

        assert [e.kind for e in events] == [
            ExtractionEvent.PROGRESS,
            ExtractionEvent.PROGRESS,
            ExtractionEvent.RESULT,
        ]
        assert events[-1].value == "TEXT"

    def test_error_ends_stream(self) -> None:
        channel = ExtractionChannel()
        error = ExtractionError("bad")
        channel.error(error)

        events = list(channel.events(timeout=1))

        assert len(events) == 1
        assert events[0].value is error

    def test_timeout(self) -> None:
        channel = ExtractionChannel()

        with pytest.raises(TimeoutError):
            list(channel.events(timeout=0.05))
