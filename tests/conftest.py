import time
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from PIL import Image

from errors import ClassificationError
from JobEngine import JobEngine, TERMINAL_STATUSES
from OCR import TextExtractor
from ReceiptClassifier import Classification
from UploadSessionManager import UploadSessionManager


class StubExtractor(TextExtractor):
    """Returns fixed text and reports three progress steps."""

    name = "stub"

    def __init__(self, text: str = "TEST", release: Optional[threading.Event] = None):
        self.text = text
        self.release = release
        self.calls: List[Path] = []

    def extract_text(self, image_path, on_progress=None) -> str:
        self.calls.append(Path(image_path))
        if on_progress:
            on_progress(0.0)
        if self.release is not None:
            self.release.wait(timeout=5)
        if on_progress:
            on_progress(0.5)
            on_progress(1.0)
        return self.text


class StubClassifier:
    def __init__(self, fail: bool = False):
        self.fail = fail

    def classify(self, text: str) -> Classification:
        if self.fail:
            raise ClassificationError("classifier offline")
        return Classification(fields={"vendor_name": "Shell", "amount": "$10.00"}, confidence=0.8)


class PassthroughOptimizer:
    def optimize(self, image_path):
        return image_path


@pytest.fixture()
def session_manager(tmp_path) -> UploadSessionManager:
    return UploadSessionManager(
        temp_dir=tmp_path / "temp",
        uploads_dir=tmp_path / "uploads",
        max_file_size=1024 * 1024,
        min_chunk_size=1,
        max_chunk_size=4096,
        default_chunk_size=1000,
    )


@pytest.fixture()
def release_event():
    """Unblocks any extractor waiting on it when the test ends."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture()
def blocking_extractor(release_event) -> StubExtractor:
    """Extractor that waits for ``release_event`` before returning."""
    return StubExtractor(release=release_event)


@pytest.fixture()
def make_extractor() -> Callable[..., StubExtractor]:
    return StubExtractor


@pytest.fixture()
def failing_classifier() -> StubClassifier:
    return StubClassifier(fail=True)


@pytest.fixture()
def make_engine(session_manager, release_event):
    """Builds engines that are shut down after the test."""
    engines: List[JobEngine] = []

    def _make(
        extractor=None,
        classifier=None,
        store=None,
        max_workers: int = 2,
        max_job_duration: int = 0,
    ):
        engine = JobEngine(
            session_manager=session_manager,
            text_extractor=extractor if extractor is not None else StubExtractor(),
            classifier=classifier if classifier is not None else StubClassifier(),
            optimizer=PassthroughOptimizer(),
            store=store,
            max_workers=max_workers,
            max_job_duration=max_job_duration,
        )
        engines.append(engine)
        return engine

    yield _make

    release_event.set()
    for engine in engines:
        engine.shutdown(wait=True)


@pytest.fixture()
def job_engine(make_engine) -> JobEngine:
    return make_engine()


@pytest.fixture()
def completed_upload(session_manager) -> Callable[..., str]:
    """Creates a session and ingests every chunk; returns the session id."""

    def _upload(data: bytes = b"x" * 3000, chunk_size: int = 1000, filename: str = "r.jpg") -> str:
        session = session_manager.create_session(filename, len(data), chunk_size)
        chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
        for index, chunk in enumerate(chunks):
            session_manager.ingest_chunk(session.id, index, len(chunks), chunk)
        return session.id

    return _upload


@pytest.fixture()
def wait_for_job() -> Callable[..., object]:
    """Polls a job until it reaches a terminal status."""

    def _wait(engine: JobEngine, job_id: str, timeout: float = 5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = engine.get_status(job_id)
            if job.status in TERMINAL_STATUSES:
                return job
            time.sleep(0.01)
        raise AssertionError(f"Job {job_id} did not finish within {timeout}s")

    return _wait


@pytest.fixture()
def receipt_image(tmp_path) -> Path:
    path = tmp_path / "receipt.png"
    Image.new("RGB", (4000, 1000), color=(240, 240, 240)).save(path)
    return path
