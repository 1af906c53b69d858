"""
================================================================================
Job Lifecycle Engine
================================================================================
Runs the four-stage receipt pipeline over one reassembled upload:

    optimizing (0.1 -> 0.2)   ImageOptimizer normalises the photo
    extracting (0.3 -> 0.7)   TextExtractor recognises the text
    classifying (0.75 -> 0.9) ReceiptClassifier extracts structured fields
    finalizing (-> 1.0)       result assembled, intermediate files deleted

Jobs move pending -> active -> {completed | failed | cancelled}; the last
three are terminal and never change again. Every job record carries its own
lock: the pipeline driver is the single writer, pollers read snapshots.

Cancellation is cooperative. A cancelled job flips to ``cancelled`` at once,
the driver notices at its next progress write and stops. A recognition call
that is already running is not interrupted; its output is discarded.
================================================================================
"""

import time
import uuid
import queue
import logging
import threading
import traceback
from enum import Enum
from pathlib import Path
from datetime import datetime, timedelta
from dataclasses import dataclass, field, replace
from functools import partial
from concurrent.futures import ThreadPoolExecutor, Future
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Optional

import config
from errors import (
    ExtractionError,
    ExtractionFailed,
    InvalidState,
    JobNotFound,
    PipelineError,
    ResourceExhausted,
    SessionNotReady,
)
from ImageOptimizer import ImageOptimizer
from OCR import TextExtractor
from ReceiptClassifier import Classification, ReceiptClassifier, fallback_classification
from UploadSessionManager import SessionStatus, UploadSessionManager
from utils import cleanup_resource

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobStage(str, Enum):
    QUEUED = "queued"
    OPTIMIZING = "optimizing"
    EXTRACTING = "extracting"
    CLASSIFYING = "classifying"
    FINALIZING = "finalizing"


# Error kinds recorded on failed / cancelled jobs
ERROR_EXTRACTION_FAILED = "EXTRACTION_FAILED"
ERROR_TIMEOUT = "TIMEOUT"
ERROR_INTERNAL = "INTERNAL"
ERROR_CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class JobError:
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class JobResult:
    extracted_text: str
    classification: Dict[str, Any]
    confidence: float
    processed_at: datetime
    filename: Optional[str] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extracted_text": self.extracted_text,
            "classification": self.classification,
            "confidence": self.confidence,
            "processed_at": self.processed_at.isoformat(),
            "filename": self.filename,
            "degraded": self.degraded,
        }


@dataclass
class Job:
    id: str
    session_id: str
    correlation_id: Optional[str] = None
    filename: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    stage: JobStage = JobStage.QUEUED
    progress: float = 0.0
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.now)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Job":
        with self._lock:
            return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "upload_id": self.session_id,
            "correlation_id": self.correlation_id,
            "filename": self.filename,
            "status": self.status.value,
            "stage": self.stage.value,
            "progress": round(self.progress, 4),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# THREAD-SAFE JOB STORE
# =============================================================================

class JobStore:
    """
    Thread-safe id -> Job map.

    The store lock guards the map only. Field writes go through the job's
    own lock and are refused once the job is terminal, which is what makes
    terminal states immutable and lets cancellation win over a running
    pipeline. Progress never moves backwards.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    # --- Core CRUD ---

    def create(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> Optional[Job]:
        job = self.get(job_id)
        return job.snapshot() if job else None

    def update(self, job_id: str, **fields) -> bool:
        """Apply ``fields`` to a non-terminal job. False if unknown or terminal."""
        job = self.get(job_id)
        if job is None:
            return False
        with job._lock:
            if job.is_terminal:
                return False
            if "progress" in fields:
                fields["progress"] = max(job.progress, min(1.0, fields["progress"]))
            for name, value in fields.items():
                setattr(job, name, value)
            job.updated_at = datetime.now()
            return True

    def finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[JobResult] = None,
        error: Optional[JobError] = None,
    ) -> bool:
        """Move a job into a terminal state exactly once."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        job = self.get(job_id)
        if job is None:
            return False
        with job._lock:
            if job.is_terminal:
                return False
            job.status = status
            job.result = result if status == JobStatus.COMPLETED else None
            job.error = None if status == JobStatus.COMPLETED else error
            if status == JobStatus.COMPLETED:
                job.progress = 1.0
            job.completed_at = datetime.now()
            job.updated_at = job.completed_at
            return True

    def delete(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    # --- Queries ---

    def list_all(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        snapshots = sorted((j.snapshot() for j in jobs), key=lambda j: j.created_at, reverse=True)
        if status is not None:
            snapshots = [j for j in snapshots if j.status == status]
        return snapshots[:limit]

    def get_expired(self, cutoff: datetime) -> List[str]:
        """Terminal jobs that finished before ``cutoff``."""
        with self._lock:
            jobs = list(self._jobs.values())
        expired = []
        for job in jobs:
            snap = job.snapshot()
            if snap.is_terminal and snap.completed_at and snap.completed_at < cutoff:
                expired.append(snap.id)
        return expired

    def stats(self) -> Dict[str, int]:
        with self._lock:
            jobs = list(self._jobs.values())
        counts = defaultdict(int)
        for job in jobs:
            counts[job.snapshot().status.value] += 1
        return {
            "total": len(jobs),
            **{status.value: counts.get(status.value, 0) for status in JobStatus},
        }

    def __len__(self):
        with self._lock:
            return len(self._jobs)


# =============================================================================
# EXTRACTION CHANNEL
# =============================================================================

@dataclass(frozen=True)
class ExtractionEvent:
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"

    kind: str
    value: Any = None


class ExtractionChannel:
    """
    Ordered progress events followed by exactly one result or error event.

    The recognition engine writes from its own thread; the stage driver
    consumes with ``events()``.
    """

    def __init__(self):
        self._queue: "queue.Queue[ExtractionEvent]" = queue.Queue()

    def progress(self, fraction: float) -> None:
        self._queue.put(ExtractionEvent(ExtractionEvent.PROGRESS, fraction))

    def result(self, text: str) -> None:
        self._queue.put(ExtractionEvent(ExtractionEvent.RESULT, text))

    def error(self, exc: BaseException) -> None:
        self._queue.put(ExtractionEvent(ExtractionEvent.ERROR, exc))

    def events(self, timeout: Optional[float] = None) -> Iterator[ExtractionEvent]:
        """Yields events until the result or error arrives. Raises TimeoutError past ``timeout``."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError("Timed out waiting for text extraction")
            try:
                event = self._queue.get(timeout=remaining)
            except queue.Empty:
                raise TimeoutError("Timed out waiting for text extraction") from None
            yield event
            if event.kind != ExtractionEvent.PROGRESS:
                return


# =============================================================================
# ENGINE
# =============================================================================

class JobEngine:
    """
    Creates jobs for completed uploads and runs their pipelines on a
    bounded worker pool. ``submit`` returns before any stage starts.
    """

    def __init__(
        self,
        session_manager: UploadSessionManager,
        text_extractor: TextExtractor,
        classifier: Optional[ReceiptClassifier] = None,
        optimizer: Optional[ImageOptimizer] = None,
        store: Optional[JobStore] = None,
        max_workers: int = 2,
        max_job_duration: int = config.MAX_JOB_DURATION,
    ):
        self.session_manager = session_manager
        self.text_extractor = text_extractor
        self.classifier = classifier if classifier is not None else ReceiptClassifier()
        self.optimizer = optimizer if optimizer is not None else ImageOptimizer()
        self.store = store if store is not None else JobStore()
        self.max_workers = max_workers
        self.max_job_duration = max_job_duration

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="OCR-Worker"
        )
        # Recognition runs apart from the stage driver so the driver can
        # consume progress events and enforce the job deadline.
        self._extraction_executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="OCR-Extract"
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, session_id: str, correlation_id: Optional[str] = None) -> str:
        session = self.session_manager.get_session(session_id)
        if session.status != SessionStatus.COMPLETED or session.artifact_path is None:
            raise SessionNotReady(
                f"Upload {session_id} is not complete (status: {session.status.value})"
            )

        job = Job(
            id=str(uuid.uuid4()),
            session_id=session_id,
            correlation_id=correlation_id,
            filename=session.filename,
        )
        self.store.create(job)

        try:
            future: Future = self._executor.submit(
                self._run_pipeline, job.id, Path(session.artifact_path)
            )
        except RuntimeError as e:
            self.store.delete(job.id)
            raise ResourceExhausted(f"Job engine is not accepting work: {e}") from e

        future.add_done_callback(partial(self._on_done, job.id))

        logger.info(
            f"[Job {job.id}] Queued for upload {session_id} "
            f"(correlation: {correlation_id or '-'})"
        )
        return job.id

    def get_status(self, job_id: str) -> Job:
        job = self.store.snapshot(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def cancel(self, job_id: str) -> Job:
        job = self.store.snapshot(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")

        cancelled = self.store.finish(
            job_id,
            JobStatus.CANCELLED,
            error=JobError(ERROR_CANCELLED, "Job cancelled by user"),
        )
        if not cancelled:
            current = self.store.snapshot(job_id) or job
            raise InvalidState(f"Cannot cancel {current.status.value} job")

        logger.info(f"[Job {job_id}] Cancelled (was {job.status.value}, stage {job.stage.value})")
        return self.get_status(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[Job]:
        return self.store.list_all(status=status, limit=limit)

    def stats(self) -> Dict[str, Any]:
        return {**self.store.stats(), "max_workers": self.max_workers}

    def evict_finished(self, older_than: timedelta) -> int:
        """Drop terminal jobs that finished more than ``older_than`` ago."""
        expired_ids = self.store.get_expired(datetime.now() - older_than)
        for job_id in expired_ids:
            self.store.delete(job_id)
        if expired_ids:
            logger.info(f"Evicted {len(expired_ids)} finished jobs")
        return len(expired_ids)

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Draining active workers (waiting for completion)...")
        self._executor.shutdown(wait=wait, cancel_futures=False)
        self._extraction_executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Thread pools shut down")

    # ------------------------------------------------------------------
    # Pipeline (runs in a worker thread)
    # ------------------------------------------------------------------

    def _run_pipeline(self, job_id: str, artifact_path: Path) -> None:
        job_start_time = time.monotonic()
        stage = JobStage.QUEUED
        optimized_path: Optional[Path] = None

        try:
            if not self.store.update(
                job_id,
                status=JobStatus.ACTIVE,
                started_at=datetime.now(),
                stage=JobStage.OPTIMIZING,
                progress=0.1,
            ):
                logger.info(f"[Job {job_id}] Not started (already {self._status_of(job_id)})")
                return

            # --- STAGE 1: Optimize ---
            stage = JobStage.OPTIMIZING
            self._check_timeout(job_start_time, stage)
            logger.info(f"[Job {job_id}] Stage 1/4 - Optimizing {artifact_path.name}")
            optimized_path = Path(self.optimizer.optimize(artifact_path))
            if not self._advance(job_id, 0.2):
                return

            # --- STAGE 2: Extract ---
            stage = JobStage.EXTRACTING
            self._check_timeout(job_start_time, stage)
            if not self._advance(job_id, 0.3, stage):
                return
            logger.info(f"[Job {job_id}] Stage 2/4 - Extracting text")
            extracted_text = self._extract(job_id, optimized_path, job_start_time)
            if extracted_text is None:
                return
            if not extracted_text.strip():
                raise ExtractionFailed("No text could be extracted from the image")
            if not self._advance(job_id, 0.7):
                return

            # --- STAGE 3: Classify ---
            stage = JobStage.CLASSIFYING
            self._check_timeout(job_start_time, stage)
            if not self._advance(job_id, 0.75, stage):
                return
            logger.info(f"[Job {job_id}] Stage 3/4 - Classifying ({len(extracted_text)} chars)")
            classification = self._classify(job_id, extracted_text)
            if not self._advance(job_id, 0.9):
                return

            # --- STAGE 4: Finalize ---
            stage = JobStage.FINALIZING
            if not self._advance(job_id, 0.9, stage):
                return
            snapshot = self.store.snapshot(job_id)
            result = JobResult(
                extracted_text=extracted_text,
                classification=classification.fields,
                confidence=classification.confidence,
                processed_at=datetime.now(),
                filename=snapshot.filename if snapshot else None,
                degraded=classification.degraded,
            )

            elapsed = round(time.monotonic() - job_start_time, 1)
            if self.store.finish(job_id, JobStatus.COMPLETED, result=result):
                logger.info(
                    f"[Job {job_id}] ✓ Completed in {elapsed}s "
                    f"(confidence {result.confidence:.2f})"
                )
            else:
                logger.info(f"[Job {job_id}] Result discarded (job {self._status_of(job_id)})")

        except TimeoutError as e:
            logger.error(f"[Job {job_id}] TIMEOUT at '{stage.value}': {e}")
            self._fail(job_id, ERROR_TIMEOUT, str(e))

        except PipelineError as e:
            logger.error(f"[Job {job_id}] Failed at '{stage.value}': [{e.code}] {e.message}")
            self._fail(job_id, e.code, e.message)

        except ExtractionError as e:
            logger.error(f"[Job {job_id}] Failed at '{stage.value}': {e}")
            self._fail(job_id, ERROR_EXTRACTION_FAILED, str(e))

        except Exception as e:
            logger.error(
                f"[Job {job_id}] Failed at '{stage.value}': {e}\n"
                f"{traceback.format_exc()}"
            )
            self._fail(job_id, ERROR_INTERNAL, f"Failed at {stage.value}: {e}")

        finally:
            if optimized_path is not None and optimized_path != artifact_path:
                cleanup_resource(optimized_path, f"[Job {job_id}]")
            cleanup_resource(artifact_path, f"[Job {job_id}]")

    def _extract(self, job_id: str, image_path: Path, job_start_time: float) -> Optional[str]:
        """
        Run recognition on the extraction pool and relay its progress into
        the 0.3-0.7 range. Returns None when the job was cancelled meanwhile.
        """
        channel = ExtractionChannel()
        self._extraction_executor.submit(self._extract_into, channel, image_path)

        text = None
        for event in channel.events(timeout=self._remaining(job_start_time)):
            if event.kind == ExtractionEvent.PROGRESS:
                fraction = min(1.0, max(0.0, float(event.value)))
                if not self._advance(job_id, 0.3 + fraction * 0.4):
                    return None
            elif event.kind == ExtractionEvent.ERROR:
                raise event.value
            else:
                text = event.value or ""
        return text

    def _extract_into(self, channel: ExtractionChannel, image_path: Path) -> None:
        try:
            text = self.text_extractor.extract_text(image_path, on_progress=channel.progress)
        except Exception as e:
            channel.error(e)
        else:
            channel.result(text)

    def _classify(self, job_id: str, text: str) -> Classification:
        """Classification failures degrade to the fallback result, never fail the job."""
        try:
            return self.classifier.classify(text)
        except Exception as e:
            logger.warning(f"[Job {job_id}] Classification failed, using fallback: {e}")
            return fallback_classification()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _advance(self, job_id: str, progress: float, stage: Optional[JobStage] = None) -> bool:
        """Write progress (and stage). False means the job went terminal under us."""
        fields: Dict[str, Any] = {"progress": progress}
        if stage is not None:
            fields["stage"] = stage
        if self.store.update(job_id, **fields):
            return True
        logger.info(f"[Job {job_id}] Stopping pipeline (job {self._status_of(job_id)})")
        return False

    def _fail(self, job_id: str, code: str, message: str) -> None:
        if not self.store.finish(job_id, JobStatus.FAILED, error=JobError(code, message)):
            logger.info(f"[Job {job_id}] Failure not recorded (job {self._status_of(job_id)})")

    def _check_timeout(self, job_start_time: float, stage: JobStage) -> None:
        """Raises TimeoutError if job exceeds the configured duration."""
        if self.max_job_duration > 0:
            elapsed = time.monotonic() - job_start_time
            if elapsed > self.max_job_duration:
                raise TimeoutError(
                    f"Job exceeded {self.max_job_duration}s timeout at stage '{stage.value}' "
                    f"(elapsed: {elapsed:.0f}s)"
                )

    def _remaining(self, job_start_time: float) -> Optional[float]:
        if self.max_job_duration <= 0:
            return None
        return max(0.0, self.max_job_duration - (time.monotonic() - job_start_time))

    def _status_of(self, job_id: str) -> str:
        job = self.store.snapshot(job_id)
        return job.status.value if job else "deleted"

    def _on_done(self, job_id: str, fut: Future) -> None:
        if fut.cancelled():
            self._fail(job_id, ERROR_INTERNAL, "Job was dropped before it started")
            return
        exc = fut.exception()
        if exc:
            logger.error(f"[Job {job_id}] Thread exception: {exc}")
            self._fail(job_id, ERROR_INTERNAL, f"Unexpected error: {exc}")
