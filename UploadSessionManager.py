import os
import math
import time
import uuid
import shutil
import logging
import threading
from enum import Enum
from pathlib import Path
from datetime import datetime, timedelta
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import config
from errors import (
    ChunkOutOfRange,
    IncompleteUpload,
    Internal,
    InvalidInput,
    SessionNotFound,
    SessionNotUploading,
)
from utils import cleanup_resource, sanitize_filename

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ChunkInfo:
    index: int
    path: Path
    size: int
    received_at: datetime


@dataclass
class UploadSession:
    id: str
    filename: str
    declared_size: int
    chunk_size: int
    expected_chunk_count: int
    correlation_id: Optional[str] = None
    received_chunks: Dict[int, ChunkInfo] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.UPLOADING
    artifact_path: Optional[Path] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    def snapshot(self) -> "UploadSession":
        """Detached copy; callers never see the live chunk map."""
        with self._lock:
            return replace(self, received_chunks=dict(self.received_chunks))


@dataclass(frozen=True)
class ChunkReceipt:
    received_count: int
    total_chunks: int
    complete: bool


class SessionStore:
    """
    Thread-safe id -> UploadSession map.

    The store lock guards only the map itself; each session carries its
    own lock, so chunk traffic on one upload never blocks another.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, UploadSession] = {}

    def add(self, session: UploadSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def all(self) -> List[UploadSession]:
        with self._lock:
            return list(self._sessions.values())

    def created_before(self, cutoff: datetime) -> List[str]:
        with self._lock:
            return [sid for sid, s in self._sessions.items() if s.created_at < cutoff]

    def __len__(self):
        with self._lock:
            return len(self._sessions)


class UploadSessionManager:
    """
    Turns an out-of-order stream of chunks into exactly one validated file.

    Chunks are written to ``temp_dir`` as ``<session>-chunk-<index>``;
    re-sending an index overwrites the earlier chunk (last write wins).
    When the number of distinct indices reaches the expected count the
    chunks are concatenated in index order into ``uploads_dir`` before
    the ingest call returns.
    """

    def __init__(
        self,
        temp_dir: Path = config.TEMP_DIR,
        uploads_dir: Path = config.UPLOADS_DIR,
        store: Optional[SessionStore] = None,
        max_file_size: int = config.MAX_FILE_SIZE,
        min_chunk_size: int = config.MIN_CHUNK_SIZE,
        max_chunk_size: int = config.MAX_CHUNK_SIZE,
        default_chunk_size: int = config.DEFAULT_CHUNK_SIZE,
        allowed_extensions=config.ALLOWED_EXTENSIONS,
        size_tolerance: int = config.SIZE_MISMATCH_TOLERANCE,
    ):
        self.temp_dir = Path(temp_dir)
        self.uploads_dir = Path(uploads_dir)
        self.store = store if store is not None else SessionStore()
        self.max_file_size = max_file_size
        self.min_chunk_size = min_chunk_size
        self.max_chunk_size = max_chunk_size
        self.default_chunk_size = default_chunk_size
        self.allowed_extensions = {ext.lower() for ext in allowed_extensions}
        self.size_tolerance = size_tolerance

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        filename: str,
        declared_size: int,
        chunk_size: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> UploadSession:
        if not filename:
            raise InvalidInput("Filename is required")
        safe_filename = sanitize_filename(filename)
        ext = Path(safe_filename).suffix.lower()
        if self.allowed_extensions and ext not in self.allowed_extensions:
            raise InvalidInput(
                f"Unsupported file type: '{ext}'. "
                f"Allowed: {', '.join(sorted(self.allowed_extensions))}"
            )

        if chunk_size is None:
            chunk_size = self.default_chunk_size
        if not isinstance(declared_size, int) or declared_size <= 0:
            raise InvalidInput("fileSize must be a positive integer")
        if declared_size > self.max_file_size:
            raise InvalidInput(
                f"File size {declared_size} exceeds the {self.max_file_size} byte limit"
            )
        if not isinstance(chunk_size, int) or not (
            self.min_chunk_size <= chunk_size <= self.max_chunk_size
        ):
            raise InvalidInput(
                f"chunkSize must be between {self.min_chunk_size} and {self.max_chunk_size} bytes"
            )

        session = UploadSession(
            id=str(uuid.uuid4()),
            filename=safe_filename,
            declared_size=declared_size,
            chunk_size=chunk_size,
            expected_chunk_count=math.ceil(declared_size / chunk_size),
            correlation_id=correlation_id,
        )
        self.store.add(session)

        logger.info(
            f"[Upload {session.id}] Session created: {safe_filename} "
            f"({declared_size} bytes, {session.expected_chunk_count} chunks of {chunk_size})"
        )
        return session.snapshot()

    def get_session(self, session_id: str) -> UploadSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        return session.snapshot()

    # ------------------------------------------------------------------
    # Chunk ingestion
    # ------------------------------------------------------------------

    def ingest_chunk(
        self, session_id: str, index: int, total_chunks: int, data: bytes
    ) -> ChunkReceipt:
        """Store chunk bytes for ``index``; reassembles once every index is present."""
        session = self._get_uploading(session_id, index, total_chunks)
        if not data:
            raise InvalidInput("No chunk data received")

        with session._lock:
            self._ensure_live(session)
            self._ensure_uploading(session)
            chunk_path = self._chunk_path(session_id, index)
            staging = chunk_path.with_name(f"{chunk_path.name}.{uuid.uuid4().hex[:8]}.part")
            try:
                staging.write_bytes(data)
                os.replace(staging, chunk_path)
            except OSError as e:
                cleanup_resource(staging, f"[Upload {session_id}]")
                raise Internal(f"Failed to store chunk {index}: {e}") from e
            return self._register_chunk(session, index, total_chunks, chunk_path, len(data))

    def ingest_chunk_file(
        self, session_id: str, index: int, total_chunks: int, staged_path: Path
    ) -> ChunkReceipt:
        """Same as ingest_chunk, for a chunk already streamed to ``staged_path``."""
        staged_path = Path(staged_path)
        try:
            session = self._get_uploading(session_id, index, total_chunks)
            size = staged_path.stat().st_size if staged_path.exists() else 0
            if size == 0:
                raise InvalidInput("No chunk data received")

            with session._lock:
                self._ensure_live(session)
                self._ensure_uploading(session)
                chunk_path = self._chunk_path(session_id, index)
                try:
                    os.replace(staged_path, chunk_path)
                except OSError as e:
                    raise Internal(f"Failed to store chunk {index}: {e}") from e
                return self._register_chunk(session, index, total_chunks, chunk_path, size)
        finally:
            if staged_path.exists():
                cleanup_resource(staged_path, f"[Upload {session_id}]")

    def _get_uploading(self, session_id: str, index: int, total_chunks: int) -> UploadSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found")
        self._ensure_uploading(session)
        if total_chunks <= 0:
            raise InvalidInput("totalChunks must be a positive integer")
        if index < 0 or index >= total_chunks:
            raise ChunkOutOfRange(
                f"Chunk index {index} out of range for {total_chunks} chunks"
            )
        return session

    def _ensure_live(self, session: UploadSession) -> None:
        """Caller holds ``session._lock``. Fails if cleanup removed the session meanwhile."""
        if self.store.get(session.id) is not session:
            raise SessionNotFound(f"Upload session {session.id} not found")

    @staticmethod
    def _ensure_uploading(session: UploadSession) -> None:
        if session.status != SessionStatus.UPLOADING:
            raise SessionNotUploading(f"Invalid session status: {session.status.value}")

    def _register_chunk(
        self,
        session: UploadSession,
        index: int,
        total_chunks: int,
        chunk_path: Path,
        size: int,
    ) -> ChunkReceipt:
        """Record chunk metadata. Caller holds ``session._lock``."""
        replaced = index in session.received_chunks
        session.received_chunks[index] = ChunkInfo(
            index=index, path=chunk_path, size=size, received_at=datetime.now()
        )
        session.updated_at = datetime.now()

        if total_chunks != session.expected_chunk_count:
            logger.warning(
                f"[Upload {session.id}] Client reports {total_chunks} chunks, "
                f"expected {session.expected_chunk_count}"
            )
        logger.info(
            f"[Upload {session.id}] Chunk {index} {'replaced' if replaced else 'received'} "
            f"({size} bytes, {session.received_count}/{session.expected_chunk_count})"
        )

        if session.received_count >= session.expected_chunk_count:
            self._combine_chunks(session)

        return ChunkReceipt(
            received_count=session.received_count,
            total_chunks=total_chunks,
            complete=session.status == SessionStatus.COMPLETED,
        )

    # ------------------------------------------------------------------
    # Reassembly
    # ------------------------------------------------------------------

    def _combine_chunks(self, session: UploadSession) -> Path:
        """Concatenate chunks in index order. Caller holds ``session._lock``."""
        indices = sorted(session.received_chunks)
        expected = session.expected_chunk_count

        if len(indices) != expected or indices != list(range(expected)):
            missing = sorted(set(range(expected)) - set(indices))
            session.status = SessionStatus.FAILED
            session.updated_at = datetime.now()
            self._discard_chunks(session)
            logger.error(
                f"[Upload {session.id}] Missing chunks. Expected: {expected}, "
                f"received indices: {indices}, missing: {missing}"
            )
            raise IncompleteUpload(
                f"Missing chunks. Expected: {expected}, Received: {len(indices)}"
                + (f", missing indices: {missing}" if missing else "")
            )

        output_path = self.uploads_dir / f"{session.id}-{int(time.time() * 1000)}-{session.filename}"
        chunks = [session.received_chunks[i] for i in indices]
        logger.info(f"[Upload {session.id}] Combining {len(chunks)} chunks -> {output_path.name}")

        try:
            with open(output_path, "wb") as out:
                for chunk in chunks:
                    with open(chunk.path, "rb") as src:
                        shutil.copyfileobj(src, out)
                    cleanup_resource(chunk.path, f"[Upload {session.id}]")
        except OSError as e:
            session.status = SessionStatus.FAILED
            session.updated_at = datetime.now()
            cleanup_resource(output_path, f"[Upload {session.id}]")
            logger.error(f"[Upload {session.id}] Failed to combine chunks: {e}")
            raise Internal(f"Failed to combine chunks: {e}") from e
        finally:
            self._discard_chunks(session)

        actual_size = output_path.stat().st_size
        expected_size = sum(c.size for c in chunks)
        if abs(actual_size - expected_size) > self.size_tolerance:
            logger.warning(
                f"[Upload {session.id}] File size mismatch after combining chunks: "
                f"expected {expected_size}, actual {actual_size}"
            )

        session.artifact_path = output_path
        session.status = SessionStatus.COMPLETED
        session.completed_at = datetime.now()
        session.updated_at = session.completed_at

        logger.info(
            f"[Upload {session.id}] ✓ Chunks combined: {output_path.name} ({actual_size} bytes)"
        )
        return output_path

    def _discard_chunks(self, session: UploadSession) -> None:
        for chunk in session.received_chunks.values():
            if chunk.path.exists():
                cleanup_resource(chunk.path, f"[Upload {session.id}]")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, session_id: str) -> bool:
        """
        Remove chunk files, the reassembled artifact and the session record.
        Idempotent; file deletion failures are logged, never raised.
        Returns False when the session was already gone.
        """
        session = self.store.remove(session_id)
        if session is None:
            logger.debug(f"[Upload {session_id}] Cleanup skipped (unknown session)")
            return False

        with session._lock:
            if session.status == SessionStatus.UPLOADING:
                session.status = SessionStatus.FAILED
                session.updated_at = datetime.now()
            for chunk in session.received_chunks.values():
                cleanup_resource(chunk.path, f"[Upload {session_id}]")
            if session.artifact_path is not None:
                cleanup_resource(session.artifact_path, f"[Upload {session_id}]")

        logger.info(f"[Upload {session_id}] Upload session cleaned up")
        return True

    def sweep_expired(self, max_age: timedelta) -> int:
        """Clean up every session created more than ``max_age`` ago."""
        cutoff = datetime.now() - max_age
        expired_ids = self.store.created_before(cutoff)

        cleaned = 0
        for session_id in expired_ids:
            try:
                if self.cleanup(session_id):
                    cleaned += 1
            except Exception as e:
                logger.error(f"[Upload {session_id}] Failed to cleanup old session: {e}")

        if cleaned:
            logger.info(f"Swept {cleaned} expired upload sessions (max age {max_age})")
        return cleaned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _chunk_path(self, session_id: str, index: int) -> Path:
        return self.temp_dir / f"{session_id}-chunk-{index}"

    def stats(self) -> dict:
        sessions = self.store.all()
        oldest = min((s.created_at for s in sessions), default=None)
        return {
            "active_sessions": len(sessions),
            "total_chunks": sum(s.received_count for s in sessions),
            "oldest_session": oldest.isoformat() if oldest else None,
        }
