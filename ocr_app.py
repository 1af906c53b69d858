"""
================================================================================
Receipt OCR Upload API
================================================================================
DESCRIPTION:
    Chunked image upload plus asynchronous receipt recognition. Large photos
    arrive in small pieces, are reassembled on the server, then run through
    optimize -> extract -> classify -> finalize on a background worker pool.

WORKFLOW:
    1. Client opens an upload session via POST /upload
    2. Client sends every chunk via POST /chunk (any order, retries allowed)
    3. Client starts processing via POST /process and gets a job_id
    4. Client polls GET /status/{job_id} until the job is terminal
    5. Client may cancel via DELETE /job/{job_id}

TRACING:
    Every response carries X-Correlation-ID / X-Request-ID. A valid id sent
    by the client (X-Correlation-ID, X-Request-ID, X-Trace-ID, ...) is reused.

CONFIGURATION:
    All config is loaded from the .env file (see config.py).
================================================================================
"""

import re
import time
import string
import logging
import secrets
import asyncio
import traceback
from typing import Optional, Dict
from datetime import datetime, timedelta
from contextlib import asynccontextmanager

import uvicorn
import aiofiles
from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

import config
from errors import ClassificationError, InvalidInput, PipelineError, RateLimited, ResourceExhausted
from JobEngine import JobEngine, JobStatus
from OCR import build_text_extractor
from RateLimiter import FixedWindowRateLimiter, RateLimitDecision, RateLimitPolicy, default_policies
from ReceiptClassifier import ReceiptClassifier, fallback_classification
from UploadSessionManager import UploadSessionManager
from utils import ResourceMonitor, cleanup_resource, get_client_ip, get_optimal_worker_count

VERSION = "1.0.0"

# Upload streaming read size
UPLOAD_READ_SIZE = 64 * 1024

# Minimum text length accepted by /classify
MIN_CLASSIFY_TEXT_LENGTH = 10


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def configure_logging() -> None:
    config.BASE_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] %(message)s',
        handlers=[
            logging.FileHandler(config.BASE_OUTPUT_DIR / "api.log"),
            logging.StreamHandler()
        ]
    )


configure_logging()
logger = logging.getLogger(__name__)

monitor = ResourceMonitor()


# =============================================================================
# CORRELATION IDS
# =============================================================================

CORRELATION_HEADERS = (
    "x-correlation-id",
    "x-request-id",
    "x-trace-id",
    "correlation-id",
    "request-id",
)

_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_correlation_id() -> str:
    random_part = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"api-{int(time.time() * 1000)}-{random_part}"


def is_valid_correlation_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_CORRELATION_ID_PATTERN.match(value))


def extract_correlation_id(request: Request) -> Optional[str]:
    for header in CORRELATION_HEADERS:
        value = request.headers.get(header)
        if is_valid_correlation_id(value):
            return value
    return None


# =============================================================================
# RATE LIMITING
# =============================================================================

# (method, path) -> policy name; every other API route gets only the global policy
ROUTE_POLICIES: Dict[tuple, str] = {
    ("POST", "/upload"): "upload",
    ("POST", "/chunk"): "upload",
    ("POST", "/process"): "ocr",
    ("POST", "/classify"): "ocr",
}

# Never rate limited
UNLIMITED_PATHS = {"/", "/health"}


def rate_limit_key(request: Request) -> str:
    """Every policy counts per client ip; correlation ids never feed the key."""
    return get_client_ip(request)


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    return {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(decision.remaining),
        "RateLimit-Reset": datetime.fromtimestamp(decision.reset_at).isoformat(),
    }


def apply_rate_limits(request: Request) -> Optional[RateLimitDecision]:
    """
    Runs the global policy, then the route policy. Returns the decision
    whose headers go on the response. Raises RateLimited on denial.
    """
    if request.url.path in UNLIMITED_PATHS:
        return None

    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    policies: Dict[str, RateLimitPolicy] = request.app.state.policies

    names = ["global"]
    route_policy = ROUTE_POLICIES.get((request.method, request.url.path.rstrip("/") or "/"))
    if route_policy:
        names.append(route_policy)

    reported = None
    for name in names:
        policy = policies.get(name)
        if policy is None or not policy.enabled:
            continue
        key = rate_limit_key(request)
        decision = limiter.admit_policy(policy, key)
        if not decision.allowed:
            logger.warning(
                f"[{request.state.request_id}] Rate limited: {key} "
                f"(policy '{name}', >{policy.max_count} req/{policy.window_ms}ms)"
            )
            raise RateLimited(
                f"Too many {name} requests. Please wait before trying again.",
                retry_after_ms=decision.retry_after_ms,
                decision=decision,
            )
        reported = decision
    return reported


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class UploadSessionRequest(BaseModel):
    filename: str
    file_size: int
    chunk_size: Optional[int] = None


class UploadSessionResponse(BaseModel):
    upload_id: str
    chunk_size: int
    max_chunks: int


class ChunkResponse(BaseModel):
    received_chunks: int
    total_chunks: int
    complete: bool


class ProcessRequest(BaseModel):
    upload_id: str


class ProcessResponse(BaseModel):
    job_id: str
    status: str
    correlation_id: Optional[str] = None


class ClassifyRequest(BaseModel):
    extracted_text: str = ""


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: builds missing components, runs maintenance tasks."""
    state = app.state

    logger.info("=" * 60)
    logger.info(f"Receipt OCR Upload API v{VERSION} starting...")
    logger.info("=" * 60)

    if state.session_manager is None:
        state.session_manager = UploadSessionManager()

    if state.job_engine is None:
        if config.MAX_WORKERS > 0:
            workers = config.MAX_WORKERS
            logger.info(f"Workers: {workers} (configured via MAX_WORKERS)")
        else:
            workers = get_optimal_worker_count(
                ram_per_worker_gb=config.WORKER_RAM_GB,
                system_reserve_gb=config.SYSTEM_RESERVE_GB
            )
            logger.info(f"Workers: {workers} (auto-detected)")
        state.job_engine = JobEngine(
            session_manager=state.session_manager,
            text_extractor=build_text_extractor(config.OCR_ENGINE),
            classifier=ReceiptClassifier(),
            max_workers=workers,
            max_job_duration=config.MAX_JOB_DURATION,
        )

    manager: UploadSessionManager = state.session_manager
    logger.info(f"Chunk Directory    : {manager.temp_dir}")
    logger.info(f"Upload Directory   : {manager.uploads_dir}")
    logger.info(f"Max File Size      : {manager.max_file_size} bytes")
    logger.info(f"Chunk Size Range   : {manager.min_chunk_size}-{manager.max_chunk_size} bytes")
    logger.info(f"Max Workers        : {state.job_engine.max_workers}")
    logger.info(f"Job Timeout        : {state.job_engine.max_job_duration}s")
    logger.info(f"Session Max Age    : {config.SESSION_MAX_AGE_HOURS} hours")
    logger.info(f"Job Retention      : {config.JOB_RETENTION_HOURS} hours")
    for policy in state.policies.values():
        logger.info(f"Rate Limit ({policy.name:<6}): {policy.max_count} req / {policy.window_ms} ms")

    tasks = [
        asyncio.create_task(periodic_session_sweep(app)),
        asyncio.create_task(periodic_job_eviction(app)),
    ]

    logger.info("API Ready. Accepting requests.")

    yield

    # --- SHUTDOWN ---
    logger.info("Receipt OCR Upload API shutting down...")

    for task in tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    state.job_engine.shutdown(wait=True)
    logger.info("Shutdown complete.")


# =============================================================================
# BACKGROUND TASKS
# =============================================================================

async def periodic_session_sweep(app: FastAPI):
    """Cleans up abandoned upload sessions and expired rate-limit counters."""
    max_age = timedelta(hours=config.SESSION_MAX_AGE_HOURS)
    while True:
        try:
            await asyncio.sleep(config.SESSION_SWEEP_INTERVAL)
            await run_in_threadpool(app.state.session_manager.sweep_expired, max_age)
            app.state.rate_limiter.cleanup()
        except asyncio.CancelledError:
            logger.info("Session sweep task cancelled")
            break
        except Exception as e:
            logger.error(f"Session sweep error: {e}")
            await asyncio.sleep(60)


async def periodic_job_eviction(app: FastAPI):
    """Runs every hour to drop finished jobs older than JOB_RETENTION_HOURS."""
    if config.JOB_RETENTION_HOURS <= 0:
        return
    retention = timedelta(hours=config.JOB_RETENTION_HOURS)
    while True:
        try:
            await asyncio.sleep(3600)
            app.state.job_engine.evict_finished(retention)
        except asyncio.CancelledError:
            logger.info("Job eviction task cancelled")
            break
        except Exception as e:
            logger.error(f"Job eviction error: {e}")
            await asyncio.sleep(60)


# =============================================================================
# MIDDLEWARE: Correlation ID + Rate Limiting
# =============================================================================

async def request_middleware(request: Request, call_next):
    """
    Attaches a correlation id to the request and response, and enforces
    the global and per-route rate limit policies.
    """
    correlation_id = extract_correlation_id(request) or generate_correlation_id()
    request.state.correlation_id = correlation_id
    request.state.request_id = correlation_id
    trace_headers = {"X-Correlation-ID": correlation_id, "X-Request-ID": correlation_id}

    try:
        decision = apply_rate_limits(request)
    except RateLimited as exc:
        headers = {**trace_headers, **rate_limit_headers(exc.decision)}
        headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "code": exc.code,
                "retryable": exc.retryable,
                "retry_after_seconds": exc.retry_after_seconds,
                "request_id": correlation_id,
            },
            headers=headers,
        )

    response = await call_next(request)
    response.headers.update(trace_headers)
    if decision is not None:
        response.headers.update(rate_limit_headers(decision))
    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def pipeline_exception_handler(request: Request, exc: PipelineError):
    request_id = getattr(request.state, "request_id", "unknown")
    if exc.status_code >= 500:
        logger.error(f"[{request_id}] {exc.code}: {exc.message}")
    else:
        logger.warning(f"[{request_id}] HTTP {exc.status_code} {exc.code}: {exc.message}")

    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "retryable": exc.retryable,
            "request_id": request_id,
        },
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    errors = [
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    ]
    logger.warning(f"[{request_id}] Invalid request: {errors}")
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content={
            "detail": "; ".join(errors) or "Invalid request",
            "code": InvalidInput.code,
            "retryable": False,
            "request_id": request_id,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", "unknown")
    if exc.status_code >= 500:
        logger.error(f"[{request_id}] HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"[{request_id}] HTTP {exc.status_code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "request_id": request_id},
        headers=getattr(exc, "headers", None)
    )


async def global_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(
        f"[{request_id}] Unhandled: {request.method} {request.url.path} "
        f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal server error occurred.",
            "code": "INTERNAL",
            "request_id": request_id
        }
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    """Service health, resource figures and component statistics."""
    manager: UploadSessionManager = request.app.state.session_manager
    engine: JobEngine = request.app.state.job_engine
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter

    disk_free = monitor.disk_free_gb(manager.uploads_dir) if manager else 0.0
    ram_free = monitor.available_ram_mb()
    load = monitor.load_avg()

    warnings = []
    if disk_free < request.app.state.min_disk_free_gb:
        warnings.append(f"Low disk: {disk_free:.1f}GB free")
    if load > monitor.cpu_count() * 2:
        warnings.append(f"High load: {load:.1f}")

    return {
        "status": "healthy" if not warnings else "degraded",
        "service": "Receipt OCR Upload API",
        "version": VERSION,
        "timestamp": datetime.now().isoformat(),
        "correlation_id": request.state.correlation_id,
        "resources": {
            "cpu_cores": monitor.cpu_count(),
            "load_avg": round(load, 2),
            "ram_available_mb": round(ram_free, 0),
            "disk_free_gb": round(disk_free, 1),
        },
        "stats": {
            "uploads": manager.stats() if manager else None,
            "jobs": engine.stats() if engine else None,
            "rate_limiter": limiter.stats(),
        },
        "warnings": warnings,
    }


@router.get("/", include_in_schema=False)
def root(request: Request):
    return health_check(request)


@router.post("/upload", response_model=UploadSessionResponse)
async def create_upload_session(request: Request, body: UploadSessionRequest):
    """Open a chunked upload session."""
    manager: UploadSessionManager = request.app.state.session_manager

    can_accept, reason = monitor.can_accept_upload(
        manager.uploads_dir, request.app.state.min_disk_free_gb
    )
    if not can_accept:
        raise ResourceExhausted(f"Server cannot accept new uploads: {reason}. Please retry later.")

    session = manager.create_session(
        filename=body.filename,
        declared_size=body.file_size,
        chunk_size=body.chunk_size,
        correlation_id=request.state.correlation_id,
    )
    return UploadSessionResponse(
        upload_id=session.id,
        chunk_size=session.chunk_size,
        max_chunks=session.expected_chunk_count,
    )


@router.post("/chunk", response_model=ChunkResponse)
async def upload_chunk(
    request: Request,
    upload_id: str = Form(...),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    chunk: UploadFile = File(...),
):
    """
    Upload one chunk. Chunks may arrive in any order; re-sending an index
    replaces the earlier bytes. The call that completes the set returns
    ``complete: true`` after the file has been reassembled.
    """
    manager: UploadSessionManager = request.app.state.session_manager
    request_id = request.state.request_id

    # Stream to a staging file, never holding the whole chunk in memory
    staged_path = manager.temp_dir / f"incoming-{secrets.token_hex(8)}.part"
    total_size = 0
    try:
        async with aiofiles.open(staged_path, "wb") as out:
            while True:
                data = await chunk.read(UPLOAD_READ_SIZE)
                if not data:
                    break
                total_size += len(data)
                if total_size > manager.max_chunk_size:
                    raise HTTPException(
                        status_code=413,
                        detail=f"Chunk exceeds {manager.max_chunk_size} byte limit"
                    )
                await out.write(data)
    except HTTPException:
        cleanup_resource(staged_path, f"[{request_id}]")
        raise
    except OSError as e:
        cleanup_resource(staged_path, f"[{request_id}]")
        logger.error(f"[{request_id}] Chunk stream failed: {e}")
        raise HTTPException(status_code=400, detail="Failed to read uploaded chunk.")
    finally:
        await chunk.close()

    receipt = await run_in_threadpool(
        manager.ingest_chunk_file, upload_id, chunk_index, total_chunks, staged_path
    )
    return ChunkResponse(
        received_chunks=receipt.received_count,
        total_chunks=receipt.total_chunks,
        complete=receipt.complete,
    )


@router.post("/process", response_model=ProcessResponse)
async def start_processing(request: Request, body: ProcessRequest):
    """Start OCR on a completed upload. Returns immediately with the job id."""
    engine: JobEngine = request.app.state.job_engine
    correlation_id = request.state.correlation_id
    job_id = engine.submit(body.upload_id, correlation_id=correlation_id)
    return ProcessResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        correlation_id=correlation_id,
    )


@router.get("/status/{job_id}")
async def get_job_status(request: Request, job_id: str):
    """Current snapshot of a job, including result or error once terminal."""
    job = request.app.state.job_engine.get_status(job_id)
    return job.to_dict()


@router.delete("/job/{job_id}")
async def cancel_job(request: Request, job_id: str):
    """Cancel a pending or active job. Finished jobs answer 409."""
    job = request.app.state.job_engine.cancel(job_id)
    return {"cancelled": True, "job_id": job.id, "status": job.status.value}


@router.get("/jobs")
async def list_jobs(request: Request, status: Optional[str] = None, limit: int = 50):
    """List jobs with optional status filter."""
    engine: JobEngine = request.app.state.job_engine
    status_filter = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            raise InvalidInput(
                f"Invalid status: '{status}'. Use: {', '.join(s.value for s in JobStatus)}"
            )

    limit = max(1, min(limit, 500))
    jobs = engine.list_jobs(status=status_filter, limit=limit)
    stats = engine.stats()
    return {
        "total_jobs": stats["total"],
        "returned": len(jobs),
        "stats": stats,
        "jobs": [job.to_dict() for job in jobs],
    }


@router.post("/classify")
async def classify_text(request: Request, body: ClassifyRequest):
    """Classify already-extracted receipt text without running OCR."""
    engine: JobEngine = request.app.state.job_engine
    correlation_id = request.state.correlation_id
    text = body.extracted_text or ""

    if len(text.strip()) < MIN_CLASSIFY_TEXT_LENGTH:
        return JSONResponse(
            status_code=400,
            content={
                "detail": "Text too short for classification",
                "code": InvalidInput.code,
                "classification": fallback_classification().to_dict(),
                "request_id": correlation_id,
            },
        )

    try:
        result = await run_in_threadpool(engine.classifier.classify, text)
    except ClassificationError as e:
        logger.warning(f"[{correlation_id}] Classification failed, using fallback: {e}")
        result = fallback_classification()

    return {
        "classification": result.fields,
        "confidence": result.confidence,
        "degraded": result.degraded,
        "correlation_id": correlation_id,
    }


# =============================================================================
# FASTAPI APPLICATION SETUP
# =============================================================================

def create_app(
    session_manager: Optional[UploadSessionManager] = None,
    job_engine: Optional[JobEngine] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    policies: Optional[Dict[str, RateLimitPolicy]] = None,
    min_disk_free_gb: float = config.MIN_DISK_FREE_GB,
) -> FastAPI:
    """
    Builds the API. Components left as None are created from config when
    the app starts, so tests can inject isolated instances.
    """
    app = FastAPI(
        title="Receipt OCR Upload API",
        description=(
            "Chunked receipt image upload with asynchronous OCR and classification. "
            "Processing returns a job id immediately; poll /status/{job_id} for the result."
        ),
        version=VERSION,
        lifespan=lifespan
    )

    app.state.session_manager = session_manager
    app.state.job_engine = job_engine
    app.state.rate_limiter = rate_limiter if rate_limiter is not None else FixedWindowRateLimiter()
    app.state.policies = policies if policies is not None else default_policies()
    app.state.min_disk_free_gb = min_disk_free_gb

    # CORS stays outermost; 429s from request_middleware need its headers
    app.middleware("http")(request_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Correlation-ID", "X-Request-ID", "Retry-After",
            "RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset",
        ],
    )
    app.add_exception_handler(PipelineError, pipeline_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    print("\n" + "=" * 60)
    print(f"  Receipt OCR Upload API v{VERSION}")
    print("=" * 60)
    print(f"  Output Dir       : {config.BASE_OUTPUT_DIR}")
    print(f"  Max File Size    : {config.MAX_FILE_SIZE} bytes")
    print(f"  OCR Engine       : {config.OCR_ENGINE}")
    print(f"  Workers          : {config.MAX_WORKERS if config.MAX_WORKERS > 0 else 'auto'}")
    print(f"  Job Timeout      : {config.MAX_JOB_DURATION}s")
    print(f"  Port             : {config.PORT}")
    print(f"  CPU              : {monitor.cpu_count()} cores")
    print("=" * 60 + "\n")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=config.PORT,
        timeout_keep_alive=120,
        log_level="info"
    )
