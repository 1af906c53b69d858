import os
from pathlib import Path

from dotenv import load_dotenv

# ==============================================================================
#  LOAD .env (module directory first, then the working directory)
# ==============================================================================

_env_path = Path(__file__).resolve().parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv(Path.cwd() / ".env")


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    return int(value) if value else default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name, "").strip()
    return float(value) if value else default


# ==============================================================================
#  STORAGE
# ==============================================================================

BASE_OUTPUT_DIR = Path(os.getenv("OCR_OUTPUT_DIR", "./output")).resolve()
TEMP_DIR = BASE_OUTPUT_DIR / "temp"
UPLOADS_DIR = BASE_OUTPUT_DIR / "uploads"

# ==============================================================================
#  UPLOAD SESSIONS
# ==============================================================================

MAX_FILE_SIZE = _int_env("MAX_FILE_SIZE", 50 * 1024 * 1024)
MIN_CHUNK_SIZE = _int_env("MIN_CHUNK_SIZE", 512)
MAX_CHUNK_SIZE = _int_env("MAX_CHUNK_SIZE", 2 * 1024 * 1024)
DEFAULT_CHUNK_SIZE = _int_env("DEFAULT_CHUNK_SIZE", 1024 * 1024)

SESSION_MAX_AGE_HOURS = _float_env("SESSION_MAX_AGE_HOURS", 24)
SESSION_SWEEP_INTERVAL = _int_env("SESSION_SWEEP_INTERVAL", 300)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"}

# Reassembled size may differ from the chunk total by this much without failing
SIZE_MISMATCH_TOLERANCE = 1024

# ==============================================================================
#  JOBS
# ==============================================================================

# 0 = auto-detect from RAM / CPU
MAX_WORKERS = _int_env("MAX_WORKERS", 0)
WORKER_RAM_GB = _float_env("WORKER_RAM_GB", 0.5)
SYSTEM_RESERVE_GB = _float_env("SYSTEM_RESERVE_GB", 1.0)

# Per-job deadline in seconds (0 = no deadline)
MAX_JOB_DURATION = _int_env("MAX_JOB_DURATION", 600)

# 0 = keep finished jobs for the lifetime of the process
JOB_RETENTION_HOURS = _float_env("JOB_RETENTION_HOURS", 24)

# ==============================================================================
#  RATE LIMITING
# ==============================================================================

RATE_LIMIT_WINDOW_MS = _int_env("RATE_LIMIT_WINDOW", 60 * 1000)
UPLOAD_RATE_LIMIT_MAX = _int_env("UPLOAD_RATE_LIMIT_MAX", 20)
OCR_RATE_LIMIT_MAX = _int_env("OCR_RATE_LIMIT_MAX", 10)
GLOBAL_RATE_LIMIT_WINDOW_MS = _int_env("GLOBAL_RATE_LIMIT_WINDOW", 15 * 60 * 1000)
GLOBAL_RATE_LIMIT_MAX = _int_env("GLOBAL_RATE_LIMIT_MAX", 1000)

# ==============================================================================
#  RECOGNITION
# ==============================================================================

OCR_ENGINE = os.getenv("OCR_ENGINE", "tesseract").strip().lower()
TESSERACT_LANG = os.getenv("TESSERACT_LANG", "eng")
OCR_MAX_DIMENSION = _int_env("OCR_MAX_DIMENSION", 2048)

VISION_MODEL_NAME = os.getenv("VISION_MODEL_NAME", "Qwen/Qwen3-VL-235B-A22B-Instruct")
VISION_MODEL_URL = os.getenv("VISION_MODEL_URL", "")
VISION_MODEL_API_KEY = os.getenv("VISION_MODEL_API_KEY", "")
VISION_MAX_PIXELS = _int_env("VISION_MAX_PIXELS", 33177600)
VISION_TIMEOUT_SECONDS = _int_env("VISION_TIMEOUT_SECONDS", 120)

# ==============================================================================
#  SERVICE
# ==============================================================================

MIN_DISK_FREE_GB = _float_env("MIN_DISK_FREE_GB", 0.5)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = _int_env("PORT", 8050)

# ==============================================================================
#  SYSTEM PROMPTS
# ==============================================================================

SYSTEM_PROMPT_RECEIPT = """**[System Role]**
You are an expert Optical Character Recognition engine specialised in printed receipts
(fuel stations, repair shops, parts stores).

**[Primary Directive]**
Transcribe ALL text visible on the provided receipt image, line by line, in reading order.

**[Rules]**
1.  **Verbatim:** Keep amounts, dates, unit numbers and addresses exactly as printed.
2.  **Layout:** One printed line per output line. Keep column values on the same line separated by a single space.
3.  **No Commentary:** Output ONLY the transcribed text. No Markdown, no explanations.
4.  **Unreadable Image:** If no text can be read, output nothing.
"""
