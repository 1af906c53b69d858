import os
import re
import shutil
import logging
import secrets
from pathlib import Path
from typing import Optional, Tuple

import psutil

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    """Removes potentially dangerous characters from filename."""
    filename = os.path.basename(filename.replace("\\", "/"))
    filename = filename.replace("\x00", "")
    filename = re.sub(r'[<>:"/\\|?*\x00-\x1f]', '_', filename)
    filename = filename.strip('. ')
    name, ext = os.path.splitext(filename)
    if len(name) > 200:
        name = name[:200]
    if not name:
        name = f"upload_{secrets.token_hex(4)}"
    return f"{name}{ext}"


def get_client_ip(request) -> str:
    """Extract client IP, respecting proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def cleanup_resource(path: Optional[Path], context: str = "") -> bool:
    """
    Deletes a file or directory. Never raises: failures are logged and
    reported through the return value so callers can keep cleaning up.
    """
    if path is None:
        return True
    path = Path(path)
    prefix = f"{context} " if context else ""
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        logger.debug(f"{prefix}Removed {path.name}")
        return True
    except OSError as e:
        logger.warning(f"{prefix}Failed to remove {path}: {e}")
        return False


def get_optimal_worker_count(ram_per_worker_gb: float = 0.5, system_reserve_gb: float = 1.0) -> int:
    """
    Calculates safe worker count based on Available RAM vs CPU Cores.

    RAM is the binding constraint (each pipeline holds a decoded image),
    and pipeline stages are CPU-bound, so never exceed the core count.
    At least 2 workers so one stuck job does not block the queue.
    """
    total_ram_gb = psutil.virtual_memory().total / (1024 ** 3)
    available_ram_gb = max(0.0, total_ram_gb - system_reserve_gb)
    ram_based_limit = int(available_ram_gb / ram_per_worker_gb)
    cpu_count = os.cpu_count() or 2

    optimal_workers = max(2, min(ram_based_limit, cpu_count))

    logger.info(
        f"[ResourceMonitor] Worker calc: "
        f"RAM={total_ram_gb:.1f}GB, "
        f"safe={available_ram_gb:.1f}GB, "
        f"CPU={cpu_count}, "
        f"ram_limit={ram_based_limit}, "
        f"optimal={optimal_workers}"
    )
    return optimal_workers


class ResourceMonitor:
    """System resource figures for /health and upload admission control."""

    @staticmethod
    def available_ram_mb() -> float:
        return psutil.virtual_memory().available / (1024 ** 2)

    @staticmethod
    def cpu_count() -> int:
        return os.cpu_count() or 2

    @staticmethod
    def load_avg() -> float:
        try:
            return os.getloadavg()[0]
        except (OSError, AttributeError):
            return 0.0

    @staticmethod
    def disk_free_gb(path: Path) -> float:
        try:
            usage = shutil.disk_usage(path)
            return usage.free / (1024 ** 3)
        except OSError:
            return 999.0  # If we can't check, don't block

    @classmethod
    def can_accept_upload(cls, output_dir: Path, min_disk_free_gb: float) -> Tuple[bool, str]:
        free_gb = cls.disk_free_gb(output_dir)
        if free_gb < min_disk_free_gb:
            return False, f"Low disk space: {free_gb:.1f}GB free (min: {min_disk_free_gb}GB)"
        return True, "ok"
