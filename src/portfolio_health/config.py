from __future__ import annotations

import logging
import math
import os
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = PROJECT_ROOT / "data"
PROCESSED_DIR = DATA_DIR / "processed"
OUTPUT_DIR = DATA_DIR / "output"

PORTFOLIO_DB_PATH = Path(os.getenv("PH_DB_PATH", "") or PROCESSED_DIR / "portfolio_store.db")
PORTFOLIO_REPORT_PATH = OUTPUT_DIR / "portfolio_health_report.json"

SCHEMA_VERSION = "1.0.0"
PORTFOLIO_SCOPE = "portfolio"

# Health scoring
BASE_SCORE = 100
RECENT_INCIDENT_DAYS = 90
REPEAT_PATTERN_THRESHOLD = 3
SEVERELY_OVERDUE_DAYS = 30

# Incident analysis
ANALYSIS_WINDOW_DAYS = 365
CLOSURE_ANALYSIS_THRESHOLD = 2
HIGH_VOLUME_MIN_INCIDENTS = 5
HIGH_VOLUME_URGENT_INCIDENTS = 10
PORTFOLIO_HOTSPOT_MIN_INCIDENTS = 10
CROSS_APP_MIN_INCIDENTS = 5
CROSS_APP_MIN_APPLICATIONS = 2
TECHNICAL_DEBT_MIN_INCIDENTS = 2
BANDAID_CLOSE_CODE_TERMS = ("band-aid", "bandaid", "workaround", "temporary")
MAX_RELATED_INCIDENTS = 5

# Import gate
DEFAULT_IMPORT_STALE_SEC = 3600.0
DEFAULT_MAX_WORKERS = 4


def read_env_float(name: str, *, default: float, minimum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return max(minimum, default)
    try:
        value = float(raw)
    except ValueError:
        return max(minimum, default)
    if not math.isfinite(value):
        return max(minimum, default)
    return max(minimum, value)


def read_env_int(name: str, *, default: int, minimum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return max(minimum, default)
    try:
        value = int(raw)
    except ValueError:
        return max(minimum, default)
    return max(minimum, value)


def import_stale_seconds() -> float:
    return read_env_float("PH_IMPORT_STALE_SEC", default=DEFAULT_IMPORT_STALE_SEC, minimum=1.0)


def max_workers() -> int:
    return read_env_int("PH_MAX_WORKERS", default=DEFAULT_MAX_WORKERS, minimum=1)


def configure_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """Route logging to stderr through rich so script stdout stays clean JSON.

    The level comes from ``level`` or ``PH_LOG_LEVEL`` and defaults to WARNING.
    ``log_file`` (or ``PH_LOG_FILE``) adds a plain-text file handler.
    """
    name = str(level or os.getenv("PH_LOG_LEVEL", "WARNING")).strip().upper()
    resolved = getattr(logging, name, None)
    if not isinstance(resolved, int):
        resolved = logging.WARNING
    verbose = resolved <= logging.DEBUG

    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            tracebacks_show_locals=verbose,
            markup=False,
            show_time=True,
            show_path=verbose,
        )
    ]
    target = log_file or os.getenv("PH_LOG_FILE")
    if target:
        file_handler = logging.FileHandler(target, mode="a")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=resolved, format="%(message)s", datefmt="[%X]", handlers=handlers, force=True)
    logger = logging.getLogger("portfolio_health")
    logger.setLevel(resolved)
    return logger
