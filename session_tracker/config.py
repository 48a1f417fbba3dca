"""Session tracker configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Project root (one level up from session_tracker/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Transcript root: <root>/<project>/<session-id>.jsonl
SESSIONS_DIR = Path(
    os.getenv("SESSION_TRACKER_SESSIONS_DIR", str(Path.home() / ".claude" / "projects"))
).expanduser()

# Database
DB_PATH = Path(
    os.getenv("SESSION_TRACKER_DB_PATH", str(PROJECT_ROOT / "data" / "sessions.db"))
).expanduser()

# Discovery + live tracking
SCAN_INTERVAL_SECONDS = _env_float("SESSION_TRACKER_SCAN_INTERVAL_SECONDS", 2.0)
NEW_SESSION_THRESHOLD_SECONDS = _env_float("SESSION_TRACKER_NEW_SESSION_THRESHOLD_SECONDS", 30.0)
FILE_WATCH_INTERVAL_SECONDS = _env_float("SESSION_TRACKER_FILE_WATCH_INTERVAL_SECONDS", 0.5)
UPDATE_THROTTLE_SECONDS = _env_float("SESSION_TRACKER_UPDATE_THROTTLE_SECONDS", 0.25)
LIVE_SESSION_THRESHOLD_SECONDS = _env_float("SESSION_TRACKER_LIVE_SESSION_THRESHOLD_SECONDS", 5 * 60.0)
LIVE_FILE_THRESHOLD_SECONDS = _env_float("SESSION_TRACKER_LIVE_FILE_THRESHOLD_SECONDS", 30.0)
BATCH_SIZE = max(1, _env_int("SESSION_TRACKER_BATCH_SIZE", 10))
SCHEDULER_ENABLED = _env_bool("SESSION_TRACKER_SCHEDULER_ENABLED", True)

# Parsing
RESULT_PREVIEW_CHARS = _env_int("SESSION_TRACKER_RESULT_PREVIEW_CHARS", 500)

# Pricing overrides (YAML)
PRICING_FILE = os.getenv("SESSION_TRACKER_PRICING_FILE", "")

# Observability
OTEL_ENABLED = _env_bool("SESSION_TRACKER_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SESSION_TRACKER_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SESSION_TRACKER_OTEL_SERVICE_NAME", "session-tracker")
PROM_PORT = _env_int("SESSION_TRACKER_PROM_PORT", 9464)

# Event stream
EVENT_QUEUE_SIZE = _env_int("SESSION_TRACKER_EVENT_QUEUE_SIZE", 256)

# Server settings
HOST = os.getenv("SESSION_TRACKER_HOST", "127.0.0.1")
PORT = _env_int("SESSION_TRACKER_PORT", 8000)

# CORS
FRONTEND_ORIGIN = os.getenv("SESSION_TRACKER_FRONTEND_ORIGIN", "http://localhost:3000")
