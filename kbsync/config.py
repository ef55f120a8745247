"""kbsync Backend Configuration."""
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


def _env_mapping(name: str, default: dict[str, str]) -> dict[str, str]:
    """Parse ``slug=Name,slug2=Name 2`` style variables."""
    value = os.getenv(name)
    if not value:
        return dict(default)
    parsed: dict[str, str] = {}
    for chunk in value.split(","):
        key, sep, label = chunk.partition("=")
        key = key.strip()
        if not key:
            continue
        parsed[key] = label.strip() if sep and label.strip() else key
    return parsed


# Project root (one level up from kbsync/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Knowledge base
KNOWLEDGE_BASE_PATH = Path(
    os.getenv("KNOWLEDGE_BASE_PATH", str(PROJECT_ROOT / "content"))
).expanduser()
SCAN_MAX_DEPTH = _env_int("KBSYNC_SCAN_MAX_DEPTH", 4)
# "slug": a project whose parent slug changed adopts its old record.
# "strict": the (org, parent, slug) scope must match exactly.
PARENT_MATCH = os.getenv("KBSYNC_PARENT_MATCH", "slug").strip().lower() or "slug"

ORG_NAMES = _env_mapping(
    "KBSYNC_ORG_NAMES",
    {
        "acme-corp": "Acme Corp",
        "example-org": "Centre for Example Org",
        "consulting": "Consulting",
        "personal": "Personal",
        "pricedout": "PricedOut",
        "other": "Other",
    },
)

# Database
DB_PATH = Path(os.getenv("KBSYNC_DB_PATH", str(PROJECT_ROOT / "data" / "kbsync.db")))

# Change notifications
EVENT_BUFFER_SIZE = _env_int("KBSYNC_EVENT_BUFFER_SIZE", 100)
SUBSCRIBER_QUEUE_SIZE = _env_int("KBSYNC_SUBSCRIBER_QUEUE_SIZE", 256)
STREAM_PING_SECONDS = _env_int("KBSYNC_STREAM_PING_SECONDS", 15)

# Observability
OTEL_ENABLED = _env_bool("KBSYNC_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("KBSYNC_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("KBSYNC_OTEL_SERVICE_NAME", "kbsync-backend")
PROM_PORT = _env_int("KBSYNC_PROM_PORT", 9464)

# Startup / watcher
STARTUP_SYNC = _env_bool("KBSYNC_STARTUP_SYNC", True)
STARTUP_SYNC_DELAY_SECONDS = _env_int("KBSYNC_STARTUP_SYNC_DELAY_SECONDS", 2)
WATCH_ENABLED = _env_bool("KBSYNC_WATCH_ENABLED", True)

# Server settings
HOST = os.getenv("KBSYNC_HOST", "0.0.0.0")
PORT = _env_int("KBSYNC_PORT", 3004)

# CORS
FRONTEND_ORIGIN = os.getenv("KBSYNC_FRONTEND_ORIGIN", "http://localhost:3000")
