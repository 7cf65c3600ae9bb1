"""
Environment-driven configuration for the reconciliation sweep.

Values are read once at import time after loading a local .env file, so a
shell export always wins over the file.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Store connection
MONGODB_URI = os.getenv("MONGODB_URI")
MONGODB_DB = os.getenv("MONGODB_DB")
SERVER_TIMEOUT_MS = int(os.getenv("SWEEP_SERVER_TIMEOUT_MS", "10000"))
SOCKET_TIMEOUT_MS = int(os.getenv("SWEEP_SOCKET_TIMEOUT_MS", "60000"))

# Sweep behaviour
DEADLINE_SEC = float(os.getenv("SWEEP_DEADLINE_SEC", "0"))  # 0 disables the deadline
PREVIEW_LIMIT = int(os.getenv("SWEEP_PREVIEW_LIMIT", "30"))

# Orphan export before deletion
EXPORT_DIR = os.getenv("SWEEP_EXPORT_DIR", "./backups")
EXPORT_ENABLED = os.getenv("SWEEP_EXPORT_ENABLED", "true").lower() == "true"
EXPORT_ENCRYPT = os.getenv("SWEEP_EXPORT_ENCRYPT", "false").lower() == "true"

# Run log entries written to the store
LOG_COLLECTION = os.getenv("SWEEP_LOG_COLLECTION", "sweep_logs")
RECORD_LOG = os.getenv("SWEEP_RECORD_LOG", "false").lower() == "true"

VERSION = "1.0.0"


def get_export_password():
    """Passphrase for encrypted exports. Read lazily so it never sits in a module constant."""
    return os.getenv("SWEEP_EXPORT_PASSWORD")


def ensure_export_directory(path: str = None) -> Path:
    """Ensure the export directory exists and return it."""
    export_dir = Path(path or EXPORT_DIR)
    export_dir.mkdir(parents=True, exist_ok=True)
    return export_dir


def validate_sweep_config():
    """Validate sweep configuration and return any issues."""
    issues = []

    if not MONGODB_URI:
        issues.append("MONGODB_URI is not set")

    if SERVER_TIMEOUT_MS < 1:
        issues.append("SWEEP_SERVER_TIMEOUT_MS must be >= 1")

    if SOCKET_TIMEOUT_MS < 1:
        issues.append("SWEEP_SOCKET_TIMEOUT_MS must be >= 1")

    if DEADLINE_SEC < 0:
        issues.append("SWEEP_DEADLINE_SEC must be >= 0")

    if PREVIEW_LIMIT < 0:
        issues.append("SWEEP_PREVIEW_LIMIT must be >= 0")

    if EXPORT_ENCRYPT and not get_export_password():
        issues.append("SWEEP_EXPORT_ENCRYPT requires SWEEP_EXPORT_PASSWORD")

    return issues
