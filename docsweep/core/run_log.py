"""
Run log entries stored next to the data, one document per live sweep.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from .config import LOG_COLLECTION, VERSION
from .errors import StoreWriteError
from ..util.logging import logger


def build_run_log_entry(report) -> dict:
    """Shape a sweep report into a run log document."""
    return {
        "entityType": "Reference",
        "entityId": f"{report.source}.{report.field}->{report.target}.{report.target_field}",
        "action": "ORPHAN_SWEEP",
        "state": report.state.value,
        "mode": report.mode,
        "recordsScanned": report.records_scanned,
        "orphansFound": report.orphans_found,
        "orphansDeleted": report.orphans_deleted,
        "alreadyMissing": report.already_missing,
        "writeFailures": len(report.write_failures),
        "verificationPassed": report.verification_passed,
        "exportPath": report.export_path,
        "error": report.error,
        "source": f"docsweep/{VERSION}",
        "timestamp": datetime.now(timezone.utc),
    }


def write_run_log(store, report, collection: Optional[str] = None) -> Optional[Any]:
    """Insert a run log entry. Failures are logged and never change the sweep outcome."""
    collection = collection or LOG_COLLECTION
    try:
        inserted_id = store.insert(collection, build_run_log_entry(report))
    except StoreWriteError as e:
        logger.warning(f"Failed to write run log to '{collection}': {e}")
        return None

    logger.log_operation("run_log.write", "success", {"collection": collection, "id": str(inserted_id)})
    return inserted_id
