"""
Reconciliation sweep: remove source documents whose reference points at a
target that no longer exists.

The sweep is asymmetric. Broken references are deleted; targets that nothing
points at are only reported. Deletion is by identity, never by re-running the
orphan predicate, and is not transactional: committed deletes stay committed
when a later stage fails.

State machine (linear, no retries):

    CONNECTED -> SCANNED -> CLASSIFIED -> APPLIED -> VERIFIED
    any stage failure -> FAILED (terminal, error propagates)
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import DEADLINE_SEC, EXPORT_DIR, EXPORT_ENABLED, PREVIEW_LIMIT, RECORD_LOG
from .errors import (
    RecordMappingError,
    StoreWriteError,
    SweepAborted,
    SweepError,
    VerificationMismatch,
)
from .schema import Record, RecordMapper, Reference, WriteFailure, field_mapper, get_path
from .export import export_orphans
from .run_log import write_run_log
from ..util.logging import audit_event, logger


class SweepState(str, Enum):
    CONNECTED = "CONNECTED"
    SCANNED = "SCANNED"
    CLASSIFIED = "CLASSIFIED"
    APPLIED = "APPLIED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


_ORDER = [SweepState.CONNECTED, SweepState.SCANNED, SweepState.CLASSIFIED, SweepState.APPLIED, SweepState.VERIFIED]


@dataclass
class SweepReport:
    """Machine-readable outcome of one sweep over one Reference."""
    source: str
    field: str
    target: str
    target_field: str
    mode: str  # audit | execute
    started_at: datetime
    state: SweepState = SweepState.CONNECTED
    completed_at: Optional[datetime] = None
    records_scanned: int = 0
    target_ids: int = 0
    orphans_found: int = 0
    orphans_deleted: int = 0
    already_missing: int = 0
    write_failures: List[WriteFailure] = None
    remaining_orphans: Optional[int] = None
    verification_passed: Optional[bool] = None
    unreferenced_targets: Optional[int] = None
    orphan_preview: List[Dict[str, Any]] = None
    deleted_ids: List[Any] = None
    export_path: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.write_failures is None:
            self.write_failures = []
        if self.orphan_preview is None:
            self.orphan_preview = []
        if self.deleted_ids is None:
            self.deleted_ids = []

    @property
    def succeeded(self) -> bool:
        if self.mode == "audit":
            return self.state == SweepState.CLASSIFIED
        return self.state == SweepState.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "source": self.source,
            "field": self.field,
            "target": self.target,
            "target_field": self.target_field,
            "mode": self.mode,
            "state": self.state.value,
            "succeeded": self.succeeded,
            "started_at": self.started_at.isoformat(),
            "records_scanned": self.records_scanned,
            "target_ids": self.target_ids,
            "orphans_found": self.orphans_found,
            "orphans_deleted": self.orphans_deleted,
            "already_missing": self.already_missing,
            "write_failures": [failure.to_dict() for failure in self.write_failures],
            "remaining_orphans": self.remaining_orphans,
            "verification_passed": self.verification_passed,
            "orphan_preview": self.orphan_preview,
            "deleted_ids": [str(doc_id) for doc_id in self.deleted_ids],
            "export_path": self.export_path,
            "error": self.error,
        }
        if self.unreferenced_targets is not None:
            data["unreferenced_targets"] = self.unreferenced_targets
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
            data["duration_sec"] = round((self.completed_at - self.started_at).total_seconds(), 3)
        return data


@dataclass
class DeletionResult:
    deleted_ids: List[Any] = None
    already_missing_ids: List[Any] = None
    failures: List[WriteFailure] = None

    def __post_init__(self):
        if self.deleted_ids is None:
            self.deleted_ids = []
        if self.already_missing_ids is None:
            self.already_missing_ids = []
        if self.failures is None:
            self.failures = []


class SweepGuard:
    """Overall deadline plus cooperative cancellation, checked between units of work."""

    def __init__(self, deadline_sec: Optional[float] = None, cancel_event: Optional[threading.Event] = None):
        self.deadline = time.monotonic() + deadline_sec if deadline_sec else None
        self.cancel_event = cancel_event

    def check(self, stage: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SweepAborted(f"Sweep cancelled before {stage}")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise SweepAborted(f"Sweep deadline exceeded before {stage}")


def _advance(report: SweepReport, state: SweepState, details: Dict[str, Any] = None) -> None:
    if _ORDER.index(state) != _ORDER.index(report.state) + 1:
        raise SweepError(f"Illegal sweep transition {report.state.value} -> {state.value}")
    report.state = state
    logger.log_sweep_stage(state.value.lower(), report.source, report.field, details=details)


@dataclass(frozen=True)
class _BoolKey:
    value: bool


def match_key(value: Any) -> Any:
    """Hashable identity of a reference value. Booleans never equal the integers 0 and 1, as in BSON."""
    return _BoolKey(value) if isinstance(value, bool) else value


def load_reference_sets(store, reference: Reference, mapper: Optional[RecordMapper] = None) -> Tuple[List[Record], Set[Any]]:
    """
    Scan the source collection into Records and collect the valid target ids,
    keyed with `match_key`.

    Two independent full scans; no transaction spans them.

    Raises:
        StoreReadError: If either scan fails
        RecordMappingError: If a source document cannot be mapped
    """
    mapper = mapper or field_mapper(reference.field, reference.id_field)

    records = []
    for document in store.scan(reference.source):
        try:
            records.append(mapper(document))
        except Exception as e:
            doc_id = document.get(reference.id_field) if hasattr(document, "get") else None
            raise RecordMappingError(
                f"Cannot map document {doc_id!r} from '{reference.source}' on field '{reference.field}': {e}"
            ) from e

    valid_target_ids = set()
    for document in store.scan(reference.target, fields=[reference.target_field]):
        value = get_path(document, reference.target_field)
        # Array values count element-wise, like a distinct() over the field
        if isinstance(value, list):
            valid_target_ids.update(match_key(item) for item in value if item is not None and not isinstance(item, (list, dict)))
        elif value is not None and not isinstance(value, dict):
            valid_target_ids.add(match_key(value))

    return records, valid_target_ids


def classify_orphans(records: List[Record], valid_target_ids: Set[Any]) -> List[Record]:
    """A record is an orphan iff its reference is set and points nowhere. Null references never are."""
    return [record for record in records if record.ref is not None and match_key(record.ref) not in valid_target_ids]


def find_unreferenced_targets(records: List[Record], valid_target_ids: Set[Any]) -> Set[Any]:
    """Target ids no source record points at. Reported only, never deleted."""
    referenced = {match_key(record.ref) for record in records if record.ref is not None}
    return valid_target_ids - referenced


def apply_deletion(
    store,
    reference: Reference,
    orphans: List[Record],
    guard: Optional[SweepGuard] = None,
    result: Optional[DeletionResult] = None,
) -> DeletionResult:
    """
    Delete exactly the classified orphans, one identity at a time.

    Failed deletes are collected and the remaining ids are still attempted.
    Documents already gone when their turn comes are counted separately.
    """
    result = result or DeletionResult()
    for record in orphans:
        if guard is not None:
            guard.check("delete")
        try:
            removed = store.delete_by_id(reference.source, reference.id_field, record.id)
        except StoreWriteError as e:
            result.failures.append(WriteFailure(id=record.id, error=str(e)))
            logger.log_write_failure(reference.source, record.id, str(e))
            continue
        if removed:
            result.deleted_ids.append(record.id)
        else:
            result.already_missing_ids.append(record.id)
    return result


def verify_postconditions(store, reference: Reference, mapper: Optional[RecordMapper] = None) -> int:
    """Re-scan and re-classify; returns the number of orphans still present."""
    records, valid_target_ids = load_reference_sets(store, reference, mapper)
    return len(classify_orphans(records, valid_target_ids))


def _preview(orphans: List[Record], limit: int) -> List[Dict[str, Any]]:
    return [{"id": str(record.id), "ref": record.ref if isinstance(record.ref, (str, int, float, bool)) else str(record.ref)}
            for record in orphans[:limit]]


def run_sweep(
    store,
    reference: Reference,
    mapper: Optional[RecordMapper] = None,
    dry_run: bool = False,
    report_unreferenced: bool = False,
    export: Optional[bool] = None,
    export_dir: Optional[str] = None,
    deadline_sec: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    preview_limit: Optional[int] = None,
    record_log: Optional[bool] = None,
) -> SweepReport:
    """
    Run one reconciliation sweep for a single Reference.

    Args:
        store: Connected document store handle
        reference: The reference to enforce
        mapper: Builds a Record from a raw source document
        dry_run: Audit only; classify and report without writing
        report_unreferenced: Also count targets nothing points at
        export: Export orphan documents before deleting them
        export_dir: Base directory for exports
        deadline_sec: Overall deadline; 0 or None disables it
        cancel_event: Cooperative cancellation token
        preview_limit: Number of orphans listed in the report
        record_log: Insert a run log entry into the store

    Returns:
        SweepReport: Completed report

    Raises:
        SweepError: Any stage failure; the report is attached as `error.report`
    """
    export = EXPORT_ENABLED if export is None else export
    deadline_sec = DEADLINE_SEC if deadline_sec is None else deadline_sec
    preview_limit = PREVIEW_LIMIT if preview_limit is None else preview_limit
    record_log = RECORD_LOG if record_log is None else record_log

    report = SweepReport(
        source=reference.source,
        field=reference.field,
        target=reference.target,
        target_field=reference.target_field,
        mode="audit" if dry_run else "execute",
        started_at=datetime.now(),
    )
    guard = SweepGuard(deadline_sec, cancel_event)
    deletion = DeletionResult()
    logger.log_sweep_stage("connected", reference.source, reference.field, details={"reference": reference.describe(), "mode": report.mode})

    try:
        guard.check("scan")
        records, valid_target_ids = load_reference_sets(store, reference, mapper)
        report.records_scanned = len(records)
        report.target_ids = len(valid_target_ids)
        _advance(report, SweepState.SCANNED, {"records_scanned": report.records_scanned, "target_ids": report.target_ids})

        guard.check("classify")
        orphans = classify_orphans(records, valid_target_ids)
        for record in orphans:
            logger.log_orphan_found(reference.source, reference.field, record.id, record.ref)
        report.orphans_found = len(orphans)
        report.orphan_preview = _preview(orphans, preview_limit)
        if report_unreferenced:
            report.unreferenced_targets = len(find_unreferenced_targets(records, valid_target_ids))
        _advance(report, SweepState.CLASSIFIED, {"orphans_found": report.orphans_found})

        if dry_run:
            return report

        if orphans and export:
            manifest = export_orphans(store, reference, orphans, export_dir=export_dir or EXPORT_DIR)
            report.export_path = manifest.path

        guard.check("apply")
        try:
            apply_deletion(store, reference, orphans, guard=guard, result=deletion)
        finally:
            report.deleted_ids = list(deletion.deleted_ids)
            report.orphans_deleted = len(deletion.deleted_ids)
            report.already_missing = len(deletion.already_missing_ids)
            report.write_failures = list(deletion.failures)

        if deletion.failures:
            raise StoreWriteError(
                f"{len(deletion.failures)} of {len(orphans)} deletions failed in '{reference.source}'",
                failures=deletion.failures,
            )
        _advance(report, SweepState.APPLIED, {"orphans_deleted": report.orphans_deleted, "already_missing": report.already_missing})

        guard.check("verify")
        remaining = verify_postconditions(store, reference, mapper)
        report.remaining_orphans = remaining
        report.verification_passed = remaining == 0
        logger.log_verification(reference.source, reference.field, remaining)
        if remaining:
            raise VerificationMismatch(
                f"{remaining} orphans remain in '{reference.source}' for {reference.describe()} after the sweep",
                remaining=remaining,
            )
        _advance(report, SweepState.VERIFIED)
        return report

    except Exception as e:
        last_state = report.state
        report.state = SweepState.FAILED
        report.error = f"{type(e).__name__}: {e}"
        logger.log_sweep_stage("failed", reference.source, reference.field, status="failed", details={"error": report.error})
        if isinstance(e, SweepError):
            e.report = report
            raise
        raise SweepError(
            f"Sweep of {reference.describe()} failed after {last_state.value}: {report.error}",
            report=report,
        ) from e

    finally:
        report.completed_at = datetime.now()
        if record_log and not dry_run:
            write_run_log(store, report)

        audit_event(
            event_type="sweep_completed",
            identifiers={"source": report.source, "field": report.field, "state": report.state.value},
            payload={
                "mode": report.mode,
                "orphans_found": report.orphans_found,
                "orphans_deleted": report.orphans_deleted,
                "write_failures": len(report.write_failures),
                "verification_passed": report.verification_passed,
            },
        )
