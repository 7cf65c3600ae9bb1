"""
Tests for the reconciliation sweep: classification, deletion, verification
and the failure paths of the state machine.
"""

import itertools
import threading
from unittest.mock import patch

import pytest

from docsweep.core.errors import (
    RecordMappingError,
    StoreReadError,
    StoreWriteError,
    SweepAborted,
    SweepError,
    VerificationMismatch,
)
from docsweep.core.schema import Record, Reference, field_mapper
from docsweep.core.sweep import (
    DeletionResult,
    SweepGuard,
    SweepReport,
    SweepState,
    _advance,
    apply_deletion,
    classify_orphans,
    find_unreferenced_targets,
    load_reference_sets,
    run_sweep,
    verify_postconditions,
)

VENDOR_REF = Reference(source="productvendors", field="vendorId", target="vendors")
SIMPLE_REF = Reference(source="links", field="targetId", target="targets")


def _sweep(store, reference=SIMPLE_REF, **kwargs):
    kwargs.setdefault("export", False)
    kwargs.setdefault("record_log", False)
    return run_sweep(store, reference, **kwargs)


class TestClassifyOrphans:
    """Test the orphan predicate."""

    def test_missing_target_is_orphan(self):
        records = [Record(id="A", ref=1), Record(id="B", ref=99)]

        orphans = classify_orphans(records, {1})

        assert [record.id for record in orphans] == ["B"]

    def test_null_reference_is_never_orphan(self):
        records = [Record(id="C", ref=None)]

        assert classify_orphans(records, set()) == []

    def test_empty_source(self):
        assert classify_orphans([], {1, 2}) == []

    def test_every_dangling_reference_is_classified(self):
        valid = {1, 2, 3}
        records = [Record(id=i, ref=ref) for i, ref in enumerate([1, 4, None, 3, 5, None, 2])]

        orphan_ids = {record.id for record in classify_orphans(records, valid)}

        assert orphan_ids == {1, 4}

    def test_boolean_reference_does_not_match_integer_id(self, make_store):
        store = make_store({
            "links": [{"_id": "A", "targetId": True}, {"_id": "B", "targetId": 0}, {"_id": "C", "targetId": 1}],
            "targets": [{"_id": "t1", "id": 1}, {"_id": "t2", "id": False}],
        })

        records, valid = load_reference_sets(store, SIMPLE_REF)
        orphan_ids = [record.id for record in classify_orphans(records, valid)]

        assert len(valid) == 2
        assert orphan_ids == ["A", "B"]

    def test_boolean_reference_matches_boolean_target(self, make_store):
        store = make_store({"links": [{"_id": "A", "targetId": True}], "targets": [{"_id": "t1", "id": True}]})

        records, valid = load_reference_sets(store, SIMPLE_REF)

        assert classify_orphans(records, valid) == []
        assert find_unreferenced_targets(records, valid) == set()

    def test_unreferenced_targets_reported(self):
        records = [Record(id="A", ref=1), Record(id="B", ref=None)]

        assert find_unreferenced_targets(records, {1, 2, 3}) == {2, 3}


class TestLoadReferenceSets:
    """Test the two scans feeding classification."""

    def test_loads_records_and_target_ids(self, vendor_store):
        records, valid = load_reference_sets(vendor_store, VENDOR_REF)

        assert [record.id for record in records] == ["A", "B", "C", "D"]
        assert records[3].ref is None
        assert valid == {"V1", "V2"}
        assert vendor_store.scan_calls == ["productvendors", "vendors"]

    def test_custom_target_field(self, make_store):
        store = make_store({
            "grns": [{"_id": 1, "poNumber": "PO-1"}, {"_id": 2, "poNumber": "PO-2"}],
            "purchaseorders": [{"_id": "x", "client_po_number": "PO-1"}, {"_id": "y", "client_po_number": None}],
        })
        reference = Reference(source="grns", field="poNumber", target="purchaseorders", target_field="client_po_number")

        records, valid = load_reference_sets(store, reference)

        assert valid == {"PO-1"}
        assert [record.id for record in classify_orphans(records, valid)] == [2]

    def test_dotted_reference_path(self, make_store):
        store = make_store({
            "links": [{"_id": 1, "meta": {"targetId": 5}}, {"_id": 2, "meta": {}}],
            "targets": [{"_id": "t", "id": 6}],
        })
        reference = Reference(source="links", field="meta.targetId", target="targets")

        records, valid = load_reference_sets(store, reference)

        assert records == [Record(id=1, ref=5), Record(id=2, ref=None)]

    def test_array_target_values_count_elementwise(self, make_store):
        store = make_store({"links": [], "targets": [{"_id": "t", "id": [1, 2]}]})

        _, valid = load_reference_sets(store, SIMPLE_REF)

        assert valid == {1, 2}

    def test_custom_mapper(self, make_store):
        store = make_store({
            "links": [{"key": "k1", "target": {"ref": 1}}],
            "targets": [{"_id": "t", "id": 1}],
        })

        records, _ = load_reference_sets(store, SIMPLE_REF, mapper=lambda doc: Record(id=doc["key"], ref=doc["target"]["ref"]))

        assert records == [Record(id="k1", ref=1)]

    def test_unmappable_document(self, make_store):
        store = make_store({"links": [{"_id": 1, "targetId": [1, 2]}], "targets": []})

        with pytest.raises(RecordMappingError, match="links"):
            load_reference_sets(store, SIMPLE_REF)

    def test_missing_identity(self):
        with pytest.raises(ValueError):
            field_mapper("targetId")({"targetId": 1})


class TestSweepScenarios:
    """End-to-end sweeps over small stores."""

    def test_broken_reference_deleted(self, make_store):
        store = make_store({
            "links": [{"_id": "A", "targetId": 1}, {"_id": "B", "targetId": 99}],
            "targets": [{"_id": "t1", "id": 1}],
        })

        report = _sweep(store)

        assert report.orphans_found == 1
        assert report.orphans_deleted == 1
        assert report.deleted_ids == ["B"]
        assert store.ids("links") == ["A"]
        assert report.verification_passed is True
        assert report.remaining_orphans == 0
        assert report.state == SweepState.VERIFIED
        assert report.succeeded

    def test_null_reference_kept(self, make_store):
        store = make_store({"links": [{"_id": "C", "targetId": None}], "targets": []})

        report = _sweep(store)

        assert report.orphans_found == 0
        assert store.ids("links") == ["C"]
        assert store.delete_calls == []

    def test_empty_source(self, make_store):
        store = make_store({"links": [], "targets": [{"_id": "t1", "id": 1}]})

        report = _sweep(store)

        assert report.records_scanned == 0
        assert report.orphans_found == 0
        assert store.delete_calls == []
        assert report.verification_passed is True
        assert report.state == SweepState.VERIFIED

    def test_second_run_is_a_no_op(self, vendor_store):
        first = _sweep(vendor_store, VENDOR_REF)
        deletes_after_first = len(vendor_store.delete_calls)

        second = _sweep(vendor_store, VENDOR_REF)

        assert first.orphans_deleted == 1
        assert second.orphans_found == 0
        assert second.orphans_deleted == 0
        assert len(vendor_store.delete_calls) == deletes_after_first

    def test_post_sweep_classification_is_empty(self, vendor_store):
        _sweep(vendor_store, VENDOR_REF)

        assert verify_postconditions(vendor_store, VENDOR_REF) == 0

    def test_unreferenced_targets_are_not_deleted(self, vendor_store):
        report = _sweep(vendor_store, VENDOR_REF, report_unreferenced=True)

        assert report.unreferenced_targets == 1
        assert vendor_store.ids("vendors") == ["v-1", "v-2"]
        assert all(collection == "productvendors" for collection, _ in vendor_store.delete_calls)


class TestAuditMode:
    """Test dry-run sweeps."""

    def test_audit_performs_no_writes(self, vendor_store):
        report = _sweep(vendor_store, VENDOR_REF, dry_run=True)

        assert report.mode == "audit"
        assert report.state == SweepState.CLASSIFIED
        assert report.orphans_found == 1
        assert report.orphan_preview == [{"id": "B", "ref": "V99"}]
        assert report.verification_passed is None
        assert report.succeeded
        assert vendor_store.delete_calls == []
        assert vendor_store.ids("productvendors") == ["A", "B", "C", "D"]

    def test_preview_limit(self, make_store):
        store = make_store({"links": [{"_id": i, "targetId": i} for i in range(10)], "targets": []})

        report = _sweep(store, dry_run=True, preview_limit=3)

        assert report.orphans_found == 10
        assert len(report.orphan_preview) == 3


class TestExactDeletion:
    """Deletion acts on classified identities, not on a re-evaluated predicate."""

    def test_record_fixed_after_classification_is_still_deleted(self, make_store):
        store = make_store({
            "links": [{"_id": "A", "targetId": 1}, {"_id": "B", "targetId": 99}],
            "targets": [{"_id": "t1", "id": 1}],
        })

        def concurrent_fix(s, doc_id):
            for doc in s.collections["links"]:
                doc["targetId"] = 1

        store.before_delete = concurrent_fix

        report = _sweep(store)

        assert report.deleted_ids == ["B"]
        assert store.delete_calls == [("links", "B")]
        assert store.ids("links") == ["A"]

    def test_new_orphan_after_classification_is_not_deleted(self, make_store):
        store = make_store({
            "links": [{"_id": "A", "targetId": 1}, {"_id": "B", "targetId": 99}],
            "targets": [{"_id": "t1", "id": 1}],
        })

        def concurrent_insert(s, doc_id):
            if not any(doc["_id"] == "E" for doc in s.collections["links"]):
                s.collections["links"].append({"_id": "E", "targetId": 42})

        store.before_delete = concurrent_insert

        with pytest.raises(VerificationMismatch) as exc:
            _sweep(store)

        report = exc.value.report
        assert exc.value.remaining == 1
        assert report.state == SweepState.FAILED
        assert report.deleted_ids == ["B"]
        assert report.remaining_orphans == 1
        assert report.verification_passed is False
        # Committed deletions are not rolled back
        assert store.ids("links") == ["A", "E"]

    def test_already_deleted_record_counted_separately(self, make_store):
        store = make_store({"links": [{"_id": "B", "targetId": 99}], "targets": []})

        def concurrent_delete(s, doc_id):
            s.collections["links"] = [doc for doc in s.collections["links"] if doc["_id"] != doc_id]

        store.before_delete = concurrent_delete

        report = _sweep(store)

        assert report.orphans_deleted == 0
        assert report.already_missing == 1
        assert report.state == SweepState.VERIFIED


class TestFailures:
    """Test failure propagation and the FAILED state."""

    def test_write_failure_is_best_effort(self, make_store):
        store = make_store({
            "links": [{"_id": "B", "targetId": 99}, {"_id": "C", "targetId": 98}],
            "targets": [],
        })
        store.fail_delete_ids = {"B"}

        with pytest.raises(StoreWriteError) as exc:
            _sweep(store)

        report = exc.value.report
        assert [failure.id for failure in exc.value.failures] == ["B"]
        assert report.state == SweepState.FAILED
        assert report.orphans_deleted == 1
        assert [failure.id for failure in report.write_failures] == ["B"]
        assert "injected" in report.write_failures[0].error
        assert store.ids("links") == ["B"]
        assert not report.succeeded

    def test_read_failure_aborts_before_classification(self, vendor_store):
        vendor_store.fail_scan = {"vendors"}

        with pytest.raises(StoreReadError) as exc:
            _sweep(vendor_store, VENDOR_REF)

        assert exc.value.collection == "vendors"
        assert exc.value.report.state == SweepState.FAILED
        assert exc.value.report.orphans_found == 0
        assert vendor_store.delete_calls == []

    def test_mapper_crash_surfaces_as_mapping_error(self, make_store):
        store = make_store({"links": [{"_id": "A", "meta": None}], "targets": []})

        def nested_mapper(doc):
            return Record(id=doc["_id"], ref=doc["meta"].get("targetId"))

        with pytest.raises(RecordMappingError) as exc:
            _sweep(store, mapper=nested_mapper)

        assert "'A'" in str(exc.value)
        assert "links" in str(exc.value)
        assert isinstance(exc.value.__cause__, AttributeError)
        assert exc.value.report.state == SweepState.FAILED

    def test_unexpected_error_is_wrapped_with_report(self, make_store):
        store = make_store({"links": [{"_id": "B", "targetId": 99}], "targets": []})

        def broken_driver(s, doc_id):
            raise RuntimeError("driver exploded")

        store.before_delete = broken_driver

        with pytest.raises(SweepError) as exc:
            _sweep(store)

        assert isinstance(exc.value.__cause__, RuntimeError)
        assert "links.targetId" in str(exc.value)
        assert "after CLASSIFIED" in str(exc.value)
        assert exc.value.report.state == SweepState.FAILED
        assert "RuntimeError: driver exploded" in exc.value.report.error

    def test_failure_message_recorded(self, vendor_store):
        vendor_store.fail_scan = {"productvendors"}

        with pytest.raises(StoreReadError) as exc:
            _sweep(vendor_store, VENDOR_REF)

        assert "StoreReadError" in exc.value.report.error
        assert exc.value.report.to_dict()["state"] == "FAILED"


class TestCancellationAndDeadline:
    """Test cooperative cancellation and the overall deadline."""

    def test_cancel_before_start(self, vendor_store):
        event = threading.Event()
        event.set()

        with pytest.raises(SweepAborted, match="cancelled"):
            _sweep(vendor_store, VENDOR_REF, cancel_event=event)

        assert vendor_store.scan_calls == []

    def test_cancel_during_deletion_keeps_committed_deletes(self, make_store):
        store = make_store({"links": [{"_id": i, "targetId": 100 + i} for i in range(3)], "targets": []})
        event = threading.Event()
        store.before_delete = lambda s, doc_id: event.set()

        with pytest.raises(SweepAborted) as exc:
            _sweep(store, cancel_event=event)

        assert exc.value.report.orphans_deleted == 1
        assert exc.value.report.state == SweepState.FAILED
        assert store.ids("links") == [1, 2]

    def test_deadline_exceeded(self, vendor_store):
        clock = itertools.chain([0.0], itertools.repeat(10.0))
        with patch("docsweep.core.sweep.time") as mock_time:
            mock_time.monotonic.side_effect = lambda: next(clock)
            with pytest.raises(SweepAborted, match="deadline"):
                _sweep(vendor_store, VENDOR_REF, deadline_sec=5)

        assert vendor_store.delete_calls == []

    def test_zero_deadline_disables_guard(self):
        guard = SweepGuard(deadline_sec=0)

        assert guard.deadline is None
        guard.check("scan")


class TestStateMachine:
    """Test report transitions and serialization."""

    def _report(self):
        from datetime import datetime
        return SweepReport(source="s", field="f", target="t", target_field="id", mode="execute", started_at=datetime.now())

    def test_transitions_are_linear(self):
        report = self._report()

        _advance(report, SweepState.SCANNED)

        with pytest.raises(SweepError, match="Illegal sweep transition"):
            _advance(report, SweepState.APPLIED)

    def test_to_dict_is_machine_readable(self, vendor_store):
        data = _sweep(vendor_store, VENDOR_REF).to_dict()

        for key in ("records_scanned", "orphans_found", "orphans_deleted", "verification_passed", "state"):
            assert key in data
        assert data["records_scanned"] == 4
        assert data["orphans_found"] == 1
        assert data["orphans_deleted"] == 1
        assert data["verification_passed"] is True
        assert "duration_sec" in data
        assert "unreferenced_targets" not in data

    def test_apply_deletion_fills_given_result(self, vendor_store):
        result = DeletionResult()

        returned = apply_deletion(vendor_store, VENDOR_REF, [Record(id="B", ref="V99")], result=result)

        assert returned is result
        assert result.deleted_ids == ["B"]


class TestRunLog:
    """Test run log entries written to the store."""

    def test_live_sweep_writes_run_log(self, vendor_store):
        _sweep(vendor_store, VENDOR_REF, record_log=True)

        entries = vendor_store.collections["sweep_logs"]
        assert len(entries) == 1
        assert entries[0]["action"] == "ORPHAN_SWEEP"
        assert entries[0]["state"] == "VERIFIED"
        assert entries[0]["orphansDeleted"] == 1

    def test_audit_does_not_write_run_log(self, vendor_store):
        _sweep(vendor_store, VENDOR_REF, dry_run=True, record_log=True)

        assert "sweep_logs" not in vendor_store.collections

    def test_run_log_failure_does_not_fail_sweep(self, vendor_store):
        vendor_store.fail_insert = True

        report = _sweep(vendor_store, VENDOR_REF, record_log=True)

        assert report.state == SweepState.VERIFIED

    def test_failed_sweep_is_logged(self, vendor_store):
        vendor_store.fail_delete_ids = {"B"}

        with pytest.raises(StoreWriteError):
            _sweep(vendor_store, VENDOR_REF, record_log=True)

        entry = vendor_store.collections["sweep_logs"][0]
        assert entry["state"] == "FAILED"
        assert entry["writeFailures"] == 1
