"""
Command-line entry point for reconciliation sweeps.
"""

import argparse
import json
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from docsweep.core.config import MONGODB_URI, validate_sweep_config
from docsweep.core.errors import StoreConnectionError, SweepError
from docsweep.core.plan import PlanError, load_plan, run_plan
from docsweep.core.schema import Reference
from docsweep.core.store import connect_store
from docsweep.core.sweep import run_sweep

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ORPHANS_FOUND = 2


def format_report(data: Dict[str, Any]) -> str:
    """Format a sweep report dictionary for display."""
    lines = []

    lines.append(f"Reference: {data['source']}.{data['field']} -> {data['target']}.{data['target_field']}")
    lines.append(f"Mode: {data['mode'].upper()}")
    if "duration_sec" in data:
        lines.append(f"Duration: {data['duration_sec']:.2f} seconds")

    if data.get("error"):
        lines.append(f"Status: FAILED in state {data['state']} ({data['error']})")
    elif data["orphans_found"] and data["mode"] == "audit":
        lines.append(f"Status: ORPHANS FOUND ({data['orphans_found']})")
    else:
        lines.append(f"Status: SUCCESS ({data['state']})")

    lines.append(f"Records scanned: {data['records_scanned']}")
    lines.append(f"Valid target ids: {data['target_ids']}")
    lines.append(f"Orphans found: {data['orphans_found']}")
    if data["mode"] == "execute":
        lines.append(f"Orphans deleted: {data['orphans_deleted']}")
        if data["already_missing"]:
            lines.append(f"Already missing: {data['already_missing']}")
        if data["verification_passed"] is not None:
            lines.append(f"Verification: {'PASSED' if data['verification_passed'] else 'FAILED'}"
                         f" ({data['remaining_orphans']} remaining)")
    if "unreferenced_targets" in data:
        lines.append(f"Unreferenced targets (report only): {data['unreferenced_targets']}")
    if data.get("export_path"):
        lines.append(f"Export: {data['export_path']}")

    if data["write_failures"]:
        lines.append("Write failures:")
        for failure in data["write_failures"]:
            lines.append(f"  - {failure['id']}: {failure['error']}")

    if data["orphan_preview"]:
        lines.append("Orphans:")
        for orphan in data["orphan_preview"]:
            lines.append(f"  - id={orphan['id']} {data['field']}={orphan['ref']}")
        hidden = data["orphans_found"] - len(data["orphan_preview"])
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")

    return "\n".join(lines)


def format_plan(data: Dict[str, Any]) -> str:
    """Format a plan report dictionary for display."""
    sections = [format_report(sweep) for sweep in data["sweeps"]]
    summary = data["summary"]
    footer = [
        "=" * 60,
        f"Plan status: {data['status'].upper()}{' (aborted)' if data['aborted'] else ''}",
        f"Sweeps: {summary['total']} run, {summary['passed']} passed, {summary['failed']} failed, {summary['skipped']} skipped",
        f"Orphans: {summary['orphans_found']} found, {summary['orphans_deleted']} deleted",
    ]
    for error in data["errors"]:
        footer.append(f"  - {error}")
    return ("\n" + "-" * 60 + "\n").join(sections + ["\n".join(footer)])


def install_interrupt_handler(cancel_event: threading.Event):
    """
    First Ctrl-C requests a cooperative stop; the previous handler is put back
    so a second Ctrl-C interrupts immediately. Returns the previous handler.
    """
    previous_handler = signal.getsignal(signal.SIGINT)

    def _request_cancel(signum, frame):
        cancel_event.set()
        signal.signal(signal.SIGINT, previous_handler)
        print("Interrupt received: stopping after the current step (press Ctrl-C again to abort now)",
              file=sys.stderr)

    signal.signal(signal.SIGINT, _request_cancel)
    return previous_handler


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="docsweep",
        description="Detect and remove documents whose reference points at a missing target",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --source invoices --field grnId --target grns                # Audit only
  %(prog)s --source invoices --field grnId --target grns --execute      # Delete orphans
  %(prog)s --source grns --field poNumber --target purchaseorders --target-field client_po_number
  %(prog)s --plan sweep-plan.json --execute --json                      # Several references in order

Environment variables:
- MONGODB_URI (required unless --uri is given)
- MONGODB_DB (database name when the URI has none)
- SWEEP_EXPORT_DIR=./backups (orphan exports)
- SWEEP_DEADLINE_SEC=0 (overall deadline, 0 disables)
        """
    )

    parser.add_argument("--uri", help="MongoDB connection string (overrides MONGODB_URI)")
    parser.add_argument("--database", "-d", help="Database name (overrides MONGODB_DB)")

    parser.add_argument("--source", "-s", help="Collection holding the reference field")
    parser.add_argument("--field", "-f", help="Reference field on the source documents (dotted paths allowed)")
    parser.add_argument("--target", "-t", help="Collection the reference points into")
    parser.add_argument("--target-field", default="id", help="Field on the target matched by the reference (default: id)")
    parser.add_argument("--id-field", default="_id", help="Identity field of source documents (default: _id)")

    parser.add_argument("--plan", "-p", help="JSON file listing references to sweep in order")
    parser.add_argument("--continue-on-error", action="store_true", help="Keep running plan entries after a failed sweep")

    parser.add_argument("--execute", "-x", action="store_true", help="Delete orphans (default is audit only)")
    parser.add_argument("--report-unreferenced", action="store_true", help="Also count targets nothing points at")
    parser.add_argument("--no-export", action="store_true", help="Skip exporting orphans before deletion")
    parser.add_argument("--export-dir", help="Directory for orphan exports (overrides SWEEP_EXPORT_DIR)")
    parser.add_argument("--deadline", type=float, default=None, help="Overall deadline in seconds")
    parser.add_argument("--fail-on-orphans", action="store_true",
                        help=f"Exit with code {EXIT_ORPHANS_FOUND} when an audit finds orphans")

    parser.add_argument("--json", "-j", action="store_true", help="Print results as JSON")
    parser.add_argument("--output-json", help="Also write results as JSON to this path")

    args = parser.parse_args(argv)
    if not args.plan and not (args.source and args.field and args.target):
        parser.error("either --plan or all of --source, --field and --target are required")
    if args.plan and (args.source or args.field or args.target):
        parser.error("--plan cannot be combined with --source/--field/--target")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    issues = validate_sweep_config()
    if args.uri or MONGODB_URI:
        issues = [issue for issue in issues if not issue.startswith("MONGODB_URI")]
    if issues:
        for issue in issues:
            print(f"Configuration error: {issue}", file=sys.stderr)
        return EXIT_FAILED

    plan = None
    if args.plan:
        try:
            plan = load_plan(args.plan)
        except PlanError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED

    cancel_event = threading.Event()
    previous_handler = install_interrupt_handler(cancel_event)

    sweep_kwargs = {
        "dry_run": not args.execute,
        "report_unreferenced": args.report_unreferenced,
        "export": False if args.no_export else None,
        "export_dir": args.export_dir,
        "deadline_sec": args.deadline,
        "cancel_event": cancel_event,
    }

    try:
        with connect_store(args.uri, args.database) as store:
            if plan is not None:
                plan_report = run_plan(store, plan, continue_on_error=args.continue_on_error or None, **sweep_kwargs)
                payload = plan_report.to_dict()
                succeeded = plan_report.succeeded
                orphans_found = payload["summary"]["orphans_found"]
            else:
                reference = Reference(
                    source=args.source,
                    field=args.field,
                    target=args.target,
                    target_field=args.target_field,
                    id_field=args.id_field,
                )
                try:
                    report = run_sweep(store, reference, **sweep_kwargs)
                except SweepError as e:
                    if e.report is None:
                        raise
                    report = e.report
                payload = report.to_dict()
                succeeded = report.succeeded
                orphans_found = report.orphans_found
    except StoreConnectionError as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except SweepError as e:
        print(f"Sweep error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if args.output_json:
        with open(args.output_json, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True, default=str)

    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
    elif plan is not None:
        print(format_plan(payload))
    else:
        print(format_report(payload))

    if not succeeded:
        return EXIT_FAILED
    if args.fail_on_orphans and not args.execute and orphans_found:
        return EXIT_ORPHANS_FOUND
    return EXIT_OK


__all__ = ["format_report", "format_plan", "install_interrupt_handler", "parse_args", "main"]
