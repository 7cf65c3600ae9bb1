"""
Sweep plans: several References swept one at a time, in the order given.

Cascading cleanups (e.g. invoices -> grns after grns -> purchaseorders) are
expressed by ordering plan entries; each sweep stays independent.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .errors import SweepAborted, SweepError
from .schema import Reference
from .sweep import SweepReport, run_sweep
from ..util.logging import audit_event, logger


class PlanError(Exception):
    """Custom exception for invalid sweep plans."""
    pass


class ReferenceSpec(BaseModel):
    source: str
    field: str
    target: str
    target_field: str = "id"
    id_field: str = "_id"
    name: Optional[str] = None
    enabled: bool = True

    @field_validator('source', 'field', 'target', 'target_field', 'id_field')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('must not be empty')
        return v.strip()

    def to_reference(self) -> Reference:
        return Reference(
            source=self.source,
            field=self.field,
            target=self.target,
            target_field=self.target_field,
            id_field=self.id_field,
        )


class SweepPlan(BaseModel):
    references: List[ReferenceSpec]
    continue_on_error: bool = False

    @field_validator('references')
    @classmethod
    def must_have_references(cls, v):
        if not v:
            raise ValueError('plan must declare at least one reference')
        return v


def load_plan(path: str) -> SweepPlan:
    """Load and validate a JSON sweep plan."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise PlanError(f"Plan file not found: {path}")
    except json.JSONDecodeError as e:
        raise PlanError(f"Plan file is not valid JSON: {e}")

    # A bare list is accepted as the references array
    if isinstance(data, list):
        data = {"references": data}

    try:
        return SweepPlan.model_validate(data)
    except ValidationError as e:
        raise PlanError(f"Invalid sweep plan: {e}")


@dataclass
class PlanReport:
    reports: List[SweepReport] = None
    errors: List[str] = None
    skipped: List[str] = None
    aborted: bool = False

    def __post_init__(self):
        if self.reports is None:
            self.reports = []
        if self.errors is None:
            self.errors = []
        if self.skipped is None:
            self.skipped = []

    @property
    def succeeded(self) -> bool:
        return not self.errors and not self.aborted and all(report.succeeded for report in self.reports)

    def summary(self) -> Dict[str, Any]:
        passed = sum(1 for report in self.reports if report.succeeded)
        return {
            "total": len(self.reports),
            "passed": passed,
            "failed": len(self.reports) - passed,
            "skipped": len(self.skipped),
            "orphans_found": sum(report.orphans_found for report in self.reports),
            "orphans_deleted": sum(report.orphans_deleted for report in self.reports),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "completed" if self.succeeded else "failed",
            "aborted": self.aborted,
            "summary": self.summary(),
            "errors": self.errors,
            "skipped": self.skipped,
            "sweeps": [report.to_dict() for report in self.reports],
        }


def run_plan(store, plan: SweepPlan, continue_on_error: Optional[bool] = None, **sweep_kwargs) -> PlanReport:
    """
    Run one sweep per enabled plan entry, in order.

    Stops at the first failed sweep unless `continue_on_error` is set.
    Aborts (deadline or cancellation) always stop the plan.
    """
    continue_on_error = plan.continue_on_error if continue_on_error is None else continue_on_error
    plan_report = PlanReport()

    for spec in plan.references:
        reference = spec.to_reference()
        label = spec.name or reference.describe()
        if not spec.enabled:
            plan_report.skipped.append(label)
            logger.log_operation("plan.entry", "skipped", {"reference": label})
            continue

        try:
            plan_report.reports.append(run_sweep(store, reference, **sweep_kwargs))
        except SweepError as e:
            if e.report is not None:
                plan_report.reports.append(e.report)
            plan_report.errors.append(f"{label}: {e}")
            if isinstance(e, SweepAborted) or not continue_on_error:
                plan_report.aborted = True
                logger.error(f"Sweep plan stopped at {label}: {e}")
                break

    audit_event(
        event_type="sweep_plan_completed",
        identifiers={"entries": len(plan.references), "aborted": plan_report.aborted},
        payload=plan_report.summary(),
    )
    return plan_report
