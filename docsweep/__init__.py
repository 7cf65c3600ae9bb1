"""
Reconciliation sweeps for a MongoDB-backed application.

Detects documents whose reference field points at a target document that no
longer exists, exports them, deletes them by identity and verifies the result.
"""

from docsweep.core.schema import Record, Reference, field_mapper
from docsweep.core.sweep import SweepReport, SweepState, run_sweep

__all__ = ["Record", "Reference", "field_mapper", "SweepReport", "SweepState", "run_sweep"]
