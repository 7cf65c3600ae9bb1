"""
Structured operational logging for sweeps, exports and plan runs.
"""

import logging
import os
from typing import Any, Dict, List

class StructuredLogger:
    """Structured logger for reconciliation sweep operations."""

    def __init__(self, name: str = "docsweep"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(os.getenv("SWEEP_LOG_LEVEL", "INFO").upper())

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_sweep_stage(self, stage: str, source: str, field: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a sweep state transition."""
        log_details = {"source": source, "field": field}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation(f"sweep.{stage}", status, log_details, level=level)

    def log_orphan_found(self, source: str, field: str, record_id: Any, ref: Any):
        """Log a single orphaned record at debug level."""
        details = {"source": source, "field": field, "id": str(record_id), "ref": str(ref)[:50]}
        self.log_operation("sweep.orphan", "detected", details, level=logging.DEBUG)

    def log_write_failure(self, source: str, record_id: Any, error: str):
        """Log a failed per-id deletion."""
        details = {"source": source, "id": str(record_id), "error": error[:200]}
        self.log_operation("sweep.delete", "failed", details, level=logging.ERROR)

    def log_verification(self, source: str, field: str, remaining: int):
        """Log the post-deletion verification outcome."""
        status = "passed" if remaining == 0 else "mismatch"
        level = logging.INFO if remaining == 0 else logging.ERROR
        self.log_operation("sweep.verify", status, {"source": source, "field": field, "remaining_orphans": remaining}, level=level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

# Global logger instance
logger = StructuredLogger()

# General audit event function
def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = ['password', 'secret', 'uri', 'document']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)

# Payload sanitization utility
def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['password', 'secret', 'uri', 'document']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
