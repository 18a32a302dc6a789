"""
Structured operation logging for the auto-correction pipeline.
Run transitions, cycle results, audit batches and judge decisions are logged
as single-line operation records.
"""

import logging
from typing import Any, Dict, List, Optional


def truncate_text(text: Optional[str], limit: int = 100) -> str:
    """Truncate free text (fragments, model output) for log lines."""
    if not text:
        return ""
    return text[:limit - 3] + "..." if len(text) > limit else text


class StructuredLogger:
    """Structured logger for run, audit, judge and correction operations."""

    def __init__(self, name: str = "autocorrector"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

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

    def log_run_transition(self, run_id: int, status: str, details: Dict[str, Any] = None):
        """Log a run moving to a new status."""
        log_details = {"run_id": run_id}
        if details:
            log_details.update(details)

        self.log_operation("run.transition", status, log_details)

    def log_cycle_result(self, run_id: int, cycle: int, result: str, details: Dict[str, Any] = None):
        """Log a cycle appended to a run's history."""
        log_details = {"run_id": run_id, "cycle": cycle}
        if details:
            log_details.update(details)

        level = logging.WARNING if result in ("error", "cancelled") else logging.INFO
        self.log_operation("run.cycle", result, log_details, level=level)

    def log_audit_batch(self, batch_number: int, total_batches: int, status: str = "success", details: Dict[str, Any] = None):
        """Log one detection batch."""
        log_details = {"batch": f"{batch_number}/{total_batches}"}
        if details:
            log_details.update(details)

        level = logging.WARNING if status != "success" else logging.INFO
        self.log_operation("audit.batch", status, log_details, level=level)

    def log_judgment(self, chapter_number: int, issue_type: str, is_resolved: bool, confidence: float, reason: str = ""):
        """Log a resolution judgment for a reported issue."""
        log_details = {
            "chapter": chapter_number,
            "issue_type": issue_type,
            "confidence": confidence,
            "reason": truncate_text(reason)
        }
        self.log_operation("judge.decision", "resolved" if is_resolved else "unresolved", log_details)

    def log_correction_batch(self, run_id: int, cycle: int, issues_count: int, excluded_count: int, details: Dict[str, Any] = None):
        """Log the fix batch handed to the correction applier."""
        log_details = {
            "run_id": run_id,
            "cycle": cycle,
            "issues": issues_count,
            "excluded_as_resolved": excluded_count
        }
        if details:
            log_details.update(details)

        self.log_operation("correction.batch", "submitted", log_details)

    def log_external_call_failure(self, service: str, error: Any, details: Dict[str, Any] = None):
        """Log a failed call to an external collaborator."""
        log_details = {"service": service, "error": truncate_text(str(error), 200)}
        if details:
            log_details.update(details)

        self.log_operation("external_call", "failed", log_details, level=logging.ERROR)

    def log_malformed_response(self, source: str, error: Any, details: Dict[str, Any] = None):
        """Log a model response that could not be parsed (recovered locally)."""
        log_details = {"source": source, "error": truncate_text(str(error), 200)}
        if details:
            log_details.update(details)

        self.log_operation("response.malformed", "recovered", log_details, level=logging.WARNING)

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


def get_logger(name: str = "autocorrector") -> StructuredLogger:
    """Create a structured logger to inject into a component."""
    return StructuredLogger(name)


def sanitize_details(details: Dict[str, Any], limit: int = 100, redact: List[str] = None) -> Dict[str, Any]:
    """Prepare a details dict for a progress log entry: truncate long strings, drop redacted keys."""
    if redact is None:
        redact = ["content", "text", "correctedText"]

    sanitized = {}
    for k, v in details.items():
        if k in redact:
            sanitized[k] = "[REDACTED]"
        elif isinstance(v, str):
            sanitized[k] = truncate_text(v, limit)
        else:
            sanitized[k] = v
    return sanitized
