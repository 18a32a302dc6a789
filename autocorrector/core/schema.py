"""
Persisted records of the auto-correction pipeline: runs, cycles, log entries,
audit results, violations and correction history.
Dictionaries produced by to_dict() use the camelCase field names of the HTTP API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

ACTIVE_STATUSES = ("pending", "auditing", "correcting", "approving", "finalizing", "re_auditing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
RUN_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

CYCLE_RESULTS = ("threshold_met", "corrected", "no_issues", "max_cycles", "error", "cancelled")
SUCCESS_RESULTS = ("threshold_met", "corrected", "no_issues", "max_cycles")

VIOLATION_TYPES = (
    "character_resurrection",
    "ignored_injury",
    "location_inconsistency",
    "identity_contradiction",
    "timeline_error",
    "knowledge_leak",
    "object_inconsistency",
)
SEVERITIES = ("critical", "major", "minor")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value) -> Optional[datetime]:
    """Convert a stored ISO timestamp back to a datetime."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Chapter:
    chapter_number: int
    title: str
    content: str


@dataclass
class Document:
    id: int
    title: str
    genre: str
    language: str
    chapters: List[Chapter] = field(default_factory=list)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0

    def add(self, other: Optional["TokenUsage"]) -> None:
        """Accumulate another usage report into this one."""
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.thinking_tokens += other.thinking_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "thinkingTokens": self.thinking_tokens
        }


@dataclass
class Violation:
    chapter_number: int
    type: str
    severity: str
    description: str
    affected_entities: List[str] = field(default_factory=list)
    fragment: str = ""
    suggested_fix: str = ""

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "Violation":
        """Build a violation from a model payload entry. Raises ValueError on unknown type/severity."""
        if not isinstance(raw, dict):
            raise ValueError(f"violation entry must be an object, got {type(raw).__name__}")

        violation_type = str(raw.get("violationType") or raw.get("type") or "").strip().lower()
        if violation_type not in VIOLATION_TYPES:
            raise ValueError(f"unknown violation type: {violation_type!r}")

        severity = str(raw.get("severity") or "").strip().lower()
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity: {severity!r}")

        try:
            chapter_number = int(raw.get("chapterNumber", 0))
        except (TypeError, ValueError):
            raise ValueError(f"invalid chapterNumber: {raw.get('chapterNumber')!r}")

        entities = raw.get("affectedEntities") or []
        if not isinstance(entities, list):
            entities = [entities]

        return cls(
            chapter_number=chapter_number,
            type=violation_type,
            severity=severity,
            description=str(raw.get("description") or ""),
            affected_entities=[str(e) for e in entities],
            fragment=str(raw.get("fragment") or ""),
            suggested_fix=str(raw.get("suggestedFix") or "")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapterNumber": self.chapter_number,
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "affectedEntities": list(self.affected_entities),
            "fragment": self.fragment,
            "suggestedFix": self.suggested_fix
        }


@dataclass
class AuditResult:
    """Output of one detection pass over a document."""
    violations: List[Violation]
    entities: Dict[str, List[Dict[str, Any]]]
    consistency_score: float
    summary: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    failed_batches: int = 0

    def count(self, severity: str) -> int:
        return sum(1 for v in self.violations if v.severity == severity)

    @property
    def critical_issues(self) -> int:
        return self.count("critical")

    @property
    def total_issues(self) -> int:
        return len(self.violations)

    @property
    def overall_score(self) -> float:
        """Consistency score on the 0-100 scale used by run target scores."""
        return round(self.consistency_score * 10, 1)


@dataclass
class CorrectionRecord:
    """An applied fix, kept per document and chapter for later resolution judging."""
    chapter_number: int
    issue: str
    fix: str
    created_at: datetime = field(default_factory=datetime.now)
    run_id: Optional[int] = None


@dataclass
class LogEntry:
    timestamp: datetime
    phase: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"timestamp": _iso(self.timestamp), "phase": self.phase, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class CorrectionCycle:
    cycle: int
    overall_score: float
    critical_issues: int
    total_issues: int
    issues_fixed: int
    structural_changes: int
    result: str
    started_at: datetime
    completed_at: datetime
    audit_id: Optional[int] = None
    revision_id: Optional[int] = None

    def __post_init__(self):
        if self.result not in CYCLE_RESULTS:
            raise ValueError(f"Invalid cycle result: {self.result}")
        if self.cycle < 1:
            raise ValueError(f"Cycle index must be >= 1: {self.cycle}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "auditId": self.audit_id,
            "revisionId": self.revision_id,
            "overallScore": self.overall_score,
            "criticalIssues": self.critical_issues,
            "totalIssues": self.total_issues,
            "issuesFixed": self.issues_fixed,
            "structuralChanges": self.structural_changes,
            "result": self.result,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at)
        }


@dataclass
class CorrectionRun:
    id: Optional[int]
    document_id: int
    status: str
    max_cycles: int
    target_score: int
    max_critical_issues: int = 0
    current_cycle: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    cycle_history: List[CorrectionCycle] = field(default_factory=list)
    progress_log: List[LogEntry] = field(default_factory=list)
    final_score: Optional[float] = None
    final_critical_issues: Optional[int] = None
    total_issues_fixed: Optional[int] = None
    total_structural_changes: Optional[int] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, log_tail: Optional[int] = None) -> Dict[str, Any]:
        """Serialize for the API; log_tail keeps only the most recent log entries."""
        if log_tail is None:
            log = self.progress_log
        else:
            log = self.progress_log[-log_tail:] if log_tail > 0 else []
        return {
            "id": self.id,
            "documentId": self.document_id,
            "status": self.status,
            "currentCycle": self.current_cycle,
            "maxCycles": self.max_cycles,
            "targetScore": self.target_score,
            "maxCriticalIssues": self.max_critical_issues,
            "cycleHistory": [c.to_dict() for c in self.cycle_history],
            "progressLog": [e.to_dict() for e in log],
            "finalScore": self.final_score,
            "finalCriticalIssues": self.final_critical_issues,
            "totalIssuesFixed": self.total_issues_fixed,
            "totalStructuralChanges": self.total_structural_changes,
            "errorMessage": self.error_message,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at)
        }
