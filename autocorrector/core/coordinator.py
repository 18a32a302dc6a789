"""
Run coordinator.
Drives one auto-correction run through its audit -> correct -> approve ->
finalize cycles until the quality target is met, the document is clean or
the cycle budget runs out.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .documents import DocumentStore
from .errors import CancellationRequested, DocumentNotFoundError, ExternalCallError
from .publisher import ProgressPublisher
from .run_store import RunStore
from .schema import AuditResult, Chapter, CorrectionCycle, CorrectionRecord, CorrectionRun, LogEntry, Violation
from ..agents.consistency_auditor import ConsistencyAuditor
from ..agents.corrector import ChapterRevision, CorrectionApplier, CorrectionOutcome
from ..agents.resolution_judge import IssueResolutionJudge, ReportedIssue
from ..util.logging import StructuredLogger, get_logger, sanitize_details


@dataclass
class CycleMetrics:
    overall_score: float = 0.0
    critical_issues: int = 0
    total_issues: int = 0
    audit_id: Optional[int] = None


def decide_termination(audit: AuditResult, cycle: int, run: CorrectionRun) -> Optional[str]:
    """Stop result for an audited cycle, or None to correct and continue."""
    if audit.overall_score >= run.target_score and audit.critical_issues <= run.max_critical_issues:
        return "threshold_met"
    if audit.total_issues == 0:
        return "no_issues"
    if cycle >= run.max_cycles:
        return "max_cycles"
    return None


class RunCoordinator:
    """
    Executes a single run on the calling thread.

    The cancel flag is checked before audit, correct, approve and finalize;
    calls already in flight are never interrupted. ExternalCallError from any
    collaborator fails the run.
    """

    def __init__(self, run_id: int, store: RunStore, documents: DocumentStore,
                 auditor: ConsistencyAuditor, judge: IssueResolutionJudge, corrector: CorrectionApplier,
                 publisher: ProgressPublisher, logger: StructuredLogger = None,
                 cancel_event: threading.Event = None, min_chapter_chars: int = 100,
                 history_limit: int = 5, stream_log_tail: int = 50):
        self.run_id = run_id
        self.store = store
        self.documents = documents
        self.auditor = auditor
        self.judge = judge
        self.corrector = corrector
        self.publisher = publisher
        self.logger = logger or get_logger("autocorrector.coordinator")
        self.cancel_event = cancel_event or threading.Event()
        self.min_chapter_chars = min_chapter_chars
        self.history_limit = history_limit
        self.stream_log_tail = stream_log_tail

        self._cycle = 0
        self._cycle_started: Optional[datetime] = None
        self._cycle_open = False
        self._metrics = CycleMetrics()
        self._audited = False
        self._total_fixed = 0
        self._total_structural = 0

    def execute(self) -> CorrectionRun:
        run = self.store.get(self.run_id)
        if run.is_terminal:
            self.logger.log_run_transition(self.run_id, "skipped", {"reason": f"run is already {run.status}"})
            return run
        try:
            self._run_cycles(run)
        except CancellationRequested:
            self._finish_cancelled()
        except (ExternalCallError, DocumentNotFoundError) as e:
            self.logger.log_external_call_failure(getattr(e, "service", "document_store"), e, {"run_id": self.run_id})
            self._finish_failed(str(e))
        except Exception as e:
            self.logger.error(f"Run {self.run_id} crashed in cycle {self._cycle}: {e}")
            self._finish_failed(f"Unexpected error: {e}")
        return self.store.get(self.run_id)

    def _run_cycles(self, run: CorrectionRun) -> None:
        for cycle in range(1, run.max_cycles + 1):
            self._cycle = cycle
            self._cycle_started = datetime.now()
            self._cycle_open = True
            # carry the last known score into a cycle that ends before its audit
            self._metrics = CycleMetrics(self._metrics.overall_score, self._metrics.critical_issues, self._metrics.total_issues)

            self._checkpoint()
            status = "auditing" if cycle == 1 else "re_auditing"
            self._transition(status, f"Cycle {cycle}/{run.max_cycles}: auditing consistency", current_cycle=cycle)

            document = self.documents.get_document(run.document_id)
            audit = self.auditor.audit(document.chapters, document.genre, document.language)
            audit_id = self.store.save_audit(self.run_id, cycle, audit)
            self._metrics = CycleMetrics(audit.overall_score, audit.critical_issues, audit.total_issues, audit_id)
            self._audited = True
            self._log(status, f"Cycle {cycle}: score {audit.overall_score}, {audit.critical_issues} critical, "
                              f"{audit.total_issues} total issues", {
                                  "auditId": audit_id,
                                  "failedBatches": audit.failed_batches,
                                  "summary": audit.summary
                              })

            result = decide_termination(audit, cycle, run)
            if result is not None:
                self._close_cycle(result)
                self._finish_completed(result)
                return

            self._checkpoint()
            self._transition("correcting", f"Cycle {cycle}: correcting {audit.total_issues} issues")
            fix_batch = self._triage(run.document_id, audit.violations)
            outcome = self.corrector.apply(document, fix_batch) if fix_batch else CorrectionOutcome()

            self._checkpoint()
            self._transition("approving", f"Cycle {cycle}: reviewing {len(outcome.revisions)} revised chapters")
            approved = self._approve(outcome.revisions)

            self._checkpoint()
            self._transition("finalizing", f"Cycle {cycle}: saving {len(approved)} approved chapters")
            revision_id, fixed, structural = self._finalize(run.document_id, approved)

            self._total_fixed += fixed
            self._total_structural += structural
            self._close_cycle("corrected", issues_fixed=fixed, structural_changes=structural, revision_id=revision_id)
            self._log("cycle_complete", f"Cycle {cycle}: {fixed} fixes applied, {structural} structural changes",
                      {"revisionId": revision_id})

    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise CancellationRequested(f"Run {self.run_id} cancelled")

    def _triage(self, document_id: int, violations: List[Violation]) -> List[Violation]:
        """Drop issues the judge considers already fixed by an earlier correction."""
        fix_batch = []
        excluded = 0
        for violation in violations:
            history = self.store.recent_corrections(document_id, violation.chapter_number, self.history_limit)
            judgment = self.judge.judge(
                ReportedIssue(violation.type, violation.description, violation.severity),
                history,
                violation.chapter_number
            )
            if judgment.is_resolved:
                excluded += 1
            else:
                fix_batch.append(violation)

        self.logger.log_correction_batch(self.run_id, self._cycle, len(fix_batch), excluded)
        if excluded:
            self._log("correcting", f"Cycle {self._cycle}: {excluded} issues already resolved by earlier corrections")
        return fix_batch

    def _approve(self, revisions: List[ChapterRevision]) -> List[ChapterRevision]:
        approved = []
        for revision in revisions:
            if not revision.changed:
                reason = "unchanged"
            elif len(revision.corrected_text.strip()) < self.min_chapter_chars:
                reason = "too short"
            else:
                approved.append(revision)
                continue
            self._log("approving", f"Chapter {revision.chapter_number} revision rejected ({reason})")
        return approved

    def _finalize(self, document_id: int, approved: List[ChapterRevision]) -> Tuple[Optional[int], int, int]:
        if not approved:
            return None, 0, 0

        chapters = [Chapter(r.chapter_number, r.original.title, r.corrected_text) for r in approved]
        revision_id = self.documents.save_chapters(document_id, chapters, note=f"run {self.run_id} cycle {self._cycle}")

        records: List[CorrectionRecord] = []
        for revision in approved:
            for fix in revision.fixes:
                fix.run_id = self.run_id
                records.append(fix)
        self.store.append_correction_records(document_id, records)

        structural = sum(1 for r in approved if r.structural_change)
        return revision_id, len(records), structural

    def _close_cycle(self, result: str, issues_fixed: int = 0, structural_changes: int = 0,
                     revision_id: Optional[int] = None) -> None:
        if not self._cycle_open:
            return
        self._cycle_open = False
        self.store.append_cycle(self.run_id, CorrectionCycle(
            cycle=self._cycle,
            overall_score=self._metrics.overall_score,
            critical_issues=self._metrics.critical_issues,
            total_issues=self._metrics.total_issues,
            issues_fixed=issues_fixed,
            structural_changes=structural_changes,
            result=result,
            started_at=self._cycle_started,
            completed_at=datetime.now(),
            audit_id=self._metrics.audit_id,
            revision_id=revision_id
        ))

    def _finish_completed(self, result: str) -> None:
        self.store.update_status(
            self.run_id, "completed",
            final_score=self._metrics.overall_score,
            final_critical_issues=self._metrics.critical_issues,
            total_issues_fixed=self._total_fixed,
            total_structural_changes=self._total_structural,
            completed_at=datetime.now()
        )
        message = f"Run completed after {self._cycle} cycles ({result}), final score {self._metrics.overall_score}"
        self._log("completed", message, publish=False)
        self._publish_terminal("completed", message)

    def _finish_cancelled(self) -> None:
        if self._cycle:
            self._close_cycle("cancelled", issues_fixed=0)
        self.store.update_status(
            self.run_id, "cancelled",
            total_issues_fixed=self._total_fixed,
            total_structural_changes=self._total_structural,
            completed_at=datetime.now()
        )
        message = f"Run cancelled during cycle {self._cycle}"
        self._log("cancelled", message, publish=False)
        self._publish_terminal("cancelled", message)

    def _finish_failed(self, message: str) -> None:
        if self._cycle:
            self._close_cycle("error")
        self.store.update_status(
            self.run_id, "failed",
            error_message=message,
            total_issues_fixed=self._total_fixed,
            total_structural_changes=self._total_structural,
            completed_at=datetime.now()
        )
        self._log("failed", f"Run failed: {message}", publish=False)
        self._publish_terminal("failed", f"Run failed: {message}")

    def _transition(self, status: str, message: str, **fields: Any) -> None:
        self.store.update_status(self.run_id, status, **fields)
        self._log(status, message)

    def _log(self, phase: str, message: str, details: Dict[str, Any] = None, publish: bool = True) -> None:
        self.store.append_log(self.run_id, LogEntry(
            timestamp=datetime.now(),
            phase=phase,
            message=message,
            details=sanitize_details(details, limit=300) if details else None
        ))
        if publish:
            self.publisher.publish(self.run_id, self._snapshot(phase, message))

    def _publish_terminal(self, phase: str, message: str) -> None:
        """Publish the final snapshot once; the stored log entry was written unpublished."""
        self.publisher.publish_terminal(self.run_id, self._snapshot(phase, message))

    def _snapshot(self, phase: str, message: str) -> Dict[str, Any]:
        snapshot = self.store.get(self.run_id).to_dict(log_tail=self.stream_log_tail)
        snapshot["phase"] = phase
        snapshot["message"] = message
        snapshot["currentScore"] = self._metrics.overall_score if self._audited else None
        return snapshot
