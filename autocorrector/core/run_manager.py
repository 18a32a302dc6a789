"""
Auto-correction service.
Creates runs, executes each on its own background thread, and handles
cancel, retry, delete and the cleanup of runs orphaned by a previous process.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from . import config
from .coordinator import RunCoordinator
from .db import init_db
from .documents import DocumentStore, SQLiteDocumentStore
from .errors import ValidationError
from .publisher import ProgressPublisher
from .run_store import RunStore
from .schema import CorrectionRun, LogEntry
from ..agents.agent import InferenceService
from ..agents.consistency_auditor import ConsistencyAuditor
from ..agents.corrector import CorrectionApplier, InferenceCorrectionApplier
from ..agents.resolution_judge import IssueResolutionJudge
from ..util.logging import StructuredLogger, get_logger


@dataclass
class RunControl:
    """In-process handle of a run this service is executing."""
    cancel_event: threading.Event
    thread: Optional[threading.Thread] = None


def validate_run_parameters(max_cycles: int, target_score: int, max_critical_issues: int) -> None:
    """Raises ValidationError for out-of-range run parameters."""
    low, high = config.MAX_CYCLES_RANGE
    if isinstance(max_cycles, bool) or not isinstance(max_cycles, int) or not low <= max_cycles <= high:
        raise ValidationError(f"maxCycles must be an integer in [{low}, {high}]")

    low, high = config.TARGET_SCORE_RANGE
    if isinstance(target_score, bool) or not isinstance(target_score, int) or not low <= target_score <= high:
        raise ValidationError(f"targetScore must be an integer in [{low}, {high}]")

    if isinstance(max_critical_issues, bool) or not isinstance(max_critical_issues, int) or max_critical_issues < 0:
        raise ValidationError("maxCriticalIssues must be a non-negative integer")


class AutoCorrectionService:
    def __init__(self, store: RunStore, documents: DocumentStore, auditor: ConsistencyAuditor,
                 judge: IssueResolutionJudge, corrector: CorrectionApplier,
                 publisher: ProgressPublisher = None, logger: StructuredLogger = None,
                 min_chapter_chars: int = None, history_limit: int = None, stream_log_tail: int = None):
        self.store = store
        self.documents = documents
        self.auditor = auditor
        self.judge = judge
        self.corrector = corrector
        self.publisher = publisher or ProgressPublisher(config.SUBSCRIBER_QUEUE_SIZE)
        self.logger = logger or get_logger("autocorrector.service")
        self.min_chapter_chars = config.MIN_CORRECTED_CHAPTER_CHARS if min_chapter_chars is None else min_chapter_chars
        self.history_limit = history_limit or config.JUDGE_HISTORY_LIMIT
        self.stream_log_tail = stream_log_tail or config.STREAM_LOG_TAIL
        self._controls: Dict[int, RunControl] = {}
        self._lock = threading.Lock()

    def start_run(self, document_id: int, max_cycles: int = None, target_score: int = None,
                  max_critical_issues: int = 0, background: bool = True) -> int:
        """
        Create a run and start executing it.

        Raises:
            ValidationError: parameters out of range
            DocumentNotFoundError: unknown document
            ActiveRunExistsError: the document already has an active run
        """
        max_cycles = config.DEFAULT_MAX_CYCLES if max_cycles is None else max_cycles
        target_score = config.DEFAULT_TARGET_SCORE if target_score is None else target_score
        validate_run_parameters(max_cycles, target_score, max_critical_issues)

        document = self.documents.get_document(document_id)
        if not document.chapters:
            raise ValidationError(f"Document {document_id} has no chapters")

        run = CorrectionRun(
            id=None,
            document_id=document_id,
            status="pending",
            max_cycles=max_cycles,
            target_score=target_score,
            max_critical_issues=max_critical_issues
        )
        control = RunControl(cancel_event=threading.Event())
        # a run becomes visible to cancel_run only together with its control
        with self._lock:
            run_id = self.store.create(run)
            self._controls[run_id] = control

        self.store.append_log(run_id, LogEntry(
            datetime.now(), "pending",
            f"Run created for '{document.title}' ({len(document.chapters)} chapters): "
            f"up to {max_cycles} cycles, target {target_score}, max {max_critical_issues} critical"
        ))

        if background:
            control.thread = threading.Thread(target=self._execute, args=(run_id, control), name=f"autocorrect-run-{run_id}", daemon=True)
            control.thread.start()
        else:
            self._execute(run_id, control)
        return run_id

    def _execute(self, run_id: int, control: RunControl) -> None:
        coordinator = RunCoordinator(
            run_id, self.store, self.documents, self.auditor, self.judge, self.corrector, self.publisher,
            logger=self.logger, cancel_event=control.cancel_event, min_chapter_chars=self.min_chapter_chars,
            history_limit=self.history_limit, stream_log_tail=self.stream_log_tail
        )
        try:
            coordinator.execute()
        except Exception as e:
            self.logger.error(f"Run {run_id} could not be finalized: {e}")
        finally:
            with self._lock:
                self._controls.pop(run_id, None)

    def cancel_run(self, run_id: int) -> CorrectionRun:
        """Request cancellation. Idempotent; terminal runs are returned unchanged."""
        run = self.store.get(run_id)
        if run.is_terminal:
            return run

        with self._lock:
            control = self._controls.get(run_id)
            if control is not None:
                control.cancel_event.set()
                self.logger.log_run_transition(run_id, "cancel_requested")
                return run

            # Not executing in this process: nothing will observe the flag
            run = self.store.get(run_id)
            if run.is_terminal:
                return run
            self.store.update_status(run_id, "cancelled", completed_at=datetime.now())
            self.store.append_log(run_id, LogEntry(datetime.now(), "cancelled", "Run cancelled (not executing in this process)"))
            cancelled = self.store.get(run_id)
        self.publisher.publish_terminal(run_id, cancelled.to_dict(log_tail=self.stream_log_tail))
        return cancelled

    def retry_run(self, run_id: int, background: bool = True) -> int:
        """Start a new run with the parameters of a failed or cancelled run."""
        run = self.store.get(run_id)
        if run.status not in ("failed", "cancelled"):
            raise ValidationError(f"Only failed or cancelled runs can be retried (run {run_id} is {run.status})")
        return self.start_run(run.document_id, run.max_cycles, run.target_score, run.max_critical_issues, background=background)

    def delete_run(self, run_id: int) -> None:
        """Delete a terminal run. Raises RunActiveError while it is still active."""
        self.store.delete(run_id)

    def get_run(self, run_id: int) -> CorrectionRun:
        return self.store.get(run_id)

    def list_runs(self, document_id: int) -> List[CorrectionRun]:
        return self.store.list_by_document(document_id)

    def is_run_active(self, run_id: int) -> bool:
        """True while this process is executing the run."""
        with self._lock:
            return run_id in self._controls

    def wait_for_run(self, run_id: int, timeout: float = None) -> CorrectionRun:
        with self._lock:
            control = self._controls.get(run_id)
        if control is not None and control.thread is not None:
            control.thread.join(timeout)
        return self.store.get(run_id)

    def cleanup_stale_runs(self, grace_sec: int = None) -> List[int]:
        """Fail active runs left behind by a previous process. Returns the ids marked failed."""
        return cleanup_stale_runs(self.store, grace_sec, owned=self.is_run_active, logger=self.logger)


def build_default_service(db_path: str = None, inference: InferenceService = None) -> AutoCorrectionService:
    """Assemble the service from configuration."""
    db_path = db_path or config.DB_PATH
    init_db(db_path)

    inference = inference or config.get_inference_service()
    logger = get_logger("autocorrector")
    return AutoCorrectionService(
        store=RunStore(db_path, logger, log_limit=config.PROGRESS_LOG_LIMIT),
        documents=SQLiteDocumentStore(db_path, logger),
        auditor=ConsistencyAuditor(inference, logger, config.AUDIT_BATCH_SIZE, config.AUDIT_CHAPTER_CHAR_CAP),
        judge=IssueResolutionJudge(inference, logger, config.JUDGE_HISTORY_LIMIT),
        corrector=InferenceCorrectionApplier(inference, logger),
        publisher=ProgressPublisher(config.SUBSCRIBER_QUEUE_SIZE, logger),
        logger=logger
    )


def cleanup_stale_runs(store: RunStore, grace_sec: int = None, owned: Callable[[int], bool] = None,
                       logger: StructuredLogger = None) -> List[int]:
    """
    Mark active runs nobody is executing as failed.

    Runs younger than grace_sec are left alone so a run that was created just
    before a restart, or is being created by another process, is not touched.
    """
    grace_sec = config.STALE_RUN_GRACE_SEC if grace_sec is None else grace_sec
    logger = logger or get_logger("autocorrector.cleanup")
    now = datetime.now()
    cleaned = []

    for run in store.list_active():
        if owned is not None and owned(run.id):
            continue
        age = (now - run.created_at).total_seconds()
        if age < grace_sec:
            logger.info(f"Run {run.id} is recent ({int(age)}s old), skipping cleanup")
            continue

        store.update_status(run.id, "failed", error_message="Interrupted by a server restart", completed_at=now)
        store.append_log(run.id, LogEntry(now, "error", "Run interrupted by a server restart. Retry it to run again."))
        cleaned.append(run.id)

    if cleaned:
        logger.log_operation("run.cleanup", "success", {"failed_runs": cleaned})
    return cleaned
