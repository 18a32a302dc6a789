from datetime import datetime, timedelta

import pytest

from autocorrector.agents.mock_agent import MockInferenceService
from autocorrector.core.coordinator import RunCoordinator
from autocorrector.core.errors import DocumentNotFoundError, RunNotFoundError, ValidationError
from autocorrector.core.run_manager import build_default_service, cleanup_stale_runs, validate_run_parameters
from autocorrector.core.schema import CorrectionRun

from conftest import PipelineInference, audit_payload, build_service, make_chapters, violation


def orphan(store, document_id, age_sec, status="correcting"):
    run = CorrectionRun(id=None, document_id=document_id, status=status, max_cycles=2, target_score=90,
                        max_critical_issues=1, created_at=datetime.now() - timedelta(seconds=age_sec))
    return store.create(run)


class TestValidateRunParameters:
    @pytest.mark.parametrize("max_cycles,target_score,max_critical", [
        (0, 85, 0), (6, 85, 0), (3, 49, 0), (3, 101, 0), (3, 85, -1), (True, 85, 0), (3, 85.5, 0), ("3", 85, 0)
    ])
    def test_out_of_range(self, max_cycles, target_score, max_critical):
        with pytest.raises(ValidationError):
            validate_run_parameters(max_cycles, target_score, max_critical)

    @pytest.mark.parametrize("max_cycles,target_score,max_critical", [(1, 50, 0), (5, 100, 3)])
    def test_bounds_accepted(self, max_cycles, target_score, max_critical):
        validate_run_parameters(max_cycles, target_score, max_critical)


class TestStartRun:
    def test_invalid_parameters_create_no_run(self, db_path, document_id, store):
        service = build_service(db_path, MockInferenceService())
        with pytest.raises(ValidationError):
            service.start_run(document_id, max_cycles=9, background=False)
        assert store.list_by_document(document_id) == []

    def test_unknown_document(self, db_path):
        service = build_service(db_path, MockInferenceService())
        with pytest.raises(DocumentNotFoundError):
            service.start_run(999, background=False)

    def test_document_without_chapters(self, db_path, documents):
        empty = documents.add_document("Blank", [])
        service = build_service(db_path, MockInferenceService())
        with pytest.raises(ValidationError):
            service.start_run(empty, background=False)

    def test_defaults_applied(self, db_path, document_id):
        service = build_service(db_path, MockInferenceService())
        run = service.get_run(service.start_run(document_id, background=False))

        assert run.max_cycles == 3
        assert run.target_score == 85
        assert run.max_critical_issues == 0
        assert run.status == "completed"
        assert run.progress_log[0].phase == "pending"

    def test_background_run_completes(self, db_path, document_id):
        service = build_service(db_path, MockInferenceService())
        run_id = service.start_run(document_id)
        run = service.wait_for_run(run_id, timeout=10)

        assert run.status == "completed"
        assert not service.is_run_active(run_id)


class TestRetryAndCancel:
    def test_retry_failed_run_reuses_parameters(self, db_path, document_id, store):
        service = build_service(db_path, MockInferenceService())
        failed = orphan(store, document_id, age_sec=0)
        store.update_status(failed, "failed", error_message="boom")

        new_id = service.retry_run(failed, background=False)

        new_run = service.get_run(new_id)
        assert new_id != failed
        assert (new_run.max_cycles, new_run.target_score, new_run.max_critical_issues) == (2, 90, 1)
        assert service.get_run(failed).status == "failed"

    def test_retry_completed_run_rejected(self, db_path, document_id):
        service = build_service(db_path, MockInferenceService())
        run_id = service.start_run(document_id, background=False)
        with pytest.raises(ValidationError):
            service.retry_run(run_id)

    def test_cancel_terminal_run_is_idempotent(self, db_path, document_id):
        service = build_service(db_path, MockInferenceService())
        run_id = service.start_run(document_id, background=False)

        assert service.cancel_run(run_id).status == "completed"
        assert service.cancel_run(run_id).status == "completed"

    def test_cancel_orphaned_run(self, db_path, document_id, store):
        service = build_service(db_path, MockInferenceService())
        run_id = orphan(store, document_id, age_sec=5)

        cancelled = service.cancel_run(run_id)

        assert cancelled.status == "cancelled"
        assert cancelled.completed_at is not None
        assert service.cancel_run(run_id).status == "cancelled"

    def test_cancel_unknown_run(self, db_path):
        service = build_service(db_path, MockInferenceService())
        with pytest.raises(RunNotFoundError):
            service.cancel_run(41)

    def test_cancel_then_retry(self, db_path, document_id):
        service = None

        def judgment(prompt):
            return {"isResolved": False, "confidence": 0.9}

        def correction(prompt):
            for active in service.store.list_active():
                service.cancel_run(active.id)
            return {"correctedText": "x" * 200}

        inference = PipelineInference([audit_payload([violation(1, "critical")])], judgment=judgment, correction=correction)
        service = build_service(db_path, inference)
        first = service.start_run(document_id, max_cycles=2, background=False)
        assert service.get_run(first).status == "cancelled"

        second = service.retry_run(first, background=False)
        assert service.get_run(second).status == "cancelled"
        assert len(service.list_runs(document_id)) == 2

    def test_cancel_right_after_creation_is_honoured(self, db_path, document_id):
        inference = MockInferenceService()
        service = build_service(db_path, inference)
        append_log = service.store.append_log
        requested = []

        def append_and_cancel(run_id, entry):
            append_log(run_id, entry)
            if not requested:
                requested.append(service.cancel_run(run_id).status)

        service.store.append_log = append_and_cancel
        run = service.get_run(service.start_run(document_id, background=False))

        assert requested == ["pending"]
        assert run.status == "cancelled"
        assert [c.result for c in run.cycle_history] == ["cancelled"]
        assert run.progress_log[-1].phase == "cancelled"
        assert inference.call_count == 0
        assert not service.is_run_active(run.id)

    def test_coordinator_leaves_terminal_run_alone(self, db_path, document_id, store):
        inference = MockInferenceService()
        service = build_service(db_path, inference)
        run_id = orphan(store, document_id, age_sec=0)
        store.update_status(run_id, "cancelled")

        coordinator = RunCoordinator(run_id, service.store, service.documents, service.auditor,
                                     service.judge, service.corrector, service.publisher)

        assert coordinator.execute().status == "cancelled"
        assert inference.call_count == 0
        assert store.get(run_id).cycle_history == []
        assert store.get(run_id).progress_log == []


class TestStaleRunCleanup:
    def test_old_orphans_fail_and_recent_ones_stay(self, db_path, documents, store):
        old_doc = documents.add_document("Old", make_chapters(1))
        new_doc = documents.add_document("New", make_chapters(1))
        old_run = orphan(store, old_doc, age_sec=600)
        new_run = orphan(store, new_doc, age_sec=5)

        cleaned = cleanup_stale_runs(store, grace_sec=60)

        assert cleaned == [old_run]
        old = store.get(old_run)
        assert old.status == "failed"
        assert old.error_message == "Interrupted by a server restart"
        assert old.progress_log[-1].phase == "error"
        assert store.get(new_run).status == "correcting"

    def test_service_skips_runs_it_executes(self, db_path, document_id, store):
        service = build_service(db_path, MockInferenceService())
        run_id = orphan(store, document_id, age_sec=600)
        service._controls[run_id] = object()

        assert service.cleanup_stale_runs(grace_sec=0) == []
        assert store.get(run_id).status == "correcting"


def test_build_default_service(tmp_path):
    service = build_default_service(str(tmp_path / "svc.db"), inference=MockInferenceService())
    assert service.store.db_path == str(tmp_path / "svc.db")
    assert service.auditor.inference is service.judge.inference
