"""
Shared fixtures: a temporary database per test, a seeded manuscript, and a
scripted inference backend that answers audit, judge and correction prompts.
"""

from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from autocorrector.agents import consistency_auditor, corrector, resolution_judge
from autocorrector.agents.consistency_auditor import ConsistencyAuditor
from autocorrector.agents.corrector import InferenceCorrectionApplier
from autocorrector.agents.mock_agent import MockInferenceService
from autocorrector.agents.resolution_judge import IssueResolutionJudge
from autocorrector.core.db import init_db
from autocorrector.core.documents import SQLiteDocumentStore
from autocorrector.core.publisher import ProgressPublisher
from autocorrector.core.run_manager import AutoCorrectionService
from autocorrector.core.run_store import RunStore
from autocorrector.core.schema import Chapter

FILLER = (
    "The rain had not stopped for three days, and the harbour lights blurred into long yellow smears "
    "across the water while the watchmen argued about the ship that never came."
)

CORRECTED_TEXT = (
    "Revised. Marta limped down the pier, her bandaged arm pressed to her side, and the watchmen "
    "fell silent as she passed beneath the lamps toward the harbour office."
)


def make_chapters(count: int) -> List[Chapter]:
    return [Chapter(i, f"Chapter {i}", f"Chapter {i}. {FILLER}") for i in range(1, count + 1)]


def violation(chapter: int, severity: str = "major", violation_type: str = "IGNORED_INJURY",
              description: str = "Marta's broken arm is forgotten") -> Dict[str, Any]:
    return {
        "chapterNumber": chapter,
        "violationType": violation_type,
        "severity": severity,
        "description": description,
        "affectedEntities": ["Marta"],
        "fragment": "Marta climbed the rope with both hands",
        "suggestedFix": "Mention the injured arm"
    }


def audit_payload(violations: List[Dict[str, Any]] = None, characters: List[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "violations": violations or [],
        "entitiesExtracted": {"characters": characters or [], "locations": [], "timeline": []}
    }


Reply = Union[str, dict, Exception]


class PipelineInference(MockInferenceService):
    """
    Routes prompts by system prompt. `audits` are consumed one per audit call
    (the last one repeats); judge and correction replies are fixed or callables.
    """

    def __init__(self, audits: List[Reply], judgment: Union[Reply, Callable[[str], Reply]] = None,
                 correction: Union[Reply, Callable[[str], Reply]] = None):
        super().__init__(responder=self._route)
        self.audits = list(audits)
        self.judgment = judgment if judgment is not None else {"isResolved": False, "confidence": 0.9, "reasoning": "new problem"}
        self.correction = correction if correction is not None else {
            "correctedText": CORRECTED_TEXT,
            "appliedFixes": [{"issue": "forgotten injury", "fix": "mentioned the bandaged arm"}],
            "structuralChange": False
        }
        self.calls: Dict[str, List[str]] = {"audit": [], "judge": [], "correct": []}

    def _route(self, prompt: str, system_prompt: str) -> Reply:
        if system_prompt == consistency_auditor.SYSTEM_PROMPT:
            self.calls["audit"].append(prompt)
            return self.audits.pop(0) if len(self.audits) > 1 else self.audits[0]
        if system_prompt == resolution_judge.SYSTEM_PROMPT:
            self.calls["judge"].append(prompt)
            return self.judgment(prompt) if callable(self.judgment) else self.judgment
        if system_prompt == corrector.SYSTEM_PROMPT:
            self.calls["correct"].append(prompt)
            return self.correction(prompt) if callable(self.correction) else self.correction
        raise AssertionError("unexpected system prompt")


def build_service(db_path: str, inference, publisher: Optional[ProgressPublisher] = None,
                  log_limit: int = 200, batch_size: int = 8) -> AutoCorrectionService:
    return AutoCorrectionService(
        store=RunStore(db_path, log_limit=log_limit),
        documents=SQLiteDocumentStore(db_path),
        auditor=ConsistencyAuditor(inference, batch_size=batch_size),
        judge=IssueResolutionJudge(inference),
        corrector=InferenceCorrectionApplier(inference),
        publisher=publisher or ProgressPublisher(queue_size=500),
        min_chapter_chars=100,
        history_limit=5,
        stream_log_tail=50
    )


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "autocorrect.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    return RunStore(db_path)


@pytest.fixture
def documents(db_path):
    return SQLiteDocumentStore(db_path)


@pytest.fixture
def document_id(documents):
    return documents.add_document("The Harbour", make_chapters(3), genre="thriller", language="en")
