"""
Issue resolution judge.
Decides whether a newly reported issue is one an earlier correction already
addressed, so the same fix is not requested twice across cycles.
"""

from dataclasses import dataclass
from typing import List, Optional

from .agent import InferenceService
from .payload import extract_json_object
from ..core.errors import MalformedResponseError
from ..core.schema import CorrectionRecord
from ..util.logging import StructuredLogger, get_logger

HISTORY_TEXT_CAP = 500

SYSTEM_PROMPT = """You are a literary analysis expert. Decide whether a problem reported by a reviewer was already addressed by earlier corrections of the same chapter.

Reviewers describe the same problem in different words each time. Compare the NEW problem with the chapter's correction history.

Treat it as RESOLVED when:
1. It describes the same thing as a previous correction, even in different words
2. A previous correction directly addresses this kind of problem
3. It is a minor variant of something already corrected

Treat it as NOT RESOLVED when:
1. It differs from every corrected problem
2. It is a regression (fixed before, back again)
3. The previous correction was insufficient for this kind of problem

Respond ONLY with JSON:
{"isResolved": true, "confidence": 0.0, "reasoning": "short explanation"}"""


@dataclass
class ReportedIssue:
    type: str
    description: str
    severity: Optional[str] = None


@dataclass
class ResolutionJudgment:
    is_resolved: bool
    confidence: float
    reasoning: str


class IssueResolutionJudge:
    """Judge backed by the inference service. Call failures propagate as ExternalCallError."""

    def __init__(self, inference: InferenceService, logger: StructuredLogger = None, history_limit: int = 5):
        self.inference = inference
        self.logger = logger or get_logger("autocorrector.judge")
        self.history_limit = history_limit

    def judge(self, issue: ReportedIssue, history: List[CorrectionRecord], chapter_number: int) -> ResolutionJudgment:
        if not history:
            judgment = ResolutionJudgment(False, 1.0, "No previous corrections recorded for this chapter")
            self.logger.log_judgment(chapter_number, issue.type, judgment.is_resolved, judgment.confidence, judgment.reasoning)
            return judgment

        recent = history[-self.history_limit:]
        response = self.inference.generate(self._build_prompt(issue, recent, chapter_number), SYSTEM_PROMPT)

        try:
            judgment = self._parse(response.content)
        except MalformedResponseError as e:
            self.logger.log_malformed_response("judge", e, {"chapter": chapter_number})
            judgment = ResolutionJudgment(False, 0.5, "Judgment could not be parsed")

        self.logger.log_judgment(chapter_number, issue.type, judgment.is_resolved, judgment.confidence, judgment.reasoning)
        return judgment

    def _build_prompt(self, issue: ReportedIssue, history: List[CorrectionRecord], chapter_number: int) -> str:
        history_text = "\n\n".join(
            f"Correction {i}:\n- Problem: {record.issue[:HISTORY_TEXT_CAP]}\n- Fix applied: {record.fix[:HISTORY_TEXT_CAP]}"
            for i, record in enumerate(history, start=1)
        )
        return (
            "Analyze whether the following NEW problem was already resolved by earlier corrections.\n\n"
            f"CHAPTER: {chapter_number}\n\n"
            "NEW PROBLEM REPORTED:\n"
            f"- Type: {issue.type}\n"
            f"- Severity: {issue.severity or 'unspecified'}\n"
            f"- Description: {issue.description}\n\n"
            f"PREVIOUS CORRECTIONS IN THIS CHAPTER:\n{history_text}\n\n"
            "Was the new problem already addressed by one of these corrections? "
            "The reviewer may describe the same problem in different words.\n\n"
            "RESPOND IN JSON."
        )

    def _parse(self, text: str) -> ResolutionJudgment:
        payload = extract_json_object(text)

        confidence = payload.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = 0.5
        confidence = min(1.0, max(0.0, float(confidence)))

        return ResolutionJudgment(
            is_resolved=payload.get("isResolved") is True,
            confidence=confidence,
            reasoning=str(payload.get("reasoning") or "No reasoning provided")
        )
