"""
Correction applier.
Rewrites the chapters affected by a batch of issues and reports which fixes
were applied to each chapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List

from .agent import InferenceService
from .payload import extract_json_object
from ..core.errors import MalformedResponseError
from ..core.schema import Chapter, CorrectionRecord, Document, TokenUsage, Violation
from ..util.logging import StructuredLogger, get_logger

SYSTEM_PROMPT = """You are a manuscript continuity editor. Rewrite ONE chapter so that the listed continuity problems disappear.

Rules:
- Change only what the problems require; keep voice, style, plot and length.
- Never summarise or shorten the chapter.
- Set "structuralChange" to true only when a scene had to be removed, moved or substantially rewritten.

Respond ONLY with JSON:
{"correctedText": "full corrected chapter", "appliedFixes": [{"issue": "...", "fix": "..."}], "structuralChange": false}"""


@dataclass
class ChapterRevision:
    chapter_number: int
    original: Chapter
    corrected_text: str
    fixes: List[CorrectionRecord] = field(default_factory=list)
    structural_change: bool = False

    @property
    def changed(self) -> bool:
        return self.corrected_text.strip() != self.original.content.strip()


@dataclass
class CorrectionOutcome:
    revisions: List[ChapterRevision] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    skipped_chapters: List[int] = field(default_factory=list)

    @property
    def structural_changes(self) -> int:
        return sum(1 for r in self.revisions if r.structural_change)


class CorrectionApplier(ABC):
    """Collaborator that turns a fix batch into chapter revisions."""

    @abstractmethod
    def apply(self, document: Document, issues: List[Violation]) -> CorrectionOutcome:
        """
        Produce revisions for the chapters the issues point at.

        Raises:
            ExternalCallError: the backing service failed
        """


class InferenceCorrectionApplier(CorrectionApplier):
    """Rewrites each affected chapter with one inference call."""

    def __init__(self, inference: InferenceService, logger: StructuredLogger = None):
        self.inference = inference
        self.logger = logger or get_logger("autocorrector.corrector")

    def apply(self, document: Document, issues: List[Violation]) -> CorrectionOutcome:
        chapters = {ch.chapter_number: ch for ch in document.chapters}
        grouped: Dict[int, List[Violation]] = {}
        for issue in issues:
            grouped.setdefault(issue.chapter_number, []).append(issue)

        outcome = CorrectionOutcome()
        for chapter_number in sorted(grouped):
            chapter = chapters.get(chapter_number)
            if chapter is None:
                self.logger.warning(f"Issues reference missing chapter {chapter_number} of document {document.id}")
                outcome.skipped_chapters.append(chapter_number)
                continue

            response = self.inference.generate(self._build_prompt(document, chapter, grouped[chapter_number]), SYSTEM_PROMPT)
            outcome.token_usage.add(response.token_usage)

            try:
                revision = self._parse(chapter, grouped[chapter_number], response.content)
            except MalformedResponseError as e:
                self.logger.log_malformed_response("corrector", e, {"chapter": chapter_number})
                outcome.skipped_chapters.append(chapter_number)
                continue

            outcome.revisions.append(revision)

        self.logger.log_operation("correction.apply", "success", {
            "document_id": document.id,
            "chapters": len(grouped),
            "revisions": len(outcome.revisions),
            "skipped": outcome.skipped_chapters
        })
        return outcome

    def _build_prompt(self, document: Document, chapter: Chapter, issues: List[Violation]) -> str:
        problems = "\n".join(
            f"{i}. [{v.severity}] {v.type}: {v.description}"
            + (f"\n   Fragment: {v.fragment}" if v.fragment else "")
            + (f"\n   Suggested fix: {v.suggested_fix}" if v.suggested_fix else "")
            for i, v in enumerate(issues, start=1)
        )
        return (
            f"GENRE: {document.genre}\nLANGUAGE: {document.language}\n\n"
            f"PROBLEMS TO FIX IN CHAPTER {chapter.chapter_number}:\n{problems}\n\n"
            f"=== CHAPTER {chapter.chapter_number}: {chapter.title} ===\n{chapter.content}\n\n"
            "Return the full corrected chapter in JSON."
        )

    def _parse(self, chapter: Chapter, issues: List[Violation], text: str) -> ChapterRevision:
        payload = extract_json_object(text)

        corrected = payload.get("correctedText")
        if not isinstance(corrected, str) or not corrected.strip():
            raise MalformedResponseError("missing correctedText", raw=text)

        fixes = []
        for entry in payload.get("appliedFixes") or []:
            if isinstance(entry, dict) and entry.get("issue") and entry.get("fix"):
                fixes.append(CorrectionRecord(chapter.chapter_number, str(entry["issue"]), str(entry["fix"])))

        # Fall back to the reported issues when the model lists no fixes
        if not fixes:
            fixes = [
                CorrectionRecord(chapter.chapter_number, f"{v.type}: {v.description}", v.suggested_fix or "rewritten")
                for v in issues
            ]

        return ChapterRevision(
            chapter_number=chapter.chapter_number,
            original=chapter,
            corrected_text=corrected,
            fixes=fixes,
            structural_change=payload.get("structuralChange") is True
        )
