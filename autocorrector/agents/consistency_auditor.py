"""
Consistency detection engine.
Audits a manuscript in sequential chapter batches, carrying a running entity
state (characters, locations, timeline) from one batch into the next so that
later chapters are checked against what earlier chapters established.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .agent import InferenceService
from .payload import extract_json_object
from ..core.errors import MalformedResponseError
from ..core.schema import AuditResult, Chapter, TokenUsage, Violation
from ..util.logging import StructuredLogger, get_logger

CHARACTER_STATUSES = ("alive", "dead", "unknown")
IMPORTANCE_LEVELS = ("high", "medium", "low")

NO_PRIOR_CONTEXT = "PRIOR CONTEXT: this is the first batch. There is no prior context yet."

SYSTEM_PROMPT = """You are a forensic continuity auditor for long-form fiction. You DETECT continuity errors already present in an existing manuscript.

Violation types:
1. CHARACTER_RESURRECTION (critical): a character who died or vanished for good acts normally later.
2. IGNORED_INJURY (major): a serious injury disappears without explanation.
3. LOCATION_INCONSISTENCY (major): a character in two places at once, impossible travel, contradictory descriptions of a place.
4. IDENTITY_CONTRADICTION (critical): established physical traits, names or ages change without explanation.
5. TIMELINE_ERROR (major): future events told as past, contradictory flashbacks, impossible dates.
6. KNOWLEDGE_LEAK (minor): a character knows something they could not know yet.
7. OBJECT_INCONSISTENCY (minor): objects appear, vanish or change owner without explanation.

Extract key entities, track their state through the chapters, and report every contradiction
with the exact fragment and a suggested fix.

Respond ONLY with JSON:
{
  "violations": [
    {"chapterNumber": 5, "violationType": "CHARACTER_RESURRECTION", "severity": "critical",
     "description": "...", "affectedEntities": ["..."], "fragment": "...", "suggestedFix": "..."}
  ],
  "entitiesExtracted": {
    "characters": [{"name": "...", "status": "alive|dead|unknown", "firstAppearance": 1, "lastAppearance": 3, "injuries": ["..."]}],
    "locations": [{"name": "...", "firstMention": 1, "characteristics": ["..."]}],
    "timeline": [{"event": "...", "chapter": 2, "importance": "high|medium|low"}]
  }
}"""


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any) -> List[str]:
    if not value:
        return []
    if not isinstance(value, list):
        value = [value]
    return [str(v) for v in value if v is not None and str(v).strip()]


@dataclass
class CharacterReport:
    name: str
    status: Optional[str] = None
    first_appearance: Optional[int] = None
    last_appearance: Optional[int] = None
    injuries: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "CharacterReport":
        if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
            raise ValueError("character entry without a name")
        status = str(raw.get("status") or "").strip().lower() or None
        if status is not None and status not in CHARACTER_STATUSES:
            status = "unknown"
        return cls(
            name=str(raw["name"]).strip(),
            status=status,
            first_appearance=_as_int(raw.get("firstAppearance"), None),
            last_appearance=_as_int(raw.get("lastAppearance"), None),
            injuries=_as_str_list(raw.get("injuries"))
        )


@dataclass
class LocationReport:
    name: str
    first_mention: Optional[int] = None
    characteristics: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "LocationReport":
        if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
            raise ValueError("location entry without a name")
        return cls(
            name=str(raw["name"]).strip(),
            first_mention=_as_int(raw.get("firstMention"), None),
            characteristics=_as_str_list(raw.get("characteristics"))
        )


@dataclass
class TimelineEvent:
    event: str
    chapter: int
    importance: str = "medium"

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "TimelineEvent":
        if not isinstance(raw, dict) or not str(raw.get("event") or "").strip():
            raise ValueError("timeline entry without an event")
        importance = str(raw.get("importance") or "medium").strip().lower()
        if importance not in IMPORTANCE_LEVELS:
            importance = "medium"
        return cls(event=str(raw["event"]).strip(), chapter=_as_int(raw.get("chapter")), importance=importance)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "chapter": self.chapter, "importance": self.importance}


@dataclass
class EntityReport:
    """Entities one batch reported."""
    characters: List[CharacterReport] = field(default_factory=list)
    locations: List[LocationReport] = field(default_factory=list)
    timeline: List[TimelineEvent] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Any) -> "EntityReport":
        """Parse the entitiesExtracted block; unusable entries are dropped."""
        report = cls()
        if not isinstance(raw, dict):
            return report
        for key, parser, target in (
            ("characters", CharacterReport.from_payload, report.characters),
            ("locations", LocationReport.from_payload, report.locations),
            ("timeline", TimelineEvent.from_payload, report.timeline),
        ):
            entries = raw.get(key)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                try:
                    target.append(parser(entry))
                except ValueError:
                    continue
        return report


@dataclass
class CharacterState:
    status: str
    injuries: List[str]
    first_appearance: int
    last_appearance: int


@dataclass
class LocationState:
    first_mention: int
    characteristics: List[str]


@dataclass
class EntityState:
    """Running world state of one audit. Dict insertion order is first-seen order."""
    characters: Dict[str, CharacterState] = field(default_factory=dict)
    locations: Dict[str, LocationState] = field(default_factory=dict)
    timeline: List[TimelineEvent] = field(default_factory=list)

    def merge(self, report: EntityReport) -> "EntityState":
        """Fold one batch report into the state. Merging the same report twice changes nothing but the timeline."""
        for char in report.characters:
            existing = self.characters.get(char.name)
            if existing is None:
                self.characters[char.name] = CharacterState(
                    status=char.status or "alive",
                    injuries=list(dict.fromkeys(char.injuries)),
                    first_appearance=char.first_appearance or 0,
                    last_appearance=char.last_appearance or 0
                )
                continue

            existing.last_appearance = max(existing.last_appearance, char.last_appearance or 0)
            # dead is sticky
            if char.status == "dead":
                existing.status = "dead"
            for injury in char.injuries:
                if injury not in existing.injuries:
                    existing.injuries.append(injury)

        for loc in report.locations:
            if loc.name not in self.locations:
                self.locations[loc.name] = LocationState(
                    first_mention=loc.first_mention or 0,
                    characteristics=list(dict.fromkeys(loc.characteristics))
                )

        self.timeline.extend(report.timeline)
        return self

    def summarize(self) -> str:
        """Context block handed to the next batch."""
        characters = "\n".join(
            f"- {name}: {data.status}" + (f" (injuries: {', '.join(data.injuries)})" if data.injuries else "")
            for name, data in self.characters.items()
        )
        locations = "\n".join(f"- {name}" for name in self.locations)

        return (
            "ACCUMULATED CONTEXT FROM PREVIOUS BATCHES:\n\n"
            f"TRACKED CHARACTERS:\n{characters or '(none yet)'}\n\n"
            f"LOCATIONS MENTIONED:\n{locations or '(none yet)'}\n\n"
            "IMPORTANT: check that these chapters are CONSISTENT with the context above. "
            "Report every contradiction as a violation."
        )

    def to_lists(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "characters": [
                {
                    "name": name,
                    "status": data.status,
                    "firstAppearance": data.first_appearance,
                    "lastAppearance": data.last_appearance,
                    "injuries": list(data.injuries)
                }
                for name, data in self.characters.items()
            ],
            "locations": [
                {"name": name, "firstMention": data.first_mention, "characteristics": list(data.characteristics)}
                for name, data in self.locations.items()
            ],
            "timeline": [event.to_dict() for event in self.timeline]
        }


def compute_consistency_score(critical: int, major: int, minor: int) -> float:
    """Score on a 1-10 scale: 2 points per critical, 1 per major, 0.5 per minor."""
    score = max(1.0, 10 - critical * 2 - major - minor * 0.5)
    return round(score, 1)


def build_summary(violations: List[Violation]) -> str:
    if not violations:
        return "Consistency audit complete. No continuity violations were detected; the manuscript is coherent."

    counts = {severity: sum(1 for v in violations if v.severity == severity) for severity in ("critical", "major", "minor")}
    breakdown: Dict[str, int] = {}
    for v in violations:
        breakdown[v.type] = breakdown.get(v.type, 0) + 1
    type_summary = ", ".join(f"{t}: {n}" for t, n in breakdown.items())

    summary = (
        f"Consistency audit complete. {len(violations)} continuity violations detected: "
        f"{counts['critical']} critical, {counts['major']} major, {counts['minor']} minor. "
        f"Types: {type_summary}."
    )
    if counts["critical"]:
        summary += " Critical violations need URGENT correction."
    return summary


class ConsistencyAuditor:
    """
    Batched continuity auditor.

    Batches run strictly in chapter order; batch N's prompt carries the state
    merged from batches 1..N-1. A batch whose reply cannot be parsed is logged
    and skipped. Inference failures (ExternalCallError) propagate.
    """

    def __init__(self, inference: InferenceService, logger: StructuredLogger = None,
                 batch_size: int = 8, chapter_char_cap: int = 8000):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.inference = inference
        self.logger = logger or get_logger("autocorrector.auditor")
        self.batch_size = batch_size
        self.chapter_char_cap = chapter_char_cap

    def audit(self, chapters: List[Chapter], genre: str, language: str) -> AuditResult:
        ordered = sorted(chapters, key=lambda ch: ch.chapter_number)
        batches = [ordered[i:i + self.batch_size] for i in range(0, len(ordered), self.batch_size)]

        state = EntityState()
        violations: List[Violation] = []
        usage = TokenUsage()
        failed_batches = 0

        for index, batch in enumerate(batches, start=1):
            context = state.summarize() if index > 1 else NO_PRIOR_CONTEXT
            prompt = self._build_prompt(batch, genre, language, index, len(batches), context)

            response = self.inference.generate(prompt, SYSTEM_PROMPT)
            usage.add(response.token_usage)

            try:
                batch_violations, report = self._parse_batch(response.content)
            except MalformedResponseError as e:
                failed_batches += 1
                self.logger.log_audit_batch(index, len(batches), "malformed", {"error": str(e)})
                continue

            violations.extend(batch_violations)
            state = state.merge(report)
            self.logger.log_audit_batch(index, len(batches), details={
                "chapters": [ch.chapter_number for ch in batch],
                "violations": len(batch_violations),
                "characters_tracked": len(state.characters)
            })

        result = AuditResult(
            violations=violations,
            entities=state.to_lists(),
            consistency_score=compute_consistency_score(
                sum(1 for v in violations if v.severity == "critical"),
                sum(1 for v in violations if v.severity == "major"),
                sum(1 for v in violations if v.severity == "minor")
            ),
            summary=build_summary(violations),
            token_usage=usage,
            failed_batches=failed_batches
        )

        self.logger.log_operation("audit.complete", "success", {
            "chapters": len(ordered),
            "batches": len(batches),
            "failed_batches": failed_batches,
            "violations": result.total_issues,
            "score": result.consistency_score
        })
        return result

    def _build_prompt(self, batch: List[Chapter], genre: str, language: str,
                      batch_number: int, total_batches: int, context: str) -> str:
        content = "\n\n---\n\n".join(
            f"=== CHAPTER {ch.chapter_number}: {ch.title} ===\n{ch.content[:self.chapter_char_cap]}"
            for ch in batch
        )
        return (
            "Run a forensic continuity audit of the following chapters.\n\n"
            f"GENRE: {genre}\n"
            f"LANGUAGE: {language}\n"
            f"BATCH: {batch_number}/{total_batches}\n\n"
            f"{context}\n\n"
            f"CHAPTERS TO AUDIT:\n{content}\n\n"
            "Detect EVERY continuity violation and extract the key entities. Respond in JSON."
        )

    def _parse_batch(self, text: str) -> Tuple[List[Violation], EntityReport]:
        payload = extract_json_object(text)

        raw_violations = payload.get("violations") or []
        if not isinstance(raw_violations, list):
            raise MalformedResponseError("'violations' is not a list", raw=text)

        violations = []
        for entry in raw_violations:
            try:
                violations.append(Violation.from_payload(entry))
            except ValueError as e:
                self.logger.log_malformed_response("audit.violation", e)

        return violations, EntityReport.from_payload(payload.get("entitiesExtracted"))
