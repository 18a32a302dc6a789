"""
Request and response models of the auto-correction API.
JSON field names are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..core.config import MAX_CYCLES_RANGE, TARGET_SCORE_RANGE, DEFAULT_MAX_CYCLES, DEFAULT_TARGET_SCORE


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRunRequest(CamelModel):
    max_cycles: int = Field(DEFAULT_MAX_CYCLES, ge=MAX_CYCLES_RANGE[0], le=MAX_CYCLES_RANGE[1])
    target_score: int = Field(DEFAULT_TARGET_SCORE, ge=TARGET_SCORE_RANGE[0], le=TARGET_SCORE_RANGE[1])
    max_critical_issues: int = Field(0, ge=0)

    @field_validator('max_cycles', 'target_score', 'max_critical_issues', mode='before')
    @classmethod
    def reject_booleans(cls, v):
        if isinstance(v, bool):
            raise ValueError('must be an integer, not a boolean')
        return v


class StartRunResponse(CamelModel):
    success: bool = True
    run_id: int


class CycleResponse(CamelModel):
    cycle: int
    audit_id: Optional[int] = None
    revision_id: Optional[int] = None
    overall_score: float
    critical_issues: int
    total_issues: int
    issues_fixed: int
    structural_changes: int
    result: str
    started_at: datetime
    completed_at: datetime


class LogEntryResponse(CamelModel):
    timestamp: datetime
    phase: str
    message: str
    details: Optional[Dict[str, Any]] = None


class RunResponse(CamelModel):
    id: int
    document_id: int
    status: str
    current_cycle: int
    max_cycles: int
    target_score: int
    max_critical_issues: int
    cycle_history: List[CycleResponse]
    progress_log: List[LogEntryResponse]
    final_score: Optional[float] = None
    final_critical_issues: Optional[int] = None
    total_issues_fixed: Optional[int] = None
    total_structural_changes: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class RunListResponse(CamelModel):
    runs: List[RunResponse]


class CancelRunResponse(CamelModel):
    success: bool = True
    run_id: int
    status: str


class DeleteRunResponse(CamelModel):
    success: bool = True
    run_id: int


class HealthResponse(CamelModel):
    status: str
    version: str
    db_health: bool
    active_runs: int
    inference: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str
