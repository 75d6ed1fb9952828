"""Pydantic v2 data models for consistency findings, reports, reconciliation rules and jobs.

All core data structures shared by the verifier and the reconciliation
service live here.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

CheckType = Literal[
    "user_vehicle_link",
    "vehicle_position",
    "user_count",
    "data_integrity",
    "referential_integrity",
]
CheckStatus = Literal["passed", "failed", "warning"]
Severity = Literal["low", "medium", "high", "critical"]
DataHealth = Literal["excellent", "good", "fair", "poor", "critical"]
RuleStrategy = Literal["merge", "overwrite_local", "overwrite_remote", "manual_review", "ignore"]
JobStatus = Literal["pending", "running", "completed", "failed"]
JobTrigger = Literal["automatic", "manual"]


class ConsistencyCheck(BaseModel):
    """A single audit finding."""

    name: str
    check_type: CheckType
    status: CheckStatus
    message: str
    severity: Severity = "low"
    auto_fixable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalise_passed(self) -> ConsistencyCheck:
        # A passed check carries no operational severity and nothing to fix.
        if self.status == "passed":
            self.severity = "low"
            self.auto_fixable = False
        return self


class ConsistencyReport(BaseModel):
    """Aggregate of one verification pass."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    overall_score: int = Field(100, ge=0, le=100)
    checks_performed: int = 0
    checks_passed: int = 0
    checks_failed: int = 0
    checks_warning: int = 0
    checks: list[ConsistencyCheck] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    data_health: DataHealth = "excellent"


class ReconciliationRule(BaseModel):
    """Static repair-policy definition. Immutable; replace to change."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    check_type: CheckType
    severity: tuple[Severity, ...]
    auto_execute: bool = False
    strategy: RuleStrategy


class RepairOutcome(BaseModel):
    """Counts produced by one run of a repair handler."""

    records_processed: int = 0
    records_fixed: int = 0
    records_failed: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    """Outcome of running one rule once."""

    rule_id: str
    success: bool
    records_processed: int = 0
    records_fixed: int = 0
    records_failed: int = 0
    duration_ms: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ReconciliationJob(BaseModel):
    """Aggregate of one reconciliation run."""

    id: str = Field(default_factory=lambda: f"recon_{uuid.uuid4().hex[:12]}")
    trigger: JobTrigger
    status: JobStatus = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rule_ids: list[str] = Field(default_factory=list)
    results: list[ReconciliationResult] = Field(default_factory=list)
    skipped_rules: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    total_records_processed: int = 0
    total_records_fixed: int = 0
    error_count: int = 0
