from pydantic import BaseModel, Field
from datetime import datetime
from typing import Literal

AuditStatus = Literal["pass", "warning", "fail"]


class AuditCheck(BaseModel):
    name: str
    status: AuditStatus
    expected: int | str
    actual: int | str
    message: str
    discrepancy: int | None = None


class AuditSummary(BaseModel):
    total_checks: int = 0
    passed: int = 0
    warnings: int = 0
    failed: int = 0


class ExperimentAuditResponse(BaseModel):
    """Schema returned by GET /experiments/{id}/audit."""
    experiment_id: int
    timestamp: datetime
    overall_status: AuditStatus
    checks: list[AuditCheck] = Field(default_factory=list)
    summary: AuditSummary
