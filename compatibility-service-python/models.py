"""
Pydantic models for the HTTP API request and response bodies.
"""
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone

RiskLevel = Literal["low", "medium", "high"]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ─── Dashboard categorization ────────────────────────────────────────────────

class CompatibleRule(BaseModel):
    risk_levels: List[RiskLevel]
    requires_compatible_flag: bool


class ReviewRule(BaseModel):
    risk_levels: List[RiskLevel]


class IncompatibleRule(BaseModel):
    risk_levels: List[RiskLevel]
    include_incompatible_flag: bool


class CompatibilityConfig(BaseModel):
    compatible: CompatibleRule
    needs_review: ReviewRule
    incompatible: IncompatibleRule


DEFAULT_COMPATIBILITY_CONFIG = CompatibilityConfig(
    compatible=CompatibleRule(risk_levels=["low"], requires_compatible_flag=True),
    needs_review=ReviewRule(risk_levels=["medium"]),
    incompatible=IncompatibleRule(risk_levels=["high"], include_incompatible_flag=True),
)

COMPATIBILITY_PRESETS: Dict[str, CompatibilityConfig] = {
    "conservative": DEFAULT_COMPATIBILITY_CONFIG,
    "standard": CompatibilityConfig(
        compatible=CompatibleRule(risk_levels=["low", "medium"], requires_compatible_flag=True),
        needs_review=ReviewRule(risk_levels=[]),
        incompatible=IncompatibleRule(risk_levels=["high"], include_incompatible_flag=True),
    ),
    "permissive": CompatibilityConfig(
        compatible=CompatibleRule(risk_levels=["low", "medium", "high"], requires_compatible_flag=False),
        needs_review=ReviewRule(risk_levels=[]),
        incompatible=IncompatibleRule(risk_levels=[], include_incompatible_flag=True),
    ),
}


# ─── Records and summaries ───────────────────────────────────────────────────

class MedicalRecord(BaseModel):
    id: Optional[str] = None
    patient_id: str
    medication: str
    dosage: Optional[str] = None
    diagnosis: str
    icd10_code: str
    specialty: str
    is_compatible: bool
    risk_level: RiskLevel
    clinical_notes: str
    risk_score: Optional[float] = None
    degraded: bool = False
    created_at: Optional[str] = None


class AnalysisSummary(BaseModel):
    total_records: int
    compatible: int
    needs_review: int
    incompatible: int
    specialties_affected: int
    success_rate: str


class UploadResponse(BaseModel):
    success: bool
    message: str
    analysis_id: str
    summary: AnalysisSummary
    record_ids: List[str]


class DashboardStats(BaseModel):
    total_records: int
    compatibility_issues: int
    success_rate: str
    specialties_affected: int
    compatible_count: int
    needs_review_count: int
    incompatible_count: int


class SpecialtyData(BaseModel):
    name: str
    issue_count: int
    percentage: float
    risk_level: RiskLevel


# ─── Reference lookups ───────────────────────────────────────────────────────

class Icd10Result(BaseModel):
    code: str
    description: str
    category: str


class Icd10Validation(BaseModel):
    code: str
    is_valid: bool
    description: Optional[str] = None
    category: Optional[str] = None
    degraded: bool = False


class MedicationResult(BaseModel):
    brand_name: str
    generic_name: str
    active_ingredients: List[str]
    dosage_form: Optional[str] = None
    manufacturer: Optional[str] = None
    ndc: Optional[str] = None


class Contraindication(BaseModel):
    condition: str
    severity: str
    description: str


class FdaStatus(BaseModel):
    status: Literal["available", "rate_limited", "warning", "error"]
    message: str
    api_config: Dict
    usage: Dict
    test_result: Optional[Dict] = None
    timestamp: str = Field(default_factory=utc_timestamp)


class ErrorResponse(BaseModel):
    error: str
    detail: str
    retry_after: Optional[int] = None
    timestamp: str = Field(default_factory=utc_timestamp)
