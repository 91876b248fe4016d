"""
Row-level compatibility analysis.
Takes UploadedRow records through identity resolution, contraindication
matching and risk scoring, producing one AnalyzedRecord per row.
A failing row degrades to a manual-review record instead of aborting the upload.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from catalog import CanonicalMedication
from contraindication_matcher import ContraindicationMatcher
from errors import UploadFormatError
from identity_resolver import IdentityResolver, MedicationIdentity
from resilience import FallbackStrategy, ResilienceService
from risk_engine import AnalysisVerdict, RiskEngine
from terminology import is_icd10_format, specialty_for_code
from upload_parser import UploadedRow, parse_upload

logger = logging.getLogger(__name__)

ANALYSIS_SERVICE = "analysis"


@dataclass
class AnalyzedRecord:
    patient_id: str
    medication: str
    diagnosis: str
    icd10_code: str
    specialty: str
    is_compatible: bool
    risk_level: str
    clinical_notes: str
    dosage: Optional[str] = None
    risk_score: Optional[float] = None
    degraded: bool = False
    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class UploadSummary:
    total_records: int
    compatible: int
    needs_review: int
    incompatible: int
    specialties_affected: int
    success_rate: str
    records: List[AnalyzedRecord] = field(default_factory=list)


def summarize(records: List[AnalyzedRecord]) -> UploadSummary:
    compatible = sum(1 for r in records if r.is_compatible and r.risk_level == "low")
    needs_review = sum(1 for r in records if r.risk_level == "medium")
    incompatible = len(records) - compatible - needs_review
    specialties = {r.specialty for r in records}
    rate = (compatible / len(records) * 100) if records else 0.0
    return UploadSummary(
        total_records=len(records),
        compatible=compatible,
        needs_review=needs_review,
        incompatible=incompatible,
        specialties_affected=len(specialties),
        success_rate=f"{rate:.1f}%",
        records=records,
    )


class CompatibilityAnalyzer:
    def __init__(self, resolver: IdentityResolver, matcher: ContraindicationMatcher,
                 risk_engine: RiskEngine, resilience: ResilienceService):
        self.resolver = resolver
        self.matcher = matcher
        self.risk_engine = risk_engine
        self.resilience = resilience

    async def analyze_upload(self, content: bytes, filename: str) -> UploadSummary:
        rows = parse_upload(content, filename)
        if not rows:
            raise UploadFormatError("No valid diagnosis data found in the uploaded file")
        records = await self.analyze_rows(rows)
        if not records:
            raise UploadFormatError("No records could be analyzed")
        summary = summarize(records)
        logger.info(f"[Analyzer] {filename}: {summary.total_records} records, "
                    f"{summary.compatible} compatible, {summary.needs_review} review, "
                    f"{summary.incompatible} incompatible")
        return summary

    async def analyze_rows(self, rows: List[UploadedRow]) -> List[AnalyzedRecord]:
        records = []
        for row in rows:
            records.append(await self.analyze_row(row))
        return records

    async def analyze_row(self, row: UploadedRow) -> AnalyzedRecord:
        outcome = await self.resilience.execute_with_circuit_breaker(
            ANALYSIS_SERVICE, "analyze_row",
            lambda: self._analyze(row),
            fallback=FallbackStrategy(kind="degraded_service", source="compatibility analysis"),
        )
        if not outcome.from_fallback:
            return outcome.result

        verdict = outcome.result
        return AnalyzedRecord(
            patient_id=row.patient_id,
            medication=row.medication or "Unknown",
            diagnosis=row.diagnosis,
            icd10_code=(row.icd10_code or "").upper(),
            specialty=row.specialty or "Unknown",
            is_compatible=verdict["is_compatible"],
            risk_level=verdict["risk_level"],
            clinical_notes=verdict["notes"],
            dosage=row.dosage,
            degraded=True,
        )

    async def _analyze(self, row: UploadedRow) -> AnalyzedRecord:
        code = (row.icd10_code or "").strip()
        if code:
            code = code.upper() if is_icd10_format(code) else code
        else:
            code = await self.resolver.resolve_diagnosis_code(row.diagnosis)
        diagnosis = await self.resolver.lookup_diagnosis(code) if code else None

        specialty = row.specialty
        if not specialty and diagnosis is not None:
            specialty = diagnosis.specialty
        if not specialty and is_icd10_format(code):
            specialty = specialty_for_code(code)
        specialty = specialty or "Unknown"

        diagnosis_text = (row.diagnosis or "").strip()
        if diagnosis is not None and (not diagnosis_text or diagnosis_text.upper() == code.upper()):
            diagnosis_text = diagnosis.description or diagnosis_text

        identity = await self.resolver.resolve_medication(row.medication)
        verdict, score = self.verdict_for(identity, diagnosis_text, code, specialty)

        return AnalyzedRecord(
            patient_id=row.patient_id,
            medication=identity.name,
            diagnosis=diagnosis_text or row.diagnosis,
            icd10_code=code,
            specialty=specialty,
            is_compatible=verdict.is_compatible,
            risk_level=verdict.risk_level,
            clinical_notes=verdict.clinical_notes,
            dosage=row.dosage,
            risk_score=score,
        )

    def verdict_for(self, identity: MedicationIdentity, diagnosis_text: str,
                    code: str, specialty: str):
        """Returns (AnalysisVerdict, composite score or None)."""
        name = identity.name
        if not code:
            notes = f"ICD-10 code not found for diagnosis: {diagnosis_text or 'Unknown'}"
            if not identity.is_resolved:
                notes += f". Medication \"{name}\" could not be validated against reference data"
            return AnalysisVerdict(False, "medium", specialty, notes), None

        medication: Optional[CanonicalMedication] = identity.medication if identity.is_resolved else None
        if medication is not None and medication.contraindications:
            matches = self.matcher.match(diagnosis_text, code, medication.contraindications, specialty)
            assessment = self.risk_engine.assess(
                matches, diagnosis_text, code, specialty, medication, name,
            )
            return assessment.verdict, assessment.composite_score

        if medication is not None and code in medication.incompatible_codes:
            notes = f"Cached data indicates {name} is contraindicated for {diagnosis_text} ({code})"
            return AnalysisVerdict(False, "high", specialty, notes), None
        if medication is not None and code in medication.compatible_codes:
            notes = f"Cached data indicates {name} is compatible with {diagnosis_text} ({code})"
            return AnalysisVerdict(True, "low", specialty, notes), None

        if medication is not None:
            notes = (f"No contraindication data available. Manual review recommended "
                     f"for {name} and {diagnosis_text}")
        else:
            notes = (f"Medication \"{name}\" could not be validated against reference data. "
                     f"Manual review recommended for {diagnosis_text} ({code})")
        return AnalysisVerdict(True, "medium", specialty, notes), None
