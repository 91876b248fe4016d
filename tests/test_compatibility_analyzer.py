"""
End-to-end analysis of uploaded rows, plus the upload parser and record store.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'compatibility-service-python'))

import asyncio
import io
import pandas as pd
import pytest

from catalog import CanonicalMedication, DiagnosisCatalog, MedicationCatalog
from compatibility_analyzer import AnalyzedRecord, CompatibilityAnalyzer, summarize
from contraindication_matcher import ContraindicationMatcher
from errors import UploadFormatError, UploadReadError
from icd10_service import Icd10Service
from identity_resolver import IdentityResolver
from medication_service import ContraindicationStatement, MedicationService
from models import COMPATIBILITY_PRESETS
from record_store import RecordStore, categorize_record
from risk_engine import RiskEngine
from upload_parser import UploadedRow, detect_columns, parse_upload


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def analyzer(server, resilience, knowledge_base, clock):
    medications = MedicationService(resilience, transport=server.transport, api_key="", clock=clock)
    icd10 = Icd10Service(resilience, knowledge_base, transport=server.transport, clock=clock)
    resolver = IdentityResolver(
        medications, icd10, knowledge_base, MedicationCatalog(), DiagnosisCatalog(knowledge_base),
    )
    return CompatibilityAnalyzer(resolver, ContraindicationMatcher(knowledge_base), RiskEngine(), resilience)


def make_record(specialty="Cardiology", risk_level="low", is_compatible=True, code="I50.9"):
    return AnalyzedRecord(
        patient_id="P1", medication="Med", diagnosis="Dx", icd10_code=code,
        specialty=specialty, is_compatible=is_compatible, risk_level=risk_level,
        clinical_notes="",
    )

# ─── End-to-End Scenarios ─────────────────────────────────────────────────────

def test_aspirin_with_asthma_is_incompatible(analyzer, server):
    aspirin = CanonicalMedication(
        name="Aspirin", active_ingredient="aspirin",
        contraindications=(ContraindicationStatement("asthma", "contraindicated", "Avoid in asthma"),),
    )
    analyzer.resolver.medication_catalog.add(aspirin)
    row = UploadedRow(patient_id="P001", medication="Aspirin",
                      diagnosis="Asthma, unspecified", icd10_code="J45.9")
    record = run(analyzer.analyze_row(row))
    assert record.is_compatible is False
    assert record.risk_level == "high"
    assert "asthma" in record.clinical_notes.lower()
    assert record.specialty == "Pulmonology"
    assert server.calls == {"icd10": 0, "openfda": 0}

def test_aspirin_resolved_through_reference_service(analyzer):
    row = UploadedRow(patient_id="P001", medication="Aspirin",
                      diagnosis="Asthma, unspecified", icd10_code="J45.9")
    record = run(analyzer.analyze_row(row))
    assert record.risk_level == "high"
    assert record.is_compatible is False

def test_unresolvable_medication_needs_manual_review(analyzer):
    row = UploadedRow(patient_id="P002", medication="Xyzzyplex123", diagnosis="E11.9", icd10_code="E11.9")
    record = run(analyzer.analyze_row(row))
    assert record.risk_level == "medium"
    assert record.is_compatible is True
    assert "Manual review" in record.clinical_notes
    assert "Xyzzyplex123" in record.clinical_notes
    assert record.diagnosis == "Type 2 diabetes mellitus without complications"
    assert record.specialty == "Endocrinology"

def test_cached_incompatible_codes_used_without_statements(analyzer):
    analyzer.resolver.medication_catalog.add(CanonicalMedication(
        name="Ibuprofen", active_ingredient="ibuprofen", incompatible_codes=frozenset({"K25.9"}),
    ))
    row = UploadedRow(patient_id="P003", medication="Ibuprofen",
                      diagnosis="Gastric ulcer", icd10_code="K25.9")
    record = run(analyzer.analyze_row(row))
    assert record.risk_level == "high"
    assert record.is_compatible is False
    assert record.clinical_notes.startswith("Cached data indicates")

def test_missing_diagnosis_code(analyzer):
    row = UploadedRow(patient_id="P004", medication="Xyzzyplex123", diagnosis="")
    record = run(analyzer.analyze_row(row))
    assert record.is_compatible is False
    assert record.risk_level == "medium"
    assert record.clinical_notes.startswith("ICD-10 code not found")

def test_row_failure_degrades_instead_of_raising(analyzer):
    async def broken(_text):
        raise RuntimeError("resolver exploded")

    analyzer.resolver.resolve_medication = broken
    row = UploadedRow(patient_id="P005", medication="Aspirin", diagnosis="Asthma", icd10_code="J45.9",
                      specialty="Pulmonology")
    record = run(analyzer.analyze_row(row))
    assert record.degraded is True
    assert record.risk_level == "medium"
    assert "Manual review" in record.clinical_notes

def test_analyze_upload_summary(analyzer):
    content = (
        "patientId,medication,diagnosis,icd10Code\n"
        "P001,Aspirin,\"Asthma, unspecified\",J45.9\n"
        "P002,Xyzzyplex123,Type 2 diabetes,E11.9\n"
    ).encode()
    summary = run(analyzer.analyze_upload(content, "claims.csv"))
    assert summary.total_records == 2
    assert summary.incompatible == 1
    assert summary.needs_review == 1
    assert summary.compatible == 0
    assert summary.specialties_affected == 2
    assert summary.success_rate == "0.0%"

def test_summarize_counts():
    records = [make_record(), make_record(risk_level="medium"), make_record(risk_level="high", is_compatible=False)]
    summary = summarize(records)
    assert (summary.compatible, summary.needs_review, summary.incompatible) == (1, 1, 1)
    assert summary.success_rate == "33.3%"

# ─── Upload Parser Tests ──────────────────────────────────────────────────────

def test_parse_original_layout():
    content = b"PatientId,Medication,Diagnosis,Dosage\nP1,Metformin,Type 2 diabetes,500 mg\n"
    rows = parse_upload(content, "sheet.csv")
    assert rows == [UploadedRow(patient_id="P1", medication="Metformin",
                                diagnosis="Type 2 diabetes", dosage="500 mg")]

def test_parse_medical_claims_layout_one_row_per_diagnosis():
    content = (
        b"Claim Code Ref,Speciality,Active Ingredient,Diag 1,Diag 2,Diag 3\n"
        b"C100,Cardiology,Lisinopril,I50.9,,N18.6\n"
    )
    rows = parse_upload(content, "claims.csv")
    assert [r.icd10_code for r in rows] == ["I50.9", "N18.6"]
    assert all(r.patient_id == "C100" and r.medication == "Lisinopril" for r in rows)
    assert rows[0].specialty == "Cardiology"

def test_parse_excel_upload():
    buffer = io.BytesIO()
    pd.DataFrame([{"patientId": "P9", "medication": "Warfarin", "diagnosis": "Atrial fibrillation"}]).to_excel(
        buffer, index=False, engine="openpyxl")
    rows = parse_upload(buffer.getvalue(), "sheet.xlsx")
    assert rows[0].medication == "Warfarin"

def test_missing_columns_lists_found_columns():
    with pytest.raises(UploadFormatError) as exc:
        parse_upload(b"name,drug\nA,B\n", "bad.csv")
    assert "Found columns: name, drug" in str(exc.value)

def test_empty_sheet_rejected():
    with pytest.raises(UploadFormatError):
        parse_upload(b"patientId,medication,diagnosis\n", "empty.csv")

def test_unsupported_extension():
    with pytest.raises(UploadReadError):
        parse_upload(b"whatever", "notes.txt")

def test_detect_columns_none_for_unknown_layout():
    assert detect_columns(["foo", "bar"]) is None

# ─── Record Store Tests ───────────────────────────────────────────────────────

def test_store_assigns_ids_and_timestamps():
    store = RecordStore()
    ids = store.save_analyzed_records([make_record(), make_record()])
    assert len(set(ids)) == 2
    stored = store.get_record(ids[0])
    assert stored.id == ids[0]
    assert stored.created_at.endswith("Z")

def test_categorize_with_presets():
    medium = make_record(risk_level="medium")
    flagged = make_record(risk_level="high", is_compatible=False)
    assert categorize_record(medium, COMPATIBILITY_PRESETS["conservative"]) == "needs_review"
    assert categorize_record(medium, COMPATIBILITY_PRESETS["standard"]) == "compatible"
    assert categorize_record(flagged, COMPATIBILITY_PRESETS["permissive"]) == "incompatible"
    assert categorize_record(make_record(risk_level="high"), COMPATIBILITY_PRESETS["permissive"]) == "compatible"

def test_dashboard_stats():
    store = RecordStore()
    store.save_analyzed_records([
        make_record(), make_record(risk_level="medium", specialty="Nephrology"),
        make_record(risk_level="high", is_compatible=False, specialty="Nephrology"),
    ])
    stats = store.dashboard_stats()
    assert stats["total_records"] == 3
    assert stats["compatible_count"] == 1
    assert stats["needs_review_count"] == 1
    assert stats["incompatible_count"] == 1
    assert stats["compatibility_issues"] == 2
    assert stats["success_rate"] == "33.3%"
    assert stats["specialties_affected"] == 2

def test_empty_dashboard():
    stats = RecordStore().dashboard_stats()
    assert stats["total_records"] == 0
    assert stats["success_rate"] == "0.0%"

def test_specialty_breakdown_sorted_by_issues():
    store = RecordStore()
    store.save_analyzed_records([
        make_record(specialty="Cardiology"),
        make_record(specialty="Nephrology", risk_level="medium"),
        make_record(specialty="Nephrology", risk_level="high", is_compatible=False),
    ])
    breakdown = store.specialty_breakdown()
    assert breakdown[0]["name"] == "Nephrology"
    assert breakdown[0]["issue_count"] == 2
    assert breakdown[0]["risk_level"] == "high"
    assert breakdown[1]["risk_level"] == "low"

def test_incompatible_records_ordered_by_risk():
    store = RecordStore()
    store.save_analyzed_records([
        make_record(risk_level="medium"), make_record(),
        make_record(risk_level="high", is_compatible=False),
    ])
    mismatches = store.incompatible_records(limit=10)
    assert [r.risk_level for r in mismatches] == ["high", "medium"]
    assert len(store.incompatible_records(limit=1)) == 1

def test_fix_specialties_and_clear():
    store = RecordStore()
    store.save_analyzed_records([
        make_record(specialty="Unknown", code="N18.6"),
        make_record(specialty="Unknown", code="R69"),
        make_record(specialty="Unknown", code="Chest pain"),
        make_record(specialty="Cardiology"),
    ])
    result = store.fix_specialties()
    assert result == {"checked": 3, "updated": 1}
    assert sorted(r.specialty for r in store.all_records()) == ["Cardiology", "Nephrology", "Unknown", "Unknown"]
    assert store.clear() == 4
    assert store.all_records() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
