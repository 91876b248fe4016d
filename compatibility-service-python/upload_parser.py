"""
Spreadsheet upload parser.
Reads CSV or Excel claim extracts and maps them onto UploadedRow records.

Two layouts are recognised:
  medical_claims - Claim Code Ref / Speciality / Active Ingredient / Diag 1..n
                   (one row per non-empty diagnosis column)
  original       - patientId / medication / diagnosis [/ dosage / icd10Code]
"""
import io
import os
import logging
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from errors import UploadFormatError, UploadReadError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".xlsx", ".xls"}


@dataclass
class UploadedRow:
    patient_id: str
    medication: str
    diagnosis: str
    dosage: Optional[str] = None
    icd10_code: Optional[str] = None
    specialty: Optional[str] = None


@dataclass
class ColumnMapping:
    format: str
    patient_id: str
    medication: Optional[str] = None
    diagnosis: Optional[str] = None
    dosage: Optional[str] = None
    icd10_code: Optional[str] = None
    specialty: Optional[str] = None
    active_ingredient: Optional[str] = None
    diagnosis_columns: List[str] = field(default_factory=list)


def read_table(content: bytes, filename: str) -> pd.DataFrame:
    """Load the first sheet of an upload as strings."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UploadReadError(f"Unsupported file type '{ext or filename}'. Use CSV or Excel.")
    try:
        if ext == ".csv":
            df = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str)
    except Exception as e:
        raise UploadReadError(f"Could not read {filename}: {e}") from e
    df.columns = [str(c).strip() for c in df.columns]
    return df.fillna("")


def _find(columns: List[str], *needles: str) -> Optional[str]:
    for col in columns:
        lower = col.lower()
        if all(n in lower for n in needles):
            return col
    return None


def detect_columns(columns: List[str]) -> Optional[ColumnMapping]:
    claim_ref = _find(columns, "claim", "ref")
    specialty = _find(columns, "speciality") or _find(columns, "specialty")
    ingredient = _find(columns, "active", "ingredient")
    diag_columns = [c for c in columns if "diag" in c.lower()]
    if claim_ref and specialty and ingredient and diag_columns:
        return ColumnMapping(
            format="medical_claims",
            patient_id=claim_ref,
            specialty=specialty,
            active_ingredient=ingredient,
            diagnosis_columns=diag_columns,
        )

    by_lower = {c.lower(): c for c in columns}
    if all(k in by_lower for k in ("patientid", "medication", "diagnosis")):
        return ColumnMapping(
            format="original",
            patient_id=by_lower["patientid"],
            medication=by_lower["medication"],
            diagnosis=by_lower["diagnosis"],
            dosage=by_lower.get("dosage"),
            icd10_code=by_lower.get("icd10code"),
        )
    return None


def validate_columns(df: pd.DataFrame) -> Tuple[bool, str]:
    if df.empty:
        return False, "No data found in the uploaded file"
    if detect_columns(list(df.columns)) is None:
        return False, (
            "Missing required columns. Expected either patientId, medication and diagnosis, "
            "or Claim Code Ref, Speciality, Active Ingredient and at least one Diag column. "
            f"Found columns: {', '.join(df.columns)}"
        )
    return True, "OK"


def _cell(row: Dict, column: Optional[str]) -> str:
    if not column:
        return ""
    value = row.get(column, "")
    return "" if value is None else str(value).strip()


def map_row(row: Dict, mapping: ColumnMapping) -> List[UploadedRow]:
    if mapping.format == "medical_claims":
        rows = []
        for column in mapping.diagnosis_columns:
            code = _cell(row, column)
            if not code:
                continue
            rows.append(UploadedRow(
                patient_id=_cell(row, mapping.patient_id),
                medication=_cell(row, mapping.active_ingredient) or "Unknown",
                diagnosis=code,
                icd10_code=code,
                specialty=_cell(row, mapping.specialty) or None,
            ))
        return rows

    return [UploadedRow(
        patient_id=_cell(row, mapping.patient_id),
        medication=_cell(row, mapping.medication),
        diagnosis=_cell(row, mapping.diagnosis),
        dosage=_cell(row, mapping.dosage) or None,
        icd10_code=_cell(row, mapping.icd10_code) or None,
    )]


def parse_upload(content: bytes, filename: str) -> List[UploadedRow]:
    df = read_table(content, filename)
    valid, message = validate_columns(df)
    if not valid:
        raise UploadFormatError(message)
    mapping = detect_columns(list(df.columns))

    rows: List[UploadedRow] = []
    for record in df.to_dict(orient="records"):
        rows.extend(map_row(record, mapping))
    logger.info(f"[UploadParser] {filename}: {len(df)} sheet rows -> {len(rows)} records ({mapping.format})")
    return rows
