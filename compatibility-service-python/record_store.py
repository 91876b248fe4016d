"""
In-memory store for analyzed records and upload summaries, plus the
dashboard aggregations computed over them.
"""
import uuid
import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from compatibility_analyzer import AnalyzedRecord, UploadSummary
from models import DEFAULT_COMPATIBILITY_CONFIG, CompatibilityConfig, utc_timestamp
from terminology import is_icd10_format, specialty_for_code

logger = logging.getLogger(__name__)

RISK_ORDER = {"high": 3, "medium": 2, "low": 1}
UNMAPPED_SPECIALTIES = {"", "Unknown"}


def categorize_record(record: AnalyzedRecord, config: CompatibilityConfig) -> str:
    """Returns compatible, needs_review or incompatible; incompatible rules are checked first."""
    level = record.risk_level
    if level in config.incompatible.risk_levels:
        return "incompatible"
    if config.incompatible.include_incompatible_flag and not record.is_compatible:
        return "incompatible"
    if level in config.needs_review.risk_levels:
        return "needs_review"
    if level in config.compatible.risk_levels:
        if config.compatible.requires_compatible_flag and not record.is_compatible:
            return "incompatible"
        return "compatible"
    return "incompatible"


def has_issue(record: AnalyzedRecord) -> bool:
    return not record.is_compatible or record.risk_level != "low"


class RecordStore:
    def __init__(self):
        self._records: Dict[str, AnalyzedRecord] = {}
        self._summaries: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def save_analyzed_records(self, records: List[AnalyzedRecord]) -> List[str]:
        """Stores the whole batch or nothing."""
        created = utc_timestamp()
        stored = [replace(r, id=str(uuid.uuid4()), created_at=created) for r in records]
        with self._lock:
            self._records.update((r.id, r) for r in stored)
        logger.info(f"[RecordStore] Saved {len(stored)} records")
        return [r.id for r in stored]

    def save_analysis_summary(self, filename: str, summary: UploadSummary) -> str:
        analysis_id = str(uuid.uuid4())
        entry = {
            "id": analysis_id,
            "filename": filename,
            "total_records": summary.total_records,
            "compatible": summary.compatible,
            "needs_review": summary.needs_review,
            "incompatible": summary.incompatible,
            "specialties_affected": summary.specialties_affected,
            "success_rate": summary.success_rate,
            "created_at": utc_timestamp(),
        }
        with self._lock:
            self._summaries[analysis_id] = entry
        return analysis_id

    def get_summary(self, analysis_id: str) -> Optional[Dict]:
        with self._lock:
            return self._summaries.get(analysis_id)

    def get_record(self, record_id: str) -> Optional[AnalyzedRecord]:
        with self._lock:
            return self._records.get(record_id)

    def all_records(self) -> List[AnalyzedRecord]:
        with self._lock:
            return list(self._records.values())

    # ─── Dashboard ───────────────────────────────────────────────────────────

    def dashboard_stats(self, config: CompatibilityConfig = DEFAULT_COMPATIBILITY_CONFIG) -> Dict:
        records = self.all_records()
        counts = {"compatible": 0, "needs_review": 0, "incompatible": 0}
        for record in records:
            counts[categorize_record(record, config)] += 1

        total = len(records)
        rate = (counts["compatible"] / total * 100) if total else 0.0
        return {
            "total_records": total,
            "compatibility_issues": counts["needs_review"] + counts["incompatible"],
            "success_rate": f"{rate:.1f}%",
            "specialties_affected": len({r.specialty for r in records}),
            "compatible_count": counts["compatible"],
            "needs_review_count": counts["needs_review"],
            "incompatible_count": counts["incompatible"],
        }

    def specialty_breakdown(self) -> List[Dict]:
        totals: Dict[str, List[int]] = {}
        for record in self.all_records():
            entry = totals.setdefault(record.specialty, [0, 0])
            entry[0] += 1
            if has_issue(record):
                entry[1] += 1

        breakdown = []
        for name, (total, issues) in totals.items():
            ratio = issues / total
            breakdown.append({
                "name": name,
                "issue_count": issues,
                "percentage": round(ratio * 100, 2),
                "risk_level": "high" if ratio > 0.6 else "medium" if ratio > 0.3 else "low",
            })
        return sorted(breakdown, key=lambda s: s["issue_count"], reverse=True)

    def incompatible_records(self, limit: int = 10) -> List[AnalyzedRecord]:
        flagged = [r for r in self.all_records() if has_issue(r)]
        flagged.sort(key=lambda r: RISK_ORDER.get(r.risk_level, 0), reverse=True)
        return flagged[:max(0, limit)]

    # ─── Maintenance ─────────────────────────────────────────────────────────

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            self._summaries.clear()
        logger.info(f"[RecordStore] Cleared {count} records")
        return count

    def update_specialty(self, record_id: str, specialty: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            self._records[record_id] = replace(record, specialty=specialty)
            return True

    def fix_specialties(self) -> Dict:
        """Re-derive specialties for records stored without one."""
        checked = updated = 0
        for record in self.all_records():
            if record.specialty not in UNMAPPED_SPECIALTIES:
                continue
            checked += 1
            if not is_icd10_format(record.icd10_code):
                continue
            specialty = specialty_for_code(record.icd10_code)
            if specialty in ("Unknown", "Internal Medicine"):
                continue
            if self.update_specialty(record.id, specialty):
                updated += 1
        logger.info(f"[RecordStore] Specialty fix: {updated} of {checked} unmapped records updated")
        return {"checked": checked, "updated": updated}

