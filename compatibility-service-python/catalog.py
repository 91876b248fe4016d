"""
In-process catalogs of canonical medications and diagnosis codes.
Entries are created on first resolution and kept for the process lifetime.
"""
import re
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from medication_service import ContraindicationStatement
from terminology import MedicalKnowledgeBase, category_for_code, specialty_for_code

# Label condition phrase -> ICD-10 codes it rules out
CONDITION_CODE_MAP = {
    "renal disease": ("N18.6", "N17.9"),
    "kidney disease": ("N18.6", "N17.9"),
    "heart failure": ("I50.9", "I21.9"),
    "cardiac disease": ("I25.9", "I21.9"),
    "liver disease": ("K72.9", "K76.9"),
    "hepatic impairment": ("K72.9", "K76.9"),
    "asthma": ("J45.9",),
    "pregnancy": ("Z34.90",),
    "peptic ulcer": ("K25.9",),
    "diabetes": ("E11.9",),
}

CODE_LITERAL = re.compile(r'\b[A-Z]\d{2}(?:\.\d+)?\b')


@dataclass(frozen=True)
class CanonicalMedication:
    name: str
    active_ingredient: str
    contraindications: Tuple[ContraindicationStatement, ...] = ()
    compatible_codes: FrozenSet[str] = frozenset()
    incompatible_codes: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class DiagnosisCode:
    code: str
    description: str
    category: str
    specialty: str


def incompatible_codes_for(statements) -> FrozenSet[str]:
    """Codes named literally in label text plus codes implied by condition phrases."""
    codes = set()
    for statement in statements:
        codes.update(CODE_LITERAL.findall(statement.description or ""))
        condition = statement.condition.lower()
        for phrase, mapped in CONDITION_CODE_MAP.items():
            if phrase in condition:
                codes.update(mapped)
    return frozenset(codes)


def make_diagnosis_code(code: str, description: str, category: Optional[str] = None) -> DiagnosisCode:
    code = code.strip().upper()
    return DiagnosisCode(
        code=code,
        description=description,
        category=category or category_for_code(code),
        specialty=specialty_for_code(code),
    )


class MedicationCatalog:
    """Medications keyed by lowercased name and by active ingredient."""

    def __init__(self):
        self._by_name: Dict[str, CanonicalMedication] = {}
        self._by_ingredient: Dict[str, CanonicalMedication] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[CanonicalMedication]:
        with self._lock:
            return self._by_name.get(name.strip().lower())

    def get_by_active_ingredient(self, ingredient: str) -> Optional[CanonicalMedication]:
        with self._lock:
            return self._by_ingredient.get(ingredient.strip().lower())

    def add(self, medication: CanonicalMedication, *aliases: str) -> CanonicalMedication:
        """Store under its own name plus any aliases; the first stored entry wins."""
        with self._lock:
            existing = self._by_name.get(medication.name.lower())
            if existing is not None:
                medication = existing
            for key in (medication.name, *aliases):
                if key and key.strip():
                    self._by_name.setdefault(key.strip().lower(), medication)
            if medication.active_ingredient:
                self._by_ingredient.setdefault(medication.active_ingredient.lower(), medication)
            return medication

    def all(self) -> List[CanonicalMedication]:
        with self._lock:
            unique = {id(m): m for m in self._by_name.values()}
        return list(unique.values())

    def __len__(self) -> int:
        return len(self.all())


class DiagnosisCatalog:
    def __init__(self, knowledge_base: Optional[MedicalKnowledgeBase] = None):
        self._codes: Dict[str, DiagnosisCode] = {}
        self._lock = threading.Lock()
        if knowledge_base is not None:
            for code, description in knowledge_base.fallback_codes:
                self.add(make_diagnosis_code(code, description))

    def get(self, code: str) -> Optional[DiagnosisCode]:
        with self._lock:
            return self._codes.get(code.strip().upper())

    def add(self, diagnosis: DiagnosisCode) -> DiagnosisCode:
        with self._lock:
            return self._codes.setdefault(diagnosis.code, diagnosis)

    def find_by_text(self, text: str) -> Optional[DiagnosisCode]:
        """Substring match of free text against catalogued descriptions."""
        needle = text.strip().lower()
        if not needle:
            return None
        with self._lock:
            codes = list(self._codes.values())
        for diagnosis in codes:
            description = diagnosis.description.lower()
            head = description.split(',')[0]
            if needle in description or (head and head in needle):
                return diagnosis
        return None

    def all(self) -> List[DiagnosisCode]:
        with self._lock:
            return list(self._codes.values())
