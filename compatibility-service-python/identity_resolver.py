"""
Identity resolution: maps free-text medication and diagnosis entries from
uploaded claims onto canonical catalog entries.
Resolution never raises; misses come back as UnresolvedMedication or the
original diagnosis text.
"""
import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from catalog import (
    CanonicalMedication, DiagnosisCatalog, DiagnosisCode, MedicationCatalog,
    incompatible_codes_for, make_diagnosis_code,
)
from errors import RateLimitExceededError, ReferenceDataError
from icd10_service import Icd10Service
from medication_service import MedicationSearchResult, MedicationService
from terminology import MedicalKnowledgeBase, is_icd10_format

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.8
REMOTE_CANDIDATES = 5

SALT_SUFFIXES = re.compile(
    r'\s+(hcl|hydrochloride|sodium|potassium|mesylate|maleate|succinate|tartrate|'
    r'citrate|sulfate|phosphate|acetate|chloride)\b'
)
RELEASE_FORMS = re.compile(r'\b(extended|immediate|sustained|controlled|delayed)\s+release\b')
DOSAGE_FORMS = re.compile(r'\b(tablet|capsule|injection|syrup|solution|suspension|cream|ointment)\b')
DOSAGES = re.compile(r'\b\d+\s*(mg|mcg|g|ml|units?)\b')


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - editDistance / len(longer); 0 when either side is empty."""
    if not a or not b:
        return 0.0
    longer = max(len(a), len(b))
    return (longer - levenshtein(a, b)) / longer


def normalize_medication_name(name: str) -> str:
    if not name:
        return ""
    text = name.strip().lower()
    text = SALT_SUFFIXES.sub('', text)
    text = RELEASE_FORMS.sub('', text)
    text = DOSAGE_FORMS.sub('', text)
    text = DOSAGES.sub('', text)
    text = re.sub(r'[()]', '', text)
    return re.sub(r'\s+', ' ', text).strip()


@dataclass(frozen=True)
class ResolvedMedication:
    medication: CanonicalMedication
    source: str  # catalog | openfda | synonym
    input_text: str
    is_resolved = True

    @property
    def name(self) -> str:
        return self.medication.name


@dataclass(frozen=True)
class UnresolvedMedication:
    raw_text: str
    reason: str
    is_resolved = False

    @property
    def name(self) -> str:
        return self.raw_text


MedicationIdentity = Union[ResolvedMedication, UnresolvedMedication]


class IdentityResolver:
    def __init__(self, medications: MedicationService, diagnoses: Icd10Service,
                 knowledge_base: MedicalKnowledgeBase,
                 medication_catalog: MedicationCatalog,
                 diagnosis_catalog: DiagnosisCatalog,
                 fuzzy_threshold: float = FUZZY_THRESHOLD):
        self.medications = medications
        self.diagnoses = diagnoses
        self.knowledge_base = knowledge_base
        self.medication_catalog = medication_catalog
        self.diagnosis_catalog = diagnosis_catalog
        self.fuzzy_threshold = fuzzy_threshold

    # ─── Medications ─────────────────────────────────────────────────────────

    async def resolve_medication(self, free_text: str) -> MedicationIdentity:
        text = (free_text or "").strip()
        if not text:
            return UnresolvedMedication(raw_text="Unknown", reason="empty medication text")

        cached = (self.medication_catalog.get(text)
                  or self.medication_catalog.get_by_active_ingredient(text))
        if cached is not None:
            return ResolvedMedication(cached, "catalog", text)

        remote = await self._resolve_remote(text)
        if remote is not None:
            return ResolvedMedication(remote, "openfda", text)

        canonical = self.match_ingredient_synonym(text)
        if canonical:
            medication = (self.medication_catalog.get(canonical)
                          or CanonicalMedication(name=canonical, active_ingredient=canonical))
            medication = self.medication_catalog.add(medication, text)
            return ResolvedMedication(medication, "synonym", text)

        cleaned = text.split(',')[0].strip() or text
        logger.info(f"[IdentityResolver] No match for medication '{text}'")
        return UnresolvedMedication(raw_text=cleaned, reason="no reference or synonym match")

    def candidate_terms(self, text: str) -> List[str]:
        terms = [
            text,
            normalize_medication_name(text),
            text.split(',')[0].strip(),
            text.split()[0] if text.split() else "",
        ]
        unique = []
        for term in terms:
            if term and term.lower() not in [u.lower() for u in unique]:
                unique.append(term)
        return unique

    async def _resolve_remote(self, text: str) -> Optional[CanonicalMedication]:
        for term in self.candidate_terms(text):
            try:
                results = await self.medications.search(term, REMOTE_CANDIDATES)
            except RateLimitExceededError as e:
                logger.warning(f"[IdentityResolver] Medication lookup throttled: {e}")
                return None
            except ReferenceDataError as e:
                logger.warning(f"[IdentityResolver] Medication search failed for '{term}': {e}")
                continue
            if not results:
                continue

            best = self.best_match(text, results)
            name = best.brand_name or best.generic_name
            try:
                statements = await self.medications.get_contraindications(name)
            except ReferenceDataError as e:
                logger.warning(f"[IdentityResolver] No label statements for '{name}': {e}")
                statements = []

            medication = CanonicalMedication(
                name=name,
                active_ingredient=best.active_ingredients[0] if best.active_ingredients else best.generic_name,
                contraindications=tuple(statements),
                incompatible_codes=incompatible_codes_for(statements),
            )
            return self.medication_catalog.add(medication, text)
        return None

    def best_match(self, search_term: str, results: List[MedicationSearchResult]) -> MedicationSearchResult:
        target = normalize_medication_name(search_term)
        best, best_score = results[0], 0.0
        for result in results:
            names = [result.brand_name, result.generic_name, *result.active_ingredients]
            score = max(similarity(target, normalize_medication_name(n)) for n in names)
            if score > best_score:
                best, best_score = result, score
        return best

    def match_ingredient_synonym(self, text: str) -> Optional[str]:
        table = self.knowledge_base.ingredient_synonyms
        normalized = normalize_medication_name(text)
        for key in (text.lower(), normalized):
            if key in table:
                return table[key]

        best, best_score = None, 0.0
        for alias, canonical in table.items():
            score = similarity(normalized, alias)
            if score >= self.fuzzy_threshold and score > best_score:
                best, best_score = canonical, score
        return best

    # ─── Diagnoses ───────────────────────────────────────────────────────────

    async def resolve_diagnosis_code(self, free_text: str) -> str:
        text = (free_text or "").strip()
        if not text:
            return ""

        if is_icd10_format(text):
            code = text.upper()
            await self.lookup_diagnosis(code)
            return code

        try:
            results = await self.diagnoses.search(text, 5)
        except ReferenceDataError as e:
            logger.warning(f"[IdentityResolver] Diagnosis search failed for '{text}': {e}")
            results = []
        if results:
            top = results[0]
            self.diagnosis_catalog.add(make_diagnosis_code(top.code, top.description, top.category))
            return top.code.upper()

        local = self.diagnosis_catalog.find_by_text(text)
        if local is not None:
            return local.code
        return text

    async def lookup_diagnosis(self, code: str) -> Optional[DiagnosisCode]:
        if not code or not code.strip():
            return None
        known = self.diagnosis_catalog.get(code)
        if known is not None:
            return known
        if not is_icd10_format(code):
            return None
        try:
            validation = await self.diagnoses.validate(code)
        except ReferenceDataError as e:
            logger.warning(f"[IdentityResolver] Could not validate {code}: {e}")
            return None
        if not validation.is_valid:
            return None
        diagnosis = make_diagnosis_code(validation.code, validation.description or "", validation.category)
        if not validation.degraded:
            diagnosis = self.diagnosis_catalog.add(diagnosis)
        return diagnosis
