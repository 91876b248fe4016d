"""
Scores how strongly a diagnosis matches each contraindication statement.

Five independent strategies are tried per statement and the highest
confidence wins:
  1. direct containment between diagnosis and condition text   0.95
  2. ICD-10 code literal present in the statement               0.90
  3. terminology category match                                 condition severity, boosted
  4. synonym-group match                                        group confidence x 0.85
  5. drug-mechanism class match                                 mechanism severity x 0.8
Only matches above RETAIN_THRESHOLD are returned. This is triage, not diagnosis.
"""
import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from medication_service import ContraindicationStatement
from terminology import MedicalKnowledgeBase, is_icd10_format

logger = logging.getLogger(__name__)

RETAIN_THRESHOLD = 0.5
DIRECT_CONFIDENCE = 0.95
ICD10_CONFIDENCE = 0.90
EXACT_TERM_BOOST = 0.10
CRITICAL_CATEGORY_BOOST = 0.05
CONFIDENCE_CAP = 0.95
SYNONYM_FACTOR = 0.85
MECHANISM_FACTOR = 0.8
MIN_CONTAINMENT_LENGTH = 3

HIGH_RISK_CATEGORIES = {"Cardiovascular", "Renal", "Hepatic"}

MEDICAL_ROOTS = {
    'cardio', 'cardiac', 'heart', 'renal', 'kidney', 'hepatic', 'liver',
    'pulmonary', 'lung', 'diabetes', 'diabetic', 'asthma', 'hypertension',
    'seizure', 'epilepsy', 'stroke', 'pregnancy', 'pregnant', 'elderly',
    'geriatric', 'failure', 'disease', 'syndrome', 'disorder',
}

COMPOUND_TERMS = [
    'heart failure', 'kidney disease', 'liver disease', 'diabetes mellitus',
    'myocardial infarction', 'renal failure', 'respiratory failure',
]


@dataclass(frozen=True)
class ContraindicationMatch:
    statement: ContraindicationStatement
    confidence: float
    reasoning: str

    @property
    def condition(self) -> str:
        return self.statement.condition

    @property
    def severity(self) -> str:
        return self.statement.severity


def mentions(text: str, phrase: str) -> bool:
    """Whole-word (optionally plural) occurrence of phrase in text."""
    if not phrase:
        return False
    return re.search(r'\b' + re.escape(phrase) + r's?\b', text) is not None


def overlaps(a: str, b: str) -> bool:
    """Either string contains the other; very short strings never match."""
    if len(a) < MIN_CONTAINMENT_LENGTH or len(b) < MIN_CONTAINMENT_LENGTH:
        return a == b and bool(a)
    return a in b or b in a


def extract_medical_terms(text: str) -> List[str]:
    text = text.lower()
    terms = [w for w in re.findall(r'[a-z0-9]+', text) if w in MEDICAL_ROOTS or len(w) > 4]
    terms.extend(t for t in COMPOUND_TERMS if t in text)
    return list(dict.fromkeys(terms))


class ContraindicationMatcher:
    def __init__(self, knowledge_base: MedicalKnowledgeBase):
        self.knowledge_base = knowledge_base

    def match(self, diagnosis_text: str, icd10_code: str,
              contraindications: Sequence[ContraindicationStatement],
              specialty: Optional[str] = None) -> List[ContraindicationMatch]:
        matches = []
        for statement in contraindications:
            confidence, reasoning = self.score(diagnosis_text, icd10_code, statement)
            if confidence > RETAIN_THRESHOLD:
                matches.append(ContraindicationMatch(statement, confidence, reasoning))
        if matches:
            logger.debug(f"[Matcher] {len(matches)} of {len(contraindications)} statements "
                         f"match '{diagnosis_text}' ({specialty or 'Unknown'})")
        return matches

    def score(self, diagnosis_text: str, icd10_code: str,
              statement: ContraindicationStatement) -> Tuple[float, str]:
        diagnosis = (diagnosis_text or "").strip().lower()
        code = (icd10_code or "").strip().lower()
        condition = (statement.condition or "").strip().lower()
        description = (statement.description or "").lower()

        best, reasoning = 0.0, ""
        candidates = [
            self._direct(diagnosis, condition),
            self._icd10(code, condition, description),
            self._terminology(diagnosis, condition, description),
            self._semantic(diagnosis, condition),
            self._mechanism(diagnosis, condition),
        ]
        for confidence, why in candidates:
            if confidence > best:
                best, reasoning = confidence, why
        return round(min(best, 1.0), 4), reasoning

    def _direct(self, diagnosis: str, condition: str) -> Tuple[float, str]:
        if diagnosis and condition and overlaps(diagnosis, condition):
            return DIRECT_CONFIDENCE, "Direct condition match"
        return 0.0, ""

    def _icd10(self, code: str, condition: str, description: str) -> Tuple[float, str]:
        if code and is_icd10_format(code) and (code in description or code in condition):
            return ICD10_CONFIDENCE, "ICD-10 code match"
        return 0.0, ""

    def _terminology(self, diagnosis: str, condition: str, description: str) -> Tuple[float, str]:
        best, reasoning = 0.0, ""
        if not diagnosis:
            return best, reasoning
        for category in self.knowledge_base.categories:
            if not any(overlaps(k, diagnosis) for k in category.keywords):
                continue
            hits = [
                c for c in category.conditions
                if any(mentions(condition, p) or mentions(description, p) for p in (c.term, *c.synonyms))
            ]
            if not hits:
                continue
            top = max(hits, key=lambda c: c.severity)
            confidence = top.severity
            if top.term in diagnosis:
                confidence = min(CONFIDENCE_CAP, confidence + EXACT_TERM_BOOST)
            if category.name in HIGH_RISK_CATEGORIES:
                confidence = min(CONFIDENCE_CAP, confidence + CRITICAL_CATEGORY_BOOST)
            if confidence > best:
                best, reasoning = confidence, f"{category.name} terminology match: {top.term}"
        return best, reasoning

    def _semantic(self, diagnosis: str, condition: str) -> Tuple[float, str]:
        best, reasoning = 0.0, ""
        condition_terms = extract_medical_terms(condition)
        for term in extract_medical_terms(diagnosis):
            group = self.knowledge_base.synonym_groups.get(term)
            if group is None:
                continue
            for other in condition_terms:
                if other in group.synonyms:
                    confidence = group.confidence * SYNONYM_FACTOR
                    if confidence > best:
                        best, reasoning = confidence, f"Medical synonym match: {term} ~ {other}"
        return best, reasoning

    def _mechanism(self, diagnosis: str, condition: str) -> Tuple[float, str]:
        best, reasoning = 0.0, ""
        if not diagnosis or not condition:
            return best, reasoning
        for mechanism in self.knowledge_base.mechanisms:
            diagnosis_hit = any(overlaps(d, diagnosis) for d in mechanism.diagnoses)
            condition_hit = any(overlaps(c, condition) for c in mechanism.contraindications)
            if diagnosis_hit and condition_hit:
                confidence = mechanism.severity * MECHANISM_FACTOR
                if confidence > best:
                    best, reasoning = confidence, f"Drug mechanism contraindication: {mechanism.name}"
        return best, reasoning
