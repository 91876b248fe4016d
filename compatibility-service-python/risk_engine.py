"""
Deterministic medication/diagnosis risk engine.
Combines five sub-scores into a specialty-weighted composite in [0, 10],
maps it to low/medium/high and writes clinical decision support notes.
Drug class profiles are loaded from drug_class_profiles.csv.
"""
import os
import logging
import pandas as pd
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from catalog import CanonicalMedication
from config import DATA_DIR
from contraindication_matcher import ContraindicationMatch
from terminology import is_icd10_format

logger = logging.getLogger(__name__)

CSV_PATH = os.path.join(DATA_DIR, 'drug_class_profiles.csv')

SEVERITY_MULTIPLIER = {
    "contraindicated": 10,
    "warning": 6,
    "precaution": 3,
}
DEFAULT_SEVERITY_MULTIPLIER = 2

SPECIALTY_RISK = {
    "Critical Care Medicine": 8,
    "Cardiology": 7,
    "Nephrology": 7,
    "Hepatology": 6,
    "Oncology": 6,
    "Emergency Medicine": 5,
}
DEFAULT_SPECIALTY_RISK = 2

ICD10_CHAPTER_RISK = {
    "E": (4, "Endocrine disorders require careful medication management"),
    "I": (5, "Cardiovascular conditions increase medication risks"),
    "N": (4, "Kidney/urogenital conditions affect drug clearance"),
    "K": (3, "Gastrointestinal conditions may affect absorption"),
    "F": (3, "Mental health conditions require consideration of drug interactions"),
    "O": (6, "Pregnancy requires specialized medication safety protocols"),
}
DEFAULT_CHAPTER_RISK = 1

COMORBIDITY_FACTORS = [
    (("diabetes", "diabetic"), 2, "Diabetes increases medication monitoring requirements"),
    (("hypertension", "high blood pressure"), 1, "Hypertension may be affected by medication choice"),
    (("heart failure",), 3, "Heart failure significantly impacts medication selection"),
    (("chronic kidney disease", "renal failure"), 4, "Kidney disease requires dose adjustments"),
    (("liver disease", "cirrhosis"), 3, "Liver disease affects medication metabolism"),
]

ORGAN_SYSTEMS = [
    ("renal", ("kidney", "renal"), ("N",), 5, "Creatinine clearance and renal function monitoring"),
    ("hepatic", ("liver", "hepatic"), ("K",), 5, "Liver function tests and hepatic monitoring"),
    ("cardiac", ("heart", "cardiac"), ("I",), 4, "Cardiac function and rhythm monitoring"),
    ("respiratory", ("lung", "respiratory", "asthma"), ("J",), 3, "Respiratory function assessment"),
    ("neurological", ("seizure", "stroke", "brain"), ("G", "F"), 4, "Neurological status monitoring"),
]

HIGH_INTERACTION_DRUGS = (
    "warfarin", "phenytoin", "carbamazepine", "rifampin", "ketoconazole",
    "erythromycin", "cimetidine", "omeprazole",
)
INTERACTION_CONDITIONS = [
    (("liver", "hepatic"), 3),
    (("kidney", "renal"), 2),
    (("elderly", "geriatric"), 2),
]

BASE_WEIGHTS = {
    "contraindication": 0.35,
    "clinical": 0.20,
    "safety": 0.25,
    "drug_class": 0.15,
    "interaction": 0.05,
}

SPECIALTY_WEIGHTS = {
    "Critical Care Medicine": {"contraindication": 1.2, "clinical": 1.1, "safety": 1.3, "drug_class": 1.1, "interaction": 1.2},
    "Cardiology":             {"contraindication": 1.1, "clinical": 1.2, "safety": 1.1, "drug_class": 1.3, "interaction": 1.1},
    "Nephrology":             {"contraindication": 1.0, "clinical": 1.1, "safety": 1.3, "drug_class": 1.2, "interaction": 1.2},
    "Hepatology":             {"contraindication": 1.0, "clinical": 1.1, "safety": 1.2, "drug_class": 1.3, "interaction": 1.3},
}
DEFAULT_WEIGHTS = {key: 1.0 for key in BASE_WEIGHTS}

CRITICAL_SPECIALTIES = {"Critical Care Medicine", "Emergency Medicine"}
HIGH_THRESHOLD = 7.5
MEDIUM_THRESHOLD = 4.5
REVIEW_THRESHOLD = 2.5
INCOMPATIBLE_SCORE = 8.0
OVERRIDE_CONFIDENCE = 0.8
MAX_SCORE = 10.0

LEVEL_GUIDANCE = {
    "high": "HIGH RISK: Consider alternative therapy or specialist consultation.",
    "medium": "MEDIUM RISK: Proceed with enhanced monitoring and dose adjustments as needed.",
    "low": "LOW RISK: Standard monitoring protocols apply.",
}


@dataclass
class RiskComponents:
    contraindication_severity: float = 0.0
    clinical_context: float = 0.0
    patient_safety: float = 0.0
    drug_class: float = 0.0
    interaction_potential: float = 0.0


@dataclass
class AnalysisVerdict:
    is_compatible: bool
    risk_level: str  # low | medium | high
    specialty: str
    clinical_notes: str


@dataclass
class RiskAssessment:
    verdict: AnalysisVerdict
    components: RiskComponents
    composite_score: float
    override_applied: bool = False
    critical_findings: List[str] = field(default_factory=list)
    considerations: List[str] = field(default_factory=list)
    monitoring: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DrugClassProfile:
    drug_class: str
    drugs: tuple
    base_risk: float
    conditions: tuple  # ((keywords...), additional_risk, note)


def risk_level_for(score: float, has_matches: bool, override: bool = False) -> str:
    if override or score >= HIGH_THRESHOLD:
        return "high"
    if score >= MEDIUM_THRESHOLD:
        return "medium"
    if score >= REVIEW_THRESHOLD:
        return "medium" if has_matches else "low"
    return "low"


class RiskEngine:
    """Loads drug class profiles and scores matched contraindications in clinical context."""

    def __init__(self, csv_path: str = CSV_PATH):
        self.csv_path = csv_path
        self.profiles: List[DrugClassProfile] = []
        self._load_rules()

    def _load_rules(self):
        try:
            df = pd.read_csv(self.csv_path)
            required_cols = [
                'drug_class', 'drugs', 'base_risk',
                'condition_keywords', 'additional_risk', 'note',
            ]
            missing = [c for c in required_cols if c not in df.columns]
            if missing:
                raise ValueError(f"CSV missing columns: {missing}")

            for drug_class, group in df.groupby('drug_class', sort=False):
                first = group.iloc[0]
                self.profiles.append(DrugClassProfile(
                    drug_class=str(drug_class),
                    drugs=tuple(d.strip().lower() for d in str(first['drugs']).split('|')),
                    base_risk=float(first['base_risk']),
                    conditions=tuple(
                        (
                            tuple(k.strip().lower() for k in str(row['condition_keywords']).split('|')),
                            float(row['additional_risk']),
                            str(row['note']),
                        )
                        for _, row in group.iterrows()
                    ),
                ))
            logger.info(f"[RiskEngine] Loaded {len(self.profiles)} drug class profiles from {self.csv_path}")
        except Exception as e:
            logger.warning(f"[RiskEngine] Could not load CSV: {e}")
            self.profiles = []

    # ─── Components ──────────────────────────────────────────────────────────

    def _contraindication_severity(self, matches: Sequence[ContraindicationMatch]):
        score = 0.0
        findings = []
        for match in matches:
            pct = f"{match.confidence * 100:.1f}%"
            if match.severity == "contraindicated" and match.confidence > OVERRIDE_CONFIDENCE:
                findings.append(f"CRITICAL: {match.condition} - Contraindicated (Confidence: {pct})")
            elif match.severity == "warning" and match.confidence > 0.7:
                findings.append(f"WARNING: {match.condition} - Major precaution required (Confidence: {pct})")
            elif match.severity == "precaution" and match.confidence > 0.6:
                findings.append(f"CAUTION: {match.condition} - Monitor closely (Confidence: {pct})")
            multiplier = SEVERITY_MULTIPLIER.get(match.severity, DEFAULT_SEVERITY_MULTIPLIER)
            score = max(score, multiplier * match.confidence)
        return score, findings

    def _clinical_context(self, diagnosis: str, chapter: str, specialty: str):
        considerations = []
        specialty_risk = SPECIALTY_RISK.get(specialty, DEFAULT_SPECIALTY_RISK)
        score = float(specialty_risk)
        if specialty_risk >= 6:
            considerations.append(f"High-risk specialty ({specialty}) - Enhanced monitoring required")

        if chapter in ICD10_CHAPTER_RISK:
            chapter_risk, note = ICD10_CHAPTER_RISK[chapter]
            score += chapter_risk
            considerations.append(note)
        else:
            score += DEFAULT_CHAPTER_RISK

        for keywords, risk, note in COMORBIDITY_FACTORS:
            if any(k in diagnosis for k in keywords):
                score += risk
                considerations.append(note)
        return score, considerations

    def _patient_safety(self, diagnosis: str, chapter: str):
        score = 0.0
        monitoring = []
        if "elderly" in diagnosis or "geriatric" in diagnosis or chapter == "Z":
            score += 3
            monitoring.append("Geriatric dosing protocols and enhanced monitoring")
        for _, keywords, chapters, risk, note in ORGAN_SYSTEMS:
            if any(k in diagnosis for k in keywords) or (chapter and chapter in chapters):
                score += risk
                monitoring.append(note)
        if "pregnancy" in diagnosis or "pregnant" in diagnosis or chapter == "O":
            score += 6
            monitoring.append("Pregnancy safety category review and fetal monitoring")
        return score, monitoring

    def _drug_class(self, medication: Optional[CanonicalMedication], diagnosis: str):
        if medication is None or not medication.active_ingredient:
            return 1.0, ["Unknown drug class - exercise caution"]
        haystack = f"{medication.active_ingredient} {medication.name}".lower()
        for profile in self.profiles:
            if not any(drug in haystack for drug in profile.drugs):
                continue
            score = profile.base_risk
            considerations = [f"{profile.drug_class} therapy identified"]
            for keywords, risk, note in profile.conditions:
                if any(k in diagnosis for k in keywords):
                    score += risk
                    considerations.append(note)
            return score, considerations
        return 0.0, []

    def _interaction_potential(self, medication: Optional[CanonicalMedication], diagnosis: str) -> float:
        if medication is None:
            return 1.0
        ingredient = (medication.active_ingredient or "").lower()
        score = 0.0
        if any(drug in ingredient for drug in HIGH_INTERACTION_DRUGS):
            score += 4
        for keywords, risk in INTERACTION_CONDITIONS:
            if any(k in diagnosis for k in keywords):
                score += risk
        return score

    def composite_score(self, components: RiskComponents, specialty: str) -> float:
        weights = SPECIALTY_WEIGHTS.get(specialty, DEFAULT_WEIGHTS)
        score = (
            components.contraindication_severity * weights["contraindication"] * BASE_WEIGHTS["contraindication"]
            + components.clinical_context * weights["clinical"] * BASE_WEIGHTS["clinical"]
            + components.patient_safety * weights["safety"] * BASE_WEIGHTS["safety"]
            + components.drug_class * weights["drug_class"] * BASE_WEIGHTS["drug_class"]
            + components.interaction_potential * weights["interaction"] * BASE_WEIGHTS["interaction"]
        )
        return min(MAX_SCORE, max(0.0, score))

    # ─── Assessment ──────────────────────────────────────────────────────────

    def assess(self, matches: Sequence[ContraindicationMatch], diagnosis: str, icd10_code: str,
               specialty: str, medication: Optional[CanonicalMedication],
               medication_name: str) -> RiskAssessment:
        """
        Score one medication/diagnosis pair.
        A contraindicated match above 0.8 confidence forces high risk and
        incompatibility whatever the composite score says.
        """
        diagnosis_lower = (diagnosis or "").lower()
        code = (icd10_code or "").strip()
        # passthrough diagnosis text carries no chapter
        chapter = code[:1].upper() if is_icd10_format(code) else ""

        severity, findings = self._contraindication_severity(matches)
        clinical, considerations = self._clinical_context(diagnosis_lower, chapter, specialty)
        safety, monitoring = self._patient_safety(diagnosis_lower, chapter)
        drug_class, class_notes = self._drug_class(medication, diagnosis_lower)
        considerations.extend(class_notes)

        components = RiskComponents(
            contraindication_severity=severity,
            clinical_context=clinical,
            patient_safety=safety,
            drug_class=drug_class,
            interaction_potential=self._interaction_potential(medication, diagnosis_lower),
        )
        score = self.composite_score(components, specialty)

        override = any(
            m.severity == "contraindicated" and m.confidence > OVERRIDE_CONFIDENCE for m in matches
        )
        level = risk_level_for(score, bool(matches), override)
        compatible = not override and not (
            level == "high" and specialty in CRITICAL_SPECIALTIES and score > INCOMPATIBLE_SCORE
        )
        if override:
            logger.info(f"[RiskEngine] Contraindication override for {medication_name} / {diagnosis}")

        notes = self.clinical_notes(level, findings, considerations, monitoring,
                                    score, medication_name, diagnosis)
        return RiskAssessment(
            verdict=AnalysisVerdict(
                is_compatible=compatible,
                risk_level=level,
                specialty=specialty,
                clinical_notes=notes,
            ),
            components=components,
            composite_score=round(score, 2),
            override_applied=override,
            critical_findings=findings,
            considerations=considerations,
            monitoring=monitoring,
        )

    def clinical_notes(self, level: str, findings: List[str], considerations: List[str],
                       monitoring: List[str], score: float, medication_name: str,
                       diagnosis: str) -> str:
        lines = [
            f"CLINICAL DECISION SUPPORT - {level.upper()} RISK (Score: {score:.1f}/10)",
            "",
            LEVEL_GUIDANCE[level],
        ]
        if findings:
            lines += ["", "CRITICAL FINDINGS:"] + [f"- {f}" for f in findings]
        if considerations:
            lines += ["", "CLINICAL CONSIDERATIONS:"] + [f"- {c}" for c in considerations[:5]]
        if monitoring:
            lines += ["", "MONITORING REQUIREMENTS:"] + [f"- {m}" for m in monitoring[:4]]

        if level == "high":
            recommendation = (f"Consider alternative to {medication_name} for {diagnosis}. "
                              "If no alternatives available, requires specialist oversight.")
        elif level == "medium":
            recommendation = (f"{medication_name} may be used for {diagnosis} "
                              "with appropriate monitoring and dose adjustments.")
        else:
            recommendation = f"{medication_name} appears suitable for {diagnosis} with standard clinical monitoring."
        lines += ["", f"RECOMMENDATION: {recommendation}"]
        return "\n".join(lines)
