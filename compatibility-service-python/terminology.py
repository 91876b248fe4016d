"""
Medical terminology knowledge base.
Loads the curated CSV tables under data/ once and exposes ICD-10 chapter
and specialty lookups used across the analysis pipeline.
"""
import os
import re
import logging
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Tuple

from config import DATA_DIR

logger = logging.getLogger(__name__)

ICD10_PATTERN = re.compile(r'^[A-Z]\d{2}(\.\d+)?$')

ICD10_CATEGORY_MAP = {
    "A": "Infectious and Parasitic Diseases",
    "B": "Infectious and Parasitic Diseases",
    "C": "Neoplasms",
    "D": "Neoplasms",
    "E": "Endocrine, Nutritional and Metabolic Diseases",
    "F": "Mental, Behavioral and Neurodevelopmental Disorders",
    "G": "Diseases of the Nervous System",
    "H": "Diseases of the Eye and Ear",
    "I": "Diseases of the Circulatory System",
    "J": "Diseases of the Respiratory System",
    "K": "Diseases of the Digestive System",
    "L": "Diseases of the Skin and Subcutaneous Tissue",
    "M": "Diseases of the Musculoskeletal System",
    "N": "Diseases of the Genitourinary System",
    "O": "Pregnancy, Childbirth and the Puerperium",
    "P": "Certain Conditions Originating in the Perinatal Period",
    "Q": "Congenital Malformations",
    "R": "Symptoms, Signs and Abnormal Clinical Findings",
    "S": "Injury, Poisoning and External Causes",
    "T": "Injury, Poisoning and External Causes",
    "V": "External Causes of Morbidity",
    "W": "External Causes of Morbidity",
    "X": "External Causes of Morbidity",
    "Y": "External Causes of Morbidity",
    "Z": "Factors Influencing Health Status",
}

SPECIALTY_BY_PREFIX = {
    "I20": "Cardiology", "I21": "Cardiology", "I25": "Cardiology",
    "I35": "Cardiothoracic Surgery", "I42": "Cardiology",
    "I48": "Electrophysiology", "I50": "Cardiology",
    "E10": "Endocrinology", "E11": "Endocrinology", "E05": "Endocrinology",
    "E06": "Endocrinology", "E27": "Endocrinology",
    "N17": "Nephrology", "N18": "Nephrology", "N00": "Nephrology", "N04": "Nephrology",
    "N40": "Urology", "N20": "Urology", "N39": "Urology",
    "J44": "Pulmonology", "J45": "Pulmonology", "J18": "Pulmonology", "J84": "Pulmonology",
    "K25": "Gastroenterology", "K50": "Gastroenterology", "K51": "Gastroenterology",
    "K70": "Hepatology", "K72": "Hepatology", "K76": "Hepatology",
    "G40": "Epileptology", "G35": "Multiple Sclerosis",
    "G20": "Movement Disorders", "G93": "Neurology",
    "C78": "Medical Oncology", "C80": "Medical Oncology",
    "D50": "Hematology", "D64": "Hematology", "D65": "Hematology",
    "D68": "Hematology", "D69": "Hematology",
    "M05": "Rheumatology", "M32": "Rheumatology", "M79": "Rheumatology",
    "M84": "Orthopedic Surgery", "S72": "Orthopedic Surgery",
    "H60": "Otolaryngology", "H65": "Otolaryngology", "H66": "Otolaryngology",
    "J30": "Otolaryngology",
    "M54": "Pain Management", "G89": "Pain Management",
    "R57": "Critical Care Medicine", "R50": "Emergency Medicine",
    "T78": "Allergy and Immunology",
    "F20": "Psychiatry", "F31": "Psychiatry", "F32": "Psychiatry", "F41": "Psychiatry",
    "F90": "Child Psychiatry",
}

SPECIALTY_RANGES = [
    ("H00", "H59", "Ophthalmology"),
    ("H60", "H95", "Otolaryngology"),
    ("O00", "O9A", "Obstetrics and Gynecology"),
    ("P00", "P96", "Neonatology"),
    ("Q00", "Q99", "Medical Genetics"),
    ("F90", "F98", "Child Psychiatry"),
]

SPECIALTY_BY_CHAPTER = {
    "A": "Infectious Disease", "B": "Infectious Disease",
    "C": "Oncology", "D": "Hematology", "E": "Endocrinology",
    "F": "Psychiatry", "G": "Neurology", "H": "Ophthalmology",
    "I": "Cardiology", "J": "Pulmonology", "K": "Gastroenterology",
    "L": "Dermatology", "M": "Rheumatology", "N": "Nephrology",
    "O": "Obstetrics and Gynecology", "P": "Neonatology", "Q": "Medical Genetics",
    "R": "Internal Medicine", "S": "Trauma Surgery",
    "T": "Emergency Medicine", "V": "Emergency Medicine", "W": "Emergency Medicine",
    "X": "Emergency Medicine", "Y": "Emergency Medicine",
    "Z": "Family Medicine",
}


def is_icd10_format(text: str) -> bool:
    return bool(text) and bool(ICD10_PATTERN.match(text.strip().upper()))


def category_for_code(code: str) -> str:
    if not code:
        return "Unknown"
    return ICD10_CATEGORY_MAP.get(code.strip()[:1].upper(), "Unknown")


def specialty_for_code(code: str) -> str:
    """Specific prefix first, then code range, then chapter letter."""
    if not code or not code.strip():
        return "Unknown"
    upper = code.strip().upper()
    prefix = upper[:3]
    if prefix in SPECIALTY_BY_PREFIX:
        return SPECIALTY_BY_PREFIX[prefix]
    for start, end, specialty in SPECIALTY_RANGES:
        if start <= prefix <= end:
            return specialty
    return SPECIALTY_BY_CHAPTER.get(upper[0], "Internal Medicine")


def _split(cell) -> Tuple[str, ...]:
    if cell is None or (isinstance(cell, float) and pd.isna(cell)):
        return ()
    return tuple(s.strip().lower() for s in str(cell).split('|') if s.strip())


@dataclass(frozen=True)
class ConditionTerm:
    term: str
    synonyms: Tuple[str, ...]
    severity: float


@dataclass(frozen=True)
class TerminologyCategory:
    name: str
    keywords: Tuple[str, ...]
    conditions: Tuple[ConditionTerm, ...]


@dataclass(frozen=True)
class SynonymGroup:
    term: str
    synonyms: Tuple[str, ...]
    confidence: float


@dataclass(frozen=True)
class MechanismClass:
    name: str
    diagnoses: Tuple[str, ...]
    contraindications: Tuple[str, ...]
    severity: float


class MedicalKnowledgeBase:
    """Curated lookup tables. Missing or malformed files leave the table empty."""

    def __init__(self, data_dir: str = DATA_DIR):
        self.data_dir = data_dir
        self.categories: List[TerminologyCategory] = []
        self.synonym_groups: Dict[str, SynonymGroup] = {}
        self.mechanisms: List[MechanismClass] = []
        self.ingredient_synonyms: Dict[str, str] = {}
        self.fallback_codes: List[Tuple[str, str]] = []
        self._load()

    def _read(self, filename: str, required_cols: List[str]) -> pd.DataFrame:
        path = os.path.join(self.data_dir, filename)
        try:
            df = pd.read_csv(path, dtype=str)
            missing = [c for c in required_cols if c not in df.columns]
            if missing:
                raise ValueError(f"{filename} missing columns: {missing}")
            logger.info(f"[KnowledgeBase] Loaded {len(df)} rows from {filename}")
            return df
        except Exception as e:
            logger.warning(f"[KnowledgeBase] Could not load {filename}: {e}")
            return pd.DataFrame(columns=required_cols)

    def _load(self):
        df = self._read('terminology_conditions.csv',
                        ['category', 'keywords', 'condition', 'severity', 'synonyms'])
        for name, group in df.groupby('category', sort=False):
            conditions = tuple(
                ConditionTerm(
                    term=str(row['condition']).strip().lower(),
                    synonyms=_split(row['synonyms']),
                    severity=float(row['severity']),
                )
                for _, row in group.iterrows()
            )
            self.categories.append(TerminologyCategory(
                name=str(name),
                keywords=_split(group.iloc[0]['keywords']),
                conditions=conditions,
            ))

        df = self._read('medical_synonyms.csv', ['term', 'synonyms', 'confidence'])
        for _, row in df.iterrows():
            term = str(row['term']).strip().lower()
            self.synonym_groups[term] = SynonymGroup(
                term=term, synonyms=_split(row['synonyms']), confidence=float(row['confidence'])
            )

        df = self._read('drug_mechanisms.csv',
                        ['mechanism', 'diagnoses', 'contraindications', 'severity'])
        for _, row in df.iterrows():
            self.mechanisms.append(MechanismClass(
                name=str(row['mechanism']),
                diagnoses=_split(row['diagnoses']),
                contraindications=_split(row['contraindications']),
                severity=float(row['severity']),
            ))

        df = self._read('ingredient_synonyms.csv', ['alias', 'canonical_name'])
        self.ingredient_synonyms = {
            str(a).strip().lower(): str(c).strip()
            for a, c in zip(df['alias'], df['canonical_name'])
        }

        df = self._read('icd10_fallback.csv', ['code', 'description'])
        self.fallback_codes = [
            (str(code).strip().upper(), str(desc).strip())
            for code, desc in zip(df['code'], df['description'])
        ]
