"""
Medication label lookup client backed by the openFDA drug label endpoint.
Extracts contraindication, warning and precaution statements from label text.
"""
import re
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from config import (
    OPENFDA_BASE_URL, OPENFDA_TIMEOUT_S, OPENFDA_CACHE_TTL_S, FDA_API_KEY,
    QuotaLimits, fda_quota_limits,
)
from errors import InvalidInputError, MalformedPayloadError, ReferenceDataError
from reference_client import ReferenceClient
from resilience import FallbackStrategy, ResilienceService

logger = logging.getLogger(__name__)

MAX_RESULTS = 100
MAX_STATEMENTS = 50
CONTRAINDICATION_LABEL_LIMIT = 5

SEVERITY_SECTIONS = (
    ("contraindications", "contraindicated"),
    ("warnings", "warning"),
    ("precautions", "precaution"),
)

CONDITION_PATTERNS = [
    re.compile(r'\b(?:patients with|history of|known|diagnosed with|suffering from)\s+([^.;,]+)', re.I),
    re.compile(r'\b(?:in|for)\s+(pregnant|nursing|elderly|pediatric|geriatric)\s+patients', re.I),
    re.compile(r'\b(?:renal|kidney|liver|hepatic|cardiac|heart|respiratory|pulmonary)\s+'
               r'(?:impairment|disease|failure|dysfunction)', re.I),
    re.compile(r'\b(?:diabetes|hypertension|asthma|epilepsy|depression|anxiety|bipolar)\b', re.I),
    re.compile(r'\b(?:allergy|allergic reaction|hypersensitivity)\s+to\s+([^.;,]+)', re.I),
]


# ─── openFDA payload schema ──────────────────────────────────────────────────

class OpenFdaFields(BaseModel):
    brand_name: List[str] = []
    generic_name: List[str] = []
    substance_name: List[str] = []
    manufacturer_name: List[str] = []
    product_ndc: List[str] = []
    dosage_form: List[str] = []


class OpenFdaLabel(BaseModel):
    openfda: Optional[OpenFdaFields] = None
    contraindications: List[str] = []
    warnings: List[str] = []
    precautions: List[str] = []
    active_ingredient: List[str] = []


class OpenFdaResponse(BaseModel):
    results: List[OpenFdaLabel] = []


# ─── Result types ────────────────────────────────────────────────────────────

@dataclass
class MedicationSearchResult:
    brand_name: str
    generic_name: str
    active_ingredients: List[str] = field(default_factory=list)
    dosage_form: Optional[str] = None
    manufacturer: Optional[str] = None
    ndc: Optional[str] = None


@dataclass(frozen=True)
class ContraindicationStatement:
    condition: str
    severity: str  # contraindicated | warning | precaution
    description: str


def clean_condition_text(text: str) -> str:
    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'[^\w\s-]', '', text).strip().lower()
    return ' '.join(word[:1].upper() + word[1:] for word in text.split(' ') if word)


def extract_conditions(text: str, severity: str) -> List[ContraindicationStatement]:
    """Pull condition phrases out of one label paragraph."""
    if not text or not isinstance(text, str):
        return []
    description = text[:200] + ('...' if len(text) > 200 else '')
    statements = []
    for pattern in CONDITION_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(1) if match.groups() and match.group(1) else match.group(0)
            condition = raw.strip()
            if 3 < len(condition) < 100:
                statements.append(ContraindicationStatement(
                    condition=clean_condition_text(condition),
                    severity=severity,
                    description=description,
                ))
    if not statements and len(text) > 10:
        statements.append(ContraindicationStatement(
            condition="General contraindication", severity=severity, description=description,
        ))
    return statements


def relevance_score(medication: MedicationSearchResult, term: str) -> int:
    term = term.lower()
    score = 0
    brand = medication.brand_name.lower()
    generic = medication.generic_name.lower()
    if brand == term:
        score += 100
    elif term in brand:
        score += 50
    if generic == term:
        score += 90
    elif term in generic:
        score += 40
    for ingredient in medication.active_ingredients:
        ingredient = ingredient.lower()
        if ingredient == term:
            score += 80
        elif term in ingredient:
            score += 30
    return score


class MedicationService(ReferenceClient):
    service_name = "openfda"

    def __init__(self, resilience: ResilienceService,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 api_key: str = FDA_API_KEY,
                 limits: Optional[QuotaLimits] = None,
                 base_url: str = OPENFDA_BASE_URL,
                 clock: Callable[[], float] = time.time):
        limits = limits or fda_quota_limits(api_key)
        super().__init__(
            base_url=base_url,
            timeout=OPENFDA_TIMEOUT_S,
            limits=limits,
            cache_ttl=OPENFDA_CACHE_TTL_S,
            cache_max_size=500,
            resilience=resilience,
            transport=transport,
            clock=clock,
        )
        self.api_key = api_key
        logger.info(f"[openFDA] Using {limits.tier} limits "
                    f"({limits.daily}/day, {limits.hourly}/hour, {limits.minute}/minute)")

    def api_config(self) -> dict:
        return {
            "has_api_key": bool(self.api_key),
            "tier": self.usage.limits.tier,
            "limits": {
                "daily": self.usage.limits.daily,
                "hourly": self.usage.limits.hourly,
                "minute": self.usage.limits.minute,
            },
        }

    async def status(self, live_check: bool = False) -> dict:
        """Quota-derived availability: available, rate_limited, warning or error."""
        stats = self.stats()
        remaining = stats["remaining"]
        test_result = None

        if not stats["can_make_call"]:
            status = "rate_limited"
            if remaining["daily"] == 0:
                message = "Daily openFDA limit reached. Resets at midnight."
            elif remaining["hourly"] == 0:
                message = "Hourly openFDA limit reached. Try again within the hour."
            else:
                message = "openFDA per-minute limit reached. Try again shortly."
        elif remaining["hourly"] < 20 or remaining["daily"] < 50 or stats["error_rate"] > 20:
            status, message = "warning", "openFDA is available but approaching limits or failing often."
        else:
            status, message = "available", "openFDA is available."

        if live_check and status != "rate_limited":
            try:
                results = await self.search("aspirin", 1)
                test_result = {"success": True, "results": len(results)}
            except ReferenceDataError as e:
                status, message = "error", f"openFDA test query failed: {e}"
                test_result = {"success": False, "error": str(e)}

        return {
            "status": status,
            "message": message,
            "api_config": self.api_config(),
            "usage": stats,
            "test_result": test_result,
        }

    @staticmethod
    def _query(name: str) -> str:
        name = name.replace('"', '')
        return (f'openfda.brand_name:"{name}" OR openfda.generic_name:"{name}" '
                f'OR openfda.substance_name:"{name}"')

    async def _fetch_labels(self, endpoint: str, name: str, limit: int) -> List[OpenFdaLabel]:
        params = {"search": self._query(name), "limit": str(limit)}
        if self.api_key:
            params["api_key"] = self.api_key
        # openFDA answers 404 when nothing matches
        payload = await self._get_json(endpoint, params, empty_statuses=(404,))
        if payload is None:
            return []
        try:
            return OpenFdaResponse.model_validate(payload).results
        except ValidationError as e:
            raise MalformedPayloadError(f"Unexpected openFDA response: {e.error_count()} errors") from e

    async def search(self, name: str, max_results: int = 10) -> List[MedicationSearchResult]:
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Medication name cannot be empty")
        max_results = max(1, min(int(max_results), MAX_RESULTS))

        cache_key = f"search:{name.lower()}:{max_results}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached[:max_results]

        self.check_quota()
        outcome = await self.resilience.execute(
            self.service_name, "search",
            lambda: self._fetch_labels("search", name, min(max_results * 2, MAX_RESULTS)),
        )
        results = self.parse_search_results(outcome.result, name, max_results)
        self.cache.set(cache_key, results)
        return results[:max_results]

    async def get_contraindications(self, name: str) -> List[ContraindicationStatement]:
        """Label statements for a medication; served stale from cache if the service is down."""
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Medication name cannot be empty")

        cache_key = f"contraindications:{name.lower()}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        self.check_quota()
        outcome = await self.resilience.execute(
            self.service_name, "contraindications",
            lambda: self._fetch_labels("contraindications", name, CONTRAINDICATION_LABEL_LIMIT),
            fallback=FallbackStrategy(kind="cache", source="openFDA label cache",
                                      cache=self.cache, cache_key=cache_key),
        )
        if outcome.from_fallback:
            return outcome.result
        statements = self.parse_contraindications(outcome.result)
        self.cache.set(cache_key, statements)
        return statements

    def parse_search_results(self, labels: List[OpenFdaLabel], term: str,
                             limit: int = MAX_RESULTS) -> List[MedicationSearchResult]:
        """Unique name/ingredient/form entries, most relevant first, at most limit of them."""
        results: List[MedicationSearchResult] = []
        seen = set()
        for label in labels:
            if label.openfda is None:
                continue
            fda = label.openfda
            ingredients = fda.substance_name or label.active_ingredient
            for name in fda.brand_name + fda.generic_name:
                if not name:
                    continue
                key = f"{name}-{','.join(ingredients)}-{','.join(fda.dosage_form)}"
                if key in seen:
                    continue
                seen.add(key)
                results.append(MedicationSearchResult(
                    brand_name=fda.brand_name[0] if fda.brand_name else name,
                    generic_name=fda.generic_name[0] if fda.generic_name else name,
                    active_ingredients=list(ingredients),
                    dosage_form=fda.dosage_form[0] if fda.dosage_form else None,
                    manufacturer=fda.manufacturer_name[0] if fda.manufacturer_name else None,
                    ndc=fda.product_ndc[0] if fda.product_ndc else None,
                ))
        ranked = sorted(results, key=lambda r: relevance_score(r, term), reverse=True)
        return ranked[:limit]

    def parse_contraindications(self, labels: List[OpenFdaLabel]) -> List[ContraindicationStatement]:
        statements: List[ContraindicationStatement] = []
        seen = set()
        for label in labels:
            for section, severity in SEVERITY_SECTIONS:
                for paragraph in getattr(label, section):
                    for statement in extract_conditions(paragraph, severity):
                        key = f"{severity}:{statement.condition}"
                        if key not in seen:
                            seen.add(key)
                            statements.append(statement)
        return statements[:MAX_STATEMENTS]
