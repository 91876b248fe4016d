"""
ICD-10-CM lookup client backed by the NLM Clinical Tables API.
Falls back to a small static code table when the service is unreachable.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

from config import (
    ICD10_BASE_URL, ICD10_TIMEOUT_S, ICD10_CACHE_TTL_S, ICD10_LIMITS, QuotaLimits,
)
from errors import InvalidInputError, MalformedPayloadError, RateLimitExceededError, ReferenceDataError
from reference_client import ReferenceClient
from resilience import FallbackStrategy, ResilienceService
from terminology import MedicalKnowledgeBase, category_for_code, is_icd10_format

logger = logging.getLogger(__name__)

MAX_RESULTS = 100
FALLBACK_DESCRIPTION = "ICD-10 code (fallback validation)"


@dataclass
class Icd10SearchResult:
    code: str
    description: str
    category: str


@dataclass
class Icd10ValidationResult:
    code: str
    is_valid: bool
    description: Optional[str] = None
    category: Optional[str] = None
    degraded: bool = False


class Icd10Service(ReferenceClient):
    service_name = "icd10"

    def __init__(self, resilience: ResilienceService, knowledge_base: MedicalKnowledgeBase,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 limits: QuotaLimits = ICD10_LIMITS,
                 base_url: str = ICD10_BASE_URL,
                 clock: Callable[[], float] = time.time):
        super().__init__(
            base_url=base_url,
            timeout=ICD10_TIMEOUT_S,
            limits=limits,
            cache_ttl=ICD10_CACHE_TTL_S,
            cache_max_size=1000,
            resilience=resilience,
            transport=transport,
            clock=clock,
        )
        self.knowledge_base = knowledge_base

    async def search(self, term: str, max_results: int = 20) -> List[Icd10SearchResult]:
        term = (term or "").strip()
        if not term:
            raise InvalidInputError("Search term cannot be empty")
        max_results = max(1, min(int(max_results), MAX_RESULTS))

        cache_key = f"search:{term.lower()}:{max_results}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        self.check_quota()
        outcome = await self.resilience.execute(
            self.service_name, "search",
            lambda: self._fetch(term, "name", max_results),
            fallback=FallbackStrategy(
                kind="mock",
                source="ICD-10 static table",
                mock_data=lambda error: self.fallback_search(term, max_results),
            ),
        )
        results = outcome.result
        self.cache.set(cache_key, results)
        return results

    async def validate(self, code: str) -> Icd10ValidationResult:
        """
        Exact-code validation. A reachable service without an exact hit marks
        the code invalid; an unreachable one falls back to the static table
        and the code format.
        """
        normalized = (code or "").strip().upper()
        if not normalized:
            raise InvalidInputError("ICD-10 code cannot be empty")

        cache_key = f"validate:{normalized}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        self.check_quota()
        try:
            outcome = await self.resilience.execute(
                self.service_name, "validate",
                lambda: self._fetch(normalized, "code", 1),
            )
        except RateLimitExceededError:
            raise
        except ReferenceDataError as e:
            logger.warning(f"[ICD10] Validation of {normalized} degraded: {e}")
            result = self.fallback_validate(normalized)
        else:
            exact = next((r for r in outcome.result if r.code.upper() == normalized), None)
            if exact is not None:
                result = Icd10ValidationResult(
                    code=exact.code, is_valid=True,
                    description=exact.description, category=exact.category,
                )
            else:
                result = Icd10ValidationResult(code=normalized, is_valid=False)

        self.cache.set(cache_key, result)
        return result

    async def _fetch(self, term: str, search_field: str, max_results: int) -> List[Icd10SearchResult]:
        payload = await self._get_json(search_field, {
            "terms": term,
            "sf": search_field,
            "df": "code,name",
            "maxList": str(max_results),
        })
        return self._parse(payload)

    def _parse(self, payload) -> List[Icd10SearchResult]:
        # [total, codes, extra, [[code, name], ...]]
        if not isinstance(payload, list) or len(payload) < 4:
            raise MalformedPayloadError("Unexpected ICD-10 response shape")
        rows = payload[3] or []
        if not isinstance(rows, list):
            raise MalformedPayloadError("Unexpected ICD-10 display rows")
        results = []
        for row in rows:
            if not isinstance(row, (list, tuple)) or not row:
                continue
            code = str(row[0]).strip()
            description = str(row[1]).strip() if len(row) > 1 else ""
            results.append(Icd10SearchResult(
                code=code, description=description, category=category_for_code(code),
            ))
        return results

    def fallback_search(self, term: str, max_results: int) -> List[Icd10SearchResult]:
        term_lower = term.lower()
        results = []
        for code, description in self.knowledge_base.fallback_codes:
            category = category_for_code(code)
            if (term_lower in description.lower() or term_lower in code.lower()
                    or term_lower in category.lower()):
                results.append(Icd10SearchResult(code=code, description=description, category=category))
        return results[:max_results]

    def fallback_validate(self, code: str) -> Icd10ValidationResult:
        for known_code, description in self.knowledge_base.fallback_codes:
            if known_code == code:
                return Icd10ValidationResult(
                    code=code, is_valid=True, description=description,
                    category=category_for_code(code), degraded=True,
                )
        if is_icd10_format(code):
            return Icd10ValidationResult(
                code=code, is_valid=True, description=FALLBACK_DESCRIPTION,
                category=category_for_code(code), degraded=True,
            )
        return Icd10ValidationResult(code=code, is_valid=False, degraded=True)
