"""
Shared fixtures: a controllable clock, a no-op sleep for retry backoff,
and fake ICD-10 / openFDA transports built on httpx.MockTransport.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'compatibility-service-python'))

import httpx
import pytest

from resilience import ResilienceService
from terminology import MedicalKnowledgeBase

ASPIRIN_LABEL = {
    "openfda": {
        "brand_name": ["Aspirin"],
        "generic_name": ["aspirin"],
        "substance_name": ["ASPIRIN"],
        "manufacturer_name": ["Acme Pharma"],
        "product_ndc": ["0000-0001"],
        "dosage_form": ["TABLET"],
    },
    "contraindications": ["Do not use in patients with asthma."],
    "warnings": ["Reye's syndrome: children and teenagers should not use this medicine."],
}

ICD10_ROWS = {
    "asthma": [["J45.909", "Unspecified asthma, uncomplicated"], ["J45.9", "Asthma, unspecified"]],
    "diabetes": [["E11.9", "Type 2 diabetes mellitus without complications"]],
}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def no_sleep(_delay):
    return None


class FakeReferenceServer:
    """Answers both reference APIs and counts requests per host."""

    def __init__(self, icd10_status: int = 200, fda_status: int = 200):
        self.icd10_status = icd10_status
        self.fda_status = fda_status
        self.calls = {"icd10": 0, "openfda": 0}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.fda.gov":
            self.calls["openfda"] += 1
            if self.fda_status != 200:
                return httpx.Response(self.fda_status, json={"error": "unavailable"})
            query = request.url.params.get("search", "").lower()
            if '"aspirin"' in query:
                return httpx.Response(200, json={"results": [ASPIRIN_LABEL]})
            return httpx.Response(404, json={"error": {"code": "NOT_FOUND"}})

        self.calls["icd10"] += 1
        if self.icd10_status != 200:
            return httpx.Response(self.icd10_status, text="unavailable")
        terms = request.url.params.get("terms", "").lower()
        if request.url.params.get("sf") == "code":
            rows = [r for group in ICD10_ROWS.values() for r in group if r[0].lower() == terms]
        else:
            rows = next((v for k, v in ICD10_ROWS.items() if k in terms), [])
        return httpx.Response(200, json=[len(rows), [r[0] for r in rows], None, rows])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resilience(clock):
    return ResilienceService(clock=clock, sleep=no_sleep, jitter=lambda: 0.0)


@pytest.fixture(scope="session")
def knowledge_base():
    return MedicalKnowledgeBase()


@pytest.fixture
def server():
    return FakeReferenceServer()
