"""
Medication Compatibility Service - FastAPI application.
Handles claim spreadsheet upload, compatibility analysis, dashboard
statistics and direct ICD-10 / openFDA reference lookups.
"""
import os
import sys
import logging
from dataclasses import asdict, dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pythonjsonlogger import jsonlogger

from catalog import DiagnosisCatalog, MedicationCatalog
from compatibility_analyzer import CompatibilityAnalyzer
from config import CORS_ORIGINS, FDA_API_KEY, LOG_FILE, LOG_LEVEL
from contraindication_matcher import ContraindicationMatcher
from errors import (
    InvalidInputError, RateLimitExceededError, ReferenceDataError, UploadFormatError, UploadReadError,
)
from icd10_service import Icd10Service
from identity_resolver import IdentityResolver
from medication_service import MedicationService
from models import (
    COMPATIBILITY_PRESETS, DEFAULT_COMPATIBILITY_CONFIG,
    CompatibilityConfig, Contraindication, DashboardStats, ErrorResponse, FdaStatus,
    Icd10Result, Icd10Validation, MedicalRecord, MedicationResult,
    SpecialtyData, UploadResponse, utc_timestamp,
)
from record_store import RecordStore
from resilience import ResilienceService
from risk_engine import RiskEngine
from terminology import MedicalKnowledgeBase

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


def setup_logging(level: str = LOG_LEVEL, log_file: str = LOG_FILE):
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    ))
    root.addHandler(console_handler)

    # Structured JSON file log, rotated daily
    if log_file:
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=7, encoding='utf-8'
        )
        file_handler.setFormatter(jsonlogger.JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s %(lineno)d %(funcName)s',
            rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
        ))
        root.addHandler(file_handler)


@dataclass
class Services:
    resilience: ResilienceService
    knowledge_base: MedicalKnowledgeBase
    icd10: Icd10Service
    medications: MedicationService
    resolver: IdentityResolver
    analyzer: CompatibilityAnalyzer
    store: RecordStore


def build_services(transport: Optional[httpx.AsyncBaseTransport] = None,
                   resilience: Optional[ResilienceService] = None,
                   api_key: str = FDA_API_KEY) -> Services:
    """Wire the service graph. transport replaces the network for both reference clients."""
    resilience = resilience or ResilienceService()
    knowledge_base = MedicalKnowledgeBase()
    icd10 = Icd10Service(resilience, knowledge_base, transport=transport)
    medications = MedicationService(resilience, transport=transport, api_key=api_key)
    resolver = IdentityResolver(
        medications, icd10, knowledge_base,
        MedicationCatalog(), DiagnosisCatalog(knowledge_base),
    )
    analyzer = CompatibilityAnalyzer(
        resolver, ContraindicationMatcher(knowledge_base), RiskEngine(), resilience,
    )
    return Services(
        resilience=resilience,
        knowledge_base=knowledge_base,
        icd10=icd10,
        medications=medications,
        resolver=resolver,
        analyzer=analyzer,
        store=RecordStore(),
    )


def make_timestamp() -> str:
    return utc_timestamp()


def build_error_response(error: str, detail: str, status_code: int = 400,
                         retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": error,
            "detail": detail,
            "retry_after": retry_after,
            "timestamp": make_timestamp()
        }
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Medication Compatibility API",
        description="Medication / diagnosis compatibility triage for claim extracts",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services or build_services()

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited(request: Request, exc: RateLimitExceededError):
        return build_error_response("rate_limit_exceeded", str(exc), 429, exc.retry_after)

    @app.exception_handler(InvalidInputError)
    async def invalid_input(request: Request, exc: InvalidInputError):
        return build_error_response("invalid_input", str(exc), 400)

    @app.exception_handler(ReferenceDataError)
    async def reference_failure(request: Request, exc: ReferenceDataError):
        return build_error_response("reference_service_unavailable", str(exc), 503)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI):

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        return {
            "status": "healthy",
            "service": "Medication Compatibility API",
            "version": "1.0.0",
            "resilience": services.resilience.overall_metrics(),
            "timestamp": make_timestamp()
        }

    @app.post("/analyze", response_model=UploadResponse, responses=ERROR_RESPONSES)
    async def analyze_upload(
        file: Optional[UploadFile] = File(None, description="CSV or Excel claim extract"),
        services: Services = Depends(get_services),
    ):
        """
        Analyze every row of an uploaded claim extract.
        Rows that cannot be resolved come back as manual-review records;
        only an unreadable or empty file fails the request.
        """
        if file is None or not file.filename:
            return build_error_response("no_file", "No file uploaded", 400)

        content = await file.read()
        if not content:
            return build_error_response("empty_file", "No data found in the uploaded file", 400)

        try:
            summary = await services.analyzer.analyze_upload(content, file.filename)
        except UploadFormatError as e:
            status_code = 422 if isinstance(e, UploadReadError) else 400
            return build_error_response("invalid_upload", str(e), status_code)

        record_ids = services.store.save_analyzed_records(summary.records)
        analysis_id = services.store.save_analysis_summary(file.filename, summary)
        return {
            "success": True,
            "message": f"Analyzed {summary.total_records} records from {file.filename}",
            "analysis_id": analysis_id,
            "summary": {
                "total_records": summary.total_records,
                "compatible": summary.compatible,
                "needs_review": summary.needs_review,
                "incompatible": summary.incompatible,
                "specialties_affected": summary.specialties_affected,
                "success_rate": summary.success_rate,
            },
            "record_ids": record_ids,
        }

    @app.get("/records", response_model=List[MedicalRecord])
    async def list_records(services: Services = Depends(get_services)):
        return [asdict(r) for r in services.store.all_records()]

    @app.get("/records/{record_id}", response_model=MedicalRecord, responses=ERROR_RESPONSES)
    async def get_record(record_id: str, services: Services = Depends(get_services)):
        record = services.store.get_record(record_id)
        if record is None:
            return build_error_response("not_found", f"Record {record_id} not found", 404)
        return asdict(record)

    @app.get("/analyses/{analysis_id}", responses=ERROR_RESPONSES)
    async def get_analysis(analysis_id: str, services: Services = Depends(get_services)):
        summary = services.store.get_summary(analysis_id)
        if summary is None:
            return build_error_response("not_found", f"Analysis {analysis_id} not found", 404)
        return summary

    @app.get("/mismatches", response_model=List[MedicalRecord])
    async def list_mismatches(limit: int = Query(10, ge=0, le=1000),
                              services: Services = Depends(get_services)):
        return [asdict(r) for r in services.store.incompatible_records(limit)]

    @app.get("/dashboard/stats", response_model=DashboardStats)
    async def dashboard_stats(preset: Optional[str] = None,
                              services: Services = Depends(get_services)):
        if preset is not None and preset not in COMPATIBILITY_PRESETS:
            return build_error_response(
                "invalid_preset",
                f"Unknown preset '{preset}'. Use one of: {', '.join(COMPATIBILITY_PRESETS)}",
                400,
            )
        config = COMPATIBILITY_PRESETS[preset] if preset else DEFAULT_COMPATIBILITY_CONFIG
        return services.store.dashboard_stats(config)

    @app.post("/dashboard/stats", response_model=DashboardStats)
    async def dashboard_stats_with_config(config: Optional[CompatibilityConfig] = None,
                                          services: Services = Depends(get_services)):
        return services.store.dashboard_stats(config or DEFAULT_COMPATIBILITY_CONFIG)

    @app.get("/dashboard/specialties", response_model=List[SpecialtyData])
    async def specialty_breakdown(services: Services = Depends(get_services)):
        return services.store.specialty_breakdown()

    @app.get("/icd10/search", response_model=List[Icd10Result])
    async def search_icd10(q: str = Query(..., description="Diagnosis search term"),
                           limit: int = Query(20, ge=1, le=100),
                           services: Services = Depends(get_services)):
        return [asdict(r) for r in await services.icd10.search(q, limit)]

    @app.get("/icd10/validate/{code}", response_model=Icd10Validation)
    async def validate_icd10(code: str, services: Services = Depends(get_services)):
        return asdict(await services.icd10.validate(code))

    @app.get("/medications/search", response_model=List[MedicationResult])
    async def search_medications(q: str = Query(..., description="Medication name"),
                                 limit: int = Query(10, ge=1, le=100),
                                 services: Services = Depends(get_services)):
        return [asdict(r) for r in await services.medications.search(q, limit)]

    @app.get("/medications/{name}/contraindications", response_model=List[Contraindication])
    async def medication_contraindications(name: str, services: Services = Depends(get_services)):
        return [asdict(s) for s in await services.medications.get_contraindications(name)]

    @app.get("/fda-status", response_model=FdaStatus)
    async def fda_status(test: bool = False, services: Services = Depends(get_services)):
        return await services.medications.status(live_check=test)

    @app.delete("/data/reset")
    async def reset_data(services: Services = Depends(get_services)):
        cleared = services.store.clear()
        return {"success": True, "cleared": cleared, "timestamp": make_timestamp()}

    @app.post("/data/fix-specialties")
    async def fix_specialties(services: Services = Depends(get_services)):
        result = services.store.fix_specialties()
        return {"success": True, **result, "timestamp": make_timestamp()}


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    host = os.getenv("PYTHON_HOST", "0.0.0.0")
    # Render sets PORT; PYTHON_PORT is the local fallback
    port = int(os.getenv("PORT", os.getenv("PYTHON_PORT", "8000")))
    is_prod = os.getenv("PYTHON_ENV", "development") == "production"
    uvicorn.run("main:app", host=host, port=port, reload=not is_prod)
