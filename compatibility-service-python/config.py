"""
Service configuration.
Values come from the environment (optionally a .env file at the repo root)
and are read once at import time.
"""
import os
import logging
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', '.env'))

logger = logging.getLogger(__name__)

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'data')

ICD10_BASE_URL = os.getenv(
    "ICD10_BASE_URL", "https://clinicaltables.nlm.nih.gov/api/icd10cm/v3/search"
)
OPENFDA_BASE_URL = os.getenv("OPENFDA_BASE_URL", "https://api.fda.gov/drug/label.json")
FDA_API_KEY = os.getenv("FDA_API_KEY") or os.getenv("OPENFDA_API_KEY") or ""

ICD10_TIMEOUT_S = 10.0
OPENFDA_TIMEOUT_S = 15.0
ICD10_CACHE_TTL_S = 24 * 60 * 60
OPENFDA_CACHE_TTL_S = 12 * 60 * 60

CIRCUIT_FAILURE_THRESHOLD = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
CIRCUIT_RESET_TIMEOUT_S = float(os.getenv("CIRCUIT_RESET_TIMEOUT_S", "60"))
CIRCUIT_HALF_OPEN_SUCCESSES = 2
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "2"))
RETRY_BASE_DELAY_S = float(os.getenv("RETRY_BASE_DELAY_S", "1.0"))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")


@dataclass(frozen=True)
class QuotaLimits:
    daily: int
    hourly: int
    minute: int
    tier: str = "standard"


FDA_STANDARD_LIMITS = QuotaLimits(daily=1000, hourly=240, minute=240, tier="standard")
FDA_ENHANCED_LIMITS = QuotaLimits(daily=120000, hourly=5000, minute=240, tier="enhanced")

ICD10_LIMITS = QuotaLimits(
    daily=int(os.getenv("ICD10_DAILY_LIMIT", "50000")),
    hourly=int(os.getenv("ICD10_HOURLY_LIMIT", "5000")),
    minute=int(os.getenv("ICD10_MINUTE_LIMIT", "300")),
    tier="public",
)


def fda_quota_limits(api_key: str = FDA_API_KEY) -> QuotaLimits:
    """Enhanced limits apply only when an openFDA key is configured."""
    if api_key:
        return FDA_ENHANCED_LIMITS
    return FDA_STANDARD_LIMITS
