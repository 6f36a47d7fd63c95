"""
config.py — Environment-driven settings shared by the engine and the API.

Values come from the process environment (optionally a .env file).
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

BACKEND_DIR = Path(__file__).resolve().parent.parent
SAMPLE_DATA_DIR = BACKEND_DIR / "sample_data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip().replace(",", ".")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [v.strip() for v in raw.split(",") if v.strip()]


SCHOOL_NAME = os.getenv("SCHOOL_NAME", "My School")

# Results table the GET endpoints read from (CSV, XLSX or ODS).
RESULTS_PATH = os.getenv("RESULTS_PATH", str(SAMPLE_DATA_DIR / "sample_results.csv"))

# Scores are points on a 0..MAX_SCORE scale.
MAX_SCORE = _env_float("MAX_SCORE", 40.0)
PASS_SCORE = _env_float("PASS_SCORE", 18.4)
GOOD_SCORE = _env_float("GOOD_SCORE", 24.4)
EXCELLENT_SCORE = _env_float("EXCELLENT_SCORE", 34.4)
RISK_PASS_PCT = _env_float("RISK_PASS_PCT", 50.0)

KNOWN_TRACKS = _env_list("KNOWN_TRACKS", "Aniq fanlar,Tabiiy fanlar")

# Comma-separated allowed origins, e.g. http://localhost:5173,https://app.example.com
ALLOWED_ORIGINS = _env_list("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "false").strip().lower() in {"1", "true", "yes", "on"}
