"""
Exam Results Reporting — FastAPI backend entry point.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core import config
from core.logging import get_logger, setup_logging
from routes.analyze import router as analyze_router
from routes.reports import router as reports_router

setup_logging(config.LOG_LEVEL, json_format=config.LOG_JSON)
logger = get_logger(__name__)

app = FastAPI(
    title="Exam Results Reporting API",
    description=(
        "Pupil exam results: filtered summaries, rankings, at-risk lists, "
        "exam-over-exam deltas, distributions, trends and CSV/Excel exports."
    ),
    version="1.0.0",
)

# CORS: allow the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register route modules
app.include_router(analyze_router, prefix="/api/analyze", tags=["Analytics"])
app.include_router(reports_router, prefix="/api/reports", tags=["Reports"])

logger.info("Serving results from %s", config.RESULTS_PATH, extra={"path": config.RESULTS_PATH})


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "school_name": config.SCHOOL_NAME,
        "results_path": config.RESULTS_PATH,
    }


@app.get("/api/config")
async def get_config():
    """Return reporting defaults to the frontend."""
    return {
        "school_name": config.SCHOOL_NAME,
        "max_score": config.MAX_SCORE,
        "thresholds": {
            "pass": config.PASS_SCORE,
            "good": config.GOOD_SCORE,
            "excellent": config.EXCELLENT_SCORE,
        },
        "risk_pass_pct": config.RISK_PASS_PCT,
        "tracks": config.KNOWN_TRACKS,
    }
