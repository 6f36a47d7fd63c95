"""
Report routes — read-only reports over the configured results file.

Every endpoint takes its filters from the query string; they are resolved by
core.scope and never raise. A results file that cannot be loaded answers 503.
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from starlette.background import BackgroundTask

from core import config
from core.exports import EXPORT_KINDS, export_filename, iter_csv
from core.fetcher import DataUnavailable, ResultStore, load_store
from core.logging import get_logger
from core.report_builder import (
    build_report,
    compare_report,
    generate_excel_export,
    pupil_profile,
    pupil_scores,
    subject_trend,
)
from core.scope import parse_int, resolve_request

router = APIRouter()
logger = get_logger(__name__)


def get_store() -> ResultStore:
    """Results store for the configured file; 503 when it cannot be read."""
    try:
        return load_store(config.RESULTS_PATH)
    except DataUnavailable as e:
        logger.error("Results unavailable: %s", e, extra={"path": config.RESULTS_PATH})
        raise HTTPException(503, f"Results data is unavailable: {e}") from e


def _params(request: Request) -> dict:
    return dict(request.query_params)


def _safe_unlink(path: str):
    """Delete a temporary export after the response is sent."""
    Path(path).unlink(missing_ok=True)


@router.get("/summary")
async def summary(request: Request, store: ResultStore = Depends(get_store)):
    """Full report: KPIs, distribution, subjects, classes, deltas, risk, rankings, trend."""
    return build_report(store, resolve_request(_params(request)))


@router.get("/export/{kind}")
async def export_csv(kind: str, request: Request, store: ResultStore = Depends(get_store)):
    """Stream one of the CSV exports: subject, pupils, classes or raw."""
    if kind not in EXPORT_KINDS:
        raise HTTPException(404, f"Unknown export '{kind}'. Expected one of: {EXPORT_KINDS}")
    report_request = resolve_request(_params(request))
    frame = store.fetch_scope(report_request.scope)
    return StreamingResponse(
        iter_csv(kind, frame, report_request.thresholds.pass_score),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(kind)}"'},
    )


@router.get("/excel")
async def export_excel(request: Request, store: ResultStore = Depends(get_store)):
    """Excel workbook with the subject, class, pupil and at-risk tables."""
    report_request = resolve_request(_params(request))
    fd, output_path = tempfile.mkstemp(suffix=".xlsx")
    os.close(fd)
    try:
        generate_excel_export(output_path, store, report_request, config.SCHOOL_NAME)
    except Exception:
        _safe_unlink(output_path)
        raise
    return FileResponse(
        output_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"report_{datetime.now():%Y%m%d_%H%M%S}.xlsx",
        background=BackgroundTask(_safe_unlink, output_path),
    )


@router.get("/pupil-scores")
async def pupil_scores_drilldown(request: Request, store: ResultStore = Depends(get_store)):
    """Every score of one pupil within the year/term/exam filters."""
    params = _params(request)
    pupil_id = parse_int(params, "pupil_id", min_value=1)
    if pupil_id is None:
        raise HTTPException(400, "Provide a valid 'pupil_id'.")
    report_request = resolve_request(params)
    result = pupil_scores(store, pupil_id, report_request.scope, report_request.thresholds)
    if result is None:
        raise HTTPException(404, f"Pupil '{pupil_id}' not found.")
    return result


@router.get("/subject-trend")
async def subject_trend_drilldown(request: Request, store: ResultStore = Depends(get_store)):
    """Per-exam statistics of one subject within the active filters."""
    params = _params(request)
    subject_id = parse_int(params, "subject_id", min_value=1)
    if subject_id is None:
        raise HTTPException(400, "Provide a valid 'subject_id'.")
    report_request = resolve_request(params)
    result = subject_trend(store, subject_id, report_request.scope, report_request.thresholds)
    if result is None:
        raise HTTPException(404, f"Subject '{subject_id}' not found.")
    return result


@router.get("/pupil/{pupil_id}")
async def pupil_detail(pupil_id: int, request: Request, store: ResultStore = Depends(get_store)):
    """Pupil profile: exam timeline, selected exam breakdown, class rank."""
    result = pupil_profile(store, pupil_id, resolve_request(_params(request)))
    if result is None:
        raise HTTPException(404, f"Pupil '{pupil_id}' not found.")
    return result


@router.get("/compare")
async def compare(request: Request, store: ResultStore = Depends(get_store)):
    """Exam A (baseline_exam_id) against exam B (current_exam_id) for one class."""
    report_request = resolve_request(_params(request))
    if not report_request.scope.class_code:
        raise HTTPException(400, "Provide a 'class_code'.")
    return compare_report(store, report_request)
