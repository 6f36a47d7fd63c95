"""
Analyze routes — the same engine over result rows posted by the client.

Payload: {"data": [ {pupil_id, subject_id, exam_id, score, ...}, ... ],
          "filters": {academic_year, term, exam_id, ..., pass, good, excellent}}
"""

from typing import Tuple

from fastapi import APIRouter, HTTPException

from core import config
from core.fetcher import DataUnavailable, ResultStore
from core.ranking import group_entities, rank
from core.report_builder import build_report
from core.risk import at_risk_pupils
from core.scope import ReportRequest, parse_choice, parse_float, parse_int, resolve_request
from core.trends import bucketize, trend

router = APIRouter()


def _store_from_payload(payload: dict) -> Tuple[ResultStore, ReportRequest]:
    """Build a store from the posted rows and resolve the posted filters."""
    data = payload.get("data")
    if not data:
        raise HTTPException(400, "No data provided.")
    try:
        store = ResultStore.from_records(data)
    except DataUnavailable as e:
        raise HTTPException(400, str(e)) from e
    filters = payload.get("filters") or {}
    if not isinstance(filters, dict):
        raise HTTPException(400, "'filters' must be an object.")
    return store, resolve_request(filters)


@router.post("/report")
async def report(payload: dict):
    """Full report over the posted rows."""
    store, request = _store_from_payload(payload)
    return build_report(store, request)


@router.post("/risk")
async def risk(payload: dict):
    """At-risk pupils with the reason each was flagged."""
    store, request = _store_from_payload(payload)
    frame = store.fetch_scope(request.scope)
    th = request.thresholds
    return {
        "min_n": request.risk_min_n,
        "pass_pct": request.risk_pass_pct,
        "pupils": at_risk_pupils(frame, request.risk_min_n, th.pass_score, request.risk_pass_pct),
    }


@router.post("/ranking")
async def ranking(payload: dict):
    """Competition-ranked pupils, classes or subjects ("by", "order", "limit" in filters)."""
    store, request = _store_from_payload(payload)
    filters = payload.get("filters") or {}
    by = parse_choice(filters, "by", ["pupil", "class", "subject"]) or "pupil"
    order = parse_choice(filters, "order", ["desc", "asc"]) or "desc"
    limit = parse_int(filters, "limit", 1, 1000)
    frame = store.fetch_scope(request.scope)
    ranked = rank(group_entities(frame, by), order, limit)
    return {"by": by, "order": order, "entities": [e.to_dict() for e in ranked]}


@router.post("/trend")
async def exam_trend(payload: dict):
    """Per-exam statistics, oldest first; exams with fewer than min_n results are dropped."""
    store, request = _store_from_payload(payload)
    filters = payload.get("filters") or {}
    min_n = parse_int(filters, "min_n", 1)
    frame = store.fetch_scope(request.scope)
    points = trend(frame, request.thresholds.pass_score, min_n if min_n is not None else 10)
    return {"points": [p.to_dict() for p in points]}


@router.post("/distribution")
async def distribution(payload: dict):
    """Score histogram in fixed bands (band_width in filters, default 5)."""
    store, request = _store_from_payload(payload)
    filters = payload.get("filters") or {}
    width = parse_float(filters, "band_width", 1, config.MAX_SCORE) or 5
    frame = store.fetch_scope(request.scope)
    return {"buckets": [b.to_dict() for b in bucketize(frame["score"], width, config.MAX_SCORE)]}
