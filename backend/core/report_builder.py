"""
report_builder.py — Report assembly and Excel export.

Generates:
- Full report      (KPIs, distribution, subject/class tables, deltas,
                    at-risk list, top/bottom pupils, exam trend)
- Drill-downs      (one pupil's scores, one subject's exam trend)
- Pupil profile    (exam timeline, selected exam breakdown, class rank)
- Group comparison (exam A vs exam B inside one class)
- Excel Export     (one styled sheet per summary table)

Every function takes an already-resolved ReportRequest/ReportScope and a
ResultStore; nothing here reads raw request parameters.
"""

import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from core import config
from core.deltas import (
    class_deltas,
    compare_exams,
    delta,
    exam_labels,
    exam_timeline_deltas,
    latest_exam_pair,
    pupil_exam_totals,
    pupil_subject_deltas,
    score_band,
    subject_deltas,
)
from core.fetcher import FAR_FUTURE, Predicate, ResultStore
from core.logging import get_logger
from core.ranking import bottom_pupils, class_rank_for_exam, top_pupils
from core.risk import at_risk_pupils
from core.scope import ReportRequest, ReportScope, Thresholds
from core.stats import (
    _safe_float,
    _sanitize,
    class_summary,
    pupil_summary,
    subject_summary,
    summarize_kpis,
)
from core.trends import bucketize, trend

logger = get_logger(__name__)

REPORT_TREND_MIN_N = 10
REPORT_TREND_LIMIT = 18


def _pass_rate_label(pass_rate: Optional[float]) -> str:
    if pass_rate is None:
        return "No data"
    if pass_rate >= 75.0:
        return "Strong"
    if pass_rate >= 50.0:
        return "Moderate"
    return "At risk"


# ── Full report ─────────────────────────────────────────────────────

def build_report(store: ResultStore, request: ReportRequest) -> Dict[str, Any]:
    """Assemble every section of the report for one resolved request."""
    started = time.perf_counter()
    scope = request.scope
    th = request.thresholds
    frame = store.fetch_scope(scope)

    # At-risk first: its ids are removed from the high performers.
    at_risk = at_risk_pupils(
        frame, request.risk_min_n, th.pass_score, request.risk_pass_pct, limit=request.list_limit,
    )
    at_risk_ids = [row["pupil_id"] for row in at_risk]
    top = top_pupils(frame, th.good, exclude=at_risk_ids, limit=request.list_limit)
    bottom = bottom_pupils(frame, limit=request.list_limit)

    comparison = _comparison(store, request)

    subjects = subject_summary(frame, th.pass_score)
    by_subject = {row["entity_id"]: row for row in comparison["subjects"]}
    for row in subjects:
        row["delta"] = by_subject.get(row["subject_id"])
        row["band"] = score_band(row["mean"], th)

    report = {
        "ok": True,
        "school_name": config.SCHOOL_NAME,
        "generated_at": datetime.now().isoformat(timespec="seconds"),
        "scope": scope.to_dict(),
        "filters": scope.active_filters(),
        "thresholds": th.to_dict(),
        "risk": {"min_n": request.risk_min_n, "pass_pct": request.risk_pass_pct},
        "list_limit": request.list_limit,
        "kpis": summarize_kpis(frame, th.pass_score),
        "distribution": [b.to_dict() for b in bucketize(frame["score"], 5, config.MAX_SCORE)],
        "subjects": subjects,
        "classes": class_summary(frame, th.pass_score),
        "comparison": comparison,
        "at_risk": at_risk,
        "top_pupils": top,
        "bottom_pupils": bottom,
        "trend": [p.to_dict() for p in trend(frame, th.pass_score, REPORT_TREND_MIN_N, REPORT_TREND_LIMIT)],
        "exam_deltas": exam_timeline_deltas(frame),
    }

    logger.info(
        "Built report over %d rows", len(frame),
        extra={
            "rows": len(frame),
            "filters": scope.to_dict(),
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    return _sanitize(report)


def _comparison(store: ResultStore, request: ReportRequest) -> Dict[str, Any]:
    """
    Current vs baseline exam for subject and class means.

    Explicit exam ids win. Otherwise, unless the scope already pins one exam,
    the two latest exams of the slice (ignoring the exam filter) are used.
    """
    empty = {"current_exam": None, "baseline_exam": None, "subjects": [], "classes": []}
    scope = request.scope
    if request.current_exam_id and request.baseline_exam_id:
        pair = (request.current_exam_id, request.baseline_exam_id)
        frame = store.fetch_scope(scope, exclude=("exam_id",))
    elif scope.exam_id is None:
        frame = store.fetch_scope(scope, exclude=("exam_id",))
        pair = latest_exam_pair(frame)
    else:
        return empty
    if pair is None:
        return empty

    current_id, baseline_id = pair
    labels = exam_labels(frame, [current_id, baseline_id])
    return {
        "current_exam": labels.get(current_id, {"exam_id": current_id}),
        "baseline_exam": labels.get(baseline_id, {"exam_id": baseline_id}),
        "subjects": subject_deltas(frame, current_id, baseline_id),
        "classes": class_deltas(frame, current_id, baseline_id),
    }


# ── Drill-downs ─────────────────────────────────────────────────────

def pupil_scores(store: ResultStore, pupil_id: int, scope: ReportScope,
                 thresholds: Thresholds) -> Optional[Dict[str, Any]]:
    """
    Every score of one pupil within the year/term/exam restrictions,
    newest exam first. None when the pupil is unknown.
    """
    pupil = store.pupil(pupil_id)
    if pupil is None:
        return None

    narrowed = ReportScope(academic_year=scope.academic_year, term=scope.term, exam_id=scope.exam_id)
    frame = store.fetch_scope(narrowed, extra=[Predicate("pupil_id", "eq", pupil_id)])
    frame = frame.assign(_order_date=frame["exam_date"].fillna(FAR_FUTURE)).sort_values(
        ["_order_date", "exam_id", "subject_name"], ascending=[False, False, True], kind="mergesort",
    )

    rows = [
        {
            "exam_id": int(r.exam_id),
            "academic_year": r.academic_year,
            "term": None if pd.isna(r.term) else int(r.term),
            "exam_name": r.exam_name,
            "exam_date": None if pd.isna(r.exam_date) else r.exam_date.strftime("%Y-%m-%d"),
            "subject_id": int(r.subject_id),
            "subject_code": r.subject_code,
            "subject_name": r.subject_name,
            "score": float(r.score),
        }
        for r in frame.itertuples(index=False)
    ]
    return _sanitize({
        "ok": True,
        "pupil": pupil,
        "thresholds": thresholds.to_dict(),
        "scope": {
            "academic_year": narrowed.academic_year,
            "term": narrowed.term,
            "exam_id": narrowed.exam_id,
        },
        "rows": rows,
    })


def subject_trend(store: ResultStore, subject_id: int, scope: ReportScope,
                  thresholds: Thresholds) -> Optional[Dict[str, Any]]:
    """Per-exam statistics of one subject, oldest exam first. None when unknown."""
    subject = store.subject(subject_id)
    if subject is None:
        return None

    forced = replace(scope, subject_id=subject_id)
    frame = store.fetch_scope(forced)
    rows = [
        {
            "exam_id": p.exam_id,
            "academic_year": p.academic_year,
            "term": p.term,
            "exam_name": p.label,
            "exam_date": p.exam_date,
            "n": p.n,
            "mean_score": _safe_float(p.mean),
            "stdev_score": _safe_float(p.stdev),
            "pass_rate": _safe_float(p.pass_rate),
        }
        for p in trend(frame, thresholds.pass_score, min_n=1)
    ]
    out_scope = forced.to_dict()
    out_scope.pop("subject_id")
    return _sanitize({
        "ok": True,
        "subject": {"id": subject["id"], "code": subject["code"], "name": subject["name"]},
        "thresholds": thresholds.to_dict(),
        "scope": out_scope,
        "rows": rows,
    })


# ── Pupil profile ───────────────────────────────────────────────────

def pupil_profile(store: ResultStore, pupil_id: int, request: ReportRequest) -> Optional[Dict[str, Any]]:
    """
    One pupil's exams within the year/term restrictions, the selected exam
    (the scope's exam when the pupil sat it, else the latest) broken down by
    subject against the previous exam, and their rank in class for it.
    """
    pupil = store.pupil(pupil_id)
    if pupil is None:
        return None

    th = request.thresholds
    scope = request.scope
    narrowed = ReportScope(academic_year=scope.academic_year, term=scope.term)
    frame = store.fetch_scope(narrowed, extra=[Predicate("pupil_id", "eq", pupil_id)])

    exams = pupil_exam_totals(frame)
    selected = None
    previous = None
    if exams:
        ids = [exam["exam_id"] for exam in exams]
        index = ids.index(scope.exam_id) if scope.exam_id in ids else 0
        selected = exams[index]
        previous = exams[index + 1] if index + 1 < len(exams) else None

    subjects: List[Dict[str, Any]] = []
    pass_rate = None
    delta_total = delta(None, None)
    delta_avg = delta(None, None)
    rank = {"rank": None, "count": 0}
    if selected is not None:
        prev_id = previous["exam_id"] if previous else None
        subjects = pupil_subject_deltas(frame, selected["exam_id"], prev_id, th)
        passed = sum(1 for s in subjects if s["score"] >= th.pass_score)
        pass_rate = 100.0 * passed / len(subjects) if subjects else None
        if previous is not None:
            delta_total = delta(selected["total_score"], previous["total_score"])
            delta_avg = delta(selected["avg_score"], previous["avg_score"])
        rank = class_rank_for_exam(
            store.fetch([Predicate("exam_id", "eq", selected["exam_id"])]),
            pupil_id, pupil["class_code"], selected["exam_id"],
        ).to_dict()

    for exam in exams:
        exam["total_score"] = _safe_float(exam["total_score"])
        exam["avg_score"] = _safe_float(exam["avg_score"])

    return _sanitize({
        "ok": True,
        "pupil": pupil,
        "thresholds": th.to_dict(),
        "exams": exams,
        "timeline": list(reversed(exams)),
        "selected_exam": selected,
        "previous_exam": previous,
        "subjects": subjects,
        "pass_rate": _safe_float(pass_rate, 1),
        "pass_rate_label": _pass_rate_label(pass_rate),
        "delta_total": delta_total.to_dict(),
        "delta_avg": delta_avg.to_dict(),
        "class_rank": rank,
    })


# ── Group comparison ────────────────────────────────────────────────

def compare_report(store: ResultStore, request: ReportRequest) -> Dict[str, Any]:
    """Baseline exam (A) against current exam (B) for the selected class."""
    scope = request.scope
    if not scope.class_code:
        return {"ok": True, "class_code": None, "exam_a": None, "exam_b": None, "exams": {}, "subjects": []}
    frame = store.fetch([Predicate("class_code", "eq", scope.class_code)])
    result = compare_exams(frame, request.baseline_exam_id, request.current_exam_id, scope.subject_id)
    return {"ok": True, "class_code": scope.class_code, **result}


# ── Excel Export ────────────────────────────────────────────────────

def generate_excel_export(
    output_path: str,
    store: ResultStore,
    request: ReportRequest,
    school_name: str,
):
    """Export the summary tables to Excel, one sheet each, rows coloured by mean band."""
    th = request.thresholds
    frame = store.fetch_scope(request.scope)

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="1a1a2e", end_color="1a1a2e", fill_type="solid")
    band_fills = {
        "danger": PatternFill(start_color="fadbd8", end_color="fadbd8", fill_type="solid"),
        "warning": PatternFill(start_color="fef9e7", end_color="fef9e7", fill_type="solid"),
        "primary": PatternFill(start_color="d6eaf8", end_color="d6eaf8", fill_type="solid"),
        "success": PatternFill(start_color="d5f5e3", end_color="d5f5e3", fill_type="solid"),
    }
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def _fill_sheet(ws, rows: List[Dict[str, Any]], columns: List[str]):
        ws.append(columns)
        for row in rows:
            ws.append([row.get(c) for c in columns])

        for cell in ws[1]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center")
            cell.border = thin_border

        mean_idx = columns.index("mean") if "mean" in columns else None
        for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
            for cell in row:
                cell.border = thin_border
                cell.alignment = Alignment(horizontal="center")
            if mean_idx is not None and row[mean_idx].value is not None:
                fill = band_fills.get(score_band(float(row[mean_idx].value), th))
                if fill is not None:
                    for cell in row:
                        cell.fill = fill

        ws.freeze_panes = "A2"
        for col_cells in ws.columns:
            max_len = max(len(str(cell.value or "")) for cell in col_cells)
            ws.column_dimensions[col_cells[0].column_letter].width = min(max_len + 4, 30)

    wb = Workbook()

    ws_subjects = wb.active
    ws_subjects.title = "Subjects"
    ws_subjects.sheet_properties.tabColor = "1a1a2e"
    _fill_sheet(ws_subjects, subject_summary(frame, th.pass_score), [
        "subject_code", "subject_name", "n", "mean", "median", "stdev", "min", "max", "pass_rate",
    ])

    ws_classes = wb.create_sheet(title="Classes")
    ws_classes.sheet_properties.tabColor = "0f3460"
    _fill_sheet(ws_classes, class_summary(frame, th.pass_score), [
        "class_code", "track", "n", "n_pupils", "mean", "median", "stdev", "pass_rate",
    ])

    ws_pupils = wb.create_sheet(title="Pupils")
    ws_pupils.sheet_properties.tabColor = "2ecc71"
    _fill_sheet(ws_pupils, pupil_summary(frame, th.pass_score), [
        "student_login", "surname", "name", "class_code", "track", "n", "total", "mean", "min", "max", "pass_rate",
    ])

    ws_risk = wb.create_sheet(title="At Risk")
    ws_risk.sheet_properties.tabColor = "e94560"
    _fill_sheet(ws_risk, at_risk_pupils(frame, request.risk_min_n, th.pass_score, request.risk_pass_pct), [
        "student_login", "surname", "name", "class_code", "track", "n", "mean", "min", "pass_rate", "reason",
    ])

    wb.properties.title = f"{school_name} results"
    wb.save(output_path)
    logger.info("Wrote Excel export to %s", output_path, extra={"path": output_path, "rows": len(frame)})
