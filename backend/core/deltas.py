"""
deltas.py — Delta / comparison engine.

Computes:
- The delta primitive (points and percent change, null-safe)
- Latest exam pair selection for automatic comparisons
- Per-subject, per-class and per-exam mean deltas
- Pupil-level exam totals and subject deltas against the previous exam
- Group comparison of two exams inside one class (class groups 1 and 2)
- Score and percent-of-max bands used for colour coding
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from core.fetcher import FAR_FUTURE
from core.scope import Thresholds
from core.stats import _safe_float, _sanitize

EPSILON = 1e-5
FAR_PAST = pd.Timestamp.min.ceil("D")


@dataclass(frozen=True)
class DeltaResult:
    entity_id: Any = None
    baseline_value: Optional[float] = None
    current_value: Optional[float] = None
    delta_points: Optional[float] = None
    delta_percent: Optional[float] = None

    @property
    def direction(self) -> Optional[str]:
        return change_direction(self.delta_points)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in ("baseline_value", "current_value", "delta_points", "delta_percent"):
            out[key] = _safe_float(out[key])
        out["direction"] = self.direction
        return _sanitize(out)


def delta(current: Optional[float], baseline: Optional[float], entity_id: Any = None) -> DeltaResult:
    if current is None or baseline is None or pd.isna(current) or pd.isna(baseline):
        return DeltaResult(entity_id, baseline, current)
    points = float(current) - float(baseline)
    percent = None if abs(float(baseline)) < EPSILON else 100.0 * points / float(baseline)
    return DeltaResult(entity_id, float(baseline), float(current), points, percent)


def change_direction(delta_points: Optional[float]) -> Optional[str]:
    if delta_points is None:
        return None
    if delta_points > EPSILON:
        return "increase"
    if delta_points < -EPSILON:
        return "decrease"
    return "no-change"


# ── Exam ordering ───────────────────────────────────────────────────

def _exam_index(frame: pd.DataFrame) -> pd.DataFrame:
    """One row per exam with its display fields and a sortable date."""
    cols = ["exam_id", "exam_name", "exam_date", "academic_year", "term"]
    exams = frame[cols].drop_duplicates("exam_id").copy()
    exams["order_date"] = exams["exam_date"].fillna(FAR_FUTURE)
    return exams


def latest_exam_pair(frame: pd.DataFrame) -> Optional[Tuple[int, int]]:
    """
    (current_exam_id, baseline_exam_id) for the two most recent exams in the
    frame, or None when fewer than two exams are present.

    Undated exams count as the most recent.
    """
    if frame.empty:
        return None
    exams = _exam_index(frame).sort_values(["order_date", "exam_id"], ascending=[False, False])
    ids = [int(e) for e in exams["exam_id"].head(2)]
    if len(ids) < 2:
        return None
    return ids[0], ids[1]


def _exam_meta(row) -> Dict[str, Any]:
    return {
        "exam_id": int(row.exam_id),
        "exam_name": row.exam_name,
        "exam_date": None if pd.isna(row.exam_date) else row.exam_date.strftime("%Y-%m-%d"),
        "academic_year": row.academic_year,
        "term": None if pd.isna(row.term) else int(row.term),
    }


def exam_labels(frame: pd.DataFrame, exam_ids: List[int]) -> Dict[int, Dict[str, Any]]:
    exams = _exam_index(frame)
    exams = exams[exams["exam_id"].isin(exam_ids)]
    return {int(e.exam_id): _exam_meta(e) for e in exams.itertuples(index=False)}


# ── Group deltas ────────────────────────────────────────────────────

def mean_deltas(frame: pd.DataFrame, key: str, current_exam_id: int,
                baseline_exam_id: int) -> List[Dict[str, Any]]:
    """
    Mean score per `key` (subject_id, class_code, ...) in the current exam
    against the baseline exam. Entities seen on only one side get a null delta.
    """
    current = frame[frame["exam_id"] == current_exam_id].groupby(key)["score"].mean()
    baseline = frame[frame["exam_id"] == baseline_exam_id].groupby(key)["score"].mean()
    keys = set(current.index) | set(baseline.index)
    try:
        keys = sorted(keys)
    except TypeError:
        keys = sorted(keys, key=str)
    rows = []
    for k in keys:
        result = delta(current.get(k), baseline.get(k), entity_id=k)
        rows.append(result.to_dict())
    return rows


def subject_deltas(frame: pd.DataFrame, current_exam_id: int, baseline_exam_id: int) -> List[Dict[str, Any]]:
    rows = mean_deltas(frame, "subject_id", current_exam_id, baseline_exam_id)
    names = frame.drop_duplicates("subject_id").set_index("subject_id")
    for row in rows:
        info = names.loc[row["entity_id"]]
        row["subject_code"] = info["subject_code"]
        row["subject_name"] = info["subject_name"]
    return rows


def class_deltas(frame: pd.DataFrame, current_exam_id: int, baseline_exam_id: int) -> List[Dict[str, Any]]:
    return mean_deltas(frame, "class_code", current_exam_id, baseline_exam_id)


def exam_timeline_deltas(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Mean per exam in chronological order, each against the exam before it."""
    if frame.empty:
        return []
    means = frame.groupby("exam_id")["score"].agg(["mean", "size"])
    exams = _exam_index(frame).sort_values(["order_date", "exam_id"])
    rows = []
    previous = None
    for exam in exams.itertuples(index=False):
        mean = float(means.loc[exam.exam_id, "mean"])
        row = _exam_meta(exam)
        row["n"] = int(means.loc[exam.exam_id, "size"])
        row["mean"] = _safe_float(mean)
        row["delta"] = delta(mean, previous, entity_id=int(exam.exam_id)).to_dict()
        rows.append(row)
        previous = mean
    return rows


# ── Pupil level ─────────────────────────────────────────────────────

def pupil_exam_totals(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    One row per exam the pupil sat: subject count, total and average score.

    Newest first: academic year desc, exam date desc (undated exams after
    dated ones), exam id desc.
    """
    if frame.empty:
        return []
    totals = frame.groupby("exam_id")["score"].agg(["size", "sum", "mean"])
    exams = _exam_index(frame)
    exams["order_date"] = exams["exam_date"].fillna(FAR_PAST)
    exams = exams.sort_values(["academic_year", "order_date", "exam_id"], ascending=[False, False, False])
    rows = []
    for exam in exams.itertuples(index=False):
        row = _exam_meta(exam)
        row["n_subjects"] = int(totals.loc[exam.exam_id, "size"])
        row["total_score"] = float(totals.loc[exam.exam_id, "sum"])
        row["avg_score"] = float(totals.loc[exam.exam_id, "mean"])
        rows.append(row)
    return rows


def score_band(score: Optional[float], thresholds: Thresholds) -> str:
    if score is None or pd.isna(score):
        return "secondary"
    if score < thresholds.pass_score:
        return "danger"
    if score < thresholds.good:
        return "warning"
    if score < thresholds.excellent:
        return "primary"
    return "success"


def percent_band(score: Optional[float], max_points: Optional[float]) -> Tuple[Optional[float], str]:
    """(percent of max points, band); a missing or non-positive max counts as 40."""
    if score is None or pd.isna(score):
        return None, "secondary"
    if max_points is None or pd.isna(max_points) or max_points <= 0:
        max_points = 40.0
    pct = 100.0 * float(score) / float(max_points)
    if pct < 46:
        band = "danger"
    elif pct < 66:
        band = "warning"
    elif pct < 86:
        band = "primary"
    else:
        band = "success"
    return pct, band


def pupil_subject_deltas(frame: pd.DataFrame, exam_id: int, previous_exam_id: Optional[int],
                         thresholds: Thresholds) -> List[Dict[str, Any]]:
    """Subject rows of one exam, each with its score in the previous exam and the change."""
    current = frame[frame["exam_id"] == exam_id].sort_values(["subject_name", "subject_id"])
    previous: Dict[int, float] = {}
    if previous_exam_id is not None:
        prev_rows = frame[frame["exam_id"] == previous_exam_id]
        previous = {int(r.subject_id): float(r.score) for r in prev_rows.itertuples(index=False)}

    rows = []
    for r in current.itertuples(index=False):
        score = float(r.score)
        prev = previous.get(int(r.subject_id))
        pct, pct_band = percent_band(score, r.max_points)
        result = delta(score, prev)
        rows.append({
            "subject_id": int(r.subject_id),
            "subject_code": r.subject_code,
            "subject_name": r.subject_name,
            "max_points": float(r.max_points),
            "score": score,
            "band": score_band(score, thresholds),
            "percent": _safe_float(pct),
            "percent_band": pct_band,
            "prev_score": prev,
            "delta": _safe_float(result.delta_points),
            "direction": result.direction,
        })
    return rows


# ── Group comparison ────────────────────────────────────────────────

def _group_averages(pairs: List[Tuple[Optional[float], Optional[float]]]) -> Dict[str, Any]:
    a = [x for x, _ in pairs if x is not None]
    b = [y for _, y in pairs if y is not None]
    d = [y - x for x, y in pairs if x is not None and y is not None]
    return {
        "avg_a": _safe_float(sum(a) / len(a)) if a else None,
        "avg_b": _safe_float(sum(b) / len(b)) if b else None,
        "avg_diff": _safe_float(sum(d) / len(d)) if d else None,
        "n": len(pairs),
    }


def compare_exams(frame: pd.DataFrame, exam_a: Optional[int], exam_b: Optional[int],
                  subject_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Exam A against exam B for the pupils in `frame` (normally one class),
    split by class group 1 and 2.

    Every pupil of a group is listed for every subject shown, with nulls for
    a missing exam. Group averages skip missing scores; avg_diff only counts
    pupils who sat both exams.
    """
    if exam_a is not None and exam_a == exam_b:
        exam_a = None
    exam_ids = [e for e in (exam_a, exam_b) if e is not None]

    roster = frame[frame["class_group"].isin([1, 2])].drop_duplicates("pupil_id")
    roster = roster.sort_values(["surname", "name", "pupil_id"])

    if subject_id is not None:
        shown = frame[frame["subject_id"] == subject_id]
    else:
        shown = frame[frame["exam_id"].isin(exam_ids) & frame["class_group"].isin([1, 2])]
    subjects = shown.drop_duplicates("subject_id")
    subjects = subjects.assign(_name=subjects["subject_name"].str.lower()).sort_values(["_name", "subject_id"])

    scores = {
        (int(r.pupil_id), int(r.subject_id), int(r.exam_id)): float(r.score)
        for r in frame[frame["exam_id"].isin(exam_ids)].itertuples(index=False)
    }

    blocks = []
    for sub in subjects.itertuples(index=False):
        sid = int(sub.subject_id)
        groups = []
        for group in (1, 2):
            members = roster[roster["class_group"] == group]
            pupils = []
            pairs = []
            for p in members.itertuples(index=False):
                pid = int(p.pupil_id)
                score_a = scores.get((pid, sid, exam_a)) if exam_a is not None else None
                score_b = scores.get((pid, sid, exam_b)) if exam_b is not None else None
                diff = score_b - score_a if score_a is not None and score_b is not None else None
                pairs.append((score_a, score_b))
                pupils.append({
                    "pupil_id": pid,
                    "surname": p.surname,
                    "name": p.name,
                    "score_a": score_a,
                    "score_b": score_b,
                    "diff": _safe_float(diff),
                    "direction": change_direction(diff),
                })
            groups.append({"class_group": group, "pupils": pupils, **_group_averages(pairs)})

        group_delta = delta(groups[1]["avg_b"], groups[0]["avg_b"]).to_dict()
        blocks.append({
            "subject_id": sid,
            "subject_code": sub.subject_code,
            "subject_name": sub.subject_name,
            "max_points": float(sub.max_points) if sub.max_points > 0 else 40.0,
            "groups": groups,
            "group_delta": group_delta,
        })

    return _sanitize({
        "exam_a": exam_a,
        "exam_b": exam_b,
        "exams": exam_labels(frame, exam_ids),
        "subjects": blocks,
    })
