"""
stats.py — Statistics Aggregator.

Computes:
- ScoreStatistics for any score list (n, mean, median, population stdev, pass rate)
- Whole-slice KPIs
- Per-subject, per-class and per-pupil summary tables, in report order
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd


# ── Helpers ─────────────────────────────────────────────────────────

def _safe_float(val, digits: int = 2) -> Optional[float]:
    """Convert to float or return None."""
    try:
        v = float(val)
        return None if np.isnan(v) or np.isinf(v) else round(v, digits)
    except (TypeError, ValueError):
        return None


def _sanitize(obj):
    """Recursively coerce numpy/pandas scalars to JSON-safe Python types."""
    if isinstance(obj, dict):
        return {k: _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize(v) for v in obj]
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating, float)):
        v = float(obj)
        return None if (np.isnan(v) or np.isinf(v)) else v
    if isinstance(obj, pd.Timestamp):
        return obj.strftime("%Y-%m-%d")
    if obj is pd.NaT or obj is pd.NA:
        return None
    return obj


# ── Core aggregate ──────────────────────────────────────────────────

@dataclass(frozen=True)
class ScoreStatistics:
    n: int
    mean: Optional[float] = None
    median: Optional[float] = None
    stdev: Optional[float] = None
    pass_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in ("mean", "median", "stdev", "pass_rate"):
            out[key] = _safe_float(out[key])
        return out


def aggregate(scores: Iterable[float], pass_threshold: float) -> ScoreStatistics:
    """
    Summarize a score list.

    Population standard deviation (divide by n). Median is the middle element
    of the sorted list, or the mean of the two middle elements for even n.
    A score equal to the threshold counts as a pass.
    """
    values = np.sort(np.asarray(list(scores), dtype=float))
    n = int(values.size)
    if n == 0:
        return ScoreStatistics(n=0)

    mean = float(values.sum() / n)
    mid = n // 2
    median = float(values[mid]) if n % 2 else float((values[mid - 1] + values[mid]) / 2)
    stdev = float(np.sqrt(((values - mean) ** 2).sum() / n))
    pass_rate = float(100.0 * np.count_nonzero(values >= pass_threshold) / n)
    return ScoreStatistics(n=n, mean=mean, median=median, stdev=stdev, pass_rate=pass_rate)


def summarize_kpis(frame: pd.DataFrame, pass_threshold: float) -> Dict[str, Any]:
    """Headline figures for the whole slice."""
    scores = frame["score"]
    agg = aggregate(scores, pass_threshold)
    return _sanitize({
        "n_results": agg.n,
        "n_pupils": frame["pupil_id"].nunique(),
        "n_subjects": frame["subject_id"].nunique(),
        "n_exams": frame["exam_id"].nunique(),
        "n_classes": frame.loc[frame["class_code"] != "", "class_code"].nunique(),
        "mean": _safe_float(agg.mean),
        "median": _safe_float(agg.median),
        "stdev": _safe_float(agg.stdev),
        "min": _safe_float(scores.min()) if agg.n else None,
        "max": _safe_float(scores.max()) if agg.n else None,
        "pass_rate": _safe_float(agg.pass_rate),
    })


# ── Grouped tables ──────────────────────────────────────────────────

def group_statistics(frame: pd.DataFrame, keys: Sequence[str], pass_threshold: float) -> pd.DataFrame:
    """
    Per-group statistics with unrounded values.

    Columns: the group keys, then n, total, mean, median, stdev, min, max,
    pass_rate and n_pupils.
    """
    columns = list(keys) + ["n", "total", "mean", "median", "stdev", "min", "max", "pass_rate", "n_pupils"]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    work = frame.assign(_passed=(frame["score"] >= pass_threshold).astype(float))
    table = work.groupby(list(keys), sort=False).agg(
        n=("score", "size"),
        total=("score", "sum"),
        mean=("score", "mean"),
        median=("score", "median"),
        stdev=("score", lambda s: float(np.std(s.to_numpy(dtype=float)))),
        min=("score", "min"),
        max=("score", "max"),
        pass_rate=("_passed", "mean"),
        n_pupils=("pupil_id", "nunique"),
    ).reset_index()
    table["pass_rate"] = table["pass_rate"] * 100.0
    return table[columns]


def _first_values(frame: pd.DataFrame, key: str, columns: List[str]) -> pd.DataFrame:
    return frame.drop_duplicates(key)[[key] + columns]


# Digits each aggregate is shown with; tables sort on the shown value.
DISPLAY_DIGITS = {"mean": 2, "median": 2, "stdev": 2, "min": 2, "max": 2, "pass_rate": 1}


def _sort_displayed(table: pd.DataFrame, by: List[str], ascending: List[bool]) -> pd.DataFrame:
    """Sort on rounded aggregates so rows that print equal fall to the tie-breaks."""
    keys = {col: table[col].astype(float).round(DISPLAY_DIGITS[col]) for col in by if col in DISPLAY_DIGITS}
    work = table.assign(**{f"_sort_{col}": values for col, values in keys.items()})
    columns = [f"_sort_{col}" if col in keys else col for col in by]
    work = work.sort_values(columns, ascending=ascending, kind="mergesort")
    return work.drop(columns=[f"_sort_{col}" for col in keys]).reset_index(drop=True)


def subject_table(frame: pd.DataFrame, pass_threshold: float) -> pd.DataFrame:
    """Subjects ordered hardest first: mean asc, stdev desc, n desc."""
    table = group_statistics(frame, ["subject_id"], pass_threshold)
    if table.empty:
        return table.assign(subject_code=[], subject_name=[])
    table = table.merge(_first_values(frame, "subject_id", ["subject_code", "subject_name"]), on="subject_id")
    return _sort_displayed(table, ["mean", "stdev", "n", "subject_id"], [True, False, False, True])


def class_table(frame: pd.DataFrame, pass_threshold: float) -> pd.DataFrame:
    """Classes (by class and track) ordered mean desc, pass_rate desc, n desc."""
    table = group_statistics(frame, ["class_code", "track"], pass_threshold)
    if table.empty:
        return table
    return _sort_displayed(
        table, ["mean", "pass_rate", "n", "class_code", "track"], [False, False, False, True, True],
    )


def pupil_table(frame: pd.DataFrame, pass_threshold: float) -> pd.DataFrame:
    """Pupils ordered mean desc, n desc."""
    table = group_statistics(frame, ["pupil_id"], pass_threshold)
    identity = ["student_login", "surname", "name", "middle_name", "class_code", "track"]
    if table.empty:
        return table.assign(**{col: [] for col in identity})
    table = table.merge(_first_values(frame, "pupil_id", identity), on="pupil_id")
    return _sort_displayed(table, ["mean", "n", "pupil_id"], [False, False, True])


def _records(table: pd.DataFrame, fields: List[str]) -> List[Dict[str, Any]]:
    rounded = {"mean", "median", "stdev", "min", "max", "total", "pass_rate"}
    rows = []
    for rec in table[fields].to_dict(orient="records"):
        rows.append({k: (_safe_float(v) if k in rounded else v) for k, v in rec.items()})
    return _sanitize(rows)


def subject_summary(frame: pd.DataFrame, pass_threshold: float) -> List[Dict[str, Any]]:
    return _records(subject_table(frame, pass_threshold), [
        "subject_id", "subject_code", "subject_name",
        "n", "mean", "median", "stdev", "min", "max", "pass_rate",
    ])


def class_summary(frame: pd.DataFrame, pass_threshold: float) -> List[Dict[str, Any]]:
    return _records(class_table(frame, pass_threshold), [
        "class_code", "track", "n", "n_pupils", "mean", "median", "stdev", "pass_rate",
    ])


def pupil_summary(frame: pd.DataFrame, pass_threshold: float) -> List[Dict[str, Any]]:
    return _records(pupil_table(frame, pass_threshold), [
        "pupil_id", "student_login", "surname", "name", "class_code", "track",
        "n", "total", "mean", "min", "max", "pass_rate",
    ])
