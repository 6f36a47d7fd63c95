"""
trends.py — Score distribution and exam trend builder.

Computes:
- Fixed-width score histograms (zero-count bands included)
- Per-exam trend points, gated on a minimum sample size and ordered by
  exam date with undated exams last
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from core.fetcher import FAR_FUTURE
from core.stats import _sanitize, aggregate


@dataclass(frozen=True)
class Bucket:
    label: str
    lower: float
    upper: float
    n: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrendPoint:
    exam_id: int
    label: str
    exam_date: Optional[str]
    academic_year: str
    term: Optional[int]
    n: int
    mean: Optional[float]
    stdev: Optional[float]
    pass_rate: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in ("mean", "stdev", "pass_rate"):
            out[key] = None if out[key] is None else round(out[key], 2)
        return _sanitize(out)


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def bucketize(scores: Iterable[float], band_width: float = 5, max_score: float = 40) -> List[Bucket]:
    """
    Histogram over [0, max_score] in bands of band_width.

    Scores are clamped into range first. The top value gets its own
    singleton band, so the default layout is [0,5) ... [35,40) then [40].
    """
    edges_count = int(math.ceil(max_score / band_width))
    counts = np.zeros(edges_count + 1, dtype=int)
    values = np.clip(np.asarray(list(scores), dtype=float), 0, max_score)
    if values.size:
        idx = np.floor(values / band_width).astype(int)
        idx = np.where(values >= max_score, edges_count, np.minimum(idx, edges_count - 1))
        counts += np.bincount(idx, minlength=edges_count + 1)

    buckets = []
    for i in range(edges_count):
        lower = i * band_width
        upper = min((i + 1) * band_width, max_score)
        buckets.append(Bucket(f"{_fmt(lower)}-{_fmt(upper)}", float(lower), float(upper), int(counts[i])))
    buckets.append(Bucket(_fmt(max_score), float(max_score), float(max_score), int(counts[edges_count])))
    return buckets


def trend(frame: pd.DataFrame, pass_threshold: float, min_n: int = 10,
          limit: Optional[int] = None) -> List[TrendPoint]:
    """
    One TrendPoint per exam with at least min_n results, oldest first.

    Undated exams sort after every dated one; equal dates fall back to exam id.
    """
    if frame.empty:
        return []

    points = []
    for exam_id, group in frame.groupby("exam_id", sort=False):
        stats = aggregate(group["score"], pass_threshold)
        if stats.n < min_n:
            continue
        first = group.iloc[0]
        exam_date = first["exam_date"]
        points.append((
            FAR_FUTURE if pd.isna(exam_date) else exam_date,
            int(exam_id),
            TrendPoint(
                exam_id=int(exam_id),
                label=first["exam_name"] or f"Exam #{int(exam_id)}",
                exam_date=None if pd.isna(exam_date) else exam_date.strftime("%Y-%m-%d"),
                academic_year=first["academic_year"],
                term=None if pd.isna(first["term"]) else int(first["term"]),
                n=stats.n,
                mean=stats.mean,
                stdev=stats.stdev,
                pass_rate=stats.pass_rate,
            ),
        ))

    points.sort(key=lambda p: (p[0], p[1]))
    ordered = [p[2] for p in points]
    return ordered[:limit] if limit is not None else ordered
