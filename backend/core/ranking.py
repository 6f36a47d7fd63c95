"""
ranking.py — Ranking Engine.

Ranks pupils, classes or subjects by total score (then mean, then id) with
competition ranks: tied totals share a rank and the next distinct total
skips past the tie group, so totals [40, 30, 30, 20] rank [1, 2, 2, 4].

Also computes a single pupil's rank inside a comparison set (their class for
one exam), walking the sorted totals and stopping at the target.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from core.stats import _safe_float, _sanitize

EPSILON = 1e-5

GROUP_KEYS = {
    "pupil": "pupil_id",
    "class": "class_code",
    "subject": "subject_id",
}


@dataclass(frozen=True)
class RankedEntity:
    key: Any
    n: int
    total: Optional[float]
    mean: float
    min: Optional[float] = None
    max: Optional[float] = None
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for field in ("total", "mean", "min", "max"):
            out[field] = _safe_float(out[field])
        return _sanitize(out)


@dataclass(frozen=True)
class ClassRank:
    rank: Optional[int]
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"rank": self.rank, "count": self.count}


# ── Grouping ────────────────────────────────────────────────────────

def group_entities(frame: pd.DataFrame, by: str = "pupil") -> List[RankedEntity]:
    """Collapse result rows into one unranked entity per pupil, class or subject."""
    key = GROUP_KEYS.get(by, by)
    if frame.empty:
        return []
    grouped = frame.groupby(key, sort=True)["score"].agg(["size", "sum", "mean", "min", "max"])
    return [
        RankedEntity(
            key=_sanitize(idx),
            n=int(row["size"]),
            total=float(row["sum"]),
            mean=float(row["mean"]),
            min=float(row["min"]),
            max=float(row["max"]),
        )
        for idx, row in grouped.iterrows()
    ]


# ── List ranking ────────────────────────────────────────────────────

def _total(entity: RankedEntity) -> float:
    return entity.total if entity.total is not None else 0.0


def rank(entities: Iterable[RankedEntity], order: str = "desc",
         limit: Optional[int] = None) -> List[RankedEntity]:
    """
    Sort by (total, mean) in the requested direction, break exact ties on
    key ascending, assign competition ranks on total, then apply the limit.
    """
    items = list(entities)
    if not items:
        return []

    descending = order != "asc"
    if descending:
        # Keys ascend within equal (total, mean) pairs in both directions.
        items.sort(key=lambda e: e.key)
        items.sort(key=lambda e: (_total(e), e.mean), reverse=True)
    else:
        items.sort(key=lambda e: (_total(e), e.mean, e.key))

    totals = np.array([_total(e) for e in items], dtype=float)
    totals = np.round(totals / EPSILON) * EPSILON
    ranks = rankdata(-totals if descending else totals, method="min").astype(int)

    ranked = [
        RankedEntity(e.key, e.n, e.total, e.mean, e.min, e.max, int(r))
        for e, r in zip(items, ranks)
    ]
    return ranked[:limit] if limit is not None else ranked


def top_pupils(frame: pd.DataFrame, good: float, exclude: Iterable[int] = (),
               limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    High performers: pupils whose mean reaches `good`, minus the excluded ids.

    The exclusion set is the at-risk list of the same report, so it must be
    computed before this call.
    """
    skip = set(exclude)
    candidates = [
        e for e in group_entities(frame, "pupil")
        if e.mean >= good and e.key not in skip
    ]
    return _with_identity(frame, rank(candidates, "desc", limit))


def bottom_pupils(frame: pd.DataFrame, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    return _with_identity(frame, rank(group_entities(frame, "pupil"), "asc", limit))


def _with_identity(frame: pd.DataFrame, ranked: Sequence[RankedEntity]) -> List[Dict[str, Any]]:
    if not ranked:
        return []
    identity = frame.drop_duplicates("pupil_id").set_index("pupil_id")
    rows = []
    for entity in ranked:
        info = identity.loc[entity.key]
        row = entity.to_dict()
        row.update({
            "pupil_id": entity.key,
            "student_login": info["student_login"],
            "surname": info["surname"],
            "name": info["name"],
            "class_code": info["class_code"],
            "track": info["track"],
        })
        rows.append(row)
    return rows


# ── Rank of one pupil ───────────────────────────────────────────────

def class_rank(totals: Dict[int, float], pupil_id: int, eps: float = EPSILON) -> ClassRank:
    """
    Competition rank of one pupil among `totals` ({pupil_id: total}).

    Sorted by total desc, pupil id asc. The rank advances to the current
    position only when a total differs from the previous one by more than
    eps, and the walk stops at the target.
    """
    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    count = len(ordered)
    current_rank = 0
    previous = None
    for position, (pid, total) in enumerate(ordered, start=1):
        if previous is None or abs(total - previous) > eps:
            current_rank = position
        previous = total
        if pid == pupil_id:
            return ClassRank(rank=current_rank, count=count)
    return ClassRank(rank=None, count=count)


def class_rank_for_exam(frame: pd.DataFrame, pupil_id: int,
                        class_code: str, exam_id: int) -> ClassRank:
    """Rank by exam total among pupils of the same class who sat the exam."""
    cohort = frame[(frame["class_code"] == class_code) & (frame["exam_id"] == exam_id)]
    totals = {int(pid): float(total) for pid, total in cohort.groupby("pupil_id")["score"].sum().items()}
    return class_rank(totals, pupil_id)
