"""
fetcher.py — Result Fetcher: the read-only source of result rows.

A ResultStore holds one normalized results table (see parser.py) and answers
fetch(predicates) with the matching rows. Predicates are structured
(field, op, value) triples composed into a conjunction; there is no query
string anywhere. Loading problems and malformed rows surface as a single
DataUnavailable error and nothing is computed from a partial table.
"""

import os
from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from core.logging import get_logger
from core.parser import CANONICAL_COLUMNS, normalize_results, parse_upload
from core.scope import ReportScope

logger = get_logger(__name__)

# Undated exams sort as "latest possible". Kept inside the datetime64[ns] range.
FAR_FUTURE = pd.Timestamp.max.floor("D")


class DataUnavailable(Exception):
    """The results source could not be read or returned malformed rows."""


@dataclass(frozen=True)
class ResultRecord:
    pupil_id: int
    subject_id: int
    exam_id: int
    score: float
    max_points: float


@dataclass(frozen=True)
class Predicate:
    field: str
    op: str
    value: Any


def _as_compare_value(series: pd.Series, value: Any) -> Any:
    if pd.api.types.is_datetime64_any_dtype(series) and isinstance(value, (date, str)):
        return pd.Timestamp(value)
    return value


_OPS: Dict[str, Callable[[pd.Series, Any], pd.Series]] = {
    "eq": lambda s, v: s == v,
    "ne": lambda s, v: s != v,
    "ge": lambda s, v: s >= v,
    "le": lambda s, v: s <= v,
    "in": lambda s, v: s.isin(list(v)),
    "not_in": lambda s, v: ~s.isin(list(v)),
}


def scope_predicates(scope: ReportScope, exclude: Iterable[str] = ()) -> List[Predicate]:
    """
    Translate a ReportScope into predicates, skipping the named scope keys.

    exclude=("exam_id",) yields the same slice without the exam restriction,
    which is what latest-exam-pair selection needs.
    """
    skip = set(exclude)
    predicates: List[Predicate] = []
    if scope.academic_year and "academic_year" not in skip:
        predicates.append(Predicate("academic_year", "eq", scope.academic_year))
    if scope.term and "term" not in skip:
        predicates.append(Predicate("term", "eq", scope.term))
    if scope.exam_id and "exam_id" not in skip:
        predicates.append(Predicate("exam_id", "eq", scope.exam_id))
    if scope.subject_id and "subject_id" not in skip:
        predicates.append(Predicate("subject_id", "eq", scope.subject_id))
    if scope.class_code and "class_code" not in skip:
        predicates.append(Predicate("class_code", "eq", scope.class_code))
    if scope.track and "track" not in skip:
        predicates.append(Predicate("track", "eq", scope.track))
    if scope.date_from and "date_from" not in skip:
        predicates.append(Predicate("exam_date", "ge", scope.date_from))
    if scope.date_to and "date_to" not in skip:
        predicates.append(Predicate("exam_date", "le", scope.date_to))
    return predicates


def _empty_frame() -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype=object) for col in CANONICAL_COLUMNS})
    for col in ["pupil_id", "subject_id", "exam_id"]:
        frame[col] = frame[col].astype("int64")
    for col in ["score", "max_points"]:
        frame[col] = frame[col].astype(float)
    for col in ["term", "class_group"]:
        frame[col] = frame[col].astype("Int64")
    frame["exam_date"] = frame["exam_date"].astype("datetime64[ns]")
    return frame


class ResultStore:
    """Read-only results table with predicate-based fetches."""

    def __init__(self, frame: pd.DataFrame, source: str = "memory"):
        self._frame = frame
        self.source = source

    @classmethod
    def from_records(cls, records: Sequence[Dict[str, Any]], source: str = "payload") -> "ResultStore":
        if not records:
            return cls(_empty_frame(), source=source)
        try:
            frame = normalize_results(pd.DataFrame(list(records)))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Rejected results from %s: %s", source, e)
            raise DataUnavailable(f"Results from {source} are malformed: {e}") from e
        return cls(frame, source=source)

    @classmethod
    def from_file(cls, path: str) -> "ResultStore":
        try:
            sheets = parse_upload(path)
            raw = pd.concat(list(sheets.values()), ignore_index=True)
            frame = normalize_results(raw)
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("Could not load results file %s: %s", path, e)
            raise DataUnavailable(f"Results file '{path}' could not be loaded: {e}") from e
        logger.info("Loaded %d result rows from %s", len(frame), path)
        return cls(frame, source=str(path))

    def __len__(self) -> int:
        return len(self._frame)

    def fetch(self, predicates: Iterable[Predicate] = ()) -> pd.DataFrame:
        """Rows matching every predicate, as an independent copy."""
        mask = pd.Series(True, index=self._frame.index)
        for pred in predicates:
            if pred.field not in self._frame.columns:
                raise DataUnavailable(f"Unknown results field '{pred.field}'.")
            if pred.op not in _OPS:
                raise DataUnavailable(f"Unsupported predicate operator '{pred.op}'.")
            series = self._frame[pred.field]
            result = _OPS[pred.op](series, _as_compare_value(series, pred.value))
            mask &= result.fillna(False).astype(bool)
        return self._frame.loc[mask].copy()

    def fetch_scope(self, scope: ReportScope, exclude: Iterable[str] = (),
                    extra: Iterable[Predicate] = ()) -> pd.DataFrame:
        return self.fetch(scope_predicates(scope, exclude) + list(extra))

    def records(self, predicates: Iterable[Predicate] = ()) -> List[ResultRecord]:
        frame = self.fetch(predicates)
        return [
            ResultRecord(int(r.pupil_id), int(r.subject_id), int(r.exam_id),
                         float(r.score), float(r.max_points))
            for r in frame.itertuples(index=False)
        ]

    # ── Lookups ─────────────────────────────────────────────────────

    def pupil(self, pupil_id: int) -> Optional[Dict[str, Any]]:
        rows = self._frame[self._frame["pupil_id"] == pupil_id]
        if rows.empty:
            return None
        first = rows.iloc[0]
        return {
            "id": int(pupil_id),
            "student_login": first["student_login"],
            "surname": first["surname"],
            "name": first["name"],
            "middle_name": first["middle_name"],
            "class_code": first["class_code"],
            "track": first["track"],
        }

    def subject(self, subject_id: int) -> Optional[Dict[str, Any]]:
        rows = self._frame[self._frame["subject_id"] == subject_id]
        if rows.empty:
            return None
        first = rows.iloc[0]
        return {
            "id": int(subject_id),
            "code": first["subject_code"],
            "name": first["subject_name"],
            "max_points": float(first["max_points"]),
        }


@lru_cache(maxsize=4)
def _load_cached(path: str, mtime: float) -> ResultStore:
    return ResultStore.from_file(path)


def load_store(path: str) -> ResultStore:
    """Load (or reuse) the store for a results file; reloaded when it changes."""
    try:
        mtime = os.path.getmtime(path)
    except OSError as e:
        logger.warning("Results file %s is not accessible: %s", path, e)
        raise DataUnavailable(f"Results file '{path}' is not accessible.") from e
    return _load_cached(path, mtime)
