"""
exports.py — CSV exports of the report tables.

Four kinds, each a header row plus one line per record:
- subject:  per-subject statistics
- pupils:   per-pupil statistics
- classes:  per-class (and track) statistics
- raw:      every result row in the slice

Output is UTF-8 with a byte order mark, comma separated, "\\n" line endings.
A field is wrapped in double quotes when it holds a comma, a double quote,
whitespace or a backslash. Inner quotes are doubled unless a backslash
precedes them (backslash is the escape character, as in PHP fputcsv).
Lines are yielded one at a time so a route can stream them.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import pandas as pd

from core.fetcher import FAR_FUTURE
from core.logging import get_logger
from core.stats import class_table, pupil_table, subject_table

logger = get_logger(__name__)

BOM = "\ufeff"

HEADERS: Dict[str, List[str]] = {
    "subject": ["subject_code", "subject_name", "n", "mean", "median", "stdev", "pass_rate"],
    "pupils": ["student_login", "surname", "name", "class_code", "track", "n", "mean", "min", "max", "pass_rate"],
    "classes": ["class_code", "track", "n", "mean", "stdev", "pass_rate"],
    "raw": [
        "academic_year", "term", "exam_name", "exam_date", "class_code", "track",
        "student_login", "surname", "name", "subject_code", "subject_name", "score",
    ],
}

FILE_STEMS = {
    "subject": "subject_summary",
    "pupils": "pupil_summary",
    "classes": "class_summary",
    "raw": "raw_results",
}

EXPORT_KINDS = list(HEADERS.keys())

_NEEDS_QUOTES = set(',"\\ \t\r\n')


# ── Formatting ──────────────────────────────────────────────────────

def _fixed(value: Any, digits: int) -> str:
    if value is None or pd.isna(value):
        return ""
    return f"{float(value):.{digits}f}"


def _text(value: Any) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value)


def csv_field(value: str) -> str:
    if not value or not any(ch in _NEEDS_QUOTES for ch in value):
        return value
    out = ['"']
    escaped = False
    for ch in value:
        if ch == "\\":
            escaped = True
        elif not escaped and ch == '"':
            out.append('"')
        else:
            escaped = False
        out.append(ch)
    out.append('"')
    return "".join(out)


def csv_line(fields: List[str]) -> str:
    return ",".join(csv_field(f) for f in fields) + "\n"


def export_filename(kind: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{FILE_STEMS[kind]}_{stamp}.csv"


# ── Row producers ───────────────────────────────────────────────────

def _subject_rows(frame: pd.DataFrame, pass_threshold: float) -> Iterator[List[str]]:
    for r in subject_table(frame, pass_threshold).itertuples(index=False):
        yield [
            _text(r.subject_code), _text(r.subject_name), str(int(r.n)),
            _fixed(r.mean, 2), _fixed(0.0 if pd.isna(r.median) else r.median, 2),
            _fixed(r.stdev, 2), _fixed(r.pass_rate, 1),
        ]


def _pupil_rows(frame: pd.DataFrame, pass_threshold: float) -> Iterator[List[str]]:
    for r in pupil_table(frame, pass_threshold).itertuples(index=False):
        yield [
            _text(r.student_login), _text(r.surname), _text(r.name),
            _text(r.class_code), _text(r.track), str(int(r.n)),
            _fixed(r.mean, 2), _fixed(r.min, 2), _fixed(r.max, 2), _fixed(r.pass_rate, 1),
        ]


def _class_rows(frame: pd.DataFrame, pass_threshold: float) -> Iterator[List[str]]:
    for r in class_table(frame, pass_threshold).itertuples(index=False):
        yield [
            _text(r.class_code), _text(r.track), str(int(r.n)),
            _fixed(r.mean, 2), _fixed(r.stdev, 2), _fixed(r.pass_rate, 1),
        ]


def raw_rows_ordered(frame: pd.DataFrame) -> pd.DataFrame:
    """Newest exam first (undated exams lead), then class, surname, name, subject."""
    ordered = frame.assign(_order_date=frame["exam_date"].fillna(FAR_FUTURE))
    return ordered.sort_values(
        ["_order_date", "exam_id", "class_code", "surname", "name", "subject_name"],
        ascending=[False, False, True, True, True, True],
        kind="mergesort",
    )


def _raw_rows(frame: pd.DataFrame, pass_threshold: float) -> Iterator[List[str]]:
    for r in raw_rows_ordered(frame).itertuples(index=False):
        yield [
            _text(r.academic_year), _text(r.term), _text(r.exam_name),
            "" if pd.isna(r.exam_date) else r.exam_date.strftime("%Y-%m-%d"),
            _text(r.class_code), _text(r.track), _text(r.student_login),
            _text(r.surname), _text(r.name), _text(r.subject_code),
            _text(r.subject_name), _fixed(r.score, 2),
        ]


_PRODUCERS: Dict[str, Callable[[pd.DataFrame, float], Iterator[List[str]]]] = {
    "subject": _subject_rows,
    "pupils": _pupil_rows,
    "classes": _class_rows,
    "raw": _raw_rows,
}


def iter_csv(kind: str, frame: pd.DataFrame, pass_threshold: float) -> Iterator[str]:
    """
    Yield the export line by line, BOM first.

    Raises KeyError for an unknown kind before anything is yielded.
    """
    producer = _PRODUCERS[kind]
    logger.info("Starting %s export", kind, extra={"kind": kind, "rows": len(frame)})

    def _lines() -> Iterator[str]:
        yield BOM + csv_line(HEADERS[kind])
        for fields in producer(frame, pass_threshold):
            yield csv_line(fields)

    return _lines()


def render_csv(kind: str, frame: pd.DataFrame, pass_threshold: float) -> str:
    return "".join(iter_csv(kind, frame, pass_threshold))
