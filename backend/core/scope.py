"""
scope.py — Filter resolution for every report.

Turns raw request parameters (query string values, CLI flags, payload dicts)
into a typed ReportRequest:
- ReportScope: year / term / exam / subject / class / track / date range
- Thresholds: pass / good / excellent cut-points on the 0..40 scale
- risk tuning (min rows per pupil, pass-rate floor) and list limits

Malformed values never raise: each field is parsed on its own and falls back
to "absent" (or the configured default), so a report always renders.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from core import config

_DIGITS = re.compile(r"^\d+$")
_DECIMAL = re.compile(r"^\d+(\.\d+)?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ── Types ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReportScope:
    academic_year: Optional[str] = None
    term: Optional[int] = None
    exam_id: Optional[int] = None
    subject_id: Optional[int] = None
    class_code: Optional[str] = None
    track: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in ("date_from", "date_to"):
            if out[key] is not None:
                out[key] = out[key].isoformat()
        return out

    def active_filters(self) -> List[Dict[str, Any]]:
        """Filters currently narrowing the slice, for display chips."""
        labels = {
            "academic_year": "Year",
            "term": "Term",
            "exam_id": "Exam ID",
            "subject_id": "Subject ID",
            "class_code": "Class",
            "track": "Track",
            "date_from": "From",
            "date_to": "To",
        }
        chips = []
        for key, value in self.to_dict().items():
            if value is not None and value != "":
                chips.append({"key": key, "label": f"{labels[key]}: {value}"})
        return chips


@dataclass(frozen=True)
class Thresholds:
    pass_score: float = config.PASS_SCORE
    good: float = config.GOOD_SCORE
    excellent: float = config.EXCELLENT_SCORE

    def to_dict(self) -> Dict[str, float]:
        return {"pass": self.pass_score, "good": self.good, "excellent": self.excellent}


@dataclass(frozen=True)
class ReportRequest:
    scope: ReportScope = field(default_factory=ReportScope)
    thresholds: Thresholds = field(default_factory=Thresholds)
    risk_min_n: int = 2
    risk_pass_pct: float = config.RISK_PASS_PCT
    list_limit: int = 24
    pupil_id: Optional[int] = None
    baseline_exam_id: Optional[int] = None
    current_exam_id: Optional[int] = None


# ── Field parsers ───────────────────────────────────────────────────

def _raw(params: Mapping[str, Any], key: str) -> Optional[str]:
    value = params.get(key)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[-1] if value else None
        if value is None:
            return None
    value = str(value).strip()
    return value or None


def parse_int(params: Mapping[str, Any], key: str,
              min_value: Optional[int] = None,
              max_value: Optional[int] = None) -> Optional[int]:
    """Pure-digit strings only; out-of-range values count as absent."""
    value = params.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    else:
        text = _raw(params, key)
        if text is None or not _DIGITS.match(text):
            return None
        number = int(text)
    if min_value is not None and number < min_value:
        return None
    if max_value is not None and number > max_value:
        return None
    return number


def parse_float(params: Mapping[str, Any], key: str,
                low: float, high: float) -> Optional[float]:
    """Unsigned decimal with '.' or ',' separator, clamped into [low, high]."""
    value = params.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value < 0:
            return None
        number = float(value)
    else:
        text = _raw(params, key)
        if text is None:
            return None
        text = text.replace(",", ".")
        if not _DECIMAL.match(text):
            return None
        number = float(text)
    return max(low, min(high, number))


def parse_text(params: Mapping[str, Any], key: str, max_len: int = 120) -> Optional[str]:
    text = _raw(params, key)
    if text is None:
        return None
    return text[:max_len]


def parse_choice(params: Mapping[str, Any], key: str, choices: List[Any]) -> Optional[Any]:
    text = _raw(params, key)
    if text is None:
        return None
    for choice in choices:
        if text == str(choice):
            return choice
    return None


def parse_date(params: Mapping[str, Any], key: str) -> Optional[date]:
    value = params.get(key)
    if isinstance(value, date):
        return value
    text = parse_text(params, key, 20)
    if text is None or not _ISO_DATE.match(text):
        return None
    year, month, day = (int(part) for part in text.split("-"))
    try:
        return date(year, month, day)
    except ValueError:
        return None


# ── Resolution ──────────────────────────────────────────────────────

def resolve(raw_params: Mapping[str, Any]) -> ReportScope:
    """Build a ReportScope from raw parameters; never raises."""
    params = raw_params or {}
    date_from = parse_date(params, "date_from")
    date_to = parse_date(params, "date_to")
    if date_from and date_to and date_from > date_to:
        date_from = date_to = None

    return ReportScope(
        academic_year=parse_text(params, "academic_year", 12),
        term=parse_choice(params, "term", [1, 2]),
        exam_id=parse_int(params, "exam_id", min_value=1),
        subject_id=parse_int(params, "subject_id", min_value=1),
        class_code=parse_text(params, "class_code", 30),
        track=parse_choice(params, "track", config.KNOWN_TRACKS),
        date_from=date_from,
        date_to=date_to,
    )


def resolve_thresholds(raw_params: Mapping[str, Any],
                       max_score: float = config.MAX_SCORE) -> Thresholds:
    """
    Parse pass/good/excellent and force pass <= good <= excellent.

    Lower bounds are raised to meet the one below them; upper values are
    never lowered to make room.
    """
    params = raw_params or {}
    defaults = Thresholds()
    pass_score = parse_float(params, "pass", 0.0, max_score)
    good = parse_float(params, "good", 0.0, max_score)
    excellent = parse_float(params, "excellent", 0.0, max_score)

    pass_score = defaults.pass_score if pass_score is None else pass_score
    good = defaults.good if good is None else good
    excellent = defaults.excellent if excellent is None else excellent

    pass_score = min(pass_score, max_score)
    good = min(max(good, pass_score), max_score)
    excellent = min(max(excellent, good), max_score)
    return Thresholds(pass_score=pass_score, good=good, excellent=excellent)


def default_risk_min_n(scope: ReportScope) -> int:
    """One row is enough evidence once the slice is a single subject or exam."""
    return 1 if (scope.subject_id or scope.exam_id) else 2


def resolve_request(raw_params: Mapping[str, Any]) -> ReportRequest:
    """Resolve the full request: scope, thresholds, risk tuning, list sizes."""
    params = raw_params or {}
    scope = resolve(params)
    thresholds = resolve_thresholds(params)

    risk_min_n = parse_int(params, "risk_min_n", 1, 999)
    if risk_min_n is None:
        risk_min_n = default_risk_min_n(scope)
    risk_pass_pct = parse_float(params, "risk_pass_pct", 0.0, 100.0)
    if risk_pass_pct is None:
        risk_pass_pct = config.RISK_PASS_PCT

    baseline_exam_id = parse_int(params, "baseline_exam_id", min_value=1)
    current_exam_id = parse_int(params, "current_exam_id", min_value=1)
    if baseline_exam_id is not None and baseline_exam_id == current_exam_id:
        baseline_exam_id = None

    return ReportRequest(
        scope=scope,
        thresholds=thresholds,
        risk_min_n=risk_min_n,
        risk_pass_pct=risk_pass_pct,
        list_limit=12 if scope.class_code else 24,
        pupil_id=parse_int(params, "pupil_id", min_value=1),
        baseline_exam_id=baseline_exam_id,
        current_exam_id=current_exam_id,
    )
