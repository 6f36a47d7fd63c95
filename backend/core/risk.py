"""
risk.py — At-risk pupil classifier.

A pupil (or any entity) is flagged with exactly one reason, checked in this
fixed priority:
- LowMean: mean below the pass threshold
- ZeroScore: any single score at or below zero
- LowPassRate: pass rate below the risk pass-rate floor

Entities with fewer than min_n results are never flagged. min_n defaults to 1
when the scope already names a single subject or exam, else 2.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from core.stats import ScoreStatistics, _safe_float, _sanitize, aggregate


class RiskReason(str, Enum):
    LOW_MEAN = "LowMean"
    ZERO_SCORE = "ZeroScore"
    LOW_PASS_RATE = "LowPassRate"


# ── Reason Library ──────────────────────────────────────────────────

REASON_DETAILS = {
    RiskReason.LOW_MEAN: "Average of {mean:.2f} is below the pass score of {pass_score:.1f}.",
    RiskReason.ZERO_SCORE: "At least one result is zero; check for a missed exam or an entry error.",
    RiskReason.LOW_PASS_RATE: "Passed {pass_rate:.1f}% of results, under the {risk_pass_pct:.0f}% floor.",
}


@dataclass(frozen=True)
class RiskFlag:
    entity_id: Any
    reason: RiskReason
    stats: ScoreStatistics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": _sanitize(self.entity_id),
            "reason": self.reason.value,
            "stats": self.stats.to_dict(),
        }


def classify(stats: ScoreStatistics, min_n: int, pass_threshold: float,
             risk_pass_pct: float, scores: Optional[Iterable[float]] = None,
             entity_id: Any = None) -> Optional[RiskFlag]:
    """
    Return the first matching RiskFlag, or None.

    `scores` are the raw scores behind `stats`; the ZeroScore check needs them
    because a mean cannot reveal a single zero.
    """
    if stats.n == 0 or stats.n < min_n:
        return None
    if stats.mean is not None and stats.mean < pass_threshold:
        return RiskFlag(entity_id, RiskReason.LOW_MEAN, stats)
    if scores is not None and any(float(s) <= 0 for s in scores):
        return RiskFlag(entity_id, RiskReason.ZERO_SCORE, stats)
    if stats.pass_rate is not None and stats.pass_rate < risk_pass_pct:
        return RiskFlag(entity_id, RiskReason.LOW_PASS_RATE, stats)
    return None


def at_risk_pupils(frame: pd.DataFrame, min_n: int, pass_threshold: float,
                   risk_pass_pct: float, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Flag every pupil in the slice.

    Ordered mean asc, pass_rate asc, n desc, pupil id asc; the limit is
    applied after ordering.
    """
    if frame.empty:
        return []

    flagged = []
    for pupil_id, group in frame.groupby("pupil_id", sort=True):
        scores = group["score"].tolist()
        stats = aggregate(scores, pass_threshold)
        flag = classify(stats, min_n, pass_threshold, risk_pass_pct, scores, entity_id=int(pupil_id))
        if flag is None:
            continue
        first = group.iloc[0]
        detail = REASON_DETAILS[flag.reason].format(
            mean=stats.mean, pass_score=pass_threshold,
            pass_rate=stats.pass_rate, risk_pass_pct=risk_pass_pct,
        )
        flagged.append({
            "pupil_id": int(pupil_id),
            "student_login": first["student_login"],
            "surname": first["surname"],
            "name": first["name"],
            "class_code": first["class_code"],
            "track": first["track"],
            "n": stats.n,
            "mean": stats.mean,
            "min": float(min(scores)),
            "pass_rate": stats.pass_rate,
            "reason": flag.reason.value,
            "detail": detail,
        })

    flagged.sort(key=lambda r: (r["mean"], r["pass_rate"], -r["n"], r["pupil_id"]))
    if limit is not None:
        flagged = flagged[:limit]
    for row in flagged:
        for key in ("mean", "min", "pass_rate"):
            row[key] = _safe_float(row[key])
    return _sanitize(flagged)
