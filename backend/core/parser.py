"""
parser.py — Results table ingestion.

Supports:
- CSV files
- Excel (.xlsx, .xls) — every non-empty sheet is read and stacked
- ODS (OpenDocument Spreadsheet)
- Fuzzy column name mapping onto the canonical results schema
- Type coercion with strict checks on ids, scores and dates
"""

from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from core import config

# Canonical column → accepted header variations (case-insensitive)
COLUMN_ALIASES = {
    "pupil_id": ["pupil_id", "pupil id", "student_id", "studentid", "student id"],
    "student_login": ["student_login", "login", "student login", "username"],
    "surname": ["surname", "last_name", "last name", "family_name"],
    "name": ["name", "first_name", "first name", "given_name"],
    "middle_name": ["middle_name", "middle name", "patronymic"],
    "class_code": ["class_code", "class code", "class", "class_name", "grade"],
    "track": ["track", "stream", "profile"],
    "class_group": ["class_group", "class group", "group"],
    "subject_id": ["subject_id", "subject id"],
    "subject_code": ["subject_code", "subject code", "code"],
    "subject_name": ["subject_name", "subject name", "subject"],
    "max_points": ["max_points", "max points", "max_score", "max score", "out_of"],
    "exam_id": ["exam_id", "exam id"],
    "exam_name": ["exam_name", "exam name", "exam", "assessment"],
    "exam_date": ["exam_date", "exam date", "date"],
    "academic_year": ["academic_year", "academic year", "year"],
    "term": ["term", "semester"],
    "score": ["score", "points", "mark", "marks", "result"],
}

REQUIRED_COLUMNS = ["pupil_id", "subject_id", "exam_id", "score"]
ID_COLUMNS = ["pupil_id", "subject_id", "exam_id"]
TEXT_COLUMNS = [
    "student_login", "surname", "name", "middle_name", "class_code", "track",
    "subject_code", "subject_name", "exam_name", "academic_year",
]
CANONICAL_COLUMNS = list(COLUMN_ALIASES.keys())


def parse_upload(file_path: str) -> Dict[str, pd.DataFrame]:
    """
    Parse a results file and return a dict of {sheet_name: DataFrame}.
    For CSV files, returns {"Sheet1": df}. All cells are read as strings.
    """
    path = Path(file_path)
    ext = path.suffix.lower()

    if ext == ".csv":
        df = pd.read_csv(file_path, dtype=str, encoding="utf-8-sig")
        return {"Sheet1": df}

    elif ext in (".xlsx", ".xls", ".ods"):
        engine = {"xlsx": "openpyxl", "xls": "xlrd", "ods": "odf"}[ext.lstrip(".")]
        xls = pd.ExcelFile(file_path, engine=engine)
        sheets = {}
        for sheet_name in xls.sheet_names:
            df = pd.read_excel(xls, sheet_name=sheet_name, dtype=str)
            # Skip empty sheets
            if not df.empty and len(df.columns) > 1:
                sheets[sheet_name] = df
        if not sheets:
            raise ValueError(f"No valid sheets found in {path.name}.")
        return sheets

    else:
        raise ValueError(f"Unsupported file type: {ext}")


def suggest_column_mapping(df: pd.DataFrame) -> Dict[str, Optional[str]]:
    """
    Suggest a mapping from canonical field names to actual column names.
    Returns: { canonical_field: actual_column_name_or_None }
    """
    cols_lower = {str(c).lower().strip(): c for c in df.columns}
    mapping: Dict[str, Optional[str]] = {}
    claimed = set()

    for field, aliases in COLUMN_ALIASES.items():
        matched = None
        for alias in aliases:
            col = cols_lower.get(alias)
            if col is not None and col not in claimed:
                matched = col
                break
        if matched is not None:
            claimed.add(matched)
        mapping[field] = matched

    return mapping


def validate_data(df: pd.DataFrame) -> List[Dict]:
    """
    Check a raw (string-typed) results table and return the issues found.
    Critical issues make the table unusable for reporting.
    """
    issues = []
    mapping = suggest_column_mapping(df)

    for field in REQUIRED_COLUMNS:
        if mapping.get(field) is None:
            issues.append({
                "type": "missing_column",
                "severity": "critical",
                "message": f"Required column '{field}' not found. "
                           f"Expected one of: {COLUMN_ALIASES[field]}",
            })
    if issues:
        return issues

    for field in ID_COLUMNS + ["score"]:
        raw = df[mapping[field]]
        values = pd.to_numeric(raw, errors="coerce")
        bad = values.isna()
        if field in ID_COLUMNS:
            bad = bad | (values.fillna(0) % 1 != 0) | (values.fillna(1) < 1)
        bad_count = int(bad.sum())
        if bad_count > 0:
            issues.append({
                "type": f"invalid_{field}",
                "severity": "critical",
                "message": f"{bad_count} rows have a missing or non-numeric '{field}'.",
            })

    date_col = mapping.get("exam_date")
    if date_col is not None:
        raw = df[date_col].fillna("").astype(str).str.strip()
        parsed = pd.to_datetime(raw.where(raw != ""), format="ISO8601", errors="coerce")
        bad_count = int(((raw != "") & parsed.isna()).sum())
        if bad_count > 0:
            issues.append({
                "type": "invalid_exam_date",
                "severity": "critical",
                "message": f"{bad_count} rows have an exam date that is not YYYY-MM-DD.",
            })

    if len(df) > 0:
        scores = pd.to_numeric(df[mapping["score"]], errors="coerce").dropna()
        if (scores < 0).any():
            issues.append({
                "type": "negative_scores",
                "severity": "warning",
                "message": "Some scores are negative — likely data entry errors.",
            })

    return issues


def normalize_results(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename columns onto the canonical schema and coerce their types.

    Raises ValueError listing every critical issue when the table is
    malformed; nothing is dropped or guessed row by row.
    """
    critical = [i for i in validate_data(df) if i["severity"] == "critical"]
    if critical:
        raise ValueError("; ".join(i["message"] for i in critical))

    mapping = suggest_column_mapping(df)
    rename_map = {src: field for field, src in mapping.items() if src is not None}
    out = df[list(rename_map.keys())].rename(columns=rename_map).copy()

    for col in ID_COLUMNS:
        out[col] = pd.to_numeric(out[col]).astype("int64")
    out["score"] = pd.to_numeric(out["score"]).astype(float)

    if "max_points" in out.columns:
        out["max_points"] = pd.to_numeric(out["max_points"], errors="coerce").fillna(config.MAX_SCORE)
    else:
        out["max_points"] = config.MAX_SCORE

    for col in ["term", "class_group"]:
        if col in out.columns:
            out[col] = pd.to_numeric(out[col], errors="coerce").round().astype("Int64")
        else:
            out[col] = pd.Series(pd.NA, index=out.index, dtype="Int64")

    if "exam_date" in out.columns:
        raw = out["exam_date"].fillna("").astype(str).str.strip()
        out["exam_date"] = pd.to_datetime(raw.where(raw != ""), format="ISO8601", errors="coerce").dt.normalize()
    else:
        out["exam_date"] = pd.Series(pd.NaT, index=out.index, dtype="datetime64[ns]")

    for col in TEXT_COLUMNS:
        if col in out.columns:
            out[col] = out[col].fillna("").astype(str).str.strip()
            out.loc[out[col].str.lower() == "nan", col] = ""
        else:
            out[col] = ""

    return out[CANONICAL_COLUMNS].reset_index(drop=True)
