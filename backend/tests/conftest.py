"""
Shared fixtures: the bundled sample results, in-memory stores built from a
few hand-written rows, and an API client bound to the sample store.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.fetcher import ResultStore

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), "..", "sample_data", "sample_results.csv")

DEFAULT_ROW = {
    "student_login": "",
    "surname": "",
    "name": "",
    "middle_name": "",
    "class_code": "10A",
    "track": "Aniq fanlar",
    "class_group": 1,
    "subject_code": "",
    "subject_name": "",
    "max_points": 40,
    "exam_name": "",
    "exam_date": "",
    "academic_year": "2024-2025",
    "term": 1,
}


def result_row(pupil_id, subject_id, exam_id, score, **fields):
    """One result record with sensible defaults for the descriptive columns."""
    row = dict(DEFAULT_ROW)
    row.update({
        "pupil_id": pupil_id,
        "subject_id": subject_id,
        "exam_id": exam_id,
        "score": score,
        "surname": f"Surname{pupil_id}",
        "name": f"Name{pupil_id}",
        "student_login": f"pupil{pupil_id}",
        "subject_code": f"S{subject_id}",
        "subject_name": f"Subject {subject_id}",
        "exam_name": f"Exam {exam_id}",
    })
    row.update(fields)
    return row


@pytest.fixture
def make_store():
    """Factory: build a ResultStore from result_row() dicts."""
    def _make(rows):
        return ResultStore.from_records(rows, source="test")
    return _make


@pytest.fixture
def row():
    return result_row


@pytest.fixture(scope="session")
def sample_store():
    return ResultStore.from_file(SAMPLE_CSV)


@pytest.fixture
def client(sample_store):
    """API client whose report routes read the sample results."""
    from fastapi.testclient import TestClient

    from main import app
    from routes.reports import get_store

    app.dependency_overrides[get_store] = lambda: sample_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
