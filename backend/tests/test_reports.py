"""
Tests for core/report_builder.py and the API routes — report sections,
drill-downs, Excel export and HTTP error mapping.
"""

import os
import sys

import pytest
from openpyxl import load_workbook

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core import config
from core.report_builder import (
    build_report,
    compare_report,
    generate_excel_export,
    pupil_profile,
    pupil_scores,
    subject_trend,
)
from core.scope import ReportScope, Thresholds, resolve_request

SCHOOL_NAME = "Test School"


def _payload(rows, **filters):
    return {"data": rows, "filters": filters}


@pytest.fixture
def posted_rows(row):
    return [
        row(1, 1, 1, 30, exam_date="2024-10-01"),
        row(1, 2, 1, 34, exam_date="2024-10-01"),
        row(2, 1, 1, 10, exam_date="2024-10-01"),
        row(2, 2, 1, 12, exam_date="2024-10-01"),
        row(3, 1, 1, 26, exam_date="2024-10-01", class_code="10B"),
        row(3, 2, 1, 28, exam_date="2024-10-01", class_code="10B"),
    ]


# ── Report builder ──────────────────────────────────────────────────

class TestBuildReport:
    """Tests for build_report on the sample results."""

    @pytest.fixture
    def report(self, sample_store):
        return build_report(sample_store, resolve_request({}))

    def test_sections_present(self, report):
        for key in ("kpis", "distribution", "subjects", "classes", "comparison",
                    "at_risk", "top_pupils", "bottom_pupils", "trend", "exam_deltas"):
            assert key in report
        assert report["ok"] is True
        assert report["thresholds"] == {"pass": 18.4, "good": 24.4, "excellent": 34.4}

    def test_at_risk_excluded_from_top(self, report):
        at_risk = {r["pupil_id"] for r in report["at_risk"]}
        assert at_risk == {5, 6}
        assert [r["pupil_id"] for r in report["top_pupils"]] == [1, 4]

    def test_comparison_uses_latest_pair(self, report):
        comparison = report["comparison"]
        assert comparison["current_exam"]["exam_id"] == 4
        assert comparison["baseline_exam"]["exam_id"] == 3

    def test_subject_rows_carry_delta_and_band(self, report):
        maths = [s for s in report["subjects"] if s["subject_code"] == "MATH"][0]
        assert maths["delta"]["entity_id"] == 1
        assert maths["band"] in {"danger", "warning", "primary", "success"}

    def test_distribution_covers_every_score(self, report):
        assert sum(b["n"] for b in report["distribution"]) == 39

    def test_trend_skips_small_exam(self, report):
        assert [p["exam_id"] for p in report["trend"]] == [1, 2, 3]

    def test_exam_scope_has_no_comparison(self, sample_store):
        report = build_report(sample_store, resolve_request({"exam_id": "3"}))
        assert report["comparison"]["current_exam"] is None
        assert report["kpis"]["n_results"] == 12

    def test_explicit_pair(self, sample_store):
        request = resolve_request({"current_exam_id": "2", "baseline_exam_id": "1"})
        comparison = build_report(sample_store, request)["comparison"]
        assert comparison["current_exam"]["exam_id"] == 2
        maths = [r for r in comparison["subjects"] if r["entity_id"] == 1][0]
        # (32+25+20+28+12+0)/6 -> (35+24+19+30+14+22)/6
        assert maths["delta_points"] == pytest.approx(4.5)

    def test_class_scope_shrinks_lists(self, sample_store):
        report = build_report(sample_store, resolve_request({"class_code": "10A"}))
        assert report["list_limit"] == 12
        assert {c["class_code"] for c in report["classes"]} == {"10A"}

    def test_empty_slice(self, sample_store):
        report = build_report(sample_store, resolve_request({"class_code": "11Z"}))
        assert report["kpis"]["n_results"] == 0
        assert report["subjects"] == []
        assert report["at_risk"] == []


class TestDrillDowns:
    """Tests for pupil_scores, subject_trend and pupil_profile."""

    def test_pupil_scores_undated_first(self, sample_store):
        result = pupil_scores(sample_store, 1, ReportScope(), Thresholds())
        assert result["pupil"]["surname"] == "Karimov"
        assert len(result["rows"]) == 7
        assert result["rows"][0]["exam_id"] == 4
        assert result["rows"][0]["exam_date"] is None

    def test_pupil_scores_ignores_class_filter(self, sample_store):
        result = pupil_scores(sample_store, 1, ReportScope(class_code="10B", exam_id=3), Thresholds())
        assert [r["exam_id"] for r in result["rows"]] == [3, 3]
        assert result["scope"] == {"academic_year": None, "term": None, "exam_id": 3}

    def test_pupil_scores_unknown(self, sample_store):
        assert pupil_scores(sample_store, 99, ReportScope(), Thresholds()) is None

    def test_subject_trend(self, sample_store):
        result = subject_trend(sample_store, 3, ReportScope(), Thresholds())
        assert result["subject"]["code"] == "BIO"
        assert [r["exam_id"] for r in result["rows"]] == [1, 2, 3]
        assert result["rows"][0]["mean_score"] == pytest.approx(24.67)
        assert "subject_id" not in result["scope"]

    def test_subject_trend_unknown(self, sample_store):
        assert subject_trend(sample_store, 99, ReportScope(), Thresholds()) is None

    def test_pupil_profile(self, sample_store):
        profile = pupil_profile(sample_store, 1, resolve_request({}))
        assert [e["exam_id"] for e in profile["exams"]] == [3, 2, 1, 4]
        assert profile["selected_exam"]["exam_id"] == 3
        assert profile["previous_exam"]["exam_id"] == 2
        assert profile["delta_total"]["delta_points"] == 7.5
        assert profile["class_rank"] == {"rank": 1, "count": 3}
        assert profile["pass_rate"] == 100.0
        assert profile["pass_rate_label"] == "Strong"

    def test_pupil_profile_selected_exam(self, sample_store):
        profile = pupil_profile(sample_store, 3, resolve_request({"exam_id": "1"}))
        assert profile["selected_exam"]["exam_id"] == 1
        assert profile["previous_exam"]["exam_id"] == 4
        assert profile["class_rank"] == {"rank": 3, "count": 3}

    def test_pupil_profile_unsat_exam_falls_back_to_latest(self, make_store, row):
        store = make_store([
            row(1, 1, 1, 20, exam_date="2024-10-01"),
            row(1, 1, 2, 26, exam_date="2024-12-01"),
            row(2, 1, 2, 30, exam_date="2024-12-01"),
            row(2, 1, 3, 31, exam_date="2025-03-01"),
        ])
        profile = pupil_profile(store, 1, resolve_request({"exam_id": "3"}))
        assert [e["exam_id"] for e in profile["exams"]] == [2, 1]
        assert profile["selected_exam"]["exam_id"] == 2
        assert profile["previous_exam"]["exam_id"] == 1
        assert profile["delta_total"]["delta_points"] == 6.0
        assert profile["class_rank"] == {"rank": 2, "count": 2}

    def test_pupil_profile_unknown(self, sample_store):
        assert pupil_profile(sample_store, 99, resolve_request({})) is None


class TestCompareReport:
    """Tests for compare_report."""

    def test_class_groups(self, sample_store):
        result = compare_report(sample_store, resolve_request({
            "class_code": "10A", "baseline_exam_id": "1", "current_exam_id": "2",
        }))
        assert result["class_code"] == "10A"
        assert [s["subject_name"] for s in result["subjects"]] == ["Mathematics", "Physics"]
        g1, g2 = result["subjects"][0]["groups"]
        assert [p["pupil_id"] for p in g1["pupils"]] == [1, 3]
        assert [p["pupil_id"] for p in g2["pupils"]] == [2]
        assert g1["avg_a"] == 26.0
        assert g1["avg_b"] == 27.0

    def test_without_class(self, sample_store):
        assert compare_report(sample_store, resolve_request({}))["subjects"] == []


class TestGenerateExcelExport:
    """Test Excel export generation."""

    def test_creates_valid_workbook(self, sample_store, tmp_path):
        path = str(tmp_path / "report.xlsx")
        generate_excel_export(path, sample_store, resolve_request({}), SCHOOL_NAME)
        wb = load_workbook(path)
        assert wb.sheetnames == ["Subjects", "Classes", "Pupils", "At Risk"]
        assert wb["Subjects"].max_row == 4
        assert wb["Pupils"].max_row == 7
        assert wb["Subjects"]["A1"].value == "subject_code"

    def test_empty_slice(self, sample_store, tmp_path):
        path = str(tmp_path / "empty.xlsx")
        generate_excel_export(path, sample_store, resolve_request({"class_code": "11Z"}), SCHOOL_NAME)
        assert load_workbook(path)["Subjects"].max_row == 1


# ── Report routes ───────────────────────────────────────────────────

class TestReportRoutes:
    """Tests for the GET endpoints over the sample results."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_config(self, client):
        body = client.get("/api/config").json()
        assert body["thresholds"] == {"pass": 18.4, "good": 24.4, "excellent": 34.4}
        assert body["max_score"] == 40.0

    def test_summary(self, client):
        response = client.get("/api/reports/summary", params={"term": "1"})
        assert response.status_code == 200
        assert response.json()["kpis"]["n_results"] == 24

    def test_summary_ignores_bad_filters(self, client):
        response = client.get("/api/reports/summary", params={"term": "7", "exam_id": "abc", "pass": "-3"})
        assert response.status_code == 200
        assert response.json()["kpis"]["n_results"] == 39

    def test_export_csv(self, client):
        response = client.get("/api/reports/export/subject")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "subject_summary_" in response.headers["content-disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")
        assert len(response.content.decode("utf-8-sig").splitlines()) == 4

    def test_export_unknown_kind(self, client):
        assert client.get("/api/reports/export/grades").status_code == 404

    def test_excel(self, client):
        response = client.get("/api/reports/excel")
        assert response.status_code == 200
        assert response.content[:2] == b"PK"

    def test_excel_failure_removes_temp_file(self, client, monkeypatch, tmp_path):
        import tempfile

        from routes import reports

        created = []
        real_mkstemp = tempfile.mkstemp

        def _mkstemp(*args, **kwargs):
            fd, path = real_mkstemp(*args, dir=str(tmp_path), **kwargs)
            created.append(path)
            return fd, path

        def _fail(*args, **kwargs):
            raise RuntimeError("workbook could not be written")

        monkeypatch.setattr(reports.tempfile, "mkstemp", _mkstemp)
        monkeypatch.setattr(reports, "generate_excel_export", _fail)
        with pytest.raises(RuntimeError):
            client.get("/api/reports/excel")
        assert len(created) == 1
        assert not os.path.exists(created[0])

    def test_pupil_scores(self, client):
        assert client.get("/api/reports/pupil-scores").status_code == 400
        assert client.get("/api/reports/pupil-scores", params={"pupil_id": "99"}).status_code == 404
        response = client.get("/api/reports/pupil-scores", params={"pupil_id": "2"})
        assert response.status_code == 200
        assert len(response.json()["rows"]) == 7

    def test_subject_trend(self, client):
        assert client.get("/api/reports/subject-trend").status_code == 400
        response = client.get("/api/reports/subject-trend", params={"subject_id": "1"})
        assert [r["exam_id"] for r in response.json()["rows"]] == [1, 2, 3, 4]

    def test_pupil_profile(self, client):
        assert client.get("/api/reports/pupil/5").json()["pupil"]["surname"] == "Tursunov"
        assert client.get("/api/reports/pupil/99").status_code == 404

    def test_compare(self, client):
        assert client.get("/api/reports/compare").status_code == 400
        response = client.get("/api/reports/compare", params={
            "class_code": "10B", "baseline_exam_id": "2", "current_exam_id": "3",
        })
        assert response.status_code == 200
        assert response.json()["exam_b"] == 3


class TestDataUnavailable:
    """A results file that cannot be read answers 503."""

    def test_missing_results_file(self, monkeypatch, tmp_path):
        from fastapi.testclient import TestClient

        from main import app

        monkeypatch.setattr(config, "RESULTS_PATH", str(tmp_path / "missing.csv"))
        app.dependency_overrides.clear()
        with TestClient(app) as test_client:
            response = test_client.get("/api/reports/summary")
        assert response.status_code == 503


# ── Analyze routes ──────────────────────────────────────────────────

class TestAnalyzeRoutes:
    """Tests for the POST endpoints over posted rows."""

    def test_report(self, client, posted_rows):
        response = client.post("/api/analyze/report", json=_payload(posted_rows))
        assert response.status_code == 200
        body = response.json()
        assert body["kpis"]["n_results"] == 6
        assert [r["pupil_id"] for r in body["at_risk"]] == [2]

    def test_report_with_filters(self, client, posted_rows):
        body = client.post("/api/analyze/report", json=_payload(posted_rows, class_code="10B")).json()
        assert body["kpis"]["n_pupils"] == 1

    def test_no_data(self, client):
        assert client.post("/api/analyze/report", json={}).status_code == 400

    def test_malformed_rows(self, client, row):
        rows = [row(1, 1, 1, "lots")]
        assert client.post("/api/analyze/report", json=_payload(rows)).status_code == 400

    def test_filters_must_be_object(self, client, posted_rows):
        response = client.post("/api/analyze/risk", json={"data": posted_rows, "filters": [1]})
        assert response.status_code == 400

    def test_risk(self, client, posted_rows):
        body = client.post("/api/analyze/risk", json=_payload(posted_rows)).json()
        assert body["min_n"] == 2
        assert body["pupils"][0]["reason"] == "LowMean"

    def test_ranking(self, client, posted_rows):
        body = client.post("/api/analyze/ranking", json=_payload(posted_rows, by="class")).json()
        assert body["by"] == "class"
        assert [e["key"] for e in body["entities"]] == ["10A", "10B"]

    def test_ranking_ascending_with_limit(self, client, posted_rows):
        body = client.post("/api/analyze/ranking", json=_payload(posted_rows, order="asc", limit=1)).json()
        assert [e["key"] for e in body["entities"]] == [2]
        assert body["entities"][0]["rank"] == 1

    def test_trend(self, client, posted_rows):
        assert client.post("/api/analyze/trend", json=_payload(posted_rows)).json()["points"] == []
        points = client.post("/api/analyze/trend", json=_payload(posted_rows, min_n=1)).json()["points"]
        assert points[0]["n"] == 6

    def test_distribution(self, client, posted_rows):
        buckets = client.post("/api/analyze/distribution", json=_payload(posted_rows, band_width=10)).json()["buckets"]
        assert [b["label"] for b in buckets] == ["0-10", "10-20", "20-30", "30-40", "40"]
        assert [b["n"] for b in buckets] == [0, 2, 2, 2, 0]
