"""
Tests for core/exports.py — CSV layout, quoting, ordering and file names.
"""

import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.exports import (
    BOM,
    EXPORT_KINDS,
    csv_field,
    export_filename,
    iter_csv,
    render_csv,
)

PASS = 18.4


@pytest.fixture
def frame(make_store, row):
    return make_store([
        row(1, 1, 1, 20, exam_date="2024-10-01"),
        row(2, 1, 1, 30, exam_date="2024-10-01", surname='O"Neil'),
        row(1, 1, 2, 25, exam_date=""),
    ]).fetch()


class TestCsvField:
    """Tests for field quoting."""

    @pytest.mark.parametrize("value,expected", [
        ("plain", "plain"),
        ("", ""),
        ("Aniq fanlar", '"Aniq fanlar"'),
        ("a,b", '"a,b"'),
        ('say "hi"', '"say ""hi"""'),
        ("back\\slash", '"back\\slash"'),
        ("tab\there", '"tab\there"'),
        ("two\nlines", '"two\nlines"'),
        ('back\\"quote', '"back\\"quote"'),
        ('back\\x"quote', '"back\\x""quote"'),
        ('\\\\"q', '"\\\\"q"'),
    ])
    def test_quoting(self, value, expected):
        assert csv_field(value) == expected


class TestRenderCsv:
    """Tests for the four export kinds."""

    def test_every_kind_starts_with_bom_and_header(self, frame):
        for kind in EXPORT_KINDS:
            text = render_csv(kind, frame, PASS)
            assert text.startswith(BOM)
            assert text.endswith("\n")
            assert "\r" not in text

    def test_subject_row(self, frame):
        lines = render_csv("subject", frame, PASS).splitlines()
        assert lines[0] == BOM + "subject_code,subject_name,n,mean,median,stdev,pass_rate"
        assert lines[1] == 'S1,"Subject 1",3,25.00,25.00,4.08,100.0'

    def test_subject_order_uses_printed_mean(self, make_store, row):
        frame = make_store([
            row(1, 1, 1, 20.001), row(2, 1, 1, 20.001),
            row(1, 2, 1, 15.004), row(2, 2, 1, 25.004),
        ]).fetch()
        lines = render_csv("subject", frame, PASS).splitlines()
        # Both means print as 20.00, so the wider spread comes first
        assert lines[1] == 'S2,"Subject 2",2,20.00,20.00,5.00,50.0'
        assert lines[2] == 'S1,"Subject 1",2,20.00,20.00,0.00,100.0'

    def test_class_row(self, frame):
        lines = render_csv("classes", frame, PASS).splitlines()
        assert lines[1] == '10A,"Aniq fanlar",3,25.00,4.08,100.0'

    def test_pupil_rows_quote_inner_quotes(self, frame):
        lines = render_csv("pupils", frame, PASS).splitlines()
        assert lines[1].startswith('pupil2,"O""Neil",Name2,10A,"Aniq fanlar",1,30.00')
        assert lines[2].endswith(",2,22.50,20.00,25.00,100.0")

    def test_raw_undated_exam_first(self, frame):
        lines = render_csv("raw", frame, PASS).splitlines()
        assert len(lines) == 4
        assert lines[1] == '2024-2025,1,"Exam 2",,10A,"Aniq fanlar",pupil1,Surname1,Name1,S1,"Subject 1",25.00'
        assert ",2024-10-01," in lines[2]

    def test_empty_slice_is_header_only(self, make_store):
        text = render_csv("raw", make_store([]).fetch(), PASS)
        assert text.count("\n") == 1

    def test_streams_line_by_line(self, frame):
        lines = list(iter_csv("subject", frame, PASS))
        assert len(lines) == 2
        assert all(line.endswith("\n") for line in lines)

    def test_unknown_kind(self, frame):
        with pytest.raises(KeyError):
            iter_csv("grades", frame, PASS)


class TestExportFilename:
    """Tests for export_filename."""

    def test_stamp(self):
        name = export_filename("raw", now=datetime(2025, 3, 1, 9, 5, 7))
        assert name == "raw_results_20250301_090507.csv"

    def test_stems(self):
        stamp = datetime(2025, 1, 1)
        assert export_filename("subject", stamp).startswith("subject_summary_")
        assert export_filename("pupils", stamp).startswith("pupil_summary_")
        assert export_filename("classes", stamp).startswith("class_summary_")
