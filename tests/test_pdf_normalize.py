"""
Tests for PDF text sanitization, date formatting, ordering and KPIs.
"""

from datetime import datetime, timezone

import pytest

from riskmate.pdf_normalize import (
    assert_no_bad_chars,
    calculate_attestation_kpis,
    calculate_control_kpis,
    compare_severity,
    format_date,
    format_filter_context,
    format_hash_short,
    is_control_overdue,
    normalize_attestation_status,
    normalize_control_status,
    normalize_severity,
    safe_text_for_pdf,
    sanitize_text,
    sort_attestations,
    sort_controls,
    truncate_text,
)

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


class TestSanitize:

    def test_strips_invisible_and_normalizes_punctuation(self):
        assert sanitize_text("A\u200bB\u2014C  \u201cq\u201d \u2018x\u2019") == "AB-C \"q\" 'x'"

    def test_removes_control_and_private_use(self):
        assert sanitize_text("ok\x07\ue000 done") == "ok done"

    def test_collapses_whitespace(self):
        assert sanitize_text("  line one\n\tline two\u2028end ") == "line one line two end"

    def test_replacement_character_becomes_dash(self):
        cleaned = sanitize_text("a\ufffdb")
        assert cleaned == "a-b"
        assert_no_bad_chars(cleaned)

    def test_empty(self):
        assert sanitize_text(None) == ""
        assert sanitize_text("") == ""

    def test_clean_text_passes(self):
        assert_no_bad_chars("Plain ASCII text - fine")
        assert safe_text_for_pdf("Site \u2013 North") == "Site - North"

    def test_replacement_glyph_rejected(self):
        with pytest.raises(ValueError) as exc:
            assert_no_bad_chars("bad \ufffd glyph", "controls.title")
        assert "controls.title" in str(exc.value)

    def test_strict_mode_can_be_disabled(self, monkeypatch):
        monkeypatch.setenv("PDF_STRICT", "0")
        assert_no_bad_chars("bad \ufffd glyph")


class TestFormatting:

    def test_format_date_styles(self):
        assert format_date("2025-01-05T15:04:00Z") == "Jan 5, 2025"
        assert format_date("2025-01-05T15:04:00Z", "long") == "January 5, 2025 03:04 PM"
        assert format_date("2025-01-05T15:04:00+00:00", "iso") == "2025-01-05T15:04:00+00:00"

    def test_format_date_unparseable(self):
        assert format_date(None) == "N/A"
        assert format_date("yesterday") == "N/A"

    def test_hash_short(self):
        assert format_hash_short("a" * 64) == "a" * 16 + "..."
        assert format_hash_short("abc") == "abc"
        assert format_hash_short(None) == "N/A"

    def test_truncate(self):
        assert truncate_text("abcdefghij", 8) == "abcde..."
        assert truncate_text("short", 8) == "short"

    def test_filter_context(self):
        assert format_filter_context({}) == "No filters applied"
        assert format_filter_context({"job_id": "job-1", "site_id": None}) == "job id: job-1"


class TestStatusAndSeverity:

    @pytest.mark.parametrize("raw,expected", [
        ("CRIT", "critical"),
        ("h", "high"),
        ("Med", "medium"),
        ("low", "low"),
        (None, "info"),
        ("unknown", "info"),
    ])
    def test_normalize_severity(self, raw, expected):
        assert normalize_severity(raw) == expected

    def test_compare_severity(self):
        assert compare_severity("critical", "low") < 0
        assert compare_severity("info", "high") > 0

    def test_statuses(self):
        assert normalize_control_status("Done") == "completed"
        assert normalize_control_status("open") == "pending"
        assert normalize_attestation_status("signed") == "completed"
        assert normalize_attestation_status(None) == "pending"

    def test_overdue(self):
        assert is_control_overdue("pending", "2025-02-01T00:00:00", NOW)
        assert not is_control_overdue("completed", "2025-02-01T00:00:00", NOW)
        assert not is_control_overdue("pending", None, NOW)
        assert not is_control_overdue("pending", "2025-04-01T00:00:00Z", NOW)


class TestOrderingAndKpis:

    CONTROLS = [
        {"id": "later", "severity": "low", "status_at_export": "pending", "due_date": "2025-05-01T00:00:00Z"},
        {"id": "undated", "severity": "low", "status_at_export": "pending", "due_date": None},
        {"id": "high", "severity": "high", "status_at_export": "pending", "due_date": "2025-06-01T00:00:00Z"},
        {"id": "overdue", "severity": "low", "status_at_export": "pending", "due_date": "2025-01-01T00:00:00Z"},
        {"id": "done", "severity": "critical", "status_at_export": "completed", "due_date": "2025-01-01T00:00:00Z"},
    ]

    def test_sort_controls(self):
        order = [c["id"] for c in sort_controls(self.CONTROLS, NOW)]
        assert order == ["overdue", "done", "high", "later", "undated"]

    def test_control_kpis(self):
        kpis = calculate_control_kpis(self.CONTROLS, NOW)
        assert kpis == {"total": 5, "completed": 1, "pending": 4, "overdue": 1, "high_severity": 2}

    def test_sort_attestations(self):
        attestations = [
            {"id": "old", "status_at_export": "signed", "attested_at": "2025-01-01T00:00:00Z"},
            {"id": "pending", "status_at_export": "pending", "attested_at": None},
            {"id": "new", "status_at_export": "signed", "attested_at": "2025-02-01T00:00:00Z"},
        ]
        assert [a["id"] for a in sort_attestations(attestations)] == ["pending", "new", "old"]
        assert calculate_attestation_kpis(attestations) == {"total": 3, "completed": 2, "pending": 1}
