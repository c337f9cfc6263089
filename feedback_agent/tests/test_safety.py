"""Tests for the safety guard on generated content."""

import pytest

from feedback_agent.services import safety_service
from feedback_agent.services.safety_service import check, check_fields


class TestCheck:
    """Single-string checks."""

    def test_clean_summary_passes(self):
        result = check("Staff report that saving medication records fails on the tablet.")
        assert result.passed
        assert result.violations == []

    def test_pii_fails(self):
        result = check("Ask Nurse Kelly to call 07912345678")
        assert not result.passed
        assert "pii:NAME" in result.violations
        assert "pii:PHONE" in result.violations

    def test_severe_term_fails(self):
        result = check("This shit keeps crashing")
        assert "toxicity:severe" in result.violations

    def test_abusive_ratio_fails(self):
        result = check("useless stupid screen")
        assert "toxicity:threshold" in result.violations

    def test_single_abusive_word_in_long_text_passes(self):
        text = "The rota page is " + "slow to load for the night team on tablets and " * 3 + "useless."
        assert check(text).passed

    def test_empty_fails(self):
        assert check("   ").violations == ["empty"]

    def test_label_length_limit(self):
        result = check("a" * 121, kind="label")
        assert "too_long" in result.violations
        assert check("a" * 121, kind="summary").passed

    @pytest.mark.parametrize("value", [None, 42, ["a list"]])
    def test_non_string_fails_closed(self, value):
        result = check(value)
        assert not result.passed
        assert result.violations == ["missing"]

    def test_internal_error_fails_closed(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("guard exploded")

        monkeypatch.setattr(safety_service, "find_pii", boom)
        result = check("Perfectly normal text")
        assert not result.passed
        assert result.violations == ["guard_error"]


class TestCheckFields:
    """Multi-field artifacts."""

    def test_violations_prefixed_with_field(self):
        result = check_fields({
            "theme": "medication save failures",
            "action:0": "Add a retry",
            "action:1": "Email jane.doe@example.com",
        })
        assert not result.passed
        assert result.violations == ["action:1:pii:EMAIL"]

    def test_all_clean(self):
        assert check_fields({"label": "login failures", "summary": "Users cannot log in."}).passed
