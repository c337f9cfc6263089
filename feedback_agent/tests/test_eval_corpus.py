"""Tests for the redaction completeness evaluation."""

import json

import pytest

from feedback_agent.eval.pii_corpus import CORPUS, LabelledSample, get_corpus_stats, iter_samples
from feedback_agent.eval.run_redaction_eval import (
    COMPLETENESS_TARGET,
    compute_metrics,
    evaluate_sample,
    run_evaluation,
    save_results,
)
from feedback_agent.services.redaction_service import PatternRule, RuleSet

EXPECTED_CATEGORIES = {
    "ADDRESS", "EMAIL", "MARKUP", "MEDICATION", "MRN", "NAME", "NHS_NUMBER",
    "PHONE", "POSTCODE", "ROOM", "STAFF_ID", "TIME", "WARD",
}


class TestCorpus:
    """The labelled corpus itself."""

    def test_covers_every_category(self):
        assert set(get_corpus_stats()["by_category"]) == EXPECTED_CATEGORIES

    def test_labels_are_substrings(self):
        for sample in CORPUS:
            for _, value in sample.pii:
                assert value in sample.text, sample.id

    def test_ids_unique(self):
        ids = [s.id for s in CORPUS]
        assert len(ids) == len(set(ids))

    def test_filter_by_category(self):
        samples = list(iter_samples(["phone"], include_clean=False))
        assert samples
        assert all(any(c == "PHONE" for c, _ in s.pii) for s in samples)


class TestBuiltinRules:
    """The shipped rule set meets the completeness target."""

    def test_meets_completeness_target(self):
        _, results, metrics = run_evaluation(rule_set=RuleSet.default())
        misses = [r.id for r in results if r.missed or not r.success]
        assert misses == []
        assert metrics.completeness >= COMPLETENESS_TARGET
        assert metrics.passed()

    def test_every_category_fully_recalled(self):
        _, _, metrics = run_evaluation(rule_set=RuleSet.default())
        for category, stats in metrics.per_category.items():
            assert stats["recall"] == 1.0, category

    def test_tokens_match_labels(self):
        _, _, metrics = run_evaluation(rule_set=RuleSet.default())
        assert metrics.category_accuracy == 1.0

    def test_clean_controls_untouched(self):
        _, _, metrics = run_evaluation(rule_set=RuleSet.default())
        assert metrics.clean_samples == 6
        assert metrics.clean_false_positives == 0


class TestMetrics:
    """Scoring against weaker rule sets."""

    @pytest.fixture
    def email_only(self):
        return RuleSet(
            version="email-only",
            rules=(PatternRule("EMAIL", r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),),
            given_names=frozenset(),
            medication_terms=frozenset(),
        )

    def test_missed_values_reported(self, email_only):
        sample = LabelledSample("s1", "Call me on 07912345678", (("PHONE", "07912345678"),))
        result = evaluate_sample(sample, email_only)
        assert result.success
        assert result.missed == ["PHONE"]

    def test_miscategorized_reported(self):
        rule_set = RuleSet(
            version="wrong-token",
            rules=(PatternRule("CONTACT", r"\b0\d{10}\b"),),
            given_names=frozenset(),
        )
        sample = LabelledSample("s1", "Call me on 07912345678", (("PHONE", "07912345678"),))
        result = evaluate_sample(sample, rule_set)
        assert result.missed == []
        assert result.miscategorized == ["PHONE"]

    def test_weak_rules_fail_target(self, email_only):
        _, _, metrics = run_evaluation(rule_set=email_only)
        assert metrics.per_category["EMAIL"]["recall"] == 1.0
        assert metrics.per_category["PHONE"]["recall"] == 0.0
        assert not metrics.passed()

    def test_compute_metrics_counts(self, email_only):
        samples = [
            LabelledSample("a", "Mail jane.doe@example.com now", (("EMAIL", "jane.doe@example.com"),)),
            LabelledSample("b", "Call 07912345678 now", (("PHONE", "07912345678"),)),
        ]
        results = [evaluate_sample(s, email_only) for s in samples]
        metrics = compute_metrics(samples, results, email_only.version)
        assert metrics.labelled_values == 2
        assert metrics.removed_values == 1
        assert metrics.completeness == 0.5

    def test_save_results(self, tmp_path):
        _, results, metrics = run_evaluation(rule_set=RuleSet.default())
        paths = save_results(results, metrics, tmp_path, "ci")
        data = json.loads(paths["metrics_json"].read_text())
        assert data["rule_set_version"] == "builtin-1"
        assert len(json.loads(paths["results_json"].read_text())) == len(results)
