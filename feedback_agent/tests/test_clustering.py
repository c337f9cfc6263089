"""Tests for clustering and roll-ups."""

import random
from datetime import datetime, timedelta

import pytest

from feedback_agent.models.outputs import Priority
from feedback_agent.services.clustering_service import (
    FeedbackItem,
    calculate_time_window,
    cluster_feedback,
    derive_priority,
    extract_keywords,
    extract_top_themes,
    fallback_theme,
    generate_risk_notes,
    vectorize,
)

T0 = datetime(2026, 10, 1, 9, 0)


def _item(event_id, text, module="medication", severity="medium", minutes=0, redactions=0):
    return FeedbackItem(
        event_id=event_id,
        module=module,
        severity=severity,
        submitted_at=T0 + timedelta(minutes=minutes),
        text=text,
        redaction_count=redactions,
    )


@pytest.fixture
def items():
    return [
        _item("a", "medication save button not working", minutes=0),
        _item("c", "rota export drops sunday shifts", module="rota", severity="low", minutes=1),
        _item("b", "medication save button broken again", severity="high", minutes=2),
    ]


class TestClusterFeedback:
    """Greedy seed clustering."""

    def test_similar_items_grouped(self, items):
        drafts = cluster_feedback(items, threshold=0.3, min_cluster_size=2)
        assert [d.member_ids for d in drafts] == [["a", "b"], ["c"]]
        assert drafts[0].is_singleton is False
        assert drafts[1].is_singleton is True

    def test_order_independent(self, items):
        shuffled = list(items)
        random.Random(7).shuffle(shuffled)
        first = [d.member_ids for d in cluster_feedback(items, 0.3, 2)]
        second = [d.member_ids for d in cluster_feedback(shuffled, 0.3, 2)]
        assert first == second

    def test_draft_metadata(self, items):
        draft = cluster_feedback(items, 0.3, 2)[0]
        assert draft.modules == ["medication"]
        assert draft.severities == {"high": 1, "medium": 1}
        assert draft.max_severity == "high"
        assert draft.keywords[:3] == ["button", "medication", "save"]

    def test_empty_input(self):
        assert cluster_feedback([]) == []

    def test_redaction_tokens_do_not_link_clusters(self):
        items = [
            _item("x", "[NAME] [PHONE] login page frozen", module="login"),
            _item("y", "[NAME] [PHONE] rota totals wrong", module="rota", minutes=1),
        ]
        drafts = cluster_feedback(items, threshold=0.3, min_cluster_size=2)
        assert len(drafts) == 2

    def test_vectors_are_normalized(self, items):
        matrix = vectorize(items)
        assert matrix.shape[0] == 3
        for row in matrix:
            assert sum(v * v for v in row) == pytest.approx(1.0)


class TestRollups:
    """Keywords, priority, themes, risk notes, time window."""

    def test_extract_keywords_ignores_short_words(self):
        keywords = extract_keywords(["the app app app is slow slow", "app crash"])
        assert keywords == ["slow", "crash"]

    def test_extract_keywords_limit(self):
        text = " ".join(f"word{chr(97 + i)}" for i in range(15))
        assert len(extract_keywords([text])) == 10

    @pytest.mark.parametrize(
        "severity,count,expected",
        [
            ("low", 1, Priority.LOW),
            ("medium", 1, Priority.MEDIUM),
            ("low", 3, Priority.MEDIUM),
            ("high", 1, Priority.HIGH),
            ("low", 5, Priority.HIGH),
            ("critical", 1, Priority.CRITICAL),
            ("low", 10, Priority.CRITICAL),
        ],
    )
    def test_derive_priority(self, severity, count, expected):
        assert derive_priority(severity, count) == expected

    def test_fallback_theme(self):
        assert fallback_theme(["save", "button", "medication", "tablet"]) == "save / button / medication"
        assert fallback_theme([]) == "uncategorised"

    def test_top_themes_merge_and_limit(self):
        clusters = [{"theme": f"theme {i}", "member_count": i, "modules": ["m"]} for i in range(1, 8)]
        clusters.append({"theme": "theme 1", "member_count": 10, "modules": ["other"]})
        themes = extract_top_themes(clusters)
        assert len(themes) == 5
        assert themes[0] == {"theme": "theme 1", "count": 11, "modules": ["m", "other"]}

    def test_risk_notes(self):
        notes = generate_risk_notes([
            _item("a", "x", severity="high", redactions=2),
            _item("b", "y", severity="low"),
            _item("c", "z", module="rota", severity="critical"),
        ])
        assert notes.startswith("No personal data in outputs.")
        assert "2 high or critical severity report(s)." in notes
        assert "redacted in 1 report(s)." in notes
        assert "Most reported module: medication (2)." in notes

    def test_time_window(self, items):
        start, end = calculate_time_window(items)
        assert start == T0
        assert end == T0 + timedelta(minutes=2)
