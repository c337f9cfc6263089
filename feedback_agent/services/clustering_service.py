"""
Clustering over redacted feedback.

Deterministic greedy cosine clustering on bag-of-words vectors, plus the
non-generative roll-ups used by summaries and recommendations (keywords,
top themes, risk notes, priority, time window).
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from feedback_agent.config import settings
from feedback_agent.models.outputs import Priority
from feedback_agent.utils.preprocessing import tokenize

SEVERITY_ORDER = ["low", "medium", "high", "critical"]


@dataclass(frozen=True)
class FeedbackItem:
    """Redacted feedback as seen by clustering. Never holds raw text."""
    event_id: str
    module: str
    severity: str
    submitted_at: datetime
    text: str
    redaction_count: int = 0


@dataclass
class ClusterDraft:
    members: List[FeedbackItem]
    keywords: List[str] = field(default_factory=list)
    is_singleton: bool = False

    @property
    def member_ids(self) -> List[str]:
        return [m.event_id for m in self.members]

    @property
    def modules(self) -> List[str]:
        return sorted({m.module for m in self.members})

    @property
    def severities(self) -> Dict[str, int]:
        return dict(sorted(Counter(m.severity for m in self.members).items()))

    @property
    def max_severity(self) -> str:
        return max((m.severity for m in self.members), key=_severity_rank, default="low")


def _severity_rank(severity: str) -> int:
    return SEVERITY_ORDER.index(severity) if severity in SEVERITY_ORDER else 0


def order_items(items: Sequence[FeedbackItem]) -> List[FeedbackItem]:
    return sorted(items, key=lambda i: (i.submitted_at, i.event_id))


def _features(item: FeedbackItem) -> List[str]:
    return tokenize(item.text) + [f"module:{item.module.lower()}"]


def vectorize(items: Sequence[FeedbackItem]) -> np.ndarray:
    """L2-normalized term-count matrix, one row per item."""
    features = [_features(i) for i in items]
    vocab = {term: idx for idx, term in enumerate(sorted({t for f in features for t in f}))}
    matrix = np.zeros((len(items), max(len(vocab), 1)), dtype=float)
    for row, terms in enumerate(features):
        for term in terms:
            matrix[row, vocab[term]] += 1.0
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def cluster_feedback(
    items: Sequence[FeedbackItem],
    threshold: Optional[float] = None,
    min_cluster_size: Optional[int] = None,
) -> List[ClusterDraft]:
    """
    Greedy seed-based clustering.

    Items are ordered by (submitted_at, event_id); the first unassigned item
    seeds a cluster that takes every unassigned item whose cosine similarity
    to the seed is at least ``threshold``. Clusters smaller than
    ``min_cluster_size`` are kept, flagged as singletons.
    """
    threshold = threshold if threshold is not None else settings.cluster_similarity_threshold
    min_cluster_size = min_cluster_size if min_cluster_size is not None else settings.min_cluster_size

    ordered = order_items(items)
    if not ordered:
        return []

    matrix = vectorize(ordered)
    assigned = np.zeros(len(ordered), dtype=bool)
    drafts: List[ClusterDraft] = []

    for seed in range(len(ordered)):
        if assigned[seed]:
            continue
        similarities = matrix @ matrix[seed]
        members = [
            j for j in range(seed, len(ordered))
            if not assigned[j] and (j == seed or similarities[j] >= threshold)
        ]
        assigned[members] = True
        member_items = [ordered[j] for j in members]
        drafts.append(ClusterDraft(
            members=member_items,
            keywords=extract_keywords([m.text for m in member_items]),
            is_singleton=len(member_items) < min_cluster_size,
        ))

    return drafts


def extract_keywords(texts: Sequence[str], limit: int = 10) -> List[str]:
    """Most frequent content words longer than three characters."""
    counts = Counter(w for t in texts for w in tokenize(t) if len(w) > 3)
    return [w for w, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]


def derive_priority(severity: str, member_count: int) -> Priority:
    if severity == "critical" or member_count >= 10:
        return Priority.CRITICAL
    if severity == "high" or member_count >= 5:
        return Priority.HIGH
    if severity == "medium" or member_count >= 3:
        return Priority.MEDIUM
    return Priority.LOW


def fallback_theme(keywords: Sequence[str]) -> str:
    """Non-generated theme for clusters without a label."""
    return " / ".join(keywords[:3]) if keywords else "uncategorised"


def extract_top_themes(clusters: Sequence[Dict[str, Any]], limit: int = 5) -> List[Dict[str, Any]]:
    """
    Roll clusters up into at most ``limit`` themes by total event count.

    Each cluster dict needs ``theme``, ``member_count`` and ``modules``.
    """
    themes: Dict[str, Dict[str, Any]] = {}
    for cluster in clusters:
        entry = themes.setdefault(cluster["theme"], {"count": 0, "modules": set()})
        entry["count"] += cluster["member_count"]
        entry["modules"].update(cluster["modules"])
    ranked = sorted(themes.items(), key=lambda kv: (-kv[1]["count"], kv[0]))[:limit]
    return [{"theme": t, "count": d["count"], "modules": sorted(d["modules"])} for t, d in ranked]


def generate_risk_notes(items: Sequence[FeedbackItem]) -> str:
    high = sum(1 for i in items if i.severity in ("high", "critical"))
    redacted = sum(1 for i in items if i.redaction_count)
    notes = ["No personal data in outputs."]
    if high:
        notes.append(f"{high} high or critical severity report(s).")
    if redacted:
        notes.append(f"Personal data detected and redacted in {redacted} report(s).")
    if items:
        module, count = sorted(Counter(i.module for i in items).items(), key=lambda kv: (-kv[1], kv[0]))[0]
        notes.append(f"Most reported module: {module} ({count}).")
    return " ".join(notes)


def calculate_time_window(items: Sequence[FeedbackItem]) -> Tuple[datetime, datetime]:
    dates = [i.submitted_at for i in items]
    return min(dates), max(dates)
