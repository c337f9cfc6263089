"""
Safety guard for generated content.
Re-scans every generated string before it is persisted.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from feedback_agent.config import settings
from feedback_agent.services.redaction_service import RuleSet, find_pii
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

# Any single occurrence fails the check.
SEVERE_TERMS = frozenset({"fuck", "fucking", "shit", "cunt", "bastard", "retard"})

# Fails when their share of words exceeds the toxicity threshold.
ABUSIVE_TERMS = frozenset({
    "idiot", "idiots", "stupid", "moron", "morons", "incompetent", "pathetic",
    "useless", "hate", "dumb", "lazy", "crap", "clueless", "disgusting",
})

_WORD_RE = re.compile(r"[a-z']+")


def _max_length(kind: str) -> int:
    return {
        "label": settings.safety_max_label_length,
        "theme": settings.safety_max_label_length,
        "summary": settings.safety_max_summary_length,
        "action": settings.safety_max_action_length,
    }.get(kind, settings.safety_max_summary_length)


@dataclass
class SafetyResult:
    passed: bool
    violations: List[str] = field(default_factory=list)


def _evaluate(text: str, kind: str, rule_set: Optional[RuleSet]) -> List[str]:
    violations = []

    if not text.strip():
        violations.append("empty")
    if len(text) > _max_length(kind):
        violations.append("too_long")

    pii = find_pii(text, rule_set)
    if pii:
        violations.extend(sorted({f"pii:{category}" for category, _, _ in pii}))

    words = _WORD_RE.findall(text.lower())
    if any(w in SEVERE_TERMS for w in words):
        violations.append("toxicity:severe")
    elif words:
        ratio = sum(1 for w in words if w in ABUSIVE_TERMS) / len(words)
        if ratio > settings.safety_toxicity_threshold:
            violations.append("toxicity:threshold")

    return violations


def check(text: Any, kind: str = "summary", rule_set: Optional[RuleSet] = None) -> SafetyResult:
    """
    Check one generated string.

    Fails closed: a non-string or an internal error is a failed check.
    """
    if not isinstance(text, str):
        metrics.increment("safety.failed")
        return SafetyResult(passed=False, violations=["missing"])
    try:
        violations = _evaluate(text, kind, rule_set)
    except Exception as e:
        logger.error("Safety guard error", kind=kind, error=type(e).__name__)
        violations = ["guard_error"]

    if violations:
        metrics.increment("safety.failed")
        return SafetyResult(passed=False, violations=violations)
    return SafetyResult(passed=True)


def check_fields(fields: Dict[str, Any], rule_set: Optional[RuleSet] = None) -> SafetyResult:
    """
    Check several fields of one artifact; keys are ``kind`` or ``kind:n``.

    Violations are prefixed with the field key.
    """
    violations = []
    for key, value in fields.items():
        result = check(value, key.split(":", 1)[0], rule_set)
        violations.extend(f"{key}:{v}" for v in result.violations)
    return SafetyResult(passed=not violations, violations=violations)
