"""
PII redaction engine.

Replaces personally identifying spans with bracketed category tokens
(``[EMAIL]``, ``[PHONE]``, ...). Rules live in an immutable, versioned
RuleSet so that a processing run always sees one consistent rule set and
``redact(x) == redact(x)`` holds for replay.

Overlap resolution: the leftmost match wins; at the same start offset the
longest match wins; remaining ties go to rule priority (list order).
"""

import json
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from feedback_agent.config import settings
from feedback_agent.errors import RedactionFailure
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


# Given names are matched case-sensitively and only as whole words.
DEFAULT_GIVEN_NAMES = (
    "Kelly", "John", "Mary", "Sarah", "David", "James", "Emma", "Olivia", "Jack",
    "Sophie", "Thomas", "Emily", "Daniel", "Chloe", "Michael", "Jessica", "Peter",
    "Margaret", "Susan", "Linda", "Robert", "William", "Elizabeth", "Patricia",
    "Jennifer", "Karen", "Helen", "Joan", "Dorothy", "Barbara", "George", "Arthur",
    "Harry", "Oliver", "Charlotte", "Amelia", "Grace", "Lucy", "Hannah", "Rachel",
    "Laura", "Rebecca", "Fatima", "Mohammed", "Priya", "Aisha", "Siobhan", "Declan",
    "Rhys", "Gareth", "Angus", "Fiona", "Bridget", "Eileen", "Agnes", "Stanley",
)

DEFAULT_MEDICATION_TERMS = (
    "paracetamol", "ibuprofen", "morphine", "warfarin", "insulin", "metformin",
    "amoxicillin", "oxycodone", "diazepam", "lorazepam", "haloperidol", "donepezil",
    "furosemide", "omeprazole", "simvastatin", "atorvastatin", "amlodipine",
    "ramipril", "levothyroxine", "codeine", "tramadol", "fentanyl", "methotrexate",
    "digoxin", "lithium", "quetiapine", "risperidone", "apixaban", "rivaroxaban",
)

_TITLES = r"(?i:mr|mrs|ms|miss|mx|dr|prof|nurse|sister|matron|carer|resident|patient|doctor)"
_CAP_NAME = r"(?:[A-Z]'[A-Z][a-z]+|[A-Z][a-z]+(?:[A-Z][a-z]+)?(?:-[A-Z][a-z]+)?)"
_STREET_TYPES = (
    r"(?:Street|St|Road|Rd|Avenue|Ave|Lane|Ln|Drive|Close|Court|Ct|Way|Crescent|"
    r"Place|Terrace|Gardens|Grove|Hill|Row|Walk|Square)"
)
# A second name word never starts a room or ward reference ("Nurse Kelly Room 12").
_NAME_TAIL = r"(?:\s(?!(?:Room|Rm|Bed|Bay|Flat|Ward)\b)" + _CAP_NAME + r")?"

_HTML_TAGS = (
    r"(?:a|abbr|audio|b|base|body|br|button|details|div|em|embed|form|frame|h[1-6]|head|html|i|"
    r"iframe|img|input|label|li|link|marquee|meta|object|ol|option|p|script|select|span|strong|"
    r"style|svg|table|td|textarea|th|tr|u|ul|video)"
)
# Dangerous tags match with any attributes; other known tags only bare or with name=value attributes.
_MARKUP = (
    r"<\s*/?\s*(?:script|iframe|object|embed|svg|style|img)\b[^<>]{0,200}>"
    r"|<\s*/?\s*" + _HTML_TAGS + r"(?:\s*/?>|\s[^<>]{0,200}?=[^<>]{0,200}>)"
    r"|\bjavascript\s*:"
)

# (category, pattern, ignore_case). Order is priority: most specific first.
DEFAULT_PATTERNS: Tuple[Tuple[str, str, bool], ...] = (
    ("MARKUP", _MARKUP, True),
    ("NHS_NUMBER", r"\b\d{3}[ -]?\d{3}[ -]?\d{4}\b", False),
    ("EMAIL", r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", False),
    (
        "MRN",
        r"\b(?:MRN|medical record(?: number| no\.?)?|hospital (?:number|no\.?))\s*[:#]?\s*"
        r"(?=[A-Z0-9-]*\d)[A-Z0-9-]{4,12}\b",
        True,
    ),
    (
        "STAFF_ID",
        r"\b(?:(?:staff|employee|emp)\s*(?:id|no\.?|number)\s*[:#]?\s*[A-Z]{0,3}-?\d{3,8}"
        r"|(?:STF|EMP)-?\d{3,8})\b",
        True,
    ),
    (
        "PHONE",
        r"(?<![\w+])(?:(?:\+|00)44\s?(?:\(0\)\s?)?|0)\d(?:[\s-]?\d){8,9}\b"
        r"|(?<![\w+])\+\d{1,3}(?:[\s-]?\d){7,12}\b"
        r"|\b\d{3}[-.]\d{3}[-.]\d{4}\b",
        False,
    ),
    ("POSTCODE", r"\b[A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2}\b", False),
    ("ADDRESS", r"\b\d{1,4}[A-Za-z]?,?\s+(?:[A-Z][a-z]+\s+){1,3}" + _STREET_TYPES + r"\b", False),
    ("ROOM", r"\b(?:room|rm|bed|bay|flat)\s*(?:no\.?|number|#)?\s*\d{1,4}[A-Za-z]?\b", True),
    ("NAME", r"\b" + _TITLES + r"\.?\s+" + _CAP_NAME + _NAME_TAIL + r"\b", False),
    (
        "NAME",
        r"(?i:\b(?:my name is|called|named|spoke to|spoke with|signed)\s+)"
        r"(?P<pii>" + _CAP_NAME + _NAME_TAIL + r")\b",
        False,
    ),
)

# Context rules: only applied when their trigger category is also present.
_WARD_PATTERN = r"\b(?:[A-Z][a-z]+\s+Ward|Ward\s+(?:\d{1,3}[A-Z]?|[A-Z][a-z]+))\b"
_PRECISE_TIME_PATTERN = (
    r"\b(?:[01]?\d|2[0-3])[:.][0-5]\d(?::[0-5]\d)?(?:\s?(?:am|pm))?\b"
)


@dataclass(frozen=True)
class PatternRule:
    """A single category rule. Compiled once at construction."""
    category: str
    pattern: str
    ignore_case: bool = False
    compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        flags = re.IGNORECASE if self.ignore_case else 0
        object.__setattr__(self, "compiled", re.compile(self.pattern, flags))

    def spans(self, text: str) -> Iterable[Tuple[int, int]]:
        has_group = "pii" in self.compiled.groupindex
        for match in self.compiled.finditer(text):
            start, end = match.span("pii") if has_group else match.span()
            if end > start:
                yield start, end

    @property
    def token(self) -> str:
        return f"[{self.category}]"


@dataclass(frozen=True)
class RedactionSpan:
    """Where a replacement happened. Never enough to reconstruct the value."""
    category: str
    original_length: int
    position: int

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "original_length": self.original_length, "position": self.position}


@dataclass(frozen=True)
class RedactionResult:
    text: str
    spans: Tuple[RedactionSpan, ...]
    rule_set_version: str

    @property
    def categories(self) -> List[str]:
        return sorted({s.category for s in self.spans})


@dataclass(frozen=True)
class RuleSet:
    """Versioned, immutable rule configuration."""
    version: str
    rules: Tuple[PatternRule, ...]
    medication_terms: FrozenSet[str] = frozenset(DEFAULT_MEDICATION_TERMS)
    given_names: FrozenSet[str] = frozenset(DEFAULT_GIVEN_NAMES)
    medication_rule: PatternRule = field(init=False, repr=False, compare=False)
    ward_rule: PatternRule = field(init=False, repr=False, compare=False)
    time_rule: PatternRule = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        rules = list(self.rules)
        if self.given_names:
            names = "|".join(sorted((re.escape(n) for n in self.given_names), key=len, reverse=True))
            rules.append(PatternRule("NAME", r"\b(?:" + names + r")" + _NAME_TAIL + r"\b"))
        object.__setattr__(self, "rules", tuple(rules))

        terms = sorted((re.escape(t) for t in self.medication_terms), key=len, reverse=True)
        med_pattern = r"\b(?:" + "|".join(terms) + r")\b" if terms else r"(?!x)x"
        object.__setattr__(self, "medication_rule", PatternRule("MEDICATION", med_pattern, True))
        object.__setattr__(self, "ward_rule", PatternRule("WARD", _WARD_PATTERN))
        object.__setattr__(self, "time_rule", PatternRule("TIME", _PRECISE_TIME_PATTERN, True))

    @classmethod
    def default(cls) -> "RuleSet":
        return cls(
            version="builtin-1",
            rules=tuple(PatternRule(c, p, i) for c, p, i in DEFAULT_PATTERNS),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleSet":
        """
        Build a rule set from configuration.

        Expected shape:
            {"version": "2025.10.1",
             "rules": [{"category": "EMAIL", "pattern": "...", "ignore_case": false}],
             "medication_terms": [...], "given_names": [...]}

        Missing ``rules`` falls back to the built-in patterns.
        """
        if not data.get("version"):
            raise ValueError("Rule set requires a version")
        raw_rules = data.get("rules")
        if raw_rules is None:
            rules = tuple(PatternRule(c, p, i) for c, p, i in DEFAULT_PATTERNS)
        else:
            rules = tuple(
                PatternRule(r["category"].upper(), r["pattern"], bool(r.get("ignore_case", False)))
                for r in raw_rules
            )
        return cls(
            version=str(data["version"]),
            rules=rules,
            medication_terms=frozenset(data.get("medication_terms", DEFAULT_MEDICATION_TERMS)),
            given_names=frozenset(data.get("given_names", DEFAULT_GIVEN_NAMES)),
        )


def load_rule_set(path: str) -> RuleSet:
    """Load a rule set from a JSON file. Invalid regexes raise at load time."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    rule_set = RuleSet.from_dict(data)
    logger.info("Loaded redaction rule set", version=rule_set.version, rules=len(rule_set.rules))
    return rule_set


class RuleSetProvider:
    """
    Holds the current rule set. Readers take a snapshot per run; reloads swap
    the reference atomically and never mutate a published rule set.
    """

    def __init__(self, rule_set: Optional[RuleSet] = None, path: Optional[str] = None):
        self._lock = threading.Lock()
        self._path = path
        if rule_set is None:
            rule_set = load_rule_set(path) if path else RuleSet.default()
        self._current = rule_set

    def current(self) -> RuleSet:
        return self._current

    def reload(self, path: Optional[str] = None) -> RuleSet:
        path = path or self._path
        new_rule_set = load_rule_set(path) if path else RuleSet.default()
        with self._lock:
            self._current = new_rule_set
            self._path = path
        return new_rule_set


# ============== ENGINE ==============


def _check_input(text: Any) -> None:
    if not isinstance(text, str):
        raise RedactionFailure(f"Cannot redact {type(text).__name__}; expected text")
    if "\x00" in text:
        raise RedactionFailure("Text contains NUL bytes")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise RedactionFailure(f"Text is not valid unicode: {e.reason}")


def _candidate_spans(text: str, rule_set: RuleSet) -> List[Tuple[int, int, int, str]]:
    candidates = []
    for priority, rule in enumerate(rule_set.rules):
        for start, end in rule.spans(text):
            candidates.append((start, end, priority, rule.category))
    return candidates


def _context_spans(text: str, rule_set: RuleSet, base_categories: set) -> List[Tuple[int, int, int, str]]:
    """Care-specific quasi-identifiers, only identifying in combination."""
    extra = []
    low_priority = len(rule_set.rules)
    if "ROOM" in base_categories:
        for start, end in rule_set.medication_rule.spans(text):
            extra.append((start, end, low_priority, "MEDICATION"))
    ward_spans = list(rule_set.ward_rule.spans(text))
    if ward_spans:
        time_spans = list(rule_set.time_rule.spans(text))
        if time_spans:
            extra.extend((s, e, low_priority + 1, "WARD") for s, e in ward_spans)
            extra.extend((s, e, low_priority + 2, "TIME") for s, e in time_spans)
    return extra


def _resolve(candidates: List[Tuple[int, int, int, str]]) -> List[Tuple[int, int, str]]:
    selected = []
    cursor = 0
    for start, end, _priority, category in sorted(candidates, key=lambda c: (c[0], c[0] - c[1], c[2])):
        if start >= cursor:
            selected.append((start, end, category))
            cursor = end
    return selected


def find_pii(text: str, rule_set: Optional[RuleSet] = None) -> List[Tuple[str, int, int]]:
    """Return (category, start, end) for every base-rule match in text."""
    rule_set = rule_set or default_provider.current()
    return [(category, start, end) for start, end, category in _resolve(_candidate_spans(text, rule_set))]


def redact(text: str, rule_set: Optional[RuleSet] = None) -> RedactionResult:
    """
    Replace personal data in text with category tokens.

    Pure and deterministic for a given rule set. Fails closed: any problem
    raises RedactionFailure rather than returning partially redacted text.
    """
    rule_set = rule_set or default_provider.current()
    _check_input(text)

    try:
        base = _candidate_spans(text, rule_set)
        context = _context_spans(text, rule_set, {c[3] for c in base})
        selected = _resolve(base + context)
    except RedactionFailure:
        raise
    except Exception as e:
        raise RedactionFailure(f"Redaction rule error: {type(e).__name__}") from e

    parts = []
    spans = []
    cursor = 0
    for start, end, category in selected:
        parts.append(text[cursor:start])
        parts.append(f"[{category}]")
        spans.append(RedactionSpan(category=category, original_length=end - start, position=start))
        cursor = end
    parts.append(text[cursor:])
    redacted = "".join(parts)

    residual = find_pii(redacted, rule_set)
    if residual:
        raise RedactionFailure(
            "Residual PII after redaction",
            categories=sorted({r[0] for r in residual}),
        )

    for span in spans:
        metrics.increment(f"redaction.{span.category.lower()}")

    return RedactionResult(text=redacted, spans=tuple(spans), rule_set_version=rule_set.version)


default_provider = RuleSetProvider(path=settings.redaction_rules_path)
