import hashlib
import json
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, List


# Common English words; none carries a theme.
STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can could did do does doing down during
    each few for from further had has have having he her here hers herself him
    himself his how i if in into is it its itself just me more most my myself no nor
    not now of off on once only or other our ours ourselves out over own same she
    should so some such than that the their theirs them themselves then there these
    they this those through to too under until up very was we were what when where
    which while who whom why will with would you your yours yourself yourselves
    isnt doesnt dont cant wont wasnt arent also still get got really please
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z][a-z_']+")
_REDACTION_TOKEN_RE = re.compile(r"\[[A-Z_]+\]")


def tokenize(text: str) -> List[str]:
    """Lowercased content words, with stopwords and redaction tokens removed."""
    text = _REDACTION_TOKEN_RE.sub(" ", text or "")
    words = _TOKEN_RE.findall(text.lower().replace("'", ""))
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the store persists datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Unserializable value: {type(value).__name__}")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def hash_content(content: str) -> str:
    """SHA-256 hex digest of a string."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def state_hash(state: Any) -> str:
    """Stable hash of an artifact state; None hashes to an empty string."""
    if state is None:
        return ""
    return hash_content(canonical_json(state))


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def to_json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so datetimes and enums become strings."""
    return json.loads(canonical_json(data))
