# feedback_agent/eval/pii_corpus.py
"""
Labelled synthetic feedback for measuring redaction completeness.

Every sample is fabricated. Each labelled value is the exact substring the
redactor is expected to replace, so an evaluation can check both that the
value is gone and that the right category token took its place.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class LabelledSample:
    id: str
    text: str
    # (category, exact substring) pairs; empty for clean controls
    pii: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_clean(self) -> bool:
        return not self.pii

    def start_of(self, value: str) -> int:
        return self.text.index(value)


CORPUS: Tuple[LabelledSample, ...] = (
    # EMAIL
    LabelledSample(
        "email-01",
        "Please email me at jane.doe@example.com about the rota bug",
        (("EMAIL", "jane.doe@example.com"),),
    ),
    LabelledSample(
        "email-02",
        "Contact: s.patel+care@nhs.net if the export fails again",
        (("EMAIL", "s.patel+care@nhs.net"),),
    ),
    LabelledSample(
        "email-03",
        "Forwarded by mark_o@carehome.co.uk yesterday",
        (("EMAIL", "mark_o@carehome.co.uk"),),
    ),
    # PHONE
    LabelledSample(
        "phone-01",
        "Call me on 07700 900123 when the sync is fixed",
        (("PHONE", "07700 900123"),),
    ),
    LabelledSample(
        "phone-02",
        "Ring the office on +44 20 7946 0958 please",
        (("PHONE", "+44 20 7946 0958"),),
    ),
    LabelledSample(
        "phone-03",
        "My mobile is 07912345678",
        (("PHONE", "07912345678"),),
    ),
    LabelledSample(
        "phone-04",
        "Landline 0161 496 0123 is best",
        (("PHONE", "0161 496 0123"),),
    ),
    # NHS_NUMBER
    LabelledSample(
        "nhs-01",
        "Resident NHS number 943 476 5919 shows wrong allergies",
        (("NHS_NUMBER", "943 476 5919"),),
    ),
    LabelledSample(
        "nhs-02",
        "NHS no 401-023-2137 on the chart",
        (("NHS_NUMBER", "401-023-2137"),),
    ),
    LabelledSample(
        "nhs-03",
        "Patient 4010232137 medication record missing",
        (("NHS_NUMBER", "4010232137"),),
    ),
    # POSTCODE
    LabelledSample(
        "postcode-01",
        "I live near SW1A 1AA and the map pin is wrong",
        (("POSTCODE", "SW1A 1AA"),),
    ),
    LabelledSample(
        "postcode-02",
        "Postcode M1 1AE not accepted by the form",
        (("POSTCODE", "M1 1AE"),),
    ),
    LabelledSample(
        "postcode-03",
        "Deliveries to EH8 9YL keep failing",
        (("POSTCODE", "EH8 9YL"),),
    ),
    # ADDRESS
    LabelledSample(
        "address-01",
        "Visit scheduled at 12 Acacia Avenue was lost",
        (("ADDRESS", "12 Acacia Avenue"),),
    ),
    LabelledSample(
        "address-02",
        "She moved to 221B Baker Street last week",
        (("ADDRESS", "221B Baker Street"),),
    ),
    LabelledSample(
        "address-03",
        "Address 7 Mill Lane not showing on the rota",
        (("ADDRESS", "7 Mill Lane"),),
    ),
    # ROOM
    LabelledSample(
        "room-01",
        "Resident in room 14 missed lunch in the app",
        (("ROOM", "room 14"),),
    ),
    LabelledSample(
        "room-02",
        "Bed 3 call bell alerts not syncing",
        (("ROOM", "Bed 3"),),
    ),
    LabelledSample(
        "room-03",
        "Flat 2B keyholder info missing",
        (("ROOM", "Flat 2B"),),
    ),
    # NAME
    LabelledSample(
        "name-01",
        "Mrs Thompson was not on the list",
        (("NAME", "Mrs Thompson"),),
    ),
    LabelledSample(
        "name-02",
        "Dr. Okafor signed off the plan",
        (("NAME", "Dr. Okafor"),),
    ),
    LabelledSample(
        "name-03",
        "Nurse Kelly said the button failed",
        (("NAME", "Nurse Kelly"),),
    ),
    LabelledSample(
        "name-04",
        "My name is Bronwyn Ellis and the app crashed",
        (("NAME", "Bronwyn Ellis"),),
    ),
    LabelledSample(
        "name-05",
        "I spoke to Sarah about the login issue",
        (("NAME", "Sarah"),),
    ),
    LabelledSample(
        "name-06",
        "Sister O'Brien handled the handover notes",
        (("NAME", "Sister O'Brien"),),
    ),
    LabelledSample(
        "name-07",
        "Nurse Kelly Room 12 says the tablet is slow",
        (("NAME", "Nurse Kelly"), ("ROOM", "Room 12")),
    ),
    # STAFF_ID
    LabelledSample(
        "staff-01",
        "Staff ID: ST-4821 cannot log in",
        (("STAFF_ID", "Staff ID: ST-4821"),),
    ),
    LabelledSample(
        "staff-02",
        "Logged by EMP00417 during night shift",
        (("STAFF_ID", "EMP00417"),),
    ),
    LabelledSample(
        "staff-03",
        "employee number 558213 locked out",
        (("STAFF_ID", "employee number 558213"),),
    ),
    # MRN
    LabelledSample(
        "mrn-01",
        "MRN: A1234567 attached to wrong resident",
        (("MRN", "MRN: A1234567"),),
    ),
    LabelledSample(
        "mrn-02",
        "hospital number RX99812 was mistyped",
        (("MRN", "hospital number RX99812"),),
    ),
    LabelledSample(
        "mrn-03",
        "Medical record no. 77-1203 duplicated",
        (("MRN", "Medical record no. 77-1203"),),
    ),
    # MARKUP
    LabelledSample(
        "markup-01",
        "<script>alert('x')</script> in the notes field",
        (("MARKUP", "<script>"), ("MARKUP", "</script>")),
    ),
    LabelledSample(
        "markup-02",
        "Clicking <img src=x onerror=alert(1)> froze the page",
        (("MARKUP", "<img src=x onerror=alert(1)>"),),
    ),
    LabelledSample(
        "markup-03",
        "Link javascript:void(0) in the help page",
        (("MARKUP", "javascript:"),),
    ),
    # Care-context combinations
    LabelledSample(
        "context-01",
        "Bed 4 was given morphine late and the MAR didn't update",
        (("ROOM", "Bed 4"), ("MEDICATION", "morphine")),
    ),
    LabelledSample(
        "context-02",
        "Room 12 resident refused warfarin, app showed it as given",
        (("ROOM", "Room 12"), ("MEDICATION", "warfarin")),
    ),
    LabelledSample(
        "context-03",
        "On Willow Ward at 14:35 the alarm screen froze",
        (("WARD", "Willow Ward"), ("TIME", "14:35")),
    ),
    LabelledSample(
        "context-04",
        "Ward 7 at 02:10 handover notes vanished",
        (("WARD", "Ward 7"), ("TIME", "02:10")),
    ),
    # Clean controls: must come back unchanged
    LabelledSample("clean-01", "The medication save button isn't working on the tablet"),
    LabelledSample("clean-02", "Paracetamol round took ages because the app was slow"),
    LabelledSample("clean-03", "Night shift handover screen loads very slowly after 3pm"),
    LabelledSample("clean-04", "The rota export to PDF drops Sunday shifts"),
    LabelledSample("clean-05", "Great update, the care plan view is much faster now"),
    LabelledSample("clean-06", "Sort order is wrong when a<b and c>d in the filter"),
)


def iter_samples(categories: Optional[List[str]] = None, include_clean: bool = True) -> Iterator[LabelledSample]:
    """Yield corpus samples, optionally limited to those labelled with given categories."""
    wanted = {c.upper() for c in categories} if categories else None
    for sample in CORPUS:
        if sample.is_clean:
            if include_clean:
                yield sample
            continue
        if wanted is None or any(category in wanted for category, _ in sample.pii):
            yield sample


def get_corpus_stats() -> Dict[str, object]:
    by_category: Counter = Counter(category for sample in CORPUS for category, _ in sample.pii)
    return {
        "total": len(CORPUS),
        "clean": sum(1 for s in CORPUS if s.is_clean),
        "labelled_values": sum(by_category.values()),
        "by_category": dict(sorted(by_category.items())),
    }
