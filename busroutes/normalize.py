"""Route cleaning: bus numbers, stop text, phone numbers, dedupe and periods."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Union

from .models import Period, RouteDraft, StopRecord, StudentRecord
from .structured import is_maneuver, parse_clock_minutes, period_for_minutes
from .utils import UNASSIGNED_BUS

log = logging.getLogger(__name__)

_EDGE_NOISE_RE = re.compile(r"^[\s\W_]+|[\s\W_]+$", re.UNICODE)
_PHONE_SPLIT_RE = re.compile(r"[,;/|\n]+|\s+or\s+|\s+&\s+", re.IGNORECASE)
_PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")
_BUS_ID_RE = re.compile(r"^(?:BUS\s*#?\s*)?(\d+)$")


def normalize_bus_number(raw: Optional[str]) -> str:
    """Zero-pad short numeric bus ids to three characters.

    ``"7"`` -> ``"007"``, ``"Bus 21"`` -> ``"021"``, ``"1234"`` unchanged.
    Any other id (``"21A"``, ``"SPARE"``) is kept trimmed and upper-cased;
    empty input maps to ``UNASSIGNED_BUS``.
    """
    text = " ".join((raw or "").upper().split())
    match = _BUS_ID_RE.match(text)
    if match:
        digits = match.group(1)
        return digits.zfill(3) if len(digits) <= 2 else digits
    return text or UNASSIGNED_BUS


def clean_location(text: Optional[str]) -> str:
    """Strip punctuation and whitespace runs at both ends, collapse the middle."""
    collapsed = " ".join((text or "").split())
    stripped = _EDGE_NOISE_RE.sub("", collapsed)
    # Keep a closing parenthesis that balances an opening one.
    if stripped.count("(") > stripped.count(")") and collapsed.rstrip().endswith(")"):
        stripped += ")"
    return stripped


def normalize_time(text: Optional[str]) -> str:
    cleaned = " ".join((text or "").split()).upper()
    cleaned = re.sub(r"\b([AP])\.\s?M\.?", r"\1M", cleaned)
    return cleaned


def normalize_phone_numbers(raw: Union[str, Iterable[str], None]) -> list[str]:
    """Canonicalize and dedupe phone numbers, preserving first-seen order."""
    if raw is None:
        return []
    chunks: list[str] = []
    values = [raw] if isinstance(raw, str) else list(raw)
    for value in values:
        for chunk in _PHONE_SPLIT_RE.split(str(value or "")):
            # Numbers separated only by whitespace.
            if len(re.sub(r"\D", "", chunk)) > 11:
                chunks.extend(_PHONE_RE.findall(chunk) or [chunk])
            else:
                chunks.append(chunk)

    numbers: list[str] = []
    for chunk in chunks:
        digits = re.sub(r"\D", "", chunk)
        if not digits:
            continue
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        if len(digits) == 10:
            digits = f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
        if digits not in numbers:
            numbers.append(digits)
    return numbers


def clean_student(student: StudentRecord) -> StudentRecord:
    return StudentRecord(
        name=" ".join(student.name.split()),
        contact_name=" ".join(student.contact_name.split()),
        phone_number=", ".join(normalize_phone_numbers(student.phone_number)),
        other_equipment=" ".join(student.other_equipment.split()),
    )


def classify_period(stops: list[StopRecord], title: str = "") -> str:
    """Bucket a route by its earliest stop time, falling back to the title."""
    minutes = [m for m in (parse_clock_minutes(s.time) for s in stops) if m is not None]
    if minutes:
        period = period_for_minutes(min(minutes))
        if period:
            return period

    upper = (title or "").upper()
    if re.search(r"\bMID[\s-]?DAY\b", upper):
        return Period.MID_DAY
    if re.search(r"\bA\.?M\b", upper):
        return Period.AM
    if re.search(r"\bP\.?M\b", upper):
        return Period.PM
    return Period.ROUTE


def _drop_reason(stop: StopRecord, school_key: str) -> Optional[str]:
    if not stop.location:
        return "empty"
    if school_key and stop.location.upper() == school_key:
        return "school"
    if is_maneuver(stop.location):
        return "maneuver"
    return None


def normalize_route(draft: RouteDraft) -> Optional[RouteDraft]:
    """Return a cleaned copy of *draft*, or ``None`` when no stops survive."""
    school = " ".join(draft.school_name.split())
    school_key = school.upper()
    seen: set[tuple[str, str]] = set()
    stops: list[StopRecord] = []
    dropped: dict[str, int] = {}

    for raw in draft.stops:
        stop = StopRecord(
            time=normalize_time(raw.time),
            location=clean_location(raw.location),
            students=[clean_student(s) for s in raw.students],
            latitude=raw.latitude,
            longitude=raw.longitude,
            geocode_error=raw.geocode_error,
        )
        reason = _drop_reason(stop, school_key)
        if reason is None and stop.key() in seen:
            reason = "duplicate"
        if reason:
            dropped[reason] = dropped.get(reason, 0) + 1
            continue
        seen.add(stop.key())
        stops.append(stop)

    if dropped:
        log.debug("Route %r: dropped stops %s", school, dropped)
    if not stops:
        log.info("Route %r (bus %s) has no stops after cleaning", school, draft.bus_number)
        return None

    period = draft.period or classify_period(stops, f"{school} {draft.title}")
    return RouteDraft(
        bus_number=normalize_bus_number(draft.bus_number),
        school_name=school,
        period=period,
        stops=stops,
        title=draft.title,
    )


def normalize_routes(drafts: Iterable[RouteDraft]) -> list[RouteDraft]:
    cleaned = []
    for draft in drafts:
        route = normalize_route(draft)
        if route is not None:
            cleaned.append(route)
    return cleaned
