"""Rule-based stop extraction from formatted route sheets.

Route sheets mark stop lines in red text. This extractor reads the document's
inline styles, keeps the red lines, drops driving directions and returns one
:class:`RouteDraft` per period bucket. It never calls an external service.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .models import Period, RouteDraft, StopRecord, WorkItem

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunable heuristics
# ---------------------------------------------------------------------------

MANEUVER_WORDS = (
    "LEFT",
    "RIGHT",
    "TURN",
    "PROCEED",
    "CONTINUE",
    "ARRIVE",
    "DEPART",
    "BEAR",
    "MERGE",
    "STRAIGHT",
    "U-TURN",
)

ROAD_SUFFIXES = (
    "ST", "STREET", "AVE", "AVENUE", "RD", "ROAD", "DR", "DRIVE", "LN", "LANE",
    "CT", "COURT", "BLVD", "BOULEVARD", "WAY", "PL", "PLACE", "CIR", "CIRCLE",
    "PKWY", "PARKWAY", "PIKE", "HWY", "HIGHWAY", "TER", "TERRACE", "TRL",
    "TRAIL", "SQ", "ALY", "RUN", "XING",
)


@dataclass(frozen=True)
class ExtractionHeuristics:
    """Named, overridable constants for the red-text route sheet format."""

    red_min: float = 0.7
    green_max: float = 0.25
    blue_max: float = 0.25
    maneuver_words: tuple[str, ...] = MANEUVER_WORDS
    road_suffixes: tuple[str, ...] = ROAD_SUFFIXES

    def is_marked(self, rgb: dict[str, Any]) -> bool:
        red = float(rgb.get("red", 0.0) or 0.0)
        green = float(rgb.get("green", 0.0) or 0.0)
        blue = float(rgb.get("blue", 0.0) or 0.0)
        return red >= self.red_min and green <= self.green_max and blue <= self.blue_max


DEFAULT_HEURISTICS = ExtractionHeuristics()

# ---------------------------------------------------------------------------
# Clock times
# ---------------------------------------------------------------------------

_MERIDIEM = r"(?P<meridiem>[AaPp]\.?\s?[Mm]\b\.?)"
_COLON_TIME_RE = re.compile(
    r"(?<!\d)(?P<hour>\d{1,2})[:.](?P<minute>\d{2})(?!\d)\s*" + _MERIDIEM + "?"
)
_MERIDIEM_TIME_RE = re.compile(r"(?<!\d)(?P<hour>\d{1,2})\s*" + _MERIDIEM)

AM_WINDOW = (360, 570)
PM_WINDOW = (840, 1080)


def _minutes_from_match(match: re.Match) -> Optional[int]:
    hour = int(match.group("hour"))
    minute = int(match.groupdict().get("minute") or 0)
    meridiem = (match.group("meridiem") or "").upper().replace(".", "").replace(" ", "")
    if minute > 59 or hour > 23:
        return None
    if meridiem == "PM" and hour < 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    elif not meridiem and 1 <= hour <= 5:
        # Buses do not run at 1-5 AM; unlabeled early hours are afternoon runs.
        hour += 12
    return hour * 60 + minute


def parse_clock_minutes(text: str) -> Optional[int]:
    """Return minutes past midnight for the first clock time in *text*."""
    if not text:
        return None
    match = _COLON_TIME_RE.search(text) or _MERIDIEM_TIME_RE.search(text)
    if not match:
        return None
    return _minutes_from_match(match)


def split_leading_time(line: str) -> tuple[str, str]:
    """Split a leading clock token from *line*; returns ``("", line)`` if absent."""
    stripped = line.strip()
    match = _COLON_TIME_RE.match(stripped) or _MERIDIEM_TIME_RE.match(stripped)
    if not match or _minutes_from_match(match) is None:
        return "", stripped
    rest = stripped[match.end():].lstrip(" \t-–—:,;")
    return match.group(0).strip(), rest.strip()


def period_for_minutes(minutes: Optional[int]) -> Optional[str]:
    """Map minutes past midnight to AM / Mid-day / PM, or ``None``."""
    if minutes is None:
        return None
    if AM_WINDOW[0] <= minutes <= AM_WINDOW[1]:
        return Period.AM
    if AM_WINDOW[1] < minutes < PM_WINDOW[0]:
        return Period.MID_DAY
    if PM_WINDOW[0] <= minutes <= PM_WINDOW[1]:
        return Period.PM
    return None


# ---------------------------------------------------------------------------
# Line heuristics
# ---------------------------------------------------------------------------


def _maneuver_re(words: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(w) for w in words)
    return re.compile(
        rf"^\s*(?:(?:{alternatives})(?![A-Z0-9-])|\d+(?:ST|ND|RD|TH)\b)",
        re.IGNORECASE,
    )


_DEFAULT_MANEUVER_RE = _maneuver_re(MANEUVER_WORDS)


def is_maneuver(line: str, heuristics: ExtractionHeuristics = DEFAULT_HEURISTICS) -> bool:
    pattern = (
        _DEFAULT_MANEUVER_RE
        if heuristics.maneuver_words == MANEUVER_WORDS
        else _maneuver_re(heuristics.maneuver_words)
    )
    return bool(pattern.match(line))


def looks_like_address(
    line: str, heuristics: ExtractionHeuristics = DEFAULT_HEURISTICS
) -> bool:
    if any(ch.isdigit() for ch in line) or "/" in line:
        return True
    words = re.findall(r"[A-Za-z]+", line.upper())
    suffixes = set(heuristics.road_suffixes)
    return any(word in suffixes for word in words)


# ---------------------------------------------------------------------------
# Document walking
# ---------------------------------------------------------------------------


def _iter_paragraphs(content: Iterable[dict[str, Any]]):
    for element in content or []:
        if "paragraph" in element:
            yield element["paragraph"]
        elif "table" in element:
            for row in element["table"].get("tableRows", []):
                for cell in row.get("tableCells", []):
                    yield from _iter_paragraphs(cell.get("content", []))
        elif "tableOfContents" in element:
            yield from _iter_paragraphs(element["tableOfContents"].get("content", []))


def _run_rgb(text_run: dict[str, Any]) -> dict[str, Any]:
    style = text_run.get("textStyle") or {}
    color = (style.get("foregroundColor") or {}).get("color") or {}
    return color.get("rgbColor") or {}


def marked_lines(
    document: dict[str, Any], heuristics: ExtractionHeuristics = DEFAULT_HEURISTICS
) -> list[str]:
    """Return the red text of *document*, one entry per visual line."""
    lines: list[str] = []
    content = (document.get("body") or {}).get("content", [])
    for paragraph in _iter_paragraphs(content):
        pieces: list[str] = []
        gap = False
        for element in paragraph.get("elements", []):
            run = element.get("textRun")
            if not run:
                continue
            rgb = _run_rgb(run)
            if rgb and heuristics.is_marked(rgb):
                if gap and pieces:
                    pieces.append(" ")
                pieces.append(run.get("content", ""))
                gap = False
            else:
                gap = True
        text = "".join(pieces)
        for raw in re.split(r"[\n\u000b\r]+", text):
            line = " ".join(raw.split())
            if line:
                lines.append(line)
    return lines


class StructuredTextExtractor:
    """Extract stops from red-marked lines of a formatted route sheet."""

    method = "structured-text"

    def __init__(self, heuristics: ExtractionHeuristics = DEFAULT_HEURISTICS) -> None:
        self.heuristics = heuristics

    def parse_lines(self, lines: Iterable[str]) -> list[StopRecord]:
        stops: list[StopRecord] = []
        for line in lines:
            if is_maneuver(line, self.heuristics):
                continue
            time_text, rest = split_leading_time(line)
            if time_text:
                if not rest or is_maneuver(rest, self.heuristics):
                    continue
                stops.append(StopRecord(time=time_text, location=rest))
            elif looks_like_address(line, self.heuristics):
                stops.append(StopRecord(time="", location=line))
        return stops

    def group_by_period(self, stops: list[StopRecord]) -> dict[str, list[StopRecord]]:
        buckets: dict[str, list[StopRecord]] = {}
        for stop in stops:
            period = period_for_minutes(parse_clock_minutes(stop.time)) or Period.ROUTE
            buckets.setdefault(period, []).append(stop)
        return buckets

    def extract(self, document: dict[str, Any], item: WorkItem) -> list[RouteDraft]:
        title = str(document.get("title") or item.source_name)
        lines = marked_lines(document, self.heuristics)
        stops = self.parse_lines(lines)
        log.debug(
            "%s: %s marked lines -> %s candidate stops",
            item.source_name,
            len(lines),
            len(stops),
        )
        drafts = []
        for period, bucket in self.group_by_period(stops).items():
            drafts.append(
                RouteDraft(
                    bus_number=item.bus_number_hint,
                    school_name=item.school_name_hint or title,
                    period=period,
                    stops=bucket,
                    title=title,
                )
            )
        return drafts
