"""Shared data models and exceptions for the route pipeline."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PipelineError):
    """A required folder, credential or setting is missing. Aborts the run."""


class ExtractionQualityError(PipelineError):
    """Extraction produced nothing usable; the item is retried on a later pass."""


class TransientServiceError(PipelineError):
    """An upstream service asked us to back off (quota, temporary outage)."""


class GeocodingError(PipelineError):
    """The geocoding service rejected a request."""


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RouteType(str, Enum):
    REG_ED_DOC = "RegEdDoc"
    SPEC_ED_PDF = "SpecEdPdf"


class Period:
    AM = "AM"
    PM = "PM"
    MID_DAY = "Mid-day"
    ROUTE = "Route"


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


def fingerprint(source_id: str, last_modified_ms: int) -> str:
    """Return the change-detection key for a source document."""
    raw = f"{source_id}:{int(last_modified_ms)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class WorkItem:
    """One source document queued for extraction."""

    route_type: RouteType
    source_id: str
    source_name: str
    last_modified_ms: int
    bus_number_hint: str = ""
    school_name_hint: str = ""

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.source_id, self.last_modified_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeType": self.route_type.value,
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "lastModifiedMs": self.last_modified_ms,
            "busNumberHint": self.bus_number_hint,
            "schoolNameHint": self.school_name_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            route_type=RouteType(data["routeType"]),
            source_id=str(data["sourceId"]),
            source_name=str(data.get("sourceName", "")),
            last_modified_ms=int(data.get("lastModifiedMs", 0)),
            bus_number_hint=str(data.get("busNumberHint", "")),
            school_name_hint=str(data.get("schoolNameHint", "")),
        )


# ---------------------------------------------------------------------------
# Route records
# ---------------------------------------------------------------------------


@dataclass
class StudentRecord:
    name: str = ""
    contact_name: str = ""
    phone_number: str = ""
    other_equipment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "contactName": self.contact_name,
            "phoneNumber": self.phone_number,
            "otherEquipment": self.other_equipment,
        }


@dataclass
class StopRecord:
    time: str
    location: str
    students: list[StudentRecord] = field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geocode_error: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def key(self) -> tuple[str, str]:
        """Case-insensitive ``(time, location)`` uniqueness key."""
        time_key = " ".join(self.time.replace(".", "").split()).upper()
        location_key = " ".join(self.location.split()).upper()
        return time_key, location_key

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "time": self.time,
            "location": self.location,
            "students": [s.to_dict() for s in self.students],
        }
        if self.has_coordinates:
            data["latitude"] = self.latitude
            data["longitude"] = self.longitude
        if self.geocode_error:
            data["geocodeError"] = self.geocode_error
        return data


@dataclass
class RouteDraft:
    """Extraction output prior to cleaning and classification."""

    bus_number: str
    school_name: str
    period: Optional[str] = None
    stops: list[StopRecord] = field(default_factory=list)
    title: str = ""


@dataclass
class RouteArtifact:
    """Final published record consumed by the map application."""

    meta: dict[str, Any]
    bus_number: str
    school_name: str
    period: str
    stops: list[StopRecord]

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": dict(self.meta),
            "busNumber": self.bus_number,
            "schoolName": self.school_name,
            "period": self.period,
            "stops": [stop.to_dict() for stop in self.stops],
        }


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


@dataclass
class PipelineState:
    """Queue, cursor and caches persisted between runs."""

    queue: list[WorkItem] = field(default_factory=list)
    cursor: int = 0
    processed: dict[str, str] = field(default_factory=dict)
    geocode_cache: dict[str, dict[str, float]] = field(default_factory=dict)

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.queue)

    def reset_queue(self, items: Optional[list[WorkItem]] = None) -> None:
        self.queue = list(items or [])
        self.cursor = 0

    def is_current(self, item: WorkItem) -> bool:
        return self.processed.get(item.source_id) == item.fingerprint

    def mark_processed(self, item: WorkItem) -> None:
        self.processed[item.source_id] = item.fingerprint

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": [item.to_dict() for item in self.queue],
            "cursor": self.cursor,
            "processed": dict(self.processed),
            "geocodeCache": dict(self.geocode_cache),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PipelineState":
        """Build a state from a loaded document, repairing malformed parts."""
        if not isinstance(data, dict):
            return cls()

        queue: list[WorkItem] = []
        raw_queue = data.get("queue")
        if isinstance(raw_queue, list):
            for entry in raw_queue:
                if not isinstance(entry, dict):
                    continue
                try:
                    queue.append(WorkItem.from_dict(entry))
                except (KeyError, ValueError, TypeError):
                    continue

        try:
            cursor = int(data.get("cursor", 0))
        except (TypeError, ValueError):
            cursor = 0
        cursor = min(max(cursor, 0), len(queue))

        processed = data.get("processed")
        if not isinstance(processed, dict):
            processed = {}

        cache: dict[str, dict[str, float]] = {}
        raw_cache = data.get("geocodeCache")
        if isinstance(raw_cache, dict):
            for key, value in raw_cache.items():
                if not isinstance(value, dict):
                    continue
                try:
                    cache[str(key)] = {
                        "lat": float(value["lat"]),
                        "lng": float(value["lng"]),
                    }
                except (KeyError, ValueError, TypeError):
                    continue

        return cls(
            queue=queue,
            cursor=cursor,
            processed={str(k): str(v) for k, v in processed.items()},
            geocode_cache=cache,
        )
