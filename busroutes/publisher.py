"""Canonical artifact naming and idempotent publishing."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from .models import RouteArtifact, RouteDraft, StopRecord, StudentRecord, WorkItem
from .normalize import normalize_bus_number
from .sources import DocumentStore
from .utils import utc_now_iso

log = logging.getLogger(__name__)

UNKNOWN_SCHOOL = "UNKNOWN SCHOOL"

_PAREN_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_ANNOTATION_RE = re.compile(
    r"\b(?:A\.?M\.?|P\.?M\.?|MID[\s-]?DAY|ROUTES?\s*#?\s*\d*|RTE?\.?\s*#?\s*\d*)(?=\s|$|[-/,:;])",
)


def canonical_school_name(name: str) -> str:
    """Upper-case *name* and strip route/period annotations.

    ``"Guilford Park - AM Route"`` and ``"GUILFORD PARK (AM)"`` both become
    ``"GUILFORD PARK"``.
    """
    text = (name or "").upper()
    text = _PAREN_RE.sub(" ", text)
    text = _ANNOTATION_RE.sub(" ", text)
    text = re.sub(r"[\s\-–—_/,:;#]+$", "", " ".join(text.split()))
    text = re.sub(r"^[\s\-–—_/,:;#]+", "", text)
    text = " ".join(text.split())
    return text or UNKNOWN_SCHOOL


def canonical_artifact_name(school_name: str, period: str) -> str:
    return f"{canonical_school_name(school_name)} ({period})"


def build_artifact(
    route: RouteDraft,
    item: WorkItem,
    *,
    method: str,
    generated_at: Optional[str] = None,
) -> RouteArtifact:
    meta = {
        "sourceType": item.route_type.value,
        "sourceId": item.source_id,
        "sourceFileName": item.source_name,
        "sourceFingerprint": item.fingerprint,
        "generatedAt": generated_at or utc_now_iso(),
        "extractionMethod": method,
    }
    return RouteArtifact(
        meta=meta,
        bus_number=normalize_bus_number(route.bus_number),
        school_name=canonical_school_name(route.school_name),
        period=route.period or "Route",
        stops=list(route.stops),
    )


class Publisher:
    """Write route artifacts under ``<destination>/<bus>/<NAME>.json``."""

    def __init__(self, store: DocumentStore, destination_folder_id: str) -> None:
        self.store = store
        self.destination_folder_id = destination_folder_id
        self._bus_folders: dict[str, str] = {}

    def _bus_folder(self, bus_number: str) -> str:
        folder_id = self._bus_folders.get(bus_number)
        if folder_id is None:
            folder_id = self.store.ensure_folder(self.destination_folder_id, bus_number)
            self._bus_folders[bus_number] = folder_id
        return folder_id

    def publish(self, route: RouteDraft, item: WorkItem, *, method: str) -> str:
        """Create or overwrite the artifact for *route*; return its URL/path."""
        artifact = build_artifact(route, item, method=method)
        name = canonical_artifact_name(artifact.school_name, artifact.period) + ".json"
        folder_id = self._bus_folder(artifact.bus_number)
        ref = self.store.write_json(folder_id, name, artifact.to_dict())
        log.info(
            "Published %s/%s (%s stops) -> %s",
            artifact.bus_number,
            name,
            len(artifact.stops),
            ref,
        )
        return ref


# ---------------------------------------------------------------------------
# Reading artifacts back
# ---------------------------------------------------------------------------


def _stop_from_dict(data: dict[str, Any]) -> StopRecord:
    students = [
        StudentRecord(
            name=str(s.get("name", "")),
            contact_name=str(s.get("contactName", "")),
            phone_number=str(s.get("phoneNumber", "")),
            other_equipment=str(s.get("otherEquipment", "")),
        )
        for s in data.get("students") or []
        if isinstance(s, dict)
    ]
    lat = data.get("latitude")
    lng = data.get("longitude")
    return StopRecord(
        time=str(data.get("time", "")),
        location=str(data.get("location") or data.get("stopLocation") or ""),
        students=students,
        latitude=float(lat) if lat is not None else None,
        longitude=float(lng) if lng is not None else None,
        geocode_error=data.get("geocodeError"),
    )


def load_route_stops(payload: Any) -> list[StopRecord]:
    """Read stops from any artifact shape the map application accepts.

    Accepts the canonical object, a bare array of stops, or
    ``{"routes": [{"stops": [...]}, ...]}``.
    """
    raw: list[Any] = []
    if isinstance(payload, list):
        raw = payload
    elif isinstance(payload, dict):
        if isinstance(payload.get("stops"), list):
            raw = payload["stops"]
        elif isinstance(payload.get("routes"), list):
            for route in payload["routes"]:
                if isinstance(route, dict) and isinstance(route.get("stops"), list):
                    raw.extend(route["stops"])
    return [_stop_from_dict(entry) for entry in raw if isinstance(entry, dict)]
