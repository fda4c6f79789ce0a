"""Build the ordered work queue from the two source collections."""

from __future__ import annotations

import logging
import re
from typing import Optional

from .models import ConfigurationError, RouteType, WorkItem
from .sources import DocumentStore, LOCAL_DOC_SUFFIX
from .utils import GOOGLE_DOC_MIME, PDF_MIME, now_ms

log = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

_LEADING_BUS_RE = re.compile(r"^\s*(\d{1,4})\b[\s\-_.#]*")


def strip_extension(name: str) -> str:
    lowered = name.lower()
    for suffix in (LOCAL_DOC_SUFFIX, ".pdf", ".docx", ".doc", ".json"):
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return name


def split_bus_prefix(name: str) -> tuple[str, str]:
    """Split ``"021 GUILFORD PARK.pdf"`` into ``("021", "GUILFORD PARK")``."""
    stem = strip_extension(name).strip()
    match = _LEADING_BUS_RE.match(stem)
    if not match:
        return "", stem
    return match.group(1), stem[match.end():].strip()


def _require(store: DocumentStore, folder_id: str, label: str) -> None:
    if not folder_id or not store.exists(folder_id):
        raise ConfigurationError(f"{label} folder not found: {folder_id!r}")


def build_work_queue(
    store: DocumentStore,
    reg_ed_folder_id: str,
    spec_ed_folder_id: str,
    *,
    recency_days: int,
    now: Optional[int] = None,
) -> list[WorkItem]:
    """Return recently changed source documents, freshest first.

    Raises ``ConfigurationError`` when either source folder is missing.
    """
    _require(store, reg_ed_folder_id, "Regular-ed routes")
    _require(store, spec_ed_folder_id, "Special-ed routes")

    current = now_ms() if now is None else now
    cutoff = current - max(0, recency_days) * DAY_MS
    items: list[WorkItem] = []
    stale = 0

    for entry in store.list_files(reg_ed_folder_id, [GOOGLE_DOC_MIME]):
        if entry.freshest_ms < cutoff:
            stale += 1
            continue
        bus, school = split_bus_prefix(entry.name)
        items.append(
            WorkItem(
                route_type=RouteType.REG_ED_DOC,
                source_id=entry.id,
                source_name=entry.name,
                last_modified_ms=entry.modified_ms,
                bus_number_hint=bus,
                school_name_hint=school,
            )
        )

    for folder in store.list_folders(spec_ed_folder_id):
        for entry in store.list_files(folder.id, [PDF_MIME]):
            if entry.freshest_ms < cutoff:
                stale += 1
                continue
            _, school = split_bus_prefix(entry.name)
            items.append(
                WorkItem(
                    route_type=RouteType.SPEC_ED_PDF,
                    source_id=entry.id,
                    source_name=entry.name,
                    last_modified_ms=entry.modified_ms,
                    bus_number_hint=folder.name.strip(),
                    school_name_hint=school,
                )
            )

    items.sort(key=lambda item: item.last_modified_ms, reverse=True)
    log.info(
        "Work queue built: %s items (%s outside the %s-day window)",
        len(items),
        stale,
        recency_days,
    )
    return items
