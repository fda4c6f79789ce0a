"""Schema-constrained route extraction from OCR text with Gemini."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .models import RouteDraft, StopRecord, StudentRecord, WorkItem
from .ocr import OcrService
from .retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_STRING = {"type": "STRING"}

ROUTE_SCHEMA: dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "busNumber": _STRING,
            "schoolName": _STRING,
            "stops": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "time": _STRING,
                        "location": _STRING,
                        "students": {
                            "type": "ARRAY",
                            "items": {
                                "type": "OBJECT",
                                "properties": {
                                    "name": _STRING,
                                    "contactName": _STRING,
                                    "phoneNumber": _STRING,
                                    "otherEquipment": _STRING,
                                },
                            },
                        },
                    },
                    "required": ["time", "location"],
                },
            },
        },
        "required": ["busNumber", "schoolName", "stops"],
    },
}

PROMPT_TEMPLATE = """You extract school bus routes from OCR text of a route sheet.

Return ONLY a JSON array. Each element is one route with:
- "busNumber": the bus number printed on the sheet
- "schoolName": the school the route serves
- "stops": the pick-up / drop-off stops in sheet order, each with
  "time" (as printed, e.g. "6:42 AM"; empty string if none),
  "location" (the stop address or intersection),
  "students": list of {{"name", "contactName", "phoneNumber", "otherEquipment"}}

Rules:
- Do NOT include the school itself as a stop.
- Do NOT include driving directions (lines starting with LEFT, RIGHT, TURN,
  PROCEED, CONTINUE, ARRIVE, DEPART, or numbered maneuvers).
- Copy text as printed; do not invent stops, times or phone numbers.
- If the text is not a route sheet or is unreadable, return [].

Hints: file name "{file_name}", bus folder "{bus_hint}".

OCR TEXT:
{text}
"""


def build_prompt(text: str, item: WorkItem) -> str:
    return PROMPT_TEMPLATE.format(
        file_name=item.source_name,
        bus_hint=item.bus_number_hint,
        text=text.strip(),
    )


# ---------------------------------------------------------------------------
# Response validation
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v is not None)
    return str(value).strip()


class ExtractedStudent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field("", validation_alias=AliasChoices("name", "studentName"))
    contact_name: str = Field("", validation_alias=AliasChoices("contactName", "contact_name"))
    phone_number: str = Field("", validation_alias=AliasChoices("phoneNumber", "phone_number"))
    other_equipment: str = Field(
        "", validation_alias=AliasChoices("otherEquipment", "other_equipment")
    )

    @field_validator("name", "contact_name", "phone_number", "other_equipment", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)


class ExtractedStop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: str = ""
    location: str = Field(validation_alias=AliasChoices("location", "stopLocation"))
    students: list[ExtractedStudent] = Field(default_factory=list)

    @field_validator("time", "location", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("students", mode="before")
    @classmethod
    def _students(cls, value: Any) -> Any:
        return [] if value is None else value


class ExtractedRoute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    bus_number: str = Field("", validation_alias=AliasChoices("busNumber", "bus_number"))
    school_name: str = Field("", validation_alias=AliasChoices("schoolName", "school_name"))
    stops: list[ExtractedStop] = Field(default_factory=list)

    @field_validator("bus_number", "school_name", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    def to_draft(self, item: WorkItem) -> RouteDraft:
        return RouteDraft(
            bus_number=self.bus_number or item.bus_number_hint,
            school_name=self.school_name or item.school_name_hint,
            stops=[
                StopRecord(
                    time=stop.time,
                    location=stop.location,
                    students=[
                        StudentRecord(
                            name=s.name,
                            contact_name=s.contact_name,
                            phone_number=s.phone_number,
                            other_equipment=s.other_equipment,
                        )
                        for s in stop.students
                    ],
                )
                for stop in self.stops
            ],
            title=item.source_name,
        )


_ROUTES_ADAPTER = TypeAdapter(list[ExtractedRoute])


def _strip_fences(text: str) -> str:
    out = text.strip()
    if out.startswith("```json"):
        out = out[7:]
    if out.startswith("```"):
        out = out[3:]
    if out.endswith("```"):
        out = out[:-3]
    return out.strip()


def parse_routes(text: str) -> list[ExtractedRoute]:
    """Validate a generative response; malformed output yields ``[]``."""
    if not text or not text.strip():
        return []
    try:
        data = json.loads(_strip_fences(text))
    except json.JSONDecodeError as exc:
        log.warning("Generative response is not JSON: %s", exc)
        return []
    if isinstance(data, dict):
        data = data["routes"] if isinstance(data.get("routes"), list) else [data]
    try:
        return _ROUTES_ADAPTER.validate_python(data)
    except ValidationError as exc:
        log.warning("Generative response failed schema validation: %s", exc.error_count())
        return []


# ---------------------------------------------------------------------------
# Gemini client
# ---------------------------------------------------------------------------


class GenerativeClient(Protocol):
    def extract(self, prompt: str, schema: dict[str, Any]) -> str: ...


class GeminiClient:
    """Minimal ``generateContent`` client with JSON-schema constrained output."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 120.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def extract(self, prompt: str, schema: dict[str, Any]) -> str:
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }
        response = self.session.post(
            GEMINI_URL.format(model=self.model),
            headers={"x-goog-api-key": self.api_key},
            json=body,
            timeout=self.timeout_s,
        )
        response.raise_for_status()
        payload = response.json()
        candidates = payload.get("candidates") or []
        if not candidates:
            log.warning("Gemini returned no candidates: %s", payload.get("promptFeedback"))
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)


class GenerativeExtractor:
    """OCR a scanned route sheet, then extract routes with a generative model."""

    method = "ocr-generative"

    def __init__(
        self,
        ocr: OcrService,
        client: GenerativeClient,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.ocr = ocr
        self.client = client
        self.policy = policy or RetryPolicy()

    def extract(self, item: WorkItem) -> list[RouteDraft]:
        # OCR backends retry their own remote calls.
        text = self.ocr.convert(item.source_id)
        if not text or not text.strip():
            log.warning("%s: OCR produced no text", item.source_name)
            return []

        raw = call_with_retry(
            self.client.extract,
            build_prompt(text, item),
            ROUTE_SCHEMA,
            description=f"extract {item.source_name}",
            policy=self.policy,
        )
        routes = parse_routes(raw)
        if not routes:
            log.warning("%s: generative extraction returned no routes", item.source_name)
        return [route.to_draft(item) for route in routes]
