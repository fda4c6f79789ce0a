"""Shared fixtures for the route pipeline test suite.

External services (Drive, Docs, OCR, Gemini, Geocoding) are replaced by the
in-memory fakes below; nothing here touches the network.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import pytest

from busroutes.retry import RetryPolicy
from busroutes.sources import SourceFile
from busroutes.utils import GOOGLE_FOLDER_MIME

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

NOW_MS = 1_760_000_000_000
DAY_MS = 24 * 60 * 60 * 1000

RED = {"red": 1.0, "green": 0.0, "blue": 0.0}
BLACK = {"red": 0.0, "green": 0.0, "blue": 0.0}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory document store; folder ids of created folders are paths."""

    def __init__(self) -> None:
        self.nodes: dict[str, dict[str, Any]] = {}
        self.written: dict[str, Any] = {}
        self.document_reads: list[str] = []

    def add_folder(self, folder_id: str, name: str = "", parent: str = "") -> str:
        self.nodes[folder_id] = {
            "parent": parent,
            "entry": SourceFile(folder_id, name or folder_id, GOOGLE_FOLDER_MIME, 0, 0),
        }
        return folder_id

    def add_file(
        self,
        file_id: str,
        name: str,
        parent: str,
        mime_type: str,
        modified_ms: int,
        created_ms: int = 0,
        document: Optional[dict[str, Any]] = None,
    ) -> None:
        self.nodes[file_id] = {
            "parent": parent,
            "entry": SourceFile(file_id, name, mime_type, modified_ms, created_ms),
            "document": document,
        }

    def _children(self, parent_id: str) -> list[SourceFile]:
        return [n["entry"] for n in self.nodes.values() if n["parent"] == parent_id]

    def exists(self, folder_id: str) -> bool:
        node = self.nodes.get(folder_id)
        return node is not None and node["entry"].mime_type == GOOGLE_FOLDER_MIME

    def find_folder(self, parent_id: str, name: str) -> Optional[str]:
        for entry in self.list_folders(parent_id):
            if entry.name == name:
                return entry.id
        return None

    def ensure_folder(self, parent_id: str, name: str) -> str:
        return self.find_folder(parent_id, name) or self.add_folder(
            f"{parent_id}/{name}", name, parent_id
        )

    def list_folders(self, parent_id: str) -> list[SourceFile]:
        return [e for e in self._children(parent_id) if e.mime_type == GOOGLE_FOLDER_MIME]

    def list_files(
        self, parent_id: str, mime_types: Optional[Iterable[str]] = None
    ) -> list[SourceFile]:
        wanted = set(mime_types or [])
        return [
            e
            for e in self._children(parent_id)
            if e.mime_type != GOOGLE_FOLDER_MIME and (not wanted or e.mime_type in wanted)
        ]

    def read_document(self, file_id: str) -> dict[str, Any]:
        self.document_reads.append(file_id)
        return self.nodes[file_id]["document"]

    def read_bytes(self, file_id: str) -> bytes:
        return b"%PDF-fake"

    def write_json(self, parent_id: str, name: str, payload: Any) -> str:
        ref = f"{parent_id}/{name}"
        # Round-trip through JSON like a real upload would.
        self.written[ref] = json.loads(json.dumps(payload))
        return ref


class FakeOcr:
    def __init__(self, texts: Optional[dict[str, str]] = None, default: str = "ROUTE SHEET"):
        self.texts = texts or {}
        self.default = default
        self.calls: list[str] = []

    def convert(self, file_id: str) -> str:
        self.calls.append(file_id)
        value = self.texts.get(file_id, self.default)
        if isinstance(value, Exception):
            raise value
        return value


class FakeGenerativeClient:
    def __init__(self, response: Union[str, Callable[[str], str]] = "[]"):
        self.response = response
        self.calls: list[str] = []
        self.schemas: list[dict[str, Any]] = []

    def extract(self, prompt: str, schema: dict[str, Any]) -> str:
        self.calls.append(prompt)
        self.schemas.append(schema)
        return self.response(prompt) if callable(self.response) else self.response


class FakeGeocoder:
    def __init__(
        self,
        results: Optional[dict[str, Any]] = None,
        default: Optional[tuple[float, float]] = (39.12345, -76.54321),
    ):
        self.results = results or {}
        self.default = default
        self.calls: list[str] = []

    def geocode(self, query: str) -> Optional[tuple[float, float]]:
        self.calls.append(query)
        for needle, value in self.results.items():
            if needle.lower() in query.lower():
                if isinstance(value, Exception):
                    raise value
                return value
        return self.default


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def make_docs_document(title: str, lines: list[tuple[str, bool]]) -> dict[str, Any]:
    """Build a Docs-API shaped document; ``True`` marks a red line."""
    content = []
    for text, red in lines:
        content.append(
            {
                "paragraph": {
                    "elements": [
                        {
                            "textRun": {
                                "content": text + "\n",
                                "textStyle": {
                                    "foregroundColor": {
                                        "color": {"rgbColor": RED if red else BLACK}
                                    }
                                },
                            }
                        }
                    ]
                }
            }
        )
    return {"title": title, "body": {"content": content}}


SAMPLE_SHEET_LINES = [
    ("105 PINE GROVE - Bus Route Sheet", False),
    ("6:42 AM  1234 Oak Ave", True),
    ("LEFT ON MAIN ST", True),
    ("6:50 AM Elm St & Pine Rd", True),
    ("3RD RIGHT", True),
    ("Driver: call dispatch if late", False),
    ("3:15 PM 1234 Oak Ave", True),
]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay_s=0.0, max_delay_s=0.0)


@pytest.fixture
def fake_store() -> FakeStore:
    store = FakeStore()
    store.add_folder("reg", "Regular Ed Routes")
    store.add_folder("spec", "Special Ed Routes")
    store.add_folder("dest", "Bus Stops")
    return store


@pytest.fixture
def sample_document() -> dict[str, Any]:
    return make_docs_document("105 PINE GROVE", SAMPLE_SHEET_LINES)


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    """A local mirror of the Drive layout with empty collections."""
    root = tmp_path / "drive"
    (root / "Regular Ed Routes").mkdir(parents=True)
    (root / "Special Ed Routes").mkdir(parents=True)
    (root / "Bus Stops").mkdir(parents=True)
    return root
