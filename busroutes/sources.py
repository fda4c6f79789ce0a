"""Document store access: Google Drive / Docs and a local directory tree."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from .retry import RetryPolicy, call_with_retry
from .utils import GOOGLE_DOC_MIME, GOOGLE_FOLDER_MIME, JSON_MIME, PDF_MIME

log = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/documents.readonly",
]


@dataclass(frozen=True)
class SourceFile:
    id: str
    name: str
    mime_type: str
    modified_ms: int
    created_ms: int = 0

    @property
    def freshest_ms(self) -> int:
        return max(self.modified_ms, self.created_ms)


class DocumentStore(Protocol):
    def exists(self, folder_id: str) -> bool: ...

    def find_folder(self, parent_id: str, name: str) -> Optional[str]: ...

    def ensure_folder(self, parent_id: str, name: str) -> str: ...

    def list_folders(self, parent_id: str) -> list[SourceFile]: ...

    def list_files(
        self, parent_id: str, mime_types: Optional[Iterable[str]] = None
    ) -> list[SourceFile]: ...

    def read_document(self, file_id: str) -> dict[str, Any]: ...

    def read_bytes(self, file_id: str) -> bytes: ...

    def write_json(self, parent_id: str, name: str, payload: Any) -> str: ...


def _rfc3339_to_ms(value: Optional[str]) -> int:
    if not value:
        return 0
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return int(parsed.timestamp() * 1000)


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Google Drive API
# ---------------------------------------------------------------------------


def authenticate_drive(credentials_file: Path, token_file: Path):
    """OAuth2 authentication with token caching."""
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow

    creds = None
    if token_file.exists():
        creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        else:
            if not credentials_file.exists():
                log.error(
                    f"Credentials file not found: {credentials_file}\n"
                    "  1. Go to Google Cloud Console -> APIs & Services -> Credentials\n"
                    "  2. Create OAuth 2.0 Client ID (Desktop app)\n"
                    "  3. Download JSON and save as credentials.json in project root"
                )
                sys.exit(1)
            flow = InstalledAppFlow.from_client_secrets_file(
                str(credentials_file), SCOPES
            )
            creds = flow.run_local_server(port=0)
        token_file.write_text(creds.to_json())
    return creds


def build_drive_services(creds) -> tuple[Any, Any]:
    """Return ``(drive_v3, docs_v1)`` service objects."""
    from googleapiclient.discovery import build

    drive = build("drive", "v3", credentials=creds, cache_discovery=False)
    docs = build("docs", "v1", credentials=creds, cache_discovery=False)
    return drive, docs


class DriveDocumentStore:
    """Document store over the Drive v3 and Docs v1 APIs."""

    FILE_FIELDS = "id, name, mimeType, modifiedTime, createdTime"

    def __init__(self, service, docs_service=None, policy: RetryPolicy | None = None):
        self.service = service
        self.docs_service = docs_service
        self.policy = policy or RetryPolicy()

    def _execute(self, request, description: str) -> Any:
        return call_with_retry(request.execute, description=description, policy=self.policy)

    def _query(self, query: str) -> list[SourceFile]:
        results: list[SourceFile] = []
        page_token = None
        while True:
            response = self._execute(
                self.service.files().list(
                    q=query,
                    spaces="drive",
                    fields=f"nextPageToken, files({self.FILE_FIELDS})",
                    pageToken=page_token,
                    pageSize=100,
                    supportsAllDrives=True,
                    includeItemsFromAllDrives=True,
                ),
                "drive.files.list",
            )
            for entry in response.get("files", []):
                results.append(
                    SourceFile(
                        id=entry["id"],
                        name=entry.get("name", ""),
                        mime_type=entry.get("mimeType", ""),
                        modified_ms=_rfc3339_to_ms(entry.get("modifiedTime")),
                        created_ms=_rfc3339_to_ms(entry.get("createdTime")),
                    )
                )
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return results

    def exists(self, folder_id: str) -> bool:
        from googleapiclient.errors import HttpError

        if not folder_id:
            return False
        try:
            meta = self._execute(
                self.service.files().get(
                    fileId=folder_id,
                    fields="id, trashed",
                    supportsAllDrives=True,
                ),
                "drive.files.get",
            )
        except HttpError as exc:
            if getattr(exc.resp, "status", None) == 404:
                return False
            raise
        return not meta.get("trashed", False)

    def find_folder(self, parent_id: str, name: str) -> Optional[str]:
        query = (
            f"name='{_quote(name)}' and mimeType='{GOOGLE_FOLDER_MIME}' "
            f"and '{parent_id}' in parents and trashed=false"
        )
        folders = self._query(query)
        return folders[0].id if folders else None

    def ensure_folder(self, parent_id: str, name: str) -> str:
        existing = self.find_folder(parent_id, name)
        if existing:
            return existing
        created = self._execute(
            self.service.files().create(
                body={
                    "name": name,
                    "mimeType": GOOGLE_FOLDER_MIME,
                    "parents": [parent_id],
                },
                fields="id",
                supportsAllDrives=True,
            ),
            "drive.files.create(folder)",
        )
        log.info("Created folder %s under %s", name, parent_id)
        return created["id"]

    def list_folders(self, parent_id: str) -> list[SourceFile]:
        return self._query(
            f"'{parent_id}' in parents and mimeType='{GOOGLE_FOLDER_MIME}' and trashed=false"
        )

    def list_files(
        self, parent_id: str, mime_types: Optional[Iterable[str]] = None
    ) -> list[SourceFile]:
        query = f"'{parent_id}' in parents and trashed=false"
        mimes = list(mime_types or [])
        if mimes:
            clause = " or ".join(f"mimeType='{m}'" for m in mimes)
            query += f" and ({clause})"
        return self._query(query)

    def read_document(self, file_id: str) -> dict[str, Any]:
        if self.docs_service is None:
            raise RuntimeError("Docs service not configured")
        return self._execute(
            self.docs_service.documents().get(documentId=file_id),
            "docs.documents.get",
        )

    def read_bytes(self, file_id: str) -> bytes:
        return self._execute(
            self.service.files().get_media(fileId=file_id, supportsAllDrives=True),
            "drive.files.get_media",
        )

    def write_json(self, parent_id: str, name: str, payload: Any) -> str:
        from googleapiclient.http import MediaInMemoryUpload

        media = MediaInMemoryUpload(
            _dump_json(payload).encode("utf-8"), mimetype=JSON_MIME, resumable=False
        )
        query = (
            f"name='{_quote(name)}' and '{parent_id}' in parents and trashed=false "
            f"and mimeType!='{GOOGLE_FOLDER_MIME}'"
        )
        existing = self._query(query)
        if existing:
            result = self._execute(
                self.service.files().update(
                    fileId=existing[0].id,
                    media_body=media,
                    fields="id, webViewLink",
                    supportsAllDrives=True,
                ),
                "drive.files.update",
            )
        else:
            result = self._execute(
                self.service.files().create(
                    body={"name": name, "parents": [parent_id], "mimeType": JSON_MIME},
                    media_body=media,
                    fields="id, webViewLink",
                    supportsAllDrives=True,
                ),
                "drive.files.create",
            )
        return result.get("webViewLink") or result["id"]


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------

LOCAL_DOC_SUFFIX = ".gdoc.json"


def _guess_mime(path: Path) -> str:
    if path.is_dir():
        return GOOGLE_FOLDER_MIME
    name = path.name.lower()
    if name.endswith(LOCAL_DOC_SUFFIX):
        return GOOGLE_DOC_MIME
    if name.endswith(".pdf"):
        return PDF_MIME
    if name.endswith(".json"):
        return JSON_MIME
    return "application/octet-stream"


class LocalDocumentStore:
    """Directory-tree document store; ids are root-relative POSIX paths.

    Formatted documents are stored as Docs-API-shaped ``*.gdoc.json`` files.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def path_for(self, file_id: str) -> Path:
        return (self.root / file_id).resolve()

    def _id(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _entry(self, path: Path) -> SourceFile:
        stat = path.stat()
        birth = getattr(stat, "st_birthtime", None)
        created_ms = int(birth * 1000) if birth else int(stat.st_ctime * 1000)
        return SourceFile(
            id=self._id(path),
            name=path.name,
            mime_type=_guess_mime(path),
            modified_ms=int(stat.st_mtime * 1000),
            created_ms=created_ms,
        )

    def exists(self, folder_id: str) -> bool:
        return bool(folder_id) and self.path_for(folder_id).is_dir()

    def find_folder(self, parent_id: str, name: str) -> Optional[str]:
        candidate = self.path_for(parent_id) / name
        return self._id(candidate) if candidate.is_dir() else None

    def ensure_folder(self, parent_id: str, name: str) -> str:
        candidate = self.path_for(parent_id) / name
        candidate.mkdir(parents=True, exist_ok=True)
        return self._id(candidate)

    def list_folders(self, parent_id: str) -> list[SourceFile]:
        parent = self.path_for(parent_id)
        if not parent.is_dir():
            return []
        return [self._entry(p) for p in sorted(parent.iterdir()) if p.is_dir()]

    def list_files(
        self, parent_id: str, mime_types: Optional[Iterable[str]] = None
    ) -> list[SourceFile]:
        parent = self.path_for(parent_id)
        if not parent.is_dir():
            return []
        wanted = set(mime_types or [])
        entries = []
        for path in sorted(parent.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            entry = self._entry(path)
            if wanted and entry.mime_type not in wanted:
                continue
            entries.append(entry)
        return entries

    def read_document(self, file_id: str) -> dict[str, Any]:
        with open(self.path_for(file_id), "r", encoding="utf-8") as fh:
            return json.load(fh)

    def read_bytes(self, file_id: str) -> bytes:
        return self.path_for(file_id).read_bytes()

    def write_json(self, parent_id: str, name: str, payload: Any) -> str:
        target = self.path_for(parent_id) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(_dump_json(payload), encoding="utf-8")
        return str(target)
