"""Pipeline configuration loaded from the environment and CLI overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .models import ConfigurationError
from .retry import RetryPolicy
from .utils import BUS_STOPS_FOLDER_NAME


DEFAULT_BATCH_SIZE = 6
DEFAULT_RECENCY_DAYS = 30
DEFAULT_REGION_SUFFIX = "Baltimore County, MD"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
LOCAL_REG_ED_FOLDER = "Regular Ed Routes"
LOCAL_SPEC_ED_FOLDER = "Special Ed Routes"


@dataclass
class PipelineConfig:
    """High level settings for one pipeline deployment."""

    reg_ed_folder_id: str = ""
    spec_ed_folder_id: str = ""
    destination_folder_id: str = ""
    local_root: Optional[Path] = None
    state_path: Path = field(default_factory=lambda: Path("state/pipeline_state.json"))
    batch_size: int = DEFAULT_BATCH_SIZE
    recency_days: int = DEFAULT_RECENCY_DAYS
    region_suffix: str = DEFAULT_REGION_SUFFIX
    geocode_delay_s: float = 0.2
    lock_timeout_s: float = 5.0
    continuation_delay_s: float = 60.0
    retry_attempts: int = 4
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_GEMINI_MODEL
    maps_api_key: str = ""
    credentials_file: Path = field(default_factory=lambda: Path("credentials.json"))

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_suffix(".lock")

    @property
    def continuation_path(self) -> Path:
        return self.state_path.with_name("continuation.json")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay_s=self.retry_base_delay_s,
            max_delay_s=self.retry_max_delay_s,
        )

    def folder_ids(self) -> tuple[str, str, str]:
        """Return ``(reg_ed, spec_ed, destination)`` folder ids.

        In local mode empty ids fall back to the conventional folder names.
        """
        if self.local_root is None:
            return self.reg_ed_folder_id, self.spec_ed_folder_id, self.destination_folder_id
        return (
            self.reg_ed_folder_id or LOCAL_REG_ED_FOLDER,
            self.spec_ed_folder_id or LOCAL_SPEC_ED_FOLDER,
            self.destination_folder_id or BUS_STOPS_FOLDER_NAME,
        )

    def validate(self) -> None:
        """Raise ``ConfigurationError`` when a required setting is missing."""
        missing = []
        if self.local_root is None:
            for name in ("reg_ed_folder_id", "spec_ed_folder_id", "destination_folder_id"):
                if not getattr(self, name):
                    missing.append(name)
        if not self.gemini_api_key:
            missing.append("gemini_api_key")
        if not self.maps_api_key:
            missing.append("maps_api_key")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if missing:
            raise ConfigurationError("Missing required settings: " + ", ".join(missing))


_ENV_KEYS = {
    "reg_ed_folder_id": "BUSROUTES_REG_ED_FOLDER_ID",
    "spec_ed_folder_id": "BUSROUTES_SPEC_ED_FOLDER_ID",
    "destination_folder_id": "BUSROUTES_DEST_FOLDER_ID",
    "local_root": "BUSROUTES_LOCAL_ROOT",
    "state_path": "BUSROUTES_STATE_PATH",
    "batch_size": "BUSROUTES_BATCH_SIZE",
    "recency_days": "BUSROUTES_RECENCY_DAYS",
    "region_suffix": "BUSROUTES_REGION_SUFFIX",
    "geocode_delay_s": "BUSROUTES_GEOCODE_DELAY_S",
    "lock_timeout_s": "BUSROUTES_LOCK_TIMEOUT_S",
    "continuation_delay_s": "BUSROUTES_CONTINUATION_DELAY_S",
    "retry_attempts": "BUSROUTES_RETRY_ATTEMPTS",
    "gemini_api_key": "GEMINI_API_KEY",
    "gemini_model": "GEMINI_MODEL",
    "maps_api_key": "GOOGLE_MAPS_API_KEY",
    "credentials_file": "BUSROUTES_CREDENTIALS",
}


def _coerce(name: str, raw: Any) -> Any:
    if name in ("local_root", "state_path", "credentials_file"):
        return Path(raw).expanduser()
    if name in ("batch_size", "recency_days", "retry_attempts"):
        return int(raw)
    if name in ("geocode_delay_s", "lock_timeout_s", "continuation_delay_s"):
        return float(raw)
    return str(raw)


def load_config(**overrides: Any) -> PipelineConfig:
    """Build a ``PipelineConfig`` from environment variables.

    Keyword overrides (typically parsed CLI flags) win over the environment;
    ``None`` overrides are ignored.
    """
    values: dict[str, Any] = {}
    known = {f.name for f in fields(PipelineConfig)}
    for name, env_key in _ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw:
            try:
                values[name] = _coerce(name, raw)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid value for {env_key}: {raw!r}") from exc
    for name, value in overrides.items():
        if name not in known:
            raise ConfigurationError(f"Unknown setting: {name}")
        if value is not None:
            values[name] = _coerce(name, value) if isinstance(value, str) else value

    return PipelineConfig(**values)
