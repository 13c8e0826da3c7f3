"""Settings loaded from ``config/settings.toml``."""
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import tomllib
from pydantic import BaseModel, Field, ValidationError

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")


class ApiSettings(BaseModel):
    """Where the object store lives and how to authenticate against it."""

    base_url: str = "https://api.hubapi.com"
    token_env: str = Field(default="CRM_TOKEN", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    user_agent: str = "crmdq/0.1"

    def token(self) -> Optional[str]:
        return os.environ.get(self.token_env) or None


class SchedulerSettings(BaseModel):
    base_delay_ms: int = Field(default=330, ge=0)
    min_delay_ms: int = Field(default=100, ge=0)
    max_delay_ms: int = Field(default=10_000, gt=0)
    low_quota_threshold: int = Field(default=5, ge=0)
    max_retries: int = Field(default=5, ge=0)
    backoff_base_ms: int = Field(default=500, ge=0)
    backoff_cap_ms: int = Field(default=30_000, ge=0)
    max_retry_after_ms: int = Field(default=120_000, ge=0)
    remaining_header: str = "x-hubspot-ratelimit-remaining"
    interval_header: str = "x-hubspot-ratelimit-interval-milliseconds"


class ScanSettings(BaseModel):
    page_size: int = Field(default=100, gt=0, le=100)
    page_pause_ms: int = Field(default=0, ge=0)
    max_records: Optional[int] = Field(default=None, gt=0)
    fuzzy_threshold: float = Field(default=0.85, ge=0, le=1)
    contact_properties: List[str] = Field(
        default_factory=lambda: ["email", "firstname", "lastname", "company", "phone", "createdate"]
    )
    company_properties: List[str] = Field(
        default_factory=lambda: ["name", "domain", "website", "phone", "createdate"]
    )


class StorageSettings(BaseModel):
    root: Path = Path("data/store")
    action_limit: int = Field(default=1000, gt=0)
    failure_limit: int = Field(default=2000, gt=0)
    scan_limit: int = Field(default=500, gt=0)


class Settings(BaseModel):
    api: ApiSettings = Field(default_factory=ApiSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    def properties_for(self, object_type: str) -> List[str]:
        if object_type == "companies":
            return list(self.scan.company_properties)
        return list(self.scan.contact_properties)


def load_settings(path: Path = DEFAULT_SETTINGS_PATH) -> Settings:
    """Read and validate the TOML settings; a missing file yields defaults."""
    if not path.exists():
        return Settings()
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings in {path}: {exc}") from exc
