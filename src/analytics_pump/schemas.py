# In src/analytics_pump/schemas.py

from datetime import datetime, timezone
from typing import TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Response code used by the gateway for records that only carry network statistics.
NETWORK_PULSE_CODE = -1


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Static Type Hinting (for mypy and IDEs) ---


class LatencyDict(TypedDict):
    total: int
    upstream: int


class AnalyticsRecordDict(TypedDict, total=False):
    """
    A TypedDict representing the JSON shape of a single gateway analytics
    record as it arrives on the queue. Used for static type analysis.
    """

    method: str
    path: str
    response_code: int
    api_key: str
    timestamp: str
    api_version: str
    api_name: str
    api_id: str
    org_id: str
    oauth_id: str
    request_time: int
    raw_request: str
    raw_response: str
    latency: LatencyDict
    tags: list[str]
    alias: str
    track_path: bool


# --- Runtime Validation (using Pydantic) ---


class _RecordModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Country(_RecordModel):
    iso_code: str = ""


class GeoData(_RecordModel):
    country: Country = Field(default_factory=Country)


class NetworkStats(_RecordModel):
    open_connections: int = 0
    closed_connections: int = 0
    bytes_in: int = 0
    bytes_out: int = 0


class Latency(_RecordModel):
    total: int = 0
    upstream: int = 0


class AnalyticsRecord(_RecordModel):
    """
    Pydantic model for one HTTP transaction logged by the gateway.

    Instances are frozen; the batcher produces redacted copies through
    `model_copy(update=...)` rather than mutating the original.
    """

    method: str = ""
    host: str = ""
    path: str = ""
    raw_path: str = ""
    content_length: int = 0
    user_agent: str = ""
    response_code: int = 0
    api_key: str = ""
    timestamp: datetime
    api_version: str = ""
    api_name: str = ""
    api_id: str = ""
    org_id: str = ""
    oauth_id: str = ""
    request_time: int = 0
    raw_request: str = ""
    raw_response: str = ""
    ip_address: str = ""
    geo: GeoData = Field(default_factory=GeoData)
    network: NetworkStats = Field(default_factory=NetworkStats)
    latency: Latency = Field(default_factory=Latency)
    tags: tuple[str, ...] = ()
    alias: str = ""
    track_path: bool = False
    expire_at: datetime | None = Field(None, alias="expireAt")

    @field_validator("tags", mode="before")
    @classmethod
    def _none_tags_as_empty(cls, value):
        return () if value is None else value

    @field_validator("timestamp", "expire_at", mode="after")
    @classmethod
    def _normalize_timezone(cls, value):
        return None if value is None else as_utc(value)

    @property
    def is_network_pulse(self) -> bool:
        return self.response_code == NETWORK_PULSE_CODE

    @property
    def country_code(self) -> str:
        return self.geo.country.iso_code


class UptimeRecord(_RecordModel):
    """Pydantic model for one uptime health-check result."""

    url: str = ""
    request_time: int = 0
    response_code: int = 0
    tcp_error: bool = False
    server_error: bool = False
    timestamp: datetime
    expire_at: datetime | None = Field(None, alias="expireAt")
    api_id: str = ""
    org_id: str = ""

    @field_validator("timestamp", "expire_at", mode="after")
    @classmethod
    def _normalize_timezone(cls, value):
        return None if value is None else as_utc(value)
