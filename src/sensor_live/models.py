from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sensor_live.exceptions import PayloadError

# .NET serialises 7 fractional digits; datetime only keeps microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_rfc3339_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Parse a backend timestamp.

    Supported:
    - datetime instances (naive ones are taken as UTC)
    - epoch milliseconds (int/float)
    - RFC3339 strings, "Z" suffix accepted
    """
    try:
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            dt = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        elif isinstance(value, str) and value.strip():
            s = _FRACTION_RE.sub(r"\1", value.strip().replace("Z", "+00:00"))
            dt = datetime.fromisoformat(s)
        else:
            raise ValueError(f"Unsupported timestamp: {value!r}")
    except (OverflowError, OSError) as exc:
        raise ValueError(f"Timestamp out of range: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True, slots=True)
class Reading:
    """One timestamped sensor measurement as produced by the backend."""

    sensor_type: str
    sensor_instance_id: str
    value: float
    unit: str
    timestamp: datetime

    def as_payload(self) -> dict[str, Any]:
        return {
            "sensorType": self.sensor_type,
            "sensorInstanceId": self.sensor_instance_id,
            "value": self.value,
            "unit": self.unit,
            "timestamp": to_rfc3339_z(self.timestamp),
        }


class ReadingPayload(BaseModel):
    """Wire shape of a reading, shared by the REST and push paths."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sensor_type: str = Field(alias="sensorType", min_length=1)
    sensor_instance_id: str = Field(alias="sensorInstanceId", min_length=1)
    value: float = Field(allow_inf_nan=False)
    unit: str = ""
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    def to_reading(self) -> Reading:
        return Reading(
            sensor_type=self.sensor_type,
            sensor_instance_id=self.sensor_instance_id,
            value=self.value,
            unit=self.unit,
            timestamp=self.timestamp,
        )


def parse_reading(payload: Any) -> Reading:
    """Validate a loosely typed payload into a strict ``Reading``.

    Raises ``PayloadError`` rather than returning a partial object.
    """
    if isinstance(payload, Reading):
        return payload
    if not isinstance(payload, dict):
        raise PayloadError(f"Reading payload must be an object, got {type(payload).__name__}")
    try:
        return ReadingPayload.model_validate(payload).to_reading()
    except ValidationError as exc:
        raise PayloadError(f"Malformed reading payload: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True, slots=True)
class LiveStat:
    """Reconciled per-instance display record."""

    instance_id: str
    latest_value: float
    average_value: float
    unit: str
    type: str
    last_updated: datetime


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    status: ConnectionStatus
    reason: str | None = None

    @classmethod
    def closed(cls, reason: str) -> ConnectionState:
        return cls(ConnectionStatus.CLOSED, reason)

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


DISCONNECTED = ConnectionState(ConnectionStatus.DISCONNECTED)
CONNECTING = ConnectionState(ConnectionStatus.CONNECTING)
CONNECTED = ConnectionState(ConnectionStatus.CONNECTED)


@dataclass(slots=True)
class ChartRow:
    """One time bucket of aligned series; series without data are absent, not zero."""

    bucket_key: str
    values: dict[str, float] = field(default_factory=dict)

    def get(self, series_id: str) -> float | None:
        return self.values.get(series_id)

    def __contains__(self, series_id: object) -> bool:
        return series_id in self.values

    def as_dict(self) -> dict[str, Any]:
        return {"bucket": self.bucket_key, **self.values}


@dataclass(frozen=True, slots=True)
class AverageResult:
    instance_id: str
    average: float
    count: int


@dataclass(frozen=True, slots=True)
class ReadingPage:
    data: list[Reading]
    page_number: int
    page_size: int
    total_records: int

    @property
    def has_more(self) -> bool:
        return self.page_number * self.page_size < self.total_records


@dataclass(frozen=True, slots=True)
class ReadingFilter:
    """Window/filter for the paged readings query."""

    sensor_type: str | None = None
    sensor_instance_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    sort_by: str = "Timestamp"
    sort_descending: bool = False
    page_number: int = 1
    page_size: int = 1000

    def as_query_params(self) -> dict[str, str]:
        params: dict[str, str] = {
            "sortBy": self.sort_by,
            "sortDescending": "true" if self.sort_descending else "false",
            "pageNumber": str(self.page_number),
            "pageSize": str(self.page_size),
        }
        if self.sensor_type:
            params["sensorType"] = self.sensor_type
        if self.sensor_instance_id:
            params["sensorInstanceId"] = self.sensor_instance_id
        if self.start_time is not None:
            params["startDate"] = to_rfc3339_z(self.start_time)
        if self.end_time is not None:
            params["endDate"] = to_rfc3339_z(self.end_time)
        return params
