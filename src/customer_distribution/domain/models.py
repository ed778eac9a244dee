from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional


class SyncStatus(str, Enum):
    LOCAL = "local"
    SYNCING = "syncing"
    SYNCED = "synced"


class CloudLinkStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


class CloudErrorType(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NETWORK = "network"
    INITIALIZATION = "initialization"
    OTHER = "other"


class RecordValidationError(ValueError):
    pass


_SYNC_VALUES = {s.value for s in SyncStatus}


def _required_text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if isinstance(value, bool) or value is None:
        raise RecordValidationError(f"{key} required")
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be a string")
    value = value.strip()
    if not value:
        raise RecordValidationError(f"{key} required")
    return value


def _optional_text(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be a string")
    return value.strip() or None


def _optional_float(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"{key} must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"{key} must be numeric") from None


@dataclass(frozen=True)
class Customer:
    """One extracted customer row; ``id`` is the natural key."""

    id: str
    name: str
    address: str
    city: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    map_url: Optional[str] = None
    created_at: Optional[str] = None
    sync_status: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Customer":
        if not isinstance(data, dict):
            raise RecordValidationError("customer record must be an object")
        city = data.get("city")
        if city is None:
            city = ""
        elif isinstance(city, str):
            city = city.strip()
        else:
            raise RecordValidationError("city must be a string")
        sync_status = _optional_text(data, "syncStatus")
        if sync_status is not None and sync_status not in _SYNC_VALUES:
            raise RecordValidationError(f"unknown syncStatus: {sync_status}")
        return cls(
            id=_required_text(data, "id"),
            name=_required_text(data, "name"),
            address=_required_text(data, "address"),
            city=city,
            lat=_optional_float(data, "lat"),
            lng=_optional_float(data, "lng"),
            map_url=_optional_text(data, "mapUrl"),
            created_at=_optional_text(data, "createdAt"),
            sync_status=sync_status,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
        }
        optional = {
            "lat": self.lat,
            "lng": self.lng,
            "mapUrl": self.map_url,
            "createdAt": self.created_at,
            "syncStatus": self.sync_status,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out

    def with_changes(self, **changes: Any) -> "Customer":
        return replace(self, **changes)


@dataclass(frozen=True)
class CityStat:
    city: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"city": self.city, "count": self.count}


@dataclass(frozen=True)
class FileInput:
    """A single uploaded file handed to the extraction gateway.

    - kind "image": ``content`` is base64 data (a data URL prefix is tolerated)
    - kind "csv": ``content`` is the decoded text
    """

    name: str
    kind: str
    content: str
    mime_type: Optional[str] = None

    KINDS = ("image", "csv")

    def data_url(self) -> str:
        if self.content.startswith("data:"):
            return self.content
        return f"data:{self.mime_type or 'image/png'};base64,{self.content}"
