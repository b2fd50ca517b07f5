import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

MEDIA_CLASSES = ("image", "video", "link")
ORIENTATIONS = ("landscape", "portrait")
LINK_MIME = "link/external"

BRIGHTNESS_MIN = 0
BRIGHTNESS_MAX = 200
DEFAULT_DURATION_LIMITS = (1, 3600)

_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def media_class_for(mime: str) -> Optional[str]:
    mime = (mime or "").lower()
    if mime.startswith("link/"):
        return "link"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("image/"):
        return "image"
    return None


def parse_clock(value: str) -> int:
    """Returns the minute of day for an ``HH:MM`` string."""
    if not isinstance(value, str):
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    match = _CLOCK_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time '{value}'; expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes):
        raise ValueError(f"Invalid time '{value}'; expected HH:MM")
    return hours * 60 + minutes


def positive_seconds(value: object) -> Optional[float]:
    """Normalises an optional duration override; non-positive values mean unset."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds != seconds or seconds <= 0:
        return None
    return seconds


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ContentItem:
    id: str
    name: str
    mime: str
    url: str
    size: int = 0
    storage: str = "local"
    path: str = ""
    uploaded_at: int = field(default_factory=now_ms)
    duration_override: Optional[float] = None
    natural_duration: Optional[float] = None

    @property
    def media_class(self) -> Optional[str]:
        return media_class_for(self.mime)

    @property
    def source_ref(self) -> str:
        return self.url

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "mime": self.mime,
            "size": self.size,
            "storage": self.storage,
            "path": self.path,
            "url": self.url,
            "uploadedAt": self.uploaded_at,
        }
        if self.duration_override is not None:
            payload["durationSeconds"] = self.duration_override
        if self.natural_duration is not None:
            payload["naturalDuration"] = self.natural_duration
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ContentItem":
        identifier = data.get("id")
        if not identifier:
            raise ValueError("Content item id is required")
        natural = data.get("naturalDuration")
        return cls(
            id=str(identifier),
            name=str(data.get("name") or identifier),
            mime=str(data.get("mime") or "application/octet-stream"),
            url=str(data.get("url") or ""),
            size=int(data.get("size") or 0),
            storage=str(data.get("storage") or "local"),
            path=str(data.get("path") or ""),
            uploaded_at=int(data.get("uploadedAt") or now_ms()),
            duration_override=positive_seconds(data.get("durationSeconds")),
            natural_duration=positive_seconds(natural),
        )


@dataclass
class ScheduleRule:
    id: str
    content_item_id: str
    start_at: int
    end_at: int
    order: int = 0
    days: Optional[List[int]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_override: Optional[float] = None

    def validate(self) -> None:
        if not self.id:
            raise ValueError("Schedule id is required")
        if not self.content_item_id:
            raise ValueError("Schedule fileId is required")
        if self.end_at <= self.start_at:
            raise ValueError("Schedule endAt must be after startAt")
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("Daily window requires both startTime and endTime")
        if self.start_time is not None and self.end_time is not None:
            if parse_clock(self.end_time) <= parse_clock(self.start_time):
                raise ValueError("End time must be after start time for daily window")

    @property
    def daily_clock(self) -> Optional[tuple]:
        if self.start_time is None and self.end_time is None:
            return None
        return (self.start_time, self.end_time)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "fileId": self.content_item_id,
            "startAt": self.start_at,
            "endAt": self.end_at,
            "order": self.order,
        }
        if self.days:
            payload["days"] = list(self.days)
        if self.start_time is not None:
            payload["startTime"] = self.start_time
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        if self.duration_override is not None:
            payload["durationSeconds"] = self.duration_override
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ScheduleRule":
        raw_days = data.get("days")
        days: Optional[List[int]] = None
        if isinstance(raw_days, (list, tuple)):
            days = []
            for value in raw_days:
                try:
                    day = int(value)
                except (TypeError, ValueError):
                    continue
                if 0 <= day <= 6 and day not in days:
                    days.append(day)
            days = days or None
        return cls(
            id=str(data.get("id") or ""),
            content_item_id=str(data.get("fileId") or ""),
            start_at=int(data.get("startAt") or 0),
            end_at=int(data.get("endAt") or 0),
            order=int(data.get("order") or 0),
            days=days,
            start_time=data.get("startTime") or None,
            end_time=data.get("endTime") or None,
            duration_override=positive_seconds(data.get("durationSeconds")),
        )


@dataclass
class GlobalSettings:
    brightness: int = 100
    orientation: str = "landscape"
    auto_start: bool = True
    default_image_duration: int = 10
    default_link_duration: int = 30

    def to_dict(self) -> Dict[str, object]:
        return {
            "brightness": self.brightness,
            "orientation": self.orientation,
            "autoStart": self.auto_start,
            "defaultImageDuration": self.default_image_duration,
            "defaultLinkDuration": self.default_link_duration,
        }

    def merged(self, updates: Dict[str, object]) -> "GlobalSettings":
        """Returns a copy with every valid field of ``updates`` applied.

        Invalid or out-of-range values are skipped; see ``valid_setting_updates``.
        """
        data = self.to_dict()
        data.update(valid_setting_updates(updates))
        return GlobalSettings.from_dict(data)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, object]]) -> "GlobalSettings":
        data = data or {}
        defaults = cls()
        orientation = data.get("orientation", defaults.orientation)
        return cls(
            brightness=clamp_brightness(data.get("brightness", defaults.brightness)),
            orientation=orientation if orientation in ORIENTATIONS else defaults.orientation,
            auto_start=bool(data.get("autoStart", defaults.auto_start)),
            default_image_duration=int(data.get("defaultImageDuration") or defaults.default_image_duration),
            default_link_duration=int(data.get("defaultLinkDuration") or defaults.default_link_duration),
        )


@dataclass(frozen=True)
class DisplayListEntry:
    content_item_id: str
    duration_override: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"fileId": self.content_item_id}
        if self.duration_override is not None:
            payload["durationSeconds"] = self.duration_override
        return payload


def clamp_brightness(value: object, fallback: int = 100) -> int:
    if not _is_number(value):
        return fallback
    return int(max(BRIGHTNESS_MIN, min(BRIGHTNESS_MAX, round(value))))


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


class CatalogRepository(Protocol):
    """Read side of the content and schedule registries."""

    def list_content_items(self) -> List[ContentItem]:
        ...

    def get_content_item(self, identifier: str) -> Optional[ContentItem]:
        ...

    def list_schedule_rules(self) -> List[ScheduleRule]:
        ...

    def get_global_settings(self) -> GlobalSettings:
        ...


def valid_setting_updates(updates: Dict[str, object]) -> Dict[str, object]:
    """Filters a settings update down to the fields that pass validation."""
    accepted: Dict[str, object] = {}
    for key, value in (updates or {}).items():
        if key == "autoStart" and isinstance(value, bool):
            accepted[key] = value
        elif key == "brightness" and _is_number(value):
            if BRIGHTNESS_MIN <= value <= BRIGHTNESS_MAX:
                accepted[key] = int(round(value))
        elif key == "orientation" and value in ORIENTATIONS:
            accepted[key] = value
        elif key in ("defaultImageDuration", "defaultLinkDuration") and _is_number(value):
            low, high = DEFAULT_DURATION_LIMITS
            if low <= value <= high:
                accepted[key] = int(round(value))
    return accepted
