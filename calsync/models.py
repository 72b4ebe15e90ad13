from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Optional, Union


TODO = "VTODO"
EVENT = "VEVENT"
AUTH_BASIC = "basic"
AUTH_BEARER = "bearer"

_COMPONENT_ALIASES = {"VTODO": TODO, "TODO": TODO, "VEVENT": EVENT, "EVENT": EVENT}

CALDAV_ISSUE_TYPE = "CALDAV"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class ProviderConfig:
    caldav_url: str = ""
    resource_name: str = ""
    component_type: str = TODO
    auth_type: str = AUTH_BASIC
    username: str = ""
    password: str = ""
    bearer_token: str = ""
    category_filter: str = ""
    enable_write_back: bool = False
    is_transition_issues_enabled: bool = False
    is_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderConfig":
        data = data or {}
        component_type = _COMPONENT_ALIASES.get(_text(data, "component_type").upper(), TODO)
        auth_type = _text(data, "auth_type").lower()
        if auth_type not in {AUTH_BASIC, AUTH_BEARER}:
            auth_type = AUTH_BASIC
        return cls(
            caldav_url=_text(data, "caldav_url"),
            resource_name=_text(data, "resource_name"),
            component_type=component_type,
            auth_type=auth_type,
            username=_text(data, "username"),
            # secrets are kept verbatim, surrounding whitespace can be significant
            password=str(data.get("password") or ""),
            bearer_token=str(data.get("bearer_token") or ""),
            category_filter=_text(data, "category_filter"),
            enable_write_back=bool(data.get("enable_write_back", False)),
            is_transition_issues_enabled=bool(data.get("is_transition_issues_enabled", False)),
            is_enabled=bool(data.get("is_enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_event(self) -> bool:
        return self.component_type == EVENT

    def is_valid(self) -> bool:
        if not self.caldav_url or not self.resource_name:
            return False
        if self.auth_type == AUTH_BEARER:
            return bool(self.bearer_token)
        return bool(self.username) and bool(self.password)


def is_caldav_enabled(cfg: ProviderConfig | None) -> bool:
    return cfg is not None and cfg.is_enabled and cfg.is_valid()


@dataclass
class RawComponent:
    """One calendar object resource as returned by a calendar query.

    ``submit`` is bound to the fetch that produced this resource and writes a
    new payload back to ``url``, guarded by ``etag``.
    """

    data: str
    url: str
    etag: str = ""
    submit: Optional[Callable[[str], None]] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class CaldavTodo:
    id: str
    completed: bool
    item_url: str
    summary: str = ""
    start: datetime | None = None
    due: datetime | None = None
    note: str | None = None
    status: str | None = None
    priority: int | None = None
    percent_complete: int | None = None
    location: str | None = None
    labels: tuple[str, ...] = ()
    etag_hash: int = 0
    related_to: str | None = None
    kind: str = field(default=TODO, init=False)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["due"] = serialize_datetime(self.due)
        payload["labels"] = list(self.labels)
        return payload


@dataclass(frozen=True)
class CaldavEvent:
    """A VEVENT mapped for task import.

    ``duration`` is in milliseconds and is always resolved. ``completed`` is
    constant and ``labels`` mirrors ``categories`` so events can be handled
    wherever a to-do is expected.
    """

    id: str
    item_url: str
    start: datetime
    duration: int
    summary: str = ""
    end: datetime | None = None
    is_all_day: bool = False
    description: str | None = None
    location: str | None = None
    categories: tuple[str, ...] = ()
    etag_hash: int = 0
    kind: str = field(default=EVENT, init=False)

    @property
    def completed(self) -> bool:
        return False

    @property
    def labels(self) -> tuple[str, ...]:
        return self.categories

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["categories"] = list(self.categories)
        payload["labels"] = list(self.categories)
        payload["completed"] = False
        return payload


CaldavItem = Union[CaldavTodo, CaldavEvent]


def is_caldav_event(item: CaldavItem) -> bool:
    return item.kind == EVENT


@dataclass(frozen=True)
class EventUpdate:
    summary: str | None = None
    description: str | None = None
    dtstart: datetime | None = None
    dtend: datetime | None = None

    def is_empty(self) -> bool:
        return (
            self.summary is None
            and self.description is None
            and self.dtstart is None
            and self.dtend is None
        )


@dataclass(frozen=True)
class SearchResult:
    title: str
    issue_data: CaldavItem
    issue_type: str = CALDAV_ISSUE_TYPE


@dataclass
class TaskData:
    title: str
    issue_last_updated: int
    notes: str | None = None
    time_estimate: int | None = None
    due_day: str | None = None
    due_with_time: datetime | None = None
    related_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["due_with_time"] = serialize_datetime(self.due_with_time)
        return payload


@dataclass
class LinkedTask:
    """The slice of a local task that links it to a remote item."""

    id: str
    issue_id: str | None = None
    issue_provider_id: str | None = None
    issue_last_updated: int | None = None
    title: str = ""


@dataclass
class FreshIssueData:
    task: LinkedTask
    task_changes: dict[str, Any]
    issue: CaldavItem
    issue_title: str = ""
