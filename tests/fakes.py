from __future__ import annotations

import functools
from typing import Any

from calsync.connection import CalendarHandle, Session, calendar_matches
from calsync.errors import ErrorNotice
from calsync.models import EVENT, TODO, ProviderConfig, RawComponent
from calsync.queries import ComponentQuery


CAL_URL = "https://cal.example.com/dav/calendars/u/tasks/"


def ical(component: str, uid: str, summary: str, *lines: str) -> str:
    body = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//calsync tests//EN",
        f"BEGIN:{component}",
        f"UID:{uid}",
        "DTSTAMP:20250101T000000Z",
        f"SUMMARY:{summary}",
        *lines,
        f"END:{component}",
        "END:VCALENDAR",
        "",
    ]
    return "\r\n".join(body)


def todo_ical(uid: str, summary: str, *lines: str) -> str:
    return ical(TODO, uid, summary, *lines)


def event_ical(uid: str, summary: str, *lines: str) -> str:
    return ical(EVENT, uid, summary, *lines)


def basic_config(**overrides: Any) -> ProviderConfig:
    data = {
        "caldav_url": "https://cal.example.com",
        "resource_name": "tasks",
        "auth_type": "basic",
        "username": "u",
        "password": "p",
        "component_type": "TODO",
        "category_filter": "",
    }
    data.update(overrides)
    return ProviderConfig.from_dict(data)


class FakeCalendar(CalendarHandle):
    def __init__(self, name: str = "tasks", url: str = CAL_URL, read_only: bool = False) -> None:
        super().__init__(client=None, calendar=None, name=name, url=url, read_only=read_only)
        self.resources: dict[str, tuple[str, str, str]] = {}
        self.queries: list[ComponentQuery] = []
        self.puts: list[tuple[str, str, str]] = []
        self.deletes: list[str] = []
        self.fail_with: Exception | None = None

    def add(self, uid: str, component: str, data: str, etag: str = "") -> None:
        self.resources[uid] = (component, data, etag or f'"etag-{uid}"')

    def _url(self, uid: str) -> str:
        return f"{self.url}{uid}.ics"

    def report(self, query: ComponentQuery) -> list[RawComponent]:
        self.queries.append(query)
        if self.fail_with is not None:
            raise self.fail_with
        found: list[RawComponent] = []
        for uid, (component, data, etag) in self.resources.items():
            if component != query.component:
                continue
            if query.uid is not None and uid != query.uid:
                continue
            if query.open_only and "\nCOMPLETED:" in data:
                continue
            url = self._url(uid)
            found.append(
                RawComponent(data=data, url=url, etag=etag, submit=functools.partial(self.put, url, etag))
            )
        return found

    def put(self, url: str, etag: str, payload: str) -> None:
        self.puts.append((url, etag, payload))

    def delete(self, url: str) -> None:
        self.deletes.append(url)
        for uid in list(self.resources):
            if self._url(uid) == url:
                del self.resources[uid]


class FakeSession(Session):
    def __init__(self, *handles: CalendarHandle) -> None:
        super().__init__(client=None, principal=None)
        self.handles = list(handles)
        self.find_calls = 0

    def find_calendar(self, resource_name: str) -> CalendarHandle | None:
        self.find_calls += 1
        for handle in self.handles:
            if calendar_matches(handle.name, handle.url, resource_name):
                return handle
        return None


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[ErrorNotice] = []

    def notify(self, notice: ErrorNotice) -> None:
        self.notices.append(notice)
