from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from caldav.elements import cdav, dav

from calsync.models import EVENT, TODO


EVENT_WINDOW_DAYS = 30


def format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def event_window(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Today at local midnight until the same time EVENT_WINDOW_DAYS later."""
    local_now = (now or datetime.now()).astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
    # wall-clock days: both ends sit at local midnight across DST changes
    start = midnight.astimezone()
    end = (midnight + timedelta(days=EVENT_WINDOW_DAYS)).astimezone()
    return start, end


@dataclass(frozen=True)
class ComponentQuery:
    component: str
    uid: str | None = None
    open_only: bool = False
    start: datetime | None = None
    end: datetime | None = None

    def filter_tree(self) -> cdav.CompFilter:
        component_filter = cdav.CompFilter(self.component)
        if self.uid is not None:
            component_filter += cdav.PropFilter("UID") + cdav.TextMatch(self.uid)
        elif self.open_only:
            component_filter += cdav.PropFilter("COMPLETED") + cdav.NotDefined()
        elif self.start is not None and self.end is not None:
            time_range = cdav.TimeRange()
            time_range.attributes["start"] = format_utc(self.start)
            time_range.attributes["end"] = format_utc(self.end)
            component_filter += time_range
        return cdav.CompFilter("VCALENDAR") + component_filter

    def to_xml(self) -> cdav.CalendarQuery:
        prop = dav.Prop() + [dav.GetEtag(), cdav.CalendarData()]
        return cdav.CalendarQuery() + [prop, cdav.Filter() + self.filter_tree()]

    def describe(self) -> str:
        if self.uid is not None:
            return f"{self.component} uid={self.uid}"
        if self.start is not None and self.end is not None:
            return f"{self.component} {format_utc(self.start)}..{format_utc(self.end)}"
        return f"{self.component} open_only={self.open_only}"


def open_todos(filter_open: bool = True) -> ComponentQuery:
    return ComponentQuery(TODO, open_only=filter_open)


def todo_by_uid(uid: str) -> ComponentQuery:
    return ComponentQuery(TODO, uid=uid)


def event_by_uid(uid: str) -> ComponentQuery:
    return ComponentQuery(EVENT, uid=uid)


def events_in_window(start: datetime, end: datetime) -> ComponentQuery:
    return ComponentQuery(EVENT, start=start, end=end)
