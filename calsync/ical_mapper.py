"""Mapping between iCalendar payloads and normalized to-do/event records."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from icalendar import Calendar as ICalendar
from icalendar import Component

from calsync.errors import MalformedComponentError
from calsync.models import (
    EVENT,
    TODO,
    CaldavEvent,
    CaldavTodo,
    EventUpdate,
    RawComponent,
    date_to_datetime,
)


logger = logging.getLogger(__name__)

ALL_DAY_DURATION = timedelta(days=1)
DEFAULT_EVENT_DURATION = timedelta(hours=1)
_MILLISECOND = timedelta(milliseconds=1)

_FOLD = re.compile(r"\r?\n[ \t]")
_NUMERIC_LINE = re.compile(
    r"^(?:PRIORITY|PERCENT-COMPLETE)(?:;[^:\r\n]*)?:([^\r\n]*)(?:\r?\n|$)", re.IGNORECASE | re.MULTILINE
)
_INTEGER = re.compile(r"[+-]?\d+")


def hash_etag(etag: str) -> int:
    """Fold an etag into a signed 32-bit integer (``h = h * 31 + c``)."""
    value = 0
    for char in etag or "":
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _drop_non_numeric(text: str) -> str:
    """Remove PRIORITY/PERCENT-COMPLETE lines whose value is not an integer.

    icalendar rejects the whole VTODO on such a value, so the property is
    treated as absent instead.
    """

    def _keep(match: re.Match) -> str:
        if _INTEGER.fullmatch(match.group(1).strip()):
            return match.group(0)
        logger.debug("Dropping non-numeric line %r", match.group(0).strip())
        return ""

    return _NUMERIC_LINE.sub(_keep, _FOLD.sub("", text))


def _load(raw: RawComponent, name: str) -> tuple[ICalendar, Component]:
    try:
        calendar_obj = ICalendar.from_ical(_drop_non_numeric(decode_raw_ical(raw.data)))
    except ValueError as exc:
        raise MalformedComponentError(f"Unparseable calendar data at {raw.url}", url=raw.url) from exc
    for component in calendar_obj.walk():
        if component.name == name:
            return calendar_obj, component
    logger.debug("No %s in resource %s", name, raw.url)
    raise MalformedComponentError(f"No {name.lower()} found at {raw.url}", url=raw.url)


def _text(component: Component, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    return str(value)


def _int(component: Component, name: str) -> int | None:
    value = _text(component, name)
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _decoded(component: Component, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _categories(component: Component) -> tuple[str, ...]:
    value = component.get("CATEGORIES")
    if value is None:
        return ()
    # only the first CATEGORIES line is read
    if isinstance(value, list):
        value = value[0] if value else None
    cats = getattr(value, "cats", None)
    if cats is None:
        return (str(value),) if value else ()
    return tuple(str(item) for item in cats)


def _is_date_only(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def parse_todo(raw: RawComponent) -> CaldavTodo:
    _, todo = _load(raw, TODO)
    return CaldavTodo(
        id=_text(todo, "UID") or "",
        completed=todo.get("COMPLETED") is not None,
        item_url=raw.url,
        summary=_text(todo, "SUMMARY") or "",
        start=date_to_datetime(_decoded(todo, "DTSTART")),
        due=date_to_datetime(_decoded(todo, "DUE")),
        note=_text(todo, "DESCRIPTION") or None,
        status=_text(todo, "STATUS") or None,
        priority=_int(todo, "PRIORITY"),
        percent_complete=_int(todo, "PERCENT-COMPLETE"),
        location=_text(todo, "LOCATION") or None,
        labels=_categories(todo),
        etag_hash=hash_etag(raw.etag),
        related_to=_text(todo, "RELATED-TO") or None,
    )


def parse_event(raw: RawComponent, now: Callable[[], datetime] = _utc_now) -> CaldavEvent:
    _, vevent = _load(raw, EVENT)
    dtstart_raw = _decoded(vevent, "DTSTART")
    is_all_day = _is_date_only(dtstart_raw)
    start = date_to_datetime(dtstart_raw) or now()

    end = date_to_datetime(_decoded(vevent, "DTEND"))
    duration_value = _decoded(vevent, "DURATION")
    if end is not None:
        duration = end - start
    elif isinstance(duration_value, timedelta):
        duration = duration_value
        end = start + duration
    elif is_all_day:
        duration = ALL_DAY_DURATION
        end = start + duration
    else:
        duration = DEFAULT_EVENT_DURATION
        end = start + duration

    return CaldavEvent(
        id=_text(vevent, "UID") or "",
        item_url=raw.url,
        summary=_text(vevent, "SUMMARY") or "",
        start=start,
        end=end,
        duration=duration // _MILLISECOND,
        is_all_day=is_all_day,
        description=_text(vevent, "DESCRIPTION") or None,
        location=_text(vevent, "LOCATION") or None,
        categories=_categories(vevent),
        etag_hash=hash_etag(raw.etag),
    )


def _set(component: Component, name: str, value: Any) -> None:
    component.pop(name, None)
    component.add(name, value)


def _bump_revision(component: Component, now: datetime) -> None:
    _set(component, "LAST-MODIFIED", now)
    _set(component, "DTSTAMP", now)
    # Clients such as Thunderbird ignore updates that keep the same SEQUENCE.
    sequence = _int(component, "SEQUENCE")
    _set(component, "SEQUENCE", 1 if sequence is None else sequence + 1)


def _serialize(raw: RawComponent, calendar_obj: ICalendar) -> RawComponent:
    return replace(raw, data=calendar_obj.to_ical().decode("utf-8"))


def apply_todo_update(
    raw: RawComponent,
    completed: bool | None = None,
    summary: str | None = None,
    now: Callable[[], datetime] = _utc_now,
) -> RawComponent | None:
    """Return the updated resource, or None when nothing differs."""
    calendar_obj, todo = _load(raw, TODO)
    timestamp = now()
    changed = False

    if completed is not None and completed != (todo.get("COMPLETED") is not None):
        if completed:
            _set(todo, "COMPLETED", timestamp)
        else:
            del todo["COMPLETED"]
        changed = True

    if summary is not None and summary != (_text(todo, "SUMMARY") or ""):
        _set(todo, "SUMMARY", summary)
        changed = True

    if not changed:
        return None
    _bump_revision(todo, timestamp)
    return _serialize(raw, calendar_obj)


def apply_event_update(
    raw: RawComponent,
    updates: EventUpdate,
    now: Callable[[], datetime] = _utc_now,
) -> RawComponent | None:
    """Return the updated resource, or None when nothing differs."""
    calendar_obj, vevent = _load(raw, EVENT)
    changed = False

    if updates.summary is not None and updates.summary != (_text(vevent, "SUMMARY") or ""):
        _set(vevent, "SUMMARY", updates.summary)
        changed = True

    if updates.description is not None and updates.description != (_text(vevent, "DESCRIPTION") or ""):
        if updates.description:
            _set(vevent, "DESCRIPTION", updates.description)
        else:
            del vevent["DESCRIPTION"]
        changed = True

    for name, value in (("DTSTART", updates.dtstart), ("DTEND", updates.dtend)):
        if value is None:
            continue
        new_value = date_to_datetime(value)
        if new_value != date_to_datetime(_decoded(vevent, name)):
            _set(vevent, name, new_value.astimezone(timezone.utc))
            if name == "DTEND":
                # DTEND and DURATION are mutually exclusive
                vevent.pop("DURATION", None)
            changed = True

    if not changed:
        return None
    _bump_revision(vevent, now())
    return _serialize(raw, calendar_obj)
