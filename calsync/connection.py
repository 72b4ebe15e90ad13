from __future__ import annotations

import asyncio
import base64
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import caldav
from caldav.elements import dav
from requests.auth import AuthBase

from calsync.errors import CaldavNetworkError, CalendarNotFoundError
from calsync.ical_mapper import decode_raw_ical
from calsync.models import AUTH_BEARER, ProviderConfig, RawComponent
from calsync.queries import ComponentQuery


logger = logging.getLogger(__name__)

CLIENT_ID = "calsync"
ICAL_CONTENT_TYPE = 'text/calendar; charset="utf-8"'
WRITE_PRIVILEGES = {"write", "write-content", "all"}

_PRIVILEGE_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:current-user-privilege-set/></d:prop>
</d:propfind>"""

T = TypeVar("T")


def session_key(cfg: ProviderConfig) -> str:
    if cfg.auth_type == AUTH_BEARER:
        auth_part = f"bearer|{cfg.bearer_token}"
    else:
        auth_part = f"basic|{cfg.username}|{cfg.password}"
    return f"{cfg.caldav_url}|{auth_part}"


def calendar_slug(url: str) -> str:
    return str(url or "").rstrip("/").rsplit("/", 1)[-1]


def calendar_matches(display_name: str, url: str, resource_name: str) -> bool:
    return bool(resource_name) and resource_name in {display_name, calendar_slug(url)}


class CaldavRequestAuth(AuthBase):
    """Adds the client id and Authorization header to every outgoing request."""

    def __init__(self, authorization: str) -> None:
        self.authorization = authorization

    @classmethod
    def from_config(cls, cfg: ProviderConfig) -> "CaldavRequestAuth":
        if cfg.auth_type == AUTH_BEARER:
            return cls(f"Bearer {cfg.bearer_token}")
        token = base64.b64encode(f"{cfg.username}:{cfg.password}".encode("utf-8")).decode("ascii")
        return cls(f"Basic {token}")

    def __call__(self, request: Any) -> Any:
        request.headers["X-Requested-With"] = CLIENT_ID
        request.headers["Authorization"] = self.authorization
        return request


def _raise_for_status(response: Any, action: str) -> None:
    status = int(getattr(response, "status", 0) or 0)
    if status >= 400:
        reason = getattr(response, "reason", "") or ""
        raise CaldavNetworkError(f"Failed to {action}: {status} {reason}".rstrip(), status=status)


def _propstat_ok(propstat: Any) -> bool:
    status = propstat.find("{DAV:}status")
    if status is None or not status.text:
        return True
    parts = status.text.split()
    return len(parts) > 1 and parts[1] == "200"


def _has_write_privilege(tree: Any) -> bool | None:
    """None when the server did not report a privilege set."""
    if tree is None:
        return None
    propstats = list(tree.iter("{DAV:}propstat"))
    scopes = [p for p in propstats if _propstat_ok(p)] if propstats else [tree]
    privilege_sets = [
        privilege_set
        for scope in scopes
        for privilege_set in scope.iter("{DAV:}current-user-privilege-set")
        if privilege_set.find("{DAV:}privilege") is not None
    ]
    if not privilege_sets:
        return None
    for privilege_set in privilege_sets:
        for privilege in privilege_set.iter("{DAV:}privilege"):
            for grant in privilege:
                name = str(grant.tag).rsplit("}", 1)[-1]
                if name in WRITE_PRIVILEGES:
                    return True
    return False


class CalendarHandle:
    """A resolved remote calendar. All methods block; callers run them off-loop."""

    def __init__(
        self,
        client: Any,
        calendar: Any,
        name: str,
        url: str,
        read_only: bool = False,
    ) -> None:
        self.client = client
        self.calendar = calendar
        self.name = name
        self.url = url
        self.read_only = read_only

    def report(self, query: ComponentQuery) -> list[RawComponent]:
        _, objects = self.calendar._request_report_build_resultlist(
            query.to_xml(), props=[dav.GetEtag()]
        )
        components: list[RawComponent] = []
        for obj in objects:
            url = str(obj.url)
            props = getattr(obj, "props", None) or {}
            etag = str(props.get(dav.GetEtag.tag) or "")
            components.append(
                RawComponent(
                    data=decode_raw_ical(obj.data),
                    url=url,
                    etag=etag,
                    submit=functools.partial(self.put, url, etag),
                )
            )
        return components

    def put(self, url: str, etag: str, payload: str) -> None:
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if etag:
            headers["If-Match"] = etag
        response = self.client.put(url, payload, headers)
        _raise_for_status(response, "update item")

    def delete(self, url: str) -> None:
        response = self.client.delete(url)
        _raise_for_status(response, "delete event")


@dataclass
class Session:
    client: Any
    principal: Any
    calendars: dict[str, CalendarHandle] = field(default_factory=dict)
    pending: dict[str, asyncio.Task] = field(default_factory=dict, repr=False)

    def _is_read_only(self, url: str) -> bool:
        response = self.client.propfind(url, _PRIVILEGE_QUERY, depth=0)
        return _has_write_privilege(getattr(response, "tree", None)) is False

    def find_calendar(self, resource_name: str) -> CalendarHandle | None:
        for calendar in self.principal.calendars():
            url = str(calendar.url)
            name = getattr(calendar, "name", "") or ""
            if calendar_matches(name, url, resource_name):
                return CalendarHandle(
                    self.client,
                    calendar,
                    name=name or calendar_slug(url),
                    url=url,
                    read_only=self._is_read_only(url),
                )
        return None


def open_session(cfg: ProviderConfig) -> Session:
    client = caldav.DAVClient(url=cfg.caldav_url, auth=CaldavRequestAuth.from_config(cfg))
    return Session(client=client, principal=client.principal())


async def run_blocking(description: str, func: Callable[..., T], *args: Any) -> T:
    """Run a blocking transport call in a worker thread, mapping failures to network errors."""
    try:
        return await asyncio.to_thread(func, *args)
    except CaldavNetworkError:
        raise
    except Exception as exc:
        raise CaldavNetworkError(f"CALDAV NETWORK ERROR ({description}): {exc}") from exc


async def _single_flight(
    pending: dict[str, asyncio.Task], key: str, factory: Callable[[], Awaitable[T]]
) -> T:
    task = pending.get(key)
    if task is None:
        task = asyncio.ensure_future(factory())
        pending[key] = task
        task.add_done_callback(lambda _: pending.pop(key, None))
    return await asyncio.shield(task)


class ConnectionCache:
    """Process-lifetime cache of sessions and their resolved calendars.

    Entries are never evicted. A rotated credential produces a new key and
    the old session stays cached.
    """

    def __init__(self, connect: Callable[[ProviderConfig], Session] = open_session) -> None:
        self._connect = connect
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_session(self, cfg: ProviderConfig) -> Session:
        key = session_key(cfg)
        session = self._sessions.get(key)
        if session is not None:
            return session

        async def _open() -> Session:
            logger.debug("Opening CalDAV session for %s", cfg.caldav_url)
            created = await run_blocking("connect", self._connect, cfg)
            self._sessions[key] = created
            return created

        return await _single_flight(self._pending, key, _open)

    async def get_calendar(self, session: Session, resource_name: str) -> CalendarHandle:
        handle = session.calendars.get(resource_name)
        if handle is not None:
            return handle

        async def _resolve() -> CalendarHandle:
            found = await run_blocking("list calendars", session.find_calendar, resource_name)
            if found is None:
                raise CalendarNotFoundError(
                    f"CALENDAR NOT FOUND: {resource_name}", calendar_name=resource_name
                )
            logger.debug("Resolved calendar %s -> %s", resource_name, found.url)
            session.calendars[resource_name] = found
            return found

        return await _single_flight(session.pending, resource_name, _resolve)

    async def calendar_for(self, cfg: ProviderConfig) -> CalendarHandle:
        session = await self.get_session(cfg)
        return await self.get_calendar(session, cfg.resource_name)
