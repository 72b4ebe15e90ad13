from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from calsync import ical_mapper, queries
from calsync.connection import CalendarHandle, ConnectionCache, run_blocking
from calsync.errors import (
    CaldavError,
    CalendarReadOnlyError,
    ErrorNotice,
    HandledCaldavError,
    ItemNotFoundError,
    LoggingNotifier,
    NotConfiguredError,
    Notifier,
)
from calsync.models import (
    EVENT,
    TODO,
    CaldavEvent,
    CaldavItem,
    CaldavTodo,
    EventUpdate,
    ProviderConfig,
    RawComponent,
    SearchResult,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _handled(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Report classified failures once and re-raise them as HandledCaldavError."""

    @functools.wraps(func)
    async def wrapper(self: "CaldavClient", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except CaldavError as exc:
            self.notifier.notify(ErrorNotice.from_error(exc))
            raise HandledCaldavError(exc) from exc

    return wrapper


def _require_kind(cfg: ProviderConfig, component_type: str, operation: str) -> None:
    if cfg.component_type != component_type:
        raise ValueError(f"{operation} is not available for {cfg.component_type} providers")


class CaldavClient:
    """Async CalDAV operations for one provider configuration per call.

    Every public coroutine validates ``cfg`` before touching the network and
    fails with :class:`HandledCaldavError` after notifying ``notifier``.
    Nothing is retried.
    """

    def __init__(
        self,
        connections: ConnectionCache | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.connections = connections or ConnectionCache()
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock or datetime.now

    @staticmethod
    def _check_settings(cfg: ProviderConfig) -> None:
        if cfg is None or not cfg.is_valid():
            raise NotConfiguredError("Not enough settings", issue_provider_name="CalDAV")

    async def _calendar(self, cfg: ProviderConfig, writable: bool = False) -> CalendarHandle:
        self._check_settings(cfg)
        calendar = await self.connections.calendar_for(cfg)
        if writable and calendar.read_only:
            raise CalendarReadOnlyError(
                f"CALENDAR READ ONLY: {cfg.resource_name}", calendar_name=cfg.resource_name
            )
        return calendar

    @staticmethod
    async def _query(calendar: CalendarHandle, query: queries.ComponentQuery) -> list[RawComponent]:
        logger.debug("REPORT %s on %s", query.describe(), calendar.url)
        return await run_blocking("query", calendar.report, query)

    async def _find_one(
        self, calendar: CalendarHandle, query: queries.ComponentQuery, uid: str
    ) -> RawComponent:
        found = await self._query(calendar, query)
        if not found:
            label = "EVENT" if query.component == EVENT else "ISSUE"
            raise ItemNotFoundError(f"{label} NOT FOUND: {uid}", issue_id=uid)
        return found[0]

    @staticmethod
    async def _submit(raw: RawComponent) -> None:
        if raw.submit is None:
            return
        logger.info("Writing %s", raw.url)
        await run_blocking("update", raw.submit, raw.data)

    @staticmethod
    def _matches_category(cfg: ProviderConfig, labels: Iterable[str], filter_category: bool) -> bool:
        return not filter_category or not cfg.category_filter or cfg.category_filter in labels

    # VTODO

    async def _get_todos(
        self, cfg: ProviderConfig, filter_open: bool, filter_category: bool
    ) -> list[CaldavTodo]:
        calendar = await self._calendar(cfg)
        raw_items = await self._query(calendar, queries.open_todos(filter_open))
        todos = [ical_mapper.parse_todo(raw) for raw in raw_items]
        return [t for t in todos if self._matches_category(cfg, t.labels, filter_category)]

    @_handled
    async def get_open_tasks(self, cfg: ProviderConfig) -> list[CaldavTodo]:
        return await self._get_todos(cfg, True, True)

    @_handled
    async def search_open_tasks(self, text: str, cfg: ProviderConfig) -> list[SearchResult]:
        todos = await self._get_todos(cfg, True, True)
        return [SearchResult(title=t.summary, issue_data=t) for t in todos if text in t.summary]

    @_handled
    async def get_by_id(self, issue_id: str | int, cfg: ProviderConfig) -> CaldavTodo:
        uid = str(issue_id)
        calendar = await self._calendar(cfg)
        raw = await self._find_one(calendar, queries.todo_by_uid(uid), uid)
        return ical_mapper.parse_todo(raw)

    @_handled
    async def get_by_ids(self, ids: Iterable[str], cfg: ProviderConfig) -> list[CaldavTodo]:
        _require_kind(cfg, TODO, "Batch lookup")
        wanted = set(ids)
        todos = await self._get_todos(cfg, False, False)
        return [t for t in todos if t.id in wanted]

    @_handled
    async def update_state(
        self, cfg: ProviderConfig, issue_id: str, completed: bool, summary: str
    ) -> None:
        _require_kind(cfg, TODO, "Completion write-back")
        calendar = await self._calendar(cfg, writable=True)
        raw = await self._find_one(calendar, queries.todo_by_uid(issue_id), issue_id)
        updated = ical_mapper.apply_todo_update(
            raw, completed=completed, summary=summary, now=self._now
        )
        if updated is None:
            logger.debug("To-do %s unchanged, skipping write", issue_id)
            return
        await self._submit(updated)

    # VEVENT

    async def _get_events(self, cfg: ProviderConfig, filter_category: bool) -> list[CaldavEvent]:
        calendar = await self._calendar(cfg)
        start, end = queries.event_window(self._clock())
        raw_items = await self._query(calendar, queries.events_in_window(start, end))
        events = [ical_mapper.parse_event(raw, now=self._now) for raw in raw_items]
        return [e for e in events if self._matches_category(cfg, e.categories, filter_category)]

    @_handled
    async def get_open_events(self, cfg: ProviderConfig) -> list[CaldavEvent]:
        return await self._get_events(cfg, True)

    @_handled
    async def search_open_events(self, text: str, cfg: ProviderConfig) -> list[SearchResult]:
        events = await self._get_events(cfg, True)
        needle = text.lower()
        return [
            SearchResult(title=e.summary, issue_data=e) for e in events if needle in e.summary.lower()
        ]

    @_handled
    async def get_event_by_id(self, event_id: str | int, cfg: ProviderConfig) -> CaldavEvent:
        uid = str(event_id)
        calendar = await self._calendar(cfg)
        raw = await self._find_one(calendar, queries.event_by_uid(uid), uid)
        return ical_mapper.parse_event(raw, now=self._now)

    @_handled
    async def update_event(self, cfg: ProviderConfig, event_id: str, updates: EventUpdate) -> None:
        _require_kind(cfg, EVENT, "Event write-back")
        calendar = await self._calendar(cfg, writable=True)
        raw = await self._find_one(calendar, queries.event_by_uid(event_id), event_id)
        updated = ical_mapper.apply_event_update(raw, updates, now=self._now)
        if updated is None:
            logger.debug("Event %s unchanged, skipping write", event_id)
            return
        await self._submit(updated)

    @_handled
    async def delete_event(self, cfg: ProviderConfig, event_id: str) -> None:
        _require_kind(cfg, EVENT, "Event deletion")
        calendar = await self._calendar(cfg, writable=True)
        found = await self._query(calendar, queries.event_by_uid(event_id))
        if not found:
            logger.info("Event %s already gone from %s", event_id, calendar.url)
            return
        target = found[0].url
        logger.info("Deleting event %s at %s", event_id, target)
        await run_blocking("delete", calendar.delete, target)

    # dispatch by component kind

    async def list_open(self, cfg: ProviderConfig) -> list[CaldavItem]:
        if cfg.component_type == EVENT:
            return await self.get_open_events(cfg)
        return await self.get_open_tasks(cfg)

    async def search(self, text: str, cfg: ProviderConfig) -> list[SearchResult]:
        if cfg.component_type == EVENT:
            return await self.search_open_events(text, cfg)
        return await self.search_open_tasks(text, cfg)

    async def get_item(self, item_id: str | int, cfg: ProviderConfig) -> CaldavItem:
        if cfg.component_type == EVENT:
            return await self.get_event_by_id(item_id, cfg)
        return await self.get_by_id(item_id, cfg)

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc).replace(microsecond=0)
