from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol, Sequence

from calsync.caldav_client import CaldavClient
from calsync.errors import HandledCaldavError
from calsync.models import (
    EVENT,
    CaldavItem,
    EventUpdate,
    FreshIssueData,
    LinkedTask,
    ProviderConfig,
    SearchResult,
    TaskData,
    is_caldav_enabled,
    is_caldav_event,
)


logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 10 * 60
TITLE_MAX_LENGTH = 20


class ProviderConfigSource(Protocol):
    def get_provider(self, provider_id: str) -> ProviderConfig:
        ...


def truncate(text: str, length: int = TITLE_MAX_LENGTH) -> str:
    if len(text) <= length:
        return text
    return text[: max(0, length - 3)] + "..."


def get_add_task_data(item: CaldavItem) -> TaskData:
    if is_caldav_event(item):
        if item.is_all_day:
            due = {"due_day": item.start.date().isoformat()}
        else:
            due = {"due_with_time": item.start}
        return TaskData(
            title=item.summary,
            issue_last_updated=item.etag_hash,
            notes=item.description,
            time_estimate=item.duration,
            **due,
        )
    return TaskData(
        title=item.summary,
        issue_last_updated=item.etag_hash,
        notes=item.note,
        due_with_time=item.start,
        related_to=item.related_to,
    )


def build_event_updates(changes: dict[str, Any], time_estimate: int | None = None) -> EventUpdate | None:
    """Translate local task changes into an event update; None when nothing maps.

    ``time_estimate`` is in milliseconds.
    """
    summary = changes.get("title") or None
    description = None
    if "notes" in changes:
        description = changes.get("notes") or ""
    dtstart = dtend = None
    due_with_time: datetime | None = changes.get("due_with_time")
    if due_with_time:
        dtstart = due_with_time
        if time_estimate:
            dtend = due_with_time + timedelta(milliseconds=time_estimate)
    updates = EventUpdate(summary=summary, description=description, dtstart=dtstart, dtend=dtend)
    return None if updates.is_empty() else updates


class CaldavIssueProvider:
    """Looks provider configs up by id and drives :class:`CaldavClient` with them."""

    poll_interval = POLL_INTERVAL_SECONDS

    def __init__(self, client: CaldavClient, configs: ProviderConfigSource) -> None:
        self.client = client
        self.configs = configs

    def is_enabled(self, cfg: ProviderConfig) -> bool:
        return is_caldav_enabled(cfg)

    def _cfg(self, provider_id: str | None) -> ProviderConfig:
        if not provider_id:
            raise ValueError("No issue_provider_id")
        return self.configs.get_provider(provider_id)

    async def test_connection(self, cfg: ProviderConfig) -> bool:
        try:
            result = await self.client.search("", cfg)
        except HandledCaldavError as exc:
            logger.info("Connection test failed: %s", exc)
            return False
        return isinstance(result, list)

    def get_add_task_data(self, item: CaldavItem) -> TaskData:
        return get_add_task_data(item)

    async def get_by_id(self, item_id: str | int, provider_id: str) -> CaldavItem:
        return await self.client.get_item(item_id, self._cfg(provider_id))

    async def search_issues(self, search_term: str, provider_id: str) -> list[SearchResult]:
        cfg = self._cfg(provider_id)
        if not self.is_enabled(cfg):
            return []
        return await self.client.search(search_term, cfg)

    async def get_new_issues_to_add_to_backlog(self, provider_id: str) -> list[CaldavItem]:
        return await self.client.list_open(self._cfg(provider_id))

    def _fresh(self, task: LinkedTask, item: CaldavItem) -> FreshIssueData:
        changes = get_add_task_data(item).to_dict()
        changes["issue_was_updated"] = True
        return FreshIssueData(
            task=task, task_changes=changes, issue=item, issue_title=truncate(item.summary)
        )

    async def get_fresh_data_for_issue_task(self, task: LinkedTask) -> FreshIssueData | None:
        if not task.issue_id:
            raise ValueError("No issue_id")
        cfg = self._cfg(task.issue_provider_id)
        item = await self.client.get_item(task.issue_id, cfg)
        if item.etag_hash == task.issue_last_updated:
            return None
        return self._fresh(task, item)

    async def get_fresh_data_for_issue_tasks(self, tasks: Sequence[LinkedTask]) -> list[FreshIssueData]:
        if not tasks:
            return []
        cfg = self._cfg(tasks[0].issue_provider_id)
        if cfg.component_type == EVENT:
            items = await self.client.get_open_events(cfg)
        else:
            items = await self.client.get_by_ids([t.issue_id for t in tasks if t.issue_id], cfg)
        by_id = {item.id: item for item in items}
        fresh: list[FreshIssueData] = []
        for task in tasks:
            item = by_id.get(task.issue_id or "")
            if item is None or item.etag_hash == task.issue_last_updated:
                continue
            fresh.append(self._fresh(task, item))
        return fresh

    async def transition_todo(self, cfg: ProviderConfig, issue_id: str, is_done: bool, title: str) -> bool:
        if not self.is_enabled(cfg) or cfg.is_event or not cfg.is_transition_issues_enabled:
            return False
        await self.client.update_state(cfg, issue_id, is_done, title)
        return True

    async def write_back_event(
        self,
        cfg: ProviderConfig,
        issue_id: str,
        changes: dict[str, Any],
        time_estimate: int | None = None,
    ) -> bool:
        if not self.is_enabled(cfg) or not cfg.is_event or not cfg.enable_write_back:
            return False
        updates = build_event_updates(changes, time_estimate)
        if updates is None:
            return False
        await self.client.update_event(cfg, issue_id, updates)
        return True

    async def delete_event(self, cfg: ProviderConfig, issue_id: str) -> bool:
        if not self.is_enabled(cfg) or not cfg.is_event or not cfg.enable_write_back:
            return False
        await self.client.delete_event(cfg, issue_id)
        return True
