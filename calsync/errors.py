from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol


logger = logging.getLogger(__name__)

NOT_CONFIGURED = "not_configured"
NETWORK = "network"
CALENDAR_NOT_FOUND = "calendar_not_found"
CALENDAR_READ_ONLY = "calendar_read_only"
ITEM_NOT_FOUND = "item_not_found"
MALFORMED_COMPONENT = "malformed_component"


class CaldavError(Exception):
    kind = NETWORK
    message_key = "caldav.error"

    def __init__(self, message: str, **params: Any) -> None:
        super().__init__(message)
        self.params = params


class NotConfiguredError(CaldavError):
    kind = NOT_CONFIGURED
    message_key = "caldav.not_configured"


class CaldavNetworkError(CaldavError):
    kind = NETWORK
    message_key = "caldav.network_error"


class CalendarNotFoundError(CaldavError):
    kind = CALENDAR_NOT_FOUND
    message_key = "caldav.calendar_not_found"


class CalendarReadOnlyError(CaldavError):
    kind = CALENDAR_READ_ONLY
    message_key = "caldav.calendar_read_only"


class ItemNotFoundError(CaldavError):
    kind = ITEM_NOT_FOUND
    message_key = "caldav.issue_not_found"


class MalformedComponentError(CaldavError):
    kind = MALFORMED_COMPONENT
    message_key = "caldav.malformed_component"


class HandledCaldavError(Exception):
    """Raised by every public client operation; already reported to the notifier."""

    def __init__(self, cause: CaldavError) -> None:
        super().__init__(f"CalDAV: {cause}")
        self.kind = cause.kind
        self.cause = cause


@dataclass(frozen=True)
class ErrorNotice:
    kind: str
    message_key: str
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: CaldavError) -> "ErrorNotice":
        return cls(kind=error.kind, message_key=error.message_key, params=dict(error.params))


class Notifier(Protocol):
    def notify(self, notice: ErrorNotice) -> None:
        ...


class LoggingNotifier:
    def notify(self, notice: ErrorNotice) -> None:
        logger.warning("CalDAV error %s (%s) %s", notice.kind, notice.message_key, notice.params)
