import asyncio
import threading
import time
import unittest
import xml.etree.ElementTree as ET
from types import SimpleNamespace
from unittest import mock

import requests
from caldav.elements import dav

from calsync.connection import (
    CaldavRequestAuth,
    CalendarHandle,
    ConnectionCache,
    Session,
    calendar_matches,
    calendar_slug,
    session_key,
)
from calsync.errors import CaldavNetworkError, CalendarNotFoundError
from calsync.queries import open_todos

from fakes import FakeCalendar, FakeSession, basic_config, todo_ical


def _privilege_tree(*privileges: str, status: str = "HTTP/1.1 200 OK") -> ET.Element:
    grants = "".join(f"<d:privilege><d:{name}/></d:privilege>" for name in privileges)
    return ET.fromstring(
        '<d:multistatus xmlns:d="DAV:"><d:response><d:propstat><d:prop>'
        f"<d:current-user-privilege-set>{grants}</d:current-user-privilege-set>"
        f"</d:prop><d:status>{status}</d:status></d:propstat></d:response></d:multistatus>"
    )


class HelperTests(unittest.TestCase):
    def test_session_key_discriminates_credentials(self) -> None:
        base = basic_config()
        self.assertNotEqual(session_key(base), session_key(basic_config(password="other")))
        self.assertEqual(session_key(base), session_key(basic_config(resource_name="other-calendar")))
        bearer = basic_config(auth_type="bearer", bearer_token="tok")
        self.assertEqual(session_key(bearer), "https://cal.example.com|bearer|tok")
        self.assertEqual(session_key(base), "https://cal.example.com|basic|u|p")

    def test_calendar_slug_and_matching(self) -> None:
        self.assertEqual(calendar_slug("https://x/dav/calendars/u/tasks/"), "tasks")
        self.assertEqual(calendar_slug("https://x/dav/calendars/u/tasks"), "tasks")
        self.assertTrue(calendar_matches("Personal", "https://x/cal/personal-1/", "Personal"))
        self.assertTrue(calendar_matches("Personal", "https://x/cal/personal-1/", "personal-1"))
        self.assertFalse(calendar_matches("Personal", "https://x/cal/personal-1/", "personal"))
        self.assertFalse(calendar_matches("", "https://x/cal/a/", ""))

    def test_request_auth_injects_headers(self) -> None:
        request = requests.Request("GET", "https://cal.example.com/").prepare()
        CaldavRequestAuth.from_config(basic_config())(request)
        self.assertEqual(request.headers["Authorization"], "Basic dTpw")
        self.assertEqual(request.headers["X-Requested-With"], "calsync")

        request = requests.Request("GET", "https://cal.example.com/").prepare()
        CaldavRequestAuth.from_config(basic_config(auth_type="bearer", bearer_token="tok"))(request)
        self.assertEqual(request.headers["Authorization"], "Bearer tok")


class SessionTests(unittest.TestCase):
    def _session(self, tree: ET.Element | None) -> Session:
        client = mock.Mock()
        client.propfind.return_value = SimpleNamespace(tree=tree)
        principal = mock.Mock()
        principal.calendars.return_value = [
            SimpleNamespace(url="https://x/cal/work/", name="Work"),
            SimpleNamespace(url="https://x/cal/tasks/", name=""),
        ]
        return Session(client=client, principal=principal)

    def test_find_calendar_by_slug(self) -> None:
        handle = self._session(_privilege_tree("read", "write")).find_calendar("tasks")
        self.assertIsNotNone(handle)
        self.assertEqual(handle.url, "https://x/cal/tasks/")
        self.assertEqual(handle.name, "tasks")
        self.assertFalse(handle.read_only)

    def test_find_calendar_detects_read_only(self) -> None:
        handle = self._session(_privilege_tree("read")).find_calendar("Work")
        self.assertTrue(handle.read_only)

    def test_missing_privilege_set_is_writable(self) -> None:
        handle = self._session(None).find_calendar("Work")
        self.assertFalse(handle.read_only)

    def test_unsupported_privilege_property_is_writable(self) -> None:
        handle = self._session(_privilege_tree(status="HTTP/1.1 404 Not Found")).find_calendar("Work")
        self.assertFalse(handle.read_only)

    def test_privileges_outside_ok_propstat_are_ignored(self) -> None:
        handle = self._session(_privilege_tree("read", status="HTTP/1.1 403 Forbidden")).find_calendar("Work")
        self.assertFalse(handle.read_only)

    def test_find_calendar_returns_none(self) -> None:
        self.assertIsNone(self._session(None).find_calendar("nope"))


class CalendarHandleTests(unittest.TestCase):
    def test_report_maps_objects_and_binds_submit(self) -> None:
        client = mock.Mock()
        client.put.return_value = SimpleNamespace(status=204, reason="No Content")
        obj = SimpleNamespace(
            url="https://x/cal/tasks/t1.ics",
            data=todo_ical("t1", "Buy milk").encode("utf-8"),
            props={dav.GetEtag.tag: '"e1"'},
        )
        calendar = mock.Mock()
        calendar._request_report_build_resultlist.return_value = (None, [obj])
        handle = CalendarHandle(client, calendar, name="tasks", url="https://x/cal/tasks/")

        [raw] = handle.report(open_todos())
        self.assertEqual(raw.url, "https://x/cal/tasks/t1.ics")
        self.assertEqual(raw.etag, '"e1"')
        self.assertIn("SUMMARY:Buy milk", raw.data)

        raw.submit("NEW")
        client.put.assert_called_once_with(
            "https://x/cal/tasks/t1.ics",
            "NEW",
            {"Content-Type": 'text/calendar; charset="utf-8"', "If-Match": '"e1"'},
        )

    def test_put_conflict_raises_network_error(self) -> None:
        client = mock.Mock()
        client.put.return_value = SimpleNamespace(status=412, reason="Precondition Failed")
        handle = CalendarHandle(client, mock.Mock(), name="tasks", url="https://x/cal/tasks/")
        with self.assertRaises(CaldavNetworkError):
            handle.put("https://x/cal/tasks/t1.ics", '"e1"', "DATA")

    def test_delete_error_status(self) -> None:
        client = mock.Mock()
        client.delete.return_value = SimpleNamespace(status=403, reason="Forbidden")
        handle = CalendarHandle(client, mock.Mock(), name="tasks", url="https://x/cal/tasks/")
        with self.assertRaises(CaldavNetworkError) as ctx:
            handle.delete("https://x/cal/tasks/e1.ics")
        self.assertIn("403 Forbidden", str(ctx.exception))

        client.delete.return_value = SimpleNamespace(status=204, reason="No Content")
        handle.delete("https://x/cal/tasks/e1.ics")


class ConnectionCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_first_use_opens_one_session(self) -> None:
        calls = []
        lock = threading.Lock()

        def connect(cfg):
            with lock:
                calls.append(cfg)
            time.sleep(0.05)
            return FakeSession(FakeCalendar())

        cache = ConnectionCache(connect=connect)
        sessions = await asyncio.gather(*(cache.get_session(basic_config()) for _ in range(5)))
        self.assertEqual(len(calls), 1)
        self.assertTrue(all(s is sessions[0] for s in sessions))
        self.assertIs(await cache.get_session(basic_config(resource_name="other")), sessions[0])
        self.assertEqual(len(cache), 1)

    async def test_rotated_credentials_create_new_session(self) -> None:
        cache = ConnectionCache(connect=lambda cfg: FakeSession())
        first = await cache.get_session(basic_config())
        second = await cache.get_session(basic_config(password="rotated"))
        self.assertIsNot(first, second)
        self.assertEqual(len(cache), 2)

    async def test_failed_connect_is_not_cached(self) -> None:
        attempts = []

        def connect(cfg):
            attempts.append(cfg)
            if len(attempts) == 1:
                raise requests.ConnectionError("refused")
            return FakeSession()

        cache = ConnectionCache(connect=connect)
        with self.assertRaises(CaldavNetworkError):
            await cache.get_session(basic_config())
        self.assertIsInstance(await cache.get_session(basic_config()), FakeSession)
        self.assertEqual(len(attempts), 2)

    async def test_calendar_resolution_is_cached_per_session(self) -> None:
        session = FakeSession(FakeCalendar())
        cache = ConnectionCache(connect=lambda cfg: session)
        handles = await asyncio.gather(*(cache.calendar_for(basic_config()) for _ in range(3)))
        self.assertTrue(all(h is handles[0] for h in handles))
        await cache.calendar_for(basic_config())
        self.assertEqual(session.find_calls, 1)

    async def test_unknown_calendar(self) -> None:
        session = FakeSession(FakeCalendar())
        cache = ConnectionCache(connect=lambda cfg: session)
        with self.assertRaises(CalendarNotFoundError):
            await cache.calendar_for(basic_config(resource_name="missing"))
        with self.assertRaises(CalendarNotFoundError):
            await cache.calendar_for(basic_config(resource_name="missing"))
        self.assertEqual(session.find_calls, 2)


if __name__ == "__main__":
    unittest.main()
