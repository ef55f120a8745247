import json
import unittest
from unittest.mock import MagicMock, patch

from kbsync.events.client import QueryCache, RealtimeSync, listen


def _changed(entity: str, mutation: str = "update", **extra) -> str:
    return json.dumps({"type": "data:changed", "event": {"entity": entity, "mutation": mutation, **extra}})


class RealtimeSyncTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = QueryCache()
        self.cache.set([["projects", "list"], {"org": "acme"}], ["a"])
        self.cache.set([["people", "list"]], ["p"])
        self.cache.set([["items", "list"]], ["i"])
        self.refetched: list = []
        self.sync = RealtimeSync(self.cache, on_invalidate=self.refetched.append)

    def test_projects_event_marks_only_project_queries_stale(self) -> None:
        stale = self.sync.handle_frame(_changed("projects", "create", id=42))

        self.assertEqual(stale, [[["projects", "list"], {"org": "acme"}]])
        self.assertTrue(self.cache.is_stale([["projects", "list"], {"org": "acme"}]))
        self.assertFalse(self.cache.is_stale([["people", "list"]]))
        self.assertEqual(self.refetched, stale)

    def test_stale_entry_is_refetched_once_until_refreshed(self) -> None:
        self.sync.handle_frame(_changed("people"))
        self.sync.handle_frame(_changed("people"))
        self.assertEqual(len(self.refetched), 1)

        self.cache.set([["people", "list"]], ["p2"])
        self.sync.handle_frame(_changed("people"))
        self.assertEqual(len(self.refetched), 2)

    def test_init_and_ping_frames_do_not_invalidate(self) -> None:
        init = json.dumps({"type": "init", "events": [{"entity": "projects", "mutation": "update", "id": 1}]})

        self.assertEqual(self.sync.consume([init, '{"type":"ping"}', ""]), 0)
        self.assertEqual([e.id for e in self.sync.recent], [1])
        self.assertEqual(self.refetched, [])

    def test_malformed_frames_are_dropped(self) -> None:
        frames = [
            "not json",
            "[1, 2]",
            '{"type": "mystery"}',
            json.dumps({"type": "data:changed", "event": {"entity": "spaceships", "mutation": "update"}}),
            json.dumps({"type": "data:changed", "event": {"entity": "projects", "mutation": "merge"}}),
        ]

        self.assertEqual(self.sync.consume(frames), 0)
        self.assertEqual(self.sync.dropped_frames, len(frames))
        self.assertFalse(any(entry.stale for entry in self.cache.entries.values()))

    def test_checkin_event_invalidates_items(self) -> None:
        self.sync.handle_frame(_changed("checkins", "create").encode("utf-8"))
        self.assertTrue(self.cache.is_stale([["items", "list"]]))

    def test_ai_content_notice_is_surfaced_without_invalidating(self) -> None:
        shown: list = []
        sync = RealtimeSync(self.cache, on_ai_content=shown.append)
        frame = json.dumps(
            {
                "type": "ai:content",
                "event": {"contentType": "workstream", "title": "Hiring", "filePath": "acme-corp/hiring.md"},
            }
        )

        self.assertEqual(sync.handle_frame(frame), [])
        self.assertEqual([n.title for n in sync.notices], ["Hiring"])
        self.assertEqual(shown, sync.notices)
        self.assertEqual(sync.dropped_frames, 0)
        self.assertFalse(any(entry.stale for entry in self.cache.entries.values()))

    def test_invalid_ai_content_notice_is_dropped(self) -> None:
        frame = json.dumps({"type": "ai:content", "event": {"contentType": "poem", "title": "x"}})

        self.sync.handle_frame(frame)

        self.assertEqual(self.sync.notices, [])
        self.assertEqual(self.sync.dropped_frames, 1)

    def test_failing_refetch_callback_is_contained(self) -> None:
        def boom(key):
            raise RuntimeError("fetch failed")

        sync = RealtimeSync(self.cache, on_invalidate=boom)
        stale = sync.handle_frame(_changed("projects"))
        self.assertEqual(len(stale), 1)


class ListenTests(unittest.TestCase):
    def test_listen_feeds_stream_lines(self) -> None:
        response = MagicMock()
        response.__enter__.return_value = response
        response.iter_lines.return_value = [
            b'{"type":"init","events":[]}',
            b"",
            _changed("projects", id=3).encode("utf-8"),
        ]
        cache = QueryCache()
        cache.set([["projects", "get"], {"id": 3}], {})
        sync = RealtimeSync(cache)

        with patch("kbsync.events.client.requests.get", return_value=response) as get:
            listen("http://localhost:3004/api/events/stream", sync, timeout=5)

        get.assert_called_once_with("http://localhost:3004/api/events/stream", stream=True, timeout=5)
        self.assertTrue(cache.is_stale([["projects", "get"], {"id": 3}]))


if __name__ == "__main__":
    unittest.main()
