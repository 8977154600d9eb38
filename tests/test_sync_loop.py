#!/usr/bin/env python3
# tests/test_sync_loop.py
"""Tests for sync loop scheduling and the resource watcher."""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

from kubernetes.client.rest import ApiException

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import hub_api
from status import SyncProgressingError
from sync_loop import ResourceWatcher, SyncLoop, calculate_exponential_backoff


class TestSyncLoop(unittest.TestCase):
    def test_triggers_during_cycle_coalesce_into_one_rerun(self):
        calls = []

        def sync():
            calls.append(1)
            for _ in range(5):
                loop.trigger("event")
            return None

        loop = SyncLoop("test", sync, resync_interval=60)
        self.assertIsNone(loop.run_once())
        self.assertTrue(loop.pending)

        loop.run_once()
        self.assertEqual(len(calls), 2)

    def test_no_pending_run_without_trigger(self):
        loop = SyncLoop("test", lambda: None)
        loop.trigger()
        loop.run_once()
        self.assertFalse(loop.pending)

    def test_unexpected_exception_is_a_failed_cycle(self):
        def sync():
            raise RuntimeError("boom")

        loop = SyncLoop("test", sync)
        err = loop.run_once()

        self.assertIsInstance(err, RuntimeError)
        self.assertEqual(loop.last_result, "error")
        self.assertEqual(loop.health()["last_error"], "boom")

    def test_progressing_result(self):
        loop = SyncLoop("test", lambda: SyncProgressingError("later"))
        loop.run_once()
        self.assertEqual(loop.last_result, "progressing")

    def test_backoff_then_reset(self):
        loop = SyncLoop("test", lambda: None, resync_interval=60, backoff_max=30)
        err = ValueError("x")

        first = loop.next_delay(err)
        second = loop.next_delay(err)
        self.assertLess(first, second)
        self.assertLessEqual(second, 60)
        self.assertEqual(loop.next_delay(None), 60)
        self.assertLess(loop.next_delay(err), 1.0)

    def test_backoff_capped(self):
        self.assertLessEqual(calculate_exponential_backoff(20, max_delay=30.0), 30.0 * 1.3)

    def test_cycles_never_overlap(self):
        active = []
        overlap = []
        done = threading.Event()

        def sync():
            active.append(1)
            if len(active) > 1:
                overlap.append(1)
            loop.trigger("again")
            active.pop()
            if loop.cycles >= 3:
                done.set()
            return None

        loop = SyncLoop("test", sync, resync_interval=60)
        loop.start()
        try:
            self.assertTrue(done.wait(5))
        finally:
            loop.stop()
        self.assertEqual(overlap, [])


class TestResourceWatcher(unittest.TestCase):
    def test_event_triggers_every_loop(self):
        loops = [Mock(), Mock()]
        watcher = ResourceWatcher(Mock(), hub_api.MANAGED_CLUSTER, loops)

        watcher.handle_event({"type": "ADDED", "object": {"metadata": {"name": "a"}}})

        for loop in loops:
            loop.trigger.assert_called_once()

    def test_stream_arguments(self):
        watcher = ResourceWatcher(
            Mock(), hub_api.REMOTE_VIEW, [], label_selector=hub_api.LABELS.selector()
        )
        kwargs = watcher._stream_kwargs()
        self.assertEqual(kwargs["plural"], "managedclusterviews")
        self.assertEqual(kwargs["label_selector"], hub_api.LABELS.selector())
        self.assertNotIn("field_selector", kwargs)

    @patch("sync_loop.watch.Watch")
    def test_watch_loop_forwards_events(self, mock_watch_cls):
        loop = Mock()
        watcher = ResourceWatcher(Mock(), hub_api.MANAGED_CLUSTER, [loop])

        def stream(*args, **kwargs):
            yield {"type": "MODIFIED", "object": {"metadata": {"name": "a"}}}
            watcher._shutdown_event.set()

        mock_watch_cls.return_value.stream.side_effect = stream
        watcher._watch()

        loop.trigger.assert_called_once()
        mock_watch_cls.return_value.stop.assert_called_once()

    @patch("sync_loop.watch.Watch")
    def test_restarted_stream_resumes_from_last_version(self, mock_watch_cls):
        loop = Mock()
        watcher = ResourceWatcher(Mock(), hub_api.MANAGED_CLUSTER, [loop])
        streams = []

        def stream(*args, **kwargs):
            streams.append(kwargs)
            if len(streams) == 1:
                yield {"type": "ADDED", "object": {"metadata": {"name": "a", "resourceVersion": "7"}}}
                return
            # Server side timeout: the second stream sees no replayed objects
            watcher._shutdown_event.set()
            return
            yield

        mock_watch_cls.return_value.stream.side_effect = stream
        watcher._watch()

        self.assertNotIn("resource_version", streams[0])
        self.assertEqual(streams[1]["resource_version"], "7")
        loop.trigger.assert_called_once()

    @patch("sync_loop.watch.Watch")
    def test_expired_version_relists(self, mock_watch_cls):
        watcher = ResourceWatcher(Mock(), hub_api.MANAGED_CLUSTER, [Mock()])
        streams = []

        def stream(*args, **kwargs):
            streams.append(kwargs)
            if len(streams) == 1:
                yield {"type": "ADDED", "object": {"metadata": {"name": "a", "resourceVersion": "7"}}}
                raise ApiException(status=410, reason="Gone")
            watcher._shutdown_event.set()
            return
            yield

        mock_watch_cls.return_value.stream.side_effect = stream
        watcher._watch()

        self.assertEqual(len(streams), 2)
        self.assertNotIn("resource_version", streams[1])

    def test_bookmark_advances_version_without_trigger(self):
        loop = Mock()
        watcher = ResourceWatcher(Mock(), hub_api.REMOTE_VIEW, [loop])

        watcher.handle_event({"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "12"}}})

        self.assertEqual(watcher._stream_kwargs()["resource_version"], "12")
        loop.trigger.assert_not_called()


if __name__ == "__main__":
    unittest.main()
