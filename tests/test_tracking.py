"""
Test suite for weak tracking handles and trace retention.

Author: xwest
"""

import gc
import os
import re
import threading
import unittest
from queue import SimpleQueue

import refobject
from refobject import DetectionLevel, LeakRegistry, ReferenceCounted, TrackerState
from refobject.tracking import LeakTracker, LiveSet, capture_stack

from helpers import CountingResource


class _Referent:
    pass


class TestLiveSet(unittest.TestCase):
    """Test cases for the intrusive live-set."""

    def setUp(self):
        self.queue = SimpleQueue()
        self.live_set = LiveSet()
        self.referents = [_Referent() for _ in range(3)]
        self.trackers = [LeakTracker(r, self.queue, self.live_set) for r in self.referents]

    def _members(self):
        with self.live_set.lock:
            return list(self.live_set.iter_locked())

    def test_trackers_link_on_creation(self):
        self.assertEqual(len(self.live_set), 3)
        members = self._members()
        for tracker in self.trackers:
            self.assertTrue(any(m is tracker for m in members))

    def test_unlink_middle(self):
        middle = self.trackers[1]
        self.assertTrue(middle.close())
        self.assertEqual(len(self.live_set), 2)
        self.assertFalse(any(m is middle for m in self._members()))
        self.assertIsNone(middle.next)

    def test_unlink_twice_is_noop(self):
        tracker = self.trackers[0]
        self.live_set.unlink(tracker)
        self.live_set.unlink(tracker)
        self.assertEqual(len(self.live_set), 2)

    def test_reclaimed_referent_is_queued(self):
        tracker = self.trackers[2]
        del self.referents[2]
        gc.collect()

        self.assertIsNone(tracker())
        self.assertIs(self.queue.get_nowait(), tracker)
        self.assertIs(tracker.state, TrackerState.ACTIVE)

    def test_closed_tracker_is_not_queued_on_reclaim(self):
        tracker = self.trackers[0]
        tracker.close()
        del self.referents[0]
        gc.collect()
        self.assertTrue(self.queue.empty())

    def test_default_type_name(self):
        self.assertTrue(self.trackers[0].type_name.endswith("._Referent"))


class TestTraceRetention(unittest.TestCase):
    """Test cases for the bounded trace record set."""

    def _make(self, trace_count):
        registry = LeakRegistry.create(DetectionLevel.DEBUG, trace_count=trace_count)
        return ReferenceCounted(CountingResource(), registry=registry)

    def test_twenty_traces_keep_four_records(self):
        obj = self._make(4)
        for i in range(20):
            obj.trace(f"use {i}")

        records = obj.tracker.records
        self.assertEqual(len(records), 4)
        self.assertTrue(records[0].is_allocation)
        self.assertFalse(any(r.is_allocation for r in records[1:]))
        self.assertEqual(records[-1].message, "use 19")
        obj.release()

    def test_retention_keeps_order(self):
        obj = self._make(4)
        for i in range(50):
            obj.trace(i)

        uses = [int(r.message) for r in obj.tracker.records[1:]]
        self.assertEqual(uses, sorted(uses))
        obj.release()

    def test_records_below_limit_are_all_kept(self):
        obj = self._make(4)
        obj.trace("a")
        obj.trace("b")
        self.assertEqual([r.message for r in obj.tracker.records], [None, "a", "b"])
        obj.release()

    def test_trace_count_two_keeps_allocation_and_latest(self):
        obj = self._make(2)
        for i in range(10):
            obj.trace(i)
        records = obj.tracker.records
        self.assertEqual(len(records), 2)
        self.assertTrue(records[0].is_allocation)
        self.assertEqual(records[1].message, "9")
        obj.release()

    def test_trace_count_one_keeps_allocation_only(self):
        obj = self._make(1)
        obj.trace("dropped")
        records = obj.tracker.records
        self.assertEqual(len(records), 1)
        self.assertTrue(records[0].is_allocation)
        self.assertIn("1 trace record(s) were discarded", obj.tracker.get_traces_string())
        obj.release()

    def test_rendering_is_consistent_while_tracing(self):
        obj = self._make(2)
        done = threading.Event()

        def tracer():
            try:
                for i in range(2000):
                    obj.trace(f"use {i}")
            finally:
                done.set()

        thread = threading.Thread(target=tracer)
        thread.start()
        while not done.is_set():
            rendered = obj.tracker.get_traces_string()
            latest = re.search(r"#1: use (\d+)", rendered)
            if latest is None:
                continue
            discarded = re.search(r"(\d+) trace record\(s\) were discarded", rendered)
            # Every use after the first overwrites the newest slot
            self.assertEqual(int(discarded.group(1)) if discarded else 0,
                             int(latest.group(1)))
        thread.join()
        obj.release()

    def test_retain_and_release_are_recorded(self):
        obj = self._make(8)
        obj.retain()
        obj.release()
        self.assertEqual([r.message for r in obj.tracker.records[1:]], ["retain", "release"])
        obj.release()

    def test_no_records_below_debug(self):
        registry = LeakRegistry.create(DetectionLevel.FULL)
        obj = ReferenceCounted(CountingResource(), registry=registry)
        obj.trace("ignored")
        self.assertEqual(obj.tracker.records, [])
        self.assertEqual(obj.tracker.get_traces_string(), "")
        obj.release()


class TestStackCapture(unittest.TestCase):
    """Test cases for stack capture and suppression."""

    def test_capture_starts_at_caller(self):
        stack = capture_stack()
        self.assertEqual(stack[-1].name, "test_capture_starts_at_caller")

    def test_suppressed_frames_are_elided(self):
        def helper():
            return capture_stack(frozenset({f"{__name__}.helper"}))

        stack = helper()
        self.assertEqual(stack[-1].name, "test_suppressed_frames_are_elided")

    def test_library_frames_are_elided_from_allocation(self):
        registry = LeakRegistry.create(DetectionLevel.DEBUG)
        obj = ReferenceCounted(CountingResource(), registry=registry)
        stack = obj.tracker.records[0].stack

        self.assertEqual(stack[-1].name, "test_library_frames_are_elided_from_allocation")
        package_dir = os.path.dirname(os.path.abspath(refobject.__file__))
        for frame in stack:
            self.assertFalse(os.path.abspath(frame.filename).startswith(package_dir))
        obj.release()

    def test_custom_suppression(self):
        registry = LeakRegistry.create(
            DetectionLevel.DEBUG, suppressed_frames=[f"{__name__}.make_object"])
        plain = LeakRegistry.create(DetectionLevel.DEBUG)

        def make_object(target):
            return ReferenceCounted(CountingResource(), registry=target)

        obj = make_object(registry)
        self.assertEqual(obj.tracker.records[0].stack[-1].name, "test_custom_suppression")
        obj.release()

        # Suppression belongs to the registry it was built with
        obj = make_object(plain)
        self.assertEqual(obj.tracker.records[0].stack[-1].name, "make_object")
        obj.release()


if __name__ == '__main__':
    unittest.main()
