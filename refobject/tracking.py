"""
Weak Tracking Handles for refobject
===================================

A ``LeakTracker`` observes a tracked object through a weak reference and
carries the diagnostics needed to explain a leak: the declared type of the
object and a bounded set of trace records (message plus call stack).

Features:
- Weak observation that never keeps the tracked object alive
- Reclamation notification through the weak reference callback
- ACTIVE -> CLOSED / ACTIVE -> LEAKED transitions under the handle lock
- Intrusive doubly linked live-set with O(1) unlink
- Back-off trace retention that always keeps the allocation record
"""

import random
import sys
import threading
import traceback
import weakref
from enum import Enum
from queue import SimpleQueue
from typing import AbstractSet, Any, Iterator, List, Optional


class TrackerState(Enum):
    """Lifecycle states of a weak tracking handle"""
    ACTIVE = "active"    # Object not destroyed yet, linked into the live-set
    CLOSED = "closed"    # Explicitly closed on destroy, never reported
    LEAKED = "leaked"    # Found unreachable (or asserted) while still active


# Back-off exponent cap for trace retention
MAX_BACK_OFF = 30


def frame_identifier(frame) -> str:
    """Identifier used to match a frame against the suppression list."""
    return f"{frame.f_globals.get('__name__', '?')}.{frame.f_code.co_name}"


def capture_stack(suppressed: AbstractSet[str] = frozenset(),
                  limit: Optional[int] = None) -> traceback.StackSummary:
    """
    Capture the caller's stack, oldest frame first.

    Frames whose ``module.function`` identifier is in ``suppressed`` are
    dropped. Source lines are looked up lazily, only when the stack is
    rendered.
    """
    frames = (
        (frame, lineno)
        for frame, lineno in traceback.walk_stack(sys._getframe(1))
        if frame_identifier(frame) not in suppressed
    )
    stack = traceback.StackSummary.extract(frames, limit=limit, lookup_lines=False)
    stack.reverse()
    return stack


class TraceRecord:
    """A recorded use of a tracked object."""

    def __init__(self, message: Any, stack: traceback.StackSummary,
                 is_allocation: bool = False):
        # Text only, a record must not reference the traced object
        self.message = None if message is None else str(message)
        self.stack = stack
        self.is_allocation = is_allocation

    def render(self, title: str) -> str:
        header = title
        if self.message is not None:
            header += f" {self.message}"
        body = "".join("\t" + line for line in self.stack.format())
        return f"{header}\n{body}"


class _LiveSetHead:
    """Sentinel node of the live-set."""

    def __init__(self):
        self.prev = self
        self.next = self


class LiveSet:
    """
    Intrusive doubly linked set of active trackers.

    Each tracker stores its own ``prev``/``next`` links, so unlinking never
    scans the set. All mutation happens under ``lock``.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self._head = _LiveSetHead()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def link(self, tracker: "LeakTracker"):
        with self.lock:
            head = self._head
            tracker.prev = head
            tracker.next = head.next
            head.next.prev = tracker
            head.next = tracker
            self._size += 1

    def unlink(self, tracker: "LeakTracker"):
        with self.lock:
            self.unlink_locked(tracker)

    def unlink_locked(self, tracker: "LeakTracker"):
        """Unlink ``tracker``; the caller must hold ``lock``."""
        if tracker.next is None:
            return
        tracker.prev.next = tracker.next
        tracker.next.prev = tracker.prev
        tracker.prev = None
        tracker.next = None
        self._size -= 1

    def iter_locked(self) -> Iterator["LeakTracker"]:
        """Iterate over a copy of the members; the caller must hold ``lock``."""
        members = []
        node = self._head.next
        while node is not self._head:
            members.append(node)
            node = node.next
        return iter(members)


class LeakTracker(weakref.ref):
    """
    Weak tracking handle for one tracked object.

    The handle is a weak reference whose callback fires when the tracked
    object is reclaimed. The callback and ``close`` both take the handle
    lock, so a handle that was closed by the destroying thread is never
    put on the reclamation queue.
    """

    def __new__(cls, referent, queue: SimpleQueue, live_set: LiveSet,
                type_name: Optional[str] = None, trace_count: int = 0,
                suppressed: AbstractSet[str] = frozenset()):
        return super().__new__(cls, referent, LeakTracker._on_reclaimed)

    def __init__(self, referent, queue: SimpleQueue, live_set: LiveSet,
                 type_name: Optional[str] = None, trace_count: int = 0,
                 suppressed: AbstractSet[str] = frozenset()):
        super().__init__(referent, LeakTracker._on_reclaimed)
        self.type_name = type_name or qualified_name(type(referent))
        self.trace_count = trace_count
        self.prev = None
        self.next = None

        self._queue = queue
        self._live_set = live_set
        self._suppressed = suppressed
        self._lock = threading.RLock()
        self._state = TrackerState.ACTIVE

        # Trace retention
        self._records: List[TraceRecord] = []
        self._dropped = 0
        self._overflow = 0

        if trace_count > 0:
            self._records.append(
                TraceRecord(None, capture_stack(suppressed), is_allocation=True))

        live_set.link(self)

    @staticmethod
    def _on_reclaimed(tracker: "LeakTracker"):
        # Runs on whichever thread reclaimed the referent
        with tracker._lock:
            if tracker._state is TrackerState.ACTIVE:
                tracker._queue.put(tracker)

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def records(self) -> List[TraceRecord]:
        """Snapshot of the retained trace records, allocation first."""
        with self._lock:
            return list(self._records)

    def trace(self, message: Any = None):
        """Record a use of the tracked object."""
        if self.trace_count == 0:
            return
        if self.trace_count == 1 and self._records:
            # Only the allocation record is kept
            with self._lock:
                self._dropped += 1
            return

        record = TraceRecord(message, capture_stack(self._suppressed))
        with self._lock:
            self._retain_record(record)

    def _retain_record(self, record: TraceRecord):
        records = self._records
        if len(records) < self.trace_count:
            records.append(record)
            return

        self._overflow += 1
        self._dropped += 1
        back_off = min(self._overflow, MAX_BACK_OFF)
        if len(records) > 2 and random.getrandbits(back_off) == 0:
            # Keep the previous newest record, evict the oldest middle one
            del records[1]
            records.append(record)
        else:
            records[-1] = record

    def close(self) -> bool:
        """
        Mark the handle as cleanly disposed and unlink it.

        Returns False when the handle was already closed or leaked.
        """
        if not self._transition(TrackerState.CLOSED):
            return False
        self._live_set.unlink(self)
        return True

    def mark_leaked(self) -> bool:
        """Transition ACTIVE -> LEAKED and unlink. False if already terminal."""
        if not self._transition(TrackerState.LEAKED):
            return False
        self._live_set.unlink(self)
        return True

    def mark_leaked_locked(self) -> bool:
        """``mark_leaked`` for callers already holding the live-set lock."""
        if not self._transition(TrackerState.LEAKED):
            return False
        self._live_set.unlink_locked(self)
        return True

    def _transition(self, new_state: TrackerState) -> bool:
        with self._lock:
            if self._state is not TrackerState.ACTIVE:
                return False
            self._state = new_state
            return True

    def get_traces_string(self) -> str:
        """Render the retained records, most recent first, allocation last."""
        with self._lock:
            records = list(self._records)
            dropped = self._dropped
        if not records:
            return ""

        lines = ["", "Recent access records:"]
        uses = [r for r in records if not r.is_allocation]
        for index, record in enumerate(reversed(uses), start=1):
            lines.append(record.render(f"#{index}:"))
        for record in records:
            if record.is_allocation:
                lines.append(record.render("Created at:"))
        if dropped:
            lines.append(
                f"{dropped} trace record(s) were discarded because the "
                f"trace count is {self.trace_count}.")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (f"<LeakTracker type={self.type_name} state={self._state.value} "
                f"records={len(self._records)}>")


def qualified_name(cls: type) -> str:
    module = cls.__module__
    if module in (None, "builtins"):
        return cls.__qualname__
    return f"{module}.{cls.__qualname__}"
