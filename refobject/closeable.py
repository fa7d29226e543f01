"""
Closeable objects with leak detection but no reference counting.

A ``CloseableObject`` has a single owner. The first ``close`` destroys the
resource; later calls do nothing.

Author: xwest
"""

from typing import Any, Optional

from .errors import DestroyedObjectError
from .leak_detector import LeakRegistry, current_registry
from .ref_counting import AtomicCounter, Destroyable
from .tracking import LeakTracker, qualified_name


class CloseableObject:
    """Single-owner holder of a ``Destroyable`` resource."""

    def __init__(self, resource: Destroyable, *, registry: Optional[LeakRegistry] = None):
        self._resource = resource
        self._count = AtomicCounter(1)

        if registry is None:
            registry = current_registry()
        self._tracker: Optional[LeakTracker] = registry.register(
            self, type_name=qualified_name(type(resource)))

    @property
    def resource(self) -> Destroyable:
        return self._resource

    @property
    def closed(self) -> bool:
        return self._count.value <= 0

    @property
    def tracker(self) -> Optional[LeakTracker]:
        return self._tracker

    def close(self):
        """
        Destroy the resource on the first call; later calls are no-ops.

        An exception raised by ``destroy`` propagates after the leak
        tracker has been closed.
        """
        if self._count.add_and_get(-1) < 0:
            return

        try:
            self._resource.destroy()
        finally:
            if self._tracker is not None:
                self._tracker.close()

    def trace(self, message: Any = None):
        """Record the current stack for leak diagnostics (DEBUG only)."""
        self.assert_not_destroyed()

        if self._tracker is not None:
            self._tracker.trace(message)

    def assert_not_destroyed(self):
        """Best-effort check that ``close`` has not been called yet."""
        if self._count.value <= 0:
            traces = self._tracker.get_traces_string() if self._tracker is not None else ""
            raise DestroyedObjectError(traces)

    def __enter__(self) -> "CloseableObject":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<CloseableObject {qualified_name(type(self._resource))} {state}>"
