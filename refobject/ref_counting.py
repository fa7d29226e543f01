"""
Reference Counting for refobject
================================

Thread-safe reference counting for objects that own resources and are
shared without a single designated owner. The resource is released
exactly once, by whichever thread drops the last reference.

Features:
- Atomic retain/release with an initial count of 1
- Exactly-once destroy on the transition to 0
- Strict or idempotent handling of releases past 0
- Leak detection through the current LeakRegistry
- Context manager support for scoped release

Example:

    class Buffer(Destroyable):
        def destroy(self):
            free(self.handle)

    shared = ReferenceCounted(Buffer())
    with shared.retain():
        ...
    shared.release()

Author: xwest
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from .errors import DestroyedObjectError, ReleasedDestroyedError, ResurrectionError
from .leak_detector import LeakRegistry, current_registry
from .tracking import LeakTracker, qualified_name


class Destroyable(ABC):
    """A resource with cleanup logic run exactly once."""

    @abstractmethod
    def destroy(self):
        """Release the underlying resource."""


class AtomicCounter:
    """Integer whose read-modify-write operations are atomic."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def get_and_add(self, delta: int) -> int:
        """Add ``delta`` and return the previous value."""
        with self._lock:
            previous = self._value
            self._value = previous + delta
            return previous

    def add_and_get(self, delta: int) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value


class ReferenceCounted:
    """
    Reference counted holder of a ``Destroyable`` resource.

    The count starts at 1, owned by the creator. ``retain`` adds an owner
    and ``release`` drops one; the release that brings the count to 0
    destroys the resource. The counter lock orders every thread's prior
    writes before the destroy call, so ``destroy`` needs no extra locking.

    A strict object raises on releases past 0. An idempotent object
    ignores them.
    """

    def __init__(self, resource: Destroyable, *, idempotent: bool = False,
                 registry: Optional[LeakRegistry] = None):
        self._resource = resource
        self._idempotent = idempotent
        self._count = AtomicCounter(1)

        if registry is None:
            registry = current_registry()
        self._tracker: Optional[LeakTracker] = registry.register(
            self, type_name=qualified_name(type(resource)))

    @property
    def resource(self) -> Destroyable:
        return self._resource

    @property
    def reference_count(self) -> int:
        return self._count.value

    @property
    def idempotent(self) -> bool:
        return self._idempotent

    @property
    def destroyed(self) -> bool:
        return self._count.value <= 0

    @property
    def tracker(self) -> Optional[LeakTracker]:
        """Leak tracker, or None when this object was not sampled"""
        return self._tracker

    def _traces(self) -> str:
        return self._tracker.get_traces_string() if self._tracker is not None else ""

    def retain(self) -> "ReferenceCounted":
        """Increment the reference count by 1 and return this object."""
        old_count = self._count.get_and_add(1)
        if old_count <= 0:
            self._count.get_and_add(-1)
            raise ResurrectionError(self._traces())

        if self._tracker is not None:
            self._tracker.trace("retain")
        return self

    def release(self) -> bool:
        """
        Decrement the reference count by 1.

        Returns True if the count reached 0 and the resource was destroyed.
        An exception raised by ``destroy`` propagates after the leak
        tracker has been closed.
        """
        if self._tracker is not None:
            self._tracker.trace("release")

        new_count = self._count.add_and_get(-1)
        if new_count == 0:
            try:
                self._resource.destroy()
            finally:
                # self stays strongly referenced by this frame until the
                # tracker is closed, so the reclamation callback cannot
                # queue it first
                if self._tracker is not None:
                    self._tracker.close()
            return True

        if new_count < 0:
            if self._idempotent:
                return False
            raise ReleasedDestroyedError(self._traces())
        return False

    def close(self):
        """Same as ``release``, for scoped-resource idioms."""
        self.release()

    def trace(self, message: Any = None):
        """
        Record the current stack for leak diagnostics.

        Only has an effect at the DEBUG level. The destroyed-object check
        is best effort under concurrency.
        """
        if self._count.value <= 0:
            raise DestroyedObjectError(self._traces())

        if self._tracker is not None:
            self._tracker.trace(message)

    def __enter__(self) -> "ReferenceCounted":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return (f"<ReferenceCounted {qualified_name(type(self._resource))} "
                f"count={self._count.value}>")
