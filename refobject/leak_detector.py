"""
Leak Registry for refobject
===========================

Detects objects that became unreachable without being released. Tracked
objects register at construction and receive a ``LeakTracker``; the
tracker is closed when the object is destroyed. Trackers whose referent
is reclaimed while still active land on the reclamation queue and are
reported as leaks the next time the queue is polled.

Detection levels:
- DISABLED: no tracking at all
- LIGHT: 1-in-N sampled tracking, no stack traces
- FULL: every object tracked, no stack traces
- DEBUG: every object tracked (sampling optional), allocation and
  use stack traces retained

The level and its options are read once, when a registry is built.
Set them through the environment variables ``REFOBJECT_LEAK_DETECTION_LEVEL``,
``REFOBJECT_LEAK_DETECTION_SAMPLING_INTERVAL`` and
``REFOBJECT_LEAK_DETECTION_TRACE_COUNT``, or construct a registry
explicitly (recommended for tests).

Author: xwest
"""

import logging
import os
import random
import threading
from contextlib import contextmanager
from contextvars import ContextVar, Token, copy_context
from dataclasses import dataclass
from enum import Enum
from queue import Empty, SimpleQueue
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

import psutil

from .errors import ConfigurationError, ResourceLeakError
from .tracking import LeakTracker, LiveSet

logger = logging.getLogger(__name__)


ENV_LEVEL = "REFOBJECT_LEAK_DETECTION_LEVEL"
ENV_SAMPLING_INTERVAL = "REFOBJECT_LEAK_DETECTION_SAMPLING_INTERVAL"
ENV_TRACE_COUNT = "REFOBJECT_LEAK_DETECTION_TRACE_COUNT"

DEFAULT_LIGHT_SAMPLING_INTERVAL = 128
DEFAULT_TRACE_COUNT = 4

_PACKAGE = __name__.rpartition(".")[0]

# Library entry points elided from captured stacks
DEFAULT_SUPPRESSED_FRAMES = frozenset(
    f"{_PACKAGE}.{name}" for name in (
        "tracking.__init__",
        "tracking.trace",
        "leak_detector.register",
        "ref_counting.__init__",
        "ref_counting.retain",
        "ref_counting.release",
        "ref_counting.close",
        "ref_counting.trace",
        "ref_counting.__exit__",
        "closeable.__init__",
        "closeable.trace",
    )
)


class DetectionLevel(Enum):
    """Leak detection levels, in increasing order of cost"""
    DISABLED = 0
    LIGHT = 1
    FULL = 2
    DEBUG = 3

    def __ge__(self, other):
        if self.__class__ is other.__class__:
            return self.value >= other.value
        return NotImplemented

    def __gt__(self, other):
        if self.__class__ is other.__class__:
            return self.value > other.value
        return NotImplemented

    def __le__(self, other):
        if self.__class__ is other.__class__:
            return self.value <= other.value
        return NotImplemented

    def __lt__(self, other):
        if self.__class__ is other.__class__:
            return self.value < other.value
        return NotImplemented

    @classmethod
    def parse(cls, value: Any) -> "DetectionLevel":
        """Parse a level name (any case) or its number 0-3."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for level in cls:
            if text.lower() == level.name.lower() or text == str(level.value):
                return level
        raise ConfigurationError(
            ENV_LEVEL, value,
            "Acceptable values are DISABLED, LIGHT, FULL, DEBUG, or number 0-3.")


DEFAULT_LEVEL = DetectionLevel.FULL


@dataclass(frozen=True)
class LeakDetectorConfiguration:
    """Configuration parameters for a leak registry"""

    level: DetectionLevel = DEFAULT_LEVEL
    sampling_interval: int = 1   # 1 means every object is tracked
    trace_count: int = 0         # Retained trace records per object, DEBUG only

    def __post_init__(self):
        if not isinstance(self.level, DetectionLevel):
            object.__setattr__(self, "level", DetectionLevel.parse(self.level))
        if self.sampling_interval < 1:
            raise ConfigurationError(
                ENV_SAMPLING_INTERVAL, self.sampling_interval, "Must be 1 or greater.")
        if self.trace_count < 0:
            raise ConfigurationError(
                ENV_TRACE_COUNT, self.trace_count, "Must be 0 or greater.")

    @classmethod
    def for_level(cls, level: Any,
                  sampling_interval: Optional[int] = None,
                  trace_count: Optional[int] = None) -> "LeakDetectorConfiguration":
        """
        Build a configuration applying the per-level defaults.

        LIGHT samples 1 in 128 objects unless told otherwise. FULL always
        tracks every object. DEBUG tracks every object and keeps 4 trace
        records unless told otherwise. Options that a level does not use
        are ignored.
        """
        level = DetectionLevel.parse(level)

        if level is DetectionLevel.DISABLED or level is DetectionLevel.FULL:
            return cls(level, 1, 0)
        if level is DetectionLevel.LIGHT:
            if sampling_interval is None:
                sampling_interval = DEFAULT_LIGHT_SAMPLING_INTERVAL
            return cls(level, sampling_interval, 0)

        if sampling_interval is None:
            sampling_interval = 1
        if trace_count is None:
            trace_count = DEFAULT_TRACE_COUNT
        return cls(level, sampling_interval, trace_count)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None
                         ) -> "LeakDetectorConfiguration":
        """Read the configuration from environment variables."""
        if environ is None:
            environ = os.environ

        level = DetectionLevel.parse(environ.get(ENV_LEVEL, DEFAULT_LEVEL.name))
        return cls.for_level(
            level,
            sampling_interval=_int_option(environ, ENV_SAMPLING_INTERVAL),
            trace_count=_int_option(environ, ENV_TRACE_COUNT),
        )


def _int_option(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(name, raw, "Must be an integer.") from None


class LeakRegistry:
    """
    Registry of tracked objects for one process or scope.

    Owns the live-set of active trackers, the reclamation queue fed by
    weak reference callbacks, and the deduplicated log of leak messages.
    Leak detection is amortized over allocations: every ``register`` call
    drains the reclamation queue, so no background thread is needed.
    """

    _default: Optional["LeakRegistry"] = None
    _disabled: Optional["LeakRegistry"] = None
    _instance_lock = threading.Lock()

    def __init__(self, config: Optional[LeakDetectorConfiguration] = None,
                 suppressed_frames: Iterable[str] = ()):
        """
        Build a registry.

        ``suppressed_frames`` names extra ``"module.function"`` frames to
        elide from captured stacks, for example ``"mypackage.pool.acquire"``.
        They are added to the package's own entry points.
        """
        self.config = config or LeakDetectorConfiguration()
        self._suppressed = DEFAULT_SUPPRESSED_FRAMES | frozenset(suppressed_frames)

        self._live_set = LiveSet()
        self._queue: SimpleQueue = SimpleQueue()

        # Leak log
        self._leak_lock = threading.Lock()
        self._logged_leaks: Set[str] = set()
        self._leak_count = 0

        # Statistics
        self._stats_lock = threading.Lock()
        self._registrations = 0

    @classmethod
    def create(cls, level: Any,
               sampling_interval: Optional[int] = None,
               trace_count: Optional[int] = None,
               suppressed_frames: Iterable[str] = ()) -> "LeakRegistry":
        """Build a registry for ``level`` with the per-level defaults."""
        config = LeakDetectorConfiguration.for_level(level, sampling_interval, trace_count)
        return cls(config, suppressed_frames)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "LeakRegistry":
        config = LeakDetectorConfiguration.from_environment(environ)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s: %s", ENV_LEVEL, config.level.name.lower())
            logger.debug("%s: %d", ENV_SAMPLING_INTERVAL, config.sampling_interval)
            logger.debug("%s: %d", ENV_TRACE_COUNT, config.trace_count)
        return cls(config)

    @classmethod
    def default(cls) -> "LeakRegistry":
        """Process-wide registry configured from the environment"""
        if cls._default is None:
            with cls._instance_lock:
                if cls._default is None:
                    cls._default = cls.from_environment()
        return cls._default

    @classmethod
    def disabled(cls) -> "LeakRegistry":
        """Shared registry that never tracks anything"""
        if cls._disabled is None:
            with cls._instance_lock:
                if cls._disabled is None:
                    cls._disabled = cls(LeakDetectorConfiguration(DetectionLevel.DISABLED))
        return cls._disabled

    @property
    def level(self) -> DetectionLevel:
        return self.config.level

    @property
    def sampling_interval(self) -> int:
        return self.config.sampling_interval

    @property
    def trace_count(self) -> int:
        return self.config.trace_count

    @property
    def live_count(self) -> int:
        """Number of trackers still in the live-set"""
        return len(self._live_set)

    @property
    def leak_count(self) -> int:
        """Total leaks detected, including repeats of the same message"""
        return self._leak_count

    @property
    def leak_messages(self) -> List[str]:
        """Distinct leak messages recorded so far"""
        with self._leak_lock:
            return sorted(self._logged_leaks)

    def register(self, obj: Any, type_name: Optional[str] = None) -> Optional[LeakTracker]:
        """
        Start tracking ``obj`` if it is sampled.

        Returns the tracker, or None when the level is DISABLED or the
        object was not sampled. Drains the reclamation queue as a side
        effect.
        """
        if self.config.level is DetectionLevel.DISABLED:
            return None

        self.poll()

        interval = self.config.sampling_interval
        if interval != 1 and random.randrange(interval) != 0:
            return None

        tracker = LeakTracker(
            obj, self._queue, self._live_set,
            type_name=type_name,
            trace_count=self.config.trace_count,
            suppressed=self._suppressed,
        )
        with self._stats_lock:
            self._registrations += 1
        return tracker

    def poll(self) -> int:
        """
        Drain the reclamation queue and log leaks.

        Trackers that were closed after being queued are skipped.
        Returns the number of leaks found.
        """
        leaks = 0
        while True:
            try:
                tracker = self._queue.get_nowait()
            except Empty:
                return leaks

            if not tracker.mark_leaked():
                continue
            self._record_leak(tracker)
            leaks += 1

    def assert_all_destroyed(self):
        """
        Fail unless every tracked object has been destroyed.

        Every tracker still in the live-set is reported as a leak, whether
        or not its object has been reclaimed yet. Raises
        ``ResourceLeakError`` listing all distinct leak messages if any
        leak was recorded since the registry was created.
        """
        self.poll()

        leaked = []
        with self._live_set.lock:
            for tracker in self._live_set.iter_locked():
                if tracker.mark_leaked_locked():
                    leaked.append(tracker)

        for tracker in leaked:
            self._record_leak(tracker)

        with self._leak_lock:
            if self._leak_count == 0:
                return
            messages = sorted(self._logged_leaks)
        raise ResourceLeakError(messages)

    def _record_leak(self, tracker: LeakTracker):
        message = self.get_leak_warning(tracker)
        with self._leak_lock:
            self._leak_count += 1
            if message in self._logged_leaks:
                return
            self._logged_leaks.add(message)

        if logger.isEnabledFor(logging.ERROR):
            logger.error(message)

    def get_leak_warning(self, tracker: LeakTracker) -> str:
        """Render the leak message for ``tracker``."""
        warning = (
            f"RESOURCE LEAK DETECTED: Object of type {tracker.type_name} was not "
            "destroyed prior to becoming unreachable and garbage collected. "
            f"See the documentation of {_PACKAGE}.ReferenceCounted."
        )

        if self.config.level is not DetectionLevel.DEBUG:
            return (
                f"{warning} The detection level is {self.config.level.name}, "
                "which does not record stack traces. "
                f"To enable debugging, set {ENV_LEVEL}={DetectionLevel.DEBUG.name}."
            )

        trace_count = self.config.trace_count
        if trace_count == 0:
            hint = ("Stack traces are not being stored. To store allocation stack "
                    f"traces set {ENV_TRACE_COUNT}=1 or greater.")
        elif trace_count == 1:
            hint = ("Only the allocation stack trace was stored. To store additional "
                    f"stack traces set {ENV_TRACE_COUNT}=2 or greater.")
        else:
            hint = ("To trace the lifetime of the object more thoroughly, make more "
                    "frequent calls to trace().")
        return f"{warning}{tracker.get_traces_string()}\n\t{hint}"

    def get_stats(self) -> Dict[str, Any]:
        """Registry statistics plus the resident memory of the process"""
        with self._stats_lock:
            registrations = self._registrations
        with self._leak_lock:
            leak_count = self._leak_count
            distinct_leaks = len(self._logged_leaks)

        live = len(self._live_set)
        return {
            'level': self.config.level.name,
            'sampling_interval': self.config.sampling_interval,
            'trace_count': self.config.trace_count,
            'registrations': registrations,
            'live_trackers': live,
            'closed_trackers': registrations - live - leak_count,
            'leaks_detected': leak_count,
            'distinct_leaks': distinct_leaks,
            'pending_reclamations': self._queue.qsize(),
            'process_rss_bytes': psutil.Process(os.getpid()).memory_info().rss,
        }

    def __repr__(self) -> str:
        return (f"<LeakRegistry level={self.config.level.name} "
                f"sampling_interval={self.config.sampling_interval} "
                f"trace_count={self.config.trace_count}>")


# Registry selection

_current_registry: ContextVar[Optional[LeakRegistry]] = ContextVar(
    "refobject_current_registry", default=None)


def current_registry() -> LeakRegistry:
    """
    Registry used by tracked objects constructed without an explicit one.

    Plain threads start without a binding and fall back to
    ``LeakRegistry.default()``; a ``RegistryThread`` inherits the binding
    of the thread that constructed it.
    """
    registry = _current_registry.get()
    if registry is None:
        return LeakRegistry.default()
    return registry


def set_current_registry(registry: Optional[LeakRegistry]) -> Token:
    """Bind ``registry`` in the current context until rebound."""
    return _current_registry.set(registry)


@contextmanager
def use_registry(registry: LeakRegistry) -> Iterator[LeakRegistry]:
    """Bind ``registry`` for the duration of a ``with`` block."""
    token = _current_registry.set(registry)
    try:
        yield registry
    finally:
        _current_registry.reset(token)


class RegistryThread(threading.Thread):
    """
    Thread that inherits the registry bound where it was constructed.

    The creating context is copied in ``__init__`` and ``run`` executes
    inside that copy, so objects allocated by the target register with the
    parent's registry. Later rebinding in either thread is not shared.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._context = copy_context()

    def run(self):
        self._context.run(super().run)
