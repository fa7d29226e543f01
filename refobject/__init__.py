"""
refobject: reference counted objects with leak detection

Share resource-owning objects without a single owner while keeping their
release deterministic and exactly-once, and find the objects that were
never released.

Author: xwest
"""

__version__ = "0.1.0"

from .errors import (
    RefObjectError, LifecycleError, ResurrectionError, ReleasedDestroyedError,
    DestroyedObjectError, ResourceLeakError, ConfigurationError
)
from .tracking import LeakTracker, TrackerState, TraceRecord, capture_stack
from .leak_detector import (
    DetectionLevel, LeakDetectorConfiguration, LeakRegistry,
    RegistryThread, current_registry, set_current_registry, use_registry
)
from .ref_counting import AtomicCounter, Destroyable, ReferenceCounted
from .closeable import CloseableObject

__all__ = [
    # Lifecycle primitives
    'Destroyable', 'ReferenceCounted', 'CloseableObject', 'AtomicCounter',

    # Leak detection
    'DetectionLevel', 'LeakDetectorConfiguration', 'LeakRegistry',
    'RegistryThread', 'current_registry', 'set_current_registry', 'use_registry',
    'LeakTracker', 'TrackerState', 'TraceRecord', 'capture_stack',

    # Errors
    'RefObjectError', 'LifecycleError', 'ResurrectionError',
    'ReleasedDestroyedError', 'DestroyedObjectError', 'ResourceLeakError',
    'ConfigurationError',
]
