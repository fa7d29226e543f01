"""
Error types for refobject.

Misuse of the retain/release protocol is a broken ownership contract in
caller code, so those errors derive from ``AssertionError`` and carry the
recorded diagnostic traces of the offending object.

Author: xwest
"""

from typing import List, Optional


class RefObjectError(Exception):
    """Base class for all refobject errors."""


class LifecycleError(RefObjectError, AssertionError):
    """
    Fatal misuse of a tracked object's lifecycle.

    The ``traces`` attribute holds the rendered trace records of the
    object (empty when the object is not tracked or tracing is off).
    """

    def __init__(self, message: str, traces: Optional[str] = None):
        self.traces = traces or ""
        super().__init__(message + self.traces)


class ResurrectionError(LifecycleError):
    """Raised when ``retain`` is called on an object that was destroyed."""

    def __init__(self, traces: Optional[str] = None):
        super().__init__("Resurrected a destroyed object", traces)


class ReleasedDestroyedError(LifecycleError):
    """Raised when a strict object is released past zero."""

    def __init__(self, traces: Optional[str] = None):
        super().__init__("Tried to release a destroyed object", traces)


class DestroyedObjectError(LifecycleError):
    """Raised when a destroyed object is traced or otherwise used."""

    def __init__(self, traces: Optional[str] = None):
        super().__init__("Trying to use a destroyed object", traces)


class ResourceLeakError(RefObjectError, AssertionError):
    """
    Raised by ``LeakRegistry.assert_all_destroyed`` when leaks were found.

    ``leaks`` lists every distinct leak message recorded by the registry.
    """

    def __init__(self, leaks: List[str]):
        self.leaks = list(leaks)
        header = f"{len(self.leaks)} distinct resource leak(s) detected"
        super().__init__("\n\n".join([header] + self.leaks))


class ConfigurationError(RefObjectError, ValueError):
    """Invalid leak detection configuration."""

    def __init__(self, option: str, value: object, help_text: Optional[str] = None):
        self.option = option
        self.value = value
        self.help_text = help_text
        message = f"Invalid {option}={value!r}."
        if help_text:
            message += f" {help_text}"
        super().__init__(message)
