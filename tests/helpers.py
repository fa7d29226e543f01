"""
Shared resources for the refobject test suite.

Author: xwest
"""

import threading

from refobject import Destroyable


class CountingResource(Destroyable):
    """Resource that counts how often it was destroyed."""

    def __init__(self):
        self.destroy_calls = 0
        self._lock = threading.Lock()

    def destroy(self):
        with self._lock:
            self.destroy_calls += 1


class FailingResource(Destroyable):
    """Resource whose cleanup always fails."""

    def __init__(self):
        self.destroy_calls = 0

    def destroy(self):
        self.destroy_calls += 1
        raise RuntimeError("cleanup failed")


class NoopResource(Destroyable):
    def destroy(self):
        pass
