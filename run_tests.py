#!/usr/bin/env python3
"""
Main test runner for refobject.

Runs a quick smoke check of the leak detector, then the full pytest suite.
Extra arguments are passed through to pytest.

Author: xwest
"""

import gc
import logging
import os
import sys

# Add the project root and the tests directory to the Python path
project_root = os.path.abspath(os.path.dirname(__file__))
sys.path.insert(0, project_root)
sys.path.insert(0, os.path.join(project_root, "tests"))


def run_smoke_check() -> bool:
    """Allocate, release and leak a few objects through a DEBUG registry."""

    print("🚀 refobject Test Suite")
    print("=" * 60)

    try:
        from refobject import (
            DetectionLevel, Destroyable, LeakRegistry, ReferenceCounted, ResourceLeakError
        )
        print("✅ refobject imported successfully")
    except ImportError as e:
        print(f"❌ Failed to import refobject: {e}")
        return False

    class Handle(Destroyable):
        def destroy(self):
            pass

    registry = LeakRegistry.create(DetectionLevel.DEBUG)

    print("  🔧 Retain/release...")
    obj = ReferenceCounted(Handle(), registry=registry)
    obj.retain()
    obj.release()
    if not obj.release():
        print("     ❌ Final release did not destroy the object")
        return False
    print("     ✅ Destroyed exactly once")

    print("  🔧 Leak detection...")
    ReferenceCounted(Handle(), registry=registry)
    gc.collect()

    # The leak report is expected here, keep it off the console
    logging.getLogger("refobject").setLevel(logging.CRITICAL)
    try:
        registry.assert_all_destroyed()
    except ResourceLeakError as e:
        print(f"     ✅ Leak detected ({len(e.leaks)} distinct message)")
    else:
        print("     ❌ Dropped object was not reported")
        return False
    finally:
        logging.getLogger("refobject").setLevel(logging.NOTSET)

    print()
    return True


def run_all_tests(args) -> int:
    import pytest

    if not run_smoke_check():
        return 1
    return pytest.main([os.path.join(project_root, "tests")] + list(args))


if __name__ == "__main__":
    sys.exit(run_all_tests(sys.argv[1:]))
