#!/usr/bin/env python3
"""
refobject
Reference counted objects with deterministic release and leak detection.
"""

from setuptools import setup, find_packages
import os
import re
import sys

# Ensure Python 3.9+
if sys.version_info < (3, 9):
    raise RuntimeError("refobject requires Python 3.9 or later")

# Read version from __init__.py
here = os.path.abspath(os.path.dirname(__file__))
version_file = os.path.join(here, "refobject", "__init__.py")
version = "0.1.0"
if os.path.exists(version_file):
    with open(version_file, encoding="utf-8") as f:
        match = re.search(r'^__version__ = "([^"]+)"', f.read(), re.MULTILINE)
        if match:
            version = match.group(1)

# Read README
readme_file = os.path.join(here, "README.md")
long_description = ""
if os.path.exists(readme_file):
    with open(readme_file, "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="refobject",
    version=version,
    description="Thread-safe reference counted objects with weak-reference leak detection",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="xwest",
    author_email="dev@neuralscript.org",
    license="Apache-2.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "psutil>=5.9.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "hypothesis>=6.80.0",
            "black>=23.3.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "isort>=5.12.0",
        ],
        "test": [
            "pytest>=7.4.0",
            "hypothesis>=6.80.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Software Development :: Debuggers",
    ],
    keywords=[
        "reference-counting", "resource-management", "leak-detection",
        "weakref", "lifecycle", "thread-safety"
    ],
    zip_safe=False,
    platforms=["Windows", "Linux", "macOS"],
)
