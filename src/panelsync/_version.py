"""Stores the version number for the panelsync package.

This module simply defines the `__version__` constant used during packaging
and reported by `python -m panelsync --version`.
"""

# The single source of truth for the package version.
__version__ = "0.1.0"
