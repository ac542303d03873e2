# src/__init__.py — v1
"""sorodeploy — dependency-ordered, resilient batch deployment of Soroban contracts."""

from sorodeploy.version import __version__

__all__ = ["__version__"]
