# utils/__init__.py
"""General utilities for Marginalia."""

from .logging import setup_logging_marginalia

__all__ = ["setup_logging_marginalia"]
