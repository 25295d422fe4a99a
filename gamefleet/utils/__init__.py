"""Utility functions for gamefleet."""

from gamefleet.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
