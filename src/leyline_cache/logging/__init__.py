"""Structured logging utilities."""

from .events import CacheEvent, JsonlEventLogger, sanitize_metadata, utc_timestamp

__all__ = ["CacheEvent", "JsonlEventLogger", "sanitize_metadata", "utc_timestamp"]
