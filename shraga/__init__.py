"""Shraga — periodic HTTP health checks with single-flight execution per monitor."""

__version__ = "0.1.0"
