"""Shared helpers: logging, errors, diffs, timestamps and console output."""
