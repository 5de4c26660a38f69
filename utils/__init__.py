"""Shared utilities: errors, logging, datetime and validation helpers."""
