"""Shared utilities: structured logging, retry, time helpers."""
