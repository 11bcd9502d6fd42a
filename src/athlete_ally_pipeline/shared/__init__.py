"""Shared utilities: configuration loading, logging, retry, metrics and tracing."""
