"""Ingest service: HTTP entry point for vendor webhooks and direct ingest."""
