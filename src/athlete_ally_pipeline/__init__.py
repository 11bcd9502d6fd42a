"""
Athlete Ally Event Pipeline - vendor data ingestion and normalization.

This package receives raw wearable data (webhooks and direct ingest calls),
publishes it onto NATS JetStream and normalizes it into canonical Postgres
rows through durable, at-least-once consumers.
"""

__version__ = "1.0.0"
__author__ = "Athlete Ally Platform Team"
