"""Normalize service: durable consumers that validate, normalize and store events."""
