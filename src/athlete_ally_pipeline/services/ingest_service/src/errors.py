"""Exceptions raised while handling inbound requests."""


class IngestError(Exception):
    """Base class for ingest request failures."""

    status = 500


class MalformedPayload(IngestError):
    """Body is empty, not JSON or fails the request model."""

    status = 400

    def __init__(self, message: str = "Invalid payload", details=None):
        super().__init__(message)
        self.details = details or []


class SignatureMismatch(IngestError):
    """Webhook signature header does not match the body."""

    status = 401


class WebhookNotConfigured(IngestError):
    """A known vendor has no signing secret configured."""

    status = 500
