from __future__ import annotations


class WebhookError(Exception):
    """Base class for failures that end webhook processing early."""

    status_code = 500


class AuthenticationError(WebhookError):
    status_code = 401


class MalformedPayloadError(WebhookError):
    status_code = 500


class StoreUnavailableError(WebhookError, RuntimeError):
    """The datastore could not be reached or rejected a query.

    Not considered consumed: the provider is expected to redeliver.
    """

    status_code = 500
