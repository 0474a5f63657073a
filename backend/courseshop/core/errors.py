"""Billing error taxonomy.

Every error carries a ``context`` mapping (event id, subscription id, the field
that was missing, ...) that the webhook dispatcher logs alongside the message.
"""

from __future__ import annotations


class BillingError(Exception):
    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class SignatureError(BillingError):
    """The request is not a verifiable provider event. Never processed."""


class ReferentialError(BillingError):
    """A linked entity (user, course) does not exist in the application store."""


class DataIntegrityError(BillingError):
    """The event payload lacks a field needed to compute billing state."""


class PersistenceError(BillingError):
    """A write to or read from the durable store failed."""


class ProviderError(BillingError):
    """A call to the billing provider failed."""
