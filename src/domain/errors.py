from __future__ import annotations

from typing import Any


class WebhookCoreError(Exception):
    """Base for errors translated into the JSON envelope at the HTTP boundary."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class ValidationError(WebhookCoreError):
    status_code = 400
    code = "validation_error"


class NotFound(WebhookCoreError):
    status_code = 404
    code = "not_found"


class RetryNotEligible(WebhookCoreError):
    status_code = 400
    code = "retry_not_eligible"


class SignatureInvalid(WebhookCoreError):
    status_code = 401
    code = "signature_invalid"


class UnrecognizedPayload(WebhookCoreError):
    status_code = 422
    code = "unrecognized_payload"


class OrganizationUnresolved(WebhookCoreError):
    status_code = 422
    code = "organization_unresolved"


class DownstreamProcessingFailure(WebhookCoreError):
    """Raised by handlers; the service records it on the event instead of propagating."""

    code = "downstream_processing_failure"


class ProviderError(DownstreamProcessingFailure):
    """Outbound provider call failed (WAHA, WhatsApp Cloud API)."""

    code = "provider_error"

    def __init__(self, message: str, *, provider: str, retryable: bool = False, **context: Any) -> None:
        super().__init__(message, provider=provider, retryable=retryable, **context)
        self.provider = provider
        self.retryable = retryable


class DuplicateEvent(ValidationError):
    status_code = 409
    code = "duplicate_event"
