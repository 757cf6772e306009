"""Email delivery: collaborator interfaces, failure classification and retries."""

from __future__ import annotations

from .base import RenderedEmail, SendGateway, SendResult, SubscriberDirectory, TemplateRenderer
from .classify import SendErrorKind, classify_error, is_retryable
from .coordinator import RetryCoordinator
from .inmemory import InMemorySubscriberDirectory, RecordingSendGateway, StaticTemplateRenderer
from .models import (
    DeliveryReceipt,
    ErrorReport,
    FailureStats,
    OutboundEmail,
    PermanentFailure,
    RetryOutcome,
    SendFailure,
    failure_key,
)
from .sendgrid import SendGridGateway

__all__ = [
    "RenderedEmail",
    "SendResult",
    "TemplateRenderer",
    "SendGateway",
    "SubscriberDirectory",
    "SendErrorKind",
    "classify_error",
    "is_retryable",
    "RetryCoordinator",
    "StaticTemplateRenderer",
    "RecordingSendGateway",
    "InMemorySubscriberDirectory",
    "SendGridGateway",
    "DeliveryReceipt",
    "ErrorReport",
    "FailureStats",
    "OutboundEmail",
    "PermanentFailure",
    "RetryOutcome",
    "SendFailure",
    "failure_key",
]
