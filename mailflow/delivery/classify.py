"""Classification of send failures into retryable and permanent kinds."""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Optional

import httpx

from ..errors import SendGatewayError, TemplateNotFound, TemplateRenderError


class SendErrorKind(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_EMAIL = "INVALID_EMAIL"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    REPUTATION_ISSUE = "REPUTATION_ISSUE"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    TEMPLATE_RENDERING_ERROR = "TEMPLATE_RENDERING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_KINDS = frozenset(
    {
        SendErrorKind.SERVER_ERROR,
        SendErrorKind.TIMEOUT,
        SendErrorKind.NETWORK_ERROR,
        SendErrorKind.CONNECTION_ERROR,
        SendErrorKind.RATE_LIMITED,
    }
)

NON_RETRYABLE_KINDS = frozenset(
    {
        SendErrorKind.INVALID_EMAIL,
        SendErrorKind.AUTHENTICATION_FAILED,
        SendErrorKind.FORBIDDEN,
        SendErrorKind.TEMPLATE_ERROR,
        SendErrorKind.TEMPLATE_RENDERING_ERROR,
    }
)


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def _provider_kind(details: Any) -> Optional[SendErrorKind]:
    if not isinstance(details, dict):
        return None
    errors = details.get("errors")
    if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
        return None
    first = errors[0]
    if first.get("field") in ("from", "to"):
        return SendErrorKind.INVALID_EMAIL
    message = str(first.get("message") or "").lower()
    if "reputation" in message:
        return SendErrorKind.REPUTATION_ISSUE
    if "quota" in message or "limit" in message:
        return SendErrorKind.QUOTA_EXCEEDED
    return None


def classify_error(error: BaseException) -> SendErrorKind:
    """Map any failure raised while sending to a ``SendErrorKind``.

    Never raises; anything unrecognised is ``UNKNOWN_ERROR``.
    """
    if isinstance(error, SendGatewayError) and error.kind:
        try:
            return SendErrorKind(error.kind)
        except ValueError:
            pass
    if isinstance(error, TemplateNotFound):
        return SendErrorKind.TEMPLATE_ERROR
    if isinstance(error, TemplateRenderError):
        return SendErrorKind.TEMPLATE_RENDERING_ERROR

    provider_kind = _provider_kind(getattr(error, "details", None))
    if provider_kind is not None:
        return provider_kind

    status = _status_code(error)
    if status is not None:
        if 400 <= status < 500:
            if status == 401:
                return SendErrorKind.AUTHENTICATION_FAILED
            if status == 403:
                return SendErrorKind.FORBIDDEN
            if status == 429:
                return SendErrorKind.RATE_LIMITED
            return SendErrorKind.CLIENT_ERROR
        if status >= 500:
            return SendErrorKind.SERVER_ERROR

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return SendErrorKind.TIMEOUT
    if isinstance(error, (httpx.ConnectError, ConnectionError)):
        return SendErrorKind.CONNECTION_ERROR
    if isinstance(error, httpx.TransportError):
        return SendErrorKind.NETWORK_ERROR

    message = str(error).lower()
    if "timeout" in message:
        return SendErrorKind.TIMEOUT
    if "network" in message:
        return SendErrorKind.NETWORK_ERROR
    if "connection" in message:
        return SendErrorKind.CONNECTION_ERROR
    if "template" in message:
        return SendErrorKind.TEMPLATE_ERROR
    if "handlebars" in message:
        return SendErrorKind.TEMPLATE_RENDERING_ERROR
    return SendErrorKind.UNKNOWN_ERROR


def is_retryable(kind: SendErrorKind, error: Optional[BaseException] = None) -> bool:
    if kind in NON_RETRYABLE_KINDS:
        return False
    if kind in RETRYABLE_KINDS:
        return True
    status = _status_code(error) if error is not None else None
    if status is not None:
        return status >= 500
    return False


def describe_details(error: BaseException) -> Optional[str]:
    """Serialise a provider error body for storage."""
    details = getattr(error, "details", None)
    if details is None:
        return None
    try:
        return json.dumps(details, default=str)
    except (TypeError, ValueError):
        return str(details)
