"""Error taxonomy for the mailflow automation engine."""

from __future__ import annotations

from typing import Any, Optional


class MailflowError(Exception):
    """Base class for every error raised by mailflow."""


class ValidationError(MailflowError):
    """Workflow structure or trigger input was rejected before persistence."""

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class NotFoundError(MailflowError):
    """Unknown workflow, execution or subscriber."""


class IllegalTransitionError(MailflowError, ValueError):
    """An execution status change that the state machine does not allow."""


class EngineError(MailflowError):
    """Unexpected failure wrapped at the engine boundary."""


class StepExecutionError(MailflowError):
    """A step failed; the owning execution fails and is not retried."""

    def __init__(self, message: str, step_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.step_id = step_id


class TemplateNotFound(MailflowError):
    """Raised by template renderers for an unknown template id."""


class TemplateRenderError(MailflowError):
    """Raised by template renderers when rendering fails."""


class SendGatewayError(MailflowError):
    """Failure payload reported by a send gateway.

    Gateways may set ``kind`` directly when they already know the category;
    otherwise the classifier inspects ``status_code``, ``details`` and the
    message.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details
        self.kind = kind


class SendError(MailflowError):
    """Classified outcome of a failed delivery attempt."""

    def __init__(self, message: str, kind: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts


class TransientSendError(SendError):
    """Retryable send failure; a retry has been scheduled."""

    def __init__(
        self, message: str, kind: str, attempts: int, retry_key: str, next_retry: Any
    ) -> None:
        super().__init__(message, kind, attempts)
        self.retry_key = retry_key
        self.next_retry = next_retry


class PermanentSendError(SendError):
    """Non-retryable send failure, or the retry ceiling was reached."""


__all__ = [
    "MailflowError",
    "ValidationError",
    "NotFoundError",
    "IllegalTransitionError",
    "EngineError",
    "StepExecutionError",
    "TemplateNotFound",
    "TemplateRenderError",
    "SendGatewayError",
    "SendError",
    "TransientSendError",
    "PermanentSendError",
]
