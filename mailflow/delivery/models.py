"""Records kept by the retry coordinator."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import new_id, utcnow


def failure_key(recipient: str, template_id: Optional[str]) -> str:
    return f"{recipient}:{template_id or 'default'}"


class OutboundEmail(BaseModel):
    """A fully rendered message plus the provenance needed to resend it."""

    to: str
    subject: str
    html: str
    text: str = ""
    from_name: str
    from_email: str
    template_id: Optional[str] = None
    subscriber_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None

    @property
    def retry_key(self) -> str:
        """Attempt counter key; scoped to the execution when there is one."""
        key = failure_key(self.to, self.template_id)
        return f"{self.execution_id}:{key}" if self.execution_id else key


class SendFailure(BaseModel):
    """Pending retry for one send of a (recipient, template) pair."""

    key: str
    recipient: str
    template_id: Optional[str] = None
    kind: str
    message: str
    details: Optional[str] = None
    attempts: int = 1
    last_attempt: datetime = Field(default_factory=utcnow)
    next_retry: Optional[datetime] = None
    retryable: bool = True
    email: OutboundEmail


class PermanentFailure(BaseModel):
    """Terminal record of a send that will not be retried."""

    id: str = Field(default_factory=new_id)
    recipient: str
    template_id: Optional[str] = None
    subscriber_id: Optional[str] = None
    execution_id: Optional[str] = None
    kind: str
    message: str
    details: Optional[str] = None
    attempts: int = 1
    created_at: datetime = Field(default_factory=utcnow)


class DeliveryReceipt(BaseModel):
    key: str
    message_id: str
    attempt: int


class RetryOutcome(BaseModel):
    """Result of one retry fired by the sweep."""

    key: str
    status: Literal["sent", "rescheduled", "failed"]
    attempt: int
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    message_id: Optional[str] = None
    next_retry: Optional[datetime] = None
    kind: Optional[str] = None
    error: Optional[str] = None


class FailureStats(BaseModel):
    total: int = 0
    retryable: int = 0
    permanent: int = 0
    by_error_code: Dict[str, int] = Field(default_factory=dict)
    oldest_failure: Optional[datetime] = None


class RecipientFailureCount(BaseModel):
    recipient: str
    count: int


class ErrorReport(BaseModel):
    timeframe: str
    since: datetime
    total_failures: int = 0
    pending_retries: int = 0
    permanent_failures: int = 0
    error_breakdown: Dict[str, int] = Field(default_factory=dict)
    top_failed_recipients: List[RecipientFailureCount] = Field(default_factory=list)
