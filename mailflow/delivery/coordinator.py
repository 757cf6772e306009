"""Retry coordination for email sends.

Each send, keyed by execution, recipient and template, moves through
``Sending -> Sent | WaitingRetry -> Sending | Terminal``. Pending retries
live in the workflow store as ``SendFailure`` records so they survive a
restart; the scheduler's poll cycle calls :meth:`RetryCoordinator.process_retries`
to fire the ones that are due.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from ..config import RetryConfig
from ..contracts import utcnow
from ..errors import PermanentSendError, SendError, TransientSendError
from ..utils.retry import next_retry_at
from .base import SendGateway, SubscriberDirectory
from .classify import SendErrorKind, classify_error, describe_details, is_retryable
from .models import (
    DeliveryReceipt,
    ErrorReport,
    FailureStats,
    OutboundEmail,
    PermanentFailure,
    RecipientFailureCount,
    RetryOutcome,
    SendFailure,
)

if TYPE_CHECKING:
    from ..persistence import WorkflowStore

logger = logging.getLogger(__name__)

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


class RetryCoordinator:
    """Sends email through the gateway and owns the retry/backoff policy."""

    def __init__(
        self,
        store: "WorkflowStore",
        gateway: SendGateway,
        directory: Optional[SubscriberDirectory] = None,
        config: Optional[RetryConfig] = None,
        send_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._directory = directory
        self._config = config or RetryConfig()
        self._send_timeout = send_timeout
        self._clock = clock

    @property
    def config(self) -> RetryConfig:
        return self._config

    def backoff_for(self, attempt: int, now: datetime) -> datetime:
        cfg = self._config
        return next_retry_at(now, attempt, cfg.base_delay, cfg.backoff_factor, cfg.max_delay)

    # ------------------------------------------------------------------
    async def deliver(self, email: OutboundEmail) -> DeliveryReceipt:
        """Make one delivery attempt.

        Raises:
            TransientSendError: the failure is retryable and a retry was scheduled.
            PermanentSendError: the failure is permanent or the attempt ceiling
                was reached; a permanent failure record has been stored.
        """
        key = email.retry_key
        existing = await self._store.get_send_failure(key)
        attempt = existing.attempts + 1 if existing else 1

        try:
            result = await asyncio.wait_for(
                self._gateway.send(
                    email.to,
                    email.subject,
                    email.html,
                    email.text,
                    email.from_name,
                    email.from_email,
                ),
                timeout=self._send_timeout,
            )
        except Exception as exc:
            error = await self._handle_failure(email, exc, attempt, existing)
            raise error from exc

        if existing is not None:
            await self._store.delete_send_failure(key)
            logger.info(f"Email retry successful: {email.to} (attempt {attempt})")
        return DeliveryReceipt(key=key, message_id=result.message_id, attempt=attempt)

    async def _handle_failure(
        self,
        email: OutboundEmail,
        exc: BaseException,
        attempt: int,
        existing: Optional[SendFailure],
    ) -> SendError:
        kind = classify_error(exc)
        retryable = is_retryable(kind, exc)
        now = self._clock()
        message = str(exc) or kind.value

        if retryable and attempt < self._config.max_attempts:
            failure = SendFailure(
                key=email.retry_key,
                recipient=email.to,
                template_id=email.template_id,
                kind=kind.value,
                message=message,
                details=describe_details(exc),
                attempts=attempt,
                last_attempt=now,
                next_retry=self.backoff_for(attempt, now),
                retryable=True,
                email=email,
            )
            await self._store.save_send_failure(failure)
            logger.warning(
                f"Send to {email.to} failed with {kind.value} (attempt {attempt}); "
                f"retrying at {failure.next_retry.isoformat()}"
            )
            return TransientSendError(
                message, kind.value, attempt, failure.key, failure.next_retry
            )

        if existing is not None:
            await self._store.delete_send_failure(email.retry_key)
        await self._record_permanent(email, kind, message, attempt, describe_details(exc))
        return PermanentSendError(message, kind.value, attempt)

    async def record_render_failure(
        self,
        exc: BaseException,
        recipient: str,
        template_id: str,
        subscriber_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> PermanentSendError:
        """Store a template failure as permanent and return the error to raise."""
        kind = classify_error(exc)
        if kind not in (SendErrorKind.TEMPLATE_ERROR, SendErrorKind.TEMPLATE_RENDERING_ERROR):
            kind = SendErrorKind.TEMPLATE_RENDERING_ERROR
        message = str(exc) or kind.value
        placeholder = OutboundEmail(
            to=recipient,
            subject="",
            html="",
            from_name="",
            from_email="",
            template_id=template_id,
            subscriber_id=subscriber_id,
            execution_id=execution_id,
        )
        await self._record_permanent(placeholder, kind, message, 1, None)
        return PermanentSendError(message, kind.value, 1)

    async def _record_permanent(
        self,
        email: OutboundEmail,
        kind: SendErrorKind,
        message: str,
        attempts: int,
        details: Optional[str],
    ) -> None:
        now = self._clock()
        await self._store.record_permanent_failure(
            PermanentFailure(
                recipient=email.to,
                template_id=email.template_id,
                subscriber_id=email.subscriber_id,
                execution_id=email.execution_id,
                kind=kind.value,
                message=message,
                details=details,
                attempts=attempts,
                created_at=now,
            )
        )
        logger.error(
            f"Permanent send failure for {email.to}: {kind.value} after {attempts} attempt(s)"
        )

        if kind == SendErrorKind.INVALID_EMAIL and email.subscriber_id and self._directory:
            try:
                await self._directory.update(
                    email.subscriber_id,
                    custom_fields={
                        "email_valid": False,
                        "email_error": kind.value,
                        "email_error_at": now.isoformat(),
                    },
                )
            except Exception:
                logger.exception(f"Failed to flag invalid address for {email.subscriber_id}")

    # ------------------------------------------------------------------
    async def process_retries(self, now: Optional[datetime] = None) -> list[RetryOutcome]:
        """Fire every pending retry whose ``next_retry`` has elapsed."""
        now = now or self._clock()
        due = await self._store.list_due_send_failures(now)
        if not due:
            return []

        logger.info(f"Processing {len(due)} email retries")
        results = await asyncio.gather(
            *(self._retry(failure) for failure in due), return_exceptions=True
        )
        outcomes: list[RetryOutcome] = []
        for failure, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Retry for {failure.key} errored: {result!r}")
                continue
            outcomes.append(result)
        return outcomes

    async def _retry(self, failure: SendFailure) -> RetryOutcome:
        email = failure.email
        base = {
            "key": failure.key,
            "execution_id": email.execution_id,
            "step_id": email.step_id,
        }
        try:
            receipt = await self.deliver(email)
        except TransientSendError as exc:
            return RetryOutcome(
                status="rescheduled",
                attempt=exc.attempts,
                next_retry=exc.next_retry,
                kind=exc.kind,
                error=str(exc),
                **base,
            )
        except PermanentSendError as exc:
            return RetryOutcome(
                status="failed", attempt=exc.attempts, kind=exc.kind, error=str(exc), **base
            )
        return RetryOutcome(
            status="sent", attempt=receipt.attempt, message_id=receipt.message_id, **base
        )

    # ------------------------------------------------------------------
    async def failure_stats(self) -> FailureStats:
        failures = await self._store.list_send_failures()
        stats = FailureStats(
            total=len(failures),
            retryable=sum(1 for f in failures if f.retryable),
            permanent=sum(1 for f in failures if not f.retryable),
        )
        stats.by_error_code = dict(Counter(f.kind or "UNKNOWN" for f in failures))
        if failures:
            stats.oldest_failure = min(f.last_attempt for f in failures)
        return stats

    async def _awaited(self, failure: SendFailure) -> bool:
        execution_id = failure.email.execution_id
        if not execution_id:
            return False
        execution = await self._store.get_execution(execution_id)
        return (
            execution is not None
            and not execution.is_terminal
            and execution.awaiting_retry == failure.key
        )

    async def clear_old_failures(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """Drop pending retries whose last attempt is older than ``max_age``.

        Records that a live execution is still parked on are kept; the retry
        sweep is the only thing that resumes such an execution.
        """
        cutoff = self._clock() - max_age
        cleared = 0
        for failure in await self._store.list_send_failures():
            if failure.last_attempt >= cutoff:
                continue
            if await self._awaited(failure):
                logger.debug(f"Keeping old failure {failure.key}; an execution awaits it")
                continue
            if await self._store.delete_send_failure(failure.key):
                cleared += 1
        if cleared:
            logger.info(f"Cleared {cleared} old email failures")
        return cleared

    async def error_report(self, timeframe: str = "24h") -> ErrorReport:
        window = TIMEFRAMES.get(timeframe, TIMEFRAMES["24h"])
        since = self._clock() - window

        pending = [
            f for f in await self._store.list_send_failures() if f.last_attempt >= since
        ]
        permanent = await self._store.list_permanent_failures(since=since)

        breakdown = Counter(f.kind for f in pending)
        breakdown.update(p.kind for p in permanent)
        recipients = Counter(p.recipient for p in permanent)

        return ErrorReport(
            timeframe=timeframe if timeframe in TIMEFRAMES else "24h",
            since=since,
            total_failures=len(pending) + len(permanent),
            pending_retries=len(pending),
            permanent_failures=len(permanent),
            error_breakdown=dict(breakdown),
            top_failed_recipients=[
                RecipientFailureCount(recipient=r, count=c)
                for r, c in recipients.most_common(10)
            ],
        )
