"""Handlers for each workflow step variant."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Type

import httpx

from .conditions import evaluate_conditions
from .config import SenderConfig
from .contracts import (
    STEP_TYPES,
    ConditionStep,
    DelayStep,
    EmailStep,
    SplitTestStep,
    StepBase,
    TagActionStep,
    WebhookStep,
    WorkflowExecution,
    utcnow,
)
from .delivery.base import SubscriberDirectory, TemplateRenderer
from .delivery.coordinator import RetryCoordinator
from .delivery.models import OutboundEmail
from .errors import StepExecutionError, TemplateNotFound, TemplateRenderError

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """What a handler decided: where to go next and whether to wait first."""

    next_step_id: Optional[str]
    defer_until: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)


def split_bucket(subscriber_id: str) -> int:
    """Stable bucket in ``[0, 100)`` derived only from the subscriber id."""
    digest = hashlib.sha256(subscriber_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


Handler = Callable[[Any, WorkflowExecution], Awaitable[StepResult]]


class StepHandlers:
    """Runs one step of an execution.

    Handlers are looked up by step class. Construction fails if a step
    variant has no handler, so adding a variant without one is caught at
    start-up rather than mid-execution.
    """

    def __init__(
        self,
        renderer: TemplateRenderer,
        coordinator: RetryCoordinator,
        directory: SubscriberDirectory,
        sender: Optional[SenderConfig] = None,
        webhook_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._renderer = renderer
        self._coordinator = coordinator
        self._directory = directory
        self._sender = sender or SenderConfig()
        self._webhook_timeout = webhook_timeout
        self._http_client = http_client
        self._clock = clock

        self._handlers: Dict[Type[StepBase], Handler] = {
            EmailStep: self.run_email,
            DelayStep: self.run_delay,
            ConditionStep: self.run_condition,
            TagActionStep: self.run_tag_action,
            WebhookStep: self.run_webhook,
            SplitTestStep: self.run_split_test,
        }
        missing = [t.__name__ for t in STEP_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"No handler for step types: {', '.join(missing)}")

    async def run(self, step: StepBase, execution: WorkflowExecution) -> StepResult:
        handler = self._handlers.get(type(step))
        if handler is None:
            raise StepExecutionError(f"Unknown step type: {type(step).__name__}", step.id)
        return await handler(step, execution)

    # ------------------------------------------------------------------
    async def run_email(self, step: EmailStep, execution: WorkflowExecution) -> StepResult:
        if not step.template_id:
            raise StepExecutionError("Template ID is required for email step", step.id)

        try:
            rendered = await self._renderer.render(step.template_id, execution.subscriber_data)
        except (TemplateNotFound, TemplateRenderError) as exc:
            raise await self._coordinator.record_render_failure(
                exc,
                recipient=execution.recipient,
                template_id=step.template_id,
                subscriber_id=execution.subscriber_id,
                execution_id=execution.id,
            ) from exc

        email = OutboundEmail(
            to=execution.recipient,
            subject=step.subject or rendered.subject,
            html=rendered.html,
            text=rendered.text,
            from_name=step.from_name or self._sender.from_name,
            from_email=step.from_email or self._sender.from_email,
            template_id=step.template_id,
            subscriber_id=execution.subscriber_id,
            execution_id=execution.id,
            step_id=step.id,
        )
        receipt = await self._coordinator.deliver(email)
        return StepResult(
            step.first_successor(),
            data={"message_id": receipt.message_id, "attempt": receipt.attempt},
        )

    async def run_delay(self, step: DelayStep, execution: WorkflowExecution) -> StepResult:
        due = self._clock() + step.delay.to_timedelta()
        return StepResult(
            step.first_successor(), defer_until=due, data={"scheduled_at": due.isoformat()}
        )

    async def run_condition(
        self, step: ConditionStep, execution: WorkflowExecution
    ) -> StepResult:
        met = evaluate_conditions(step.conditions, execution.subscriber_data)
        if met:
            next_id = step.true_step_id or step.first_successor()
        else:
            next_id = step.false_step_id
        return StepResult(next_id, data={"condition_met": met})

    async def run_tag_action(
        self, step: TagActionStep, execution: WorkflowExecution
    ) -> StepResult:
        try:
            subscriber = await self._directory.get(execution.subscriber_id)
        except Exception as exc:
            raise StepExecutionError(f"Subscriber lookup failed: {exc}", step.id) from exc

        if subscriber is None:
            logger.warning(
                f"Subscriber {execution.subscriber_id} not found; skipping tag action {step.id}"
            )
            return StepResult(step.first_successor(), data={"skipped": True})

        tags = list(subscriber.get("tags") or [])
        if step.action == "add":
            tags.extend(tag for tag in step.tags if tag not in tags)
        else:
            removed = set(step.tags)
            tags = [tag for tag in tags if tag not in removed]

        try:
            ok = await self._directory.update(execution.subscriber_id, tags=tags)
        except Exception as exc:
            raise StepExecutionError(f"Tag update failed: {exc}", step.id) from exc
        if not ok:
            raise StepExecutionError(
                f"Tag update rejected for subscriber {execution.subscriber_id}", step.id
            )
        return StepResult(step.first_successor(), data={"tags": tags})

    async def run_webhook(self, step: WebhookStep, execution: WorkflowExecution) -> StepResult:
        payload = dict(step.payload)
        payload["execution"] = {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "subscriber_id": execution.subscriber_id,
            "subscriber_data": execution.subscriber_data,
        }
        headers = {"Content-Type": "application/json", **step.headers}
        body = None if step.method == "GET" else json.dumps(payload, default=str)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    step.method,
                    step.url,
                    headers=headers,
                    content=body,
                    timeout=self._webhook_timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._webhook_timeout) as client:
                    response = await client.request(
                        step.method, step.url, headers=headers, content=body
                    )
        except httpx.HTTPError as exc:
            raise StepExecutionError(f"Webhook failed: {exc!r}", step.id) from exc

        if not response.is_success:
            raise StepExecutionError(
                f"Webhook failed: {response.status_code} {response.reason_phrase}", step.id
            )
        return StepResult(step.first_successor(), data={"status_code": response.status_code})

    async def run_split_test(
        self, step: SplitTestStep, execution: WorkflowExecution
    ) -> StepResult:
        bucket = split_bucket(execution.subscriber_id)
        variant = "A" if bucket < step.percentage else "B"
        next_id = step.variant_a_step_id if variant == "A" else step.variant_b_step_id
        return StepResult(next_id, data={"variant": variant, "bucket": bucket})
