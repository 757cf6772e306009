"""In-process collaborators for development and tests."""

from __future__ import annotations

import uuid
from string import Template
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import TemplateNotFound, TemplateRenderError
from .base import RenderedEmail, SendResult


class StaticTemplateRenderer:
    """Render ``$placeholder`` templates held in a dictionary."""

    def __init__(self, templates: Optional[Dict[str, RenderedEmail]] = None) -> None:
        self._templates: Dict[str, RenderedEmail] = dict(templates or {})

    def add(self, template_id: str, subject: str, html: str, text: str = "") -> None:
        self._templates[template_id] = RenderedEmail(subject=subject, html=html, text=text)

    async def render(self, template_id: str, data: dict[str, Any]) -> RenderedEmail:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(f"Template not found: {template_id}")
        flat = {k: v for k, v in data.items() if isinstance(k, str)}
        try:
            return RenderedEmail(
                subject=Template(template.subject).safe_substitute(flat),
                html=Template(template.html).safe_substitute(flat),
                text=Template(template.text).safe_substitute(flat),
            )
        except ValueError as exc:
            raise TemplateRenderError(f"Template {template_id} failed to render: {exc}") from exc


class SentEmail(BaseModel):
    message_id: str
    to: str
    subject: str
    html: str
    text: str = ""
    from_name: str
    from_email: str


class RecordingSendGateway:
    """Keeps every sent email in ``sent``.

    Exceptions queued with :meth:`fail_next` are raised by the following
    ``send`` calls, one per call, before sends start succeeding again.
    """

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []
        self.calls = 0
        self._failures: List[BaseException] = []

    def fail_next(self, *errors: BaseException) -> None:
        self._failures.extend(errors)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        from_name: str,
        from_email: str,
    ) -> SendResult:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        message_id = uuid.uuid4().hex
        self.sent.append(
            SentEmail(
                message_id=message_id,
                to=to,
                subject=subject,
                html=html,
                text=text,
                from_name=from_name,
                from_email=from_email,
            )
        )
        return SendResult(message_id=message_id)


class InMemorySubscriber(BaseModel):
    id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class InMemorySubscriberDirectory:
    """Subscriber directory backed by a dictionary keyed by subscriber id."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, InMemorySubscriber] = {}

    def add(
        self, subscriber_id: str, tags: Optional[List[str]] = None, **attributes: Any
    ) -> InMemorySubscriber:
        subscriber = InMemorySubscriber(
            id=subscriber_id, attributes=attributes, tags=list(tags or [])
        )
        self._subscribers[subscriber_id] = subscriber
        return subscriber

    def subscriber(self, subscriber_id: str) -> Optional[InMemorySubscriber]:
        return self._subscribers.get(subscriber_id)

    async def get(self, subscriber_id: str) -> Optional[dict[str, Any]]:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return None
        data: dict[str, Any] = {"email": subscriber_id}
        data.update(subscriber.attributes)
        data["custom_fields"] = dict(subscriber.custom_fields)
        data["tags"] = list(subscriber.tags)
        return data

    async def update(
        self,
        subscriber_id: str,
        tags: Optional[list[str]] = None,
        custom_fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return False
        if tags is not None:
            subscriber.tags = list(tags)
        if custom_fields:
            subscriber.custom_fields.update(custom_fields)
        return True
