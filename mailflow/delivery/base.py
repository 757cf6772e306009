"""Interfaces of the external collaborators the engine talks to."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from pydantic import BaseModel


class RenderedEmail(BaseModel):
    subject: str
    html: str
    text: str = ""


class SendResult(BaseModel):
    message_id: str


class TemplateRenderer(Protocol):
    """Turns a template id plus data into a rendered email.

    Implementations raise ``TemplateNotFound`` or ``TemplateRenderError``.
    """

    async def render(self, template_id: str, data: dict[str, Any]) -> RenderedEmail:
        """Render ``template_id`` with ``data``."""


class SendGateway(Protocol):
    """Delivers one rendered email to one address.

    Failures are raised as exceptions; ``SendGatewayError`` carries the
    provider status code and error body for classification.
    """

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        from_name: str,
        from_email: str,
    ) -> SendResult:
        """Send the message and return the provider message id."""


class SubscriberDirectory(Protocol):
    """Lookup and mutation of subscriber attributes and tags."""

    async def get(self, subscriber_id: str) -> Optional[dict[str, Any]]:
        """Return the subscriber's attributes, or ``None`` if unknown."""

    async def update(
        self,
        subscriber_id: str,
        tags: Optional[list[str]] = None,
        custom_fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Replace the tag set and/or merge custom fields; ``False`` on rejection."""
