"""Ready-made workflow drafts for common lifecycle campaigns."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from .contracts import (
    ConditionStep,
    Delay,
    DelayStep,
    EmailStep,
    Trigger,
    TriggerCondition,
    WorkflowDraft,
    utcnow,
)


def welcome_series(template_id: str, followup_template_id: Optional[str] = None) -> WorkflowDraft:
    """Welcome email, three days of quiet, then a follow-up."""
    return WorkflowDraft(
        name="Welcome Series",
        description="Automated welcome email series for new subscribers",
        trigger=Trigger(
            type="welcome",
            name="New Subscriber",
            description="Triggered when someone subscribes",
            conditions=[TriggerCondition(field="email", operator="exists", value=True)],
        ),
        steps=[
            EmailStep(
                id="welcome_email",
                name="Send Welcome Email",
                template_id=template_id,
                subject="Welcome to Our Community!",
                position=1,
                next_steps=["delay_3_days"],
            ),
            DelayStep(
                id="delay_3_days",
                name="Wait 3 Days",
                delay=Delay(amount=3, unit="days"),
                position=2,
                next_steps=["follow_up_email"],
            ),
            EmailStep(
                id="follow_up_email",
                name="Send Follow-up Email",
                template_id=followup_template_id or template_id,
                subject="How are you getting on?",
                position=3,
            ),
        ],
    )


def abandoned_cart(template_id: str, now: Optional[datetime] = None) -> WorkflowDraft:
    """Cart reminder, one day wait, and a discount reminder unless they bought.

    The time thresholds are POSIX seconds fixed when the draft is built, so
    ``cart_updated_at`` and ``last_purchase_date`` must be supplied in the
    same unit.
    """
    now = now or utcnow()
    an_hour_ago = (now - timedelta(hours=1)).timestamp()
    two_days_ago = (now - timedelta(days=2)).timestamp()

    return WorkflowDraft(
        name="Abandoned Cart Recovery",
        description="Re-engage customers who left items in their cart",
        trigger=Trigger(
            type="abandoned_cart",
            name="Cart Abandoned",
            description="Triggered when cart is abandoned for 1 hour",
            conditions=[
                TriggerCondition(field="cart_items", operator="exists", value=True),
                TriggerCondition(
                    field="cart_updated_at", operator="less_than", value=an_hour_ago
                ),
            ],
        ),
        steps=[
            EmailStep(
                id="reminder_email_1",
                name="First Reminder",
                template_id=template_id,
                subject="You left something in your cart!",
                position=1,
                next_steps=["delay_1_day"],
            ),
            DelayStep(
                id="delay_1_day",
                name="Wait 1 Day",
                delay=Delay(amount=1, unit="days"),
                position=2,
                next_steps=["check_purchase"],
            ),
            ConditionStep(
                id="check_purchase",
                name="Check if Purchased",
                conditions=[
                    TriggerCondition(
                        field="last_purchase_date", operator="greater_than", value=two_days_ago
                    )
                ],
                false_step_id="reminder_email_2",
                position=3,
            ),
            EmailStep(
                id="reminder_email_2",
                name="Second Reminder with Discount",
                template_id=template_id,
                subject="Complete your purchase - 10% off!",
                position=4,
            ),
        ],
    )
