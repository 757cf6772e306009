import pytest

from mailflow.contracts import (
    DelayStep,
    ExecutionStatus,
    WorkflowDraft,
    WorkflowExecution,
)
from mailflow.errors import IllegalTransitionError


def make_execution(**overrides):
    return WorkflowExecution(workflow_id="wf", subscriber_id="a@x.com", **overrides)


def test_steps_parse_by_type_discriminator():
    draft = WorkflowDraft.model_validate(
        {
            "name": "x",
            "steps": [
                {"id": "d", "type": "delay", "delay": {"amount": 3, "unit": "days"}},
                {"id": "e", "type": "email", "template_id": "t"},
            ],
        }
    )
    assert isinstance(draft.steps[0], DelayStep)
    assert draft.steps[0].delay.to_timedelta().days == 3


def test_pending_clears_schedule_when_leaving():
    execution = make_execution()
    execution.transition(ExecutionStatus.PENDING, scheduled_at=execution.started_at)
    assert execution.scheduled_at is not None
    execution.transition(ExecutionStatus.RUNNING)
    assert execution.scheduled_at is None


def test_terminal_statuses_are_immutable():
    execution = make_execution(status=ExecutionStatus.RUNNING)
    execution.transition(ExecutionStatus.COMPLETED)
    assert execution.completed_at is not None
    for status in ExecutionStatus:
        with pytest.raises(IllegalTransitionError):
            execution.transition(status)


def test_pending_cannot_complete_directly():
    execution = make_execution()
    with pytest.raises(IllegalTransitionError):
        execution.transition(ExecutionStatus.COMPLETED)


def test_failure_records_error_and_clears_retry_marker():
    execution = make_execution(status=ExecutionStatus.RUNNING, awaiting_retry="k")
    execution.transition(ExecutionStatus.FAILED, error="boom")
    assert execution.error == "boom"
    assert execution.awaiting_retry is None


def test_recipient_falls_back_to_subscriber_id():
    assert make_execution().recipient == "a@x.com"
    assert make_execution(subscriber_data={"email": "b@x.com"}).recipient == "b@x.com"
