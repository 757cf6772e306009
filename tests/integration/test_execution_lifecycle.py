import asyncio
from datetime import timedelta

import httpx
import pytest

from mailflow.config import MailflowConfig
from mailflow.contracts import (
    EmailStep,
    ExecutionStatus,
    Trigger,
    WebhookStep,
    WorkflowDraft,
)
from mailflow.engine import create_engine
from mailflow.errors import NotFoundError, SendGatewayError, ValidationError
from mailflow.templates import welcome_series


def single_email(name="One-off"):
    return WorkflowDraft(
        name=name,
        trigger=Trigger(),
        steps=[EmailStep(id="send", template_id="welcome")],
    )


@pytest.mark.asyncio
async def test_pause_and_resume_before_the_delay_is_due(engine, gateway, clock):
    start = clock.now
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    paused = await engine.pause_execution(execution.id)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.scheduled_at is None
    assert paused.resume_at == start + timedelta(days=3)

    clock.advance(days=1)
    resumed = await engine.resume_execution(execution.id)
    assert resumed.status == ExecutionStatus.PENDING
    assert resumed.scheduled_at == start + timedelta(days=3)
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_paused_execution_is_not_picked_up_and_resumes_late(engine, gateway, clock):
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    await engine.pause_execution(execution.id)

    clock.advance(days=4)
    report = await engine.scheduler.run_once()
    assert report.executions_due == 0
    assert len(gateway.sent) == 1

    resumed = await engine.resume_execution(execution.id)
    assert resumed.status == ExecutionStatus.COMPLETED
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_resume_without_advancing_queues_for_the_scheduler(engine, gateway, clock):
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    await engine.pause_execution(execution.id)

    clock.advance(days=4)
    queued = await engine.resume_execution(execution.id, advance=False)
    assert queued.status == ExecutionStatus.PENDING
    assert queued.scheduled_at == clock.now
    assert len(gateway.sent) == 1

    report = await engine.scheduler.run_once()
    assert report.executions_advanced == 1
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_pause_and_resume_reject_wrong_states(engine):
    wf = await engine.create_workflow(single_email())
    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    assert execution.status == ExecutionStatus.COMPLETED

    with pytest.raises(ValidationError):
        await engine.pause_execution(execution.id)
    with pytest.raises(ValidationError):
        await engine.resume_execution(execution.id)
    with pytest.raises(NotFoundError):
        await engine.pause_execution("missing")


@pytest.mark.asyncio
async def test_pause_takes_effect_at_next_step_boundary(
    renderer, gateway, directory, store, clock
):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_hook(request):
        entered.set()
        await release.wait()
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(slow_hook))
    engine = create_engine(
        MailflowConfig(),
        renderer=renderer,
        gateway=gateway,
        directory=directory,
        store=store,
        clock=clock,
        http_client=client,
    )
    wf = await engine.create_workflow(
        WorkflowDraft(
            name="Hook then mail",
            trigger=Trigger(),
            steps=[
                WebhookStep(id="hook", url="https://hooks.test/in", next_steps=["send"]),
                EmailStep(id="send", template_id="welcome"),
            ],
        )
    )

    run = asyncio.create_task(engine.trigger_workflow(wf.id, "a@x.com"))
    await asyncio.wait_for(entered.wait(), 1)
    execution_id = (await store.list_executions())[0].id

    pause = asyncio.create_task(engine.pause_execution(execution_id))
    await asyncio.sleep(0)
    release.set()
    result = await run
    paused = await pause
    await client.aclose()

    assert paused.status == ExecutionStatus.PAUSED
    assert result.status == ExecutionStatus.PAUSED
    assert result.current_step_id == "send"
    assert gateway.sent == []

    done = await engine.resume_execution(execution_id)
    assert done.status == ExecutionStatus.COMPLETED
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_retry_success_while_paused_holds_position(engine, gateway, clock):
    gateway.fail_next(SendGatewayError("Too many requests", status_code=429))
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    assert execution.awaiting_retry

    await engine.pause_execution(execution.id)
    clock.advance(seconds=30)
    await engine.scheduler.run_once()

    paused = await engine.get_execution(execution.id)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.awaiting_retry is None
    assert paused.current_step_id == "delay_3_days"
    assert len(gateway.sent) == 1

    resumed = await engine.resume_execution(execution.id)
    assert resumed.status == ExecutionStatus.PENDING
    assert resumed.scheduled_at == clock.now + timedelta(days=3)


@pytest.mark.asyncio
async def test_delete_refuses_in_flight_executions(engine, store):
    wf = await engine.create_workflow(welcome_series("welcome"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    with pytest.raises(ValidationError):
        await engine.delete_workflow(wf.id)

    assert await store.get_workflow(wf.id) is not None
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.PENDING


@pytest.mark.asyncio
async def test_delete_with_cascade_fails_in_flight_executions(engine, gateway, store):
    wf = await engine.create_workflow(welcome_series("welcome"))
    waiting = await engine.trigger_workflow(wf.id, "a@x.com")
    gateway.fail_next(SendGatewayError("Unavailable", status_code=503))
    engine.directory.add("b@x.com")
    retrying = await engine.trigger_workflow(wf.id, "b@x.com")
    assert retrying.awaiting_retry

    await engine.delete_workflow(wf.id, cascade=True)

    with pytest.raises(NotFoundError):
        await engine.get_workflow(wf.id)
    for execution_id in (waiting.id, retrying.id):
        closed = await engine.get_execution(execution_id)
        assert closed.status == ExecutionStatus.FAILED
        assert closed.error == "Workflow deleted"
    assert await store.list_send_failures() == []


@pytest.mark.asyncio
async def test_delete_without_in_flight_executions(engine):
    wf = await engine.create_workflow(single_email())
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    await engine.delete_workflow(wf.id)

    with pytest.raises(NotFoundError):
        await engine.get_workflow(wf.id)
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_structural_update_refused_while_in_flight(engine, clock):
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    with pytest.raises(ValidationError):
        await engine.update_workflow(wf.id, {"steps": [EmailStep(id="only", template_id="welcome")]})

    renamed = await engine.update_workflow(wf.id, {"name": "Hello Series", "version": 99})
    assert renamed.name == "Hello Series"
    assert renamed.version == 1

    clock.advance(days=3)
    await engine.scheduler.run_once()
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED

    updated = await engine.update_workflow(
        wf.id, {"steps": [EmailStep(id="only", template_id="welcome")]}
    )
    assert updated.version == 2
    assert [s.id for s in updated.steps] == ["only"]
    assert updated.stats.completed == 1


@pytest.mark.asyncio
async def test_update_validates_references(engine):
    wf = await engine.create_workflow(single_email())
    with pytest.raises(ValidationError) as info:
        await engine.update_workflow(
            wf.id, {"steps": [EmailStep(id="send", template_id="welcome", next_steps=["gone"])]}
        )
    assert "Step send references non-existent step: gone" in info.value.problems


@pytest.mark.asyncio
async def test_missing_workflow_fails_due_execution(engine, store, clock):
    wf = await engine.create_workflow(welcome_series("welcome"))
    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    await store.delete_workflow(wf.id)

    clock.advance(days=3)
    await engine.scheduler.run_once()

    failed = await engine.get_execution(execution.id)
    assert failed.status == ExecutionStatus.FAILED
    assert failed.error == "Workflow not found"
