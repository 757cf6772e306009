import asyncio

import pytest

from mailflow.contracts import (
    Delay,
    EmailStep,
    ExecutionStatus,
    Trigger,
    TriggerEvent,
    WorkflowDraft,
)
from mailflow.events import InMemoryEventTransport
from mailflow.scheduler import EventListener


def single_email(trigger_type="api_trigger"):
    return WorkflowDraft(
        name="One-off",
        trigger=Trigger(type=trigger_type),
        steps=[EmailStep(id="send", template_id="welcome")],
    )


async def deferred(engine, subscriber_id, minutes=5):
    wf = await engine.create_workflow(single_email())
    return await engine.trigger_workflow(
        wf.id, subscriber_id, delay=Delay(amount=minutes, unit="minutes")
    )


@pytest.mark.asyncio
async def test_one_broken_execution_does_not_stop_the_cycle(engine, directory, clock, monkeypatch):
    directory.add("b@x.com")
    bad = await deferred(engine, "a@x.com")
    good = await deferred(engine, "b@x.com")

    original = engine.runner.advance

    async def flaky(execution_id):
        if execution_id == bad.id:
            raise RuntimeError("disk on fire")
        return await original(execution_id)

    monkeypatch.setattr(engine.runner, "advance", flaky)
    clock.advance(minutes=5)
    report = await engine.scheduler.run_once()

    assert report.executions_due == 2
    assert report.executions_errored == 1
    assert report.executions_advanced == 1
    assert (await engine.get_execution(good.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_claim_skips_executions_paused_after_listing(engine, store, clock):
    execution = await deferred(engine, "a@x.com")
    clock.advance(minutes=5)

    original = store.list_due_executions

    async def list_then_pause(now, limit=None):
        due = await original(now, limit)
        for item in due:
            await engine.pause_execution(item.id)
        return due

    store.list_due_executions = list_then_pause
    report = await engine.scheduler.run_once()

    assert report.executions_due == 1
    assert report.executions_advanced == 0
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_overlapping_cycles_are_skipped(engine):
    async with engine.scheduler._cycle_lock:
        report = await engine.scheduler.run_once()
    assert report.skipped is True


@pytest.mark.asyncio
async def test_purge_removes_old_terminal_executions(engine, clock, config):
    wf = await engine.create_workflow(single_email())
    old = await engine.trigger_workflow(wf.id, "a@x.com")
    assert old.status == ExecutionStatus.COMPLETED

    clock.advance(days=config.scheduler.retention_days, seconds=1)
    recent = await engine.trigger_workflow(wf.id, "a@x.com")

    report = await engine.scheduler.run_once()

    assert report.purged == 1
    remaining = [e.id for e in await engine.recent_executions(wf.id)]
    assert remaining == [recent.id]

    again = await engine.scheduler.run_once()
    assert again.purged == 0


@pytest.mark.asyncio
async def test_run_with_lifespan_processes_due_work(engine, gateway, clock):
    await deferred(engine, "a@x.com")
    clock.advance(minutes=5)

    await asyncio.wait_for(engine.scheduler.run(lifespan=0.05), 2)

    assert len(gateway.sent) == 1
    assert engine.scheduler.running is False


@pytest.mark.asyncio
async def test_stop_ends_the_loop(engine):
    task = asyncio.create_task(engine.scheduler.run())
    await asyncio.sleep(0.01)
    assert engine.scheduler.running is True

    engine.scheduler.stop()
    await asyncio.wait_for(task, 1)
    assert engine.scheduler.running is False


@pytest.mark.asyncio
async def test_event_listener_feeds_the_engine(engine, gateway):
    await engine.create_workflow(single_email(trigger_type="signup"))
    transport = InMemoryEventTransport(poll_interval=0.01)
    await transport.publish("events", TriggerEvent(event_type="signup", subscriber_id="a@x.com"))
    await transport.publish(
        "events", TriggerEvent(event_type="signup", subscriber_id="ghost@x.com")
    )

    listener = EventListener(transport, engine.handle_event)
    handled = await listener.run(lifespan=0.1)

    assert handled == 2
    assert [m.to for m in gateway.sent] == ["a@x.com"]
    assert transport.pending("events") == 0
