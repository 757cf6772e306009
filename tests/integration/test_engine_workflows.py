from datetime import timedelta

import httpx
import pytest

from mailflow.config import MailflowConfig
from mailflow.contracts import (
    ConditionStep,
    Delay,
    EmailStep,
    ExecutionStatus,
    TagActionStep,
    Trigger,
    TriggerCondition,
    TriggerEvent,
    WebhookStep,
    WorkflowDraft,
)
from mailflow.engine import create_engine
from mailflow.errors import EngineError, NotFoundError, SendGatewayError, ValidationError
from mailflow.persistence import InMemoryWorkflowStore, SQLiteWorkflowStore
from mailflow.templates import abandoned_cart, welcome_series


def single_email(template_id="welcome", trigger_type="api_trigger", conditions=()):
    return WorkflowDraft(
        name="One-off",
        trigger=Trigger(type=trigger_type, conditions=list(conditions)),
        steps=[EmailStep(id="send", template_id=template_id)],
    )


def purchase_check():
    return WorkflowDraft(
        name="Purchase check",
        trigger=Trigger(type="api_trigger"),
        steps=[
            ConditionStep(
                id="check",
                conditions=[TriggerCondition(field="purchased", operator="exists", value=True)],
                false_step_id="reminder",
            ),
            EmailStep(id="reminder", template_id="reminder"),
        ],
    )


class CountingStore(InMemoryWorkflowStore):
    def __init__(self):
        super().__init__()
        self.saved_failures = []
        self.deleted_failures = []

    async def save_send_failure(self, failure):
        self.saved_failures.append(failure.attempts)
        await super().save_send_failure(failure)

    async def delete_send_failure(self, key):
        self.deleted_failures.append(key)
        return await super().delete_send_failure(key)


@pytest.mark.asyncio
async def test_created_workflow_roundtrips(engine, clock):
    draft = welcome_series("welcome", "followup")
    created = await engine.create_workflow(draft)
    fetched = await engine.get_workflow(created.id)

    assert fetched.model_dump(include=set(WorkflowDraft.model_fields)) == draft.model_dump()
    assert fetched.created_at == clock.now
    assert fetched.version == 1
    assert fetched.stats.triggered == 0


@pytest.mark.asyncio
async def test_create_rejects_invalid_structure_before_persisting(engine, store):
    with pytest.raises(ValidationError) as info:
        await engine.create_workflow({"name": "Broken", "steps": []})
    assert "Workflow must have a trigger" in info.value.problems
    assert await store.list_workflows() == []


@pytest.mark.asyncio
async def test_welcome_series_waits_three_days(engine, gateway, clock):
    start = clock.now
    wf = await engine.create_workflow(welcome_series("welcome", "followup"))

    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    assert [m.to for m in gateway.sent] == ["a@x.com"]
    assert gateway.sent[0].subject == "Welcome to Our Community!"
    assert execution.status == ExecutionStatus.PENDING
    assert execution.scheduled_at == start + timedelta(days=3)
    assert execution.current_step_id == "follow_up_email"

    clock.advance(days=2, hours=23)
    report = await engine.scheduler.run_once()
    assert report.executions_due == 0
    untouched = await engine.get_execution(execution.id)
    assert untouched.model_dump() == execution.model_dump()
    assert len(gateway.sent) == 1

    clock.advance(hours=1)
    report = await engine.scheduler.run_once()
    assert report.executions_advanced == 1

    done = await engine.get_execution(execution.id)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_at == start + timedelta(days=3)
    assert [m.subject for m in gateway.sent] == [
        "Welcome to Our Community!",
        "How are you getting on?",
    ]
    assert [(e.step_id, e.status) for e in done.execution_log] == [
        ("welcome_email", "started"),
        ("welcome_email", "completed"),
        ("delay_3_days", "started"),
        ("delay_3_days", "completed"),
        ("follow_up_email", "started"),
        ("follow_up_email", "completed"),
    ]

    stats = (await engine.get_workflow(wf.id)).stats
    assert (stats.triggered, stats.completed, stats.failed) == (1, 1, 0)

    analytics = await engine.get_workflow_analytics(wf.id)
    assert analytics.stats.avg_completion_minutes == 3 * 24 * 60
    assert [e.id for e in analytics.recent_executions] == [execution.id]


@pytest.mark.asyncio
async def test_welcome_series_on_sqlite(tmp_path, renderer, gateway, directory, clock):
    store = SQLiteWorkflowStore(tmp_path / "mailflow.db")
    engine = create_engine(
        MailflowConfig(),
        renderer=renderer,
        gateway=gateway,
        directory=directory,
        store=store,
        clock=clock,
    )
    try:
        wf = await engine.create_welcome_workflow("welcome", "followup")
        execution = await engine.trigger_workflow(wf.id, "a@x.com")
        assert execution.status == ExecutionStatus.PENDING

        clock.advance(days=3)
        await engine.scheduler.run_once()
        done = await engine.get_execution(execution.id)
        assert done.status == ExecutionStatus.COMPLETED
        assert len(gateway.sent) == 2
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_condition_false_branch_sends_reminder(engine, gateway, directory):
    directory.add("b@x.com")
    wf = await engine.create_workflow(purchase_check())

    execution = await engine.trigger_workflow(wf.id, "b@x.com")

    assert execution.status == ExecutionStatus.COMPLETED
    assert [m.to for m in gateway.sent] == ["b@x.com"]
    check = next(e for e in execution.execution_log if e.step_id == "check" and e.status == "completed")
    assert check.data["condition_met"] is False


@pytest.mark.asyncio
async def test_condition_true_branch_without_target_completes(engine, gateway, directory):
    directory.add("c@x.com")
    wf = await engine.create_workflow(purchase_check())

    execution = await engine.trigger_workflow(wf.id, "c@x.com", {"purchased": True})

    assert execution.status == ExecutionStatus.COMPLETED
    assert gateway.sent == []
    assert execution.subscriber_data["purchased"] is True


@pytest.mark.asyncio
async def test_rate_limited_twice_then_sent(renderer, gateway, directory, clock):
    store = CountingStore()
    engine = create_engine(
        MailflowConfig(),
        renderer=renderer,
        gateway=gateway,
        directory=directory,
        store=store,
        clock=clock,
    )
    gateway.fail_next(
        SendGatewayError("Too many requests", status_code=429),
        SendGatewayError("Too many requests", status_code=429),
    )
    wf = await engine.create_workflow(single_email())

    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    assert execution.status == ExecutionStatus.PENDING
    assert execution.scheduled_at is None
    assert execution.awaiting_retry == f"{execution.id}:a@x.com:welcome"

    clock.advance(seconds=30)
    report = await engine.scheduler.run_once()
    assert report.retries_processed == 1
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.PENDING

    clock.advance(seconds=60)
    await engine.scheduler.run_once()

    done = await engine.get_execution(execution.id)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.awaiting_retry is None
    assert gateway.calls == 3
    assert store.saved_failures == [1, 2]
    assert store.deleted_failures == [f"{execution.id}:a@x.com:welcome"]
    assert await store.list_send_failures() == []

    completed = [e for e in done.execution_log if e.status == "completed"]
    assert len(completed) == 1
    assert completed[0].step_id == "send"
    assert completed[0].data["attempt"] == 3
    assert [e.status for e in done.execution_log].count("retrying") == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_execution(engine, gateway, clock):
    gateway.fail_next(*(SendGatewayError("Unavailable", status_code=503) for _ in range(3)))
    wf = await engine.create_workflow(single_email())
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    clock.advance(seconds=30)
    await engine.scheduler.run_once()
    clock.advance(seconds=60)
    await engine.scheduler.run_once()

    failed = await engine.get_execution(execution.id)
    assert failed.status == ExecutionStatus.FAILED
    assert failed.error.startswith("Failed to send email")
    assert (await engine.get_workflow(wf.id)).stats.failed == 1
    report = await engine.failure_report("1h")
    assert report.permanent_failures == 1


@pytest.mark.asyncio
async def test_permanent_send_failure_fails_immediately(engine, gateway):
    gateway.fail_next(SendGatewayError("Unauthorized", status_code=401))
    wf = await engine.create_workflow(single_email())

    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    assert execution.status == ExecutionStatus.FAILED
    assert execution.execution_log[-1].status == "failed"
    assert gateway.calls == 1


@pytest.mark.asyncio
async def test_trigger_rejections(engine, store):
    gated = await engine.create_workflow(
        single_email(conditions=[TriggerCondition(field="plan", operator="equals", value="pro")])
    )
    with pytest.raises(ValidationError):
        await engine.trigger_workflow(gated.id, "a@x.com", {"plan": "free"})
    with pytest.raises(NotFoundError):
        await engine.trigger_workflow(gated.id, "nobody@x.com")
    with pytest.raises(NotFoundError):
        await engine.trigger_workflow("no-such-workflow", "a@x.com")

    inactive = await engine.create_workflow(single_email().model_copy(update={"is_active": False}))
    with pytest.raises(ValidationError):
        await engine.trigger_workflow(inactive.id, "a@x.com")

    assert await store.list_executions() == []
    assert (await engine.get_workflow(gated.id)).stats.triggered == 0

    execution = await engine.trigger_workflow(gated.id, "a@x.com", {"plan": "pro"})
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_with_delay_defers_first_step(engine, gateway, clock):
    wf = await engine.create_workflow(single_email())
    execution = await engine.trigger_workflow(
        wf.id, "a@x.com", delay=Delay(amount=10, unit="minutes")
    )
    assert execution.status == ExecutionStatus.PENDING
    assert execution.scheduled_at == clock.now + timedelta(minutes=10)
    assert gateway.sent == []

    clock.advance(minutes=10)
    await engine.scheduler.run_once()
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_long_chains_yield_to_the_scheduler(renderer, gateway, directory, clock, store):
    config = MailflowConfig()
    config.scheduler.max_steps_per_tick = 2
    engine = create_engine(
        config, renderer=renderer, gateway=gateway, directory=directory, store=store, clock=clock
    )
    steps = [
        TagActionStep(id=f"tag{i}", tags=[f"t{i}"], next_steps=[f"tag{i + 1}"] if i < 3 else [])
        for i in range(1, 4)
    ]
    wf = await engine.create_workflow(
        WorkflowDraft(name="Tags", trigger=Trigger(), steps=steps)
    )

    execution = await engine.trigger_workflow(wf.id, "a@x.com")
    assert execution.status == ExecutionStatus.PENDING
    assert execution.scheduled_at == clock.now
    assert execution.current_step_id == "tag3"

    await engine.scheduler.run_once()
    done = await engine.get_execution(execution.id)
    assert done.status == ExecutionStatus.COMPLETED
    assert directory.subscriber("a@x.com").tags == ["t1", "t2", "t3"]


@pytest.mark.asyncio
async def test_handle_event_fans_out_to_matching_workflows(engine, directory):
    directory.add("buyer@x.com", plan="pro")
    matching = await engine.create_workflow(single_email(trigger_type="purchase"))
    await engine.create_workflow(
        single_email(
            trigger_type="purchase",
            conditions=[TriggerCondition(field="total", operator="greater_than", value=100)],
        )
    )
    await engine.create_workflow(single_email(trigger_type="welcome"))

    started = await engine.handle_event(
        TriggerEvent(event_type="purchase", subscriber_id="buyer@x.com", payload={"total": 20})
    )

    assert [e.workflow_id for e in started] == [matching.id]


@pytest.mark.asyncio
async def test_abandoned_cart_workflow(engine, gateway, directory, clock):
    wf = await engine.create_abandoned_cart_workflow("reminder")
    directory.add(
        "cart@x.com",
        cart_items=["sku-1"],
        cart_updated_at=(clock.now - timedelta(hours=2)).timestamp(),
    )

    execution = await engine.trigger_workflow(wf.id, "cart@x.com")
    assert execution.current_step_id == "check_purchase"

    clock.advance(days=1)
    await engine.scheduler.run_once()

    done = await engine.get_execution(execution.id)
    assert done.status == ExecutionStatus.COMPLETED
    assert [m.subject for m in gateway.sent] == [
        "You left something in your cart!",
        "Complete your purchase - 10% off!",
    ]
    assert abandoned_cart("reminder").trigger.type == "abandoned_cart"


@pytest.mark.asyncio
async def test_unexpected_errors_are_wrapped(renderer, gateway, directory, clock):
    class BrokenStore(InMemoryWorkflowStore):
        async def list_workflows(self):
            raise RuntimeError("connection reset")

    engine = create_engine(
        MailflowConfig(),
        renderer=renderer,
        gateway=gateway,
        directory=directory,
        store=BrokenStore(),
        clock=clock,
    )
    with pytest.raises(EngineError, match="connection reset"):
        await engine.list_workflows()


class FlakyStore(InMemoryWorkflowStore):
    def __init__(self, failing_saves=1):
        super().__init__()
        self.failing_saves = failing_saves

    async def save_execution(self, execution):
        if self.failing_saves:
            self.failing_saves -= 1
            raise RuntimeError("disk full")
        await super().save_execution(execution)


@pytest.mark.asyncio
async def test_parked_retry_survives_a_later_send_to_the_same_address(
    engine, gateway, store, clock
):
    gateway.fail_next(SendGatewayError("Too many requests", status_code=429))
    wf = await engine.create_workflow(single_email())

    first = await engine.trigger_workflow(wf.id, "a@x.com")
    second = await engine.trigger_workflow(wf.id, "a@x.com")

    assert first.status == ExecutionStatus.PENDING
    assert second.status == ExecutionStatus.COMPLETED
    assert [f.key for f in await store.list_send_failures()] == [first.awaiting_retry]

    clock.advance(seconds=30)
    await engine.scheduler.run_once()

    done = await engine.get_execution(first.id)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.execution_log[-1].data["attempt"] == 2
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_attempts_are_counted_per_execution(engine, gateway, store):
    gateway.fail_next(*(SendGatewayError("busy", status_code=503) for _ in range(3)))
    wf = await engine.create_workflow(single_email())

    executions = [await engine.trigger_workflow(wf.id, "a@x.com") for _ in range(3)]

    assert [e.status for e in executions] == [ExecutionStatus.PENDING] * 3
    assert len({e.awaiting_retry for e in executions}) == 3
    for execution in executions:
        retrying = [x for x in execution.execution_log if x.status == "retrying"]
        assert retrying[0].data["attempt"] == 1
    assert await store.list_permanent_failures() == []


@pytest.mark.asyncio
async def test_clearing_old_failures_keeps_parked_executions_alive(engine, gateway, clock):
    gateway.fail_next(SendGatewayError("Too many requests", status_code=429))
    wf = await engine.create_workflow(single_email())
    execution = await engine.trigger_workflow(wf.id, "a@x.com")

    clock.advance(hours=25)
    assert await engine.coordinator.clear_old_failures() == 0

    await engine.scheduler.run_once()
    assert (await engine.get_execution(execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_abandoned_running_execution_is_requeued(renderer, gateway, directory, clock):
    config = MailflowConfig()
    store = FlakyStore()
    engine = create_engine(
        config, renderer=renderer, gateway=gateway, directory=directory, store=store, clock=clock
    )
    wf = await engine.create_workflow(single_email())

    with pytest.raises(EngineError, match="disk full"):
        await engine.trigger_workflow(wf.id, "a@x.com")
    [stuck] = await store.list_executions()
    assert stuck.status == ExecutionStatus.RUNNING

    report = await engine.scheduler.run_once()
    assert report.recovered == 0
    assert (await engine.get_execution(stuck.id)).status == ExecutionStatus.RUNNING

    clock.advance(seconds=config.scheduler.lease_timeout + 1)
    report = await engine.scheduler.run_once()

    assert report.recovered == 1
    assert report.executions_advanced == 1
    assert (await engine.get_execution(stuck.id)).status == ExecutionStatus.COMPLETED
    assert [m.to for m in gateway.sent] == ["a@x.com"]


@pytest.mark.asyncio
async def test_webhook_timeout_fails_execution(renderer, gateway, directory, store, clock):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
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
                name="Hook",
                trigger=Trigger(),
                steps=[
                    WebhookStep(id="hook", url="https://hooks.test/in", next_steps=["send"]),
                    EmailStep(id="send", template_id="welcome"),
                ],
            )
        )
        execution = await engine.trigger_workflow(wf.id, "a@x.com")

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.startswith("Webhook failed")
    assert execution.awaiting_retry is None
    assert gateway.calls == 0
    assert await store.list_send_failures() == []


@pytest.mark.asyncio
async def test_handle_event_continues_after_a_workflow_errors(engine, monkeypatch):
    await engine.create_workflow(single_email(trigger_type="purchase"))
    await engine.create_workflow(single_email(trigger_type="purchase"))

    original = engine.runner.advance
    calls = []

    async def first_call_breaks(execution_id):
        calls.append(execution_id)
        if len(calls) == 1:
            raise RuntimeError("store offline")
        return await original(execution_id)

    monkeypatch.setattr(engine.runner, "advance", first_call_breaks)
    started = await engine.handle_event(
        TriggerEvent(event_type="purchase", subscriber_id="a@x.com")
    )

    assert len(calls) == 2
    assert [e.status for e in started] == [ExecutionStatus.COMPLETED]
