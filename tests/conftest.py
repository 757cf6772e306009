from datetime import datetime, timedelta, timezone

import pytest

from mailflow.config import MailflowConfig
from mailflow.delivery import (
    InMemorySubscriberDirectory,
    RecordingSendGateway,
    StaticTemplateRenderer,
)
from mailflow.engine import create_engine
from mailflow.persistence import InMemoryWorkflowStore

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever the engine asks for ``now``."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def renderer():
    renderer = StaticTemplateRenderer()
    renderer.add("welcome", "Welcome $first_name", "<p>Hi $first_name</p>", "Hi $first_name")
    renderer.add("followup", "How are you getting on?", "<p>Checking in</p>")
    renderer.add("reminder", "Still thinking it over?", "<p>Your cart misses you</p>")
    return renderer


@pytest.fixture
def gateway():
    return RecordingSendGateway()


@pytest.fixture
def directory():
    directory = InMemorySubscriberDirectory()
    directory.add("a@x.com", first_name="Ada")
    return directory


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def config():
    return MailflowConfig()


@pytest.fixture
def engine(config, renderer, gateway, directory, store, clock):
    return create_engine(
        config,
        renderer=renderer,
        gateway=gateway,
        directory=directory,
        store=store,
        clock=clock,
    )
