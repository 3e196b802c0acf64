"""Shared fixtures for the Handoff Broker tests."""

from datetime import datetime, timedelta, timezone

import pytest

from handoff_broker.models import AggregationChannel, PartyIdentity
from handoff_broker.roster import StaticRoster
from handoff_broker.router import RoutingEngine


class FakeClock:
    """Settable clock so request ages can be controlled."""

    def __init__(self, start: datetime = datetime(2025, 8, 27, 10, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_party(account_id: str, channel_id: str = "webchat", ref: str = None, name: str = None) -> PartyIdentity:
    return PartyIdentity(
        channel_id=channel_id,
        account_id=account_id,
        account_name=name,
        conversation_ref=ref or f"conv-{account_id}"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def customer():
    return make_party("customer-1", name="Casey Customer")


@pytest.fixture
def agent():
    return make_party("agent-1", channel_id="teams", name="Alex Agent")


@pytest.fixture
def agent_channel():
    return AggregationChannel(channel_id="teams", conversation_ref="conv-agent-pool", name="Agent pool")


@pytest.fixture
def roster(agent, agent_channel):
    return StaticRoster(owners=[agent], aggregation_channels=[agent_channel])


@pytest.fixture
def engine(clock):
    """Engine with no roster: every request is accepted for announcement."""
    return RoutingEngine(clock=clock)


@pytest.fixture
def roster_engine(clock, roster):
    return RoutingEngine(roster=roster, clock=clock, require_aggregation_channel=True)
