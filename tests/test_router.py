"""Tests for the routing engine state machine."""

import asyncio
from datetime import timedelta

import pytest

from handoff_broker.models import RoutingResultType
from handoff_broker.roster import StaticRoster
from handoff_broker.router import RouterError, RoutingEngine
from handoff_broker.store import ConnectionRequestStore

from conftest import make_party


class TestRequestConnection:
    @pytest.mark.asyncio
    async def test_second_request_from_same_party_is_already_requested(self, engine):
        first = await engine.request_connection(make_party("u1", ref="tab-1"))
        second = await engine.request_connection(make_party("u1", ref="tab-2"))

        assert first.type == RoutingResultType.CONNECTION_REQUESTED
        assert second.type == RoutingResultType.CONNECTION_ALREADY_REQUESTED
        assert len(await engine.get_pending_requests()) == 1

    @pytest.mark.asyncio
    async def test_missing_requestor(self, engine):
        result = await engine.request_connection(None)
        assert result.type == RoutingResultType.ERROR
        assert result.error_message == "Requestor missing"

    @pytest.mark.asyncio
    async def test_connected_party_must_disconnect_first(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)

        result = await engine.request_connection(customer)

        assert result.type == RoutingResultType.ERROR
        assert "disconnect first" in result.error_message
        assert await engine.get_pending_requests() == []

    @pytest.mark.asyncio
    async def test_announcement_destination_is_second_ref(self, roster_engine, customer):
        result = await roster_engine.request_connection(customer)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED
        assert result.conversation_refs == ("conv-customer-1", "conv-agent-pool")

    @pytest.mark.asyncio
    async def test_no_aggregation_channel(self, clock, agent, customer):
        engine = RoutingEngine(
            roster=StaticRoster(owners=[agent]), clock=clock, require_aggregation_channel=True
        )

        result = await engine.request_connection(customer)

        assert result.type == RoutingResultType.NO_AGGREGATION_CHANNEL
        assert await engine.find_connection_request(customer) is None

    @pytest.mark.asyncio
    async def test_no_agents_available(self, clock, agent_channel, customer):
        engine = RoutingEngine(roster=StaticRoster(aggregation_channels=[agent_channel]), clock=clock)

        result = await engine.request_connection(customer)

        assert result.type == RoutingResultType.NO_AGENTS_AVAILABLE
        assert await engine.get_pending_requests() == []

    @pytest.mark.asyncio
    async def test_aggregation_party_cannot_request(self, roster_engine):
        pool_member = make_party("someone", channel_id="teams", ref="conv-agent-pool")

        result = await roster_engine.request_connection(pool_member)

        assert result.type == RoutingResultType.ERROR
        assert "aggregation" in result.error_message

    @pytest.mark.asyncio
    async def test_concurrent_requests_create_exactly_one(self, engine):
        results = await asyncio.gather(
            engine.request_connection(make_party("u1", ref="tab-1")),
            engine.request_connection(make_party("u1", ref="tab-2")),
        )

        types = sorted(r.type.value for r in results)
        assert types == [
            RoutingResultType.CONNECTION_ALREADY_REQUESTED.value,
            RoutingResultType.CONNECTION_REQUESTED.value,
        ]
        assert len(await engine.get_pending_requests()) == 1


class TestAcceptConnection:
    @pytest.mark.asyncio
    async def test_accept_connects_both_ways(self, engine, customer, agent):
        await engine.request_connection(customer)

        result = await engine.accept_connection(agent, customer)

        assert result.type == RoutingResultType.CONNECTED
        assert result.conversation_refs == (agent.conversation_ref, customer.conversation_ref)
        assert await engine.find_connection_request(customer) is None
        assert await engine.find_connected_counterpart(customer) == agent
        assert await engine.find_connected_counterpart(agent) == customer

    @pytest.mark.asyncio
    async def test_accept_without_request_is_no_action(self, engine, customer, agent):
        result = await engine.accept_connection(agent, customer)

        assert result.type == RoutingResultType.NO_ACTION_TAKEN
        assert not await engine.is_connected(agent)

    @pytest.mark.asyncio
    async def test_accept_rejected_request_is_no_action(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.reject_connection(agent, customer)

        result = await engine.accept_connection(agent, customer)

        assert result.type == RoutingResultType.NO_ACTION_TAKEN

    @pytest.mark.asyncio
    async def test_busy_owner_cannot_accept(self, engine, customer, agent):
        other = make_party("customer-2")
        await engine.request_connection(customer)
        await engine.request_connection(other)
        await engine.accept_connection(agent, customer)

        result = await engine.accept_connection(agent, other)

        assert result.type == RoutingResultType.ERROR
        # The pending request survives a failed precondition check
        assert (await engine.find_connection_request(other)).is_pending

    @pytest.mark.asyncio
    async def test_accept_with_new_conversation_ref(self, engine, agent):
        await engine.request_connection(make_party("u1", ref="tab-1"))

        result = await engine.accept_connection(agent, make_party("u1", ref="tab-2"))

        assert result.type == RoutingResultType.CONNECTED
        assert result.conversation_refs[1] == "tab-2"


class TestRejectConnection:
    @pytest.mark.asyncio
    async def test_reject_allows_immediate_re_request(self, engine, customer, agent):
        await engine.request_connection(customer)

        rejected = await engine.reject_connection(agent, customer)
        again = await engine.request_connection(customer)

        assert rejected.type == RoutingResultType.CONNECTION_REJECTED
        assert rejected.conversation_refs == (customer.conversation_ref, agent.conversation_ref)
        assert again.type == RoutingResultType.CONNECTION_REQUESTED

    @pytest.mark.asyncio
    async def test_reject_without_pending_request(self, engine, customer):
        result = await engine.reject_connection(None, customer)

        assert result.type == RoutingResultType.ERROR
        assert result.conversation_refs == (customer.conversation_ref,)


class TestRouteMessage:
    @pytest.mark.asyncio
    async def test_unconnected_sender_is_no_action(self, engine, customer):
        result = await engine.route_message(customer, {"text": "hello?"})

        assert result.type == RoutingResultType.NO_ACTION_TAKEN
        assert result.activity == {"text": "hello?"}

    @pytest.mark.asyncio
    async def test_connected_sender_gets_counterpart_ref(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        clock.advance(minutes=2)

        result = await engine.route_message(customer, {"text": "hi"})

        assert result.type == RoutingResultType.OK
        assert result.conversation_refs == (agent.conversation_ref,)
        assert result.activity == {"text": "hi"}
        connection = (await engine.get_connections())[0]
        assert connection.last_interaction_time == clock()

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_disconnect(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)

        result = await engine.report_delivery_failure(agent, "channel returned 503")

        assert result.type == RoutingResultType.FAILED_TO_FORWARD_MESSAGE
        assert result.conversation_refs == (customer.conversation_ref,)
        assert result.error_message == "channel returned 503"
        assert await engine.is_connected(agent)

    @pytest.mark.asyncio
    async def test_handle_message_requests_when_not_connected(self, engine, customer):
        result = await engine.handle_message(customer, {"text": "human please"}, request_if_not_connected=True)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED

    @pytest.mark.asyncio
    async def test_handle_message_without_auto_request(self, engine, customer):
        result = await engine.handle_message(customer, {"text": "hi"})

        assert result.type == RoutingResultType.NO_ACTION_TAKEN
        assert await engine.get_pending_requests() == []


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_either_side_removes_connection(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)

        result = await engine.disconnect_party(customer)

        assert result.type == RoutingResultType.DISCONNECTED
        assert not await engine.is_connected(customer)
        assert not await engine.is_connected(agent)

    @pytest.mark.asyncio
    async def test_disconnect_unconnected_party(self, engine, customer):
        result = await engine.disconnect_party(customer)
        assert result.type == RoutingResultType.NO_ACTION_TAKEN

    @pytest.mark.asyncio
    async def test_remove_party_cascades(self, engine, customer, agent):
        other = make_party("customer-2")
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        await engine.request_connection(other)

        assert [r.type for r in await engine.remove_party(agent)] == [RoutingResultType.DISCONNECTED]
        assert [r.type for r in await engine.remove_party(other)] == [RoutingResultType.CONNECTION_REJECTED]
        assert await engine.remove_party(other) == []


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expire_only_old_requests(self, engine, clock):
        old, newer = make_party("old"), make_party("newer")
        await engine.request_connection(old)
        clock.advance(minutes=31)
        await engine.request_connection(newer)

        expired = await engine.expire_requests(timedelta(minutes=30))

        assert [r.requestor for r in expired] == [old]
        assert [r.requestor for r in await engine.get_pending_requests()] == [newer]

    @pytest.mark.asyncio
    async def test_expiry_and_accept_do_not_both_apply(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        clock.advance(hours=1)

        accepted, expired = await asyncio.gather(
            engine.accept_connection(agent, customer),
            engine.expire_requests(timedelta(minutes=30)),
        )

        if accepted.type == RoutingResultType.CONNECTED:
            assert expired == []
        else:
            assert accepted.type == RoutingResultType.NO_ACTION_TAKEN
            assert [r.requestor for r in expired] == [customer]


class TestUnexpectedFailures:
    @pytest.mark.asyncio
    async def test_store_failure_becomes_error_result(self, clock, customer):
        class BrokenStore(ConnectionRequestStore):
            def find_by_requestor(self, requestor):
                raise RuntimeError("store unavailable")

        engine = RoutingEngine(request_store=BrokenStore(clock), clock=clock)

        result = await engine.request_connection(customer)

        assert result.type == RoutingResultType.ERROR
        assert "store unavailable" in result.error_message


class TestState:
    @pytest.mark.asyncio
    async def test_export_and_load(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        await engine.request_connection(make_party("waiting"))
        snapshot = await engine.export_state()

        restored = RoutingEngine(clock=clock)
        await restored.load_state(snapshot)

        assert await restored.find_connected_counterpart(customer) == agent
        assert [r.requestor.account_id for r in await restored.get_pending_requests()] == ["waiting"]

    @pytest.mark.asyncio
    async def test_load_malformed_snapshot(self, engine):
        with pytest.raises(RouterError):
            await engine.load_state({"connection_requests": [{"requestor": {"channel_id": ""}}]})

    @pytest.mark.asyncio
    async def test_clear_all(self, engine, customer):
        await engine.request_connection(customer)
        await engine.clear_all()
        assert await engine.get_stats() == {"pending_requests": 0, "active_connections": 0}

    @pytest.mark.asyncio
    async def test_parties_survive_export_and_load(self, engine, clock, customer):
        visitor = make_party("visitor")
        await engine.request_connection(customer)
        await engine.handle_message(visitor, {"text": "just browsing"})
        snapshot = await engine.export_state()

        restored = RoutingEngine(clock=clock)
        await restored.load_state(snapshot)

        assert await restored.get_parties() == [customer, visitor]

    @pytest.mark.asyncio
    async def test_load_fills_parties_from_requests_and_connections(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        snapshot = await engine.export_state()
        del snapshot["parties"]

        restored = RoutingEngine(clock=clock)
        await restored.load_state(snapshot)

        assert set(await restored.get_parties()) == {customer, agent}

    @pytest.mark.asyncio
    async def test_load_rejects_party_pending_and_connected(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        snapshot = await engine.export_state()
        snapshot["connection_requests"] = [
            {"requestor": customer.model_dump(mode="json"), "request_time": clock().isoformat()}
        ]

        restored = RoutingEngine(clock=clock)
        with pytest.raises(RouterError, match="pending request and a connection"):
            await restored.load_state(snapshot)

        assert await restored.get_connections() == []
        assert await restored.get_parties() == []


class YieldingRoster(StaticRoster):
    """Answers every lookup asynchronously and counts overlapping lookups."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def _answer(self, value):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return value

    def has_available_owners(self, requestor):
        return self._answer(super().has_available_owners(requestor))

    def announcement_channel(self, requestor):
        return self._answer(super().announcement_channel(requestor))

    def is_aggregation_party(self, party):
        return self._answer(super().is_aggregation_party(party))


class TestLockedSections:
    @pytest.mark.asyncio
    async def test_async_roster_answers_are_awaited(self, clock, agent, agent_channel, customer):
        engine = RoutingEngine(
            roster=YieldingRoster(owners=[agent], aggregation_channels=[agent_channel]), clock=clock
        )

        result = await engine.request_connection(customer)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED
        assert result.conversation_refs == ("conv-customer-1", "conv-agent-pool")

    @pytest.mark.asyncio
    async def test_concurrent_requests_with_slow_roster_create_exactly_one(self, clock, agent):
        roster = YieldingRoster(owners=[agent])
        engine = RoutingEngine(roster=roster, clock=clock)

        results = await asyncio.gather(
            engine.request_connection(make_party("u1", ref="tab-1")),
            engine.request_connection(make_party("u1", ref="tab-2")),
        )

        assert sorted(r.type.value for r in results) == [
            RoutingResultType.CONNECTION_ALREADY_REQUESTED.value,
            RoutingResultType.CONNECTION_REQUESTED.value,
        ]
        assert roster.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_roster_lookups_never_overlap(self, clock, agent):
        roster = YieldingRoster(owners=[agent])
        engine = RoutingEngine(roster=roster, clock=clock)

        results = await asyncio.gather(
            *(engine.request_connection(make_party(f"customer-{i}")) for i in range(3))
        )

        assert all(r.type == RoutingResultType.CONNECTION_REQUESTED for r in results)
        assert roster.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_remove_party_waits_for_request_in_progress(self, clock, agent, customer):
        engine = RoutingEngine(roster=YieldingRoster(owners=[agent]), clock=clock)

        requested, removed = await asyncio.gather(
            engine.request_connection(customer),
            engine.remove_party(customer),
        )

        assert requested.type == RoutingResultType.CONNECTION_REQUESTED
        assert [r.type for r in removed] == [RoutingResultType.CONNECTION_REJECTED]
        assert await engine.find_connection_request(customer) is None
        assert await engine.get_parties() == []


class TestRemoveParty:
    @pytest.mark.asyncio
    async def test_rejected_request_is_removed_silently(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.reject_connection(agent, customer)

        results = await engine.remove_party(customer)

        assert results == []
        assert await engine.find_connection_request(customer) is None

    @pytest.mark.asyncio
    async def test_missing_party(self, engine):
        results = await engine.remove_party(None)

        assert [r.type for r in results] == [RoutingResultType.ERROR]
        assert results[0].error_message == "Party missing"


class TestRejectedRequestCleanup:
    @pytest.mark.asyncio
    async def test_sweep_purges_old_rejections(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.reject_connection(agent, customer)
        clock.advance(minutes=31)

        expired = await engine.expire_requests(timedelta(minutes=30))

        assert expired == []
        assert await engine.find_connection_request(customer) is None
        assert (await engine.export_state())["connection_requests"] == []

    @pytest.mark.asyncio
    async def test_recent_rejection_is_kept(self, engine, clock, customer, agent):
        await engine.request_connection(customer)
        await engine.reject_connection(agent, customer)
        clock.advance(minutes=5)

        await engine.expire_requests(timedelta(minutes=30))

        request = await engine.find_connection_request(customer)
        assert request is not None
        assert not request.is_pending

    @pytest.mark.asyncio
    async def test_repeated_rejections_do_not_accumulate(self, engine, clock, agent):
        for i in range(50):
            party = make_party(f"customer-{i}")
            await engine.request_connection(party)
            await engine.reject_connection(agent, party)
        clock.advance(days=30)

        await engine.expire_requests(timedelta(minutes=30))

        assert (await engine.export_state())["connection_requests"] == []


class TestKnownParties:
    @pytest.mark.asyncio
    async def test_parties_recorded_by_request_accept_and_message(self, engine, customer, agent):
        visitor = make_party("visitor")
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)
        await engine.handle_message(visitor, {"text": "hello"})

        assert await engine.get_parties() == [customer, agent, visitor]

    @pytest.mark.asyncio
    async def test_latest_conversation_ref_is_kept(self, engine):
        await engine.handle_message(make_party("u1", ref="tab-1"), "hi")
        await engine.handle_message(make_party("u1", ref="tab-2"), "hi again")

        assert [p.conversation_ref for p in await engine.get_parties()] == ["tab-2"]

    @pytest.mark.asyncio
    async def test_remove_party_forgets_party(self, engine, customer, agent):
        await engine.request_connection(customer)
        await engine.accept_connection(agent, customer)

        await engine.remove_party(customer)

        assert await engine.get_parties() == [agent]

    @pytest.mark.asyncio
    async def test_aggregation_party_is_not_recorded(self, roster_engine):
        await roster_engine.request_connection(make_party("someone", channel_id="teams", ref="conv-agent-pool"))

        assert await roster_engine.get_parties() == []

    @pytest.mark.asyncio
    async def test_clear_all_forgets_parties(self, engine, customer):
        await engine.request_connection(customer)
        await engine.clear_all()

        assert await engine.get_parties() == []
