"""
Roster and aggregation-channel providers.

The routing engine asks a provider whether anyone can take a new request
and where the request should be announced. The provider owns that data;
the engine only queries it.
"""

from typing import Awaitable, List, Optional, Protocol, Union

from loguru import logger

from .models import AggregationChannel, PartyIdentity


class RosterProvider(Protocol):
    """Capability queried by RoutingEngine.request_connection.

    Methods may answer directly or return an awaitable, so a provider backed
    by a remote directory can be plugged in. The engine awaits the answer
    while holding its lock.
    """

    def has_available_owners(self, requestor: PartyIdentity) -> Union[bool, Awaitable[bool]]:
        ...

    def announcement_channel(
        self, requestor: PartyIdentity
    ) -> Union[Optional[AggregationChannel], Awaitable[Optional[AggregationChannel]]]:
        ...

    def is_aggregation_party(self, party: PartyIdentity) -> Union[bool, Awaitable[bool]]:
        ...


class StaticRoster:
    """In-memory roster of owners (agents) and aggregation channels."""

    def __init__(
        self,
        owners: Optional[List[PartyIdentity]] = None,
        aggregation_channels: Optional[List[AggregationChannel]] = None
    ):
        self._owners: List[PartyIdentity] = []
        self._aggregation_channels: List[AggregationChannel] = []

        for owner in owners or []:
            self.add_owner(owner)
        for channel in aggregation_channels or []:
            self.add_aggregation_channel(channel)

    @property
    def owners(self) -> List[PartyIdentity]:
        return list(self._owners)

    @property
    def aggregation_channels(self) -> List[AggregationChannel]:
        return list(self._aggregation_channels)

    def add_owner(self, owner: PartyIdentity) -> bool:
        if owner in self._owners:
            return False
        self._owners.append(owner)
        logger.info("Owner added to roster", channel_id=owner.channel_id, account_id=owner.account_id)
        return True

    def remove_owner(self, owner: PartyIdentity) -> bool:
        if owner not in self._owners:
            return False
        self._owners.remove(owner)
        logger.info("Owner removed from roster", channel_id=owner.channel_id, account_id=owner.account_id)
        return True

    def add_aggregation_channel(self, channel: AggregationChannel) -> bool:
        if channel in self._aggregation_channels:
            return False
        self._aggregation_channels.append(channel)
        logger.info("Aggregation channel added", channel_id=channel.channel_id, name=channel.name)
        return True

    def remove_aggregation_channel(self, channel: AggregationChannel) -> bool:
        if channel not in self._aggregation_channels:
            return False
        stored = self._aggregation_channels.pop(self._aggregation_channels.index(channel))
        logger.info("Aggregation channel removed", channel_id=stored.channel_id, name=stored.name)
        return True

    def has_available_owners(self, requestor: PartyIdentity) -> bool:
        # A requestor never counts as an owner for their own request
        return any(not owner.matches(requestor) for owner in self._owners)

    def announcement_channel(self, requestor: PartyIdentity) -> Optional[AggregationChannel]:
        return self._aggregation_channels[0] if self._aggregation_channels else None

    def is_aggregation_party(self, party: PartyIdentity) -> bool:
        if party.conversation_ref is None:
            return False
        return any(
            channel.channel_id == party.channel_id
            and channel.conversation_ref == party.conversation_ref
            for channel in self._aggregation_channels
        )
