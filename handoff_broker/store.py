"""
In-memory routing data storage for pending connection requests and
established connections.

This module provides:
- ConnectionRequestStore: at most one request per party, soft reset,
  age-based expiry of pending requests and purging of stale reset records
- ConnectionStore: owner <-> client links with at most one connection per
  party, counterpart lookup for message forwarding

Key Features:
- Records keyed by the party matching key (channel_id, account_id), so a
  party is recognised across conversation reference churn
- Injected clock for request and connection timestamps
- Snapshot loading for restoring state on startup

The stores do no locking of their own. The routing engine is their only
mutator and serialises every call under its lock.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .models import (
    Connection,
    ConnectionRequest,
    PartyIdentity,
    PartyKey,
    RoutingResult,
    RoutingResultType,
)
from .utils import utc_now


class ConnectionRequestStore:
    """Pending connection requests keyed by the requestor's matching key."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        """Initialize an empty request store.

        Args:
            clock: Returns the current time for new requests and expiry
        """
        self._requests: Dict[PartyKey, ConnectionRequest] = {}
        self._clock = clock

    def add(self, requestor: PartyIdentity) -> RoutingResult:
        """Create a pending request for the requestor.

        A reset record for the same party is re-armed with a fresh timestamp.

        Args:
            requestor: The party asking to be connected

        Returns:
            ConnectionAlreadyRequested if a pending request exists for a
            matching party, ConnectionRequested otherwise
        """
        existing = self._requests.get(requestor.key)
        if existing is not None and existing.is_pending:
            return RoutingResult.of(
                RoutingResultType.CONNECTION_ALREADY_REQUESTED, requestor.conversation_ref
            )

        self._requests[requestor.key] = ConnectionRequest(
            requestor=requestor,
            request_time=self._clock()
        )
        return RoutingResult.of(RoutingResultType.CONNECTION_REQUESTED, requestor.conversation_ref)

    def remove(self, requestor: PartyIdentity) -> bool:
        """Remove the request matching the requestor.

        Returns:
            True if a request was found and removed
        """
        return self._requests.pop(requestor.key, None) is not None

    def reset(self, requestor: PartyIdentity) -> bool:
        """Clear the request timestamp but keep the record.

        The reset time is stamped so purge_reset_older_than can drop the
        record once the rejection no longer matters.

        Returns:
            True if a matching request was found
        """
        existing = self._requests.get(requestor.key)
        if existing is None:
            return False
        self._requests[requestor.key] = existing.model_copy(
            update={"request_time": None, "reset_time": self._clock()}
        )
        return True

    def find_by_requestor(self, requestor: PartyIdentity) -> Optional[ConnectionRequest]:
        """Look up a request, pending or reset, by the matching rule."""
        return self._requests.get(requestor.key)

    def expire_older_than(self, max_age: timedelta) -> List[ConnectionRequest]:
        """Remove and return pending requests older than ``max_age``.

        Reset records are left alone.

        Args:
            max_age: Requests whose age exceeds this are expired

        Returns:
            The expired requests, oldest first
        """
        now = self._clock()
        expired = [
            request for request in self._requests.values()
            if request.is_pending and request.age(now) > max_age
        ]
        expired.sort(key=lambda r: r.request_time)

        for request in expired:
            del self._requests[request.requestor.key]

        return expired

    def purge_reset_older_than(self, max_age: timedelta) -> List[ConnectionRequest]:
        """Remove and return reset records whose reset is older than ``max_age``.

        A reset record without a reset time (loaded from an older snapshot)
        is purged on the first call.
        """
        now = self._clock()
        purged = [
            request for request in self._requests.values()
            if not request.is_pending
            and (request.reset_time is None or now - request.reset_time > max_age)
        ]

        for request in purged:
            del self._requests[request.requestor.key]

        return purged

    def pending(self) -> List[ConnectionRequest]:
        """Requests with a set timestamp, oldest first."""
        requests = [r for r in self._requests.values() if r.is_pending]
        requests.sort(key=lambda r: r.request_time)
        return requests

    def all(self) -> List[ConnectionRequest]:
        return list(self._requests.values())

    def load(self, requests: Iterable[ConnectionRequest]) -> None:
        """Replace the stored requests."""
        self._requests = {r.requestor.key: r for r in requests}

    def clear(self) -> None:
        self._requests.clear()

    def __len__(self) -> int:
        return len(self._requests)


class ConnectionStore:
    """Established connections; each party is in at most one of them."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        """Initialize an empty connection store.

        Args:
            clock: Returns the current time for connection timestamps
        """
        # Both sides of a connection index the same record
        self._by_party: Dict[PartyKey, Connection] = {}
        self._clock = clock

    def connect(self, owner: PartyIdentity, client: PartyIdentity) -> RoutingResult:
        """Link the owner and the client.

        Args:
            owner: The party that owns the conversation, e.g. an agent
            client: The other party, e.g. the customer who asked for help

        Returns:
            Connected with [owner ref, client ref], or Error if either party
            is already connected or both are the same party
        """
        refs = (owner.conversation_ref, client.conversation_ref)

        if owner.matches(client):
            return RoutingResult.error(
                f"Cannot connect party {owner.describe()} to itself", *refs
            )

        for party in (owner, client):
            if party.key in self._by_party:
                return RoutingResult.error(
                    f"Party {party.describe()} is already connected", *refs
                )

        now = self._clock()
        connection = Connection(
            owner=owner,
            client=client,
            established_time=now,
            last_interaction_time=now
        )
        self._by_party[owner.key] = connection
        self._by_party[client.key] = connection

        return RoutingResult.of(RoutingResultType.CONNECTED, *refs)

    def disconnect(self, party: PartyIdentity) -> RoutingResult:
        """Remove the connection the party takes part in, on either side.

        Returns:
            Disconnected with [owner ref, client ref], or NoActionTaken if
            the party is not connected
        """
        connection = self._by_party.get(party.key)
        if connection is None:
            return RoutingResult.of(RoutingResultType.NO_ACTION_TAKEN)

        del self._by_party[connection.owner.key]
        del self._by_party[connection.client.key]

        return RoutingResult.of(
            RoutingResultType.DISCONNECTED,
            connection.owner.conversation_ref,
            connection.client.conversation_ref
        )

    def find_connection(self, party: PartyIdentity) -> Optional[Connection]:
        return self._by_party.get(party.key)

    def find_connected_counterpart(self, party: PartyIdentity) -> Optional[PartyIdentity]:
        """The other side of the party's connection, if any."""
        connection = self._by_party.get(party.key)
        if connection is None:
            return None
        return connection.counterpart_of(party)

    def is_connected(self, party: PartyIdentity) -> bool:
        return party.key in self._by_party

    def touch(self, party: PartyIdentity) -> Optional[Connection]:
        """Refresh the last interaction time of the party's connection."""
        connection = self._by_party.get(party.key)
        if connection is None:
            return None

        updated = connection.model_copy(update={"last_interaction_time": self._clock()})
        self._by_party[updated.owner.key] = updated
        self._by_party[updated.client.key] = updated
        return updated

    def all(self) -> List[Connection]:
        """Every connection once, ordered by establishment time."""
        unique = {c.owner.key: c for c in self._by_party.values()}
        return sorted(unique.values(), key=lambda c: c.established_time)

    def load(self, connections: Iterable[Connection]) -> None:
        """Replace the stored connections.

        Raises:
            ValueError: If a party appears in more than one connection
        """
        by_party: Dict[PartyKey, Connection] = {}
        for connection in connections:
            for party in (connection.owner, connection.client):
                if party.key in by_party:
                    raise ValueError(f"Party {party.describe()} appears in more than one connection")
                by_party[party.key] = connection
        self._by_party = by_party

    def clear(self) -> None:
        self._by_party.clear()

    def __len__(self) -> int:
        return len(self._by_party) // 2
