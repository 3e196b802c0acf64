"""
Connection routing engine for the Handoff Broker.

The engine brokers human handoff: a party (a customer) asks to be
connected, an owner (an agent) accepts or rejects the request, and once
connected every message from one side is routed to the other until either
side disconnects.

STATE MACHINE (per party, derived from store membership):
- Idle -> RequestPending            request_connection
- RequestPending -> Connected       accept_connection
- RequestPending -> Idle            reject_connection, expire_requests
- Connected -> Idle                 disconnect_party

CONCURRENCY:
- One asyncio lock guards both stores. Every public operation runs its
  whole check-then-mutate sequence under the lock, which keeps the
  one-request-per-party and one-connection-per-party invariants.
- Roster answers may be awaitables; they are awaited inside the locked
  section, so the lock also serialises slow eligibility lookups.

KNOWN PARTIES:
- Every party seen through a request, an accept or a message is kept in
  a registry with its latest conversation reference until remove_party.

ERROR HANDLING:
- Business outcomes are RoutingResult values, never exceptions.
- Unexpected failures are logged and returned as Error results.

Usage:
    engine = RoutingEngine(roster=StaticRoster(owners=[agent]))
    result = await engine.request_connection(customer)
    result = await engine.accept_connection(agent, customer)
    result = await engine.route_message(customer, activity)
"""

import asyncio
import functools
import inspect
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger as default_logger

from .models import (
    Connection,
    ConnectionRequest,
    PartyIdentity,
    PartyKey,
    RoutingResult,
    RoutingResultType,
)
from .roster import RosterProvider
from .store import ConnectionRequestStore, ConnectionStore
from .utils import utc_now


class RouterError(Exception):
    """Raised when routing state cannot be loaded."""
    pass


def _error_result_on_failure(method):
    """Turn an unexpected exception from an engine operation into an Error result."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except Exception as e:
            self._logger.exception(
                "Unexpected routing failure",
                operation=method.__name__,
                error=str(e),
                error_type=type(e).__name__
            )
            return RoutingResult.error(f"Unexpected error in {method.__name__}: {e}")

    return wrapper


async def _consult(answer):
    """Await a roster answer if the provider returned an awaitable."""
    if inspect.isawaitable(answer):
        return await answer
    return answer


class RoutingEngine:
    """Owns the request and connection stores and every transition between them."""

    def __init__(
        self,
        request_store: Optional[ConnectionRequestStore] = None,
        connection_store: Optional[ConnectionStore] = None,
        roster: Optional[RosterProvider] = None,
        clock: Callable[[], datetime] = utc_now,
        logger=default_logger,
        require_aggregation_channel: bool = False
    ):
        """Initialize the routing engine.

        Args:
            request_store: Pending request store, a fresh one by default
            connection_store: Connection store, a fresh one by default
            roster: Eligibility and announcement provider; without one every
                request is accepted for announcement
            clock: Current time source shared with default stores
            logger: Loguru-compatible logger for trace points
            require_aggregation_channel: Answer NoAggregationChannel when the
                roster has nowhere to announce a request
        """
        self._requests = request_store if request_store is not None else ConnectionRequestStore(clock)
        self._connections = connection_store if connection_store is not None else ConnectionStore(clock)
        self._roster = roster
        self._clock = clock
        self._logger = logger
        self.require_aggregation_channel = require_aggregation_channel
        self._parties: Dict[PartyKey, PartyIdentity] = {}
        self._lock = asyncio.Lock()

    @property
    def roster(self) -> Optional[RosterProvider]:
        return self._roster

    def _remember(self, party: PartyIdentity) -> None:
        # Keeps the most recent conversation reference. Call under the lock.
        self._parties[party.key] = party

    # ==================== TRANSITIONS ====================

    @_error_result_on_failure
    async def request_connection(self, requestor: Optional[PartyIdentity]) -> RoutingResult:
        """Create a pending request on behalf of the requestor.

        Returns:
            ConnectionRequested, ConnectionAlreadyRequested, NoAggregationChannel,
            NoAgentsAvailable, or Error when the requestor is missing, is an
            aggregation channel, or is already connected
        """
        if requestor is None:
            return RoutingResult.error("Requestor missing")

        ref = requestor.conversation_ref

        async with self._lock:
            if self._roster is not None and await _consult(self._roster.is_aggregation_party(requestor)):
                return RoutingResult.error(
                    f"Party {requestor.describe()} is associated with aggregation "
                    "and hence invalid to request a connection",
                    ref
                )

            self._remember(requestor)

            if self._connections.is_connected(requestor):
                return RoutingResult.error(
                    f"Party {requestor.describe()} is already connected and must disconnect first",
                    ref
                )

            existing = self._requests.find_by_requestor(requestor)
            if existing is not None and existing.is_pending:
                self._logger.info(
                    "Connection already requested",
                    channel_id=requestor.channel_id,
                    account_id=requestor.account_id
                )
                return RoutingResult.of(RoutingResultType.CONNECTION_ALREADY_REQUESTED, ref)

            announcement = None
            if self._roster is not None:
                announcement = await _consult(self._roster.announcement_channel(requestor))
                if announcement is None and self.require_aggregation_channel:
                    self._logger.warning(
                        "No aggregation channel for connection request",
                        channel_id=requestor.channel_id,
                        account_id=requestor.account_id
                    )
                    return RoutingResult.of(RoutingResultType.NO_AGGREGATION_CHANNEL, ref)

                if not await _consult(self._roster.has_available_owners(requestor)):
                    self._logger.warning(
                        "No agents available for connection request",
                        channel_id=requestor.channel_id,
                        account_id=requestor.account_id
                    )
                    return RoutingResult.of(RoutingResultType.NO_AGENTS_AVAILABLE, ref)

            result = self._requests.add(requestor)
            if result.type != RoutingResultType.CONNECTION_REQUESTED:
                return result

            self._logger.info(
                "Connection requested",
                channel_id=requestor.channel_id,
                account_id=requestor.account_id,
                announced_to=announcement.name if announcement is not None else None
            )

            if announcement is not None:
                return RoutingResult.of(
                    RoutingResultType.CONNECTION_REQUESTED, ref, announcement.conversation_ref
                )
            return result

    @_error_result_on_failure
    async def accept_connection(
        self, owner: Optional[PartyIdentity], requestor: Optional[PartyIdentity]
    ) -> RoutingResult:
        """Connect the owner with a requestor who has a pending request.

        The pending request is removed before the connection is made. All
        preconditions are checked first under the lock, so the connect step
        cannot lose a race; if it still fails the request is not restored
        and the requestor has to ask again.

        Returns:
            Connected with [owner ref, requestor ref], NoActionTaken when
            there is no pending request, or Error
        """
        if owner is None or requestor is None:
            return RoutingResult.error("Both the owner and the requestor are required")

        async with self._lock:
            self._remember(owner)
            self._remember(requestor)

            request = self._requests.find_by_requestor(requestor)
            if request is None or not request.is_pending:
                return RoutingResult.of(RoutingResultType.NO_ACTION_TAKEN, requestor.conversation_ref)

            if owner.matches(requestor):
                return RoutingResult.error(
                    f"Party {owner.describe()} cannot accept its own request",
                    owner.conversation_ref
                )

            if self._connections.is_connected(owner):
                return RoutingResult.error(
                    f"Owner {owner.describe()} is already connected",
                    owner.conversation_ref,
                    requestor.conversation_ref
                )

            self._requests.remove(requestor)
            result = self._connections.connect(owner, requestor)

            if result.type == RoutingResultType.CONNECTED:
                self._logger.info(
                    "Connected",
                    channel_id=requestor.channel_id,
                    account_id=requestor.account_id,
                    owner_channel_id=owner.channel_id,
                    owner_account_id=owner.account_id
                )
            else:
                self._logger.error(
                    "Connect failed after removing the pending request",
                    channel_id=requestor.channel_id,
                    account_id=requestor.account_id,
                    error=result.error_message
                )
            return result

    @_error_result_on_failure
    async def reject_connection(
        self, rejecter: Optional[PartyIdentity], requestor: Optional[PartyIdentity]
    ) -> RoutingResult:
        """Reject a pending request.

        The request record is reset rather than removed, so the requestor may
        ask again right away.

        Returns:
            ConnectionRejected with [requestor ref, rejecter ref], or Error when
            no pending request matches
        """
        if requestor is None:
            return RoutingResult.error("The party whose request to reject is missing")

        refs = [requestor.conversation_ref]
        if rejecter is not None:
            refs.append(rejecter.conversation_ref)

        async with self._lock:
            request = self._requests.find_by_requestor(requestor)
            if request is None or not request.is_pending:
                return RoutingResult.error(
                    "Failed to find a connection request matching the given party", *refs
                )

            self._requests.reset(requestor)

        self._logger.info(
            "Connection rejected",
            channel_id=requestor.channel_id,
            account_id=requestor.account_id,
            rejected_by=rejecter.account_id if rejecter is not None else None
        )
        return RoutingResult.of(RoutingResultType.CONNECTION_REJECTED, *refs)

    @_error_result_on_failure
    async def route_message(self, sender: Optional[PartyIdentity], activity: Any) -> RoutingResult:
        """Work out where a message from the sender has to go.

        The engine does not send anything; the caller relays ``activity`` to
        the returned conversation reference.

        Returns:
            OK with [counterpart ref] when the sender is connected,
            NoActionTaken otherwise
        """
        if sender is None:
            return RoutingResult.error("Sender missing")

        async with self._lock:
            counterpart = self._connections.find_connected_counterpart(sender)
            if counterpart is None:
                return RoutingResult.of(RoutingResultType.NO_ACTION_TAKEN, activity=activity)

            self._connections.touch(sender)

        self._logger.debug(
            "Message routed",
            channel_id=sender.channel_id,
            account_id=sender.account_id,
            to_account_id=counterpart.account_id
        )
        return RoutingResult.of(RoutingResultType.OK, counterpart.conversation_ref, activity=activity)

    @_error_result_on_failure
    async def report_delivery_failure(self, sender: Optional[PartyIdentity], reason: str) -> RoutingResult:
        """Record that relaying a message from the sender failed.

        The connection stays in place; retrying is up to the caller.

        Returns:
            FailedToForwardMessage with the counterpart's reference when known
        """
        if sender is None:
            return RoutingResult.error("Sender missing")

        async with self._lock:
            counterpart = self._connections.find_connected_counterpart(sender)

        self._logger.warning(
            "Failed to forward message",
            channel_id=sender.channel_id,
            account_id=sender.account_id,
            reason=reason
        )
        refs = (counterpart.conversation_ref,) if counterpart is not None else ()
        return RoutingResult(
            type=RoutingResultType.FAILED_TO_FORWARD_MESSAGE,
            conversation_refs=refs,
            error_message=reason or "Failed to forward the message"
        )

    @_error_result_on_failure
    async def disconnect_party(self, party: Optional[PartyIdentity]) -> RoutingResult:
        """End the connection the party takes part in.

        Returns:
            Disconnected with [owner ref, client ref], or NoActionTaken
        """
        if party is None:
            return RoutingResult.error("Party missing")

        async with self._lock:
            result = self._connections.disconnect(party)

        if result.type == RoutingResultType.DISCONNECTED:
            self._logger.info(
                "Disconnected",
                channel_id=party.channel_id,
                account_id=party.account_id
            )
        return result

    @_error_result_on_failure
    async def handle_message(
        self,
        sender: Optional[PartyIdentity],
        activity: Any,
        request_if_not_connected: bool = False
    ) -> RoutingResult:
        """Route a message, optionally asking for a connection when there is none.

        Returns:
            The route_message result, or the request_connection result when
            nothing was routed and ``request_if_not_connected`` is set
        """
        if sender is not None:
            async with self._lock:
                self._remember(sender)

        result = await self.route_message(sender, activity)

        if request_if_not_connected and result.type == RoutingResultType.NO_ACTION_TAKEN:
            result = await self.request_connection(sender)

        return result

    async def remove_party(self, party: Optional[PartyIdentity]) -> List[RoutingResult]:
        """Drop everything the broker holds about a party.

        A reset request record is deleted silently; the party was already
        told about that rejection.

        Returns:
            ConnectionRejected for a removed pending request and Disconnected
            for an ended connection, in that order
        """
        if party is None:
            return [RoutingResult.error("Party missing")]

        results: List[RoutingResult] = []

        try:
            async with self._lock:
                self._parties.pop(party.key, None)

                request = self._requests.find_by_requestor(party)
                if request is not None:
                    self._requests.remove(party)
                    if request.is_pending:
                        results.append(
                            RoutingResult.of(RoutingResultType.CONNECTION_REJECTED, party.conversation_ref)
                        )

                disconnect_result = self._connections.disconnect(party)
                if disconnect_result.type == RoutingResultType.DISCONNECTED:
                    results.append(disconnect_result)
        except Exception as e:
            self._logger.exception("Unexpected routing failure", operation="remove_party", error=str(e))
            results.append(RoutingResult.error(f"Unexpected error in remove_party: {e}"))

        self._logger.info(
            "Party removed",
            channel_id=party.channel_id,
            account_id=party.account_id,
            result_types=[r.type.value for r in results]
        )
        return results

    async def expire_requests(self, max_age: timedelta) -> List[ConnectionRequest]:
        """Remove and return pending requests older than ``max_age``.

        Reset records whose rejection is older than ``max_age`` are purged in
        the same pass but not returned.
        """
        async with self._lock:
            expired = self._requests.expire_older_than(max_age)
            purged = self._requests.purge_reset_older_than(max_age)

        if purged:
            self._logger.debug("Reset connection requests purged", count=len(purged))

        for request in expired:
            self._logger.info(
                "Connection request expired",
                channel_id=request.requestor.channel_id,
                account_id=request.requestor.account_id,
                requested_at=request.request_time.isoformat()
            )
        return expired

    # ==================== QUERIES ====================

    async def is_connected(self, party: PartyIdentity) -> bool:
        async with self._lock:
            return self._connections.is_connected(party)

    async def find_connected_counterpart(self, party: PartyIdentity) -> Optional[PartyIdentity]:
        async with self._lock:
            return self._connections.find_connected_counterpart(party)

    async def find_connection_request(self, party: PartyIdentity) -> Optional[ConnectionRequest]:
        async with self._lock:
            return self._requests.find_by_requestor(party)

    async def get_pending_requests(self) -> List[ConnectionRequest]:
        async with self._lock:
            return self._requests.pending()

    async def get_connections(self) -> List[Connection]:
        async with self._lock:
            return self._connections.all()

    async def get_parties(self) -> List[PartyIdentity]:
        """Every known party, in the order first seen."""
        async with self._lock:
            return list(self._parties.values())

    # ==================== STATE ====================

    async def export_state(self) -> Dict[str, Any]:
        """Export parties, requests and connections to a JSON-serializable dict."""
        async with self._lock:
            return {
                "export_timestamp": self._clock().isoformat(),
                "parties": [p.model_dump(mode="json") for p in self._parties.values()],
                "connection_requests": [r.model_dump(mode="json") for r in self._requests.all()],
                "connections": [c.model_dump(mode="json") for c in self._connections.all()]
            }

    async def load_state(self, data: Dict[str, Any]) -> None:
        """Replace the stored state with a previously exported snapshot.

        Parties referenced by requests or connections are added to the known
        parties even when the snapshot has no ``parties`` entry.

        Raises:
            RouterError: If the snapshot is malformed or puts a party in a
                pending request and a connection at once
        """
        try:
            parties = [PartyIdentity.model_validate(p) for p in data.get("parties", [])]
            requests = [ConnectionRequest.model_validate(r) for r in data.get("connection_requests", [])]
            connections = [Connection.model_validate(c) for c in data.get("connections", [])]
        except (AttributeError, TypeError, ValueError) as e:
            raise RouterError(f"Malformed routing snapshot: {e}") from e

        connected = {p.key for c in connections for p in (c.owner, c.client)}
        for request in requests:
            if request.is_pending and request.requestor.key in connected:
                raise RouterError(
                    f"Malformed routing snapshot: party {request.requestor.describe()} "
                    "has a pending request and a connection"
                )

        known: Dict[PartyKey, PartyIdentity] = {p.key: p for p in parties}
        for party in [r.requestor for r in requests] + [p for c in connections for p in (c.owner, c.client)]:
            known.setdefault(party.key, party)

        async with self._lock:
            try:
                self._connections.load(connections)
            except ValueError as e:
                raise RouterError(f"Malformed routing snapshot: {e}") from e
            self._requests.load(requests)
            self._parties = known

        self._logger.info(
            "Routing state loaded",
            parties=len(known),
            connection_requests=len(requests),
            connections=len(connections)
        )

    async def clear_all(self) -> None:
        """Empty both stores and forget every party (for testing)."""
        async with self._lock:
            self._requests.clear()
            self._connections.clear()
            self._parties.clear()

    async def get_stats(self) -> Dict[str, int]:
        async with self._lock:
            return {
                "pending_requests": len(self._requests.pending()),
                "active_connections": len(self._connections)
            }
