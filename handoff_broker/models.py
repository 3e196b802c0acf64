"""
Pydantic data models for the Handoff Broker.

This module defines the value types shared between the routing engine and
its callers (party identities, connection requests, connections, routing
results) and the request/response models of the HTTP API.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import get_utc_datetime

PartyKey = Tuple[str, str]


class RoutingResultType(str, Enum):
    """Outcome of a routing engine operation."""
    NO_ACTION_TAKEN = "no_action_taken"    # Nothing to do, callers ignore it
    OK = "ok"                              # Action taken, nothing to report
    CONNECTION_REQUESTED = "connection_requested"
    CONNECTION_ALREADY_REQUESTED = "connection_already_requested"
    CONNECTION_REJECTED = "connection_rejected"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NO_AGENTS_AVAILABLE = "no_agents_available"
    NO_AGGREGATION_CHANNEL = "no_aggregation_channel"
    FAILED_TO_FORWARD_MESSAGE = "failed_to_forward_message"
    ERROR = "error"


_FAILURE_TYPES = (RoutingResultType.ERROR, RoutingResultType.FAILED_TO_FORWARD_MESSAGE)


class PartyIdentity(BaseModel):
    """One endpoint of a conversation.

    Two identities are equal when their channel and account match. The
    display name and the conversation reference do not take part, so a
    party coming back through a new conversation is still the same party.
    """
    model_config = ConfigDict(frozen=True)

    channel_id: str = Field(..., min_length=1, max_length=256, description="Chat platform channel identifier")
    account_id: str = Field(..., min_length=1, max_length=256, description="Account identifier on the channel")
    account_name: Optional[str] = Field(None, description="Display name, never used for matching")
    conversation_ref: Any = Field(None, description="Opaque reference to the underlying conversation")

    @field_validator("channel_id", "account_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("Identifier cannot be empty or only whitespace")
        return v.strip()

    @property
    def key(self) -> PartyKey:
        """Matching key: (channel_id, account_id)."""
        return (self.channel_id, self.account_id)

    def matches(self, other: Optional["PartyIdentity"]) -> bool:
        return other is not None and self.key == other.key

    def describe(self) -> str:
        return f"{self.account_id}, {self.account_name or '(no name)'}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PartyIdentity):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class ConnectionRequest(BaseModel):
    """A party's outstanding ask to be connected.

    ``request_time`` is None once the request has been reset (rejected or
    otherwise soft-invalidated) while the record is kept. ``reset_time``
    records when that happened so the sweep can purge the record later.
    """
    model_config = ConfigDict(frozen=True)

    requestor: PartyIdentity
    request_time: Optional[datetime] = None
    reset_time: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.request_time is not None

    def age(self, now: datetime) -> Optional[timedelta]:
        if self.request_time is None:
            return None
        return now - self.request_time


class Connection(BaseModel):
    """An established owner <-> client link."""
    model_config = ConfigDict(frozen=True)

    owner: PartyIdentity
    client: PartyIdentity
    established_time: datetime = Field(default_factory=get_utc_datetime)
    last_interaction_time: datetime = Field(default_factory=get_utc_datetime)

    def involves(self, party: PartyIdentity) -> bool:
        return party.matches(self.owner) or party.matches(self.client)

    def counterpart_of(self, party: PartyIdentity) -> Optional[PartyIdentity]:
        if party.matches(self.owner):
            return self.client
        if party.matches(self.client):
            return self.owner
        return None


class AggregationChannel(BaseModel):
    """A destination where pending requests are announced to prospective owners.

    Two channels are equal when their channel and conversation match; the
    name is a label only.
    """
    model_config = ConfigDict(frozen=True)

    channel_id: str = Field(..., min_length=1)
    conversation_ref: Any = Field(..., description="Conversation the announcements are posted to")
    name: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AggregationChannel):
            return NotImplemented
        return (self.channel_id, self.conversation_ref) == (other.channel_id, other.conversation_ref)

    def __hash__(self) -> int:
        # conversation_ref may be unhashable
        return hash(self.channel_id)


class RoutingResult(BaseModel):
    """Outcome of a routing engine operation.

    ``conversation_refs`` is ordered; for a new connection index 0 is the
    owner side and index 1 the client side.
    """
    model_config = ConfigDict(frozen=True)

    type: RoutingResultType = RoutingResultType.NO_ACTION_TAKEN
    activity: Any = None
    conversation_refs: Tuple[Any, ...] = ()
    error_message: str = ""

    @model_validator(mode="after")
    def check_error_message(self) -> "RoutingResult":
        if self.error_message and self.type not in _FAILURE_TYPES:
            raise ValueError(f"error_message is only allowed on failure results, not {self.type.value}")
        return self

    @classmethod
    def of(cls, result_type: RoutingResultType, *refs: Any, activity: Any = None) -> "RoutingResult":
        return cls(type=result_type, conversation_refs=tuple(refs), activity=activity)

    @classmethod
    def error(cls, message: str, *refs: Any) -> "RoutingResult":
        return cls(type=RoutingResultType.ERROR, conversation_refs=tuple(refs), error_message=message)

    @property
    def ok(self) -> bool:
        return self.type not in _FAILURE_TYPES

    def __str__(self) -> str:
        text = self.type.value
        if self.conversation_refs:
            text += "; Conversation references: [" + ", ".join(
                "{ " + str(ref) + " }" for ref in self.conversation_refs
            ) + "]"
        if self.error_message:
            text += f'; Error message: "{self.error_message}"'
        return text


# API-specific models
class RequestConnectionBody(BaseModel):
    """Request model for asking to be connected."""
    requestor: PartyIdentity


class AcceptConnectionBody(BaseModel):
    """Request model for accepting a pending request."""
    owner: PartyIdentity
    requestor: PartyIdentity


class RejectConnectionBody(BaseModel):
    """Request model for rejecting a pending request."""
    requestor: PartyIdentity
    rejecter: Optional[PartyIdentity] = None


class DisconnectBody(BaseModel):
    """Request model for ending a party's connection."""
    party: PartyIdentity


class RouteMessageBody(BaseModel):
    """Request model for relaying a message from a party."""
    sender: PartyIdentity
    activity: Any = Field(..., description="Opaque message payload")
    request_if_not_connected: bool = Field(False, description="Create a request when the sender is not connected")


class DeliveryFailureBody(BaseModel):
    """Request model for reporting a failed relay."""
    sender: PartyIdentity
    reason: str = Field(..., min_length=1, max_length=1000)


class ExpireRequestsBody(BaseModel):
    """Request model for a manual expiry sweep."""
    max_age_minutes: Optional[int] = Field(None, gt=0, description="Defaults to the configured request timeout")


class ExpireRequestsResponse(BaseModel):
    """Response model for a manual expiry sweep."""
    expired_count: int = Field(..., ge=0)
    expired: List[ConnectionRequest] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=get_utc_datetime, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "VALIDATION_ERROR",
                "message": "Identifier cannot be empty or only whitespace",
                "details": {"field": "requestor.account_id"},
                "request_id": "req_xyz789",
                "timestamp": "2025-08-27T10:30:45.123Z"
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    pending_requests: int = Field(..., ge=0)
    active_connections: int = Field(..., ge=0)
    memory_usage_mb: float = Field(0.0, ge=0.0)
