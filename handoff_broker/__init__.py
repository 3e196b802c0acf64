"""
Handoff Broker
Connection routing for human handoff conversations in chat platforms
"""

__version__ = "1.0.0"

from .models import (
    AggregationChannel,
    Connection,
    ConnectionRequest,
    PartyIdentity,
    RoutingResult,
    RoutingResultType,
)
from .roster import RosterProvider, StaticRoster
from .router import RouterError, RoutingEngine
from .store import ConnectionRequestStore, ConnectionStore
from .sweeper import ExpirySweeper
from .utils import ConfigurationError, get_config, guarded, initialize_app

__all__ = [
    # Value types
    "PartyIdentity",
    "ConnectionRequest",
    "Connection",
    "AggregationChannel",
    "RoutingResult",
    "RoutingResultType",

    # Stores and engine
    "ConnectionRequestStore",
    "ConnectionStore",
    "RoutingEngine",
    "RouterError",

    # Roster
    "RosterProvider",
    "StaticRoster",

    # Background work and utilities
    "ExpirySweeper",
    "ConfigurationError",
    "get_config",
    "guarded",
    "initialize_app",
]
