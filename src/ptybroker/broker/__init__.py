"""Session broker: long-lived shells multiplexed onto client connections.

Shell processes belong to the broker, not to any connection. A client
attaches to one session at a time, gets the scrollback replayed, and can
disconnect and come back later without the shell noticing.
"""

from ptybroker.broker.broker import Broker
from ptybroker.broker.handler import ConnectionHandler
from ptybroker.broker.session import Session
from ptybroker.broker.table import SessionTable
from ptybroker.errors import (
    BrokerError,
    CapacityExceeded,
    ProcessSpawnFailure,
    SessionNotFound,
)

__all__ = [
    "Broker",
    "BrokerError",
    "CapacityExceeded",
    "ConnectionHandler",
    "ProcessSpawnFailure",
    "Session",
    "SessionNotFound",
    "SessionTable",
]
