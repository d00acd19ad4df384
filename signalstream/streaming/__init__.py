"""
Streaming module.

Contains the live position stream, the event router and connection health.

ARCHITECTURE:
    StreamingSession (one per account)
        │
        ├── ConnectionHealthTracker (backoff + circuit breaker)
        │
        ├── PositionStreamListener (terminal callbacks)
        │       │
        │       └── PositionEventRouter (NEW / UPDATE / CLOSED)
        │               │
        │               ├── PositionStateStore (in-memory, seeded on start)
        │               ├── SignalMappingStore (exactly-once signal lock)
        │               ├── ArchiveLockStore (exactly-once archive lock)
        │               └── RouterCapabilities (signals, Telegram, archive, deal history)
        │
        └── FallbackReconciler (REST sweep through the same router)
"""

from signalstream.streaming.health import CircuitState, ConnectionHealthTracker
from signalstream.streaming.state_store import PositionStateStore
from signalstream.streaming.router import CreateOutcome, PositionEventRouter, RouterCapabilities
from signalstream.streaming.listener import PositionStreamListener
from signalstream.streaming.session import (
    SessionState,
    SessionStatus,
    SessionStores,
    StreamingSession,
    create_session,
)
from signalstream.streaming.fallback import FallbackReconciler, create_fallback

__all__ = [
    "CircuitState",
    "ConnectionHealthTracker",
    "PositionStateStore",
    "CreateOutcome",
    "PositionEventRouter",
    "RouterCapabilities",
    "PositionStreamListener",
    "SessionState",
    "SessionStatus",
    "SessionStores",
    "StreamingSession",
    "create_session",
    "FallbackReconciler",
    "create_fallback",
]
