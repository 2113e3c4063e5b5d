"""Transport events fed into the session state machine

Every event carries the session generation it was issued for. The session
drops events from an older generation, so callbacks from a torn-down
connection can never touch the current one.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Connected:
    """Broker accepted the connection."""
    generation: int


@dataclass(frozen=True)
class Subscribed:
    """Broker acknowledged the report topic subscription."""
    generation: int


@dataclass(frozen=True)
class MessageReceived:
    """A message arrived on the report topic."""
    generation: int
    payload: bytes
    topic: str = ""


@dataclass(frozen=True)
class TransportClosed:
    """Connection went away without an explicit stop()."""
    generation: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class TransportFailed:
    """Connect, subscribe or publish failed, or the connect timeout fired."""
    generation: int
    error: Exception


SessionEvent = Union[Connected, Subscribed, MessageReceived, TransportClosed, TransportFailed]
