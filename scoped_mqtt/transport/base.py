"""
Message-transport contract consumed by the connector.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..models.connection import Scheme


logger = logging.getLogger(__name__)


class TransportEvent(Enum):
    """Events a session reports."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    ERROR = "error"
    MESSAGE = "message"

    @classmethod
    def parse(cls, value: Union["TransportEvent", str]) -> "TransportEvent":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            permitted = ', '.join(member.value for member in cls)
            raise ValueError(f"Unknown event {value!r}. Must be one of: {permitted}") from None


LIFECYCLE_EVENTS = (
    TransportEvent.CONNECTED,
    TransportEvent.RECONNECTING,
    TransportEvent.CLOSED,
    TransportEvent.ERROR,
)


@dataclass(frozen=True)
class TransportOptions:
    """Everything a transport needs to open a session."""
    host: str
    port: int
    scheme: Scheme
    ca_cert: bytes = field(repr=False)
    client_cert: bytes = field(repr=False)
    client_key: bytes = field(repr=False)
    reconnect_period: float = 2.0
    connect_timeout: float = 20.0
    resubscribe: bool = True
    client_id: Optional[str] = None
    keepalive: int = 60
    protocol_version: int = 5
    websocket_path: str = "/mqtt"


class EventHub:
    """Named event slots, each holding handlers called in registration order."""

    def __init__(self):
        self._handlers: Dict[TransportEvent, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: Union[TransportEvent, str], handler: Callable) -> None:
        if not callable(handler):
            raise TypeError("handler must be callable")
        event = TransportEvent.parse(event)
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: Union[TransportEvent, str], handler: Callable) -> None:
        event = TransportEvent.parse(event)
        with self._lock:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

    def handlers(self, event: Union[TransportEvent, str]) -> List[Callable]:
        with self._lock:
            return list(self._handlers[TransportEvent.parse(event)])

    def emit(self, event: Union[TransportEvent, str], *args: Any) -> None:
        """Call every handler for ``event``; a failing handler does not stop the rest."""
        event = TransportEvent.parse(event)
        for handler in self.handlers(event):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler for '{event.value}' event raised")


class Session(ABC):
    """A single live transport session."""

    @abstractmethod
    def subscribe(self, topic, options: Optional[dict] = None, callback: Optional[Callable] = None) -> None:
        """Request subscriptions; callback(error, granted) fires on acknowledgement."""
        pass

    @abstractmethod
    def publish(self, topic: str, payload, options: Optional[dict] = None,
                callback: Optional[Callable] = None) -> None:
        """Publish a message; callback(error) fires when QoS handling completes."""
        pass

    @abstractmethod
    def on(self, event: Union[TransportEvent, str], handler: Callable) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass


class Transport(ABC):
    """Factory for sessions."""

    @abstractmethod
    def open(self, options: TransportOptions,
             handlers: Optional[Mapping[TransportEvent, Callable]] = None) -> Session:
        """
        Open a session and start connecting; must not block on the network.

        ``handlers`` are registered before the session starts, so events
        raised while connecting are never missed.
        """
        pass
