"""
Connection parameter models and their validators.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from ..errors import InvalidHostError, InvalidPortError, InvalidSchemeError


DEFAULT_HOST = "your-mqtt-broker-host"
DEFAULT_PORT = 8883


class Scheme(Enum):
    """Transport schemes understood by the connector, valued by their wire name."""

    WS = "ws"
    WSS = "wss"
    MQTT = "mqtt"
    MQTTS = "mqtts"

    @property
    def alias(self) -> str:
        return _SCHEME_ALIASES[self]

    @property
    def secure(self) -> bool:
        return self in (Scheme.WSS, Scheme.MQTTS)

    @property
    def transport(self) -> str:
        """paho transport name for this scheme."""
        return "websockets" if self in (Scheme.WS, Scheme.WSS) else "tcp"

    @classmethod
    def permitted(cls) -> tuple:
        return tuple(member.value for member in cls)

    @classmethod
    def parse(cls, value: Union["Scheme", str]) -> "Scheme":
        """
        Map a Scheme, a wire name ("mqtts") or a descriptive alias
        ("secure-socket") to a Scheme.

        Raises:
            InvalidSchemeError: If the value names no scheme
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if value == member.value or value == member.alias:
                    return member
        raise InvalidSchemeError(value, cls.permitted())


_SCHEME_ALIASES = {
    Scheme.WS: "plain-websocket",
    Scheme.WSS: "secure-websocket",
    Scheme.MQTT: "plain-socket",
    Scheme.MQTTS: "secure-socket",
}


class ConnectorState(Enum):
    """Lifecycle states of a connector."""

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def validate_host(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidHostError(value)
    return value


def validate_port(value) -> int:
    # bool is an int subclass; True is not a port
    if isinstance(value, bool) or not isinstance(value, int) or not (1 <= value <= 65535):
        raise InvalidPortError(value)
    return value


def validate_scheme(value) -> Scheme:
    return Scheme.parse(value)


@dataclass(frozen=True)
class ConnectionParameters:
    """Validated broker address, port and transport scheme."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    scheme: Scheme = field(default=Scheme.MQTTS)

    def __post_init__(self):
        """Validate parameters after initialization."""
        validate_host(self.host)
        validate_port(self.port)
        # frozen dataclass: normalise aliases through object.__setattr__
        object.__setattr__(self, "scheme", validate_scheme(self.scheme))

    @property
    def url(self) -> str:
        return f"{self.scheme.value}://{self.host}:{self.port}"
