"""
Transport package: the session contract and its paho-mqtt implementation.
"""
from .base import EventHub, Session, Transport, TransportEvent, TransportOptions, LIFECYCLE_EVENTS
from .paho_transport import PahoSession, PahoTransport

__all__ = [
    'EventHub',
    'Session',
    'Transport',
    'TransportEvent',
    'TransportOptions',
    'LIFECYCLE_EVENTS',
    'PahoSession',
    'PahoTransport'
]
