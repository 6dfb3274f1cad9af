"""
Identity-scoped MQTT connector.

Loads a client certificate, derives a topic namespace from its common name,
and publishes and subscribes only inside that namespace.
"""
from .errors import (
    ConnectorError,
    CredentialLoadError,
    CredentialsNotLoadedError,
    EmptyIdentityError,
    IdentityExtractionError,
    InvalidHostError,
    InvalidPortError,
    InvalidSchemeError,
    InvalidTopicError,
    NotConnectedError,
    TransportError,
)
from .models.connection import ConnectionParameters, ConnectorState, Scheme
from .security.identity_store import IdentityStore
from .services.connector import Connector

__version__ = "1.0.0"

__all__ = [
    'Connector',
    'IdentityStore',
    'ConnectionParameters',
    'ConnectorState',
    'Scheme',
    'ConnectorError',
    'CredentialLoadError',
    'CredentialsNotLoadedError',
    'EmptyIdentityError',
    'IdentityExtractionError',
    'InvalidHostError',
    'InvalidPortError',
    'InvalidSchemeError',
    'InvalidTopicError',
    'NotConnectedError',
    'TransportError'
]
