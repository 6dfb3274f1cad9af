"""
Models package for the scoped MQTT connector.
"""

from .config import Config, ConfigValidationError, ConfigValidationResult
from .connection import (
    ConnectionParameters,
    ConnectorState,
    Scheme,
    validate_host,
    validate_port,
    validate_scheme,
)

__all__ = [
    'Config',
    'ConfigValidationError',
    'ConfigValidationResult',
    'ConnectionParameters',
    'ConnectorState',
    'Scheme',
    'validate_host',
    'validate_port',
    'validate_scheme'
]
