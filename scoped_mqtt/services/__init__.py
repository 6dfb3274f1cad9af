"""
Services package for the scoped MQTT connector.
"""

from .config_service import ConfigService
from .connector import Connector
from .logging_service import LoggingService, ErrorTracker, JSONFormatter

__all__ = [
    'ConfigService',
    'Connector',
    'LoggingService',
    'ErrorTracker',
    'JSONFormatter'
]
