"""
Configuration service for loading and validating connector settings.
"""
import os
import configparser
from typing import Optional, Dict, Any
import logging

from ..models.config import Config, ConfigValidationError, ConfigValidationResult
from ..models.connection import Scheme


class ConfigService:
    """Service for loading and validating connector configuration."""

    def __init__(self, config_path: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self._config = None
        if config_path:
            self._config = self.load_config(config_path)

    def get_config(self) -> Config:
        """
        Get the loaded configuration.

        Returns:
            Config object

        Raises:
            ValueError: If no configuration has been loaded
        """
        if self._config is None:
            raise ValueError("No configuration loaded. Call load_config() first.")
        return self._config

    def load_config(self, config_path: str) -> Config:
        """
        Load configuration from a property file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config object with loaded settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        config_data = self._load_config_file(config_path)
        config = self._create_config_from_data(config_data)

        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        self._config = config
        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser()

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Flatten to section.key
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        for key, value in config_parser.defaults().items():
            if key not in config_data:
                config_data[key] = value

        return config_data

    def _create_config_from_data(self, config_data: Dict[str, Any]) -> Config:
        """Create Config object from configuration data."""
        config_mapping = {
            # Broker settings
            "broker.host": ("broker_host", str),
            "broker_host": ("broker_host", str),
            "broker.port": ("broker_port", int),
            "broker_port": ("broker_port", int),
            "broker.scheme": ("broker_scheme", str),
            "broker_scheme": ("broker_scheme", str),
            "broker.client_id": ("client_id", str),
            "client_id": ("client_id", str),
            "broker.keepalive": ("keepalive_seconds", int),
            "keepalive_seconds": ("keepalive_seconds", int),
            "broker.protocol_version": ("protocol_version", int),
            "protocol_version": ("protocol_version", int),
            "broker.websocket_path": ("websocket_path", str),
            "websocket_path": ("websocket_path", str),

            # Connection settings
            "connection.reconnect_period_seconds": ("reconnect_period_seconds", float),
            "reconnect_period_seconds": ("reconnect_period_seconds", float),
            "connection.connect_timeout_seconds": ("connect_timeout_seconds", float),
            "connect_timeout_seconds": ("connect_timeout_seconds", float),
            "connection.resubscribe": ("resubscribe", bool),
            "resubscribe": ("resubscribe", bool),

            # Credential settings
            "credentials.ca_cert_path": ("ca_cert_path", str),
            "ca_cert_path": ("ca_cert_path", str),
            "credentials.client_cert_path": ("client_cert_path", str),
            "client_cert_path": ("client_cert_path", str),
            "credentials.client_key_path": ("client_key_path", str),
            "client_key_path": ("client_key_path", str),

            # Application settings
            "app.log_level": ("log_level", str),
            "log_level": ("log_level", str),
            "app.log_file_path": ("log_file_path", str),
            "log_file_path": ("log_file_path", str),
        }

        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key in config_mapping:
                field_name, field_type = config_mapping[config_key]
                try:
                    if field_type == bool:
                        value = self._parse_bool(raw_value)
                    elif field_type == int:
                        value = int(raw_value)
                    elif field_type == float:
                        value = float(raw_value)
                    else:
                        value = str(raw_value).strip() if raw_value is not None else None
                    config_kwargs[field_name] = value
                except (ValueError, TypeError) as e:
                    raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")

        # An empty client_id means "generate one"
        if not config_kwargs.get("client_id"):
            config_kwargs.pop("client_id", None)

        return Config(**config_kwargs)

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def validate_config(self, config: Config) -> ConfigValidationResult:
        """
        Validate configuration settings.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        credential_files = [
            ("ca_cert_path", config.ca_cert_path),
            ("client_cert_path", config.client_cert_path),
            ("client_key_path", config.client_key_path)
        ]

        for field_name, cert_path in credential_files:
            if not cert_path:
                errors.append(ConfigValidationError(
                    field_name,
                    f"{field_name} is required for mutual TLS"
                ))
            elif not os.path.exists(cert_path):
                errors.append(ConfigValidationError(
                    field_name,
                    f"Credential file not found: {cert_path}"
                ))

        if config.protocol_version not in (4, 5):
            errors.append(ConfigValidationError(
                "protocol_version",
                "protocol_version must be 4 (MQTT 3.1.1) or 5 (MQTT 5.0)"
            ))

        if not Scheme.parse(config.broker_scheme).secure:
            warnings.append(ConfigValidationError(
                "broker_scheme",
                f"Scheme '{config.broker_scheme}' does not use TLS; the client certificate will not be presented",
                "warning"
            ))

        if config.connect_timeout_seconds > 60:
            warnings.append(ConfigValidationError(
                "connect_timeout_seconds",
                "Connect timeout over 60 seconds delays failure detection",
                "warning"
            ))

        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# Scoped MQTT Connector Configuration File

[broker]
host = your-mqtt-broker-host
port = 8883
# one of: mqtt, mqtts, ws, wss
scheme = mqtts
# left empty, a random client id is generated
client_id =
keepalive = 60
# 4 = MQTT 3.1.1, 5 = MQTT 5.0
protocol_version = 5
websocket_path = /mqtt

[connection]
reconnect_period_seconds = 2
connect_timeout_seconds = 20
resubscribe = true

[credentials]
ca_cert_path = certs/ca.crt
client_cert_path = certs/client.crt
client_key_path = certs/client.key

[app]
log_level = INFO
log_file_path = logs/scoped_mqtt.log
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)

        self.logger.info(f"Created default configuration file: {config_path}")
