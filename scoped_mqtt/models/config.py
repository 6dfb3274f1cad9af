"""
Configuration data models for the scoped MQTT connector.
"""
from dataclasses import dataclass
from typing import Optional

from .connection import DEFAULT_HOST, DEFAULT_PORT, Scheme, validate_port


@dataclass
class Config:
    """Main configuration class containing all connector settings."""

    # Broker settings
    broker_host: str = DEFAULT_HOST
    broker_port: int = DEFAULT_PORT
    broker_scheme: str = Scheme.MQTTS.value
    client_id: Optional[str] = None
    keepalive_seconds: int = 60
    protocol_version: int = 5
    websocket_path: str = "/mqtt"

    # Connection resilience settings
    reconnect_period_seconds: float = 2.0
    connect_timeout_seconds: float = 20.0
    resubscribe: bool = True

    # Credential settings
    ca_cert_path: str = "certs/ca.crt"
    client_cert_path: str = "certs/client.crt"
    client_key_path: str = "certs/client.key"

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/scoped_mqtt.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        validate_port(self.broker_port)
        Scheme.parse(self.broker_scheme)

        if not isinstance(self.keepalive_seconds, int) or self.keepalive_seconds < 0:
            raise ValueError("keepalive_seconds must be a non-negative integer")

        if not isinstance(self.reconnect_period_seconds, (int, float)) or self.reconnect_period_seconds <= 0:
            raise ValueError("reconnect_period_seconds must be a positive number")

        if not isinstance(self.connect_timeout_seconds, (int, float)) or self.connect_timeout_seconds <= 0:
            raise ValueError("connect_timeout_seconds must be a positive number")

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: list[ConfigValidationError]
    warnings: list[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
