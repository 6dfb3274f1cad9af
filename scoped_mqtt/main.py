"""
Main application entry point for the scoped MQTT connector.
Handles configuration, logging, credential loading and graceful shutdown.
"""

import os
import sys
import signal
import logging
import threading
from typing import List, Optional

from .errors import ConnectorError
from .security.identity_store import IdentityStore
from .services.config_service import ConfigService
from .services.connector import Connector
from .services.logging_service import LoggingService


class ConnectorApplication:
    """Wires configuration, logging, identity and the connector together."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file (optional)
        """
        self.config_path = config_path or self._get_default_config_path()
        self.logger = logging.getLogger(__name__)
        self.config_service = ConfigService()
        self.config = None
        self.logging_service = None
        self.identity_store = None
        self.connector = None

        self._shutdown_event = threading.Event()
        self._is_running = False

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            "config/default.properties",
            "config.properties",
            os.path.expanduser("~/.scoped_mqtt/config.properties"),
            "/etc/scoped_mqtt/config.properties"
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return possible_paths[0]

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
            self.shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def initialize(self) -> bool:
        """
        Load configuration, set up logging and load credentials.

        Returns:
            True if initialization successful, False otherwise
        """
        if not os.path.exists(self.config_path):
            self.logger.warning(f"Configuration file not found: {self.config_path}")
            self.config_service.create_default_config_file(self.config_path)
            self.logger.warning(
                f"Default configuration created at: {self.config_path}. "
                "Please edit the configuration file and restart the application"
            )
            return False

        try:
            self.config = self.config_service.load_config(self.config_path)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load configuration: {e}")
            return False

        self.logging_service = LoggingService(self.config)
        self.logger.info(f"Configuration loaded from: {self.config_path}")

        try:
            self.identity_store = IdentityStore().load(
                self.config.ca_cert_path,
                self.config.client_cert_path,
                self.config.client_key_path
            )
            self.connector = Connector.from_config(
                self.config,
                identity_store=self.identity_store,
                error_tracker=self.logging_service.error_tracker
            )
            self.logging_service.bind_connector(self.connector)
        except ConnectorError as e:
            self.logger.error(f"Failed to initialize connector: {e}")
            return False

        self.logger.info("Connector application initialized successfully")
        return True

    def run(self, publish: Optional[tuple] = None, qos: int = 0,
            subscribe: Optional[List[str]] = None):
        """
        Connect, optionally publish and subscribe, then block until shutdown.

        Args:
            publish: (topic, payload) to publish once
            qos: QoS for the publish and subscriptions
            subscribe: Topics to subscribe to and log messages from
        """
        if self.connector is None:
            self.logger.error("Application not initialized. Call initialize() first.")
            return

        self.connector.connect()
        self._is_running = True

        try:
            if subscribe:
                self.connector.on_message(self._log_message)
                self.connector.subscribe(subscribe, {'qos': qos}, self._log_subscription)

            if publish:
                topic, payload = publish
                self.connector.publish(topic, payload, {'qos': qos}, self._log_publish)

            while not self._shutdown_event.wait(timeout=1.0):
                pass
        finally:
            self.shutdown()

    def _log_message(self, topic, payload, message):
        self.logger.info(f"Message on {topic}: {payload!r}")

    def _log_subscription(self, error, granted, topic):
        if error is None:
            self.logger.info(f"Subscribed to {topic}: {granted}")

    def _log_publish(self, error):
        if error is None:
            self.logger.info("Message published")

    def shutdown(self):
        """Perform graceful shutdown of the application."""
        self._shutdown_event.set()
        if not self._is_running:
            return

        self._is_running = False
        self.logger.info("Initiating graceful shutdown...")
        try:
            self.connector.close()
        except Exception as e:
            self.logger.error(f"Error during shutdown: {e}")
        self.logger.info("Graceful shutdown completed")

    def is_running(self) -> bool:
        """Check if the application is running."""
        return self._is_running

    def get_status(self) -> dict:
        """Get application status information."""
        status = {
            'running': self._is_running,
            'config_path': self.config_path,
            'identity': self.identity_store.get_identity() if self.identity_store else None,
            'broker': self.connector.parameters.url if self.connector else None,
            'state': self.connector.state.value if self.connector else None,
        }

        if self.identity_store and self.identity_store.is_loaded():
            info = self.identity_store.get_certificate_info()
            status['certificate'] = {
                'subject': info.subject,
                'issuer': info.issuer,
                'not_after': info.not_after.isoformat(),
                'is_valid': info.is_valid
            }

        if self.logging_service:
            status['health'] = self.logging_service.get_health_status(self.connector)
            status['errors'] = self.logging_service.get_error_summary()

        return status


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Identity-scoped MQTT connector')
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--check-config', action='store_true', help='Check configuration and credentials, then exit')
    parser.add_argument('--publish', nargs=2, metavar=('TOPIC', 'PAYLOAD'), help='Publish one message')
    parser.add_argument('--subscribe', nargs='+', metavar='TOPIC', help='Subscribe and log incoming messages')
    parser.add_argument('--qos', type=int, default=0, choices=(0, 1, 2), help='QoS level (default: 0)')

    args = parser.parse_args()

    app = ConnectorApplication(config_path=args.config)

    if not app.initialize():
        print("Failed to initialize application")
        sys.exit(1)

    if args.check_config:
        status = app.get_status()
        print("Configuration check passed")
        print(f"Config path: {status['config_path']}")
        print(f"Identity: {status['identity']}")
        print(f"Broker: {status['broker']}")
        sys.exit(0)

    app.setup_signal_handlers()
    try:
        app.run(publish=tuple(args.publish) if args.publish else None, qos=args.qos, subscribe=args.subscribe)
    except ConnectorError as e:
        print(f"Application error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
