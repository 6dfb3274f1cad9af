#!/usr/bin/env python3
"""
Example script demonstrating configuration, credential loading and
identity-scoped publishing.
"""
import sys
import os
import threading

# Run from a source checkout without installing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from scoped_mqtt.errors import ConnectorError
from scoped_mqtt.models.config import Config
from scoped_mqtt.security.identity_store import IdentityStore
from scoped_mqtt.services.config_service import ConfigService
from scoped_mqtt.services.connector import Connector


def main():
    """Demonstrate configuration validation and a scoped publish."""
    config_service = ConfigService()

    print("=== Scoped MQTT Connector Demo ===\n")

    # Example 1: Create a default configuration file
    print("1. Creating default configuration file...")
    default_config_path = "config/example.properties"

    config_service.create_default_config_file(default_config_path)
    print(f"✓ Created default configuration at: {default_config_path}")

    # Example 2: Validate a configuration
    print("\n2. Validating configuration...")

    test_config = Config(
        broker_scheme="mqtt",  # no TLS: the client certificate is never presented
        ca_cert_path="nonexistent/ca.crt"
    )
    validation_result = config_service.validate_config(test_config)

    for issue in validation_result.errors + validation_result.warnings:
        print(f"    - {issue}")

    # Example 3: Load credentials and publish under the certificate identity
    print("\n3. Publishing a message...")

    try:
        config = config_service.load_config(default_config_path)
        identity_store = IdentityStore().load(
            config.ca_cert_path,
            config.client_cert_path,
            config.client_key_path
        )
    except (ValueError, ConnectorError) as e:
        print(f"✗ Edit {default_config_path} and point it at real credentials first: {e}")
        return

    print(f"  - Identity: {identity_store.get_identity()}")

    connector = Connector.from_config(config, identity_store=identity_store)
    done = threading.Event()

    def on_published(error):
        print("✓ Published" if error is None else f"✗ Publish failed: {error}")
        done.set()

    connector.on("error", lambda error: print(f"⚠ {error}"))
    connector.connect()
    topic = connector.publish("status", "online", {'qos': 1}, on_published)
    print(f"  - Effective topic: {topic}")

    done.wait(timeout=config.connect_timeout_seconds)
    connector.close()

    print("\n=== Demo Complete ===")


if __name__ == "__main__":
    main()
