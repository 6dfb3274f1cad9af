"""
Tests for the paho-mqtt session and transport.
"""
import shutil
import ssl
import tempfile
import threading
import unittest
from unittest.mock import Mock, patch

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode
from paho.mqtt.subscribeoptions import SubscribeOptions

from scoped_mqtt.errors import TransportError
from scoped_mqtt.models.connection import Scheme
from scoped_mqtt.security.identity_store import IdentityStore
from scoped_mqtt.transport.base import TransportEvent, TransportOptions
from scoped_mqtt.transport.paho_transport import PahoSession, PahoTransport
from tests.certificates import create_test_ca, write_credentials


def _success(packet_type=PacketTypes.CONNACK):
    return ReasonCode(packet_type, "Success")


def _granted(qos):
    return ReasonCode(PacketTypes.SUBACK, identifier=qos)


def _refused():
    return ReasonCode(PacketTypes.SUBACK, identifier=0x80)


def _normal_disconnect():
    return ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection")


class PahoSessionTestCase(unittest.TestCase):
    """Shared fixtures for PahoSession tests."""

    @classmethod
    def setUpClass(cls):
        cls.temp_dir = tempfile.mkdtemp()
        paths = write_credentials(cls.temp_dir, "device42", ca=create_test_ca())
        cls.bundle = IdentityStore().load(*paths).get_credentials()

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.temp_dir, ignore_errors=True)

    def setUp(self):
        self.client = Mock()
        self.client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        self.client.publish.return_value = Mock(rc=mqtt.MQTT_ERR_SUCCESS, mid=7)
        self.factory = Mock(return_value=self.client)

    def make_options(self, **overrides):
        values = dict(
            host="broker.example.com",
            port=8883,
            scheme=Scheme.MQTTS,
            ca_cert=self.bundle.ca_cert,
            client_cert=self.bundle.client_cert,
            client_key=self.bundle.client_key,
        )
        values.update(overrides)
        return TransportOptions(**values)

    def make_session(self, **overrides):
        return PahoSession(self.make_options(**overrides), client_factory=self.factory)

    def connect(self, session, session_present=False):
        session._on_connect(self.client, None, Mock(session_present=session_present), _success(), None)


class TestPahoSessionSetup(PahoSessionTestCase):
    """Test cases for client construction."""

    def test_transport_options_defaults(self):
        """Test the default resilience settings."""
        options = self.make_options()

        self.assertEqual(options.reconnect_period, 2.0)
        self.assertEqual(options.connect_timeout, 20.0)
        self.assertTrue(options.resubscribe)
        self.assertNotIn("PRIVATE KEY", repr(options))

    def test_secure_socket_client(self):
        """Test client construction for mqtts."""
        self.make_session(client_id="device42-client")

        kwargs = self.factory.call_args.kwargs
        self.assertEqual(kwargs['callback_api_version'], mqtt.CallbackAPIVersion.VERSION2)
        self.assertEqual(kwargs['client_id'], "device42-client")
        self.assertEqual(kwargs['protocol'], mqtt.MQTTv5)
        self.assertEqual(kwargs['transport'], "tcp")
        self.client.tls_set_context.assert_called_once()
        self.assertIsInstance(self.client.tls_set_context.call_args.args[0], ssl.SSLContext)
        self.client.ws_set_options.assert_not_called()
        self.client.reconnect_delay_set.assert_called_once_with(min_delay=2.0, max_delay=2.0)
        self.assertEqual(self.client.connect_timeout, 20.0)

    def test_secure_websocket_client(self):
        """Test client construction for wss."""
        self.make_session(scheme=Scheme.WSS, port=443, websocket_path="/ws")

        self.assertEqual(self.factory.call_args.kwargs['transport'], "websockets")
        self.client.ws_set_options.assert_called_once_with(path="/ws")
        self.client.tls_set_context.assert_called_once()

    def test_plain_schemes_skip_tls(self):
        """Test that mqtt and ws never configure TLS."""
        for scheme, transport in ((Scheme.MQTT, "tcp"), (Scheme.WS, "websockets")):
            self.client.reset_mock()
            self.make_session(scheme=scheme, port=1883)

            self.assertEqual(self.factory.call_args.kwargs['transport'], transport)
            self.client.tls_set_context.assert_not_called()

    def test_generated_client_id(self):
        """Test that a client id is generated when none is given."""
        self.make_session()

        self.assertTrue(self.factory.call_args.kwargs['client_id'].startswith("scoped-mqtt-"))

    def test_mqtt_v311(self):
        """Test protocol selection for MQTT 3.1.1."""
        self.make_session(protocol_version=4)

        self.assertEqual(self.factory.call_args.kwargs['protocol'], mqtt.MQTTv311)

    def test_tls_context_rejects_bad_key(self):
        """Test that a key which does not match the certificate fails."""
        other = write_credentials(self.temp_dir, "other", ca=create_test_ca(), prefix="other")
        with open(other[2], 'rb') as f:
            wrong_key = f.read()

        with self.assertRaises(ssl.SSLError):
            self.make_session(client_key=wrong_key)

    def test_transport_open_starts_session(self):
        """Test that open() starts connecting without blocking."""
        transport = PahoTransport(client_factory=self.factory)

        session = transport.open(self.make_options(keepalive=30))

        self.assertIsInstance(session, PahoSession)
        self.client.connect_async.assert_called_once_with("broker.example.com", 8883, keepalive=30)
        self.client.loop_start.assert_called_once_with()
        self.assertFalse(session.is_connected())

    def test_transport_open_registers_handlers_before_start(self):
        """Test that a connect failure raised as the loop starts reaches the handlers."""
        transport = PahoTransport(client_factory=self.factory)
        self.client.loop_start.side_effect = lambda: self.client.on_connect_fail(self.client, None)
        events = []

        transport.open(self.make_options(), {
            TransportEvent.ERROR: lambda error: events.append(("error", error)),
            TransportEvent.RECONNECTING: lambda: events.append(("reconnecting",)),
        })

        self.assertEqual([event[0] for event in events], ["error", "reconnecting"])
        self.assertIsInstance(events[0][1], TransportError)


class TestPahoSessionOperations(PahoSessionTestCase):
    """Test cases for subscribe and publish."""

    def test_operations_queued_until_connected(self):
        """Test that operations issued while disconnected are sent on connect."""
        session = self.make_session()
        session.subscribe("device42/status", {'qos': 1})
        session.publish("device42/status", "up", {'qos': 1})

        self.client.subscribe.assert_not_called()
        self.client.publish.assert_not_called()

        self.connect(session)

        self.client.subscribe.assert_called_once()
        self.client.publish.assert_called_once_with(
            "device42/status", "up", qos=1, retain=False, properties=None
        )

    def test_subscribe_single_topic(self):
        """Test subscription acknowledgement."""
        session = self.make_session()
        self.connect(session)
        callback = Mock()

        session.subscribe("device42/status", {'qos': 1, 'nl': True}, callback)

        requests = self.client.subscribe.call_args.args[0]
        self.assertEqual(len(requests), 1)
        name, request = requests[0]
        self.assertEqual(name, "device42/status")
        self.assertIsInstance(request, SubscribeOptions)
        self.assertEqual(request.QoS, 1)
        self.assertTrue(request.noLocal)

        session._on_subscribe(self.client, None, 1, [_granted(1)], None)

        callback.assert_called_once_with(None, [{'topic': "device42/status", 'qos': 1}])

    def test_subscribe_mapping_and_refusal(self):
        """Test per-topic options and a refused topic."""
        session = self.make_session()
        self.connect(session)
        callback = Mock()

        session.subscribe({"device42/a": {'qos': 0}, "device42/b": {'qos': 2}}, {}, callback)
        requests = self.client.subscribe.call_args.args[0]
        self.assertEqual([request.QoS for _, request in requests], [0, 2])

        session._on_subscribe(self.client, None, 1, [_granted(0), _refused()], None)

        callback.assert_called_once_with(None, [
            {'topic': "device42/a", 'qos': 0},
            {'topic': "device42/b", 'qos': 0x80},
        ])
        self.assertEqual(list(session._subscriptions), ["device42/a"])

    def test_subscribe_v311_uses_plain_qos(self):
        """Test the MQTT 3.1.1 subscribe request form."""
        session = self.make_session(protocol_version=4)
        self.connect(session)

        session.subscribe(["device42/a", "device42/b"], {'qos': 1})

        self.client.subscribe.assert_called_once_with(
            [("device42/a", 1), ("device42/b", 1)], properties=None
        )

    def test_v5_only_options_rejected_on_v311(self):
        """Test that v5 options and properties fail on MQTT 3.1.1."""
        session = self.make_session(protocol_version=4)

        with self.assertRaises(ValueError):
            session.subscribe("device42/a", {'rap': True})
        with self.assertRaises(ValueError):
            session.publish("device42/a", "x", {'properties': {'content_type': "text/plain"}})

    def test_unknown_options_rejected(self):
        """Test that unsupported options are rejected."""
        session = self.make_session()

        with self.assertRaises(ValueError):
            session.subscribe("device42/a", {'priority': 1})
        with self.assertRaises(ValueError):
            session.publish("device42/a", "x", {'priority': 1})
        with self.assertRaises(ValueError):
            session.publish("device42/a", "x", {'qos': 3})
        with self.assertRaises(ValueError):
            session.publish("device42/a", "x", {'properties': {'bogus': 1}})

    def test_subscribe_send_failure(self):
        """Test that a client-side subscribe failure reaches the callback."""
        session = self.make_session()
        self.connect(session)
        self.client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        callback = Mock()

        session.subscribe("device42/a", {}, callback)

        error, granted = callback.call_args.args
        self.assertIsInstance(error, TransportError)
        self.assertEqual(error.reason_code, mqtt.MQTT_ERR_NO_CONN)
        self.assertEqual(granted, [])

    def test_publish_acknowledged(self):
        """Test publish completion."""
        session = self.make_session()
        self.connect(session)
        callback = Mock()

        session.publish("device42/status", b"up", {'qos': 1, 'retain': True, 'dup': True}, callback)
        self.client.publish.assert_called_once_with(
            "device42/status", b"up", qos=1, retain=True, properties=None
        )
        callback.assert_not_called()

        session._on_publish(self.client, None, 7, _success(PacketTypes.PUBACK), None)

        callback.assert_called_once_with(None)

    def test_publish_concurrent_with_ack(self):
        """Test a publish issued while the network thread handles an earlier ack.

        paho holds its outgoing-message mutex both inside publish() and while
        calling on_publish, so the session must not hold its own lock around
        publish().
        """
        session = self.make_session()
        self.connect(session)
        out_message_mutex = threading.Lock()
        publish_entered = threading.Event()

        def publish(*args, **kwargs):
            publish_entered.set()
            with out_message_mutex:
                return Mock(rc=mqtt.MQTT_ERR_SUCCESS, mid=1)

        self.client.publish.side_effect = publish
        callback = Mock()

        def network_loop():
            with out_message_mutex:
                publish_entered.wait(timeout=3)
                session._on_publish(self.client, None, 1, _success(PacketTypes.PUBACK), None)

        network = threading.Thread(target=network_loop, daemon=True)
        app = threading.Thread(
            target=session.publish, args=("device42/status", "x", {'qos': 1}, callback), daemon=True
        )
        network.start()
        app.start()
        network.join(timeout=3)
        app.join(timeout=3)

        self.assertFalse(network.is_alive() or app.is_alive(), "network and app threads both blocked")
        callback.assert_called_once_with(None)
        self.assertEqual(session._pending_publishes, {})

    def test_publish_ack_before_mid_registered(self):
        """Test an ack that arrives before publish() has returned its mid."""
        session = self.make_session()
        self.connect(session)
        self.client.publish.side_effect = lambda *args, **kwargs: (
            session._on_publish(self.client, None, 7, _success(PacketTypes.PUBACK), None)
            or Mock(rc=mqtt.MQTT_ERR_SUCCESS, mid=7)
        )
        callback = Mock()

        session.publish("device42/status", "up", {'qos': 1}, callback)

        callback.assert_called_once_with(None)
        self.assertEqual(session._early_pubacks, {})

    def test_subscribe_ack_before_mid_registered(self):
        """Test a SUBACK that arrives before subscribe() has returned its mid."""
        session = self.make_session()
        self.connect(session)
        self.client.subscribe.side_effect = lambda *args, **kwargs: (
            session._on_subscribe(self.client, None, 1, [_granted(1)], None)
            or (mqtt.MQTT_ERR_SUCCESS, 1)
        )
        callback = Mock()

        session.subscribe("device42/status", {'qos': 1}, callback)

        callback.assert_called_once_with(None, [{'topic': "device42/status", 'qos': 1}])
        self.assertIn("device42/status", session._subscriptions)

    def test_queued_operations_keep_order(self):
        """Test that an operation issued during the connect flush runs after the queue."""
        session = self.make_session()
        sent = []

        def publish(topic, *args, **kwargs):
            sent.append(topic)
            if topic == "device42/first":
                session.publish("device42/third", "z")
            return Mock(rc=mqtt.MQTT_ERR_SUCCESS, mid=len(sent))

        self.client.publish.side_effect = publish
        session.publish("device42/first", "x")
        session.publish("device42/second", "y")

        self.connect(session)

        self.assertEqual(sent, ["device42/first", "device42/second", "device42/third"])

    def test_publish_rejected_by_broker(self):
        """Test a failing PUBACK reason code."""
        session = self.make_session()
        self.connect(session)
        callback = Mock()
        session.publish("device42/status", "up", {'qos': 1}, callback)

        session._on_publish(self.client, None, 7, ReasonCode(PacketTypes.PUBACK, "Not authorized"), None)

        error = callback.call_args.args[0]
        self.assertIsInstance(error, TransportError)
        self.assertEqual(error.reason_code, 135)

    def test_publish_send_failure(self):
        """Test that a QoS 0 publish without a connection fails immediately."""
        session = self.make_session()
        self.connect(session)
        self.client.publish.return_value = Mock(rc=mqtt.MQTT_ERR_NO_CONN, mid=8)
        callback = Mock()

        session.publish("device42/status", "up", {}, callback)

        self.assertIsInstance(callback.call_args.args[0], TransportError)

    def test_publish_properties(self):
        """Test MQTT v5 publish properties."""
        session = self.make_session()
        self.connect(session)

        session.publish("device42/status", "up", {'properties': {
            'contentType': "text/plain",
            'user_properties': {'site': "lab", 'tags': ["a", "b"]},
        }})

        properties = self.client.publish.call_args.kwargs['properties']
        self.assertIsInstance(properties, Properties)
        self.assertEqual(properties.ContentType, "text/plain")
        self.assertEqual(properties.UserProperty, [("site", "lab"), ("tags", "a"), ("tags", "b")])


class TestPahoSessionLifecycle(PahoSessionTestCase):
    """Test cases for connection lifecycle handling."""

    def test_connected_event(self):
        """Test the connected event."""
        session = self.make_session()
        listener = Mock()
        session.on("connected", listener)

        self.connect(session)

        listener.assert_called_once_with()
        self.assertTrue(session.is_connected())

    def test_connection_refused(self):
        """Test that a refused CONNACK is an error event."""
        session = self.make_session()
        errors = []
        session.on(TransportEvent.ERROR, errors.append)

        session._on_connect(self.client, None, Mock(session_present=False),
                            ReasonCode(PacketTypes.CONNACK, "Not authorized"), None)

        self.assertFalse(session.is_connected())
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], TransportError)
        self.assertEqual(errors[0].reason_code, 135)

    def test_connect_fail_reports_error_then_reconnecting(self):
        """Test events for a failed connection attempt."""
        session = self.make_session()
        events = []
        session.on("error", lambda error: events.append("error"))
        session.on("reconnecting", lambda: events.append("reconnecting"))

        session._on_connect_fail(self.client, None)

        self.assertEqual(events, ["error", "reconnecting"])

    def test_unexpected_disconnect(self):
        """Test events for a dropped connection."""
        session = self.make_session()
        self.connect(session)
        events = []
        session.on("closed", lambda: events.append("closed"))
        session.on("reconnecting", lambda: events.append("reconnecting"))

        session._on_disconnect(self.client, None, Mock(), _normal_disconnect(), None)

        self.assertEqual(events, ["closed", "reconnecting"])
        self.assertFalse(session.is_connected())

    def test_resubscribe_after_reconnect(self):
        """Test that granted subscriptions are restored on a clean session."""
        session = self.make_session()
        self.connect(session)
        session.subscribe("device42/a", {'qos': 1})
        session._on_subscribe(self.client, None, 1, [_granted(1)], None)
        session._on_disconnect(self.client, None, Mock(), _normal_disconnect(), None)
        self.client.subscribe.reset_mock()

        self.connect(session)

        self.client.subscribe.assert_called_once()
        requests = self.client.subscribe.call_args.args[0]
        self.assertEqual([name for name, _ in requests], ["device42/a"])

    def test_no_resubscribe_when_session_present(self):
        """Test that a resumed broker session is not resubscribed."""
        session = self.make_session()
        self.connect(session)
        session.subscribe("device42/a")
        session._on_subscribe(self.client, None, 1, [_granted(0)], None)
        self.client.subscribe.reset_mock()

        self.connect(session, session_present=True)

        self.client.subscribe.assert_not_called()

    def test_no_resubscribe_when_disabled(self):
        """Test that resubscription can be turned off."""
        session = self.make_session(resubscribe=False)
        self.connect(session)
        session.subscribe("device42/a")
        session._on_subscribe(self.client, None, 1, [_granted(0)], None)
        self.client.subscribe.reset_mock()

        self.connect(session)

        self.client.subscribe.assert_not_called()

    def test_message_event(self):
        """Test that incoming messages are forwarded."""
        session = self.make_session()
        callback = Mock()
        session.on("message", callback)
        message = Mock(topic="device42/cmd", payload=b"reboot")

        session._on_message(self.client, None, message)

        callback.assert_called_once_with("device42/cmd", b"reboot", message)

    def test_close_fails_pending_operations(self):
        """Test that close aborts queued and unacknowledged operations."""
        session = self.make_session()
        queued = Mock()
        session.subscribe("device42/a", {}, queued)
        self.connect(session)
        in_flight = Mock()
        session.publish("device42/b", "x", {'qos': 1}, in_flight)
        offline = Mock()
        session._connected = False
        session.publish("device42/c", "y", {'qos': 1}, offline)

        session.close()

        self.client.disconnect.assert_called_once_with()
        self.client.loop_stop.assert_called_once_with()
        error, granted = queued.call_args.args
        self.assertIsInstance(error, TransportError)
        self.assertEqual(granted, [])
        self.assertIsInstance(in_flight.call_args.args[0], TransportError)
        self.assertIsInstance(offline.call_args.args[0], TransportError)

    def test_operations_after_close_fail(self):
        """Test that a closed session rejects new operations."""
        session = self.make_session()
        session.close()
        callback = Mock()

        session.publish("device42/a", "x", {}, callback)

        self.assertIsInstance(callback.call_args.args[0], TransportError)
        self.client.publish.assert_not_called()

    def test_close_before_connect_emits_closed(self):
        """Test that closing an unconnected session still reports closed."""
        session = self.make_session()
        listener = Mock()
        session.on("closed", listener)

        session.close()
        session.close()

        listener.assert_called_once_with()

    def test_close_does_not_emit_reconnecting(self):
        """Test that the disconnect caused by close is not a reconnect."""
        session = self.make_session()
        self.connect(session)
        reconnecting = Mock()
        session.on("reconnecting", reconnecting)

        with patch.object(self.client, 'disconnect', side_effect=lambda: session._on_disconnect(
                self.client, None, Mock(), _normal_disconnect(), None)):
            session.close()

        reconnecting.assert_not_called()


if __name__ == '__main__':
    unittest.main()
