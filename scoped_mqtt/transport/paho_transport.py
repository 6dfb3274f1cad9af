"""
paho-mqtt implementation of the transport contract.
"""
import logging
import os
import ssl
import tempfile
import threading
import uuid
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.subscribeoptions import SubscribeOptions

from ..errors import TransportError
from .base import EventHub, Session, Transport, TransportEvent, TransportOptions


_PUBLISH_PROPERTIES = {
    'payload_format_indicator': 'PayloadFormatIndicator',
    'message_expiry_interval': 'MessageExpiryInterval',
    'topic_alias': 'TopicAlias',
    'response_topic': 'ResponseTopic',
    'correlation_data': 'CorrelationData',
    'user_properties': 'UserProperty',
    'subscription_identifier': 'SubscriptionIdentifier',
    'content_type': 'ContentType',
}

_SUBSCRIBE_PROPERTIES = {
    'subscription_identifier': 'SubscriptionIdentifier',
    'user_properties': 'UserProperty',
}


def _camel_case(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def _with_camel_case(mapping: Dict[str, str]) -> Dict[str, str]:
    names = dict(mapping)
    names.update({_camel_case(key): value for key, value in mapping.items()})
    return names


_PUBLISH_PROPERTY_NAMES = _with_camel_case(_PUBLISH_PROPERTIES)
_SUBSCRIBE_PROPERTY_NAMES = _with_camel_case(_SUBSCRIBE_PROPERTIES)


class PahoSession(Session):
    """One paho client running its own network loop thread."""

    def __init__(self, options: TransportOptions, client_factory: Callable = mqtt.Client):
        self.logger = logging.getLogger(__name__)
        self._options = options
        self._events = EventHub()
        self._lock = threading.RLock()
        self._connected = False
        self._connected_once = False
        self._closing = False
        # (function, args, callback) issued while disconnected
        self._offline_queue: List[Tuple[Callable, tuple, Optional[Callable]]] = []
        self._flushing = False
        self._pending_subscriptions: Dict[int, Tuple[List[tuple], Optional[Callable]]] = {}
        self._pending_publishes: Dict[int, Optional[Callable]] = {}
        # acks that arrived before client.subscribe/publish returned their mid
        self._early_subacks: Dict[int, list] = {}
        self._early_pubacks: Dict[int, object] = {}
        # granted subscriptions, re-requested after a reconnect
        self._subscriptions: Dict[str, Union[int, SubscribeOptions]] = {}
        self._client = self._build_client(client_factory)

    @property
    def is_v5(self) -> bool:
        return self._options.protocol_version == 5

    def _build_client(self, client_factory: Callable):
        options = self._options
        client = client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=options.client_id or f"scoped-mqtt-{uuid.uuid4().hex[:12]}",
            protocol=mqtt.MQTTv5 if self.is_v5 else mqtt.MQTTv311,
            transport=options.scheme.transport,
        )
        client.enable_logger(logging.getLogger('scoped_mqtt.transport.paho'))

        if options.scheme.transport == 'websockets':
            client.ws_set_options(path=options.websocket_path)
        if options.scheme.secure:
            client.tls_set_context(self._build_tls_context())

        client.reconnect_delay_set(min_delay=options.reconnect_period, max_delay=options.reconnect_period)
        client.connect_timeout = options.connect_timeout

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        client.on_message = self._on_message
        return client

    def _build_tls_context(self) -> ssl.SSLContext:
        """Create an SSL context for mutual TLS from the in-memory credentials."""
        context = ssl.create_default_context(
            ssl.Purpose.SERVER_AUTH,
            cadata=self._options.ca_cert.decode('utf-8')
        )
        context.minimum_version = ssl.TLSVersion.TLSv1_2

        # load_cert_chain only reads from files
        with tempfile.TemporaryDirectory(prefix='scoped-mqtt-') as directory:
            cert_path = os.path.join(directory, 'client.crt')
            key_path = os.path.join(directory, 'client.key')
            for path, data in ((cert_path, self._options.client_cert), (key_path, self._options.client_key)):
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)

        return context

    def start(self) -> None:
        """Begin connecting in the background."""
        options = self._options
        self.logger.debug(f"Connecting to {options.scheme.value}://{options.host}:{options.port}")
        self._client.connect_async(options.host, options.port, keepalive=options.keepalive)
        self._client.loop_start()

    def on(self, event: Union[TransportEvent, str], handler: Callable) -> None:
        self._events.on(event, handler)

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def close(self) -> None:
        """Disconnect, stop the network loop and fail whatever is still pending."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
            was_connected = self._connected

        self._client.disconnect()
        self._client.loop_stop()

        with self._lock:
            self._connected = False
            aborted = [(function, callback) for function, _, callback in self._offline_queue]
            aborted += [(self._send_subscribe, callback) for _, callback in self._pending_subscriptions.values()]
            aborted += [(self._send_publish, callback) for callback in self._pending_publishes.values()]
            self._offline_queue = []
            self._pending_subscriptions.clear()
            self._pending_publishes.clear()
            self._early_subacks.clear()
            self._early_pubacks.clear()

        for function, callback in aborted:
            self._fail(function, callback, TransportError("Session closed before the operation completed"))

        if not was_connected:
            self._events.emit(TransportEvent.CLOSED)

    # Subscribe

    def subscribe(self, topic, options: Optional[dict] = None, callback: Optional[Callable] = None) -> None:
        options = dict(options or {})
        properties = self._build_properties(
            PacketTypes.SUBSCRIBE, options.pop('properties', None), _SUBSCRIBE_PROPERTY_NAMES
        )

        if isinstance(topic, dict):
            requests = [(name, self._subscribe_options(topic_options)) for name, topic_options in topic.items()]
        else:
            names = [topic] if isinstance(topic, str) else list(topic)
            shared = self._subscribe_options(options)
            requests = [(name, shared) for name in names]

        self._dispatch(self._send_subscribe, (requests, properties), callback)

    def _subscribe_options(self, options) -> Union[int, SubscribeOptions]:
        """Translate a subscribe option dict into paho's per-topic form."""
        if isinstance(options, int):
            options = {'qos': options}
        options = dict(options or {})

        qos = options.pop('qos', 0)
        no_local = options.pop('nl', options.pop('no_local', False))
        retain_as_published = options.pop('rap', options.pop('retain_as_published', False))
        retain_handling = options.pop('rh', options.pop('retain_handling', SubscribeOptions.RETAIN_SEND_ON_SUBSCRIBE))
        if options:
            raise ValueError(f"Unsupported subscribe options: {', '.join(sorted(options))}")

        if self.is_v5:
            return SubscribeOptions(
                qos=qos,
                noLocal=no_local,
                retainAsPublished=retain_as_published,
                retainHandling=retain_handling
            )

        if no_local or retain_as_published or retain_handling != SubscribeOptions.RETAIN_SEND_ON_SUBSCRIBE:
            raise ValueError("no_local, retain_as_published and retain_handling require MQTT v5")
        return qos

    # client.subscribe/publish take paho's internal mutexes, and paho holds
    # those while calling back into _on_subscribe/_on_publish. Neither call
    # may run under self._lock.

    def _send_subscribe(self, requests: List[tuple], properties, callback: Optional[Callable]) -> None:
        result, mid = self._client.subscribe(requests, properties=properties)
        if result != mqtt.MQTT_ERR_SUCCESS:
            if callback is not None:
                callback(TransportError(f"Subscribe failed: {mqtt.error_string(result)}", reason_code=result), [])
            return

        with self._lock:
            reason_codes = self._early_subacks.pop(mid, None)
            if reason_codes is None:
                self._pending_subscriptions[mid] = (requests, callback)
                return
        self._complete_subscribe(requests, callback, reason_codes)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._lock:
            pending = self._pending_subscriptions.pop(mid, None)
            if pending is None:
                self._early_subacks[mid] = reason_code_list
                return
        requests, callback = pending
        self._complete_subscribe(requests, callback, reason_code_list)

    def _complete_subscribe(self, requests: List[tuple], callback: Optional[Callable], reason_code_list) -> None:
        granted = []
        with self._lock:
            for (name, request), reason_code in zip(requests, reason_code_list):
                granted.append({'topic': name, 'qos': reason_code.value})
                if not reason_code.is_failure:
                    self._subscriptions[name] = request

        if callback is not None:
            callback(None, granted)

    # Publish

    def publish(self, topic: str, payload, options: Optional[dict] = None,
                callback: Optional[Callable] = None) -> None:
        options = dict(options or {})
        qos = options.pop('qos', 0)
        retain = options.pop('retain', False)
        # paho sets DUP itself when it retransmits
        options.pop('dup', None)
        properties = self._build_properties(
            PacketTypes.PUBLISH, options.pop('properties', None), _PUBLISH_PROPERTY_NAMES
        )
        if options:
            raise ValueError(f"Unsupported publish options: {', '.join(sorted(options))}")
        if qos not in (0, 1, 2):
            raise ValueError(f"Invalid QoS level {qos!r}. Must be 0, 1 or 2.")

        self._dispatch(self._send_publish, (topic, payload, qos, retain, properties), callback)

    def _send_publish(self, topic: str, payload, qos: int, retain: bool, properties,
                      callback: Optional[Callable]) -> None:
        info = self._client.publish(topic, payload, qos=qos, retain=retain, properties=properties)
        # paho keeps QoS>0 messages queued across a disconnect
        if not (info.rc == mqtt.MQTT_ERR_SUCCESS or (info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0)):
            if callback is not None:
                callback(TransportError(f"Publish failed: {mqtt.error_string(info.rc)}", reason_code=info.rc))
            return

        with self._lock:
            if info.mid not in self._early_pubacks:
                self._pending_publishes[info.mid] = callback
                return
            reason_code = self._early_pubacks.pop(info.mid)
        self._complete_publish(callback, reason_code)

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        with self._lock:
            if mid not in self._pending_publishes:
                self._early_pubacks[mid] = reason_code
                return
            callback = self._pending_publishes.pop(mid)
        self._complete_publish(callback, reason_code)

    @staticmethod
    def _complete_publish(callback: Optional[Callable], reason_code) -> None:
        if callback is None:
            return
        if getattr(reason_code, 'is_failure', False):
            callback(TransportError(f"Publish rejected: {reason_code}", reason_code=reason_code.value))
        else:
            callback(None)

    def _build_properties(self, packet_type, raw: Optional[dict], names: Dict[str, str]) -> Optional[Properties]:
        if not raw:
            return None
        if not self.is_v5:
            raise ValueError("Message properties require MQTT v5")

        properties = Properties(packet_type)
        for key, value in raw.items():
            name = names.get(key)
            if name is None:
                raise ValueError(f"Unsupported property: {key}")
            if name == 'UserProperty' and isinstance(value, dict):
                value = [
                    (str(user_key), str(item))
                    for user_key, user_value in value.items()
                    for item in (user_value if isinstance(user_value, (list, tuple)) else [user_value])
                ]
            setattr(properties, name, value)
        return properties

    def _dispatch(self, function: Callable, args: tuple, callback: Optional[Callable]) -> None:
        """Run an operation now, or queue it until the session is connected."""
        with self._lock:
            if self._closing:
                closed = True
            elif self._connected and not self._flushing:
                closed = False
            else:
                # the queue drains in order, so nothing may overtake it
                self._offline_queue.append((function, args, callback))
                return

        if closed:
            self._fail(function, callback, TransportError("Session is closed"))
        else:
            function(*args, callback)

    def _flush_offline_queue(self) -> None:
        while True:
            with self._lock:
                if not self._offline_queue or not self._connected:
                    self._flushing = False
                    return
                function, args, callback = self._offline_queue.pop(0)
            function(*args, callback)

    def _fail(self, function: Callable, callback: Optional[Callable], error: TransportError) -> None:
        if callback is None:
            return
        if function == self._send_subscribe:
            callback(error, [])
        else:
            callback(error)

    # Lifecycle

    def _on_connect(self, client, userdata, connect_flags, reason_code, properties):
        if reason_code.is_failure:
            self.logger.debug(f"Connection refused: {reason_code}")
            self._events.emit(
                TransportEvent.ERROR,
                TransportError(f"Connection refused: {reason_code}", reason_code=reason_code.value)
            )
            return

        with self._lock:
            reconnected = self._connected_once
            self._connected = True
            self._connected_once = True
            self._flushing = True
            resubscribe = []
            if (reconnected and self._options.resubscribe and self._subscriptions
                    and not connect_flags.session_present):
                resubscribe = list(self._subscriptions.items())

        if resubscribe:
            self.logger.debug(f"Resubscribing to {len(resubscribe)} topic(s)")
            self._send_subscribe(resubscribe, None, None)
        self._flush_offline_queue()

        self._events.emit(TransportEvent.CONNECTED)

    def _on_connect_fail(self, client, userdata):
        self._events.emit(TransportEvent.ERROR, TransportError("Connection attempt failed"))
        with self._lock:
            closing = self._closing
        if not closing:
            self._events.emit(TransportEvent.RECONNECTING)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        with self._lock:
            self._connected = False
            closing = self._closing

        self.logger.debug(f"Disconnected: {reason_code}")
        self._events.emit(TransportEvent.CLOSED)
        if not closing:
            self._events.emit(TransportEvent.RECONNECTING)

    def _on_message(self, client, userdata, message):
        self._events.emit(TransportEvent.MESSAGE, message.topic, message.payload, message)


class PahoTransport(Transport):
    """Opens PahoSessions."""

    def __init__(self, client_factory: Callable = mqtt.Client):
        self._client_factory = client_factory

    def open(self, options: TransportOptions,
             handlers: Optional[Mapping[TransportEvent, Callable]] = None) -> PahoSession:
        session = PahoSession(options, client_factory=self._client_factory)
        for event, handler in (handlers or {}).items():
            session.on(event, handler)
        session.start()
        return session
