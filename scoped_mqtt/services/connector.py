"""
Connector: owns the connection parameters and the transport session, and
scopes every topic operation to the client's certificate identity.
"""
import dataclasses
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import EmptyIdentityError, InvalidTopicError, NotConnectedError
from ..models.connection import ConnectionParameters, ConnectorState, Scheme
from ..security.identity_store import IdentityStore
from ..transport.base import LIFECYCLE_EVENTS, EventHub, Session, Transport, TransportEvent, TransportOptions
from ..transport.paho_transport import PahoTransport
from .logging_service import ErrorTracker


TopicSpec = Union[str, List[str], Dict[str, Any]]

_EVENT_STATES = {
    TransportEvent.CONNECTED: ConnectorState.CONNECTED,
    TransportEvent.RECONNECTING: ConnectorState.RECONNECTING,
    TransportEvent.CLOSED: ConnectorState.CLOSED,
}


class Connector:
    """Identity-scoped MQTT connector.

    Every topic passed to subscribe() or publish() is rewritten to
    ``{identity}/{topic}``, where identity is the common name of the loaded
    client certificate.
    """

    def __init__(self,
                 identity_store: Optional[IdentityStore] = None,
                 transport: Optional[Transport] = None,
                 error_tracker: Optional[ErrorTracker] = None,
                 parameters: Optional[ConnectionParameters] = None,
                 reconnect_period: float = 2.0,
                 connect_timeout: float = 20.0,
                 resubscribe: bool = True,
                 client_id: Optional[str] = None,
                 keepalive: int = 60,
                 protocol_version: int = 5,
                 websocket_path: str = "/mqtt"):
        self.logger = logging.getLogger(__name__)
        self._identity_store = identity_store or IdentityStore()
        self._transport = transport or PahoTransport()
        self._error_tracker = error_tracker or ErrorTracker()
        self._parameters = parameters or ConnectionParameters()

        self.reconnect_period = reconnect_period
        self.connect_timeout = connect_timeout
        self.resubscribe = resubscribe
        self.client_id = client_id
        self.keepalive = keepalive
        self.protocol_version = protocol_version
        self.websocket_path = websocket_path

        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._state = ConnectorState.UNCONNECTED
        # bumped by connect() and close(); observers of older sessions go quiet
        self._generation = 0
        # lifecycle listeners and message handlers, kept across sessions
        self._listeners = EventHub()

    @classmethod
    def from_config(cls, config, identity_store: Optional[IdentityStore] = None,
                    transport: Optional[Transport] = None,
                    error_tracker: Optional[ErrorTracker] = None) -> "Connector":
        """Build a connector from a Config. Credentials are not loaded here."""
        return cls(
            identity_store=identity_store,
            transport=transport,
            error_tracker=error_tracker,
            parameters=ConnectionParameters(
                host=config.broker_host,
                port=config.broker_port,
                scheme=config.broker_scheme
            ),
            reconnect_period=config.reconnect_period_seconds,
            connect_timeout=config.connect_timeout_seconds,
            resubscribe=config.resubscribe,
            client_id=config.client_id,
            keepalive=config.keepalive_seconds,
            protocol_version=config.protocol_version,
            websocket_path=config.websocket_path
        )

    # Parameters

    @property
    def parameters(self) -> ConnectionParameters:
        return self._parameters

    @property
    def host(self) -> str:
        return self._parameters.host

    @property
    def port(self) -> int:
        return self._parameters.port

    @property
    def scheme(self) -> Scheme:
        return self._parameters.scheme

    def set_host(self, value: str) -> None:
        """Raises InvalidHostError for anything but a non-empty string."""
        self._parameters = dataclasses.replace(self._parameters, host=value)

    def set_port(self, value: int) -> None:
        """Raises InvalidPortError unless value is an integer in 1..65535."""
        self._parameters = dataclasses.replace(self._parameters, port=value)

    def set_scheme(self, value: Union[Scheme, str]) -> None:
        """Raises InvalidSchemeError listing the permitted schemes."""
        self._parameters = dataclasses.replace(self._parameters, scheme=value)

    # Accessors

    @property
    def identity_store(self) -> IdentityStore:
        return self._identity_store

    @property
    def identity(self) -> str:
        return self._identity_store.get_identity()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> ConnectorState:
        return self._state

    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.is_connected()

    def log_context(self) -> Dict[str, Optional[str]]:
        """Identity, broker and state attached to log records."""
        return {
            'identity': self._identity_store.get_identity() or None,
            'broker': self._parameters.url,
            'connector_state': self._state.value,
        }

    def on(self, event: Union[TransportEvent, str], handler: Callable) -> None:
        """Add a lifecycle listener; listeners survive reconnects and re-connects."""
        event = TransportEvent.parse(event)
        if event not in LIFECYCLE_EVENTS:
            raise ValueError("Use on_message() for incoming messages")
        self._listeners.on(event, handler)

    # Lifecycle

    def connect(self) -> None:
        """
        Open a session to the broker using the loaded credentials.

        Returns immediately; progress is reported through lifecycle events.

        Raises:
            CredentialsNotLoadedError: If the identity store has no credentials
        """
        credentials = self._identity_store.get_credentials()
        parameters = self._parameters
        options = TransportOptions(
            host=parameters.host,
            port=parameters.port,
            scheme=parameters.scheme,
            ca_cert=credentials.ca_cert,
            client_cert=credentials.client_cert,
            client_key=credentials.client_key,
            reconnect_period=self.reconnect_period,
            connect_timeout=self.connect_timeout,
            resubscribe=self.resubscribe,
            client_id=self.client_id,
            keepalive=self.keepalive,
            protocol_version=self.protocol_version,
            websocket_path=self.websocket_path
        )

        with self._lock:
            previous, self._session = self._session, None
            self._generation += 1
            generation = self._generation
            self._state = ConnectorState.CONNECTING
        if previous is not None:
            self.logger.info("Replacing existing MQTT session")
            previous.close()

        handlers = {event: self._observer(generation, event) for event in LIFECYCLE_EVENTS}
        handlers[TransportEvent.MESSAGE] = self._observer(generation, TransportEvent.MESSAGE)

        self.logger.info(f"Connecting to MQTT broker at {parameters.url} as '{self.identity}'")
        try:
            session = self._transport.open(options, handlers)
        except Exception:
            with self._lock:
                if self._generation == generation:
                    self._state = ConnectorState.CLOSED
            raise
        with self._lock:
            if self._generation == generation:
                self._session = session

    def close(self) -> None:
        """Close the session; pending operations are aborted."""
        with self._lock:
            session = self._session
        if session is None:
            return

        session.close()
        with self._lock:
            if self._session is session:
                self._session = None
                self._generation += 1
            self._state = ConnectorState.CLOSED

    def _observer(self, generation: int, event: TransportEvent) -> Callable:
        def observe(*args):
            self._handle_event(generation, event, *args)
        return observe

    def _handle_event(self, generation: int, event: TransportEvent, *args) -> None:
        with self._lock:
            # events from a replaced or closed session are stale
            if generation != self._generation:
                return
            state = _EVENT_STATES.get(event)
            if state is not None:
                self._state = state

        if event is TransportEvent.CONNECTED:
            self.logger.info("Connected to MQTT broker")
        elif event is TransportEvent.RECONNECTING:
            self.logger.info("Attempting to reconnect to MQTT broker...")
        elif event is TransportEvent.CLOSED:
            self.logger.info("MQTT connection closed.")
        elif event is TransportEvent.ERROR:
            error = args[0] if args else None
            if error is not None:
                self._error_tracker.track_error(error, {'broker': self._parameters.url})

        self._listeners.emit(event, *args)

    # Topic operations

    def subscribe(self, topic: TopicSpec, options: Optional[dict] = None,
                  callback: Optional[Callable] = None) -> TopicSpec:
        """
        Subscribe to one topic, a list of topics, or a mapping of topic to options.

        Args:
            topic: Topic(s) relative to the client's namespace
            options: Subscription options (qos, nl, rap, rh, properties)
            callback: Called with (error, granted, effective_topic)

        Returns:
            The effective, identity-prefixed topic(s) in the shape given
        """
        session, effective = self._derive(topic)

        def on_granted(error, granted):
            if error is not None:
                self.logger.error(f"Error subscribing to {effective}: {error}")
            if callback is not None:
                callback(error, granted, effective)

        session.subscribe(effective, options or {}, on_granted)
        return effective

    def publish(self, topic: str, message, options: Optional[dict] = None,
                callback: Optional[Callable] = None) -> str:
        """
        Publish a message to a topic in the client's namespace.

        Args:
            topic: Topic relative to the client's namespace
            message: str or bytes payload
            options: Publish options (qos, retain, dup, properties)
            callback: Called with (error) once QoS handling completes

        Returns:
            The effective, identity-prefixed topic
        """
        if not isinstance(topic, str):
            raise InvalidTopicError(topic)
        session, effective = self._derive(topic)

        def on_published(error):
            if error is not None:
                self._error_tracker.track_error(
                    error, {'operation': 'publish', 'topic': effective}
                )
            if callback is not None:
                callback(error)

        session.publish(effective, message, options or {}, on_published)
        return effective

    def on_message(self, callback: Callable) -> None:
        """
        Register callback(topic, payload, message) for every incoming message.

        The callback stays registered when connect() replaces the session.
        """
        self._require_session()
        self._listeners.on(TransportEvent.MESSAGE, callback)

    def _require_session(self) -> Session:
        session = self._session
        if session is None:
            raise NotConnectedError()
        return session

    def _derive(self, topic: TopicSpec):
        """Return the session and the topic(s) rewritten under one identity snapshot."""
        session = self._require_session()
        identity = self._identity_store.get_identity()
        if not identity:
            raise EmptyIdentityError()

        if isinstance(topic, str):
            return session, self._scope(identity, topic)
        if isinstance(topic, dict) and topic:
            return session, {self._scope(identity, name): options for name, options in topic.items()}
        if isinstance(topic, (list, tuple)) and topic:
            return session, [self._scope(identity, name) for name in topic]
        raise InvalidTopicError(topic)

    @staticmethod
    def _scope(identity: str, topic: str) -> str:
        if not isinstance(topic, str) or not topic:
            raise InvalidTopicError(topic)
        return f"{identity}/{topic}"
