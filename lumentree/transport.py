"""paho-mqtt transport for the Lumentree cloud broker

Wraps one paho client per session generation and turns its callbacks
(which run on paho's network thread) into session events.
"""

import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .config import BrokerConfig
from .errors import TransportError
from .events import (
    Connected,
    MessageReceived,
    SessionEvent,
    Subscribed,
    TransportClosed,
    TransportFailed,
)
from .logging_setup import get_logger

EventSink = Callable[[SessionEvent], None]


class MQTTTransport:
    """
    MQTT connection to the Lumentree broker for one session generation.

    Features:
    - WebSocket or plain TCP transport, optional TLS
    - Fixed username/password credentials
    - Callbacks forwarded as generation-tagged events
    - Close is idempotent and silences the disconnect callback it causes
    """

    def __init__(self, config: BrokerConfig, device_id: str, generation: int,
                 sink: EventSink):
        """
        Initialize transport.

        Args:
            config: Broker configuration
            device_id: Inverter device identifier
            generation: Session generation this connection belongs to
            sink: Receives every event produced by the paho callbacks
        """
        self.config = config
        self.device_id = device_id
        self.generation = generation
        self.sink = sink
        self.log = get_logger()
        self.client: Optional[mqtt.Client] = None
        self.client_id = config.client_id(device_id, int(time.time() * 1000))
        self._closing = False
        self._subscribe_mid: Optional[int] = None

        # Stats
        self.messages_received = 0
        self.messages_published = 0

    def _setup_client(self):
        """Setup MQTT client with callbacks"""
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
            transport=self.config.transport
        )

        if self.config.transport == 'websockets':
            self.client.ws_set_options(path=self.config.ws_path)
        if self.config.use_tls:
            self.client.tls_set()
        if self.config.username:
            self.client.username_pw_set(self.config.username, self.config.password)

        self.client.connect_timeout = self.config.connect_timeout

        self.client.on_connect = self._on_connect
        self.client.on_connect_fail = self._on_connect_fail
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

    @property
    def broker_url(self) -> str:
        if self.config.transport == 'websockets':
            scheme = 'wss' if self.config.use_tls else 'ws'
            return f"{scheme}://{self.config.host}:{self.config.port}{self.config.ws_path}"
        scheme = 'mqtts' if self.config.use_tls else 'mqtt'
        return f"{scheme}://{self.config.host}:{self.config.port}"

    def open(self):
        """
        Start connecting in the background.

        Raises:
            TransportError: the connection could not be initiated
        """
        self._setup_client()
        self.log.info(f"Connecting to MQTT broker {self.broker_url} as {self.client_id}")
        try:
            self.client.connect_async(
                self.config.host,
                self.config.port,
                keepalive=self.config.keepalive
            )
            self.client.loop_start()
        except (OSError, ValueError) as e:
            raise TransportError(f"MQTT connect to {self.broker_url} failed: {e}") from e

    def subscribe(self, topic: str):
        """
        Subscribe to a topic; the acknowledgment arrives as a Subscribed event.

        Raises:
            TransportError: the subscribe request could not be sent
        """
        result, mid = self.client.subscribe(topic, qos=self.config.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"MQTT subscribe to {topic} failed: {mqtt.error_string(result)}")
        self._subscribe_mid = mid
        self.log.debug(f"Subscribe sent for {topic} (mid {mid})")

    def publish(self, topic: str, payload: bytes):
        """
        Publish raw bytes.

        Raises:
            TransportError: the message could not be queued
        """
        if self.client is None or self._closing:
            raise TransportError("MQTT publish on a closed transport")
        info = self.client.publish(topic, payload, qos=self.config.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")
        self.messages_published += 1

    def close(self):
        """Disconnect and stop the network loop"""
        if self._closing:
            return
        self._closing = True
        if not self.client:
            return
        try:
            self.client.disconnect()
            self.client.loop_stop()
        except Exception as e:
            self.log.debug(f"MQTT disconnect: {e}")
        self.log.info(f"MQTT connection to {self.broker_url} closed")

    def _emit(self, event: SessionEvent):
        if not self._closing:
            self.sink(event)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Handle connection established"""
        if reason_code == 0:
            self.log.info(f"MQTT connected to {self.broker_url}")
            self._emit(Connected(self.generation))
        else:
            self.log.error(f"MQTT connection refused: {reason_code}")
            self._emit(TransportFailed(
                self.generation,
                TransportError(f"MQTT connection refused: {reason_code}")
            ))

    def _on_connect_fail(self, client, userdata):
        """Handle a failed connection attempt (socket/DNS level)"""
        self.log.error(f"MQTT connection to {self.broker_url} failed")
        self._emit(TransportFailed(
            self.generation,
            TransportError(f"MQTT connection to {self.broker_url} failed")
        ))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        """Handle subscribe acknowledgment"""
        if self._subscribe_mid is not None and mid != self._subscribe_mid:
            return
        failed = [rc for rc in reason_code_list if rc.is_failure]
        if failed:
            self._emit(TransportFailed(
                self.generation,
                TransportError(f"MQTT subscription rejected: {failed[0]}")
            ))
        else:
            self._emit(Subscribed(self.generation))

    def _on_message(self, client, userdata, message):
        """Handle message on the report topic"""
        self.messages_received += 1
        self._emit(MessageReceived(self.generation, bytes(message.payload), message.topic))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Handle disconnection"""
        if self._closing:
            return
        self.log.warning(f"MQTT disconnected unexpectedly: {reason_code}")
        self._emit(TransportClosed(self.generation, str(reason_code)))


def transport_factory(config: BrokerConfig):
    """Return a factory building MQTTTransport instances for a session."""

    def create(device_id: str, generation: int, sink: EventSink) -> MQTTTransport:
        return MQTTTransport(config, device_id, generation, sink)

    return create
