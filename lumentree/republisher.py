"""Republishes decoded telemetry to a local MQTT broker

Topic layout under the configured prefix:

    {prefix}/status                      online / offline (retained, last will)
    {prefix}/{device_id}/{group}/{name}  one value per sample field
    {prefix}/{device_id}/sample          full sample as JSON (not retained)
    {prefix}/{device_id}/state           session state
"""

import json
import threading
from typing import Any, Dict, Optional, Tuple

import paho.mqtt.client as mqtt

from .config import RepublishConfig
from .logging_setup import get_logger
from .register_map import TelemetrySample
from .session import SessionState

CONNECT_WAIT = 1.0

# Sample field -> topic suffix below {prefix}/{device_id}/
SAMPLE_TOPICS = {
    'pv1_power': 'pv/pv1_power',
    'pv1_voltage': 'pv/pv1_voltage',
    'pv2_power': 'pv/pv2_power',
    'pv2_voltage': 'pv/pv2_voltage',
    'pv_total_power': 'pv/power',
    'grid_power': 'grid/power',
    'grid_voltage': 'grid/voltage',
    'battery_power': 'battery/power',
    'battery_magnitude': 'battery/power_abs',
    'battery_percent': 'battery/soc',
    'battery_voltage': 'battery/voltage',
    'load_power': 'load/power',
    'device_temperature': 'device/temperature',
}


def format_payload(value: Any) -> str:
    """Render a value as an MQTT payload (JSON for containers, 3 decimals for floats)."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, float):
        return str(round(value, 3))
    return str(value)


class SampleRepublisher:
    """
    Sample and state listener that mirrors telemetry onto a local broker.

    In 'changed' mode a field is only sent when its value differs from the
    last one sent for the same device; 'all' sends every field every time.
    """

    def __init__(self, config: RepublishConfig):
        """
        Initialize republisher.

        Args:
            config: Republish configuration
        """
        self.config = config
        self.publish_mode = config.publish_mode
        self.log = get_logger()
        self.client: Optional[mqtt.Client] = None
        self._online = threading.Event()
        self._sent: Dict[Tuple[str, str], Any] = {}
        self._sent_lock = threading.Lock()

        # Stats
        self.messages_published = 0
        self.messages_skipped = 0
        self.connection_count = 0

        if config.enabled:
            self.client = self._create_client()

    @property
    def connected(self) -> bool:
        return self._online.is_set()

    @connected.setter
    def connected(self, value: bool):
        if value:
            self._online.set()
        else:
            self._online.clear()

    @property
    def status_topic(self) -> str:
        return f"{self.config.topic_prefix}/status"

    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        client.will_set(self.status_topic, "offline", qos=self.config.qos, retain=True)
        client.reconnect_delay_set(min_delay=1, max_delay=60)
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        return client

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            self.connected = False
            self.log.error(f"Republish broker refused connection: {reason_code}")
            return
        self.connection_count += 1
        self.connected = True
        self.log.info(f"Republishing to {self.config.broker}:{self.config.port} "
                      f"under '{self.config.topic_prefix}'")
        client.publish(self.status_topic, "online", qos=self.config.qos, retain=True)

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.connected = False
        if reason_code != 0:
            self.log.warning(f"Republish broker connection lost: {reason_code}")

    def connect(self, wait: float = CONNECT_WAIT) -> bool:
        """
        Connect to the local broker and wait up to `wait` seconds for the ack.

        Returns:
            True once connected
        """
        if self.client is None:
            self.log.info("Republishing disabled")
            return False

        try:
            self.client.connect_async(self.config.broker, self.config.port, keepalive=60)
            self.client.loop_start()
        except (OSError, ValueError) as e:
            self.log.error(f"Republish broker {self.config.broker}:{self.config.port} "
                           f"unreachable: {e}")
            return False

        return self._online.wait(wait)

    def disconnect(self):
        """Mark offline and stop the network loop"""
        if self.client is not None:
            if self.connected:
                self.client.publish(self.status_topic, "offline", qos=self.config.qos, retain=True)
            self.client.disconnect()
            self.client.loop_stop()
        self.connected = False
        self.log.info("Republish broker disconnected")

    def topic(self, device_id: str, suffix: str = "") -> str:
        """'{prefix}/{device_id}' or '{prefix}/{device_id}/{suffix}'"""
        base = f"{self.config.topic_prefix}/{device_id}"
        return f"{base}/{suffix}" if suffix else base

    def _changed(self, device_id: str, suffix: str, value: Any) -> bool:
        key = (device_id, suffix)
        with self._sent_lock:
            if key in self._sent and self._sent[key] == value:
                return False
            self._sent[key] = value
            return True

    def publish(self, topic: str, value: Any, retain: bool = None) -> bool:
        """
        Send one value.

        Args:
            topic: Full MQTT topic
            value: Payload value, see format_payload()
            retain: Defaults to the configured retain flag

        Returns:
            True if the message was queued
        """
        if not self.connected:
            return False

        info = self.client.publish(
            topic,
            format_payload(value),
            qos=self.config.qos,
            retain=self.config.retain if retain is None else retain
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.log.warning(f"Republish to {topic} failed: {mqtt.error_string(info.rc)}")
            return False
        self.messages_published += 1
        return True

    def publish_field(self, device_id: str, suffix: str, value: Any) -> bool:
        """Send a device field, subject to the publish mode."""
        if self.publish_mode == 'changed' and not self._changed(device_id, suffix, value):
            self.messages_skipped += 1
            return False
        return self.publish(self.topic(device_id, suffix), value)

    def on_sample(self, sample: TelemetrySample, device_id: str):
        """Sample listener"""
        if not self.connected:
            return

        for name, suffix in SAMPLE_TOPICS.items():
            self.publish_field(device_id, suffix, getattr(sample, name))
        self.publish_field(device_id, 'battery/direction', sample.battery_direction.value)

        self.publish(self.topic(device_id, 'sample'), sample.to_dict(), retain=False)

    def publish_state(self, device_id: str, state: SessionState, error: Optional[Exception] = None):
        """State listener body: session state plus the error that caused FAILED"""
        self.publish(self.topic(device_id, 'state'), state.value)
        if error is not None:
            self.publish(self.topic(device_id, 'last_error'), str(error))

    def on_state(self, state: SessionState, error: Optional[Exception], device_id: str):
        """State listener. A stopped device has all its fields resent on its next start."""
        self.publish_state(device_id, state, error)
        if state == SessionState.DISCONNECTED:
            self.forget(device_id)

    def forget(self, device_id: str = None):
        """Drop remembered values (all devices if none given) so they are resent."""
        with self._sent_lock:
            if device_id is None:
                self._sent.clear()
            else:
                for key in [k for k in self._sent if k[0] == device_id]:
                    del self._sent[key]

    def get_stats(self) -> Dict:
        """Return republisher statistics"""
        return {
            'enabled': self.config.enabled,
            'connected': self.connected,
            'broker': self.config.broker,
            'port': self.config.port,
            'publish_mode': self.publish_mode,
            'messages_published': self.messages_published,
            'messages_skipped': self.messages_skipped,
            'connection_count': self.connection_count
        }
