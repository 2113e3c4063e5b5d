"""YAML Configuration loader for Lumentree MQTT"""

import os
import yaml
from typing import Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class GeneralConfig:
    """General application settings"""
    log_level: str = "INFO"
    log_file: str = ""
    window_size: int = 720  # Samples kept in memory (1 hour at 5s polling)


@dataclass
class DeviceConfig:
    """Target inverter"""
    device_id: str = ""


@dataclass
class BrokerConfig:
    """Lumentree cloud broker settings"""
    host: str = "lesvr.suntcn.com"
    port: int = 8083
    transport: str = "websockets"  # 'websockets' or 'tcp'
    ws_path: str = "/mqtt"
    use_tls: bool = False
    username: str = "appuser"
    password: str = "app666"
    keepalive: int = 20
    connect_timeout: float = 10.0
    client_id_format: str = "android-{device_id}-{timestamp}"
    subscribe_topic_format: str = "reportApp/{device_id}"
    publish_topic_format: str = "listenApp/{device_id}"
    qos: int = 1

    def subscribe_topic(self, device_id: str) -> str:
        return self.subscribe_topic_format.replace('{device_id}', device_id)

    def publish_topic(self, device_id: str) -> str:
        return self.publish_topic_format.replace('{device_id}', device_id)

    def client_id(self, device_id: str, timestamp: int) -> str:
        return (self.client_id_format
                .replace('{device_id}', device_id)
                .replace('{timestamp}', str(timestamp)))


@dataclass
class PollingConfig:
    """Read request settings"""
    interval: float = 5.0
    start_register: int = 0
    register_count: int = 95


@dataclass
class ReconnectConfig:
    """Optional automatic restart after a failed session"""
    enabled: bool = False
    delays: List[float] = field(default_factory=lambda: [5.0, 10.0, 30.0, 60.0])
    max_attempts: int = 0  # 0 = unlimited


@dataclass
class HistoryConfig:
    """Lumentree web API settings for daily history"""
    base_url: str = "http://lesvr.suntcn.com/lesvr"
    timeout: int = 10
    token_ttl: int = 600  # Seconds a shared-device token is reused


@dataclass
class RepublishConfig:
    """Local MQTT broker that decoded samples are republished to"""
    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    topic_prefix: str = "lumentree"
    retain: bool = True
    qos: int = 0
    publish_mode: str = "changed"  # 'changed' or 'all'


class ConfigLoader:
    """YAML configuration loader with singleton pattern"""

    _instance: Optional['ConfigLoader'] = None

    TRANSPORTS = ('websockets', 'tcp')
    PUBLISH_MODES = ('changed', 'all')

    def __init__(self, config_path: str = None):
        self.config: Dict = {}
        self.config_path: Optional[str] = None
        self.general: GeneralConfig = None
        self.device: DeviceConfig = None
        self.broker: BrokerConfig = None
        self.polling: PollingConfig = None
        self.reconnect: ReconnectConfig = None
        self.history: HistoryConfig = None
        self.republish: RepublishConfig = None
        self._load_config(config_path)

    @classmethod
    def get_instance(cls, config_path: str = None) -> 'ConfigLoader':
        """Get singleton instance"""
        if cls._instance is None:
            cls._instance = ConfigLoader(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (useful for testing)"""
        cls._instance = None

    def _load_config(self, config_path: str = None):
        """Load and parse YAML configuration"""
        paths = [
            config_path,
            os.environ.get('LUMENTREE_CONFIG'),
            '/app/config/lumentree_mqtt.yaml',
            'config/lumentree_mqtt.yaml',
            'lumentree_mqtt.yaml'
        ]

        for path in filter(None, paths):
            if os.path.exists(path):
                with open(path, 'r') as f:
                    self.config = yaml.safe_load(f) or {}
                self.config_path = path
                self._parse_config()
                return

        raise FileNotFoundError(
            "No configuration file found. Searched paths:\n" +
            "\n".join(f"  - {p}" for p in filter(None, paths))
        )

    def _parse_config(self):
        """Parse configuration into dataclasses"""
        gen = self.config.get('general') or {}
        self.general = GeneralConfig(
            log_level=gen.get('log_level', 'INFO'),
            log_file=gen.get('log_file') or '',
            window_size=int(gen.get('window_size', 720))
        )
        if self.general.window_size <= 0:
            raise ValueError("general.window_size must be positive")

        dev = self.config.get('device') or {}
        device_id = dev.get('device_id') or ''
        self.device = DeviceConfig(device_id=str(device_id).strip())

        br = self.config.get('broker') or {}
        self.broker = BrokerConfig(
            host=br.get('host', 'lesvr.suntcn.com'),
            port=int(br.get('port', 8083)),
            transport=br.get('transport', 'websockets'),
            ws_path=br.get('ws_path', '/mqtt'),
            use_tls=bool(br.get('use_tls', False)),
            username=br.get('username', 'appuser'),
            password=br.get('password', 'app666'),
            keepalive=int(br.get('keepalive', 20)),
            connect_timeout=float(br.get('connect_timeout', 10.0)),
            client_id_format=br.get('client_id_format', 'android-{device_id}-{timestamp}'),
            subscribe_topic_format=br.get('subscribe_topic_format', 'reportApp/{device_id}'),
            publish_topic_format=br.get('publish_topic_format', 'listenApp/{device_id}'),
            qos=int(br.get('qos', 1))
        )
        if self.broker.transport not in self.TRANSPORTS:
            raise ValueError(
                f"broker.transport must be one of {self.TRANSPORTS}, got '{self.broker.transport}'"
            )
        if self.broker.connect_timeout <= 0:
            raise ValueError("broker.connect_timeout must be positive")

        pl = self.config.get('polling') or {}
        self.polling = PollingConfig(
            interval=float(pl.get('interval', 5.0)),
            start_register=int(pl.get('start_register', 0)),
            register_count=int(pl.get('register_count', 95))
        )
        if self.polling.interval <= 0:
            raise ValueError("polling.interval must be positive")

        rc = self.config.get('reconnect') or {}
        delays = rc.get('delays', [5.0, 10.0, 30.0, 60.0])
        # Handle single number or list
        if isinstance(delays, (int, float)):
            delays = [delays]
        self.reconnect = ReconnectConfig(
            enabled=bool(rc.get('enabled', False)),
            delays=[float(d) for d in delays] or [5.0],
            max_attempts=int(rc.get('max_attempts', 0))
        )

        hi = self.config.get('history') or {}
        self.history = HistoryConfig(
            base_url=hi.get('base_url', 'http://lesvr.suntcn.com/lesvr').rstrip('/'),
            timeout=int(hi.get('timeout', 10)),
            token_ttl=int(hi.get('token_ttl', 600))
        )

        rp = self.config.get('republish') or {}
        self.republish = RepublishConfig(
            enabled=bool(rp.get('enabled', False)),
            broker=rp.get('broker', 'localhost'),
            port=int(rp.get('port', 1883)),
            username=rp.get('username', ''),
            password=rp.get('password', ''),
            topic_prefix=rp.get('topic_prefix', 'lumentree'),
            retain=bool(rp.get('retain', True)),
            qos=int(rp.get('qos', 0)),
            publish_mode=rp.get('publish_mode', 'changed')
        )
        if self.republish.publish_mode not in self.PUBLISH_MODES:
            raise ValueError(
                f"republish.publish_mode must be one of {self.PUBLISH_MODES}, "
                f"got '{self.republish.publish_mode}'"
            )


def get_config(config_path: str = None) -> ConfigLoader:
    """Get configuration singleton"""
    return ConfigLoader.get_instance(config_path)
