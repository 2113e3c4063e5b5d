"""
Telemetry Window - in-memory rolling window of decoded samples
"""

import threading
import time
from collections import deque
from typing import Dict, List, Optional

from .logging_setup import get_logger
from .register_map import TelemetrySample

AVERAGED_FIELDS = (
    'pv_total_power',
    'grid_power',
    'battery_power',
    'load_power',
    'battery_percent',
    'device_temperature',
)


class TelemetryWindow:
    """
    Telemetry Window class - keeps the most recent samples of one device

    Features:
    - Bounded rolling window (oldest samples dropped first)
    - Cleared automatically when samples for another device arrive
    - Averages, min/max of the power fields over the window
    - Stale data detection
    """

    def __init__(self, max_samples: int = 720):
        if max_samples <= 0:
            raise ValueError(f"Window size must be positive, got {max_samples}")
        self.max_samples = max_samples
        self.device_id: str = ""
        self._samples = deque(maxlen=max_samples)
        self._lock = threading.Lock()
        self._last_update = 0.0
        self.log = get_logger()

        # Stats
        self.samples_added = 0
        self.resets = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def on_sample(self, sample: TelemetrySample, device_id: str):
        """Sample listener entry point"""
        with self._lock:
            if device_id != self.device_id:
                if self._samples:
                    self.log.info(f"Telemetry window reset: device {self.device_id} -> {device_id}")
                    self.resets += 1
                self._samples.clear()
                self.device_id = device_id
            self._samples.append(sample)
            self._last_update = time.time()
            self.samples_added += 1

    def append(self, sample: TelemetrySample):
        """Add a sample for the current device"""
        self.on_sample(sample, self.device_id)

    def clear(self):
        with self._lock:
            self._samples.clear()
            self._last_update = 0.0

    def latest(self) -> Optional[TelemetrySample]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def samples(self) -> List[TelemetrySample]:
        """Snapshot of the window, oldest first"""
        with self._lock:
            return list(self._samples)

    def averages(self) -> Dict[str, float]:
        """Mean of the power/battery/temperature fields over the window"""
        samples = self.samples()
        if not samples:
            return {}
        return {
            name: sum(getattr(s, name) for s in samples) / len(samples)
            for name in AVERAGED_FIELDS
        }

    def extremes(self, field_name: str) -> Optional[Dict[str, float]]:
        """Min/max of one numeric sample field over the window"""
        samples = self.samples()
        if not samples:
            return None
        values = [getattr(s, field_name) for s in samples]
        return {'min': min(values), 'max': max(values)}

    def is_stale(self, timeout: float) -> bool:
        """True if no sample arrived within `timeout` seconds"""
        with self._lock:
            if not self._last_update:
                return True
            return time.time() - self._last_update > timeout

    def get_stats(self) -> Dict:
        """Return window statistics"""
        with self._lock:
            return {
                'device_id': self.device_id,
                'size': len(self._samples),
                'max_samples': self.max_samples,
                'samples_added': self.samples_added,
                'resets': self.resets,
                'last_update': self._last_update
            }
