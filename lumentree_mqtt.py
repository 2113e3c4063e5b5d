#!/usr/bin/env python3
"""
Lumentree MQTT - Live telemetry client for Lumentree hybrid inverters

Connects to the Lumentree cloud MQTT broker, polls one inverter for its
register block every few seconds and logs the decoded telemetry.

Features:
- WebSocket MQTT session with connect timeout and clean teardown
- Modbus-RTU style read requests with CRC-16/MODBUS
- Rolling in-memory telemetry window with averages
- Optional republishing to a local MQTT broker
- Optional automatic reconnect with backoff
- Daily history lookup via the Lumentree web API
"""

import sys
import time
import signal
import asyncio
import argparse
from datetime import date

from lumentree import (
    __version__,
    setup_logging,
    get_config,
    Session,
    SessionState,
    transport_factory,
    ReconnectSupervisor,
    TelemetryWindow,
    ConsoleDisplay,
    SampleRepublisher,
    HistoryClient,
    HistoryError,
)

STATS_INTERVAL = 60.0


class LumentreeMQTT:
    """Main application class"""

    def __init__(self, config_path: str = None, device_id: str = None,
                 reconnect: bool = None):
        """
        Initialize application.

        Args:
            config_path: Optional path to configuration file
            device_id: Device to poll, overrides device.device_id
            reconnect: Force automatic reconnect on/off, overrides reconnect.enabled
        """
        self.running = False
        self.config = get_config(config_path)
        self.device_id = (device_id or self.config.device.device_id or "").strip()

        self.log = setup_logging(
            log_level=self.config.general.log_level,
            log_file=self.config.general.log_file
        )

        self.reconnect_enabled = (
            self.config.reconnect.enabled if reconnect is None else reconnect
        )

        # Initialize components
        self.session = None
        self.window = None
        self.display = None
        self.republisher = None
        self.supervisor = None

        # Setup signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.log.info("Shutdown signal received")
        self.running = False

    def _init_session(self):
        """Create the session and attach listeners"""
        self.session = Session(
            self.config.broker,
            self.config.polling,
            transport_factory(self.config.broker)
        )

        self.window = TelemetryWindow(self.config.general.window_size)
        self.display = ConsoleDisplay()
        self.session.add_sample_listener(self.window.on_sample)
        self.session.add_sample_listener(self.display.on_sample)
        self.session.add_state_listener(self.display.on_state)

        if self.reconnect_enabled:
            self.supervisor = ReconnectSupervisor(
                self.session,
                self.config.reconnect.delays,
                self.config.reconnect.max_attempts
            )
            self.supervisor.start()

    def _init_republisher(self) -> bool:
        """
        Initialize local MQTT republisher

        Returns:
            False if republishing is enabled but the local broker did not
            answer in time. The client keeps retrying in the background.
        """
        if not self.config.republish.enabled:
            self.log.info("Republishing disabled")
            return True

        self.republisher = SampleRepublisher(self.config.republish)
        self.session.add_sample_listener(self.republisher.on_sample)
        self.session.add_state_listener(self.republisher.on_state)
        return self.republisher.connect()

    def start(self):
        """Start the application"""
        self.log.info("=" * 60)
        self.log.info(f"Lumentree MQTT v{__version__}")
        self.log.info("=" * 60)

        if not self.device_id:
            self.log.error("No device configured (set device.device_id or use --device)")
            sys.exit(1)

        self.log.info(f"Device: {self.device_id}")
        self.log.info(f"Broker: {self.config.broker.host}:{self.config.broker.port} "
                      f"({self.config.broker.transport})")
        self.log.info(f"Poll interval: {self.config.polling.interval}s, registers "
                      f"{self.config.polling.start_register}+{self.config.polling.register_count}")

        self._init_session()
        if not self._init_republisher():
            self.log.warning(
                f"Local MQTT broker {self.config.republish.broker}:{self.config.republish.port} "
                f"not reachable yet, republishing starts once it connects"
            )

        self.session.start(self.device_id)
        if not self.session.wait_for_state(SessionState.POLLING, SessionState.FAILED,
                                           timeout=self.config.broker.connect_timeout):
            self.log.warning(f"Session for {self.device_id} still {self.session.state.value}")

        self.running = True
        self._main_loop()

    def _main_loop(self):
        """Keep the app running and log periodic statistics"""
        self.log.info("Press Ctrl+C to stop")
        last_stats = time.time()
        stale_after = self.config.polling.interval * 3

        while self.running:
            try:
                time.sleep(1)
            except KeyboardInterrupt:
                break

            if time.time() - last_stats < STATS_INTERVAL:
                continue
            last_stats = time.time()
            self._log_status(stale_after)

        self._shutdown()

    def _log_status(self, stale_after: float):
        """Log device status and window averages"""
        self.log.info(self.display.describe_device(self.device_id))

        if self.session.state == SessionState.POLLING and self.window.is_stale(stale_after):
            self.log.warning(f"No data from {self.device_id} for more than {stale_after:.0f}s")

        averages = self.window.averages()
        if not averages:
            return
        pv = self.window.extremes('pv_total_power')
        load = self.window.extremes('load_power')
        self.log.info(
            f"Window ({len(self.window)} samples): "
            f"PV {averages['pv_total_power']:.0f}W (max {pv['max']}W), "
            f"Load {averages['load_power']:.0f}W (max {load['max']}W), "
            f"Grid {averages['grid_power']:.0f}W, "
            f"Battery {averages['battery_power']:.0f}W"
        )

    def _shutdown(self):
        """Clean shutdown"""
        self.log.info("Shutting down...")

        if self.supervisor:
            self.supervisor.stop()

        if self.session:
            self.session.stop()

        if self.republisher:
            self.republisher.disconnect()

        # Log stats
        if self.session:
            stats = self.session.get_stats()
            self.log.info(
                f"Session stats: {stats['requests_published']} requests, "
                f"{stats['samples_decoded']} samples, "
                f"{stats['decode_errors']} decode errors"
            )

        if self.window:
            stats = self.window.get_stats()
            self.log.info(f"Window stats: {stats['size']} samples held, {stats['resets']} resets")

        if self.supervisor:
            stats = self.supervisor.get_stats()
            self.log.info(f"Reconnect stats: {stats['total_retries']} retries")

        if self.republisher:
            stats = self.republisher.get_stats()
            self.log.info(
                f"Republish stats: {stats['messages_published']} published, "
                f"{stats['messages_skipped']} skipped"
            )

        self.log.info("Shutdown complete")

    def show_history(self, day: date) -> bool:
        """
        Fetch and log the daily history of the configured device.

        Returns:
            True if the history was retrieved
        """
        if not self.device_id:
            self.log.error("No device configured (set device.device_id or use --device)")
            return False

        try:
            history = asyncio.run(self._fetch_history(day))
        except HistoryError as e:
            self.log.error(f"History request failed: {e}")
            return False

        self.log.info(f"History for {self.device_id} on {day.isoformat()}")
        for name, value in history.totals().items():
            self.log.info(f"  {name}: {value:.1f} kWh")
        if history.device_info:
            self.log.info(f"  device: {history.device_info}")
        return True

    async def _fetch_history(self, day: date):
        async with HistoryClient(self.config.history) as client:
            return await client.fetch_day(self.device_id, day)


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Lumentree MQTT - Live telemetry from Lumentree inverters"
    )
    parser.add_argument(
        '-c', '--config',
        help='Path to configuration file',
        default=None
    )
    parser.add_argument(
        '-d', '--device',
        help='Device ID to poll (overrides the configuration)',
        default=None
    )
    parser.add_argument(
        '--history',
        nargs='?',
        const=date.today(),
        type=_parse_day,
        metavar='YYYY-MM-DD',
        help='Print the daily history (default: today) and exit'
    )
    parser.add_argument(
        '--reconnect',
        action='store_true',
        default=None,
        help='Restart the session automatically after a failure'
    )
    parser.add_argument(
        '-v', '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    args = parser.parse_args()

    app = LumentreeMQTT(args.config, device_id=args.device, reconnect=args.reconnect)
    if args.history is not None:
        sys.exit(0 if app.show_history(args.history) else 1)
    app.start()


if __name__ == "__main__":
    main()
