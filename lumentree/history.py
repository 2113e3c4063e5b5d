"""
Lumentree web API client for daily history.

Independent of the MQTT session: given a device and a day, returns the
5-minute series and daily totals that the vendor portal charts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Final, List, Optional

import aiohttp

from .config import HistoryConfig
from .errors import HistoryError, TokenError
from .logging_setup import LOGGER_NAME

_LOGGER = logging.getLogger(f"{LOGGER_NAME}.history")

URL_SERVER_TIME: Final = "getServerTime"
URL_SHARE_DEVICES: Final = "shareDevices"
URL_DEVICE: Final = "getDevice"
URL_PV_DAY: Final = "getPVDayData"
URL_BAT_DAY: Final = "getBatDayData"
URL_OTHER_DAY: Final = "getOtherDayData"

SLOT_MINUTES: Final = 5
SLOTS_PER_DAY: Final = 24 * 60 // SLOT_MINUTES

# Daily totals are reported in 0.1 kWh
TOTAL_SCALE: Final = 10.0

# Replies that mean the cached token is no longer accepted
TOKEN_REJECTED_STATUS: Final = (401, 403)


def interval_starts(day: date) -> List[datetime]:
    """Start time of every 5-minute slot of `day` (288 entries)."""
    midnight = datetime(day.year, day.month, day.day)
    return [midnight + timedelta(minutes=SLOT_MINUTES * i) for i in range(SLOTS_PER_DAY)]


def _pad_series(values: Optional[List[Any]]) -> List[float]:
    """Normalize a raw series to exactly SLOTS_PER_DAY numbers (missing -> 0)."""
    series = []
    for value in (values or [])[:SLOTS_PER_DAY]:
        try:
            series.append(float(value) if value is not None else 0.0)
        except (TypeError, ValueError):
            series.append(0.0)
    series.extend([0.0] * (SLOTS_PER_DAY - len(series)))
    return series


def _total_kwh(value: Any) -> float:
    """Convert a daily total in 0.1 kWh to kWh (missing or non-numeric -> 0)."""
    try:
        return float(value) / TOTAL_SCALE if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def split_battery_series(values: List[float]):
    """Split a signed battery series into (charge, discharge) magnitudes.

    Negative values are charging, positive values are discharging.
    """
    charge = [abs(v) if v < 0 else 0.0 for v in values]
    discharge = [v if v > 0 else 0.0 for v in values]
    return charge, discharge


@dataclass
class DailyHistory:
    """Daily aggregates of one device."""

    device_id: str
    day: date
    device_info: Dict[str, Any] = field(default_factory=dict)
    pv_total_kwh: float = 0.0
    battery_charge_kwh: float = 0.0
    battery_discharge_kwh: float = 0.0
    load_total_kwh: float = 0.0
    grid_total_kwh: float = 0.0
    series: Dict[str, List[float]] = field(default_factory=dict)

    def interval_starts(self) -> List[datetime]:
        return interval_starts(self.day)

    def totals(self) -> Dict[str, float]:
        return {
            'pv': self.pv_total_kwh,
            'battery_charge': self.battery_charge_kwh,
            'battery_discharge': self.battery_discharge_kwh,
            'load': self.load_total_kwh,
            'grid': self.grid_total_kwh,
        }


@dataclass
class _CachedToken:
    token: str
    expires: float


class HistoryClient:
    """
    Async client for the Lumentree web API.

    Tokens are obtained per device (server time + shareDevices) and reused
    until `token_ttl` seconds have passed.
    """

    def __init__(
        self,
        config: HistoryConfig,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize history client.

        Args:
            config: History API configuration
            session: Optional aiohttp ClientSession (created on demand otherwise)
            clock: Time source for token expiry
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._aio_session = session
        self._owns_session = session is None
        self._clock = clock
        self._tokens: Dict[str, _CachedToken] = {}

    async def __aenter__(self) -> "HistoryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._aio_session is not None:
            await self._aio_session.close()
            self._aio_session = None

    def _session(self) -> aiohttp.ClientSession:
        if self._aio_session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._aio_session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._aio_session

    async def _request_json(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON body."""
        url = f"{self.base_url}/{endpoint}"
        headers = {"Authorization": token} if token else {}
        session = self._session()
        request = session.post if method == "POST" else session.get
        try:
            async with request(url, params=params, data=data, headers=headers) as res:
                if not 200 <= res.status < 300:
                    raise HistoryError(endpoint, "request failed", status=res.status)
                return await res.json(content_type=None)
        except asyncio.TimeoutError:
            raise HistoryError(endpoint, f"request timed out at {url}")
        except aiohttp.ClientError as e:
            raise HistoryError(endpoint, f"connection failed: {e}")
        except ValueError:
            raise HistoryError(endpoint, "host returned a non-JSON reply")

    async def get_token(self, device_id: str) -> str:
        """
        Return an API token for a device, from cache when still valid.

        Raises:
            TokenError: the API did not return a token
            HistoryError: a request failed
        """
        cached = self._tokens.get(device_id)
        if cached and cached.expires > self._clock():
            _LOGGER.debug("Using cached token for device %s", device_id)
            return cached.token

        _LOGGER.info("Generating new token for device %s", device_id)
        time_res = await self._request_json(URL_SERVER_TIME)
        try:
            server_time = time_res["data"]["serverTime"]
        except (TypeError, KeyError):
            raise TokenError(URL_SERVER_TIME, "server time missing from reply")

        token_res = await self._request_json(
            URL_SHARE_DEVICES,
            method="POST",
            data={"deviceIds": device_id, "serverTime": str(server_time)},
        )
        try:
            token = token_res["data"]["token"]
        except (TypeError, KeyError):
            token = None
        if not token:
            raise TokenError(URL_SHARE_DEVICES, "token was not returned from API")

        self._tokens[device_id] = _CachedToken(token, self._clock() + self.config.token_ttl)
        return token

    def invalidate_token(self, device_id: str) -> None:
        self._tokens.pop(device_id, None)

    async def fetch_day(self, device_id: str, day: date) -> DailyHistory:
        """
        Fetch device info and the PV, battery, grid and load series of a day.

        Args:
            device_id: Inverter device identifier
            day: Day to query

        Returns:
            DailyHistory with totals in kWh and 288-slot series in W
        """
        token = await self.get_token(device_id)
        query = {"deviceId": device_id, "queryDate": day.isoformat()}

        _LOGGER.info("Fetching history for %s on %s", device_id, day.isoformat())
        try:
            device_res, pv_res, bat_res, other_res = await asyncio.gather(
                self._request_json(
                    URL_DEVICE,
                    method="POST",
                    data={"snName": device_id, "onlineStatus": "1"},
                    token=token,
                ),
                self._request_json(URL_PV_DAY, params=query, token=token),
                self._request_json(URL_BAT_DAY, params=query, token=token),
                self._request_json(URL_OTHER_DAY, params=query, token=token),
            )
        except HistoryError as e:
            if e.status in TOKEN_REJECTED_STATUS:
                _LOGGER.warning("Token for device %s rejected, discarding it", device_id)
                self.invalidate_token(device_id)
            raise

        return self.parse_day(device_id, day, device_res, pv_res, bat_res, other_res)

    @staticmethod
    def parse_day(
        device_id: str,
        day: date,
        device_res: Dict[str, Any],
        pv_res: Dict[str, Any],
        bat_res: Dict[str, Any],
        other_res: Dict[str, Any],
    ) -> DailyHistory:
        """Build a DailyHistory from the four raw API replies."""
        try:
            devices = device_res["data"]["devices"]
            pv = pv_res["data"]["pv"]
            bat = bat_res["data"]
            grid = other_res["data"]["grid"]
            load = other_res["data"]["homeload"]
            bats = bat["bats"]
            charge_total = bats[0]["tableValue"]
            discharge_total = bats[1]["tableValue"]
        except (TypeError, KeyError, IndexError) as e:
            raise HistoryError(URL_DEVICE, f"invalid history reply: missing {e}")
        if not all(isinstance(part, dict) for part in (pv, bat, grid, load)):
            raise HistoryError(URL_DEVICE, "invalid history reply: empty series")

        battery = _pad_series(bat.get("tableValueInfo"))
        charge, discharge = split_battery_series(battery)

        return DailyHistory(
            device_id=device_id,
            day=day,
            device_info=devices[0] if devices else {},
            pv_total_kwh=_total_kwh(pv.get("tableValue")),
            battery_charge_kwh=_total_kwh(charge_total),
            battery_discharge_kwh=_total_kwh(discharge_total),
            load_total_kwh=_total_kwh(load.get("tableValue")),
            grid_total_kwh=_total_kwh(grid.get("tableValue")),
            series={
                "pv": _pad_series(pv.get("tableValueInfo")),
                "battery_charge": charge,
                "battery_discharge": discharge,
                "load": _pad_series(load.get("tableValueInfo")),
                "grid": _pad_series(grid.get("tableValueInfo")),
            },
        )
