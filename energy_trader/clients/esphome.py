"""ESPHome battery client: REST calls against the device's entities"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from energy_trader.errors import DeviceError
from energy_trader.interfaces import BatteryController
from energy_trader.models import BatteryStatus, DeviceInfo, ESStatus

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10  # seconds
DEFAULT_MIN_SOC = 11

SENSOR_SOC = '/sensor/Battery State Of Charge'
SENSOR_REMAINING_CAPACITY = '/sensor/Battery Remaining Capacity'
SENSOR_BATTERY_POWER = '/sensor/Battery Power'
TEXT_DEVICE_NAME = '/text_sensor/Device Name'
TEXT_ESP_IP = '/text_sensor/Esp ip'
NUMBER_CHARGE_POWER = '/number/Forcible Charge Power'
NUMBER_DISCHARGE_POWER = '/number/Forcible Discharge Power'
SELECT_FORCE_MODE = '/select/Forcible Charge⁄Discharge'  # U+2044 fraction slash


class ESPHomeClient(BatteryController):
    """Handles all ESPHome battery interactions.

    ESPHome has no countdown for forced modes, so the timeout passed to
    charge/discharge is ignored; the engine's periodic refresh keeps the mode set.
    """

    def __init__(self, base_url: str, min_soc: int = DEFAULT_MIN_SOC,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip('/')
        self.min_soc = min_soc if min_soc > 0 else DEFAULT_MIN_SOC
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT))
        return self._session

    async def connect(self) -> None:
        # Stateless HTTP: reading the device name is the connectivity check
        try:
            await self._get_text(TEXT_DEVICE_NAME)
        except DeviceError as e:
            raise DeviceError(f"connect to ESPHome: {e}") from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(self, path: str) -> Dict[str, Any]:
        url = self.base_url + path
        try:
            async with self._get_session().get(url) as response:
                if response.status != 200:
                    body = await response.text()
                    raise DeviceError(f"GET {path}: status {response.status}: {body}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise DeviceError(f"GET {path}: {e}") from e

    async def _post(self, path: str, params: Dict[str, str]) -> None:
        url = self.base_url + path + '/set'
        try:
            async with self._get_session().post(url, params=params) as response:
                if response.status != 200:
                    body = await response.text()
                    raise DeviceError(f"POST {path}: status {response.status}: {body}")
        except aiohttp.ClientError as e:
            raise DeviceError(f"POST {path}: {e}") from e

    async def _get_float(self, path: str) -> float:
        data = await self._get_json(path)
        # Either field may carry the reading
        value = data.get('value') or data.get('state') or 0
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise DeviceError(f"GET {path}: not a number {value!r}") from e

    async def _get_text(self, path: str) -> str:
        data = await self._get_json(path)
        return str(data.get('value') or data.get('state') or '')

    async def discover(self) -> DeviceInfo:
        name = await self._get_text(TEXT_DEVICE_NAME)
        try:
            ip = await self._get_text(TEXT_ESP_IP)
        except DeviceError:
            ip = ''
        return DeviceInfo(device=name, ip=ip)

    async def get_battery_status(self) -> BatteryStatus:
        soc = int(await self._get_float(SENSOR_SOC))
        # No permission flags on ESPHome, so infer them from SOC
        return BatteryStatus(soc=soc, charge_permitted=soc < 100, discharge_permitted=soc > self.min_soc)

    async def get_es_status(self) -> ESStatus:
        soc = int(await self._get_float(SENSOR_SOC))
        try:
            power = await self._get_float(SENSOR_BATTERY_POWER)
        except DeviceError:
            power = 0.0
        try:
            capacity_kwh = await self._get_float(SENSOR_REMAINING_CAPACITY)
        except DeviceError:
            capacity_kwh = 0.0
        return ESStatus(battery_soc=soc, battery_power_w=power, battery_capacity_wh=capacity_kwh * 1000)

    async def charge(self, power_w: int, timeout_s: int) -> None:
        await self._post(NUMBER_CHARGE_POWER, {'value': str(power_w)})
        await self._post(SELECT_FORCE_MODE, {'option': 'charge'})

    async def discharge(self, power_w: int, timeout_s: int) -> None:
        await self._post(NUMBER_DISCHARGE_POWER, {'value': str(power_w)})
        await self._post(SELECT_FORCE_MODE, {'option': 'discharge'})

    async def set_passive_mode(self, power_w: int, timeout_s: int) -> None:
        if power_w < 0:
            await self.charge(-power_w, timeout_s)
        elif power_w > 0:
            await self.discharge(power_w, timeout_s)
        else:
            await self.idle()

    async def idle(self) -> None:
        await self._post(SELECT_FORCE_MODE, {'option': 'stop'})
