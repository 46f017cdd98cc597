"""Marstek battery client: JSON-RPC over UDP"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional, Tuple

from energy_trader.errors import DeviceError
from energy_trader.interfaces import BatteryController
from energy_trader.models import BatteryStatus, DeviceInfo, ESStatus

logger = logging.getLogger(__name__)

MARSTEK_PORT = 30000  # the device only answers requests sent from this port
READ_TIMEOUT = 5.0


def parse_address(addr: str) -> Tuple[str, int]:
    host, sep, port = addr.rpartition(':')
    if not sep:
        return addr, MARSTEK_PORT
    return host, int(port)


class _RpcProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.packets: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.packets.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"marstek udp_error={exc}")


class MarstekClient(BatteryController):
    """Handles all Marstek local API interactions"""

    def __init__(self, addr: str, read_timeout: float = READ_TIMEOUT, local_port: int = MARSTEK_PORT):
        self.host, self.port = parse_address(addr)
        self.read_timeout = read_timeout
        self.local_port = local_port
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[_RpcProtocol] = None
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()  # one request in flight at a time

    async def connect(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            self._transport, self._protocol = await loop.create_datagram_endpoint(
                _RpcProtocol, local_addr=('0.0.0.0', self.local_port), allow_broadcast=True)
        except OSError as e:
            raise DeviceError(f"bind to port {self.local_port}: {e}") from e
        logger.info(f"Marstek client bound to port {self.local_port}, target {self.host}:{self.port}")

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Send one request and wait for the device response with the same id"""
        if self._transport is None:
            raise DeviceError("not connected")

        async with self._lock:
            request_id = next(self._ids)
            # Drop late answers to earlier requests
            while not self._protocol.packets.empty():
                self._protocol.packets.get_nowait()

            payload = json.dumps({'id': request_id, 'method': method, 'params': params}).encode()
            self._transport.sendto(payload, (self.host, self.port))
            logger.debug(f"marstek.call method={method} id={request_id}")

            try:
                return await asyncio.wait_for(self._read_response(request_id), self.read_timeout)
            except asyncio.TimeoutError:
                raise DeviceError(f"{method}: no response within {self.read_timeout:.0f}s")

    async def _read_response(self, request_id: int) -> Dict[str, Any]:
        while True:
            data = await self._protocol.packets.get()
            try:
                response = json.loads(data)
            except ValueError:
                continue
            if not isinstance(response, dict) or response.get('id') != request_id:
                continue
            # Broadcast echoes of our own request carry no src
            if not response.get('src'):
                continue
            error = response.get('error')
            if error:
                raise DeviceError(f"rpc error {error.get('code')}: {error.get('message')}")
            return response.get('result') or {}

    async def discover(self) -> DeviceInfo:
        result = await self.call('Marstek.GetDevice', {'ble_mac': '0'})
        return DeviceInfo(device=str(result.get('device', '')), ip=str(result.get('ip', '')))

    async def get_battery_status(self) -> BatteryStatus:
        result = await self.call('Bat.GetStatus', {'id': 0})
        try:
            soc = int(result['soc'])
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceError(f"invalid battery status {result!r}") from e
        # Some firmware omits charg_flag; below full it is always allowed
        charge_permitted = bool(result.get('charg_flag', False)) or soc < 100
        return BatteryStatus(
            soc=soc,
            charge_permitted=charge_permitted,
            discharge_permitted=bool(result.get('dischrg_flag', False)),
        )

    async def get_es_status(self) -> ESStatus:
        result = await self.call('ES.GetStatus', {'id': 0})
        try:
            return ESStatus(
                battery_soc=int(result['bat_soc']),
                battery_power_w=float(result.get('bat_power', 0) or 0),
                battery_capacity_wh=float(result.get('bat_cap', 0) or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceError(f"invalid ES status {result!r}") from e

    async def _set_mode(self, config: Dict[str, Any]) -> None:
        result = await self.call('ES.SetMode', {'id': 0, 'config': config})
        if not result.get('set_result'):
            raise DeviceError(f"set mode {config['mode']} failed")

    async def set_passive_mode(self, power_w: int, timeout_s: int) -> None:
        """Positive power discharges, negative charges. Reverts after timeout_s."""
        await self._set_mode({'mode': 'Passive', 'passive_cfg': {'power': power_w, 'cd_time': timeout_s}})

    async def charge(self, power_w: int, timeout_s: int) -> None:
        await self.set_passive_mode(-power_w, timeout_s)

    async def discharge(self, power_w: int, timeout_s: int) -> None:
        await self.set_passive_mode(power_w, timeout_s)

    async def idle(self) -> None:
        await self._set_mode({'mode': 'Auto', 'auto_cfg': {'enable': 1}})
