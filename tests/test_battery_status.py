"""
Tests for battery status resolution
Run with: pytest tests/test_battery_status.py -v
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from energy_trader.battery_status import OutcomeKind, resolve_status
from energy_trader.errors import DeviceError
from energy_trader.models import BatteryStatus, ESStatus

from conftest import FakeBattery


@pytest.mark.asyncio
class TestResolveStatus:
    """Primary query with one retry, then the secondary query"""

    async def test_success(self):
        outcome = await resolve_status(FakeBattery(soc=64), timeout=1)
        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.status == BatteryStatus(64, True, True)

    async def test_retry_once(self):
        battery = FakeBattery()
        battery.get_battery_status = AsyncMock(side_effect=[DeviceError("lost packet"),
                                                             BatteryStatus(70, True, False)])
        outcome = await resolve_status(battery, timeout=1)
        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.status.soc == 70
        assert battery.get_battery_status.await_count == 2

    async def test_degraded_from_es_status(self):
        """Permissions are assumed when only the secondary query answers"""
        battery = FakeBattery()
        battery.status_error = DeviceError("unreachable")
        battery.discharge_permitted = False
        battery.es_soc = 33
        outcome = await resolve_status(battery, timeout=1)
        assert outcome.kind == OutcomeKind.DEGRADED
        assert outcome.status == BatteryStatus(33, True, True)
        assert battery.status_calls == 2

    async def test_failure_carries_primary_error(self):
        battery = FakeBattery()
        primary = DeviceError("unreachable")
        battery.status_error = primary
        outcome = await resolve_status(battery, timeout=1)
        assert outcome.kind == OutcomeKind.FAILURE
        assert not outcome.ok
        assert outcome.error is primary

    async def test_no_secondary_query(self):
        """Controllers without ES status resolve straight to failure"""
        battery = FakeBattery()
        battery.status_error = DeviceError("unreachable")
        battery.get_es_status = AsyncMock(side_effect=NotImplementedError)
        outcome = await resolve_status(battery, timeout=1)
        assert outcome.kind == OutcomeKind.FAILURE

    async def test_timeout_counts_as_failure(self):
        battery = FakeBattery()

        async def hang():
            await asyncio.sleep(10)
        battery.get_battery_status = hang
        battery.get_es_status = AsyncMock(return_value=ESStatus(battery_soc=55))
        outcome = await resolve_status(battery, timeout=0.01)
        assert outcome.kind == OutcomeKind.DEGRADED
        assert isinstance(outcome.error, DeviceError)
