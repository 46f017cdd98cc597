"""Shared fakes and fixtures for the energy trader tests"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest

from energy_trader.config import DEFAULTS, Config
from energy_trader.engine import TradingEngine
from energy_trader.errors import DeviceError, PriceFetchError
from energy_trader.interfaces import BatteryController, Notifier, PriceProvider
from energy_trader.models import SLOT, BatteryStatus, DeviceInfo, ESStatus, PricePoint
from energy_trader.trade_ledger import TradeLedger

START = datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)

# One-slot windows: 0.5 kWh * (1 - 0.11) at 2000 W fits in a single 15-minute slot
ENGINE_CONFIG = {
    'timezone': 'UTC',
    'battery_backend': 'esphome',
    'battery_capacity_kwh': 0.5,
    'battery_min_soc': 0.11,
    'charge_power_w': 2000,
    'discharge_power_w': 2000,
    'battery_efficiency': 0.90,
    'min_price_spread': 0.05,
    'passive_mode_timeout_s': 300,
    'error_notify_cooldown_s': 900,
}


def make_prices(values, start: datetime = START) -> List[PricePoint]:
    return [PricePoint(start + i * SLOT, Decimal(str(v))) for i, v in enumerate(values)]


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int = 0, day: Optional[int] = None) -> None:
        self.now = self.now.replace(hour=hour, minute=minute, day=day or self.now.day)

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeBattery(BatteryController):
    def __init__(self, soc: int = 50):
        self.soc = soc
        self.charge_permitted = True
        self.discharge_permitted = True
        self.status_error: Optional[Exception] = None
        self.es_soc: Optional[int] = None
        self.command_error: Optional[Exception] = None
        self.commands = []
        self.status_calls = 0

    async def connect(self):
        self.commands.append(('connect',))

    async def close(self):
        pass

    async def discover(self):
        return DeviceInfo(device='FakeBattery', ip='127.0.0.1')

    async def get_battery_status(self):
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return BatteryStatus(self.soc, self.charge_permitted, self.discharge_permitted)

    async def get_es_status(self):
        if self.es_soc is None:
            raise DeviceError("ES status unavailable")
        return ESStatus(battery_soc=self.es_soc)

    async def _command(self, *command):
        if self.command_error is not None:
            raise self.command_error
        self.commands.append(command)

    async def charge(self, power_w, timeout_s):
        await self._command('charge', power_w, timeout_s)

    async def discharge(self, power_w, timeout_s):
        await self._command('discharge', power_w, timeout_s)

    async def set_passive_mode(self, power_w, timeout_s):
        await self._command('passive', power_w, timeout_s)

    async def idle(self):
        await self._command('idle')


class FakePriceProvider(PriceProvider):
    def __init__(self, today=None, tomorrow=None):
        self.today = today or []
        self.tomorrow = tomorrow or []
        self.today_calls = 0
        self.tomorrow_calls = 0

    async def fetch_today_prices(self):
        self.today_calls += 1
        if not self.today:
            raise PriceFetchError("no prices")
        return list(self.today)

    async def fetch_tomorrow_prices(self):
        self.tomorrow_calls += 1
        if not self.tomorrow:
            raise PriceFetchError("not published yet")
        return list(self.tomorrow)


class FakeNotifier(Notifier):
    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self.sent = []
        self.commands: List[str] = []

    @property
    def enabled(self):
        return self._enabled

    def kinds(self, kind: str):
        return [args for k, *args in self.sent if k == kind]

    async def send_startup(self, service_name):
        self.sent.append(('startup', service_name))

    async def send_trade_start(self, action, price, soc):
        self.sent.append(('trade_start', action, price, soc))

    async def send_trade_end(self, action, energy_kwh, avg_price):
        self.sent.append(('trade_end', action, energy_kwh, avg_price))

    async def send_error(self, message):
        self.sent.append(('error', message))

    async def send_trading_plan(self, day, plan, slots_total, slots_analyzed):
        self.sent.append(('plan', day, plan, slots_total, slots_analyzed))

    async def send_daily_summary(self, summary, total_pnl):
        self.sent.append(('daily_summary', summary, total_pnl))

    async def send_status(self, status):
        self.sent.append(('status', status))

    async def poll_commands(self):
        commands, self.commands = self.commands, []
        return commands


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the caller's environment from overriding test configuration"""
    for key in DEFAULTS:
        monkeypatch.delenv(key.upper(), raising=False)


@pytest.fixture
def config(tmp_path):
    return Config(data=dict(ENGINE_CONFIG, data_dir=str(tmp_path)))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def battery():
    return FakeBattery()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def provider():
    return FakePriceProvider(today=make_prices([0.05, 0.15, 0.25, 0.10]))


@pytest.fixture
def ledger(config):
    return TradeLedger(config['data_dir'], config.location)


@pytest.fixture
def engine(config, provider, battery, notifier, ledger, clock):
    return TradingEngine(config, provider, battery, notifier, ledger, now_func=clock)
