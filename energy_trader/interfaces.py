"""Capabilities the trading engine expects from its collaborators"""

from abc import ABC, abstractmethod
from typing import List

from energy_trader.models import BatteryStatus, DailySummary, DeviceInfo, ESStatus, PricePoint, TradingPlan


class PriceProvider(ABC):
    """Day-ahead price feed"""

    @abstractmethod
    async def fetch_today_prices(self) -> List[PricePoint]:
        ...

    @abstractmethod
    async def fetch_tomorrow_prices(self) -> List[PricePoint]:
        ...

    async def close(self) -> None:
        pass


class BatteryController(ABC):
    """Battery backend. Passive-mode power: positive discharges, negative charges, zero idles."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def discover(self) -> DeviceInfo:
        ...

    @abstractmethod
    async def get_battery_status(self) -> BatteryStatus:
        ...

    async def get_es_status(self) -> ESStatus:
        """Secondary status query used when the battery status is unavailable"""
        raise NotImplementedError

    @abstractmethod
    async def charge(self, power_w: int, timeout_s: int) -> None:
        ...

    @abstractmethod
    async def discharge(self, power_w: int, timeout_s: int) -> None:
        ...

    @abstractmethod
    async def set_passive_mode(self, power_w: int, timeout_s: int) -> None:
        ...

    @abstractmethod
    async def idle(self) -> None:
        ...


class Notifier(ABC):
    """Best-effort outbound events plus inbound command polling"""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        ...

    @abstractmethod
    async def send_startup(self, service_name: str) -> None:
        ...

    @abstractmethod
    async def send_trade_start(self, action: str, price: float, soc: int) -> None:
        ...

    @abstractmethod
    async def send_trade_end(self, action: str, energy_kwh: float, avg_price: float) -> None:
        ...

    @abstractmethod
    async def send_error(self, message: str) -> None:
        ...

    @abstractmethod
    async def send_trading_plan(self, day: str, plan: TradingPlan, slots_total: int, slots_analyzed: int) -> None:
        ...

    @abstractmethod
    async def send_daily_summary(self, summary: DailySummary, total_pnl: float) -> None:
        ...

    @abstractmethod
    async def send_status(self, status: dict) -> None:
        ...

    @abstractmethod
    async def poll_commands(self) -> List[str]:
        ...

    async def close(self) -> None:
        pass
