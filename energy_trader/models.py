"""Data models for the energy trader"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

SLOT_MINUTES = 15
SLOT = timedelta(minutes=SLOT_MINUTES)
SLOTS_PER_HOUR = 60 // SLOT_MINUTES


def to_float(value: Optional[Decimal]) -> Optional[float]:
    """Convert a decimal for external consumption (JSON, notifications)"""
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class PricePoint:
    """Price of one 15-minute slot, in currency per kWh"""
    timestamp: datetime
    value: Decimal

    @property
    def end(self) -> datetime:
        return self.timestamp + SLOT

    def covers(self, t: datetime) -> bool:
        return self.timestamp <= t < self.end


@dataclass(frozen=True)
class TimeWindow:
    """A contiguous run of price slots treated as one charge or discharge"""
    start: datetime
    end: datetime
    price: Decimal

    def contains(self, t: datetime) -> bool:
        return self.start <= t < self.end

    def __repr__(self):
        return f"{self.start:%H:%M}-{self.end:%H:%M} @ {self.price:.4f}"


@dataclass(frozen=True)
class TradeCycle:
    """A charge window paired with a later discharge window"""
    charge_window: TimeWindow
    discharge_window: TimeWindow
    profit: Decimal  # expected profit per kWh after efficiency loss

    def __repr__(self):
        return (f"Charge {self.charge_window!r} → Discharge {self.discharge_window!r} "
                f"| Profit: {self.profit:.4f}/kWh")


@dataclass(frozen=True)
class TradingPlan:
    """Daily trading plan. Replaced as a whole, never mutated."""
    date: Optional[date] = None
    cycles: Tuple[TradeCycle, ...] = ()
    min_price: Decimal = Decimal(0)
    max_price: Decimal = Decimal(0)
    spread: Decimal = Decimal(0)
    is_profitable: bool = False

    @property
    def charge_windows(self) -> List[TimeWindow]:
        return [c.charge_window for c in self.cycles]

    @property
    def discharge_windows(self) -> List[TimeWindow]:
        return [c.discharge_window for c in self.cycles]

    def is_in_charge_window(self, t: datetime) -> bool:
        return any(w.contains(t) for w in self.charge_windows)

    def is_in_discharge_window(self, t: datetime) -> bool:
        return any(w.contains(t) for w in self.discharge_windows)

    def should_trade(self) -> bool:
        return self.is_profitable and len(self.cycles) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat() if self.date else None,
            'min_price': to_float(self.min_price),
            'max_price': to_float(self.max_price),
            'spread': to_float(self.spread),
            'is_profitable': self.is_profitable,
            'cycles': [
                {
                    'charge_start': c.charge_window.start.isoformat(),
                    'charge_end': c.charge_window.end.isoformat(),
                    'charge_price': to_float(c.charge_window.price),
                    'discharge_start': c.discharge_window.start.isoformat(),
                    'discharge_end': c.discharge_window.end.isoformat(),
                    'discharge_price': to_float(c.discharge_window.price),
                    'profit_per_kwh': to_float(c.profit),
                }
                for c in self.cycles
            ],
        }


class TradeAction(str, Enum):
    CHARGE = 'charge'
    DISCHARGE = 'discharge'


@dataclass(frozen=True)
class Trade:
    """A completed charge or discharge session"""
    timestamp: datetime
    action: TradeAction
    price: Decimal        # per kWh
    power_w: int
    duration_s: int
    energy_kwh: Decimal
    start_soc: int
    end_soc: int

    @property
    def value(self) -> Decimal:
        """Cost of a charge or revenue of a discharge"""
        return self.price * self.energy_kwh

    def to_record(self) -> Dict[str, Any]:
        """Durable form: decimals are kept as strings so no precision is lost"""
        return {
            'timestamp': self.timestamp.isoformat(),
            'action': self.action.value,
            'price': str(self.price),
            'power_w': self.power_w,
            'duration_s': self.duration_s,
            'energy_kwh': str(self.energy_kwh),
            'start_soc': self.start_soc,
            'end_soc': self.end_soc,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Trade':
        return cls(
            timestamp=datetime.fromisoformat(record['timestamp']),
            action=TradeAction(record['action']),
            price=Decimal(str(record['price'])),
            power_w=int(record['power_w']),
            duration_s=int(record['duration_s']),
            energy_kwh=Decimal(str(record['energy_kwh'])),
            start_soc=int(record['start_soc']),
            end_soc=int(record['end_soc']),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_record()
        data['price'] = to_float(self.price)
        data['energy_kwh'] = to_float(self.energy_kwh)
        return data


@dataclass
class DailySummary:
    """Aggregates over one calendar day of trades"""
    date: str
    charged_kwh: Decimal = Decimal(0)
    discharged_kwh: Decimal = Decimal(0)
    charge_cycles: int = 0
    discharge_cycles: int = 0
    pnl: Decimal = Decimal(0)
    avg_charge_price: Decimal = Decimal(0)
    min_charge_price: Optional[Decimal] = None
    avg_discharge_price: Decimal = Decimal(0)
    max_discharge_price: Optional[Decimal] = None
    trades: List[Trade] = field(default_factory=list)

    @property
    def has_trades(self) -> bool:
        return bool(self.trades)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date,
            'charged_kwh': to_float(self.charged_kwh),
            'discharged_kwh': to_float(self.discharged_kwh),
            'charge_cycles': self.charge_cycles,
            'discharge_cycles': self.discharge_cycles,
            'pnl': to_float(self.pnl),
            'avg_charge_price': to_float(self.avg_charge_price),
            'min_charge_price': to_float(self.min_charge_price),
            'avg_discharge_price': to_float(self.avg_discharge_price),
            'max_discharge_price': to_float(self.max_discharge_price),
            'trades': [t.to_dict() for t in self.trades],
        }


@dataclass
class History:
    """Full trading history, newest day first"""
    days: List[DailySummary] = field(default_factory=list)
    total_pnl: Decimal = Decimal(0)
    first_trade: Optional[datetime] = None
    last_trade: Optional[datetime] = None

    @property
    def total_days(self) -> int:
        return len(self.days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'days': [d.to_dict() for d in self.days],
            'total_pnl': to_float(self.total_pnl),
            'total_days': self.total_days,
            'first_trade': self.first_trade.isoformat() if self.first_trade else None,
            'last_trade': self.last_trade.isoformat() if self.last_trade else None,
        }


@dataclass(frozen=True)
class DeviceInfo:
    device: str
    ip: str = ''


@dataclass(frozen=True)
class BatteryStatus:
    """Live battery telemetry used by the trading tick"""
    soc: int
    charge_permitted: bool
    discharge_permitted: bool


@dataclass(frozen=True)
class ESStatus:
    """Energy-system status, the secondary source for SOC"""
    battery_soc: int
    battery_power_w: float = 0.0
    battery_capacity_wh: float = 0.0


class TraderState(str, Enum):
    IDLE = 'idle'
    CHARGING = 'charging'
    DISCHARGING = 'discharging'


@dataclass
class CurrentStatus:
    state: TraderState
    battery_soc: Optional[int] = None
    current_price: Optional[Decimal] = None
    next_action: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'battery_soc': self.battery_soc,
            'current_price': to_float(self.current_price),
            'next_action': self.next_action,
        }


@dataclass
class StatusReport:
    current: CurrentStatus
    history: History

    def to_dict(self) -> Dict[str, Any]:
        return {'current': self.current.to_dict(), 'history': self.history.to_dict()}
