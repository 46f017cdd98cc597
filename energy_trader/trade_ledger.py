"""Append-only trade log with crash-safe persistence and P&L aggregation"""

import json
import logging
import os
import tempfile
import threading
from collections import defaultdict
from datetime import datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union

from energy_trader.errors import PersistenceError
from energy_trader.models import DailySummary, History, Trade, TradeAction

logger = logging.getLogger(__name__)

TRADES_FILE = 'trades.json'
MONEY_QUANTUM = Decimal('0.0001')
PRICE_QUANTUM = Decimal('0.00001')
ENERGY_QUANTUM = Decimal('0.001')


class TradeLedger:
    """Records completed trades and derives daily and cumulative P&L.

    Every append rewrites the full list to a temporary file in the data
    directory and then atomically replaces trades.json, so a crash at any
    point leaves either the previous or the new file on disk.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]], tz: tzinfo):
        self.data_dir = Path(data_dir) if data_dir else None
        self.tz = tz
        self._lock = threading.Lock()
        self._trades: List[Trade] = []
        self.is_stale = False  # in-memory trades not yet durable

    @property
    def path(self) -> Optional[Path]:
        return self.data_dir / TRADES_FILE if self.data_dir else None

    @property
    def trades(self) -> List[Trade]:
        with self._lock:
            return list(self._trades)

    def load(self) -> int:
        """Load trades from disk. A missing file means an empty ledger."""
        if self.path is None or not self.path.exists():
            return 0
        with self._lock:
            try:
                with open(self.path, 'r') as f:
                    records = json.load(f)
                self._trades = [Trade.from_record(r) for r in records]
            except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
                raise PersistenceError(f"Failed to load trades from {self.path}: {e}") from e
            logger.info(f"📒 Loaded {len(self._trades)} trades from {self.path}")
            return len(self._trades)

    def record_trade(self, trade: Trade) -> None:
        """Append a trade and persist the full list.

        The trade is kept in memory even if the write fails; PersistenceError
        is raised and the ledger stays stale until the next successful write.
        """
        with self._lock:
            self._trades.append(trade)
            try:
                self._save()
            except OSError as e:
                self.is_stale = True
                raise PersistenceError(f"Failed to save trades: {e}") from e
            self.is_stale = False
        logger.debug(f"ledger.record_trade action={trade.action.value} price={trade.price} "
                     f"energy_kwh={trade.energy_kwh} total={len(self._trades)}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([t.to_record() for t in self._trades], indent=2)

        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix='.trades.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        # Make the rename itself survive a power loss
        dir_fd = os.open(self.data_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def last_charge_trade(self) -> Optional[Trade]:
        with self._lock:
            for trade in reversed(self._trades):
                if trade.action == TradeAction.CHARGE:
                    return trade
        return None

    def day_key(self, trade: Trade) -> str:
        return trade.timestamp.astimezone(self.tz).date().isoformat()

    def total_pnl(self) -> Decimal:
        """Cumulative P&L summed from raw per-trade figures"""
        with self._lock:
            trades = list(self._trades)
        return self._raw_pnl(trades).quantize(MONEY_QUANTUM)

    @staticmethod
    def _raw_pnl(trades: List[Trade]) -> Decimal:
        revenue = sum((t.value for t in trades if t.action == TradeAction.DISCHARGE), Decimal(0))
        cost = sum((t.value for t in trades if t.action == TradeAction.CHARGE), Decimal(0))
        return revenue - cost

    def get_history(self) -> History:
        with self._lock:
            trades = list(self._trades)
        if not trades:
            return History()

        by_day: Dict[str, List[Trade]] = defaultdict(list)
        for trade in trades:
            by_day[self.day_key(trade)].append(trade)

        days = [self.summarize_day(day, day_trades) for day, day_trades in by_day.items()]
        days.sort(key=lambda d: d.date, reverse=True)

        return History(
            days=days,
            total_pnl=self._raw_pnl(trades).quantize(MONEY_QUANTUM),
            first_trade=min(t.timestamp for t in trades),
            last_trade=max(t.timestamp for t in trades),
        )

    def get_today_summary(self, now: Optional[datetime] = None) -> DailySummary:
        now = now or datetime.now(self.tz)
        today = now.astimezone(self.tz).date().isoformat()
        with self._lock:
            trades = [t for t in self._trades if self.day_key(t) == today]
        return self.summarize_day(today, trades)

    @staticmethod
    def summarize_day(day: str, trades: List[Trade]) -> DailySummary:
        """Aggregate one day. Average prices are energy-weighted."""
        charged = discharged = charge_cost = discharge_revenue = Decimal(0)
        charge_cycles = discharge_cycles = 0
        min_charge: Optional[Decimal] = None
        max_discharge: Optional[Decimal] = None

        for t in trades:
            if t.action == TradeAction.CHARGE:
                charged += t.energy_kwh
                charge_cost += t.value
                charge_cycles += 1
                if min_charge is None or t.price < min_charge:
                    min_charge = t.price
            else:
                discharged += t.energy_kwh
                discharge_revenue += t.value
                discharge_cycles += 1
                if max_discharge is None or t.price > max_discharge:
                    max_discharge = t.price

        avg_charge = charge_cost / charged if charged else Decimal(0)
        avg_discharge = discharge_revenue / discharged if discharged else Decimal(0)

        return DailySummary(
            date=day,
            charged_kwh=charged.quantize(ENERGY_QUANTUM),
            discharged_kwh=discharged.quantize(ENERGY_QUANTUM),
            charge_cycles=charge_cycles,
            discharge_cycles=discharge_cycles,
            pnl=(discharge_revenue - charge_cost).quantize(MONEY_QUANTUM),
            avg_charge_price=avg_charge.quantize(PRICE_QUANTUM),
            min_charge_price=min_charge,
            avg_discharge_price=avg_discharge.quantize(PRICE_QUANTUM),
            max_discharge_price=max_discharge,
            trades=list(trades),
        )
