"""
Trading engine

Tick-driven state machine that turns the daily trading plan into battery
commands. Periodic tasks (tick, price check, daily summary, command poll)
share one state object behind a single asyncio lock. The lock is never
held while talking to the battery, the price feed or the notifier.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar

from energy_trader.battery_status import resolve_status
from energy_trader.config import Config
from energy_trader.errors import DeviceError, PersistenceError, PriceFetchError
from energy_trader.interfaces import BatteryController, Notifier, PriceProvider
from energy_trader.models import (
    CurrentStatus, PricePoint, StatusReport, Trade, TradeAction, TraderState, TradingPlan, to_float,
)
from energy_trader.price_analyzer import analyze_prices, current_price, time_weighted_price
from energy_trader.trade_ledger import TradeLedger

logger = logging.getLogger(__name__)

T = TypeVar('T')

REFRESH_FRACTION = 0.8  # refresh passive mode after this share of its countdown

START_CHARGE = 'start_charge'
START_DISCHARGE = 'start_discharge'
STOP_CHARGE = 'stop_charge'
STOP_DISCHARGE = 'stop_discharge'
REFRESH = 'refresh'


@dataclass(frozen=True)
class TradeSession:
    action: TradeAction
    start: datetime
    price: Decimal
    soc: int


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str = ''
    price: Optional[Decimal] = None
    power_w: int = 0


@dataclass
class EngineState:
    """Everything the periodic tasks share"""
    mode: TraderState = TraderState.IDLE
    plan: Optional[TradingPlan] = None
    today_prices: List[PricePoint] = field(default_factory=list)
    active_date: Optional[date] = None  # day today_prices belong to
    previous_prices: List[PricePoint] = field(default_factory=list)  # yesterday, for sessions crossing midnight
    tomorrow_prices: List[PricePoint] = field(default_factory=list)
    tomorrow_plan: Optional[TradingPlan] = None
    cost_basis: Optional[Decimal] = None  # price of the energy currently stored
    session: Optional[TradeSession] = None
    last_passive_refresh: Optional[datetime] = None
    last_error_notify: Optional[datetime] = None
    last_summary_date: Optional[date] = None


class TradingEngine:
    """Energy arbitrage engine: charge cheap, discharge above breakeven"""

    def __init__(self, config: Config, prices: PriceProvider, battery: BatteryController,
                 notifier: Notifier, ledger: TradeLedger,
                 now_func: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.prices = prices
        self.battery = battery
        self.notifier = notifier
        self.ledger = ledger
        self.tz = config.location
        self.now_func = now_func
        self.analyzer_config = config.analyzer_config()

        self.charge_power_w = int(config['charge_power_w'])
        self.discharge_power_w = int(config['discharge_power_w'])
        self.passive_timeout_s = int(config['passive_mode_timeout_s'])
        self.min_soc = config.min_soc_percent
        self.device_timeout = float(config['device_timeout_s'])
        self.price_timeout = float(config['price_timeout_s'])
        self.notify_timeout = float(config['notify_timeout_s'])
        self.error_cooldown = timedelta(seconds=float(config['error_notify_cooldown_s']))

        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._state = EngineState()

    def now(self) -> datetime:
        if self.now_func is None:
            return datetime.now(self.tz)
        return self.now_func().astimezone(self.tz)

    # Read-only views, mostly for tests and the status surface

    @property
    def state(self) -> TraderState:
        return self._state.mode

    @property
    def plan(self) -> Optional[TradingPlan]:
        return self._state.plan

    @property
    def cost_basis(self) -> Optional[Decimal]:
        return self._state.cost_basis

    @property
    def tomorrow_plan(self) -> Optional[TradingPlan]:
        return self._state.tomorrow_plan

    # Lifecycle

    async def start(self) -> None:
        """Load history, connect to the battery and fetch initial prices"""
        logger.info("Starting trading engine")

        await asyncio.to_thread(self.ledger.load)
        self.restore_cost_basis()

        try:
            await self._device(self.battery.connect())
        except DeviceError as e:
            raise DeviceError(f"Cannot connect to battery: {e}") from e

        try:
            device = await self._device(self.battery.discover())
            logger.info(f"🔋 Battery discovered: {device.device} {device.ip}".rstrip())
        except DeviceError as e:
            logger.warning(f"Battery discovery failed, continuing: {e}")

        try:
            await self.fetch_today_prices()
        except PriceFetchError as e:
            logger.warning(f"Failed to fetch today's prices: {e}")

        try:
            await self.fetch_tomorrow_prices()
        except PriceFetchError as e:
            logger.debug(f"Tomorrow's prices not available yet: {e}")

        await self._notify(self.notifier.send_startup(self.config['service_name']))

    def restore_cost_basis(self) -> None:
        """Recover the cost basis from the newest charge trade in the ledger"""
        last_charge = self.ledger.last_charge_trade()
        if last_charge is not None:
            self._state.cost_basis = last_charge.price
            logger.info(f"Restored cost basis {last_charge.price:.4f}/kWh from charge at "
                        f"{last_charge.timestamp.astimezone(self.tz):%Y-%m-%d %H:%M}")

    async def run(self) -> None:
        """Run all periodic tasks until stop() is called, then go idle"""
        await self.start()

        tasks = [
            asyncio.create_task(self._periodic('tick', float(self.config['tick_interval_s']), self.tick)),
            asyncio.create_task(self._periodic('price_check', float(self.config['price_check_interval_s']),
                                               self.check_price_fetch)),
            asyncio.create_task(self._periodic('daily_summary', 60.0, self.check_daily_summary)),
            asyncio.create_task(self._periodic('commands', float(self.config['command_poll_interval_s']),
                                               self.handle_commands)),
        ]
        await self._stop.wait()

        # Each task exits at its next wait; anything still stuck in I/O is cancelled
        max_wait = max(self.device_timeout, self.price_timeout, self.notify_timeout) * 2
        _, pending = await asyncio.wait(tasks, timeout=max_wait)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self.shutdown()

    def stop(self) -> None:
        self._stop.set()

    async def shutdown(self) -> None:
        """Leave the battery idle, closing any open session first"""
        logger.info("Stopping trading engine")
        now = self.now()
        async with self._lock:
            in_session = self._state.session is not None

        if in_session:
            outcome = await resolve_status(self.battery, self.device_timeout)
            await self._stop_session(now, outcome.status.soc if outcome.ok else None, 'shutdown')
            return

        try:
            await self._device(self.battery.idle())
        except DeviceError as e:
            logger.warning(f"Failed to set idle mode on shutdown: {e}")

    async def _periodic(self, name: str, interval: float, fn: Callable[[], Awaitable[None]]) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await fn()
            except Exception:
                logger.exception(f"Periodic task {name} failed")

    # Outbound calls, always bounded by a timeout

    async def _device(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, self.device_timeout)
        except asyncio.TimeoutError:
            raise DeviceError(f"battery did not respond within {self.device_timeout:.0f}s")
        except DeviceError:
            raise
        except Exception as e:
            raise DeviceError(str(e)) from e

    async def _fetch(self, call: Awaitable[List[PricePoint]]) -> List[PricePoint]:
        try:
            prices = await asyncio.wait_for(call, self.price_timeout)
        except asyncio.TimeoutError:
            raise PriceFetchError(f"price feed did not respond within {self.price_timeout:.0f}s")
        except PriceFetchError:
            raise
        except Exception as e:
            raise PriceFetchError(str(e)) from e
        if not prices:
            raise PriceFetchError("price feed returned no prices")
        return [PricePoint(p.timestamp.astimezone(self.tz), p.value) for p in prices]

    async def _notify(self, call: Awaitable[None]) -> None:
        """Best effort: notification failures are logged, never raised"""
        try:
            await asyncio.wait_for(call, self.notify_timeout)
        except Exception as e:
            logger.warning(f"Failed to send notification: {e}")

    async def notify_error(self, message: str) -> None:
        """Escalate a device problem, at most once per cooldown window"""
        if not self.notifier.enabled:
            return
        now = self.now()
        async with self._lock:
            last = self._state.last_error_notify
            if last is not None and now - last < self.error_cooldown:
                logger.debug(f"notify_error rate_limited msg={message!r}")
                return
            self._state.last_error_notify = now
        await self._notify(self.notifier.send_error(message))

    # Trading tick

    async def tick(self) -> None:
        now = self.now()

        outcome = await resolve_status(self.battery, self.device_timeout)
        if not outcome.ok:
            logger.error(f"Failed to get battery status: {outcome.error}")
            await self.notify_error(f"Battery unreachable: {outcome.error}")
            return
        status = outcome.status

        async with self._lock:
            logger.debug(f"tick state={self._state.mode.value} soc={status.soc} time={now:%H:%M} "
                         f"charge_permitted={status.charge_permitted} "
                         f"discharge_permitted={status.discharge_permitted}")
            decision = self._decide(now, status.soc, status.charge_permitted, status.discharge_permitted)

        if decision is None:
            return
        if decision.action in (START_CHARGE, START_DISCHARGE):
            await self._start_session(now, status.soc, decision)
        elif decision.action in (STOP_CHARGE, STOP_DISCHARGE):
            await self._stop_session(now, status.soc, decision.reason)
        elif decision.action == REFRESH:
            await self._refresh_passive_mode(now, decision.power_w)

    def _decide(self, now: datetime, soc: int, charge_permitted: bool,
                discharge_permitted: bool) -> Optional[Decision]:
        """Transition table. Caller holds the lock; no I/O here."""
        s = self._state
        plan = s.plan

        if plan is None or not plan.should_trade():
            if s.mode == TraderState.CHARGING:
                return Decision(STOP_CHARGE, 'no profitable plan')
            if s.mode == TraderState.DISCHARGING:
                return Decision(STOP_DISCHARGE, 'no profitable plan')
            return None

        in_charge = plan.is_in_charge_window(now)
        in_discharge = plan.is_in_discharge_window(now)

        if s.mode == TraderState.CHARGING:
            if not in_charge:
                return Decision(STOP_CHARGE, 'left charge window')
            if soc >= 100:
                return Decision(STOP_CHARGE, 'battery full')
            if self._refresh_due(now):
                return Decision(REFRESH, power_w=-self.charge_power_w)
            return None

        if s.mode == TraderState.DISCHARGING:
            if not in_discharge:
                return Decision(STOP_DISCHARGE, 'left discharge window')
            if soc <= self.min_soc:
                return Decision(STOP_DISCHARGE, f'battery at min SOC {self.min_soc}%')
            if self._refresh_due(now):
                return Decision(REFRESH, power_w=self.discharge_power_w)
            return None

        price = current_price(s.today_prices, now)
        if price is None:
            logger.warning(f"No price for current time slot {now:%H:%M}")
            return None

        if in_charge:
            if soc >= 100:
                logger.debug("In charge window but battery full")
            elif not charge_permitted:
                logger.warning("In charge window but battery charging disabled")
            else:
                return Decision(START_CHARGE, 'in charge window', price=price)
        elif in_discharge:
            if soc <= self.min_soc:
                logger.debug(f"In discharge window but battery at min SOC min_soc={self.min_soc}")
            elif not discharge_permitted:
                logger.warning("In discharge window but battery discharging disabled")
            elif not self.is_discharge_profitable(price):
                logger.info(f"Skip discharge: not profitable price={price:.4f} "
                            f"cost_basis={s.cost_basis} break_even={self.break_even_price()}")
            else:
                return Decision(START_DISCHARGE, 'in discharge window', price=price)
        return None

    def break_even_price(self) -> Optional[Decimal]:
        if self._state.cost_basis is None:
            return None
        return self._state.cost_basis / self.analyzer_config.efficiency

    def is_discharge_profitable(self, price: Decimal) -> bool:
        """Without a known cost basis discharging is never allowed"""
        break_even = self.break_even_price()
        return break_even is not None and price > break_even

    def _refresh_due(self, now: datetime) -> bool:
        last = self._state.last_passive_refresh
        if last is None:
            return True
        return (now - last).total_seconds() >= self.passive_timeout_s * REFRESH_FRACTION

    async def _start_session(self, now: datetime, soc: int, decision: Decision) -> None:
        charging = decision.action == START_CHARGE
        label = 'Charging' if charging else 'Discharging'
        price = decision.price
        logger.info(f"Decision: start {label.lower()} price={price:.4f} soc={soc}")

        try:
            if charging:
                await self._device(self.battery.charge(self.charge_power_w, self.passive_timeout_s))
            else:
                await self._device(self.battery.discharge(self.discharge_power_w, self.passive_timeout_s))
        except DeviceError as e:
            logger.error(f"Failed to start {label.lower()}: {e}")
            await self.notify_error(f"Failed to start {label.lower()}: {e}")
            return

        async with self._lock:
            s = self._state
            s.mode = TraderState.CHARGING if charging else TraderState.DISCHARGING
            s.session = TradeSession(TradeAction.CHARGE if charging else TradeAction.DISCHARGE, now, price, soc)
            s.last_passive_refresh = now
            if charging:
                s.cost_basis = price

        logger.info(f"{'🔋' if charging else '⚡'} {label} started at {price:.4f}/kWh (SOC {soc}%)")
        await self._notify(self.notifier.send_trade_start(label, float(price), soc))

    async def _stop_session(self, now: datetime, end_soc: Optional[int], reason: str) -> None:
        try:
            await self._device(self.battery.idle())
        except DeviceError as e:
            logger.error(f"Failed to set idle mode ({reason}): {e}")
            await self.notify_error(f"Failed to stop trading session: {e}")
            return

        async with self._lock:
            s = self._state
            session = s.session
            s.mode = TraderState.IDLE
            s.session = None
            if session is None:
                return

            charging = session.action == TradeAction.CHARGE
            power_w = self.charge_power_w if charging else self.discharge_power_w
            seconds = Decimal(str(max((now - session.start).total_seconds(), 0)))
            energy_kwh = Decimal(power_w) * seconds / Decimal(3_600_000)

            price = session.price
            if charging:
                # What was actually paid over the session, not the window mean
                avg = time_weighted_price(s.previous_prices + s.today_prices, session.start, now)
                if avg is not None:
                    price = avg
                s.cost_basis = price

            trade = Trade(
                timestamp=session.start,
                action=session.action,
                price=price,
                power_w=power_w,
                duration_s=int(seconds),
                energy_kwh=energy_kwh,
                start_soc=session.soc,
                end_soc=end_soc if end_soc is not None else session.soc,
            )

        label = 'Charging' if charging else 'Discharging'
        logger.info(f"✓ {label} stopped ({reason}): {energy_kwh:.3f} kWh at {price:.4f}/kWh "
                    f"SOC {trade.start_soc}%→{trade.end_soc}% duration={trade.duration_s}s")

        try:
            await asyncio.to_thread(self.ledger.record_trade, trade)
        except PersistenceError as e:
            logger.error(f"Trade kept in memory but not saved: {e}")

        await self._notify(self.notifier.send_trade_end(label, float(energy_kwh), float(price)))

    async def _refresh_passive_mode(self, now: datetime, power_w: int) -> None:
        logger.debug(f"refresh_passive_mode power={power_w}")
        try:
            await self._device(self.battery.set_passive_mode(power_w, self.passive_timeout_s))
        except DeviceError as e:
            logger.error(f"Failed to refresh passive mode: {e}")
            return
        async with self._lock:
            self._state.last_passive_refresh = now

    # Prices and plans

    async def fetch_today_prices(self) -> None:
        prices = await self._fetch(self.prices.fetch_today_prices())
        now = self.now()
        # Only slots that have not ended yet are worth planning
        future = [p for p in prices if p.end >= now]
        plan = analyze_prices(future, self.analyzer_config)

        async with self._lock:
            s = self._state
            if s.active_date is not None and s.active_date != now.date():
                s.previous_prices = s.today_prices
            s.today_prices = prices
            s.plan = plan
            s.active_date = now.date()

        logger.info(f"Fetched today's prices: slots={len(prices)} analyzed={len(future)} "
                    f"min={plan.min_price:.4f} max={plan.max_price:.4f}")
        await self._announce_plan('today', plan, len(prices), len(future))

    async def fetch_tomorrow_prices(self) -> None:
        prices = await self._fetch(self.prices.fetch_tomorrow_prices())
        plan = analyze_prices(prices, self.analyzer_config)

        async with self._lock:
            self._state.tomorrow_prices = prices
            self._state.tomorrow_plan = plan

        logger.info(f"Fetched tomorrow's prices: slots={len(prices)} "
                    f"min={plan.min_price:.4f} max={plan.max_price:.4f}")
        await self._announce_plan('tomorrow', plan, len(prices), len(prices))

    async def check_price_fetch(self) -> None:
        now = self.now()
        today = now.date()
        tomorrow = today + timedelta(days=1)

        async with self._lock:
            rollover_due = self._state.active_date != today

        if rollover_due:
            await self.rollover(today)

        async with self._lock:
            tomorrow_plan = self._state.tomorrow_plan
            need_tomorrow = tomorrow_plan is None or tomorrow_plan.date != tomorrow

        if now.hour >= int(self.config['price_fetch_hour']) and need_tomorrow:
            try:
                await self.fetch_tomorrow_prices()
            except PriceFetchError as e:
                logger.warning(f"Failed to fetch tomorrow's prices: {e}")

    async def rollover(self, today: date) -> None:
        """Promote tomorrow's plan to today, once per day"""
        async with self._lock:
            s = self._state
            if s.active_date == today:
                return
            promoted = s.tomorrow_plan is not None and s.tomorrow_plan.date == today
            if promoted:
                s.previous_prices = s.today_prices
                s.today_prices = s.tomorrow_prices
                s.plan = s.tomorrow_plan
                s.active_date = today
                plan, slots = s.plan, len(s.today_prices)
            stale = s.tomorrow_plan is None or s.tomorrow_plan.date is None or s.tomorrow_plan.date <= today
            if stale:
                s.tomorrow_prices = []
                s.tomorrow_plan = None

        if promoted:
            logger.info(f"Switched to new day's prices: date={today} slots={slots} "
                        f"min={plan.min_price:.4f} max={plan.max_price:.4f}")
            await self._announce_plan('today', plan, slots, slots)
            return

        logger.warning(f"No precomputed plan for {today}, fetching today's prices")
        try:
            await self.fetch_today_prices()
        except PriceFetchError as e:
            logger.error(f"Failed to fetch today's prices: {e}")

    async def _announce_plan(self, day: str, plan: TradingPlan, slots_total: int, slots_analyzed: int) -> None:
        if not plan.is_profitable:
            min_spread_for_efficiency = plan.min_price / self.analyzer_config.efficiency - plan.min_price
            logger.info(f"No profitable charge→discharge sequence for {day}: "
                        f"min_spread_for_efficiency={min_spread_for_efficiency:.4f} "
                        f"min_spread_configured={self.analyzer_config.min_price_spread} "
                        f"efficiency={self.analyzer_config.efficiency}")
        for i, cycle in enumerate(plan.cycles, 1):
            logger.info(f"Cycle {i} ({day}): {cycle!r}")
        await self._notify(self.notifier.send_trading_plan(day, plan, slots_total, slots_analyzed))

    # Daily summary and operator commands

    async def check_daily_summary(self) -> None:
        now = self.now()
        at = self.config.daily_summary_time
        if (now.hour, now.minute) < (at.hour, at.minute):
            return

        async with self._lock:
            if self._state.last_summary_date == now.date():
                return
            self._state.last_summary_date = now.date()

        summary = self.ledger.get_today_summary(now)
        total_pnl = self.ledger.total_pnl()
        logger.info(f"📊 Daily summary {summary.date}: pnl={summary.pnl} charged={summary.charged_kwh} kWh "
                    f"discharged={summary.discharged_kwh} kWh total_pnl={total_pnl}")
        await self._notify(self.notifier.send_daily_summary(summary, float(total_pnl)))

    async def handle_commands(self) -> None:
        if not self.notifier.enabled:
            return
        try:
            commands = await asyncio.wait_for(self.notifier.poll_commands(), self.notify_timeout)
        except Exception as e:
            logger.debug(f"poll_commands error={e}")
            return

        for command in commands:
            name = command.split()[0].split('@')[0].lower() if command.strip() else ''
            if name == '/status':
                await self.send_status()
            elif name == '/plan':
                async with self._lock:
                    plan, slots = self._state.plan, len(self._state.today_prices)
                if plan is not None:
                    await self._announce_plan('today', plan, slots, slots)
            else:
                logger.info(f"Ignoring unknown command {command!r}")

    async def send_status(self) -> None:
        report = await self.get_status()
        today = self.ledger.get_today_summary(self.now())
        data = report.current.to_dict()
        data['today_pnl'] = to_float(today.pnl)
        data['total_pnl'] = to_float(report.history.total_pnl)
        await self._notify(self.notifier.send_status(data))

    # Status surface

    async def get_status(self) -> StatusReport:
        outcome = await resolve_status(self.battery, self.device_timeout)
        now = self.now()

        async with self._lock:
            s = self._state
            status = CurrentStatus(
                state=s.mode,
                battery_soc=outcome.status.soc if outcome.ok else None,
                current_price=current_price(s.today_prices, now),
                next_action=self._next_action(now),
            )

        return StatusReport(current=status, history=self.ledger.get_history())

    def _next_action(self, now: datetime) -> str:
        plan = self._state.plan
        if plan is None or not plan.is_profitable:
            return 'no profitable trades today'
        if plan.is_in_charge_window(now):
            return 'in charge window'
        if plan.is_in_discharge_window(now):
            return 'in discharge window'
        upcoming = [w for c in plan.cycles for w in (c.charge_window, c.discharge_window) if w.start > now]
        if upcoming:
            nxt = min(upcoming, key=lambda w: w.start)
            kind = 'charge' if nxt in plan.charge_windows else 'discharge'
            return f"waiting for {kind} window at {nxt.start.astimezone(self.tz):%H:%M}"
        return 'waiting for next window'
