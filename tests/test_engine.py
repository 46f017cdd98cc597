"""
Tests for the trading engine
Run with: pytest tests/test_engine.py -v
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from energy_trader.engine import START_CHARGE, Decision
from energy_trader.errors import DeviceError, PersistenceError
from energy_trader.models import Trade, TradeAction, TraderState

from conftest import START, FakePriceProvider, make_prices


def charge_trade(price='0.05', timestamp=START):
    return Trade(timestamp=timestamp, action=TradeAction.CHARGE, price=Decimal(price), power_w=2000,
                 duration_s=900, energy_kwh=Decimal('0.5'), start_soc=40, end_soc=60)


@pytest.mark.asyncio
class TestEndToEnd:
    """Charge in the cheap slot, discharge in the expensive one"""

    async def test_full_cycle(self, engine, battery, notifier, ledger, clock):
        """Ticks at 00:00, 00:15, 00:30 and 00:45 produce one charge and one discharge"""
        await engine.fetch_today_prices()
        assert len(engine.plan.cycles) == 1

        await engine.tick()
        assert engine.state == TraderState.CHARGING
        assert battery.commands[-1] == ('charge', 2000, 300)
        assert engine.cost_basis == Decimal('0.05')

        clock.set(0, 15)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands[-1] == ('idle',)
        assert len(ledger.trades) == 1
        trade = ledger.trades[0]
        assert trade.action == TradeAction.CHARGE
        assert trade.price == Decimal('0.05')
        assert trade.energy_kwh == Decimal('0.5')
        assert trade.duration_s == 900

        clock.set(0, 30)
        await engine.tick()
        assert engine.state == TraderState.DISCHARGING
        assert battery.commands[-1] == ('discharge', 2000, 300)

        clock.set(0, 45)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert [t.action for t in ledger.trades] == [TradeAction.CHARGE, TradeAction.DISCHARGE]
        assert ledger.trades[1].price == Decimal('0.25')
        assert ledger.total_pnl() == Decimal('0.1000')

        assert [a[0] for a in notifier.kinds('trade_start')] == ['Charging', 'Discharging']
        assert [a[0] for a in notifier.kinds('trade_end')] == ['Charging', 'Discharging']

    async def test_charge_priced_by_time_weighted_average(self, engine, ledger, clock):
        """Five minutes at 0.05 and five at 0.15 cost 0.10, not the start price"""
        clock.set(0, 10)
        await engine.fetch_today_prices()
        await engine.tick()
        assert engine.state == TraderState.CHARGING
        assert engine.cost_basis == Decimal('0.05')

        clock.set(0, 20)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        trade = ledger.trades[0]
        assert trade.duration_s == 600
        assert trade.price == Decimal('0.10')
        assert engine.cost_basis == Decimal('0.10')

    async def test_outside_windows_stays_idle(self, engine, battery, clock):
        """Slot 1 is neither a charge nor a discharge window"""
        await engine.fetch_today_prices()
        clock.set(0, 20)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands == []

    async def test_no_plan_stays_idle(self, engine, battery):
        """Without prices the engine never issues a command"""
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands == []


@pytest.mark.asyncio
class TestSocSafety:
    """SOC limits block new sessions and end running ones"""

    async def test_full_battery_does_not_charge(self, engine, battery):
        battery.soc = 100
        await engine.fetch_today_prices()
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands == []

    async def test_charge_not_permitted(self, engine, battery):
        battery.charge_permitted = False
        await engine.fetch_today_prices()
        await engine.tick()
        assert battery.commands == []

    async def test_discharge_blocked_at_min_soc(self, engine, battery, clock):
        """11% is the floor for 0.11 min SOC"""
        battery.soc = 11
        engine._state.cost_basis = Decimal('0.05')
        await engine.fetch_today_prices()
        clock.set(0, 30)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands == []

    async def test_charging_stops_when_full(self, engine, battery, clock):
        await engine.fetch_today_prices()
        await engine.tick()
        assert engine.state == TraderState.CHARGING

        battery.soc = 100
        clock.set(0, 5)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert battery.commands[-1] == ('idle',)

    async def test_discharging_stops_at_min_soc(self, engine, battery, ledger, clock):
        engine._state.cost_basis = Decimal('0.05')
        await engine.fetch_today_prices()
        clock.set(0, 30)
        await engine.tick()
        assert engine.state == TraderState.DISCHARGING

        battery.soc = 11
        clock.set(0, 35)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert ledger.trades[-1].action == TradeAction.DISCHARGE
        assert ledger.trades[-1].end_soc == 11


@pytest.mark.asyncio
class TestCostBasisGate:
    """Discharging requires a known cost basis below price * efficiency"""

    async def test_no_cost_basis_blocks_discharge(self, engine, battery, clock):
        await engine.fetch_today_prices()
        clock.set(0, 30)
        await engine.tick()
        assert engine.cost_basis is None
        assert engine.state == TraderState.IDLE
        assert battery.commands == []

    async def test_unprofitable_discharge_skipped(self, engine, battery, clock):
        """0.24 / 0.9 = 0.2667 is above the 0.25 slot price"""
        engine._state.cost_basis = Decimal('0.24')
        await engine.fetch_today_prices()
        clock.set(0, 30)
        await engine.tick()
        assert engine.state == TraderState.IDLE

    async def test_break_even_price(self, engine):
        engine._state.cost_basis = Decimal('0.09')
        assert engine.break_even_price() == Decimal('0.1')
        assert engine.is_discharge_profitable(Decimal('0.11'))
        assert not engine.is_discharge_profitable(Decimal('0.10'))

    async def test_cost_basis_restored_on_start(self, engine, ledger, notifier):
        """The newest charge trade in the ledger sets the cost basis"""
        ledger.record_trade(charge_trade('0.04'))
        ledger.record_trade(charge_trade('0.07', timestamp=START.replace(hour=1)))
        ledger._trades = []
        await engine.start()
        assert engine.cost_basis == Decimal('0.07')
        assert notifier.kinds('startup') == [['energy-trader']]

    async def test_corrupt_ledger_is_fatal(self, engine, ledger):
        ledger.path.parent.mkdir(parents=True, exist_ok=True)
        ledger.path.write_text('{not json')
        with pytest.raises(PersistenceError):
            await engine.start()

    async def test_connect_failure_is_fatal(self, engine, battery):
        async def fail():
            raise DeviceError("no route to host")
        battery.connect = fail
        with pytest.raises(DeviceError, match="Cannot connect"):
            await engine.start()


@pytest.mark.asyncio
class TestPassiveRefresh:
    """Running sessions re-send passive mode before its countdown expires"""

    async def test_refresh_after_80_percent_of_timeout(self, engine, battery, clock):
        await engine.fetch_today_prices()
        await engine.tick()

        clock.set(0, 2)
        await engine.tick()
        assert battery.commands[-1] == ('charge', 2000, 300)

        clock.set(0, 4)
        await engine.tick()
        assert battery.commands[-1] == ('passive', -2000, 300)
        assert engine.state == TraderState.CHARGING

    async def test_discharge_refresh_uses_positive_power(self, engine, battery, clock):
        engine._state.cost_basis = Decimal('0.05')
        await engine.fetch_today_prices()
        clock.set(0, 30)
        await engine.tick()
        clock.set(0, 35)
        await engine.tick()
        assert battery.commands[-1] == ('passive', 2000, 300)


@pytest.mark.asyncio
class TestDeviceFailures:
    """Device errors never corrupt state"""

    async def test_start_failure_stays_idle(self, engine, battery, notifier):
        await engine.fetch_today_prices()
        battery.command_error = DeviceError("timeout")
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert engine.cost_basis is None
        assert len(notifier.kinds('error')) == 1

    async def test_stop_failure_keeps_session(self, engine, battery, ledger, clock):
        """A failed idle command is retried on the next tick"""
        await engine.fetch_today_prices()
        await engine.tick()
        battery.command_error = DeviceError("timeout")
        clock.set(0, 15)
        await engine.tick()
        assert engine.state == TraderState.CHARGING
        assert ledger.trades == []

        battery.command_error = None
        clock.set(0, 16)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert len(ledger.trades) == 1

    async def test_error_notifications_rate_limited(self, engine, battery, notifier, clock):
        battery.status_error = DeviceError("unreachable")
        await engine.tick()
        clock.advance(minutes=1)
        await engine.tick()
        assert len(notifier.kinds('error')) == 1

        clock.advance(minutes=15)
        await engine.tick()
        assert len(notifier.kinds('error')) == 2

    async def test_degraded_status_still_trades(self, engine, battery):
        """SOC from the secondary query with permissions assumed"""
        battery.status_error = DeviceError("unreachable")
        battery.es_soc = 40
        await engine.fetch_today_prices()
        await engine.tick()
        assert engine.state == TraderState.CHARGING

    async def test_device_timeout(self, engine, battery, notifier):
        async def hang(power_w, timeout_s):
            await asyncio.sleep(10)
        battery.charge = hang
        engine.device_timeout = 0.01
        await engine.fetch_today_prices()
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert "did not respond" in notifier.kinds('error')[0][0]

    async def test_persistence_failure_keeps_trading(self, engine, ledger, clock):
        await engine.fetch_today_prices()
        await engine.tick()
        clock.set(0, 15)
        with patch('energy_trader.trade_ledger.os.replace', side_effect=OSError("disk full")):
            await engine.tick()
        assert engine.state == TraderState.IDLE
        assert ledger.is_stale
        assert len(ledger.trades) == 1


@pytest.mark.asyncio
class TestPlanSwitching:
    """Plans are replaced whole, and midnight rollover happens once"""

    async def test_today_plan_skips_past_slots(self, engine, provider, notifier, clock):
        """At 00:20 the first slot has ended, so the cheap slot is not planned"""
        clock.set(0, 20)
        await engine.fetch_today_prices()
        _, plan, total, analyzed = notifier.kinds('plan')[0]
        assert (total, analyzed) == (4, 3)
        assert all(c.charge_window.start >= START.replace(minute=15) for c in plan.cycles)

    async def test_empty_plan_stops_session(self, engine, battery, ledger, clock):
        await engine.fetch_today_prices()
        await engine.tick()
        engine._state.plan = None
        clock.set(0, 10)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        assert len(ledger.trades) == 1

    async def test_rollover_promotes_tomorrow_once(self, engine, provider, clock):
        provider.tomorrow = make_prices([0.30, 0.10, 0.40, 0.20], start=START.replace(day=16))
        await engine.fetch_today_prices()
        await engine.fetch_tomorrow_prices()
        tomorrow_plan = engine.tomorrow_plan

        clock.now = datetime(2024, 1, 16, 0, 5, tzinfo=timezone.utc)
        await engine.check_price_fetch()
        assert engine.plan is tomorrow_plan
        assert engine.tomorrow_plan is None

        await engine.check_price_fetch()
        assert engine.plan is tomorrow_plan
        assert provider.today_calls == 1

    async def test_rollover_without_tomorrow_fetches_today(self, engine, provider, clock):
        await engine.fetch_today_prices()
        provider.today = make_prices([0.30, 0.10, 0.40, 0.20], start=START.replace(day=16))
        clock.now = datetime(2024, 1, 16, 0, 5, tzinfo=timezone.utc)
        await engine.check_price_fetch()
        assert provider.today_calls == 2
        assert engine.plan.date.isoformat() == '2024-01-16'

    async def test_charge_across_midnight_keeps_yesterdays_prices(self, engine, provider, ledger, clock):
        """A session still open after the day switch is priced over both days"""
        clock.now = datetime(2024, 1, 15, 23, 45, tzinfo=timezone.utc)
        provider.today = make_prices([0.05], start=clock.now)
        provider.tomorrow = make_prices([0.90, 0.95, 0.20, 0.30], start=datetime(2024, 1, 16, tzinfo=timezone.utc))
        await engine.fetch_today_prices()
        await engine.fetch_tomorrow_prices()
        await engine._start_session(clock.now, 40, Decision(START_CHARGE, 'in charge window', price=Decimal('0.05')))

        clock.now = datetime(2024, 1, 16, 0, 0, 10, tzinfo=timezone.utc)
        await engine.check_price_fetch()
        assert engine.plan.date.isoformat() == '2024-01-16'

        clock.now = datetime(2024, 1, 16, 0, 0, 30, tzinfo=timezone.utc)
        await engine.tick()
        assert engine.state == TraderState.IDLE
        expected = (Decimal('0.05') * 900 + Decimal('0.90') * 30) / 930
        assert ledger.trades[0].price == expected
        assert engine.cost_basis == expected
        assert expected < Decimal('0.08')

    async def test_failed_startup_fetch_keeps_tomorrow_plan(self, engine, provider, clock):
        """Catching up on today's prices mid-day does not discard tomorrow's plan"""
        provider.today = []
        provider.tomorrow = make_prices([0.30, 0.10, 0.40, 0.20], start=START.replace(day=16))
        clock.set(14, 0)
        await engine.start()
        assert engine.tomorrow_plan.date.isoformat() == '2024-01-16'

        clock.set(14, 15)
        await engine.check_price_fetch()
        assert engine.tomorrow_plan.date.isoformat() == '2024-01-16'
        assert provider.today_calls == 2
        assert provider.tomorrow_calls == 1

    async def test_tomorrow_fetched_after_fetch_hour(self, engine, provider, clock):
        provider.tomorrow = make_prices([0.30, 0.10, 0.40, 0.20], start=START.replace(day=16))
        await engine.fetch_today_prices()
        clock.set(12, 45)
        await engine.check_price_fetch()
        assert provider.tomorrow_calls == 0

        clock.set(13, 0)
        await engine.check_price_fetch()
        await engine.check_price_fetch()
        assert provider.tomorrow_calls == 1
        assert engine.tomorrow_plan.date.isoformat() == '2024-01-16'

    async def test_price_failure_only_logged(self, engine, provider, notifier, clock):
        """Only device problems reach the operator"""
        await engine.fetch_today_prices()
        plan = engine.plan
        clock.set(13, 0)
        await engine.check_price_fetch()
        assert provider.tomorrow_calls == 1
        assert notifier.kinds('error') == []
        assert engine.plan is plan


@pytest.mark.asyncio
class TestSummaryAndCommands:
    """Daily summary, operator commands and the status report"""

    async def test_daily_summary_once_per_day(self, engine, ledger, notifier, clock):
        ledger.record_trade(charge_trade())
        clock.set(23, 58)
        await engine.check_daily_summary()
        assert notifier.kinds('daily_summary') == []

        clock.set(23, 59)
        await engine.check_daily_summary()
        await engine.check_daily_summary()
        summaries = notifier.kinds('daily_summary')
        assert len(summaries) == 1
        summary, total_pnl = summaries[0]
        assert summary.charge_cycles == 1
        assert total_pnl == pytest.approx(-0.025)

    async def test_status_command(self, engine, notifier):
        await engine.fetch_today_prices()
        notifier.commands = ['/status']
        await engine.handle_commands()
        status = notifier.kinds('status')[0][0]
        assert status['state'] == 'idle'
        assert status['battery_soc'] == 50
        assert status['current_price'] == pytest.approx(0.05)
        assert status['total_pnl'] == 0.0

    async def test_plan_command_resends_plan(self, engine, notifier):
        await engine.fetch_today_prices()
        notifier.commands = ['/plan@energy_bot', '/unknown']
        await engine.handle_commands()
        assert len(notifier.kinds('plan')) == 2

    async def test_commands_ignored_when_disabled(self, engine, notifier):
        notifier._enabled = False
        notifier.commands = ['/status']
        await engine.handle_commands()
        assert notifier.sent == []

    async def test_get_status_without_battery(self, engine, battery):
        battery.status_error = DeviceError("unreachable")
        await engine.fetch_today_prices()
        report = await engine.get_status()
        assert report.current.battery_soc is None
        assert report.current.current_price == Decimal('0.05')
        assert report.current.next_action == 'in charge window'
        assert report.to_dict()['history']['total_days'] == 0


@pytest.mark.asyncio
class TestShutdown:
    """Stopping the engine always leaves the battery idle"""

    async def test_shutdown_idles_battery(self, engine, battery):
        await engine.shutdown()
        assert battery.commands == [('idle',)]

    async def test_shutdown_closes_running_session(self, engine, battery, ledger, clock):
        await engine.fetch_today_prices()
        await engine.tick()
        clock.set(0, 10)
        await engine.shutdown()
        assert engine.state == TraderState.IDLE
        assert battery.commands[-1] == ('idle',)
        assert ledger.trades[0].duration_s == 600

    async def test_run_until_stopped(self, engine, battery):
        engine.stop()
        await engine.run()
        assert battery.commands[0] == ('connect',)
        assert battery.commands[-1] == ('idle',)
