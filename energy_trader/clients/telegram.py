"""Telegram bot notifier"""

import html
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from energy_trader.errors import NotificationError
from energy_trader.interfaces import Notifier
from energy_trader.models import DailySummary, TradingPlan

logger = logging.getLogger(__name__)

API_URL = 'https://api.telegram.org/bot{token}/{method}'
REQUEST_TIMEOUT = 10  # seconds

STATE_EMOJI = {'charging': '🔋', 'discharging': '⚡'}


def _signed(value: float) -> str:
    return f"+{value:.4f}" if value > 0 else f"{value:.4f}"


class TelegramNotifier(Notifier):
    """Sends HTML messages to one chat and reads slash-commands from it.

    Without a bot token and chat id every method returns immediately.
    """

    def __init__(self, bot_token: str, chat_id: str, currency: str = 'EUR',
                 efficiency: Optional[Decimal] = None, min_price_spread: Optional[Decimal] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.bot_token = bot_token
        self.chat_id = str(chat_id)
        self.currency = currency
        self.efficiency = efficiency
        self.min_price_spread = min_price_spread
        self._session = session
        self._last_update_id = 0

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token) and bool(self.chat_id)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT))
        return self._session

    def _url(self, method: str) -> str:
        return API_URL.format(token=self.bot_token, method=method)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def send_message(self, text: str) -> None:
        if not self.enabled:
            return
        body = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'HTML'}
        try:
            async with self._get_session().post(self._url('sendMessage'), json=body) as response:
                if response.status != 200:
                    raise NotificationError(f"Telegram returned status {response.status}")
        except aiohttp.ClientError as e:
            raise NotificationError(f"Telegram request failed: {e}") from e

    async def send_startup(self, service_name: str) -> None:
        await self.send_message(f"🚀 <b>{html.escape(service_name)} started</b>")

    async def send_trade_start(self, action: str, price: float, soc: int) -> None:
        await self.send_message(
            f"<b>{action} started</b>\n"
            f"Price: {price:.4f} {self.currency}/kWh\n"
            f"SOC: {soc}%"
        )

    async def send_trade_end(self, action: str, energy_kwh: float, avg_price: float) -> None:
        await self.send_message(
            f"<b>{action} completed</b>\n"
            f"Energy: {energy_kwh:.2f} kWh\n"
            f"Avg price: {avg_price:.4f} {self.currency}/kWh"
        )

    async def send_error(self, message: str) -> None:
        await self.send_message(f"⚠️ <b>Error</b>\n{html.escape(message)}")

    async def send_trading_plan(self, day: str, plan: TradingPlan, slots_total: int, slots_analyzed: int) -> None:
        date_str = f"{plan.date:%d %b %Y}" if plan.date else day
        lines = [
            f"📊 <b>Trading plan for {day} ({date_str})</b>",
            f"Slots: {slots_analyzed}/{slots_total} analyzed",
            f"Prices: {plan.min_price:.4f} - {plan.max_price:.4f} {self.currency}/kWh",
            "",
        ]
        if plan.is_profitable:
            for i, cycle in enumerate(plan.cycles, 1):
                lines.append(
                    f"<b>Cycle {i}</b>\n"
                    f"🔋 Charge {cycle.charge_window.start:%H:%M}-{cycle.charge_window.end:%H:%M} "
                    f"@ {cycle.charge_window.price:.4f}\n"
                    f"⚡ Discharge {cycle.discharge_window.start:%H:%M}-{cycle.discharge_window.end:%H:%M} "
                    f"@ {cycle.discharge_window.price:.4f}\n"
                    f"Profit: {cycle.profit:.4f} {self.currency}/kWh"
                )
        else:
            lines.append("No profitable trades: window-averaged prices don't meet spread/efficiency requirements")
            if self.efficiency:
                needed = plan.min_price / self.efficiency - plan.min_price
                lines.append(f"Min spread for efficiency: {needed:.4f} (efficiency {self.efficiency})")
            if self.min_price_spread is not None:
                lines.append(f"Min spread configured: {self.min_price_spread}")
        await self.send_message('\n'.join(lines))

    async def send_daily_summary(self, summary: DailySummary, total_pnl: float) -> None:
        pnl = float(summary.pnl)
        emoji = '📈' if pnl > 0 else '📉' if pnl < 0 else '📊'
        header = f"{emoji} <b>Daily Summary - {summary.date}</b>\n\n"
        total = f"💰 <b>Cumulative P&amp;L:</b> {_signed(total_pnl)} {self.currency}"

        if not summary.has_trades:
            await self.send_message(header + "No trades today.\n\n" + total)
            return

        min_charge = float(summary.min_charge_price or 0)
        max_discharge = float(summary.max_discharge_price or 0)
        await self.send_message(
            header
            + f"💰 <b>Today's P&amp;L:</b> {_signed(pnl)} {self.currency}\n\n"
            + f"🔋 <b>Charged:</b> {float(summary.charged_kwh):.2f} kWh ({summary.charge_cycles} cycles)\n"
            + f"   Avg price: {float(summary.avg_charge_price):.4f} {self.currency}/kWh\n"
            + f"   Best price: {min_charge:.4f} {self.currency}/kWh\n\n"
            + f"⚡ <b>Discharged:</b> {float(summary.discharged_kwh):.2f} kWh ({summary.discharge_cycles} cycles)\n"
            + f"   Avg price: {float(summary.avg_discharge_price):.4f} {self.currency}/kWh\n"
            + f"   Best price: {max_discharge:.4f} {self.currency}/kWh\n\n"
            + total
        )

    async def send_status(self, status: Dict[str, Any]) -> None:
        state = status.get('state', 'idle')
        soc = status.get('battery_soc')
        price = status.get('current_price')
        await self.send_message(
            f"{STATE_EMOJI.get(state, '⏸️')} <b>Current Status</b>\n\n"
            f"<b>State:</b> {state}\n"
            f"<b>Battery:</b> {f'{soc}%' if soc is not None else 'unavailable'}\n"
            f"<b>Price:</b> {f'{price:.4f} {self.currency}/kWh' if price is not None else 'unknown'}\n"
            f"<b>Next:</b> {html.escape(status.get('next_action', ''))}\n\n"
            f"<b>Today P&amp;L:</b> {status.get('today_pnl') or 0:.4f} {self.currency}\n"
            f"<b>Total P&amp;L:</b> {status.get('total_pnl') or 0:.4f} {self.currency}"
        )

    async def poll_commands(self) -> List[str]:
        """Slash-commands sent to the configured chat since the last poll"""
        if not self.enabled:
            return []
        params = {'offset': str(self._last_update_id + 1), 'timeout': '1'}
        try:
            async with self._get_session().get(self._url('getUpdates'), params=params) as response:
                if response.status != 200:
                    raise NotificationError(f"Telegram returned status {response.status}")
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NotificationError(f"Telegram request failed: {e}") from e

        commands = []
        for update in payload.get('result', []):
            self._last_update_id = max(self._last_update_id, int(update.get('update_id', 0)))
            message = update.get('message') or {}
            chat_id = str((message.get('chat') or {}).get('id', ''))
            text = message.get('text') or ''
            if chat_id == self.chat_id and text.startswith('/'):
                commands.append(text)
        return commands
