"""NordPool day-ahead price client"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from energy_trader.errors import PriceFetchError
from energy_trader.interfaces import PriceProvider
from energy_trader.models import SLOT_MINUTES, PricePoint

logger = logging.getLogger(__name__)

BASE_URL = 'https://dataportal-api.nordpoolgroup.com/api/DayAheadPriceIndices'
REQUEST_TIMEOUT = 30  # seconds
MWH = Decimal(1000)


def parse_timestamp(value: str) -> datetime:
    # fromisoformat only accepts a trailing Z from Python 3.11
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def parse_prices(payload: Dict[str, Any], area: str) -> List[PricePoint]:
    """Convert a DayAheadPriceIndices response into per-kWh price points"""
    try:
        entries = payload['multiIndexEntries']
    except (KeyError, TypeError) as e:
        raise PriceFetchError(f"unexpected response: missing {e}") from e

    prices = []
    for entry in entries:
        try:
            start = parse_timestamp(entry['deliveryStart'])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceFetchError(f"invalid deliveryStart in {entry!r}") from e
        per_area = entry.get('entryPerArea') or {}
        if area not in per_area:
            raise PriceFetchError(f"no price for area {area!r} at {entry['deliveryStart']}")
        try:
            value = Decimal(str(per_area[area])) / MWH
        except InvalidOperation as e:
            raise PriceFetchError(f"invalid price {per_area[area]!r}") from e
        prices.append(PricePoint(timestamp=start, value=value))
    return prices


class NordPoolClient(PriceProvider):
    """Fetches 15-minute day-ahead prices for one bidding area"""

    def __init__(self, area: str, currency: str, tz: tzinfo,
                 session: Optional[aiohttp.ClientSession] = None,
                 now_func: Optional[Callable[[], datetime]] = None):
        self.area = area
        self.currency = currency
        self.tz = tz
        self._session = session
        self.now_func = now_func

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT))
        return self._session

    def _today(self) -> date:
        now = self.now_func() if self.now_func else datetime.now(self.tz)
        return now.astimezone(self.tz).date()

    async def fetch_day_ahead_prices(self, day: date) -> List[PricePoint]:
        params = {
            'date': day.isoformat(),
            'indexNames': self.area,
            'currency': self.currency,
            'market': 'DayAhead',
            'resolutionInMinutes': str(SLOT_MINUTES),
        }
        logger.debug(f"nordpool.fetch date={day} area={self.area} currency={self.currency}")
        try:
            async with self._get_session().get(BASE_URL, params=params,
                                               headers={'Accept': 'application/json'}) as response:
                # 204 means the auction results are not published yet
                if response.status != 200:
                    raise PriceFetchError(f"NordPool returned status {response.status} for {day}")
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PriceFetchError(f"NordPool request failed: {e}") from e
        except ValueError as e:
            raise PriceFetchError(f"NordPool returned invalid JSON: {e}") from e

        prices = parse_prices(payload, self.area)
        return [PricePoint(p.timestamp.astimezone(self.tz), p.value) for p in prices]

    async def fetch_today_prices(self) -> List[PricePoint]:
        return await self.fetch_day_ahead_prices(self._today())

    async def fetch_tomorrow_prices(self) -> List[PricePoint]:
        return await self.fetch_day_ahead_prices(self._today() + timedelta(days=1))

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
