"""OTE (Czech market operator) price provider"""

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from ote_cr_price_fetcher import PriceFetcher

from energy_trader.errors import PriceFetchError
from energy_trader.interfaces import PriceProvider
from energy_trader.models import SLOT, PricePoint

logger = logging.getLogger(__name__)

MWH = Decimal(1000)


def slot_prices_to_points(day: date, values: Sequence[float], tz: tzinfo) -> List[PricePoint]:
    """Map the day's EUR/MWh slot values onto 15-minute slots from local midnight.

    Slots are stepped in UTC so DST days (92 or 100 slots) line up.
    """
    start = datetime.combine(day, time(0), tzinfo=tz).astimezone(timezone.utc)
    return [
        PricePoint(timestamp=(start + i * SLOT).astimezone(tz), value=Decimal(str(v)) / MWH)
        for i, v in enumerate(values)
    ]


class OtePriceProvider(PriceProvider):
    """Day-ahead 15-minute prices from OTE"""

    def __init__(self, tz: tzinfo, fetcher: Optional[PriceFetcher] = None,
                 now_func: Optional[Callable[[], datetime]] = None):
        self.tz = tz
        self.price_fetcher = fetcher or PriceFetcher()
        self.now_func = now_func

    def _today(self) -> date:
        now = self.now_func() if self.now_func else datetime.now(self.tz)
        return now.astimezone(self.tz).date()

    async def fetch_prices_for_date(self, day: date) -> List[PricePoint]:
        try:
            values = await self.price_fetcher.fetch_prices_for_date(day, hourly=False)
        except Exception as e:
            raise PriceFetchError(f"OTE request failed for {day}: {e}") from e
        if not values:
            raise PriceFetchError(f"OTE returned no prices for {day}")
        logger.debug(f"ote.fetch date={day} slots={len(values)}")
        return slot_prices_to_points(day, values, self.tz)

    async def fetch_today_prices(self) -> List[PricePoint]:
        return await self.fetch_prices_for_date(self._today())

    async def fetch_tomorrow_prices(self) -> List[PricePoint]:
        return await self.fetch_prices_for_date(self._today() + timedelta(days=1))
