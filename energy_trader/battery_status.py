"""Battery status resolution: primary query with one retry, then a secondary query"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from energy_trader.errors import DeviceError
from energy_trader.interfaces import BatteryController
from energy_trader.models import BatteryStatus

logger = logging.getLogger(__name__)

PRIMARY_ATTEMPTS = 2


class OutcomeKind(str, Enum):
    SUCCESS = 'success'
    DEGRADED = 'degraded'  # SOC from the secondary query, permissions assumed
    FAILURE = 'failure'


@dataclass(frozen=True)
class StatusOutcome:
    kind: OutcomeKind
    status: Optional[BatteryStatus] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status is not None


async def resolve_status(controller: BatteryController, timeout: float,
                         attempts: int = PRIMARY_ATTEMPTS) -> StatusOutcome:
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            status = await asyncio.wait_for(controller.get_battery_status(), timeout)
            return StatusOutcome(OutcomeKind.SUCCESS, status)
        except asyncio.TimeoutError:
            last_error = DeviceError(f"battery status timed out after {timeout}s")
        except Exception as e:
            last_error = e
        logger.debug(f"resolve_status attempt={attempt} error={last_error}")

    try:
        es_status = await asyncio.wait_for(controller.get_es_status(), timeout)
    except NotImplementedError:
        return StatusOutcome(OutcomeKind.FAILURE, error=last_error)
    except Exception as e:
        logger.debug(f"resolve_status fallback_error={e}")
        return StatusOutcome(OutcomeKind.FAILURE, error=last_error)

    logger.warning(f"Battery status unavailable ({last_error}), using ES status SOC={es_status.battery_soc}%")
    return StatusOutcome(
        OutcomeKind.DEGRADED,
        BatteryStatus(soc=es_status.battery_soc, charge_permitted=True, discharge_permitted=True),
        error=last_error,
    )
