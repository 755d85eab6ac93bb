from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def round_rating(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


async def recompute_driver_rating(store, driver_id: int) -> Optional[float]:
    """Recompute a driver's rating from all of their rated, completed rides.

    The average is taken over the stored ratings every time rather than
    updated incrementally, so re-running it on unchanged data writes the
    same value.
    """
    average = await store.average_rating(driver_id)
    if average is None:
        logger.info("recompute_driver_rating: driver=%s has no rated rides", driver_id)
        return None
    rating = round_rating(average)
    await store.update_user(driver_id, {"rating": rating})
    logger.info("recompute_driver_rating: driver=%s rating=%s", driver_id, rating)
    return rating
