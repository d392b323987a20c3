"""Wall-clock helpers shared by the time-based components."""

from datetime import datetime, timedelta
from typing import Callable

Clock = Callable[[], datetime]


def local_now() -> datetime:
    """Current time as an aware datetime in the local timezone."""
    return datetime.now().astimezone()


def seconds_until_next_midnight(moment: datetime) -> float:
    """Seconds from ``moment`` to the start of the following local day."""
    midnight = (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max((midnight - moment).total_seconds(), 0.0)
