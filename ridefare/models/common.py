import time
from datetime import datetime, timezone

from sqlalchemy import Numeric

# decimal(20,6) for amounts, decimal(10,2) for rates
Money = Numeric(20, 6, asdecimal=True)
Rate = Numeric(10, 2, asdecimal=True)
Factor = Numeric(8, 2, asdecimal=True)


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_day(ms: int) -> str:
    """ISO calendar date (UTC) of an epoch-millisecond timestamp."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).date().isoformat()
