import time
import uuid
from datetime import datetime, timezone, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
CENT = Decimal("0.01")


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def due_date_iso(days: int, ts: float | None = None) -> str:
    base = datetime.fromtimestamp(ts if ts is not None else now_ts(),
                                  tz=timezone.utc)
    return (base + timedelta(days=days)).date().isoformat()


def new_invoice_number(ts: float | None = None) -> str:
    day = datetime.fromtimestamp(ts if ts is not None else now_ts(),
                                 tz=timezone.utc).strftime("%Y%m%d")
    return f"INV-{day}-{uuid.uuid4().hex[:6].upper()}"


# money is persisted as integer minor units (cents)
def to_cents(amount: Decimal) -> int:
    return int(amount.quantize(CENT, rounding=ROUND_HALF_EVEN) * 100)


def from_cents(cents: int | str | None) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)
