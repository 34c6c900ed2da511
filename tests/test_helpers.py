import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from auctionflow.errors import UpstreamError
from auctionflow.helpers import (
    due_date_iso, from_cents, new_invoice_number, to_cents,
)
from auctionflow.infra import timings
from auctionflow.infra.sql import bounded_db


class TestMoneyUnits:
    @pytest.mark.parametrize("amount,cents", [
        (Decimal("780.06"), 78006),
        (Decimal("0.125"), 12),
        (Decimal("0.135"), 14),
        (Decimal("94.6485"), 9465),
    ])
    def test_to_cents_rounds_half_even(self, amount, cents):
        assert to_cents(amount) == cents

    def test_from_cents(self):
        assert from_cents(118250) == Decimal("1182.50")
        assert str(from_cents(None)) == "0.00"


def test_invoice_number_and_due_date():
    ts = datetime(2024, 1, 31, 12, tzinfo=timezone.utc).timestamp()
    number = new_invoice_number(ts)
    assert number.startswith("INV-20240131-")
    assert len(number.split("-")[2]) == 6
    assert due_date_iso(30, ts) == "2024-03-01"


def test_timings_snapshot_counts_errors():
    timings.reset()

    async def run():
        async with timings.timeit("unit.ok"):
            pass
        with pytest.raises(RuntimeError):
            async with timings.timeit("unit.fail"):
                raise RuntimeError("x")

    asyncio.run(run())
    snap = timings.snapshot()
    assert snap["unit.ok"]["n"] == 1
    assert snap["unit.ok"]["errors"] == 0
    assert snap["unit.fail"]["errors"] == 1
    timings.reset()
    assert timings.snapshot() == {}


class TestBoundedDb:
    def test_passes_result_through(self):
        async def ok():
            return 42

        assert asyncio.run(bounded_db("unit.db", ok(), timeout=1)) == 42

    def test_timeout_is_upstream_error(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(UpstreamError) as exc:
            asyncio.run(bounded_db("unit.db", slow(), timeout=0.01))
        assert exc.value.retryable

    def test_sqlalchemy_error_is_upstream_error(self):
        async def broken():
            raise OperationalError("SELECT 1", {}, Exception("locked"))

        with pytest.raises(UpstreamError) as exc:
            asyncio.run(bounded_db("unit.db", broken(), timeout=1))
        assert "unit.db failed" in exc.value.detail
