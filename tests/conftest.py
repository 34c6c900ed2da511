"""
Shared fixtures: a throwaway SQLite database per test, a scriptable payment
provider, and an in-memory audit sink.
"""
import asyncio
import json
import os
import tempfile
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path

# must be set before auctionflow.config is imported anywhere
_TMP = tempfile.mkdtemp(prefix="auctionflow-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("PAYMENT_PROVIDER", "mock")
os.environ.setdefault("MOCK_WEBHOOK_URL", "http://127.0.0.1:9/payments/webhook")

import pytest

from auctionflow.calculations import LineItem, RateConfig, compute_invoice_totals
from auctionflow.infra.sql import make_async_engine
from auctionflow.model.audit import AuditSink
from auctionflow.model.db import Base
from auctionflow.model.invoices import InvoiceStore
from auctionflow.model.paymentsession import PaymentSessionStore
from auctionflow.payments import PaymentAdapter, RemoteSession
from auctionflow.reconciliation import PaymentReconciler

REFERENCE_ITEMS = [
    LineItem("1", "Item 1", 2, Decimal("250.50")),
    LineItem("2", "Item 2", 1, Decimal("99.99")),
    LineItem("3", "Item 3", 3, Decimal("10.00")),
]
REFERENCE_RATES = RateConfig(tax_rate=Decimal("0.075"),
                             buyers_premium_rate=Decimal("0.15"))


class FakeProvider(PaymentAdapter):
    """Provider whose remote state the test sets directly."""
    name = "stripe"

    def __init__(self):
        self.remote = {}
        self.calls = 0
        self.fail = None
        self.delay = 0.0
        self._n = 0

    def set(self, session_id, status, payment_status, amount_total=None,
            payment_intent=None):
        self.remote[session_id] = dict(
            status=status, payment_status=payment_status,
            amount_total=amount_total, currency="usd",
            payment_intent=payment_intent,
        )

    async def create_checkout_session(self, invoice, success_url, cancel_url):
        self._n += 1
        sid = f"cs_test_{self._n}"
        self.set(sid, "open", "unpaid", int(invoice["grand_total"]))
        return {"payment_session_id": sid,
                "redirect_url": f"https://checkout.test/{sid}",
                "payment_intent_id": None}

    async def retrieve_session(self, session_id):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return RemoteSession(session_id=session_id, **self.remote[session_id])

    def verify_webhook(self, payload, headers):
        return json.loads(payload)

    def event_session_id(self, event):
        return event.get("id")


class RecordingAuditSink(AuditSink):
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    async def record(self, event):
        if self.fail:
            raise RuntimeError("audit sink down")
        self.events.append(event)

    def types(self):
        return [e.event_type for e in self.events]


class Env:
    """One open database plus the collaborators a reconciler needs."""

    def __init__(self, session_factory, gated, provider, audit):
        self.session_factory = session_factory
        self.gated = gated
        self.provider = provider
        self.audit = audit

    def reconciler(self, db, **kw):
        return PaymentReconciler(
            sessions=PaymentSessionStore(db=db, gated=self.gated),
            invoices=InvoiceStore(db=db, gated=self.gated),
            provider=self.provider,
            audit=self.audit,
            **kw,
        )

    async def create_invoice(self, items=REFERENCE_ITEMS,
                             rates=REFERENCE_RATES):
        totals = compute_invoice_totals(items, rates, round_steps=True)
        async with self.session_factory() as db:
            return await InvoiceStore(db=db, gated=self.gated).create_invoice(
                totals, rates
            )

    async def get_invoice(self, invoice_id):
        async with self.session_factory() as db:
            return await InvoiceStore(db=db, gated=self.gated).get_invoice(
                invoice_id
            )

    async def get_session(self, session_id):
        async with self.session_factory() as db:
            store = PaymentSessionStore(db=db, gated=self.gated)
            return await store.get_session(session_id)

    async def checkout(self):
        """Pending invoice plus a freshly created payment session."""
        invoice = await self.create_invoice()
        async with self.session_factory() as db:
            out = await self.reconciler(db).start_checkout(
                invoice["id"], "https://app.test/ok", "https://app.test/no"
            )
        return invoice, out["session_id"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def open_env(tmp_path: Path, provider, audit):
    """``async with open_env() as env:`` inside the test's event loop."""
    @asynccontextmanager
    async def _open():
        engine, session_factory, gated = make_async_engine(
            f"sqlite:///{tmp_path / 'test.db'}"
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield Env(session_factory, gated, provider, audit)
        finally:
            await engine.dispose()
    return _open
