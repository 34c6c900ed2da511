import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from auctionflow.errors import ConflictError, NotFoundError, UpstreamError
from auctionflow.model.audit import (
    AuditEvent, AuditSink, SqlAuditSink, emit_audit,
)
from auctionflow.model.db import PS_COMPLETED, PS_CREATED
from auctionflow.model.invoices import InvoiceStore
from auctionflow.model.paymentsession import PaymentSessionStore
from auctionflow.payments import RemoteSession
from auctionflow.reconciliation import map_remote_status


def _remote(status, payment_status):
    return RemoteSession(session_id="cs", status=status,
                         payment_status=payment_status)


class TestStatusMapping:
    @pytest.mark.parametrize("status,payment_status,expected", [
        ("complete", "paid", "completed"),
        ("open", "paid", "completed"),
        ("expired", "unpaid", "expired"),
        ("failed", "failed", "failed"),
        ("open", "failed", "failed"),
        ("open", "unpaid", "created"),
        ("complete", "unpaid", "created"),
        ("weird", "", "created"),
    ])
    def test_mapping(self, status, payment_status, expected):
        assert map_remote_status(_remote(status, payment_status)) == expected

    def test_unknown_status_keeps_current(self):
        assert map_remote_status(_remote("open", "unpaid"),
                                 current="expired") == "expired"


class TestReconcile:
    def test_paid_session_settles_invoice(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid", 78006)
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)

                assert result.changed and result.invoice_settled
                assert result.session["status"] == PS_COMPLETED
                assert result.invoice_status == "paid"

                stored = await env.get_invoice(invoice["id"])
                assert stored["status"] == "paid"
                assert stored["payment_method"] == "stripe"
                assert stored["paid_at"] is not None
                assert audit.types() == [
                    "payment_attempted", "payment_succeeded", "invoice_paid",
                ]
                succeeded = audit.events[1]
                assert succeeded.correlation_id == sid
                assert succeeded.metadata["from_status"] == "created"
                assert succeeded.metadata["amount"] == "780.06"
        asyncio.run(scenario())

    def test_repeat_reconcile_is_a_noop(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid")
                async with env.session_factory() as db:
                    await env.reconciler(db).reconcile(sid)
                first = await env.get_session(sid)
                paid_at = (await env.get_invoice(invoice["id"]))["paid_at"]

                async with env.session_factory() as db:
                    again = await env.reconciler(db).reconcile(sid)

                assert not again.changed
                assert again.invoice_status == "paid"
                assert await env.get_session(sid) == first
                assert (await env.get_invoice(invoice["id"]))["paid_at"] \
                    == paid_at
                assert audit.types().count("payment_succeeded") == 1
                assert audit.types().count("invoice_paid") == 1
        asyncio.run(scenario())

    def test_open_session_writes_nothing(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                before = await env.get_session(sid)
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)
                assert not result.changed
                assert result.remote.status == "open"
                assert await env.get_session(sid) == before
                assert audit.types() == ["payment_attempted"]
        asyncio.run(scenario())

    def test_expired_leaves_invoice_pending(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "expired", "unpaid")
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)
                assert result.changed and not result.invoice_settled
                assert result.session["status"] == "expired"
                assert (await env.get_invoice(invoice["id"]))["status"] \
                    == "pending"
                assert audit.types()[-1] == "payment_expired"
        asyncio.run(scenario())

    def test_failed_is_recorded(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                provider.set(sid, "failed", "failed")
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)
                assert result.session["status"] == "failed"
                assert audit.types()[-1] == "payment_failed"
        asyncio.run(scenario())

    def test_terminal_status_never_changes(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "expired", "unpaid")
                async with env.session_factory() as db:
                    await env.reconciler(db).reconcile(sid)

                provider.set(sid, "complete", "paid")
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)

                assert not result.changed
                assert result.session["status"] == "expired"
                assert (await env.get_invoice(invoice["id"]))["status"] \
                    == "pending"
                assert "invoice_paid" not in audit.types()
        asyncio.run(scenario())

    def test_unknown_session(self, open_env, provider):
        async def scenario():
            async with open_env() as env:
                async with env.session_factory() as db:
                    with pytest.raises(NotFoundError):
                        await env.reconciler(db).reconcile("cs_missing")
                assert provider.calls == 0
        asyncio.run(scenario())

    def test_provider_error_changes_nothing(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.fail = UpstreamError("stripe is down")
                async with env.session_factory() as db:
                    with pytest.raises(UpstreamError) as exc:
                        await env.reconciler(db).reconcile(sid)
                assert exc.value.retryable
                assert (await env.get_session(sid))["status"] == PS_CREATED
                assert (await env.get_invoice(invoice["id"]))["status"] \
                    == "pending"
                assert audit.types() == ["payment_attempted"]
        asyncio.run(scenario())

    def test_provider_timeout_is_upstream_error(self, open_env, provider):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                provider.set(sid, "complete", "paid")
                provider.delay = 1.0
                async with env.session_factory() as db:
                    rec = env.reconciler(db, provider_timeout=0.05)
                    with pytest.raises(UpstreamError):
                        await rec.reconcile(sid)
                assert (await env.get_session(sid))["status"] == PS_CREATED
        asyncio.run(scenario())

    def test_audit_failure_does_not_undo_payment(self, open_env, provider,
                                                 caplog):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                env.audit.fail = True
                provider.set(sid, "complete", "paid")
                async with env.session_factory() as db:
                    result = await env.reconciler(db).reconcile(sid)
                assert result.changed
                assert result.invoice_status == "paid"
        asyncio.run(scenario())
        assert "audit write failed" in caplog.text

    def test_concurrent_reconciles_settle_once(self, open_env, provider,
                                               audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid")

                async def one():
                    async with env.session_factory() as db:
                        return await env.reconciler(db).reconcile(sid)

                results = await asyncio.gather(*(one() for _ in range(5)))
                assert sum(r.changed for r in results) == 1
                assert sum(r.invoice_settled for r in results) == 1
                assert all(r.session["status"] == PS_COMPLETED
                           for r in results)
                assert (await env.get_invoice(invoice["id"]))["status"] \
                    == "paid"
                assert audit.types().count("payment_succeeded") == 1
                assert audit.types().count("invoice_paid") == 1
        asyncio.run(scenario())

    def test_second_session_on_paid_invoice(self, open_env, provider, audit):
        """A late second payment completes its session but not the invoice."""
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                async with env.session_factory() as db:
                    other = await PaymentSessionStore(
                        db=db, gated=env.gated
                    ).create_session("cs_other", invoice["id"],
                                     invoice["grand_total"], "USD")
                provider.set(sid, "complete", "paid")
                provider.set(other["session_id"], "complete", "paid")

                async with env.session_factory() as db:
                    first = await env.reconciler(db).reconcile(sid)
                async with env.session_factory() as db:
                    second = await env.reconciler(db).reconcile("cs_other")

                assert first.invoice_settled
                assert second.changed and not second.invoice_settled
                assert audit.types().count("invoice_paid") == 1
        asyncio.run(scenario())


class TestTransitions:
    def test_stale_expected_status_is_not_applied(self, open_env):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                session = await env.get_session(sid)
                async with env.session_factory() as db:
                    store = PaymentSessionStore(db=db, gated=env.gated)
                    ok = await store.apply_transition(
                        session, "expired", "unpaid", "stripe")
                    stale = await store.apply_transition(
                        session, "completed", "paid", "stripe")
                assert ok.applied
                assert not stale.applied and not stale.invoice_settled
                assert (await env.get_session(sid))["status"] == "expired"
        asyncio.run(scenario())


class TestStartCheckout:
    def test_creates_local_session(self, open_env, provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice = await env.create_invoice()
                async with env.session_factory() as db:
                    out = await env.reconciler(db).start_checkout(
                        invoice["id"], "https://ok", "https://no")
                session = await env.get_session(out["session_id"])
                assert session["amount"] == invoice["grand_total"] == 78006
                assert session["status"] == PS_CREATED
                assert out["payment_url"].endswith(out["session_id"])
                assert out["payment_session"]["amount"] == "780.06"
                assert audit.types() == ["payment_attempted"]
        asyncio.run(scenario())

    def test_missing_invoice(self, open_env):
        async def scenario():
            async with open_env() as env:
                async with env.session_factory() as db:
                    with pytest.raises(NotFoundError):
                        await env.reconciler(db).start_checkout(
                            "nope", "https://ok", "https://no")
        asyncio.run(scenario())

    def test_paid_invoice_cannot_be_checked_out(self, open_env):
        async def scenario():
            async with open_env() as env:
                invoice = await env.create_invoice()
                async with env.session_factory() as db:
                    async with db.begin():
                        await db.execute(text(
                            "UPDATE invoices SET status='paid' WHERE id=:id"
                        ), {"id": invoice["id"]})
                async with env.session_factory() as db:
                    with pytest.raises(ConflictError):
                        await env.reconciler(db).start_checkout(
                            invoice["id"], "https://ok", "https://no")
        asyncio.run(scenario())


class TestSqlAuditSink:
    def test_session_events_share_correlation_id(self, open_env, provider):
        async def scenario():
            async with open_env() as env:
                env.audit = SqlAuditSink(
                    session_factory=env.session_factory, gated=env.gated)
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid")
                async with env.session_factory() as db:
                    await env.reconciler(db).reconcile(sid)

                trail = await env.audit.get_logs_by_correlation_id(sid)
                assert [l["event_type"] for l in trail] == [
                    "payment_attempted", "payment_succeeded", "invoice_paid",
                ]
                invoice_logs = await env.audit.get_entity_logs(
                    "invoice", invoice["id"])
                assert [l["event_type"] for l in invoice_logs] == [
                    "invoice_paid"]
                assert invoice_logs[0]["metadata"]["grand_total"] == "780.06"
        asyncio.run(scenario())


class TestReadBackFailure:
    def test_events_recorded_when_read_back_fails(self, open_env, provider,
                                                  audit, monkeypatch):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid")

                original = PaymentSessionStore.get_session
                calls = []

                async def flaky_get_session(self, session_id):
                    calls.append(session_id)
                    if len(calls) == 2:
                        raise OperationalError(
                            "SELECT", {}, Exception("disk I/O error"))
                    return await original(self, session_id)

                monkeypatch.setattr(PaymentSessionStore, "get_session",
                                    flaky_get_session)

                async with env.session_factory() as db:
                    with pytest.raises(UpstreamError):
                        await env.reconciler(db).reconcile(sid)
                assert audit.types() == [
                    "payment_attempted", "payment_succeeded", "invoice_paid",
                ]

                async with env.session_factory() as db:
                    retry = await env.reconciler(db).reconcile(sid)
                assert not retry.changed
                assert retry.session["status"] == PS_COMPLETED
                assert retry.invoice_status == "paid"
                assert audit.types().count("payment_succeeded") == 1
                assert audit.types().count("invoice_paid") == 1
        asyncio.run(scenario())

    def test_missing_invoice_after_insert(self, open_env, monkeypatch):
        async def no_invoice(self, invoice_id):
            return None

        async def scenario():
            async with open_env() as env:
                monkeypatch.setattr(InvoiceStore, "get_invoice", no_invoice)
                with pytest.raises(UpstreamError):
                    await env.create_invoice()
        asyncio.run(scenario())


class TestFailedPaymentIntent:
    def test_failed_intent_marks_session_failed(self, open_env, provider,
                                                audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "open", "unpaid", payment_intent="pi_1")
                async with env.session_factory() as db:
                    polled = await env.reconciler(db).reconcile(sid)
                assert not polled.changed
                stored = await env.get_session(sid)
                assert stored["payment_intent_id"] == "pi_1"
                assert stored["status"] == PS_CREATED
                assert stored["updated_at"] == stored["created_at"]

                async with env.session_factory() as db:
                    result = await env.reconciler(db).fail_payment_intent(
                        "pi_1", "Your card was declined.")
                assert result.changed and not result.invoice_settled
                assert result.session["status"] == "failed"
                assert result.remote is None
                assert result.to_dict()["provider_session"] is None
                assert (await env.get_invoice(invoice["id"]))["status"] \
                    == "pending"

                failed = audit.events[-1]
                assert failed.event_type == "payment_failed"
                assert failed.entity_id == sid
                assert failed.metadata["reason"] == "Your card was declined."
                assert failed.metadata["from_status"] == "created"

                async with env.session_factory() as db:
                    again = await env.reconciler(db).fail_payment_intent(
                        "pi_1", "Your card was declined.")
                assert not again.changed
                assert audit.types().count("payment_failed") == 1
        asyncio.run(scenario())

    def test_failed_intent_after_completion_is_ignored(self, open_env,
                                                       provider, audit):
        async def scenario():
            async with open_env() as env:
                invoice, sid = await env.checkout()
                provider.set(sid, "complete", "paid", payment_intent="pi_2")
                async with env.session_factory() as db:
                    await env.reconciler(db).reconcile(sid)
                async with env.session_factory() as db:
                    result = await env.reconciler(db).fail_payment_intent(
                        "pi_2")
                assert not result.changed
                assert result.session["status"] == PS_COMPLETED
                assert result.invoice_status == "paid"
                assert "payment_failed" not in audit.types()
        asyncio.run(scenario())

    def test_unknown_intent(self, open_env):
        async def scenario():
            async with open_env() as env:
                async with env.session_factory() as db:
                    assert await env.reconciler(db).fail_payment_intent(
                        "pi_unknown") is None
        asyncio.run(scenario())


class HangingAuditSink(AuditSink):
    async def record(self, event):
        await asyncio.Event().wait()


class TestAuditTimeout:
    def test_hung_sink_is_bounded(self, caplog):
        event = AuditEvent(event_type="payment_attempted",
                           entity_type="payment", entity_id="cs_1")
        assert asyncio.run(
            emit_audit(HangingAuditSink(), event, timeout=0.05)) is False
        assert "audit write timed out" in caplog.text

    def test_reconcile_finishes_despite_hung_sink(self, open_env, provider):
        async def scenario():
            async with open_env() as env:
                _, sid = await env.checkout()
                env.audit = HangingAuditSink()
                provider.set(sid, "complete", "paid")
                async with env.session_factory() as db:
                    rec = env.reconciler(db, db_timeout=0.5)
                    result = await asyncio.wait_for(rec.reconcile(sid), 5)
                assert result.changed
                assert result.invoice_status == "paid"
        asyncio.run(scenario())
