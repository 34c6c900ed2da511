from __future__ import annotations
import json
import logging
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .calculations import (
    compute_invoice_totals, parse_calculation_request, rates_for_category,
    totals_to_dict,
)
from .errors import (
    AuctionFlowError, ConflictError, NotFoundError, UpstreamError,
    ValidationError, FieldError,
)
from .infra.sql import bounded_db, make_async_engine
from .infra.timings import snapshot
from .model.audit import (
    AuditEvent, SqlAuditSink, emit_audit, CALCULATION_PERFORMED,
    INVOICE_CREATED,
)
from .model.db import Base
from .model.invoices import InvoiceStore, invoice_to_dict
from .model.paymentsession import PaymentSessionStore
from .payments import MockPay, PaymentAdapter, new_adapter
from .reconciliation import PaymentReconciler

log = logging.getLogger("auctionflow")

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="AuctionFlow",
    default_response_class=ORJSONResponse,
)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    UpstreamError: 502,
}


def get_adapter() -> PaymentAdapter:
    adapter = getattr(app.state, "adapter", None)
    if adapter is None:
        raise RuntimeError("payment adapter not initialized")
    return adapter


def audit_sink() -> SqlAuditSink:
    return SqlAuditSink(session_factory=SessionAsync, gated=gated)


async def reconciler(
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    audit: SqlAuditSink = Depends(audit_sink),
) -> PaymentReconciler:
    return PaymentReconciler(
        sessions=PaymentSessionStore(db=db, gated=gated),
        invoices=InvoiceStore(db=db, gated=gated),
        provider=adapter,
        audit=audit,
    )


@app.exception_handler(AuctionFlowError)
async def _auctionflow_error(request: Request, exc: AuctionFlowError):
    status = ERROR_STATUS.get(type(exc), 500)
    if exc.retryable:
        log.warning("%s %s: %s", request.method, request.url.path, exc.detail)
    return ORJSONResponse(exc.to_dict(), status_code=status)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("AuctionFlow is starting up (provider=%s)",
             config.PAYMENT_PROVIDER)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    app.state.adapter = new_adapter(config.PAYMENT_PROVIDER,
                                    http=app.state.http)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Health & metrics
# ----------------------------
@app.get("/api/health")
async def health(db: AsyncSession = Depends(get_db)):
    database = "ok"
    try:
        async with gated():
            async with db.begin():
                await db.execute(text("SELECT 1"))
    except Exception:
        log.exception("health check: database unreachable")
        database = "error"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "provider": get_adapter().name,
    }


@app.get("/api/metrics/performance")
async def performance_metrics():
    return {"timings": snapshot()}


# ----------------------------
# Calculations
# ----------------------------
@app.get("/api/calculations/rates")
async def calculation_rates(category: Optional[str] = None):
    return rates_for_category(category)


@app.post("/api/calculations/preview")
async def calculation_preview(
    payload: dict,
    audit: SqlAuditSink = Depends(audit_sink),
):
    items, rate_config = parse_calculation_request(payload)
    totals = compute_invoice_totals(items, rate_config)
    result = totals_to_dict(totals)

    await emit_audit(audit, AuditEvent(
        event_type=CALCULATION_PERFORMED,
        entity_type="calculation",
        entity_id="preview",
        metadata={"inputs": payload, "results": result["breakdown"]},
    ))
    return {"success": True, "calculations": result}


# ----------------------------
# Invoices
# ----------------------------
@app.post("/api/invoices", status_code=201)
async def create_invoice(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    audit: SqlAuditSink = Depends(audit_sink),
):
    items, rate_config = parse_calculation_request(payload)
    # stored amounts are cents, so round each step before the next one
    totals = compute_invoice_totals(items, rate_config, round_steps=True)

    store = InvoiceStore(db=db, gated=gated)
    row = await bounded_db("db.create_invoice", store.create_invoice(
        totals, rate_config, buyer_id=payload.get("buyer_id")
    ))
    inv_items = await bounded_db("db.get_invoice_items",
                                 store.get_invoice_items(row["id"]))

    await emit_audit(audit, AuditEvent(
        event_type=INVOICE_CREATED,
        entity_type="invoice",
        entity_id=row["id"],
        metadata={"invoice_number": row["invoice_number"],
                  "grand_total": str(totals.grand_total),
                  "currency": totals.currency},
    ))
    return invoice_to_dict(row, inv_items)


@app.get("/api/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, db: AsyncSession = Depends(get_db)):
    store = InvoiceStore(db=db, gated=gated)
    row = await bounded_db("db.get_invoice", store.get_invoice(invoice_id))
    if row is None:
        raise NotFoundError("invoice", invoice_id)
    items = await bounded_db("db.get_invoice_items",
                             store.get_invoice_items(invoice_id))
    return invoice_to_dict(row, items)


@app.get("/api/audit/invoices/{invoice_id}")
async def invoice_audit_trail(
    invoice_id: str,
    limit: int = 100,
    audit: SqlAuditSink = Depends(audit_sink),
):
    logs = await bounded_db("db.audit_logs", audit.get_entity_logs(
        "invoice", invoice_id, limit=max(1, min(limit, 500))
    ))
    return {"invoice_id": invoice_id, "logs": logs}


# payment events are keyed by the payment session id
@app.get("/api/audit/transactions/{transaction_id}")
async def transaction_audit_trail(
    transaction_id: str,
    limit: int = 100,
    audit: SqlAuditSink = Depends(audit_sink),
):
    logs = await bounded_db("db.audit_logs", audit.get_entity_logs(
        "payment", transaction_id, limit=max(1, min(limit, 500))
    ))
    return {
        "transaction_id": transaction_id,
        "audit_logs": logs,
        "total_count": len(logs),
    }


# ----------------------------
# Payments
# ----------------------------
@app.post("/api/payments/create-session", status_code=201)
async def create_payment_session(
    payload: dict,
    rec: PaymentReconciler = Depends(reconciler),
):
    invoice_id = payload.get("invoice_id")
    if not invoice_id:
        raise ValidationError([FieldError("invoice_id",
                                          "invoice_id is required")])
    success_url = payload.get("success_url") or (
        f"{config.APP_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = payload.get("cancel_url") or f"{config.APP_URL}/payment/cancel"
    return await rec.start_checkout(str(invoice_id), success_url, cancel_url)


# polled by the payment page until the session settles
@app.get("/api/payments/session/{session_id}")
async def payment_session_status(
    session_id: str,
    rec: PaymentReconciler = Depends(reconciler),
):
    result = await rec.reconcile(session_id)
    return result.to_dict()


@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    rec: PaymentReconciler = Depends(reconciler),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)

    failed = adapter.event_failed_payment_intent(event)
    if failed is not None:
        payment_intent_id, reason = failed
        result = await rec.fail_payment_intent(payment_intent_id, reason)
        if result is None:
            return {"received": True}
        return {
            "received": True,
            "status": result.session["status"],
            "changed": result.changed,
        }

    psid = adapter.event_session_id(event)
    if not psid:
        log.info("unhandled webhook event type: %s", event.get("type"))
        return {"received": True}

    # the event only tells us to look; the provider's answer decides
    result = await rec.reconcile(psid)
    return {
        "received": True,
        "status": result.session["status"],
        "changed": result.changed,
    }


# ----------------------------
# MockPay: simulate the customer's choice
# ----------------------------
@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    payload: dict,
    adapter: PaymentAdapter = Depends(get_adapter),
):
    if not isinstance(adapter, MockPay):
        raise NotFoundError("mockpay session", psid)

    event = adapter.emit(psid, str(payload.get("kind", "")))
    body = json.dumps(event).encode()

    delivered = False
    client_http: httpx.AsyncClient = app.state.http
    try:
        r = await client_http.post(
            config.MOCK_WEBHOOK_URL,
            content=body,
            headers={
                "x-mockpay-signature": adapter.sign(body),
                "content-type": "application/json",
            },
        )
        delivered = r.status_code < 400
    except httpx.HTTPError as e:
        # polling the session endpoint reconciles just the same
        log.warning("mockpay webhook delivery failed: %r", e)

    return {"ok": True, "event": event["type"], "delivered": delivered}
