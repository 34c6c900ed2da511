"""
Payment reconciliation.

Keeps a locally owned ``PaymentSession`` / ``Invoice`` pair consistent with
the provider's checkout session, which we only ever observe by asking for
it. One call of ``PaymentReconciler.reconcile`` is one check:

  1. load the local session (``NotFoundError`` if missing)
  2. ask the provider for its view (``UpstreamError`` on failure/timeout,
     nothing is written)
  3. map the remote view to a local target status
  4. equal status, or a session that is already terminal -> no-op
  5. otherwise apply the conditional session(+invoice) update in one
     transaction, record audit events, then re-read
  6. return the combined local/remote view

Polling and webhooks both end up here, any number of times. A signed
"payment failed" notification for a payment intent takes the same
conditional transition through ``fail_payment_intent``.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, TypeVar
import asyncio
import logging

from . import config
from .errors import ConflictError, NotFoundError, UpstreamError
from .helpers import from_cents
from .infra.sql import bounded_db
from .infra.timings import timeit
from .model.audit import (
    AuditEvent, AuditSink, emit_audit,
    PAYMENT_ATTEMPTED, PAYMENT_SUCCEEDED, PAYMENT_EXPIRED, PAYMENT_FAILED,
    INVOICE_PAID,
)
from .model.db import (
    PS_CREATED, PS_COMPLETED, PS_EXPIRED, PS_FAILED, PS_STATUSES,
    PS_TERMINAL, INV_PENDING,
)
from .model.invoices import InvoiceStore
from .model.paymentsession import PaymentSessionStore, session_to_dict
from .payments import PaymentAdapter, RemoteSession

log = logging.getLogger(__name__)

T = TypeVar("T")

PAYMENT_EVENTS = {
    PS_COMPLETED: PAYMENT_SUCCEEDED,
    PS_EXPIRED: PAYMENT_EXPIRED,
    PS_FAILED: PAYMENT_FAILED,
}


def map_remote_status(remote: RemoteSession, current: str = PS_CREATED) -> str:
    if remote.payment_status == "paid":
        return PS_COMPLETED
    if remote.status == "expired":
        return PS_EXPIRED
    if "failed" in (remote.status, remote.payment_status):
        return PS_FAILED
    # provider states without a local counterpart (open, complete but
    # unpaid) mean the session is still in progress
    if remote.status in PS_STATUSES:
        return remote.status
    return current


@dataclass(frozen=True)
class ReconciledSession:
    session: Dict[str, Any]
    remote: Optional[RemoteSession]  # None when driven by a signed event
    invoice_status: Optional[str]
    changed: bool
    invoice_settled: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": session_to_dict(self.session),
            "provider_session": (
                self.remote.to_dict() if self.remote is not None else None
            ),
            "invoice": {
                "id": self.session["invoice_id"],
                "status": self.invoice_status,
            },
            "changed": self.changed,
            "invoice_settled": self.invoice_settled,
        }


class PaymentReconciler:
    def __init__(
        self,
        *,
        sessions: PaymentSessionStore,
        invoices: InvoiceStore,
        provider: PaymentAdapter,
        audit: AuditSink,
        provider_timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        db_timeout: float = config.DB_TIMEOUT_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.invoices = invoices
        self.provider = provider
        self.audit = audit
        self.provider_timeout = provider_timeout
        self.db_timeout = db_timeout

    # ----------------------------
    # bounded calls
    # ----------------------------
    async def _db(self, kind: str, aw: Awaitable[T]) -> T:
        return await bounded_db(kind, aw, self.db_timeout)

    async def _provider(self, kind: str, aw: Awaitable[T]) -> T:
        try:
            async with timeit(kind):
                return await asyncio.wait_for(aw, self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"{kind} timed out after {self.provider_timeout}s"
            ) from e

    async def _invoice_status(self, invoice_id: str) -> Optional[str]:
        inv = await self._db("db.get_invoice",
                             self.invoices.get_invoice(invoice_id))
        return inv["status"] if inv else None

    async def _audit(self, event: AuditEvent) -> None:
        await emit_audit(self.audit, event, timeout=self.db_timeout)

    # ----------------------------
    # protocol
    # ----------------------------
    async def reconcile(self, session_id: str) -> ReconciledSession:
        session = await self._db("db.get_session",
                                 self.sessions.get_session(session_id))
        if session is None:
            raise NotFoundError("payment_session", session_id)

        # no local write may happen before the provider has answered
        remote = await self._provider(
            "provider.retrieve_session",
            self.provider.retrieve_session(session_id),
        )

        if remote.payment_intent and not session["payment_intent_id"]:
            # intent-level webhooks only carry the intent id
            await self._db("db.attach_payment_intent",
                           self.sessions.attach_payment_intent(
                               session_id, remote.payment_intent))
            session = dict(session, payment_intent_id=remote.payment_intent)

        return await self._transition(
            session,
            map_remote_status(remote, session["status"]),
            remote=remote,
            provider_payment_status=remote.payment_status,
            observed={
                "provider_status": remote.status,
                "provider_payment_status": remote.payment_status,
                "amount": (
                    str(from_cents(remote.amount_total))
                    if remote.amount_total is not None else None
                ),
                "currency": remote.currency,
            },
        )

    async def fail_payment_intent(
        self, payment_intent_id: str, reason: Optional[str] = None
    ) -> Optional[ReconciledSession]:
        """
        Apply a signed "payment failed" notification for a payment intent.
        Returns None when no local session knows the intent.
        """
        session = await self._db(
            "db.get_session_by_payment_intent",
            self.sessions.get_session_by_payment_intent(payment_intent_id),
        )
        if session is None:
            log.info("payment intent %s has no local session",
                     payment_intent_id)
            return None
        return await self._transition(
            session, PS_FAILED,
            remote=None,
            provider_payment_status=PS_FAILED,
            observed={
                "payment_intent_id": payment_intent_id,
                "reason": reason or "Payment failed",
            },
        )

    async def _transition(
        self,
        session: Dict[str, Any],
        target: str,
        *,
        remote: Optional[RemoteSession],
        provider_payment_status: Optional[str],
        observed: Dict[str, Any],
    ) -> ReconciledSession:
        session_id = session["session_id"]
        invoice_id = session["invoice_id"]
        current = session["status"]

        if target == current or current in PS_TERMINAL:
            if target != current:
                log.warning(
                    "payment session %s is %s; ignoring provider view %s",
                    session_id, current, observed,
                )
            return ReconciledSession(
                session=session, remote=remote,
                invoice_status=await self._invoice_status(invoice_id),
                changed=False, invoice_settled=False,
            )

        invoice = await self._db("db.get_invoice",
                                 self.invoices.get_invoice(invoice_id))
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        outcome = await self._db(
            "db.apply_transition",
            self.sessions.apply_transition(
                session, target, provider_payment_status,
                payment_method=self.provider.name,
            ),
        )

        if outcome.applied:
            log.info("payment session %s: %s -> %s (invoice %s settled=%s)",
                     session_id, current, target, invoice_id,
                     outcome.invoice_settled)
            # recorded before any re-read: a retry after a failed read
            # finds the session already moved and will not record again
            await self._record(session, current, target, invoice,
                               outcome.invoice_settled, observed)
        else:
            log.info("payment session %s was reconciled concurrently",
                     session_id)

        fresh = await self._db("db.get_session",
                               self.sessions.get_session(session_id))
        if outcome.applied:
            fallback = dict(session, status=target)
        else:
            fallback = session
        return ReconciledSession(
            session=fresh or fallback,
            remote=remote,
            invoice_status=await self._invoice_status(invoice_id),
            changed=outcome.applied,
            invoice_settled=outcome.invoice_settled,
        )

    async def _record(
        self,
        session: Dict[str, Any],
        current: str,
        target: str,
        invoice: Dict[str, Any],
        settled: bool,
        observed: Dict[str, Any],
    ) -> None:
        session_id = session["session_id"]
        await self._audit(AuditEvent(
            event_type=PAYMENT_EVENTS.get(target, "payment_status_changed"),
            entity_type="payment",
            entity_id=session_id,
            correlation_id=session_id,
            metadata=dict(
                observed,
                invoice_id=session["invoice_id"],
                from_status=current,
                to_status=target,
            ),
        ))
        if settled:
            await self._audit(AuditEvent(
                event_type=INVOICE_PAID,
                entity_type="invoice",
                entity_id=session["invoice_id"],
                correlation_id=session_id,
                metadata={
                    "session_id": session_id,
                    "payment_method": self.provider.name,
                    "grand_total": str(from_cents(invoice["grand_total"])),
                    "currency": invoice["currency"],
                },
            ))

    async def start_checkout(
        self, invoice_id: str, success_url: str, cancel_url: str
    ) -> Dict[str, Any]:
        invoice = await self._db("db.get_invoice",
                                 self.invoices.get_invoice(invoice_id))
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)
        if invoice["status"] != INV_PENDING:
            raise ConflictError(
                f"invoice {invoice_id} is {invoice['status']}, not pending"
            )

        created = await self._provider(
            "provider.create_session",
            self.provider.create_checkout_session(
                invoice, success_url, cancel_url
            ),
        )
        row = await self._db("db.create_session", self.sessions.create_session(
            created["payment_session_id"],
            invoice_id,
            invoice["grand_total"],
            invoice["currency"],
            payment_intent_id=created.get("payment_intent_id"),
        ))

        await self._audit(AuditEvent(
            event_type=PAYMENT_ATTEMPTED,
            entity_type="payment",
            entity_id=created["payment_session_id"],
            correlation_id=created["payment_session_id"],
            metadata={
                "invoice_id": invoice_id,
                "amount": str(from_cents(invoice["grand_total"])),
                "currency": invoice["currency"],
            },
        ))
        return {
            "session_id": created["payment_session_id"],
            "payment_url": created["redirect_url"],
            "payment_session": session_to_dict(row),
        }
