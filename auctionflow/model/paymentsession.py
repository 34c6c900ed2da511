from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso, from_cents
from ..infra.sql import Gated
from .db import PS_CREATED, PS_COMPLETED, INV_PAID


@dataclass(frozen=True)
class TransitionOutcome:
    applied: bool  # False: another writer moved the session first
    invoice_settled: bool


class PaymentSessionStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_session(
        self,
        session_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        payment_intent_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_sessions(
                    session_id, invoice_id, amount, currency, status,
                    provider_payment_status, payment_intent_id,
                    created_at, updated_at
                  ) VALUES (
                    :session_id, :invoice_id, :amount, :currency, :status,
                    NULL, :payment_intent_id, :ts, :ts
                  )
                """), {
                    "session_id": session_id,
                    "invoice_id": invoice_id,
                    "amount": int(amount),
                    "currency": currency,
                    "status": PS_CREATED,
                    "payment_intent_id": payment_intent_id,
                    "ts": ts,
                })
        return {
            "session_id": session_id,
            "invoice_id": invoice_id,
            "amount": int(amount),
            "currency": currency,
            "status": PS_CREATED,
            "provider_payment_status": None,
            "payment_intent_id": payment_intent_id,
            "created_at": ts,
            "updated_at": ts,
        }

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_sessions WHERE session_id=:sid
                """), {"sid": session_id})).mappings().first()
                return dict(row) if row else None

    async def get_session_by_payment_intent(
            self, payment_intent_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_sessions
                  WHERE payment_intent_id=:pi
                  ORDER BY created_at DESC
                  LIMIT 1
                """), {"pi": payment_intent_id})).mappings().first()
                return dict(row) if row else None

    async def attach_payment_intent(
            self, session_id: str, payment_intent_id: str
    ) -> bool:
        # first writer wins; status and updated_at are left alone
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE payment_sessions SET payment_intent_id=:pi
                  WHERE session_id=:sid AND payment_intent_id IS NULL
                """), {"pi": payment_intent_id, "sid": session_id})
                return res.rowcount == 1

    async def apply_transition(
        self,
        session: Mapping[str, Any],
        target: str,
        provider_payment_status: Optional[str],
        payment_method: str,
    ) -> TransitionOutcome:
        """
        Move ``session`` from the status it was read with to ``target`` and,
        for ``completed``, settle the linked invoice. Both updates are
        conditional and share one transaction: a concurrent reconciler that
        lost the race updates zero rows and writes nothing.
        """
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE payment_sessions
                  SET status=:target, provider_payment_status=:pps,
                      updated_at=:ts
                  WHERE session_id=:sid AND status=:expected
                """), {
                    "target": target,
                    "pps": provider_payment_status,
                    "ts": ts,
                    "sid": session["session_id"],
                    "expected": session["status"],
                })
                if res.rowcount != 1:
                    return TransitionOutcome(applied=False,
                                             invoice_settled=False)

                settled = False
                if target == PS_COMPLETED:
                    res = await self.db.execute(text("""
                      UPDATE invoices
                      SET status=:paid, payment_method=:pm, paid_at=:ts,
                          updated_at=:ts
                      WHERE id=:iid AND status <> :paid
                    """), {
                        "paid": INV_PAID,
                        "pm": payment_method,
                        "ts": ts,
                        "iid": session["invoice_id"],
                    })
                    settled = res.rowcount == 1
        return TransitionOutcome(applied=True, invoice_settled=settled)


def session_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "session_id": row["session_id"],
        "invoice_id": row["invoice_id"],
        "amount": str(from_cents(row["amount"])),
        "currency": row["currency"],
        "status": row["status"],
        "provider_payment_status": row["provider_payment_status"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
    }
