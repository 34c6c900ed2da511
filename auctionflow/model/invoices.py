from __future__ import annotations
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..calculations import InvoiceTotals, RateConfig
from ..errors import UpstreamError
from ..helpers import (
    now_ts, to_iso, to_cents, from_cents, due_date_iso, new_invoice_number
)
from ..infra.sql import Gated
from .db import INV_PENDING


class InvoiceStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_invoice(
        self,
        totals: InvoiceTotals,
        rate_config: RateConfig,
        buyer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Persist an invoice and its items in one transaction. ``totals``
        should come from ``compute_invoice_totals(..., round_steps=True)``
        so that the stored cents add up.
        """
        invoice_id = uuid.uuid4().hex
        ts = now_ts()
        premium = totals.breakdown.buyers_premium
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO invoices(
                    id, invoice_number, buyer_id, status, subtotal,
                    buyers_premium_rate, buyers_premium_amount, tax_rate,
                    tax_amount, grand_total, currency, payment_method,
                    due_date, created_at, updated_at, paid_at
                  ) VALUES (
                    :id, :invoice_number, :buyer_id, :status, :subtotal,
                    :buyers_premium_rate, :buyers_premium_amount, :tax_rate,
                    :tax_amount, :grand_total, :currency, NULL,
                    :due_date, :ts, :ts, NULL
                  )
                """), {
                    "id": invoice_id,
                    "invoice_number": new_invoice_number(ts),
                    "buyer_id": buyer_id,
                    "status": INV_PENDING,
                    "subtotal": to_cents(totals.subtotal),
                    "buyers_premium_rate": str(premium.rate),
                    "buyers_premium_amount":
                        to_cents(totals.buyers_premium_amount),
                    "tax_rate": str(rate_config.tax_rate),
                    "tax_amount": to_cents(totals.tax_amount),
                    "grand_total": to_cents(totals.grand_total),
                    "currency": totals.currency,
                    "due_date": due_date_iso(config.INVOICE_DUE_DAYS, ts),
                    "ts": ts,
                })
                for line in totals.breakdown.items:
                    await self.db.execute(text("""
                      INSERT INTO invoice_items(
                        id, invoice_id, lot_id, title, quantity, unit_price,
                        total_price, created_at
                      ) VALUES (
                        :id, :invoice_id, :lot_id, :title, :quantity,
                        :unit_price, :total_price, :ts
                      )
                    """), {
                        "id": uuid.uuid4().hex,
                        "invoice_id": invoice_id,
                        "lot_id": line.lot_id,
                        "title": line.title,
                        "quantity": line.quantity,
                        "unit_price": str(line.unit_price),
                        "total_price": to_cents(line.total_price),
                        "ts": ts,
                    })
        out = await self.get_invoice(invoice_id)
        if out is None:
            raise UpstreamError(f"invoice {invoice_id} missing after insert")
        return out

    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM invoices WHERE id=:id
                """), {"id": invoice_id})).mappings().first()
                return dict(row) if row else None

    async def get_invoice_items(self, invoice_id: str) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT lot_id, title, quantity, unit_price, total_price
                  FROM invoice_items WHERE invoice_id=:id
                  ORDER BY created_at, lot_id
                """), {"id": invoice_id})).mappings().all()
        return [dict(r) for r in rows]


def invoice_to_dict(
        row: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    out = {
        "id": row["id"],
        "invoice_number": row["invoice_number"],
        "buyer_id": row["buyer_id"],
        "status": row["status"],
        "subtotal": str(from_cents(row["subtotal"])),
        "buyers_premium_rate": row["buyers_premium_rate"],
        "buyers_premium_amount": str(from_cents(row["buyers_premium_amount"])),
        "tax_rate": row["tax_rate"],
        "tax_amount": str(from_cents(row["tax_amount"])),
        "grand_total": str(from_cents(row["grand_total"])),
        "currency": row["currency"],
        "payment_method": row["payment_method"],
        "due_date": row["due_date"],
        "created_at": to_iso(row["created_at"]),
        "paid_at": to_iso(row["paid_at"]),
    }
    if items is not None:
        out["items"] = [
            {
                "lot_id": i["lot_id"],
                "title": i["title"],
                "quantity": i["quantity"],
                "unit_price": i["unit_price"],
                "total_price": str(from_cents(i["total_price"])),
            }
            for i in items
        ]
    return out
