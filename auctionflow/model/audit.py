"""
Audit trail for payment and invoice state changes.

Recording is fire-and-forget from the caller's point of view: use
``emit_audit`` so a failing sink is logged and never fails the request or
undoes the business change that was already committed.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import asyncio
import json
import logging
import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated

log = logging.getLogger(__name__)

# event types
PAYMENT_ATTEMPTED = "payment_attempted"
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_EXPIRED = "payment_expired"
PAYMENT_FAILED = "payment_failed"
INVOICE_CREATED = "invoice_created"
INVOICE_PAID = "invoice_paid"
CALCULATION_PERFORMED = "calculation_performed"


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    entity_type: str
    entity_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None


class AuditSink(ABC):
    @abstractmethod
    async def record(self, event: AuditEvent) -> None: ...


class SqlAuditSink(AuditSink):
    """Writes to ``audit_logs`` on its own session, outside any business tx."""

    def __init__(self, *, session_factory: Callable[[], AsyncSession],
                 gated: Gated) -> None:
        self.session_factory = session_factory
        self.gated = gated

    async def record(self, event: AuditEvent) -> None:
        async with self.session_factory() as db:
            async with self.gated():
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO audit_logs(
                        id, event_type, entity_type, entity_id,
                        correlation_id, metadata, created_at
                      ) VALUES (
                        :id, :event_type, :entity_type, :entity_id,
                        :correlation_id, :metadata, :created_at
                      )
                    """), {
                        "id": uuid.uuid4().hex,
                        "event_type": event.event_type,
                        "entity_type": event.entity_type,
                        "entity_id": event.entity_id,
                        "correlation_id": (
                            event.correlation_id or uuid.uuid4().hex
                        ),
                        "metadata": json.dumps(event.metadata, default=str),
                        "created_at": now_ts(),
                    })

    async def _select(self, where: str, params: Dict[str, Any],
                      order: str = "DESC") -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            async with self.gated():
                async with db.begin():
                    rows = (await db.execute(text(f"""
                      SELECT id, event_type, entity_type, entity_id,
                             correlation_id, metadata, created_at
                      FROM audit_logs WHERE {where}
                      ORDER BY created_at {order}
                      LIMIT :lim
                    """), params)).mappings().all()
        return [
            {
                "id": r["id"],
                "event_type": r["event_type"],
                "entity_type": r["entity_type"],
                "entity_id": r["entity_id"],
                "correlation_id": r["correlation_id"],
                "metadata": json.loads(r["metadata"] or "{}"),
                "created_at": to_iso(r["created_at"]),
            }
            for r in rows
        ]

    async def get_entity_logs(self, entity_type: str, entity_id: str,
                              limit: int = 100) -> List[Dict[str, Any]]:
        return await self._select(
            "entity_type=:et AND entity_id=:eid",
            {"et": entity_type, "eid": entity_id, "lim": limit},
        )

    async def get_logs_by_correlation_id(
            self, correlation_id: str, limit: int = 500
    ) -> List[Dict[str, Any]]:
        return await self._select(
            "correlation_id=:cid",
            {"cid": correlation_id, "lim": limit},
            order="ASC",
        )


async def emit_audit(
    sink: AuditSink,
    event: AuditEvent,
    timeout: float = config.DB_TIMEOUT_SECONDS,
) -> bool:
    try:
        await asyncio.wait_for(sink.record(event), timeout)
    except asyncio.TimeoutError:
        log.error("audit write timed out after %ss: %s %s/%s", timeout,
                  event.event_type, event.entity_type, event.entity_id)
        return False
    except Exception:
        # audit loss is an ops problem, not a request failure
        log.exception("audit write failed: %s %s/%s", event.event_type,
                      event.entity_type, event.entity_id)
        return False
    return True
