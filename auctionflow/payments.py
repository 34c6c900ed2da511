from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Mapping, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import time
import uuid

import httpx

from . import config
from .errors import FieldError, NotFoundError, UpstreamError, ValidationError


STRIPE_SIGNATURE_TOLERANCE = 300  # seconds


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str
    payment_intent_id: Optional[str]


@dataclass(frozen=True)
class RemoteSession:
    """Provider-side view of a checkout session."""
    session_id: str
    status: str  # open | complete | expired | failed
    payment_status: str  # unpaid | paid | failed | no_payment_required
    amount_total: Optional[int] = None  # minor units
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _invalid_signature() -> ValidationError:
    return ValidationError([FieldError("signature", "invalid signature")])


class PaymentAdapter(ABC):
    name = "abstract"

    @abstractmethod
    async def create_checkout_session(
        self, invoice: Mapping[str, Any], success_url: str, cancel_url: str
    ) -> CreateSessionResult: ...

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> RemoteSession: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        ...

    # checkout session the event is about, None if we don't care
    @abstractmethod
    def event_session_id(self, event: dict) -> Optional[str]:
        ...

    # (payment intent id, failure message) for a failed-payment event
    def event_failed_payment_intent(
            self, event: dict
    ) -> Optional[Tuple[str, Optional[str]]]:
        return None


# ----------------------------
# Stripe implementation
# ----------------------------
class StripeAdapter(PaymentAdapter):
    name = "stripe"

    def __init__(
        self,
        secret_key: str = config.STRIPE_SECRET_KEY,
        webhook_secret: str = config.STRIPE_WEBHOOK_SECRET,
        api_base: str = config.STRIPE_API_BASE,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.http = http

    async def _request(
        self, method: str, path: str, data: Optional[Dict[str, str]] = None
    ) -> dict:
        url = f"{self.api_base}{path}"
        try:
            if self.http is not None:
                r = await self.http.request(
                    method, url, data=data, auth=(self.secret_key, ""),
                    timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.request(
                        method, url, data=data, auth=(self.secret_key, ""),
                    )
        except httpx.HTTPError as e:
            raise UpstreamError(f"stripe {method} {path} failed: {e!r}") from e

        if r.status_code >= 400:
            try:
                msg = r.json().get("error", {}).get("message", "")
            except ValueError:
                msg = r.text[:200]
            raise UpstreamError(
                f"stripe {method} {path} returned {r.status_code}: {msg}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError(f"stripe {method} {path}: invalid JSON") from e

    async def create_checkout_session(
        self, invoice: Mapping[str, Any], success_url: str, cancel_url: str
    ) -> CreateSessionResult:
        body = await self._request("POST", "/v1/checkout/sessions", data={
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]":
                str(invoice["currency"]).lower(),
            "line_items[0][price_data][unit_amount]":
                str(int(invoice["grand_total"])),
            "line_items[0][price_data][product_data][name]":
                f"Auction Invoice {invoice['invoice_number']}",
            "metadata[invoice_id]": str(invoice["id"]),
            "metadata[invoice_number]": str(invoice["invoice_number"]),
        })
        return {
            "payment_session_id": body["id"],
            "redirect_url": body.get("url") or "",
            "payment_intent_id": body.get("payment_intent"),
        }

    async def retrieve_session(self, session_id: str) -> RemoteSession:
        body = await self._request(
            "GET", f"/v1/checkout/sessions/{session_id}"
        )
        return RemoteSession(
            session_id=body.get("id", session_id),
            status=body.get("status") or "",
            payment_status=body.get("payment_status") or "",
            amount_total=body.get("amount_total"),
            currency=body.get("currency"),
            payment_intent=body.get("payment_intent"),
            metadata=dict(body.get("metadata") or {}),
        )

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        header = headers.get("stripe-signature")
        if not header or not self.webhook_secret:
            raise _invalid_signature()
        ts = None
        sigs = []
        for part in header.split(","):
            k, _, v = part.strip().partition("=")
            if k == "t":
                ts = v
            elif k == "v1":
                sigs.append(v)
        if ts is None or not ts.isdigit() or not sigs:
            raise _invalid_signature()
        if abs(time.time() - int(ts)) > STRIPE_SIGNATURE_TOLERANCE:
            raise _invalid_signature()
        expected = hmac.new(
            self.webhook_secret.encode(),
            ts.encode() + b"." + payload,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, s) for s in sigs):
            raise _invalid_signature()
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError([FieldError("payload", "invalid JSON")])

    def event_session_id(self, event: dict) -> Optional[str]:
        if not str(event.get("type", "")).startswith("checkout.session."):
            return None
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id")

    def event_failed_payment_intent(
            self, event: dict
    ) -> Optional[Tuple[str, Optional[str]]]:
        if event.get("type") != "payment_intent.payment_failed":
            return None
        obj = (event.get("data") or {}).get("object") or {}
        if not obj.get("id"):
            return None
        error = obj.get("last_payment_error") or {}
        return obj["id"], error.get("message")


# ----------------------------
# MockPay implementation
# ----------------------------
MOCK_KINDS = {
    # kind -> (session status, payment_status)
    "succeeded": ("complete", "paid"),
    "failed": ("failed", "failed"),
    "expired": ("expired", "unpaid"),
}


class MockPay(PaymentAdapter):
    """
    In-process stand-in for a hosted checkout. Sessions live in memory;
    ``emit`` flips their state the way a customer (or a timeout) would.
    """
    name = "mock"

    def __init__(self, secret: str = config.MOCK_SECRET) -> None:
        self.secret = secret
        self._sessions: Dict[str, Dict[str, Any]] = {}

    async def create_checkout_session(
        self, invoice: Mapping[str, Any], success_url: str, cancel_url: str
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        self._sessions[psid] = {
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": int(invoice["grand_total"]),
            "currency": str(invoice["currency"]).lower(),
            "metadata": {"invoice_id": str(invoice["id"])},
        }
        return {
            "payment_session_id": psid,
            "redirect_url": f"/mockpay/{psid}",
            "payment_intent_id": None,
        }

    async def retrieve_session(self, session_id: str) -> RemoteSession:
        h = self._sessions.get(session_id)
        if h is None:
            raise UpstreamError(f"mockpay: no such session {session_id}")
        return RemoteSession(
            session_id=session_id,
            status=h["status"],
            payment_status=h["payment_status"],
            amount_total=h["amount_total"],
            currency=h["currency"],
            metadata=dict(h["metadata"]),
        )

    def emit(self, session_id: str, kind: str) -> dict:
        if kind not in MOCK_KINDS:
            raise ValidationError([FieldError("kind", "invalid kind")])
        h = self._sessions.get(session_id)
        if h is None:
            raise NotFoundError("mockpay session", session_id)
        h["status"], h["payment_status"] = MOCK_KINDS[kind]
        return {
            "type": f"payment.{kind}",
            "payment_session_id": session_id,
            "amount": h["amount_total"],
            "currency": h["currency"],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise _invalid_signature()
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise ValidationError([FieldError("payload", "invalid JSON")])

    def event_session_id(self, event: dict) -> Optional[str]:
        return event.get("payment_session_id") or None


def new_adapter(
    kind: str = config.PAYMENT_PROVIDER,
    http: Optional[httpx.AsyncClient] = None,
) -> PaymentAdapter:
    if kind == "stripe":
        if not config.STRIPE_SECRET_KEY:
            raise RuntimeError("PAYMENT_PROVIDER=stripe requires "
                               "STRIPE_SECRET_KEY")
        return StripeAdapter(http=http)
    if kind == "mock":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_PROVIDER {kind!r}")
