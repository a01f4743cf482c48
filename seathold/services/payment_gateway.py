import enum
import hashlib
import hmac
import logging
from typing import Dict, Optional
from uuid import uuid4

import httpx

from seathold.config import settings
from seathold.redis_client import redis_client
from seathold.services.errors import PaymentError, PaymentLookupTimeout

logger = logging.getLogger(__name__)


class PaymentOutcome(str, enum.Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    CANCELED = "canceled"
    PENDING = "pending"


class BaseAdapter:
    provider_name: str = "base"
    signature_header: str = "x-signature"

    # provider status string (lower-cased) -> outcome
    status_map: Dict[str, PaymentOutcome] = {}

    async def initiate(self, ticket, amount: float, currency: str) -> Dict:
        raise NotImplementedError()

    async def lookup(self, provider_ref: str) -> Dict:
        """Ask the provider for the current status of ``provider_ref``; returns ``{"outcome", "transaction_id", "raw"}``."""
        raise NotImplementedError()

    def parse_webhook(self, payload: Dict) -> Dict:
        """Normalise a webhook body into ``{"event_id", "provider_ref", "outcome", "raw"}``."""
        raise NotImplementedError()

    async def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        # default: HMAC-SHA256 using provider secret configured in settings
        secret = self.get_secret()
        if not secret:
            return False
        sig_header = headers.get(self.signature_header) or headers.get("x-signature") or ""
        computed = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, sig_header)

    def get_secret(self) -> Optional[str]:
        return ""

    def to_outcome(self, status: Optional[str]) -> PaymentOutcome:
        return self.status_map.get((status or "").strip().lower(), PaymentOutcome.PENDING)

    async def _post(self, url: str, payload: Dict, headers: Dict[str, str]) -> Dict:
        try:
            async with httpx.AsyncClient(timeout=settings.PAYMENT_LOOKUP_TIMEOUT_SECONDS) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise PaymentLookupTimeout("%s did not answer in time" % self.provider_name) from exc
        except httpx.HTTPError as exc:
            raise PaymentError("%s request failed: %s" % (self.provider_name, exc)) from exc
        if resp.status_code >= 400:
            logger.error("%s returned %s: %s", self.provider_name, resp.status_code, resp.text)
            raise PaymentError("%s rejected the request (%s)" % (self.provider_name, resp.status_code))
        return resp.json()

    async def _get(self, url: str, headers: Dict[str, str]) -> Dict:
        try:
            async with httpx.AsyncClient(timeout=settings.PAYMENT_LOOKUP_TIMEOUT_SECONDS) as client:
                resp = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise PaymentLookupTimeout("%s did not answer in time" % self.provider_name) from exc
        except httpx.HTTPError as exc:
            raise PaymentError("%s request failed: %s" % (self.provider_name, exc)) from exc
        if resp.status_code >= 400:
            logger.error("%s returned %s: %s", self.provider_name, resp.status_code, resp.text)
            raise PaymentError("%s rejected the request (%s)" % (self.provider_name, resp.status_code))
        return resp.json()


class KhaltiAdapter(BaseAdapter):
    provider_name = "khalti"
    signature_header = "x-khalti-signature"
    status_map = {
        "completed": PaymentOutcome.COMPLETED,
        "refunded": PaymentOutcome.REFUNDED,
        "partially refunded": PaymentOutcome.REFUNDED,
        "expired": PaymentOutcome.EXPIRED,
        "user canceled": PaymentOutcome.CANCELED,
        "canceled": PaymentOutcome.CANCELED,
        "pending": PaymentOutcome.PENDING,
        "initiated": PaymentOutcome.PENDING,
    }

    def get_secret(self) -> Optional[str]:
        return settings.KHALTI_SECRET_KEY

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": "Key %s" % settings.KHALTI_SECRET_KEY}

    async def initiate(self, ticket, amount: float, currency: str) -> Dict:
        # Khalti takes amounts in paisa
        amount_paisa = int(round(float(amount) * 100))
        seats = list(ticket.seat_labels or [])
        payload = {
            "return_url": "%s/payments/verify" % settings.PAYMENT_CALLBACK_HOST,
            "website_url": settings.PAYMENT_CALLBACK_HOST,
            "amount": amount_paisa,
            "purchase_order_id": ticket.booking_id,
            "purchase_order_name": "Bus ticket %s" % ticket.booking_id,
            "customer_info": {
                "name": ticket.passenger_name,
                "email": ticket.passenger_email,
                "phone": ticket.passenger_phone,
            },
            "product_details": [
                {
                    "identity": "SEAT-%s" % seat,
                    "name": "Seat %s" % seat,
                    "total_price": amount_paisa // max(len(seats), 1),
                    "quantity": 1,
                    "unit_price": amount_paisa // max(len(seats), 1),
                }
                for seat in seats
            ],
        }
        data = await self._post("%s/epayment/initiate/" % settings.KHALTI_API_URL, payload, self._headers())
        return {"provider": self.provider_name, "provider_ref": data["pidx"], "checkout_url": data.get("payment_url"), "raw": data}

    async def lookup(self, provider_ref: str) -> Dict:
        data = await self._post("%s/epayment/lookup/" % settings.KHALTI_API_URL, {"pidx": provider_ref}, self._headers())
        return {"outcome": self.to_outcome(data.get("status")), "transaction_id": data.get("transaction_id"), "raw": data}

    def parse_webhook(self, payload: Dict) -> Dict:
        provider_ref = payload.get("pidx")
        return {
            "event_id": payload.get("transaction_id") or (provider_ref and "%s:%s" % (provider_ref, payload.get("status"))),
            "provider_ref": provider_ref,
            "outcome": self.to_outcome(payload.get("status")),
            "transaction_id": payload.get("transaction_id"),
            "raw": payload,
        }


class FlutterwaveAdapter(BaseAdapter):
    provider_name = "flutterwave"
    signature_header = "x-flutterwave-signature"
    status_map = {
        "successful": PaymentOutcome.COMPLETED,
        "success": PaymentOutcome.COMPLETED,
        "completed": PaymentOutcome.COMPLETED,
        "refunded": PaymentOutcome.REFUNDED,
        "cancelled": PaymentOutcome.CANCELED,
        "canceled": PaymentOutcome.CANCELED,
        "failed": PaymentOutcome.CANCELED,
        "expired": PaymentOutcome.EXPIRED,
        "pending": PaymentOutcome.PENDING,
    }

    def get_secret(self) -> Optional[str]:
        return settings.FLUTTERWAVE_SECRET

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": "Bearer %s" % settings.FLUTTERWAVE_SECRET}

    async def initiate(self, ticket, amount: float, currency: str) -> Dict:
        provider_ref = f"flw_{uuid4().hex}"
        payload = {
            "tx_ref": provider_ref,
            "amount": float(amount),
            "currency": currency,
            "redirect_url": "%s/payments/verify" % settings.PAYMENT_CALLBACK_HOST,
            "customer": {
                "email": ticket.passenger_email,
                "name": ticket.passenger_name,
                "phonenumber": ticket.passenger_phone,
            },
            "meta": {"booking_id": ticket.booking_id},
        }
        data = await self._post("%s/payments" % settings.FLUTTERWAVE_API_URL, payload, self._headers())
        checkout_url = (data.get("data") or {}).get("link")
        return {"provider": self.provider_name, "provider_ref": provider_ref, "checkout_url": checkout_url, "raw": data}

    async def lookup(self, provider_ref: str) -> Dict:
        data = await self._get(
            "%s/transactions/verify_by_reference?tx_ref=%s" % (settings.FLUTTERWAVE_API_URL, provider_ref), self._headers()
        )
        body = data.get("data") or {}
        return {"outcome": self.to_outcome(body.get("status")), "transaction_id": body.get("id"), "raw": data}

    def parse_webhook(self, payload: Dict) -> Dict:
        data = payload.get("data", {})
        return {
            "event_id": payload.get("id") or data.get("id"),
            "provider_ref": data.get("tx_ref") or data.get("flw_ref"),
            "outcome": self.to_outcome(data.get("status")),
            "transaction_id": data.get("id"),
            "raw": payload,
        }


ADAPTERS = {
    "khalti": KhaltiAdapter(),
    "flutterwave": FlutterwaveAdapter(),
}


async def get_adapter(name: str) -> BaseAdapter:
    ad = ADAPTERS.get((name or "").lower())
    if not ad:
        raise PaymentError(f"Unknown provider: {name}")
    return ad


IDEMPOTENCY_KEY_TPL = "payment_webhook:{provider}:{event_id}"


async def mark_event_processed(provider: str, event_id: str, ttl: int = None) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    # set NX to ensure we only process once
    added = await redis_client.set(key, "1", ex=ttl or settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS, nx=True)
    return bool(added)


async def is_event_processed(provider: str, event_id: str) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    return bool(await redis_client.exists(key))


async def forget_event(provider: str, event_id: str):
    """Drop the replay key so the provider's retry of a failed delivery is processed again."""
    await redis_client.delete(IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id))
