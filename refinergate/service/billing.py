from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from refinergate.logging import email_fingerprint, get_logger
from refinergate.service.credentials import normalize_email
from refinergate.service.errors import (
    NotConfiguredError,
    SignatureInvalidError,
    UpstreamError,
    ValidationError,
)
from refinergate.storage.provider import Store, StoreProvider

logger = get_logger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
CHECKOUT_COMPLETED = "checkout.session.completed"
_MAX_METADATA_KEYS = 50


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split ``t=<ts>,v1=<hex>[,v1=...]`` into the timestamp and v1 signatures."""
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


class BillingEventVerifier:
    """Checks webhook signatures and applies best-effort bookkeeping.

    Once an event is verified it is always acknowledged: the sender retries
    on non-2xx, and a failed lookup or audit write would never heal by retry.
    """

    def __init__(
        self,
        stores: StoreProvider,
        *,
        webhook_secret: Optional[str],
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stores = stores
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        if not signature_header or not self.webhook_secret:
            raise NotConfiguredError("Webhook not configured", status_code=400)
        timestamp, signatures = parse_signature_header(signature_header)
        if timestamp is None or not signatures:
            raise SignatureInvalidError("Webhook signature verification failed")
        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            logger.warning("billing_signature_stale", timestamp=timestamp)
            raise SignatureInvalidError("Webhook signature verification failed")
        expected = compute_signature(self.webhook_secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            logger.warning("billing_signature_mismatch")
            raise SignatureInvalidError("Webhook signature verification failed")
        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Webhook payload is not valid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload is not valid JSON")
        return event

    async def handle(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, signature_header)
        event_type = event.get("type")
        if event_type == CHECKOUT_COMPLETED:
            self._on_checkout_completed(event)
        else:
            logger.info("billing_event_ignored", event_type=event_type, event_id=event.get("id"))
        return {"received": True}

    def _on_checkout_completed(self, event: Dict[str, Any]) -> None:
        session = (event.get("data") or {}).get("object") or {}
        if not isinstance(session, dict):
            logger.warning("billing_event_malformed", event_id=event.get("id"))
            return
        metadata = session.get("metadata") or {}
        customer_id = session.get("customer")
        customer_email = (session.get("customer_details") or {}).get("email") or session.get(
            "customer_email"
        )
        if not customer_id and not customer_email:
            logger.info("billing_checkout_without_customer", session_id=session.get("id"))
            return

        try:
            store = self.stores.acquire()
        except Exception as exc:
            logger.error("billing_store_unavailable", error=str(exc))
            return

        user_id = self._resolve_user_id(store, metadata, customer_email)
        details = f"session={session.get('id')}, customer={customer_id}, plan={metadata.get('plan')}"
        try:
            if store.has_audit_entry(CHECKOUT_COMPLETED, details):
                logger.info("billing_event_duplicate", session_id=session.get("id"))
                return
            store.record_audit(CHECKOUT_COMPLETED, user_id=user_id, details=details)
        except Exception as exc:
            logger.error("billing_audit_failed", session_id=session.get("id"), error=str(exc))
            return
        logger.info("billing_checkout_recorded", session_id=session.get("id"), user_id=user_id)

    @staticmethod
    def _resolve_user_id(
        store: Store, metadata: Dict[str, Any], customer_email: Any
    ) -> Optional[str]:
        meta_user_id = metadata.get("userId")
        if isinstance(meta_user_id, str) and meta_user_id:
            return meta_user_id
        if not isinstance(customer_email, str) or not customer_email:
            return None
        normalized = normalize_email(customer_email)
        try:
            user = store.get_user_by_email(normalized)
        except Exception as exc:
            logger.warning("billing_user_lookup_failed", error=str(exc))
            return None
        if not user:
            logger.info("billing_user_unresolved", account=email_fingerprint(normalized))
            return None
        return user.id


class CheckoutService:
    """Creates hosted checkout sessions through the provider's REST API."""

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        base_url: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def create_session(
        self,
        price_id: Any,
        *,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.secret_key:
            raise NotConfiguredError("Stripe not configured")
        if not isinstance(price_id, str) or not price_id.strip():
            raise ValidationError("Missing priceId")
        if metadata is not None and (
            not isinstance(metadata, dict) or len(metadata) > _MAX_METADATA_KEYS
        ):
            raise ValidationError("metadata must be an object with at most 50 keys")

        form: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types[]": ["card"],
            "line_items[0][price]": price_id.strip(),
            "line_items[0][quantity]": "1",
            "success_url": f"{self.base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.base_url}/cancel",
        }
        if customer_email:
            form["customer_email"] = customer_email
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = "" if value is None else str(value)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.api_base}/v1/checkout/sessions",
                    data=form,
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                )
        except httpx.HTTPError as exc:
            logger.error("checkout_session_request_failed", error=str(exc))
            raise UpstreamError("Failed to create checkout session")
        if not response.is_success:
            logger.error(
                "checkout_session_rejected",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamError("Failed to create checkout session")
        try:
            data = response.json()
        except ValueError:
            logger.error("checkout_session_parse_error", status_code=response.status_code)
            raise UpstreamError("Failed to create checkout session")
        logger.info("checkout_session_created", session_id=data.get("id"))
        return {"id": data.get("id"), "url": data.get("url")}
