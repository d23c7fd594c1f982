from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import stripe

from inventory import InventoryLedger
from mailer import Mailer, order_message
from storage import DocumentStore

logger = logging.getLogger(__name__)

PAID_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
RELEASE_EVENTS = (
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
)


class WebhookError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _iso(ts: Optional[int] = None) -> str:
    dt = datetime.fromtimestamp(ts, timezone.utc) if ts is not None else datetime.now(timezone.utc)
    return dt.isoformat(timespec="seconds")


def _s(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def normalize_address(addr: Any) -> Dict[str, str]:
    if not isinstance(addr, dict) and not hasattr(addr, "get"):
        return {}
    out = {}
    for k in ("line1", "line2", "postal_code", "city", "state", "country"):
        v = addr.get(k)
        if isinstance(v, str) and v.strip():
            out[k] = v.strip()
    return out


@dataclass
class WebhookSettings:
    secret_key: str = ""
    webhook_secret: str = ""
    orders_email_to: str = ""
    orders_email_from: str = ""


class OrderArchive:
    """Per-event order records plus a monthly append-only JSON-lines history."""

    def __init__(self, store: DocumentStore, orders_dir: str) -> None:
        self.store = store
        self.orders_dir = orders_dir

    @staticmethod
    def event_key(event_id: str) -> str:
        return "orders/events/" + re.sub(r"[^a-zA-Z0-9_-]", "_", event_id)

    def append_history(self, order: Dict[str, Any]) -> str:
        os.makedirs(self.orders_dir, exist_ok=True)
        path = os.path.join(self.orders_dir, f"orders-{datetime.now(timezone.utc):%Y-%m}.jsonl")
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(order, ensure_ascii=False) + "\n")
        return path


class WebhookHandler:
    def __init__(
        self,
        settings: WebhookSettings,
        archive: OrderArchive,
        ledger: InventoryLedger,
        mailer: Mailer,
        host: str = "localhost",
    ) -> None:
        self.settings = settings
        self.archive = archive
        self.ledger = ledger
        self.mailer = mailer
        self.host = host

    def probe(self) -> Dict[str, Any]:
        key = self.settings.secret_key
        return {
            "ok": True,
            "probe": True,
            "service": "simonesixx-webhook",
            "stripe_mode": "test" if key.startswith("sk_test_") else "live" if key.startswith("sk_live_") else "unknown",
            "secret_prefix": key[:8] if key else None,
            "webhook_secret_set": bool(self.settings.webhook_secret),
            "orders_email_to_set": bool(self.settings.orders_email_to),
        }

    def verify(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        if not self.settings.secret_key or not self.settings.webhook_secret:
            raise WebhookError(500, "Webhook not configured (missing Stripe secret key or webhook secret).")
        if not payload:
            raise WebhookError(400, "Empty payload")
        if not (sig_header or "").strip():
            raise WebhookError(400, "Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.settings.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookError(400, "Invalid signature") from e
        except ValueError as e:
            raise WebhookError(400, "Invalid JSON") from e

        event = json.loads(payload)
        if not isinstance(event, dict) or not _s(event.get("id")) or not _s(event.get("type")):
            raise WebhookError(400, "Invalid event shape")
        return event

    def handle(self, payload: bytes, sig_header: str) -> Tuple[str, int]:
        event = self.verify(payload, sig_header)
        event_type = event["type"]

        if event_type not in PAID_EVENTS + RELEASE_EVENTS:
            return "ignored", 200
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict) or not _s(session.get("id")):
            raise WebhookError(400, "Missing Checkout Session in event")

        if event_type in RELEASE_EVENTS:
            rid = _s((session.get("metadata") or {}).get("inventory_reservation_id"))
            if rid:
                self.ledger.cancel(rid)
            logger.info("Checkout session %s closed without payment (%s)", session["id"], event_type)
            return "ok", 200

        key = self.archive.event_key(event["id"])
        self.archive.store.mutate(key, lambda order: self._record(order, event, session), default=dict)
        self.archive.store.mutate(key, self._notify, default=dict)
        return "ok", 200

    # -------------------------
    # Paid sessions
    # -------------------------
    def _record(self, order: Dict[str, Any], event: Dict[str, Any], session: Dict[str, Any]) -> None:
        if not order:
            order.update(self._build_order(event, session))

        rid = _s((order.get("metadata") or {}).get("inventory_reservation_id"))
        if session.get("payment_status") == "paid" and rid and not order.get("inventory"):
            res = self.ledger.finalize(rid)
            order["inventory"] = {
                "reservation_id": rid,
                "finalize_result": res.as_dict(),
                "finalized_at": _iso(),
            }

        if not order.get("orders_log_appended"):
            self.archive.append_history(order)
            order["orders_log_appended"] = True

    def _notify(self, order: Dict[str, Any]) -> None:
        to = self.settings.orders_email_to.strip()
        if to and not order.get("email_sent"):
            sender = self.settings.orders_email_from.strip() or f"no-reply@{self.host.split(':')[0]}"
            ok = self.mailer.send(order_message(order, to, sender))
            order["email_to"] = to
            order["email_from"] = sender
            order["email_sent"] = ok
            order["email_sent_at"] = _iso() if ok else None
            if not ok:
                order["email_error"] = "delivery failed"
                logger.error("Order notification for %s not delivered", order.get("checkout_session_id"))

    def _build_order(self, event: Dict[str, Any], session: Dict[str, Any]) -> Dict[str, Any]:
        created = event.get("created") if isinstance(event.get("created"), int) else None
        return {
            "event_id": event["id"],
            "event_type": event["type"],
            "event_created": created,
            "event_created_iso": _iso(created) if created is not None else None,
            "livemode": event.get("livemode"),
            "checkout_session_id": session["id"],
            "payment_intent": session.get("payment_intent"),
            "payment_status": session.get("payment_status"),
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
            "metadata": session.get("metadata") if isinstance(session.get("metadata"), dict) else None,
            "customer": self._fetch_customer(session),
            "line_items": self._fetch_line_items(session),
            "stored_at": _iso(),
            "email_sent": False,
            "email_to": None,
            "orders_log_appended": False,
            "inventory": None,
        }

    def _fetch_line_items(self, session: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            listing = stripe.checkout.Session.list_line_items(session["id"], limit=100)
        except stripe.StripeError as e:
            logger.warning("Line items for %s unavailable: %s", session["id"], e)
            return [{"error": "Unable to fetch line items", "details": str(e)}]

        rows = []
        for row in getattr(listing, "data", None) or []:
            amount = getattr(row, "amount_total", None)
            rows.append({
                "description": getattr(row, "description", None) or "",
                "quantity": getattr(row, "quantity", None),
                "amount_total": amount if isinstance(amount, int) else None,
                "currency": getattr(row, "currency", None) or session.get("currency"),
            })
        return rows

    def _fetch_customer(self, session: Dict[str, Any]) -> Dict[str, Any]:
        customer: Dict[str, Any] = {"id": None, "email": None, "name": None, "phone": None, "shipping": None}
        cid = _s(session.get("customer"))
        if not cid:
            details = session.get("customer_details") or {}
            for k in ("email", "name", "phone"):
                customer[k] = _s(details.get(k))
            return customer

        customer["id"] = cid
        try:
            cust = stripe.Customer.retrieve(cid)
        except stripe.StripeError as e:
            customer["error"] = str(e)
            return customer

        for k in ("email", "name", "phone"):
            customer[k] = _s(getattr(cust, k, None))
        ship = getattr(cust, "shipping", None)
        if ship:
            name = getattr(ship, "name", None)
            customer["shipping"] = {
                "name": name.strip() if isinstance(name, str) else None,
                "address": normalize_address(getattr(ship, "address", None)),
            }
        return customer
