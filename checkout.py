"""Stripe Checkout orchestration.

The browser posts its cart; everything that ends up on the Stripe session
(line items, shipping amount, metadata) is recomputed here. Stock for limited
items is reserved before the session is created and released again when
Stripe refuses the request.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import stripe

from inventory import InventoryLedger, OutOfStock
from shipping import METHOD_HOME, METHOD_RELAY, SHIPPING_METHODS, ShippingPolicy

logger = logging.getLogger(__name__)

CHECKOUT_VERSION = "2026-03-01"
MIN_QTY = 1
MAX_QTY = 20
RESPONSE_SAMPLE_LEN = 250
# Stripe accepts session expiries between 30 minutes and 24 hours.
SESSION_MIN_TTL = 1800
SESSION_MAX_TTL = 86400


class CheckoutError(Exception):
    def __init__(self, status: int, payload: Dict[str, Any]) -> None:
        super().__init__(payload.get("error") or f"HTTP {status}")
        self.status = status
        self.payload = payload


# -------------------------
# Stripe client setup
# -------------------------
def stripe_mode(secret_key: str) -> str:
    if secret_key.startswith("sk_test_"):
        return "test"
    if secret_key.startswith("sk_live_"):
        return "live"
    return "unknown"


def configure_stripe(secret_key: str, connect_timeout: float = 2.0, read_timeout: float = 4.0) -> None:
    """Short timeouts and no automatic retries; the customer retries by hand."""
    stripe.api_key = secret_key
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=(connect_timeout, read_timeout))


def stripe_error_payload(e: Exception) -> Dict[str, Any]:
    body = getattr(e, "json_body", None) or {}
    err = body.get("error") if isinstance(body, dict) else None
    err = err if isinstance(err, dict) else {}
    http_body = getattr(e, "http_body", None)
    message = getattr(e, "user_message", None) or err.get("message") or str(e) or "Stripe error"
    return {
        "error": message,
        "stripe_type": err.get("type"),
        "stripe_code": getattr(e, "code", None) or err.get("code"),
        "http_code": getattr(e, "http_status", None),
        "response_sample": http_body[:RESPONSE_SAMPLE_LEN] if isinstance(http_body, str) else None,
    }


# -------------------------
# Append-only audit log
# -------------------------
class CheckoutLog:
    def __init__(self, path: Optional[str]) -> None:
        self.path = path

    def append(self, req_id: str, stage: str, **fields: Any) -> None:
        if not self.path:
            return
        row = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "version": CHECKOUT_VERSION,
            "req_id": req_id,
            "stage": stage,
        }
        row.update(fields)
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.warning("Checkout log unavailable (%s): %s", self.path, e)


# -------------------------
# Request parsing
# -------------------------
def _opt_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _as_qty(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


@dataclass(frozen=True)
class RelayPoint:
    id: str
    name: str
    address: str
    postal_code: str
    city: str
    country: str = "FR"

    def as_metadata(self) -> Dict[str, str]:
        return {
            "mr_id": self.id,
            "mr_name": self.name,
            "mr_address": self.address,
            "mr_postal_code": self.postal_code,
            "mr_city": self.city,
            "mr_country": self.country,
        }


@dataclass
class CheckoutRequest:
    items: List[Dict[str, Any]]
    items_before: List[Dict[str, Any]]
    shipping_method: str = METHOD_HOME
    country: str = "FR"
    relay: Optional[RelayPoint] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping: Optional[Dict[str, Any]] = None
    client_subtotal_cents: Optional[int] = None
    extra_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSettings:
    secret_key: str = ""
    currency: str = "eur"
    site_origin: str = ""
    allowed_price_ids: Tuple[str, ...] = ()
    allowed_countries: Tuple[str, ...] = ("FR",)
    live_to_test: Dict[str, str] = field(default_factory=dict)
    reservation_ttl: int = 7200

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CheckoutSettings":
        return cls(
            secret_key=str(config.get("STRIPE_SECRET_KEY") or ""),
            currency=str(config.get("CURRENCY") or "eur").strip().lower(),
            site_origin=str(config.get("SITE_ORIGIN") or "").rstrip("/"),
            allowed_price_ids=tuple(config.get("STRIPE_ALLOWED_PRICE_IDS") or ()),
            allowed_countries=tuple(
                c.upper() for c in (config.get("STRIPE_ALLOWED_COUNTRIES") or ("FR",))
            ),
            live_to_test=dict(config.get("PRICE_ID_LIVE_TO_TEST") or {}),
            reservation_ttl=int(config.get("INVENTORY_RESERVATION_TTL") or 7200),
        )

    @property
    def mode(self) -> str:
        return stripe_mode(self.secret_key)

    @property
    def price_aliases(self) -> Dict[str, str]:
        """Price ID rewrites that match the key in use (live to test twin, or back)."""
        if self.mode == "test":
            return dict(self.live_to_test)
        if self.mode == "live":
            return {v: k for k, v in self.live_to_test.items()}
        return {}

    def translate_price(self, price_id: str) -> str:
        return self.price_aliases.get(price_id, price_id)


def parse_request(
    payload: Any,
    settings: CheckoutSettings,
    domestic_country: str = "FR",
) -> CheckoutRequest:
    if not isinstance(payload, dict):
        raise CheckoutError(400, {"error": "Invalid JSON body"})

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise CheckoutError(400, {"error": "Cart is empty"})

    if not settings.secret_key:
        raise CheckoutError(500, {"error": "Stripe is not configured (missing STRIPE secret key)"})

    allowed = set(settings.allowed_price_ids)
    line_items: List[Dict[str, Any]] = []
    before: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        price = _opt_str(item.get("price")) or _opt_str(item.get("stripePriceId"))
        if not price:
            raise CheckoutError(400, {"error": "Missing price id in cart items"})
        qty = _as_qty(item.get("quantity", 1))
        before.append({"price": price, "quantity": qty})
        if qty is None or qty < MIN_QTY or qty > MAX_QTY:
            raise CheckoutError(400, {"error": "Invalid quantity"})
        price = settings.translate_price(price)
        if allowed and price not in allowed:
            raise CheckoutError(400, {"error": "This product is not allowed for checkout"})
        line_items.append({"price": price, "quantity": qty})

    if not line_items:
        raise CheckoutError(400, {"error": "No valid items"})

    method = _opt_str(payload.get("shipping_method")) or METHOD_HOME
    if method not in SHIPPING_METHODS:
        method = METHOD_HOME

    shipping = payload.get("shipping") if isinstance(payload.get("shipping"), dict) else None
    address = shipping.get("address") if shipping and isinstance(shipping.get("address"), dict) else {}
    country = (_opt_str(address.get("country")) or domestic_country).upper()

    relay = None
    if method == METHOD_RELAY:
        raw = payload.get("mondial_relay")
        if not isinstance(raw, dict):
            raise CheckoutError(400, {"error": "Missing Mondial Relay Point Relais selection"})
        fields = {k: _opt_str(raw.get(k)) for k in ("name", "address", "postal_code", "city")}
        if any(v is None for v in fields.values()):
            raise CheckoutError(400, {"error": "Invalid Mondial Relay Point Relais (missing fields)"})
        relay_country = (_opt_str(raw.get("country")) or "FR").upper()
        if relay_country != "FR":
            raise CheckoutError(400, {"error": "Mondial Relay is only available for France"})
        relay = RelayPoint(
            id=_opt_str(raw.get("id")) or "",
            name=fields["name"],
            address=fields["address"],
            postal_code=fields["postal_code"],
            city=fields["city"],
            country=relay_country,
        )
        country = relay_country

    if settings.allowed_countries and country not in settings.allowed_countries:
        raise CheckoutError(400, {"error": "Shipping country not allowed", "country": country})

    client_subtotal = _as_qty(payload.get("cart_subtotal_cents"))
    if client_subtotal is not None and client_subtotal < 0:
        client_subtotal = None

    return CheckoutRequest(
        items=line_items,
        items_before=before,
        shipping_method=method,
        country=country,
        relay=relay,
        customer_email=_opt_str(payload.get("customer_email")),
        customer_name=_opt_str(payload.get("customer_name")),
        customer_phone=_opt_str(payload.get("customer_phone")),
        shipping=shipping,
        client_subtotal_cents=client_subtotal,
    )


# -------------------------
# Orchestration
# -------------------------
def _scalar_metadata(meta: Mapping[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in meta.items():
        if v is None:
            out[k] = ""
        elif isinstance(v, bool):
            out[k] = "1" if v else "0"
        elif isinstance(v, (int, float, str)):
            out[k] = str(v)
        else:
            out[k] = json.dumps(v, ensure_ascii=False)
    return out


class CheckoutService:
    def __init__(
        self,
        settings: CheckoutSettings,
        policy: ShippingPolicy,
        ledger: InventoryLedger,
        log: CheckoutLog,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.policy = policy
        self.ledger = ledger
        self.log = log
        self.clock = clock

    def probe(self) -> Dict[str, Any]:
        key = self.settings.secret_key
        return {
            "ok": True,
            "probe": True,
            "service": "simonesixx-stripe",
            "version": CHECKOUT_VERSION,
            "stripe_mode": self.settings.mode,
            "secret_prefix": key[:8] if key else None,
            "allowed_price_ids_count": len(self.settings.allowed_price_ids),
            "allowed_countries": list(self.settings.allowed_countries),
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }

    def authoritative_subtotal(self, req: CheckoutRequest) -> Tuple[int, str]:
        """Subtotal from Stripe's own prices; the client's figure is only a fallback."""
        total = 0
        for li in req.items:
            try:
                price = stripe.Price.retrieve(li["price"])
            except stripe.StripeError as e:
                logger.warning("Price lookup failed for %s: %s", li["price"], e)
                break
            unit = getattr(price, "unit_amount", None)
            if not isinstance(unit, int):
                break
            total += unit * li["quantity"]
        else:
            return total, "stripe"

        if req.client_subtotal_cents is not None:
            return req.client_subtotal_cents, "client"
        return 0, "none"

    def shipping_line(self, req: CheckoutRequest, subtotal_cents: int) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
        weight = self.policy.weight_of(req.items)
        quote = self.policy.quote(weight, req.country, req.shipping_method, subtotal_cents)
        if quote.amount_cents <= 0:
            return None, quote.as_dict()
        name = (
            "Livraison Mondial Relay (Point Relais)"
            if req.shipping_method == METHOD_RELAY
            else "Livraison à domicile"
        )
        line = {
            "price_data": {
                "currency": self.settings.currency,
                "product_data": {"name": name},
                "unit_amount": quote.amount_cents,
            },
            "quantity": 1,
        }
        return line, quote.as_dict()

    def create(self, payload: Any, dryrun: bool = False, req_id: Optional[str] = None) -> Dict[str, Any]:
        req_id = req_id or uuid.uuid4().hex[:12]
        t0 = time.monotonic()

        def _ms() -> int:
            return int(round((time.monotonic() - t0) * 1000))

        try:
            req = parse_request(payload, self.settings, self.policy.domestic_country)
        except CheckoutError as e:
            self.log.append(req_id, "rejected", status=e.status, error=e.payload.get("error"))
            raise

        if dryrun and req.client_subtotal_cents is not None:
            subtotal, source = req.client_subtotal_cents, "client"
        elif dryrun:
            subtotal, source = 0, "none"
        else:
            subtotal, source = self.authoritative_subtotal(req)
        ship_line, quote = self.shipping_line(req, subtotal)
        line_items = list(req.items) + ([ship_line] if ship_line else [])

        self.log.append(
            req_id,
            "items",
            stripe_mode=self.settings.mode,
            line_items_before=req.items_before,
            line_items=[{"price": li.get("price"), "quantity": li.get("quantity")} for li in line_items],
            subtotal_cents=subtotal,
            subtotal_source=source,
            shipping=quote,
        )

        if dryrun:
            self.log.append(req_id, "dryrun_ok", duration_ms=_ms())
            return {
                "ok": True,
                "dryrun": True,
                "line_items": line_items,
                "subtotal_cents": subtotal,
                "shipping": quote,
                "allowed_countries": list(self.settings.allowed_countries),
            }

        needs: Dict[str, int] = {}
        for li in req.items:
            needs[li["price"]] = needs.get(li["price"], 0) + li["quantity"]

        reservation_id = f"res_{uuid.uuid4().hex}"
        try:
            reservation = self.ledger.reserve(
                reservation_id,
                needs,
                ttl_seconds=self.settings.reservation_ttl,
            )
        except OutOfStock as e:
            self.log.append(req_id, "out_of_stock", price_id=e.price_id, available=e.available, requested=e.requested)
            raise CheckoutError(409, e.as_dict()) from e
        reserved = not reservation.skipped

        metadata: Dict[str, Any] = {
            "shipping_method": req.shipping_method,
            "shipping_country": req.country,
            "cart_weight_grams": quote["weight_grams"],
            "shipping_cents": quote["amount_cents"],
            "shipping_table": quote["table"],
            "free_shipping": quote["free"],
            "subtotal_cents": subtotal,
            "subtotal_source": source,
        }
        if req.relay is not None:
            metadata.update(req.relay.as_metadata())
        if reserved:
            metadata["inventory_reservation_id"] = reservation_id

        origin = self.settings.site_origin
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": f"{origin}/panier/?success=1&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/panier/?canceled=1",
            "metadata": _scalar_metadata(metadata),
        }
        if reserved:
            ttl = min(SESSION_MAX_TTL, max(SESSION_MIN_TTL, self.settings.reservation_ttl))
            params["expires_at"] = int(self.clock()) + ttl

        try:
            customer_id = self._create_customer(req)
            if customer_id:
                params["customer"] = customer_id
            elif req.customer_email:
                params["customer_email"] = req.customer_email
            cs = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            if reserved:
                self.ledger.cancel(reservation_id)
            diag = stripe_error_payload(e)
            self.log.append(req_id, "stripe_error", duration_ms=_ms(), **{k: v for k, v in diag.items() if k != "response_sample"})
            logger.error("Stripe checkout failed (%s): %s", req_id, diag["error"])
            raise CheckoutError(502, diag) from e

        url = getattr(cs, "url", None)
        if not url:
            if reserved:
                self.ledger.cancel(reservation_id)
            self.log.append(req_id, "missing_url", duration_ms=_ms())
            raise CheckoutError(502, {"error": "Stripe did not return a checkout URL"})

        duration = _ms()
        self.log.append(req_id, "ok", duration_ms=duration, session_id=getattr(cs, "id", None))
        logger.info("Checkout session %s created in %d ms", getattr(cs, "id", "?"), duration)
        return {"url": url, "duration_ms": duration}

    def _create_customer(self, req: CheckoutRequest) -> Optional[str]:
        if not any((req.customer_email, req.customer_name, req.customer_phone, req.shipping)):
            return None
        params: Dict[str, Any] = {}
        if req.customer_email:
            params["email"] = req.customer_email
        if req.customer_name:
            params["name"] = req.customer_name
        if req.customer_phone:
            params["phone"] = req.customer_phone
        if req.shipping:
            ship_name = _opt_str(req.shipping.get("name"))
            ship_addr = req.shipping.get("address")
            if ship_name and isinstance(ship_addr, dict):
                params["shipping"] = {"name": ship_name, "address": ship_addr}
        if not params:
            return None
        customer = stripe.Customer.create(**params)
        return getattr(customer, "id", None)


def verify_paid_session(session_id: str) -> Optional[Any]:
    """Retrieve a Checkout Session and return it only when it is paid."""
    try:
        cs = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        logger.warning("Unable to verify checkout session %s: %s", session_id, e)
        return None
    if getattr(cs, "payment_status", None) != "paid":
        return None
    return cs
