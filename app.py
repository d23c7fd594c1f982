from __future__ import annotations

import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from flask import Flask, Response, jsonify, redirect, request, session
from werkzeug.exceptions import HTTPException

from cart import Cart, CartLine
from catalog import KINDS, CatalogStore, CategoryFilter
from checkout import (
    CheckoutError,
    CheckoutLog,
    CheckoutService,
    CheckoutSettings,
    configure_stripe,
    verify_paid_session,
)
from forms import form_mailer_from_config
from inventory import InventoryLedger, OutOfStock
from mailer import Mailer, mailer_from_config
from newsletter import (
    AlreadySubscribed,
    InvalidEmail,
    NewsletterSender,
    SubscriberList,
    UnsubscribeSigner,
    is_valid_email,
    normalize_email,
    parse_sender,
    unsubscribe_page,
)
from shipping import METHOD_HOME, ShippingPolicy
from storage import DocumentStore, FileDocumentStore, StorageError
from webhook import OrderArchive, WebhookError, WebhookHandler, WebhookSettings

logger = logging.getLogger(__name__)

APP_VERSION = "2026-03-01"

STRIPE_SECRET_KEY_DEFAULT = os.getenv("STRIPE_SECRET_KEY", "")

# Live Price IDs and their test-mode twins (parfum 30 ml / 50 ml).
PRICE_ID_LIVE_TO_TEST_DEFAULT = {
    "price_1T4Ypg1pW7akGXOM8wnRfRar": "price_1T4LB60XZVE1puxSTKgblJPz",
    "price_1T4Yph1pW7akGXOM9qTPSGtH": "price_1T4Vko0XZVE1puxSJUSVeBjD",
}

INVENTORY_DEFAULT_ITEMS = {
    "price_1T4LB60XZVE1puxSTKgblJPz": {"label": "Parfum 30 ml", "stock": 4},
}


def _load_dotenv() -> None:
    """Best-effort .env loader (no external dependency).

    Only sets variables that are not already present in the environment.
    Supports simple KEY=VALUE lines (optionally quoted); ignores blanks and comments.
    """
    base_dir = os.path.abspath(os.path.dirname(__file__))
    env_path = os.path.join(base_dir, ".env")
    if not os.path.isfile(env_path):
        return
    try:
        with open(env_path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip()
                if (v.startswith("'") and v.endswith("'")) or (v.startswith("\"") and v.endswith("\"")):
                    v = v[1:-1]
                if k and k not in os.environ:
                    os.environ[k] = v
    except OSError as e:
        logger.warning("Ignoring unreadable .env: %s", e)


def _env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default or [])
    return [p.strip() for p in raw.split(",") if p.strip()]


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def default_config(root_path: str) -> Dict[str, Any]:
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY", "dev-secret-change-me"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "SITE_ORIGIN": os.getenv("SITE_ORIGIN", ""),
        "DATA_DIR": os.getenv("SIMONE_DATA_DIR", os.path.join(root_path, "data")),
        "STATIC_DIR": os.getenv("SIMONE_STATIC_DIR", os.path.join(root_path, "static")),
        "ADMIN_TOKEN": os.getenv("ADMIN_TOKEN", ""),
        # Stripe
        "STRIPE_SECRET_KEY": STRIPE_SECRET_KEY_DEFAULT,
        "STRIPE_PUBLISHABLE_KEY": os.getenv("STRIPE_PUBLISHABLE_KEY", ""),
        "STRIPE_WEBHOOK_SECRET": os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        "STRIPE_ALLOWED_PRICE_IDS": _env_list("STRIPE_ALLOWED_PRICE_IDS"),
        "STRIPE_ALLOWED_COUNTRIES": _env_list("STRIPE_ALLOWED_COUNTRIES", ["FR"]),
        "STRIPE_CONNECT_TIMEOUT": float(os.getenv("STRIPE_CONNECT_TIMEOUT", "2")),
        "STRIPE_READ_TIMEOUT": float(os.getenv("STRIPE_READ_TIMEOUT", "4")),
        "PRICE_ID_LIVE_TO_TEST": dict(PRICE_ID_LIVE_TO_TEST_DEFAULT),
        "CURRENCY": os.getenv("CURRENCY", "eur"),
        # Shipping (rate tables usually come from the JSON config file)
        "DOMESTIC_COUNTRY": os.getenv("DOMESTIC_COUNTRY", "FR"),
        "WEIGHTS_BY_PRICE_ID": {},
        "DEFAULT_WEIGHT_GRAMS": _env_int("DEFAULT_WEIGHT_GRAMS", 0),
        "FREE_SHIPPING_THRESHOLD_CENTS": _env_int("FREE_SHIPPING_THRESHOLD_CENTS", 9000),
        "FREE_SHIPPING_THRESHOLD_INTERNATIONAL_CENTS": _env_int("FREE_SHIPPING_THRESHOLD_INTERNATIONAL_CENTS", None),
        "HOME_SHIPPING_RATES": [],
        "MONDIAL_RELAY_RATES": [],
        "EUROPE_SHIPPING_GROUPS": [],
        # Inventory
        "INVENTORY_DEFAULT_ITEMS": dict(INVENTORY_DEFAULT_ITEMS),
        "INVENTORY_RESERVATION_TTL": _env_int("INVENTORY_RESERVATION_TTL", 7200),
        # Mail
        "ORDERS_EMAIL_TO": os.getenv("ORDERS_EMAIL_TO", ""),
        "ORDERS_EMAIL_FROM": os.getenv("ORDERS_EMAIL_FROM", ""),
        "CONTACT_EMAIL_TO": os.getenv("SIMONE_CONTACT_EMAIL_TO", "contact@simonesixx.com"),
        "CONTACT_EMAIL_FROM": os.getenv("SIMONE_CONTACT_EMAIL_FROM", "contact@simonesixx.com"),
        "SMTP_HOST": os.getenv("SMTP_HOST", ""),
        "SMTP_PORT": _env_int("SMTP_PORT", 587),
        "SMTP_USERNAME": os.getenv("SMTP_USERNAME", ""),
        "SMTP_PASSWORD": os.getenv("SMTP_PASSWORD", ""),
        "SMTP_STARTTLS": os.getenv("SMTP_STARTTLS", "1") not in ("0", "false", "no"),
        # Newsletter
        "NEWSLETTER_EXPORT_TOKEN": os.getenv("NEWSLETTER_EXPORT_TOKEN", ""),
        "NEWSLETTER_NOTIFY_TOKEN": os.getenv("NEWSLETTER_NOTIFY_TOKEN", ""),
        "NEWSLETTER_UNSUBSCRIBE_SECRET": os.getenv("NEWSLETTER_UNSUBSCRIBE_SECRET", ""),
        "NEWSLETTER_EMAIL_FROM": os.getenv("NEWSLETTER_EMAIL_FROM", ""),
        "NEWSLETTER_EMAIL_FROM_NAME": os.getenv("NEWSLETTER_EMAIL_FROM_NAME", ""),
        "NEWSLETTER_REPLY_TO": os.getenv("NEWSLETTER_REPLY_TO", ""),
        "NEWSLETTER_BATCH_SIZE": _env_int("NEWSLETTER_BATCH_SIZE", 30),
        "NEWSLETTER_PACE_SECONDS": float(os.getenv("NEWSLETTER_PACE_SECONDS", "0.035")),
    }


def _token_ok(expected: str, provided: Optional[str]) -> bool:
    return bool(expected) and bool(provided) and hmac.compare_digest(expected, provided)


def _flag(value: Any) -> bool:
    return value is True or str(value).strip().lower() in ("1", "true")


# -------------------------
# Per-app services
# -------------------------
@dataclass
class Services:
    store: DocumentStore
    ledger: InventoryLedger
    policy: ShippingPolicy
    catalog: CatalogStore
    subscribers: SubscriberList
    mailer: Mailer
    checkout_log: CheckoutLog


def build_services(app: Flask) -> Services:
    cfg = app.config
    store = FileDocumentStore(cfg["DATA_DIR"])
    return Services(
        store=store,
        ledger=InventoryLedger(
            store,
            default_items=cfg.get("INVENTORY_DEFAULT_ITEMS") or {},
            ttl_seconds=int(cfg.get("INVENTORY_RESERVATION_TTL") or 7200),
        ),
        policy=ShippingPolicy.from_config(cfg),
        catalog=CatalogStore(cfg["STATIC_DIR"]),
        subscribers=SubscriberList(store),
        mailer=mailer_from_config(cfg, app.instance_path),
        checkout_log=CheckoutLog(os.path.join(cfg["DATA_DIR"], "orders", "checkout-log.jsonl")),
    )


# -------------------------
# App factory
# -------------------------
def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    _load_dotenv()
    app = Flask(__name__)

    app.config.update(default_config(app.root_path))
    config_path = os.getenv("SIMONE_CONFIG_PATH", os.path.join(app.instance_path, "config.json"))
    app.config.from_file(config_path, load=json.load, silent=True)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=str(app.config.get("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app.secret_key = app.config["SECRET_KEY"]
    configure_stripe(
        app.config["STRIPE_SECRET_KEY"],
        connect_timeout=float(app.config["STRIPE_CONNECT_TIMEOUT"]),
        read_timeout=float(app.config["STRIPE_READ_TIMEOUT"]),
    )

    services = build_services(app)
    app.extensions["simone"] = services

    def svc() -> Services:
        return app.extensions["simone"]

    def checkout_service() -> CheckoutService:
        s = svc()
        return CheckoutService(
            CheckoutSettings.from_config(app.config),
            s.policy,
            s.ledger,
            s.checkout_log,
        )

    def webhook_handler() -> WebhookHandler:
        s = svc()
        return WebhookHandler(
            WebhookSettings(
                secret_key=app.config["STRIPE_SECRET_KEY"],
                webhook_secret=app.config["STRIPE_WEBHOOK_SECRET"],
                orders_email_to=app.config["ORDERS_EMAIL_TO"],
                orders_email_from=app.config["ORDERS_EMAIL_FROM"],
            ),
            OrderArchive(s.store, os.path.join(app.config["DATA_DIR"], "orders")),
            s.ledger,
            s.mailer,
            host=request.host,
        )

    def payload_json() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    # -------------------------
    # Error handlers
    # -------------------------
    @app.errorhandler(CheckoutError)
    def handle_checkout_error(e: CheckoutError):
        return jsonify(e.payload), e.status

    @app.errorhandler(OutOfStock)
    def handle_out_of_stock(e: OutOfStock):
        return jsonify(e.as_dict()), 409

    @app.errorhandler(WebhookError)
    def handle_webhook_error(e: WebhookError):
        return jsonify({"error": e.message}), e.status

    @app.errorhandler(InvalidEmail)
    def handle_invalid_email(e: InvalidEmail):
        return jsonify({"ok": False, "error": "Invalid email"}), 400

    @app.errorhandler(AlreadySubscribed)
    def handle_already_subscribed(e: AlreadySubscribed):
        return jsonify({"ok": False, "error": "Already subscribed"}), 409

    @app.errorhandler(StorageError)
    def handle_storage_error(e: StorageError):
        logger.error("Storage failure: %s", e)
        return jsonify({"ok": False, "error": "Storage error"}), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        if not request.path.startswith("/api/"):
            return e
        return jsonify({"ok": False, "error": e.description or e.name}), e.code

    # -------------------------
    # Cache headers
    # -------------------------
    @app.after_request
    def add_no_cache_headers(resp):
        if request.path.startswith("/api/"):
            resp.headers["Cache-Control"] = "no-store"
        return resp

    # -------------------------
    # Diagnostics
    # -------------------------
    @app.get("/api/version")
    def api_version():
        return jsonify({
            "ok": True,
            "service": "simonesixx",
            "version": APP_VERSION,
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        })

    @app.post("/api/ping")
    def api_ping():
        return jsonify({
            "ok": True,
            "method": request.method,
            "content_type": request.content_type,
            "body_len": len(request.get_data() or b""),
            "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        })

    # -------------------------
    # Catalog API
    # -------------------------
    @app.get("/api/products")
    def api_products():
        flt = CategoryFilter.from_args(request.args)
        items = svc().catalog.products(flt)
        return jsonify({"ok": True, "count": len(items), "products": [p.to_dict() for p in items]})

    @app.get("/api/products/<pid>")
    def api_product(pid: str):
        p = svc().catalog.get("products", pid)
        if p is None:
            return jsonify({"ok": False, "error": "Unknown product"}), 404
        return jsonify({"ok": True, "product": p.to_dict()})

    @app.get("/api/articles")
    def api_articles():
        items = svc().catalog.articles()
        return jsonify({"ok": True, "articles": [a.to_dict() for a in items]})

    @app.get("/api/articles/<aid>")
    def api_article(aid: str):
        a = svc().catalog.get("articles", aid)
        if a is None:
            return jsonify({"ok": False, "error": "Unknown article"}), 404
        return jsonify({"ok": True, "article": a.to_dict()})

    @app.get("/api/lookbooks")
    def api_lookbooks():
        return jsonify({"ok": True, "lookbooks": [lb.to_dict() for lb in svc().catalog.lookbooks()]})

    @app.get("/api/lookbooks/<lid>")
    def api_lookbook(lid: str):
        lb = svc().catalog.get("lookbooks", lid)
        if lb is None:
            return jsonify({"ok": False, "error": "Unknown lookbook"}), 404
        return jsonify({"ok": True, "lookbook": lb.to_dict()})

    @app.post("/api/admin/publish/<kind>")
    def api_admin_publish(kind: str):
        if not _token_ok(app.config["ADMIN_TOKEN"], request.headers.get("X-Admin-Token")):
            return jsonify({"ok": False, "error": "Forbidden"}), 403
        if kind not in KINDS:
            return jsonify({"ok": False, "error": "Unknown catalog kind"}), 404
        try:
            count = svc().catalog.publish(kind, request.get_json(silent=True))
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return jsonify({"ok": True, "kind": kind, "count": count})

    # -------------------------
    # Cart API
    # -------------------------
    def cart_response(cart: Cart):
        country = (request.args.get("country") or "").strip().upper() or None
        method = (request.args.get("method") or METHOD_HOME).strip()
        aliases = CheckoutSettings.from_config(app.config).price_aliases
        summ = cart.summary(svc().policy, country, method, aliases)
        summ["lines"] = [
            {"index": i, "name": ln.name, "format": ln.format, "price": ln.price, "price_id": ln.price_id}
            for i, ln in enumerate(cart.lines)
        ]
        return jsonify({"ok": True, **summ})

    @app.get("/api/cart")
    def api_cart():
        return cart_response(Cart.from_session(session))

    @app.post("/api/cart/add")
    def api_cart_add():
        line = CartLine.from_dict(payload_json())
        if line is None:
            return jsonify({"ok": False, "error": "Invalid payload"}), 400
        cart = Cart.from_session(session)
        try:
            cart.add(line)
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        cart.to_session(session)
        return cart_response(cart)

    @app.post("/api/cart/remove")
    def api_cart_remove():
        try:
            index = int(payload_json().get("index"))
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "Invalid payload"}), 400
        cart = Cart.from_session(session)
        try:
            cart.remove(index)
        except IndexError as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        cart.to_session(session)
        return cart_response(cart)

    @app.post("/api/cart/clear")
    def api_cart_clear():
        cart = Cart()
        cart.to_session(session)
        return cart_response(cart)

    # -------------------------
    # Checkout
    # -------------------------
    @app.route("/api/checkout", methods=["GET", "POST"])
    def api_checkout():
        service = checkout_service()
        if request.method == "GET":
            if request.args.get("probe") == "1":
                return jsonify(service.probe())
            return jsonify({"error": "Method not allowed"}), 405

        payload = request.get_json(silent=True)
        result = service.create(payload, dryrun=request.args.get("dryrun") == "1")
        return jsonify(result)

    @app.get("/api/checkout/success")
    def api_checkout_success():
        """Payment callback: verifies the session is paid, then clears the cart."""
        session_id = (request.args.get("session_id") or "").strip()
        if not session_id:
            return jsonify({"ok": False, "paid": False, "error": "Missing session_id"}), 400

        cs = verify_paid_session(session_id)
        if cs is None:
            return jsonify({"ok": True, "paid": False})

        Cart().to_session(session)
        details = getattr(cs, "customer_details", None)
        return jsonify({
            "ok": True,
            "paid": True,
            "customer_email": getattr(details, "email", None) if details else None,
        })

    @app.route("/api/stripe/webhook", methods=["GET", "POST"])
    def api_stripe_webhook():
        handler = webhook_handler()
        if request.method == "GET":
            if request.args.get("probe") == "1":
                return jsonify(handler.probe())
            return jsonify({"error": "Method not allowed"}), 405
        body, status = handler.handle(request.get_data(), request.headers.get("Stripe-Signature", ""))
        return Response(body, status=status, mimetype="text/plain")

    # -------------------------
    # Newsletter
    # -------------------------
    @app.post("/api/newsletter/subscribe")
    def api_newsletter_subscribe():
        payload = payload_json()
        email = payload.get("email") if isinstance(payload.get("email"), str) else ""
        source = payload.get("source") if isinstance(payload.get("source"), str) else None
        svc().subscribers.subscribe(email, source)
        return jsonify({"ok": True, "version": APP_VERSION})

    @app.get("/api/newsletter/unsubscribe")
    def api_newsletter_unsubscribe():
        email = normalize_email(request.args.get("e"))
        sig = request.args.get("sig") or ""
        secret = app.config["NEWSLETTER_UNSUBSCRIBE_SECRET"]

        if not email or not is_valid_email(email):
            body, status = unsubscribe_page(400, "Désinscription", "Adresse e-mail invalide.")
        elif not secret:
            body, status = unsubscribe_page(
                501, "Désinscription", "La désinscription n'est pas configurée (secret manquant)."
            )
        elif not UnsubscribeSigner(secret).verify(email, sig):
            body, status = unsubscribe_page(403, "Désinscription", "Lien de désinscription invalide ou expiré.")
        elif svc().subscribers.unsubscribe(email):
            body, status = unsubscribe_page(200, "Désinscription confirmée", "Vous êtes bien désinscrit(e) du Journal.")
        else:
            body, status = unsubscribe_page(200, "Désinscription confirmée", "Vous étiez déjà désinscrit(e).")

        resp = Response(body, status=status, mimetype="text/html")
        resp.headers["X-Robots-Tag"] = "noindex, nofollow"
        return resp

    @app.get("/api/newsletter/export")
    def api_newsletter_export():
        token = app.config["NEWSLETTER_EXPORT_TOKEN"]
        if not token:
            return jsonify({"ok": False, "error": "Export not configured"}), 501
        if not _token_ok(token, request.args.get("token")):
            return jsonify({"ok": False, "error": "Forbidden"}), 403
        resp = Response(svc().subscribers.export_csv(), mimetype="text/csv")
        resp.headers["Content-Disposition"] = 'attachment; filename="newsletter-subscribers.csv"'
        return resp

    @app.route("/api/newsletter/notify", methods=["GET", "POST"])
    def api_newsletter_notify():
        token = app.config["NEWSLETTER_NOTIFY_TOKEN"]
        if request.method == "GET":
            if request.args.get("probe") == "1":
                return jsonify({
                    "ok": True,
                    "probe": True,
                    "version": APP_VERSION,
                    "configured": bool(token),
                    "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                })
            return jsonify({"ok": False, "error": "Method not allowed"}), 405

        payload = payload_json()
        provided = request.headers.get("X-Newsletter-Token")
        if provided is None and isinstance(payload.get("token"), str):
            provided = payload["token"]
        if not _token_ok(token, provided):
            return jsonify({"ok": False, "error": "Forbidden"}), 403

        article = payload.get("article") if isinstance(payload.get("article"), dict) else {}
        article_id = str(article.get("id") or "").strip()
        title = str(article.get("title") or "").strip()
        if not article_id or not title:
            return jsonify({"ok": False, "error": "Missing article id/title"}), 400

        url = str(payload.get("url") or "").strip()
        if not url:
            url = f"{request.host_url.rstrip('/')}/articles/article.html?id={article_id}"

        from_header, from_addr = parse_sender(
            app.config["NEWSLETTER_EMAIL_FROM"], app.config["NEWSLETTER_EMAIL_FROM_NAME"]
        )
        if not from_addr:
            return jsonify({
                "ok": False,
                "error": "Newsletter sender not configured (email_from must be a valid email)",
            }), 501

        secret = app.config["NEWSLETTER_UNSUBSCRIBE_SECRET"]
        s = svc()
        sender = NewsletterSender(
            s.store,
            s.subscribers,
            s.mailer,
            from_header=from_header,
            signer=UnsubscribeSigner(secret) if secret else None,
            reply_to=app.config["NEWSLETTER_REPLY_TO"] or None,
            batch_size=int(app.config["NEWSLETTER_BATCH_SIZE"] or 30),
            pace_seconds=float(app.config["NEWSLETTER_PACE_SECONDS"] or 0),
        )
        result = sender.step(
            article,
            url,
            force=_flag(payload.get("force")),
            dry_run=_flag(payload.get("dry_run")),
            base_url=request.host_url,
        )
        return jsonify(result.as_dict())

    # -------------------------
    # Contact / returns forms
    # -------------------------
    @app.post("/api/contact")
    def api_contact():
        forms = form_mailer_from_config(app.config, svc().mailer)
        target = forms.contact(request.form, request.remote_addr or "", request.user_agent.string)
        return redirect(target, code=303)

    @app.post("/api/returns")
    def api_returns():
        forms = form_mailer_from_config(app.config, svc().mailer)
        target = forms.return_request(request.form, request.remote_addr or "", request.user_agent.string)
        return redirect(target, code=303)

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5050")), debug=os.getenv("FLASK_DEBUG") == "1")
