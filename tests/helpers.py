import os
from typing import Any, Dict, List

from mailer import Mailer

PARFUM = "price_parfum_30"
CHEMISE = "price_chemise"

RELAY_RATES = [
    {"max_weight_grams": 500, "amount_cents": 495},
    {"max_weight_grams": 1000, "amount_cents": 595},
    {"max_weight_grams": 2000, "amount_cents": 695},
    {"max_weight_grams": None, "amount_cents": 895},
]

HOME_RATES = [
    {"max_weight_grams": 250, "amount_cents": 441},
    {"max_weight_grams": 500, "amount_cents": 624},
    {"max_weight_grams": 1000, "amount_cents": 790},
    {"max_weight_grams": 2000, "amount_cents": 913},
    {"max_weight_grams": None, "amount_cents": 3583},
]


class FakeMailer(Mailer):
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: List[Any] = []

    def send(self, msg) -> bool:
        self.sent.append(msg)
        return self.ok

    @property
    def recipients(self) -> List[str]:
        return [m["To"] for m in self.sent]


def app_config(tmp: str, **overrides: Any) -> Dict[str, Any]:
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "DATA_DIR": os.path.join(tmp, "data"),
        "STATIC_DIR": os.path.join(tmp, "static"),
        "MAIL_OUTBOX_DIR": os.path.join(tmp, "outbox"),
        "SITE_ORIGIN": "https://simonesixx.com",
        "STRIPE_SECRET_KEY": "sk_test_x",
        "STRIPE_WEBHOOK_SECRET": "whsec_x",
        "STRIPE_ALLOWED_PRICE_IDS": [],
        "STRIPE_ALLOWED_COUNTRIES": ["FR"],
        "PRICE_ID_LIVE_TO_TEST": {},
        "HOME_SHIPPING_RATES": HOME_RATES,
        "MONDIAL_RELAY_RATES": RELAY_RATES,
        "FREE_SHIPPING_THRESHOLD_CENTS": 9000,
        "WEIGHTS_BY_PRICE_ID": {PARFUM: 300, CHEMISE: 400},
        "DEFAULT_WEIGHT_GRAMS": 0,
        "INVENTORY_DEFAULT_ITEMS": {PARFUM: {"label": "Parfum 30 ml", "stock": 2}},
        "INVENTORY_RESERVATION_TTL": 3600,
        "ORDERS_EMAIL_TO": "",
        "ORDERS_EMAIL_FROM": "",
        "SMTP_HOST": "",
        "ADMIN_TOKEN": "",
        "NEWSLETTER_EXPORT_TOKEN": "",
        "NEWSLETTER_NOTIFY_TOKEN": "",
        "NEWSLETTER_UNSUBSCRIBE_SECRET": "",
        "NEWSLETTER_EMAIL_FROM": "",
        "NEWSLETTER_EMAIL_FROM_NAME": "",
        "NEWSLETTER_REPLY_TO": "",
        "NEWSLETTER_BATCH_SIZE": 30,
        "NEWSLETTER_PACE_SECONDS": 0,
    }
    config.update(overrides)
    return config


def make_app(tmp: str, **overrides: Any):
    from app import create_app

    app = create_app(app_config(tmp, **overrides))
    mailer = FakeMailer()
    app.extensions["simone"].mailer = mailer
    return app, mailer
