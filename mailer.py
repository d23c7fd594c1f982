from __future__ import annotations

import logging
import os
import re
import smtplib
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

SITE_NAME = "Simone Sixx"


def header_safe(value: Any) -> str:
    """Collapse CR/LF so user input can never inject extra headers."""
    return re.sub(r"[\r\n]+", " ", str(value or "")).strip()


def format_money(amount: Optional[int], currency: Optional[str]) -> str:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0 or not currency:
        return ""
    s = f"{amount / 100:,.2f}".replace(",", "X").replace(".", ",").replace("X", " ")
    return f"{s} {currency.upper()}"


# -------------------------
# Transports
# -------------------------
class Mailer:
    def send(self, msg: EmailMessage) -> bool:
        raise NotImplementedError


class SmtpMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def send(self, msg: EmailMessage) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP delivery to %s failed: %s", msg.get("To"), e)
            return False
        return True


class OutboxMailer(Mailer):
    """Development transport: every message becomes an ``.eml`` file."""

    def __init__(self, outbox_dir: str) -> None:
        self.outbox_dir = outbox_dir

    def send(self, msg: EmailMessage) -> bool:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        path = os.path.join(self.outbox_dir, f"{stamp}-{uuid.uuid4().hex[:8]}.eml")
        try:
            os.makedirs(self.outbox_dir, exist_ok=True)
            with open(path, "wb") as f:
                f.write(msg.as_bytes())
        except OSError as e:
            logger.error("Unable to queue mail to %s in %s: %s", msg.get("To"), self.outbox_dir, e)
            return False
        logger.info("Queued mail to %s in %s", msg.get("To"), path)
        return True


def mailer_from_config(config: Mapping[str, Any], instance_path: str) -> Mailer:
    host = str(config.get("SMTP_HOST") or "").strip()
    if not host:
        return OutboxMailer(config.get("MAIL_OUTBOX_DIR") or os.path.join(instance_path, "outbox"))
    return SmtpMailer(
        host=host,
        port=int(config.get("SMTP_PORT") or 587),
        username=str(config.get("SMTP_USERNAME") or ""),
        password=str(config.get("SMTP_PASSWORD") or ""),
        starttls=bool(config.get("SMTP_STARTTLS", True)),
        timeout=float(config.get("SMTP_TIMEOUT") or 10),
    )


# -------------------------
# Message builders
# -------------------------
def plain_message(
    to: str,
    subject: str,
    body: str,
    from_addr: str,
    reply_to: Optional[str] = None,
    from_name: Optional[str] = SITE_NAME,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_addr)) if from_name else from_addr
    msg["To"] = header_safe(to)
    msg["Subject"] = header_safe(subject)
    msg["Message-ID"] = make_msgid(domain=from_addr.split("@")[-1] if "@" in from_addr else None)
    if reply_to:
        msg["Reply-To"] = header_safe(reply_to)
    msg.set_content(body)
    return msg


def _footer(remote_addr: str, user_agent: str) -> List[str]:
    return [
        "---",
        f"IP: {remote_addr}",
        f"UA: {user_agent}",
        f"Date (UTC): {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
    ]


def contact_message(
    to: str,
    from_addr: str,
    name: str,
    email: str,
    message: str,
    remote_addr: str = "",
    user_agent: str = "",
) -> EmailMessage:
    lines = [
        "Nouveau message via le formulaire Contact",
        "",
        f"Nom: {name}",
        f"Email: {email}",
        "",
        "Message:",
        message,
        "",
    ] + _footer(remote_addr, user_agent)
    return plain_message(to, f"Contact — {SITE_NAME}", "\n".join(lines), from_addr, reply_to=email)


def return_request_message(
    to: str,
    from_addr: str,
    fields: Mapping[str, str],
    remote_addr: str = "",
    user_agent: str = "",
) -> EmailMessage:
    lines = [
        "Nouvelle demande de retour",
        "",
        f"Commande: {fields.get('order', '')}",
        f"Nom: {fields.get('name', '')}",
        f"Email: {fields.get('email', '')}",
        f"Type: {fields.get('type', '')}",
        f"Motif: {fields.get('reason', '')}",
        f"Precisions: {fields.get('details') or '(aucune)'}",
        "",
        "Confirmation: OK",
        "",
    ] + _footer(remote_addr, user_agent)
    return plain_message(
        to,
        f"Demande de retour — {SITE_NAME}",
        "\n".join(lines),
        from_addr,
        reply_to=fields.get("email") or None,
    )


def _address_lines(addr: Mapping[str, Any]) -> List[str]:
    out = [str(addr[k]) for k in ("line1", "line2") if addr.get(k)]
    city = f"{addr.get('postal_code') or ''} {addr.get('city') or ''}".strip()
    if city:
        out.append(city)
    if addr.get("country"):
        out.append(str(addr["country"]))
    return out


def order_message(order: Mapping[str, Any], to: str, from_addr: str) -> EmailMessage:
    """Owner notification for a paid order (packing slip in plain text)."""
    amount = format_money(order.get("amount_total"), order.get("currency"))
    subject = f"Nouvelle commande — {SITE_NAME}"
    if amount:
        subject += f" — {amount}"

    cust: Dict[str, Any] = order.get("customer") or {}
    lines = [
        "Nouvelle commande confirmée (Stripe)",
        "",
        f"Session: {order.get('checkout_session_id') or ''}",
        f"Paiement: {order.get('payment_status') or ''}",
    ]
    if amount:
        lines.append(f"Total: {amount}")
    lines += ["", "Client:"]
    for label, key in (("Nom", "name"), ("Email", "email"), ("Téléphone", "phone")):
        if cust.get(key):
            lines.append(f"  {label}: {cust[key]}")

    lines += ["", "Livraison:"]
    ship = cust.get("shipping") or {}
    if ship.get("name"):
        lines.append(f"  Nom: {ship['name']}")
    lines += [f"  {ln}" for ln in _address_lines(ship.get("address") or {})]

    meta: Dict[str, Any] = order.get("metadata") or {}
    if meta.get("shipping_method") == "mondial_relay":
        lines += ["", "Point Relais (Mondial Relay):"]
        if meta.get("mr_name"):
            lines.append(f"  Nom: {meta['mr_name']}")
        if meta.get("mr_address"):
            lines.append(f"  Adresse: {meta['mr_address']}")
        city = f"{meta.get('mr_postal_code') or ''} {meta.get('mr_city') or ''}".strip()
        if city:
            lines.append(f"  Ville: {city}")
        if meta.get("mr_id"):
            lines.append(f"  ID: {meta['mr_id']}")

    lines += ["", "Articles:"]
    for row in _iter_rows(order.get("line_items")):
        if "error" in row:
            lines.append(f"  (Erreur) {row.get('details') or ''}")
            continue
        qty = int(row.get("quantity") or 0)
        lines.append(f"  - {row.get('description') or ''}" + (f" x{qty}" if qty > 1 else ""))

    return plain_message(to, subject, "\n".join(lines), from_addr, reply_to=cust.get("email"), from_name=None)


def _iter_rows(rows: Any) -> Iterable[Mapping[str, Any]]:
    for row in rows if isinstance(rows, list) else []:
        if isinstance(row, Mapping):
            yield row
