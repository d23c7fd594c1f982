from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from mailer import Mailer, contact_message, return_request_message
from newsletter import is_valid_email, normalize_email

logger = logging.getLogger(__name__)

CONTACT_PAGE = "/contact/"
RETURNS_PAGE = "/retours/"


def _field(form: Mapping[str, Any], name: str) -> str:
    return str(form.get(name) or "").strip()


@dataclass
class FormMailer:
    """Contact and return-request forms: validate, mail, pick the redirect."""

    mailer: Mailer
    to: str
    from_addr: str

    def contact(self, form: Mapping[str, Any], remote_addr: str = "", user_agent: str = "") -> str:
        name = _field(form, "name")
        email = normalize_email(_field(form, "email"))
        message = _field(form, "message")
        if not name or not message or not is_valid_email(email):
            return CONTACT_PAGE + "?error=1"

        msg = contact_message(self.to, self.from_addr, name, email, message, remote_addr, user_agent)
        if not self.mailer.send(msg):
            logger.error("Contact message from %s not delivered", email)
            return CONTACT_PAGE + "?error=1"
        return CONTACT_PAGE + "?sent=1"

    def return_request(self, form: Mapping[str, Any], remote_addr: str = "", user_agent: str = "") -> str:
        fields: Dict[str, str] = {
            k: _field(form, k) for k in ("order", "name", "type", "reason", "details", "confirm")
        }
        fields["email"] = normalize_email(_field(form, "email"))
        required = ("order", "name", "type", "reason", "confirm")
        if any(not fields[k] for k in required) or not is_valid_email(fields["email"]):
            return RETURNS_PAGE + "?error=1"

        msg = return_request_message(self.to, self.from_addr, fields, remote_addr, user_agent)
        if not self.mailer.send(msg):
            logger.error("Return request for order %s not delivered", fields["order"])
            return RETURNS_PAGE + "?error=1"
        return RETURNS_PAGE + "?sent=1"


def form_mailer_from_config(config: Mapping[str, Any], mailer: Mailer) -> FormMailer:
    to: Optional[str] = config.get("CONTACT_EMAIL_TO")
    return FormMailer(
        mailer=mailer,
        to=to or "contact@simonesixx.com",
        from_addr=config.get("CONTACT_EMAIL_FROM") or "contact@simonesixx.com",
    )
