import os
import smtplib
import tempfile
import unittest
from unittest import mock

from forms import FormMailer
from mailer import (
    OutboxMailer,
    SmtpMailer,
    format_money,
    header_safe,
    mailer_from_config,
    order_message,
    plain_message,
)
from tests.helpers import FakeMailer


class HelperTests(unittest.TestCase):
    def test_header_safe(self):
        self.assertEqual(header_safe("Sujet\r\nBcc: x@y.z"), "Sujet Bcc: x@y.z")

    def test_format_money(self):
        self.assertEqual(format_money(131000, "eur"), "1 310,00 EUR")
        self.assertEqual(format_money(None, "eur"), "")
        self.assertEqual(format_money(100, None), "")


class TransportTests(unittest.TestCase):
    def test_outbox_writes_eml(self):
        with tempfile.TemporaryDirectory() as tmp:
            mailer = OutboxMailer(os.path.join(tmp, "outbox"))
            self.assertTrue(mailer.send(plain_message("a@simonesixx.com", "Hi", "Body", "shop@simonesixx.com")))
            files = os.listdir(os.path.join(tmp, "outbox"))
            self.assertEqual(len(files), 1)
            self.assertTrue(files[0].endswith(".eml"))

    def test_outbox_failure_returns_false(self):
        with tempfile.TemporaryDirectory() as tmp:
            blocker = os.path.join(tmp, "not-a-dir")
            with open(blocker, "w", encoding="utf-8") as f:
                f.write("x")
            mailer = OutboxMailer(os.path.join(blocker, "outbox"))
            with self.assertLogs("mailer", level="ERROR"):
                self.assertFalse(mailer.send(plain_message("a@simonesixx.com", "Hi", "Body", "shop@simonesixx.com")))

    def test_mailer_from_config(self):
        self.assertIsInstance(mailer_from_config({}, "/tmp/instance"), OutboxMailer)
        smtp = mailer_from_config({"SMTP_HOST": "smtp.example.org", "SMTP_PORT": "2525"}, "/tmp/instance")
        self.assertIsInstance(smtp, SmtpMailer)
        self.assertEqual(smtp.port, 2525)

    def test_smtp_failure_returns_false(self):
        mailer = SmtpMailer("smtp.simonesixx.com")
        msg = plain_message("a@simonesixx.com", "Hi", "Body", "shop@simonesixx.com")
        with mock.patch("mailer.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, b"busy")):
            self.assertFalse(mailer.send(msg))

    def test_smtp_login_and_send(self):
        mailer = SmtpMailer("smtp.simonesixx.com", username="u", password="p")
        msg = plain_message("a@simonesixx.com", "Hi", "Body", "shop@simonesixx.com")
        with mock.patch("mailer.smtplib.SMTP") as smtp_cls:
            self.assertTrue(mailer.send(msg))
        smtp = smtp_cls.return_value.__enter__.return_value
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("u", "p")
        smtp.send_message.assert_called_once_with(msg)


class OrderMessageTests(unittest.TestCase):
    def test_home_delivery_slip(self):
        order = {
            "checkout_session_id": "cs_1",
            "payment_status": "paid",
            "amount_total": 31624,
            "currency": "eur",
            "metadata": {"shipping_method": "home"},
            "customer": {
                "email": "anna@simonesixx.com",
                "name": "Anna",
                "shipping": {"name": "Anna", "address": {"line1": "1 rue X", "postal_code": "75011", "city": "Paris"}},
            },
            "line_items": [{"description": "Perfecto en cuir noir", "quantity": 1}, {"error": "x", "details": "timeout"}],
        }
        msg = order_message(order, "owner@simonesixx.com", "shop@simonesixx.com")
        self.assertEqual(msg["Subject"], "Nouvelle commande — Simone Sixx — 316,24 EUR")
        body = msg.get_content()
        self.assertIn("75011 Paris", body)
        self.assertIn("- Perfecto en cuir noir", body)
        self.assertIn("(Erreur) timeout", body)
        self.assertNotIn("Point Relais", body)


class FormMailerTests(unittest.TestCase):
    def test_contact_requires_fields(self):
        forms = FormMailer(FakeMailer(), "contact@simonesixx.com", "contact@simonesixx.com")
        self.assertEqual(forms.contact({"email": "anna@simonesixx.com", "message": "x"}), "/contact/?error=1")
        self.assertEqual(
            forms.contact({"name": "A", "email": " ANNA@simonesixx.com ", "message": "x"}),
            "/contact/?sent=1",
        )
        self.assertEqual(forms.mailer.sent[0]["Reply-To"], "anna@simonesixx.com")


if __name__ == "__main__":
    unittest.main()
