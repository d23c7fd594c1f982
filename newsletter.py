"""Journal newsletter: subscriber list, signed unsubscribe links and the
batched article notification job.

The job document (``newsletter/jobs/<job id>``) snapshots the recipient list
when it is created and stores a cursor, so a notification can be driven in
several short requests (cron or admin button) and resumed after a failure
without mailing anyone twice.
"""
from __future__ import annotations

import csv
import hashlib
import io
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, parseaddr
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from email_validator import EmailNotValidError, validate_email
from itsdangerous import Signer
from markupsafe import Markup

from mailer import Mailer
from storage import DocumentStore

logger = logging.getLogger(__name__)

SUBSCRIBERS_KEY = "newsletter/subscribers"
JOBS_PREFIX = "newsletter/jobs/"
DEFAULT_BATCH_SIZE = 30
DEFAULT_PACE_SECONDS = 0.035
EXCERPT_MAX = 380


class AlreadySubscribed(Exception):
    pass


class InvalidEmail(ValueError):
    pass


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# -------------------------
# Addresses
# -------------------------
def normalize_email(email: Any) -> str:
    s = str(email or "").strip().lower()
    return s.strip("<> \t\n\r\0\x0b")


def is_valid_email(email: str) -> bool:
    if not email:
        return False
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_sender(raw: str, name_override: Optional[str] = None) -> Tuple[str, str]:
    """Split ``Name <addr>`` into (From header, bare address).

    The bare address is empty when no valid mailbox could be found.
    """
    name, addr = parseaddr(raw or "")
    addr = normalize_email(addr)
    if not is_valid_email(addr):
        return (raw or "").strip(), ""
    name = (name_override or "").strip() or name.strip()
    return (formataddr((name, addr)) if name else addr), addr


# -------------------------
# Subscribers
# -------------------------
class SubscriberList:
    def __init__(self, store: DocumentStore, key: str = SUBSCRIBERS_KEY) -> None:
        self.store = store
        self.key = key

    @staticmethod
    def _rows(doc: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = doc.get("subscribers")
        if not isinstance(rows, list):
            rows = doc["subscribers"] = []
        return rows

    def subscribe(self, email: str, source: Optional[str] = None) -> Dict[str, Any]:
        addr = normalize_email(email)
        if not is_valid_email(addr):
            raise InvalidEmail("Invalid email")
        source = (source or "").strip() or None

        def _add(doc: Dict[str, Any]) -> Dict[str, Any]:
            rows = self._rows(doc)
            if any(isinstance(r, dict) and normalize_email(r.get("email")) == addr for r in rows):
                raise AlreadySubscribed(addr)
            row = {"email": addr, "created_at": _utcnow_iso(), "source": source}
            rows.append(row)
            doc["updated_at"] = row["created_at"]
            return row

        row = self.store.mutate(self.key, _add, default=dict)
        logger.info("Newsletter subscription from %s", source or "unknown source")
        return row

    def unsubscribe(self, email: str) -> bool:
        addr = normalize_email(email)

        def _remove(doc: Dict[str, Any]) -> bool:
            rows = self._rows(doc)
            kept = [r for r in rows if not (isinstance(r, dict) and normalize_email(r.get("email")) == addr)]
            removed = len(kept) != len(rows)
            doc["subscribers"] = kept
            doc["updated_at"] = _utcnow_iso()
            return removed

        if not self.store.exists(self.key):
            return False
        return self.store.mutate(self.key, _remove, default=dict)

    def rows(self) -> List[Dict[str, Any]]:
        doc = self.store.get(self.key, {})
        rows = doc.get("subscribers") if isinstance(doc, dict) else None
        return [r for r in rows or [] if isinstance(r, dict) and r.get("email")]

    def emails(self) -> List[str]:
        return sorted({normalize_email(r["email"]) for r in self.rows() if normalize_email(r["email"])})

    def export_csv(self) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(["email", "created_at", "source"])
        for r in self.rows():
            writer.writerow([r.get("email") or "", r.get("created_at") or "", r.get("source") or ""])
        return buf.getvalue()


# -------------------------
# Unsubscribe links
# -------------------------
class UnsubscribeSigner:
    """HMAC-SHA256 over the normalized address; links never expire."""

    def __init__(self, secret: str) -> None:
        self._signer = Signer(
            secret,
            salt="newsletter-unsubscribe",
            key_derivation="none",
            digest_method=hashlib.sha256,
        )

    def sign(self, email: str) -> str:
        return self._signer.get_signature(normalize_email(email)).decode("ascii")

    def verify(self, email: str, sig: str) -> bool:
        sig = (sig or "").strip()
        if not sig:
            return False
        return self._signer.verify_signature(normalize_email(email), sig)

    def url(self, endpoint: str, email: str) -> str:
        addr = normalize_email(email)
        return f"{endpoint}?{urlencode({'e': addr, 'sig': self.sign(addr)})}"


# -------------------------
# Article email
# -------------------------
def safe_job_id(article_id: Any) -> str:
    s = str(article_id or "").strip()
    s = re.sub(r"[^a-zA-Z0-9_-]+", "_", s).strip("_")
    return (s or "article")[:80]


def short_excerpt(text: Any, limit: int = EXCERPT_MAX) -> str:
    s = re.sub(r"\s+", " ", str(text or "")).strip()
    if len(s) > limit:
        s = s[: limit - 3] + "..."
    return s


def article_text(article: Mapping[str, Any], url: str, unsubscribe_url: Optional[str] = None) -> str:
    title = str(article.get("title") or "").strip()
    date = str(article.get("date") or "").strip()
    excerpt = short_excerpt(article.get("excerpt"))

    lines = ["Journal de Simone Sixx", ""]
    if title:
        lines.append(title)
    if date:
        lines.append(date)
    lines.append("")
    if excerpt:
        lines += [excerpt, ""]
    lines += ["Lire l'article :", url, "", "—", "Simone Sixx"]
    if unsubscribe_url:
        lines += ["", "Se désabonner :", unsubscribe_url]
    return "\n".join(lines)


def article_html(
    article: Mapping[str, Any],
    url: str,
    unsubscribe_url: Optional[str] = None,
    logo_url: Optional[str] = None,
) -> str:
    title = str(article.get("title") or "").strip()
    date = str(article.get("date") or "").strip()
    excerpt = short_excerpt(article.get("excerpt"))

    parts: List[Markup] = [
        Markup('<!doctype html><html lang="fr"><head><meta charset="utf-8">'
               '<meta name="viewport" content="width=device-width, initial-scale=1"></head>'),
        Markup('<body style="margin:0;padding:0;background:#ffffff;">'),
        Markup('<div style="max-width:640px;margin:0 auto;padding:34px 22px;'
               'font-family:Arial,Helvetica,sans-serif;color:#111;line-height:1.6;">'),
    ]
    if logo_url:
        parts.append(Markup(
            '<div style="text-align:center;margin:2px 0 22px;">'
            '<img src="{}" alt="Simone Sixx" style="max-width:160px;width:100%;height:auto;"></div>'
        ).format(logo_url))
    parts.append(Markup(
        '<div style="text-align:center;font-size:12px;letter-spacing:0.28em;'
        'text-transform:uppercase;">Journal de Simone Sixx</div>'
    ))
    if title:
        parts.append(Markup(
            '<h1 style="margin:18px 0 8px;text-align:center;font-size:28px;font-weight:600;">{}</h1>'
        ).format(title))
    if date:
        parts.append(Markup(
            '<div style="text-align:center;font-size:12px;color:#666;margin-bottom:18px;">{}</div>'
        ).format(date))
    if excerpt:
        parts.append(Markup(
            '<div style="max-width:520px;margin:0 auto 22px;font-size:14px;color:#222;">{}</div>'
        ).format(excerpt))
    parts.append(Markup(
        '<div style="text-align:center;margin:10px 0 26px;"><a href="{}" '
        'style="display:inline-block;padding:12px 18px;text-decoration:none;border:1px solid #111;'
        'color:#111;font-size:12px;text-transform:uppercase;">Lire l&#39;article</a></div>'
    ).format(url))
    if unsubscribe_url:
        parts.append(Markup(
            '<div style="border-top:1px solid #eee;margin-top:26px;padding-top:14px;'
            'text-align:center;font-size:11px;"><a href="{}" style="color:#777;">Se désabonner</a></div>'
        ).format(unsubscribe_url))
    parts.append(Markup("</div></body></html>"))
    return str(Markup("").join(parts))


def article_message(
    to: str,
    article: Mapping[str, Any],
    url: str,
    from_header: str,
    reply_to: Optional[str] = None,
    unsubscribe_url: Optional[str] = None,
    logo_url: Optional[str] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = from_header
    msg["To"] = to
    msg["Subject"] = f"Nouveau Journal — {str(article.get('title') or '').strip()}"
    if reply_to:
        msg["Reply-To"] = reply_to
    if unsubscribe_url:
        msg["List-Unsubscribe"] = f"<{unsubscribe_url}>"
    msg.set_content(article_text(article, url, unsubscribe_url))
    msg.add_alternative(article_html(article, url, unsubscribe_url, logo_url), subtype="html")
    return msg


def unsubscribe_page(status: int, title: str, message: str) -> Tuple[str, int]:
    body = Markup(
        "<!doctype html>\n<html lang=\"fr\">\n<head>\n"
        "  <meta charset=\"utf-8\">\n  <meta name=\"robots\" content=\"noindex,nofollow\">\n"
        "  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">\n"
        "  <title>{title}</title>\n"
        "  <style>body{{font-family:system-ui,Arial,sans-serif;padding:24px;max-width:720px;"
        "margin:0 auto;line-height:1.5}}h1{{font-size:20px}}small{{color:#666}}</style>\n"
        "</head>\n<body>\n  <h1>{title}</h1>\n  <p>{message}</p>\n"
        "  <small>Simone Sixx — Journal</small>\n</body>\n</html>\n"
    ).format(title=title, message=message)
    return str(body), status


# -------------------------
# Batched sender
# -------------------------
@dataclass(frozen=True)
class StepResult:
    done: bool
    sent_now: int
    sent_total: int
    errors_total: int
    total: int
    remaining: int
    job_id: str
    dry_run: bool = False
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": True,
            "done": self.done,
            "sent_now": self.sent_now,
            "sent_total": self.sent_total,
            "errors_total": self.errors_total,
            "total": self.total,
            "remaining": self.remaining,
            "job_id": self.job_id,
            "dry_run": self.dry_run,
        }
        if self.message:
            out["message"] = self.message
        return out


class NewsletterSender:
    def __init__(
        self,
        store: DocumentStore,
        subscribers: SubscriberList,
        mailer: Mailer,
        from_header: str,
        signer: Optional[UnsubscribeSigner] = None,
        reply_to: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        pace_seconds: float = DEFAULT_PACE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.subscribers = subscribers
        self.mailer = mailer
        self.from_header = from_header
        self.signer = signer
        self.reply_to = reply_to
        self.batch_size = max(1, int(batch_size))
        self.pace_seconds = pace_seconds
        self.sleep = sleep

    def job_key(self, job_id: str) -> str:
        return JOBS_PREFIX + job_id

    def step(
        self,
        article: Mapping[str, Any],
        url: str,
        force: bool = False,
        dry_run: bool = False,
        base_url: str = "",
    ) -> StepResult:
        """Send the next batch of one article's notification."""
        job_id = safe_job_id(article.get("id"))
        key = self.job_key(job_id)

        emails = self.subscribers.emails()
        if not emails:
            return StepResult(True, 0, 0, 0, 0, 0, job_id, dry_run, "No subscribers yet")

        if force:
            self.store.delete(key)

        def _claim(job: Dict[str, Any]) -> Tuple[List[Any], int, int]:
            if not job:
                now = _utcnow_iso()
                job.update({
                    "article_id": str(article.get("id")),
                    "article": dict(article),
                    "url": url,
                    "created_at": now,
                    "updated_at": now,
                    "done": False,
                    "cursor": 0,
                    "emails": emails,
                    "sent": 0,
                    "errors": 0,
                    "last_error": None,
                })
            recipients = job.get("emails") if isinstance(job.get("emails"), list) else emails
            cursor = max(0, int(job.get("cursor") or 0))
            batch = [] if job.get("done") else recipients[cursor:cursor + self.batch_size]
            # The cursor moves before any mail goes out so overlapping steps get disjoint slices.
            job["emails"] = recipients
            job["cursor"] = min(len(recipients), cursor + len(batch))
            job["done"] = job["cursor"] >= len(recipients)
            job["updated_at"] = _utcnow_iso()
            return batch, job["cursor"], len(recipients)

        batch, cursor, total = self.store.mutate(key, _claim, default=dict)
        if not batch:
            job = self.store.get(key, {})
            return StepResult(True, 0, int(job.get("sent") or 0), int(job.get("errors") or 0),
                              total, 0, job_id, dry_run, "Already sent")

        unsubscribe_endpoint = f"{base_url.rstrip('/')}/api/newsletter/unsubscribe" if base_url else ""
        logo_url = f"{base_url.rstrip('/')}/static/images/logo.png" if base_url else None

        sent_now = 0
        errors_now = 0
        last_error = None
        for addr in batch:
            if not isinstance(addr, str) or not addr.strip():
                continue
            if dry_run:
                sent_now += 1
                continue

            unsubscribe_url = None
            if unsubscribe_endpoint and self.signer is not None:
                unsubscribe_url = self.signer.url(unsubscribe_endpoint, addr)
            msg = article_message(
                addr,
                article,
                url,
                self.from_header,
                reply_to=self.reply_to,
                unsubscribe_url=unsubscribe_url,
                logo_url=logo_url,
            )
            if self.mailer.send(msg):
                sent_now += 1
            else:
                errors_now += 1
                last_error = f"delivery to {addr} failed"
            if self.pace_seconds:
                self.sleep(self.pace_seconds)

        def _record(job: Dict[str, Any]) -> Dict[str, Any]:
            job["sent"] = int(job.get("sent") or 0) + sent_now
            job["errors"] = int(job.get("errors") or 0) + errors_now
            if last_error:
                job["last_error"] = last_error
            job["updated_at"] = _utcnow_iso()
            return dict(job)

        job = self.store.mutate(key, _record, default=dict)

        logger.info(
            "Newsletter %s: %d sent, %d errors, cursor %d/%d%s",
            job_id, sent_now, errors_now, cursor, total, " (dry run)" if dry_run else "",
        )
        return StepResult(
            done=cursor >= total,
            sent_now=sent_now,
            sent_total=job["sent"],
            errors_total=job["errors"],
            total=total,
            remaining=max(0, total - cursor),
            job_id=job_id,
            dry_run=dry_run,
        )
