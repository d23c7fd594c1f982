import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from catalog import Article, sort_articles

PREFIX = "[newsletter-cron]"
NOTIFY_PATH = "/api/newsletter/notify"


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def log(msg: str) -> None:
    print(f"{PREFIX} {msg}")


def err(msg: str) -> None:
    print(f"{PREFIX} {msg}", file=sys.stderr)


def load_articles(path: Path) -> Optional[List[Article]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(data, list):
        return None
    rows = [Article.from_dict(r) for r in data if isinstance(r, dict)]
    return sort_articles([a for a in rows if a is not None])


class NotifyClient:
    def __init__(self, base_url: str, token: str, timeout: int = 35, pause: float = 0.12):
        self.base_url = base_url.rstrip("/")
        self.endpoint = self.base_url + NOTIFY_PATH
        self.timeout = timeout
        self.pause = pause

        self.session = requests.Session()
        self.session.headers.update(
            {
                "X-Newsletter-Token": token,
                "Accept": "application/json",
                "User-Agent": "SimoneSixxNewsletterCron/1.0",
            }
        )

    def article_url(self, article: Article) -> str:
        return f"{self.base_url}/articles/article.html?id={quote(article.id)}"

    def payload(self, article: Article, force: bool, dry_run: bool) -> Dict[str, Any]:
        return {
            "article": {
                "id": article.id,
                "title": article.title,
                "date": article.date,
                "excerpt": article.excerpt,
                "image": article.image,
            },
            "url": self.article_url(article),
            "force": force,
            "dry_run": dry_run,
        }

    def post(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            r = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            err(f"http error: {e}")
            return None
        if r.status_code != 200:
            err(f"status={r.status_code} body={r.text[:300]}")
            return None
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or data.get("ok") is not True:
            err(f"invalid response body={r.text[:300]}")
            return None
        return data

    def drive(self, article: Article, max_steps: int, force: bool = False, dry_run: bool = False) -> bool:
        """POST notify until the job is done or the step budget runs out."""
        payload = self.payload(article, force, dry_run)
        for step in range(1, max_steps + 1):
            data = self.post(payload)
            if data is None:
                return False
            done = data.get("done") is True
            sent = int(data.get("sent_total", data.get("sent", 0)) or 0)
            log(
                f"step={step} sent={sent}/{int(data.get('total') or 0)} "
                f"remaining={int(data.get('remaining') or 0)} done={1 if done else 0}"
            )
            if done:
                return True
            # a forced restart must only happen on the first call
            payload["force"] = False
            time.sleep(self.pause)
        return False


def main(argv: Optional[List[str]] = None) -> int:
    here = Path(__file__).resolve().parent
    ap = argparse.ArgumentParser(description="Send the Journal newsletter for recently published articles.")
    ap.add_argument("--base-url", default=os.getenv("NEWSLETTER_SITE_BASE_URL", ""),
                    help="Site origin, e.g. https://simonesixx.com")
    ap.add_argument("--token", default=os.getenv("NEWSLETTER_NOTIFY_TOKEN", ""), help="Notify token")
    ap.add_argument("--articles", default=str(here / "static" / "data" / "articles.json"),
                    help="Published articles JSON")
    ap.add_argument("--max-articles", type=int, default=3, help="Newest articles to consider (1-10)")
    ap.add_argument("--max-steps", type=int, default=1, help="Notify calls per article (1-25)")
    ap.add_argument("--force", action="store_true", help="Restart jobs from the first subscriber")
    ap.add_argument("--dry-run", action="store_true", help="Walk the job without sending mail")
    args = ap.parse_args(argv)

    token = (args.token or "").strip()
    base_url = (args.base_url or "").strip().rstrip("/")
    if not token:
        err("Missing notify token (--token / NEWSLETTER_NOTIFY_TOKEN).")
        return 2
    if not base_url:
        err("Missing site base URL (--base-url / NEWSLETTER_SITE_BASE_URL).")
        return 2

    articles = load_articles(Path(args.articles))
    if articles is None:
        err(f"Cannot read articles JSON: {args.articles}")
        return 1
    if not articles:
        log("No published articles found.")
        return 0

    max_articles = clamp(args.max_articles, 1, 10)
    max_steps = clamp(args.max_steps, 1, 25)
    candidates = articles[:max_articles]

    client = NotifyClient(base_url, token)
    log(f"endpoint={client.endpoint} candidates={len(candidates)} steps={max_steps}")
    for article in candidates:
        log(f"Article {article.id} — {article.title}")
        client.drive(article, max_steps, force=args.force, dry_run=args.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())
