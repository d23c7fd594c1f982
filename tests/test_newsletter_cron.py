import json
import os
import tempfile
import unittest
from unittest import mock

import newsletter_cron
from newsletter_cron import NotifyClient, load_articles, main

ARTICLES = [
    {"id": "ancien", "title": "Ancien", "date": "01/01/2025", "excerpt": "Old"},
    {"id": "recent", "title": "Récent", "date": "19 février 2026", "excerpt": "New"},
    {"id": "milieu", "title": "Milieu", "date": "2025-06-01"},
    {"title": "Sans id"},
]


class CronTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = os.path.join(self._tmp.name, "articles.json")
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(ARTICLES, f)

        patcher = mock.patch.object(newsletter_cron.time, "sleep")
        patcher.start()
        self.addCleanup(patcher.stop)


class LoadArticlesTests(CronTestCase):
    def test_newest_first_and_invalid_rows_dropped(self):
        self.assertEqual([a.id for a in load_articles(self.path)], ["recent", "milieu", "ancien"])

    def test_unreadable(self):
        self.assertIsNone(load_articles(os.path.join(self._tmp.name, "missing.json")))
        with open(self.path, "w", encoding="utf-8") as f:
            f.write('{"not": "a list"}')
        self.assertIsNone(load_articles(self.path))


class NotifyClientTests(CronTestCase):
    def test_drive_until_done_and_force_only_once(self):
        client = NotifyClient("https://simonesixx.com/", "tok")
        article = load_articles(self.path)[0]
        sent = []
        replies = [
            {"ok": True, "done": False, "sent_total": 30, "total": 70, "remaining": 40},
            {"ok": True, "done": False, "sent_total": 60, "total": 70, "remaining": 10},
            {"ok": True, "done": True, "sent_total": 70, "total": 70, "remaining": 0},
        ]

        def _post(payload):
            sent.append(dict(payload))
            return replies[len(sent) - 1]

        with mock.patch.object(client, "post", side_effect=_post):
            self.assertTrue(client.drive(article, max_steps=5, force=True))
        self.assertEqual([p["force"] for p in sent], [True, False, False])
        self.assertEqual(sent[0]["url"], "https://simonesixx.com/articles/article.html?id=recent")
        self.assertEqual(client.endpoint, "https://simonesixx.com/api/newsletter/notify")

    def test_drive_stops_at_step_budget(self):
        client = NotifyClient("https://simonesixx.com", "tok")
        article = load_articles(self.path)[0]
        with mock.patch.object(client, "post", return_value={"ok": True, "done": False}) as post:
            self.assertFalse(client.drive(article, max_steps=2))
        self.assertEqual(post.call_count, 2)

    def test_post_rejects_bad_responses(self):
        client = NotifyClient("https://simonesixx.com", "tok")
        self.assertEqual(client.session.headers["X-Newsletter-Token"], "tok")
        bad = mock.Mock(status_code=403, text="Forbidden")
        with mock.patch.object(client.session, "post", return_value=bad):
            self.assertIsNone(client.post({}))
        not_ok = mock.Mock(status_code=200, text="{}")
        not_ok.json.return_value = {"ok": False}
        with mock.patch.object(client.session, "post", return_value=not_ok):
            self.assertIsNone(client.post({}))


class MainTests(CronTestCase):
    def test_missing_token_or_base_url(self):
        self.assertEqual(main(["--token", "", "--base-url", "https://simonesixx.com", "--articles", self.path]), 2)
        self.assertEqual(main(["--token", "tok", "--base-url", " ", "--articles", self.path]), 2)

    def test_unreadable_articles(self):
        missing = os.path.join(self._tmp.name, "missing.json")
        self.assertEqual(main(["--token", "tok", "--base-url", "https://simonesixx.com", "--articles", missing]), 1)

    def test_no_articles(self):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("[]")
        with mock.patch.object(NotifyClient, "drive") as drive:
            self.assertEqual(main(["--token", "tok", "--base-url", "https://simonesixx.com", "--articles", self.path]), 0)
        drive.assert_not_called()

    def test_candidates_are_clamped(self):
        argv = ["--token", "tok", "--base-url", "https://simonesixx.com", "--articles", self.path,
                "--max-articles", "0", "--max-steps", "99", "--dry-run"]
        with mock.patch.object(NotifyClient, "drive", return_value=True) as drive:
            self.assertEqual(main(argv), 0)
        drive.assert_called_once()
        article, max_steps = drive.call_args.args
        self.assertEqual(article.id, "recent")
        self.assertEqual(max_steps, 25)
        self.assertEqual(drive.call_args.kwargs, {"force": False, "dry_run": True})


if __name__ == "__main__":
    unittest.main()
