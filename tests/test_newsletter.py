import tempfile
import unittest

from newsletter import (
    AlreadySubscribed,
    InvalidEmail,
    NewsletterSender,
    SubscriberList,
    UnsubscribeSigner,
    article_message,
    is_valid_email,
    normalize_email,
    parse_sender,
    safe_job_id,
    short_excerpt,
)
from storage import FileDocumentStore, MemoryDocumentStore
from tests.helpers import FakeMailer

ARTICLE = {
    "id": "qui-est-simone-sixx",
    "title": "Qui est Simone Sixx ?",
    "date": "19 février 2026",
    "excerpt": "Une maison parisienne.",
}
URL = "https://simonesixx.com/articles/article.html?id=qui-est-simone-sixx"


class ReentrantMailer(FakeMailer):
    """Starts another step from inside the first delivery."""

    on_first_send = None

    def send(self, msg) -> bool:
        ok = super().send(msg)
        hook, self.on_first_send = self.on_first_send, None
        if hook is not None:
            hook()
        return ok


class AddressTests(unittest.TestCase):
    def test_normalize_email(self):
        self.assertEqual(normalize_email("  <Anna@SimoneSixx.com> "), "anna@simonesixx.com")
        self.assertEqual(normalize_email(None), "")

    def test_is_valid_email(self):
        self.assertTrue(is_valid_email("anna@simonesixx.com"))
        self.assertFalse(is_valid_email("anna"))
        self.assertFalse(is_valid_email(""))

    def test_parse_sender(self):
        self.assertEqual(
            parse_sender("Simone Sixx <journal@simonesixx.com>"),
            ("Simone Sixx <journal@simonesixx.com>", "journal@simonesixx.com"),
        )
        self.assertEqual(
            parse_sender("journal@simonesixx.com", "Le Journal"),
            ("Le Journal <journal@simonesixx.com>", "journal@simonesixx.com"),
        )
        self.assertEqual(parse_sender("not an address")[1], "")


class SubscriberListTests(unittest.TestCase):
    def setUp(self):
        self.subscribers = SubscriberList(MemoryDocumentStore())

    def test_subscribe(self):
        row = self.subscribers.subscribe(" Anna@SimoneSixx.com ", "footer")
        self.assertEqual(row["email"], "anna@simonesixx.com")
        self.assertEqual(row["source"], "footer")
        self.assertEqual(self.subscribers.emails(), ["anna@simonesixx.com"])

    def test_duplicate_is_rejected_case_insensitively(self):
        self.subscribers.subscribe("anna@simonesixx.com")
        with self.assertRaises(AlreadySubscribed):
            self.subscribers.subscribe("ANNA@simonesixx.com")
        self.assertEqual(len(self.subscribers.rows()), 1)

    def test_invalid_email(self):
        with self.assertRaises(InvalidEmail):
            self.subscribers.subscribe("nope")
        self.assertEqual(self.subscribers.rows(), [])

    def test_unsubscribe(self):
        self.assertFalse(self.subscribers.unsubscribe("anna@simonesixx.com"))
        self.subscribers.subscribe("anna@simonesixx.com")
        self.assertTrue(self.subscribers.unsubscribe("Anna@simonesixx.com"))
        self.assertFalse(self.subscribers.unsubscribe("anna@simonesixx.com"))
        self.assertEqual(self.subscribers.emails(), [])

    def test_export_csv(self):
        self.subscribers.subscribe("b@simonesixx.com", "footer")
        self.subscribers.subscribe("a@simonesixx.com")
        lines = self.subscribers.export_csv().splitlines()
        self.assertEqual(lines[0], '"email","created_at","source"')
        self.assertTrue(lines[1].startswith('"b@simonesixx.com","'))
        self.assertTrue(lines[2].endswith(',""'))
        self.assertEqual(self.subscribers.emails(), ["a@simonesixx.com", "b@simonesixx.com"])


class UnsubscribeSignerTests(unittest.TestCase):
    def setUp(self):
        self.signer = UnsubscribeSigner("s3cret")

    def test_sign_and_verify(self):
        sig = self.signer.sign("anna@simonesixx.com")
        self.assertTrue(self.signer.verify("ANNA@simonesixx.com", sig))
        self.assertFalse(self.signer.verify("other@simonesixx.com", sig))
        self.assertFalse(UnsubscribeSigner("other").verify("anna@simonesixx.com", sig))

    def test_garbage_signatures(self):
        for sig in ("", "   ", "!!!", "abc"):
            self.assertFalse(self.signer.verify("anna@simonesixx.com", sig))

    def test_url(self):
        url = self.signer.url("https://simonesixx.com/api/newsletter/unsubscribe", "Anna@simonesixx.com")
        self.assertTrue(url.startswith("https://simonesixx.com/api/newsletter/unsubscribe?e=anna%40simonesixx.com&sig="))


class ArticleEmailTests(unittest.TestCase):
    def test_safe_job_id(self):
        self.assertEqual(safe_job_id("qui est/simone"), "qui_est_simone")
        self.assertEqual(safe_job_id(""), "article")
        self.assertEqual(len(safe_job_id("x" * 200)), 80)

    def test_short_excerpt(self):
        self.assertEqual(short_excerpt("  un \n deux  "), "un deux")
        long = short_excerpt("a" * 500)
        self.assertEqual(len(long), 380)
        self.assertTrue(long.endswith("..."))

    def test_message(self):
        msg = article_message(
            "anna@simonesixx.com",
            dict(ARTICLE, title="<Qui> est Simone ?"),
            URL,
            "Simone Sixx <journal@simonesixx.com>",
            reply_to="contact@simonesixx.com",
            unsubscribe_url="https://simonesixx.com/api/newsletter/unsubscribe?e=x&sig=y",
        )
        self.assertEqual(msg["Subject"], "Nouveau Journal — <Qui> est Simone ?")
        self.assertEqual(msg["List-Unsubscribe"], "<https://simonesixx.com/api/newsletter/unsubscribe?e=x&sig=y>")
        self.assertEqual(msg["Reply-To"], "contact@simonesixx.com")
        html = msg.get_body(("html",)).get_content()
        self.assertIn("&lt;Qui&gt; est Simone ?", html)
        self.assertIn(URL.replace("&", "&amp;"), html)
        self.assertIn("Se désabonner", msg.get_body(("plain",)).get_content())


class NewsletterSenderTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryDocumentStore()
        self.subscribers = SubscriberList(self.store)
        for i in range(5):
            self.subscribers.subscribe(f"reader{i}@simonesixx.com")
        self.mailer = FakeMailer()
        self.sleeps = []
        self.sender = self.make_sender(self.mailer)

    def make_sender(self, mailer):
        return NewsletterSender(
            self.store,
            self.subscribers,
            mailer,
            from_header="Simone Sixx <journal@simonesixx.com>",
            signer=UnsubscribeSigner("s3cret"),
            batch_size=2,
            pace_seconds=0.01,
            sleep=self.sleeps.append,
        )

    def run_until_done(self, sender, **kwargs):
        results = []
        for _ in range(10):
            res = sender.step(ARTICLE, URL, base_url="https://simonesixx.com/", **kwargs)
            results.append(res)
            kwargs.pop("force", None)
            if res.done:
                break
        return results

    def test_batches_until_done(self):
        results = self.run_until_done(self.sender)
        self.assertEqual([r.sent_now for r in results], [2, 2, 1])
        self.assertEqual([r.remaining for r in results], [3, 1, 0])
        self.assertTrue(results[-1].done)
        self.assertEqual(sorted(self.mailer.recipients), self.subscribers.emails())
        self.assertEqual(len(self.sleeps), 5)

    def test_unsubscribe_link_in_every_mail(self):
        self.run_until_done(self.sender)
        for msg in self.mailer.sent:
            self.assertTrue(msg["List-Unsubscribe"].startswith(
                "<https://simonesixx.com/api/newsletter/unsubscribe?e="))

    def test_completed_job_sends_nothing(self):
        self.run_until_done(self.sender)
        again = self.sender.step(ARTICLE, URL)
        self.assertTrue(again.done)
        self.assertEqual(again.sent_now, 0)
        self.assertEqual(again.sent_total, 5)
        self.assertEqual(again.message, "Already sent")
        self.assertEqual(len(self.mailer.sent), 5)

    def test_resumes_with_a_new_sender(self):
        self.sender.step(ARTICLE, URL)
        other = FakeMailer()
        self.run_until_done(self.make_sender(other))
        self.assertEqual(len(self.mailer.sent), 2)
        self.assertEqual(len(other.sent), 3)
        self.assertFalse(set(self.mailer.recipients) & set(other.recipients))

    def test_recipient_list_is_snapshotted(self):
        self.sender.step(ARTICLE, URL)
        self.subscribers.subscribe("late@simonesixx.com")
        results = self.run_until_done(self.sender)
        self.assertEqual(results[-1].total, 5)
        self.assertNotIn("late@simonesixx.com", self.mailer.recipients)

    def test_force_restarts(self):
        self.run_until_done(self.sender)
        self.run_until_done(self.sender, force=True)
        self.assertEqual(len(self.mailer.sent), 10)

    def test_dry_run_sends_nothing(self):
        results = self.run_until_done(self.sender, dry_run=True)
        self.assertEqual(results[-1].sent_total, 5)
        self.assertTrue(results[-1].dry_run)
        self.assertEqual(self.mailer.sent, [])

    def test_overlapping_steps_never_repeat_a_recipient(self):
        for store in (self.store, FileDocumentStore(self._tmp())):
            mailer = ReentrantMailer()
            sender = NewsletterSender(store, self.subscribers, mailer, "journal@simonesixx.com",
                                     batch_size=2, pace_seconds=0)
            mailer.on_first_send = lambda: sender.step(ARTICLE, URL)

            sender.step(ARTICLE, URL)
            self.assertEqual(len(mailer.recipients), 4)
            results = self.run_until_done(sender)

            self.assertTrue(results[-1].done)
            self.assertEqual(results[-1].sent_total, 5)
            self.assertEqual(sorted(mailer.recipients), self.subscribers.emails())

    def _tmp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        return tmp.name

    def test_failures_are_counted_and_skipped(self):
        failing = FakeMailer(ok=False)
        results = self.run_until_done(self.make_sender(failing))
        self.assertTrue(results[-1].done)
        self.assertEqual(results[-1].errors_total, 5)
        self.assertEqual(results[-1].sent_total, 0)

    def test_no_subscribers(self):
        sender = NewsletterSender(MemoryDocumentStore(), SubscriberList(MemoryDocumentStore()), self.mailer, "x@simonesixx.com")
        res = sender.step(ARTICLE, URL)
        self.assertTrue(res.done)
        self.assertEqual(res.as_dict()["message"], "No subscribers yet")


if __name__ == "__main__":
    unittest.main()
