import json
import os
import tempfile
import unittest
from datetime import date

from catalog import (
    Article,
    CatalogStore,
    CategoryFilter,
    Product,
    filter_products,
    format_article_html,
    format_eur,
    parse_article_date,
    sort_articles,
)


class ArticleDateTests(unittest.TestCase):
    def test_numeric_formats(self):
        self.assertEqual(parse_article_date("19/02/26"), date(2026, 2, 19))
        self.assertEqual(parse_article_date("19.02.2026"), date(2026, 2, 19))
        self.assertEqual(parse_article_date("1-3-2026"), date(2026, 3, 1))

    def test_french_long_dates(self):
        self.assertEqual(parse_article_date("19 février 2026"), date(2026, 2, 19))
        self.assertEqual(parse_article_date("19 Fevrier 2026"), date(2026, 2, 19))
        self.assertEqual(parse_article_date("3  août 2025"), date(2025, 8, 3))

    def test_iso_fallback(self):
        self.assertEqual(parse_article_date("2026-02-19"), date(2026, 2, 19))

    def test_invalid_dates(self):
        for raw in ("", "hier", "31/02/2026", "19 brumaire 2026", None):
            self.assertIsNone(parse_article_date(raw))

    def test_sort_newest_first_undated_last(self):
        rows = [
            Article("old", "Old", date="01/01/2025"),
            Article("undated", "Undated"),
            Article("new", "New", date="19 février 2026"),
            Article("mid", "Mid", date="2025-06-01"),
        ]
        self.assertEqual([a.id for a in sort_articles(rows)], ["new", "mid", "old", "undated"])


class FormattingTests(unittest.TestCase):
    def test_format_eur(self):
        self.assertEqual(format_eur(1310), "1 310,00 EUR")
        self.assertEqual(format_eur("bad"), "0,00 EUR")

    def test_article_html_paragraphs(self):
        html = str(format_article_html("Un\ndeux\n\n<trois>"))
        self.assertEqual(html, "<p>Un<br>deux</p>\n<p>&lt;trois&gt;</p>")

    def test_article_html_empty(self):
        self.assertEqual(str(format_article_html("")), "")


class ProductTests(unittest.TestCase):
    def test_from_dict_aliases(self):
        p = Product.from_dict({
            "id": "x",
            "name": "Robe",
            "price": "120,5",
            "level2": "feminin masculin",
            "stripePriceId": "price_x",
            "sizes": [{"label": "Une", "stock": "0"}, {"label": ""}],
            "sizeGuide": [{"size": "Une", "taille": "71–76"}],
        })
        self.assertEqual(p.price, 120.5)
        self.assertEqual(p.level2, ("feminin", "masculin"))
        self.assertEqual(p.stripe_price_id, "price_x")
        self.assertEqual(len(p.sizes), 1)
        self.assertFalse(p.in_stock())
        self.assertEqual(p.to_dict()["display_price"], "120,50 EUR")

    def test_requires_id_and_name(self):
        self.assertIsNone(Product.from_dict({"id": "x"}))
        self.assertIsNone(Product.from_dict({"name": "Robe"}))


class FilterTests(unittest.TestCase):
    def setUp(self):
        self.products = CatalogStore(tempfile.gettempdir() + "/does-not-exist").products()

    def ids(self, **kwargs):
        return [p.id for p in filter_products(self.products, CategoryFilter(**kwargs))]

    def test_no_filter_shows_everything(self):
        self.assertEqual(len(self.ids()), 3)

    def test_collection_is_exclusive(self):
        self.assertEqual(self.ids(collection="aw26"), ["manteau-long-homme"])
        self.assertEqual(
            self.ids(collection="ss26", level1="vestiaire", level2="masculin"),
            ["perfecto-en-cuir-noir", "chemise-soie-noir"],
        )

    def test_hierarchical_levels(self):
        self.assertEqual(
            self.ids(level1="vestiaire", level2="masculin"),
            ["perfecto-en-cuir-noir", "manteau-long-homme"],
        )
        self.assertEqual(self.ids(level1="vestiaire", level3="chemises"), ["chemise-soie-noir"])
        self.assertEqual(self.ids(level1="parfums"), [])

    def test_from_args(self):
        flt = CategoryFilter.from_args({"level1": " vestiaire ", "level2": ""})
        self.assertEqual(flt, CategoryFilter(level1="vestiaire"))
        self.assertTrue(CategoryFilter.from_args({}).is_empty())


class CatalogStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.catalog = CatalogStore(self._tmp.name)

    def test_defaults_when_nothing_published(self):
        self.assertEqual(len(self.catalog.products()), 3)
        self.assertEqual([lb.id for lb in self.catalog.lookbooks()], ["ss26", "aw26"])
        self.assertIsNotNone(self.catalog.get("articles", "qui-est-simone-sixx"))

    def test_publish_replaces_records(self):
        count = self.catalog.publish("articles", [
            {"id": "a1", "title": "Premier", "date": "01/01/2026"},
            {"id": "a2", "title": "Second", "date": "02/01/2026"},
        ])
        self.assertEqual(count, 2)
        self.assertEqual([a.id for a in self.catalog.articles()], ["a2", "a1"])
        with open(self.catalog.path_for("articles"), encoding="utf-8") as f:
            self.assertEqual(len(json.load(f)), 2)

    def test_publish_rejects_invalid_records(self):
        with self.assertRaises(ValueError):
            self.catalog.publish("products", {"id": "x"})
        with self.assertRaises(ValueError):
            self.catalog.publish("products", [{"id": "x"}])
        with self.assertRaises(ValueError):
            self.catalog.publish("products", [{"id": "x", "name": "A"}, {"id": "x", "name": "B"}])
        self.assertFalse(os.path.exists(self.catalog.path_for("products")))

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            self.catalog.path_for("orders")

    def test_broken_file_falls_back_to_defaults(self):
        os.makedirs(self.catalog.data_dir)
        with open(self.catalog.path_for("products"), "w", encoding="utf-8") as f:
            f.write("[{broken")
        self.assertEqual(len(self.catalog.products()), 3)


if __name__ == "__main__":
    unittest.main()
