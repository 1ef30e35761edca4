import os
import tempfile
import unittest

from engine.errors import ProviderError, RateLimitDeferred
from engine.job_store import JobStore
from engine.search import normalize_text, rank_results, search_providers, title_score


class FakeSearchProvider:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.queries = []

    def search(self, query, limit=50):
        self.queries.append((query, limit))
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakeRegistry:
    def __init__(self, providers):
        self.providers = providers

    def build(self, row):
        return self.providers[row["key"]]


class NormalizeTests(unittest.TestCase):
    def test_strips_accents_brackets_and_separators(self):
        self.assertEqual(normalize_text("Pelíšky (1999) [CZ].mkv"), "pelisky mkv")
        self.assertEqual(normalize_text("The.Matrix_Reloaded"), "the matrix reloaded")
        self.assertEqual(normalize_text(None), "")

    def test_title_score_bounds(self):
        self.assertEqual(title_score("Heat", "Heat"), 100)
        self.assertEqual(title_score("", "Heat"), 0)
        self.assertGreater(title_score("heat", "Heat 1995 1080p"), title_score("heat", "Cold Mountain"))

    def test_rank_keeps_order_on_ties(self):
        ranked = rank_results("heat", [{"title": "Cold"}, {"title": "Heat", "id": 1}, {"title": "Heat", "id": 2}])
        self.assertEqual([item.get("id") for item in ranked], [1, 2, None])
        self.assertEqual(ranked[0]["score"], 100)


class SearchProvidersTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = JobStore(os.path.join(self.tmpdir.name, "jobs.sqlite"))
        self.webshare_id = self.store.create_provider("webshare", "Webshare")
        self.kraska_id = self.store.create_provider("kraska", "Kra.sk")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_merges_and_ranks_across_providers(self):
        registry = FakeRegistry(
            {
                "webshare": FakeSearchProvider([{"id": "a", "title": "Heat 2"}, {"id": "b", "title": "Heat"}]),
                "kraska": FakeSearchProvider([{"id": "/Play/1", "title": "Heat"}]),
            }
        )
        result = search_providers(self.store, registry, "heat", limit=10)
        self.assertEqual(result["errors"], {})
        self.assertEqual(result["results"][0]["score"], 100)
        by_id = {item["id"]: item for item in result["results"]}
        self.assertEqual(by_id["b"]["provider_id"], self.webshare_id)
        self.assertEqual(by_id["/Play/1"]["provider"], "kraska")
        self.assertEqual(len(result["results"]), 3)

    def test_one_failure_does_not_hide_others(self):
        registry = FakeRegistry(
            {
                "webshare": FakeSearchProvider(error=ProviderError("Webshare WST token missing from configuration.")),
                "kraska": FakeSearchProvider([{"id": "x", "title": "Heat"}]),
            }
        )
        result = search_providers(self.store, registry, "heat")
        self.assertEqual([item["id"] for item in result["results"]], ["x"])
        self.assertIn("WST token missing", result["errors"]["webshare"])

    def test_unexpected_error_is_collected(self):
        registry = FakeRegistry(
            {
                "webshare": FakeSearchProvider([{"id": "w", "title": "Heat"}]),
                "kraska": FakeSearchProvider(error=ValueError("invalid literal for int() with base 10: '1.5 GB'")),
            }
        )
        with self.assertLogs(level="ERROR"):
            result = search_providers(self.store, registry, "heat")
        self.assertEqual([item["id"] for item in result["results"]], ["w"])
        self.assertTrue(result["errors"]["kraska"].startswith("ValueError: invalid literal"))

    def test_rate_limit_is_reported(self):
        registry = FakeRegistry(
            {
                "webshare": FakeSearchProvider(),
                "kraska": FakeSearchProvider(error=RateLimitDeferred(30)),
            }
        )
        result = search_providers(self.store, registry, "heat")
        self.assertIn("kraska", result["errors"])

    def test_provider_filter_and_limit(self):
        webshare = FakeSearchProvider([{"id": str(i), "title": "Heat"} for i in range(5)])
        kraska = FakeSearchProvider([{"id": "k", "title": "Heat"}])
        registry = FakeRegistry({"webshare": webshare, "kraska": kraska})
        result = search_providers(self.store, registry, "heat", limit=2, provider_keys=[" Webshare "])
        self.assertEqual(len(result["results"]), 2)
        self.assertEqual(kraska.queries, [])
        self.assertEqual(webshare.queries, [("heat", 2)])


if __name__ == "__main__":
    unittest.main()
