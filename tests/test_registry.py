import os
import tempfile
import unittest

from engine.errors import UnsupportedProvider
from engine.job_store import JobStore
from providers.kraska import KraSkProvider
from providers.registry import ProviderRegistry
from providers.secrets import encrypt_config
from providers.webshare import WebshareProvider


class ProviderRegistryTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "jobs.sqlite")
        self.store = JobStore(self.db_path)
        self.app_config = {"security": {"provider_secret": "k"}, "providers": {"kraska_debug_enabled": True}}
        self.registry = ProviderRegistry(self.db_path, lambda: self.app_config)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _row(self, key, config, updated_at="2024-01-01T00:00:00.000000+00:00"):
        return {"id": 1, "key": key, "config_json": encrypt_config(config, "k"), "updated_at": updated_at}

    def test_builds_and_caches(self):
        row = self._row("webshare", {"wst": "tok"})
        provider = self.registry.build(row)
        self.assertIsInstance(provider, WebshareProvider)
        self.assertEqual(provider.config["wst"], "tok")
        self.assertIs(self.registry.build(row), provider)

        changed = dict(row, updated_at="2024-02-01T00:00:00.000000+00:00")
        self.assertIsNot(self.registry.build(changed), provider)

    def test_kraska_gets_shared_limiter_and_debug_flag(self):
        provider = self.registry.build(self._row("kraska", {"username": "u", "password": "p"}))
        self.assertIsInstance(provider, KraSkProvider)
        self.assertIs(provider.rate_limiter, self.registry.rate_limiter)
        self.assertTrue(provider.config["debug"])

    def test_unknown_key(self):
        with self.assertRaises(UnsupportedProvider):
            self.registry.build({"id": 2, "key": "rapidshare", "config_json": ""})

    def test_krask2_rows_are_unsupported(self):
        with self.assertRaises(UnsupportedProvider) as ctx:
            self.registry.build(self._row("krask2", {"username": "u", "password": "p"}))
        self.assertEqual(str(ctx.exception), "Unsupported provider: krask2")


if __name__ == "__main__":
    unittest.main()
